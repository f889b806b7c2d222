"""Dispatch processor: claims due notification jobs and records their outcome.

Every transition out of ``pending`` is a compare-and-swap on the job row, so
overlapping invocations (immediate dispatch, cron, poller) cannot both send
the same job: the loser observes no match and reports the job as skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from .audit_log import AutomationAuditLogger
from .automation import iso_utc, merge_automation, read_automation
from .config import Settings
from .delivery import DeliveryResult, WhatsAppDeliveryService
from .errors import is_retryable_delivery_error
from .jobs import NotificationJobRecord, NotificationJobRepository
from .meta_client import mask_phone
from .models import WHATSAPP_CHANNEL, JobType, ProcessorJobResult, ProcessorSummary
from .templates import build_message_type

logger = logging.getLogger(__name__)

MAX_BATCH_LIMIT = 100
MAX_RETRY_DELAY_MULTIPLIER = 8
ALREADY_PROCESSED_REASON = "already processed"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def compute_retry_delay_seconds(attempt_number: int, base_seconds: int) -> int:
    base = max(1, base_seconds)
    multiplier = max(1, min(MAX_RETRY_DELAY_MULTIPLIER, attempt_number))
    return base * multiplier


class NotificationDispatchProcessor:
    def __init__(
        self,
        *,
        settings: Settings,
        jobs: NotificationJobRepository,
        audit: AutomationAuditLogger,
        delivery: WhatsAppDeliveryService,
    ) -> None:
        self._settings = settings
        self._jobs = jobs
        self._audit = audit
        self._delivery = delivery

    def _empty_summary(self) -> ProcessorSummary:
        return ProcessorSummary(
            enabled=self._settings.dispatch_enabled,
            mode=self._settings.automation_mode,  # type: ignore[arg-type]
            queue_enabled=self._settings.queue_enabled,
        )

    def process_pending(
        self,
        *,
        limit: int | None = None,
        appointment_id: str | None = None,
        job_id: str | None = None,
        job_type: JobType | None = None,
        now: datetime | None = None,
    ) -> ProcessorSummary:
        summary = self._empty_summary()
        if self._settings.automation_mode == "disabled":
            return summary

        batch_limit = limit if limit is not None else self._settings.batch_limit
        batch_limit = max(1, min(MAX_BATCH_LIMIT, int(batch_limit)))
        due_jobs = self._jobs.list_due_jobs(
            now=now or _now_utc(),
            limit=batch_limit,
            channel=WHATSAPP_CHANNEL,
            appointment_id=appointment_id,
            job_id=job_id,
            job_type=job_type.value if job_type is not None else None,
        )
        summary.total_scanned = len(due_jobs)

        for job in due_jobs:
            result = self._process_job(job)
            summary.results.append(result)
            if result.status == "sent":
                summary.sent += 1
            elif result.status == "failed":
                summary.failed += 1
            else:
                summary.skipped += 1
        return summary

    def _process_job(self, job: NotificationJobRecord) -> ProcessorJobResult:
        job_type = JobType.parse(job.type)
        if job_type is None:
            return self._result(job, "skipped", "unsupported type")
        if not self._settings.is_tenant_allowed(job.tenant_id):
            return self._result(job, "skipped", "tenant not allowed")

        claimed = self._jobs.claim(job.id, now=_now_utc())
        if claimed is None:
            return self._result(job, "skipped", ALREADY_PROCESSED_REASON)

        try:
            delivered = self._delivery.deliver(claimed, job_type)
        except Exception as exc:
            return self._handle_failure(claimed, job_type, exc)
        return self._handle_success(claimed, job_type, delivered)

    def _handle_success(
        self,
        job: NotificationJobRecord,
        job_type: JobType,
        delivered: DeliveryResult,
    ) -> ProcessorJobResult:
        processed_at = iso_utc(_now_utc())
        sent_at = iso_utc(delivered.delivered_at)
        payload = merge_automation(
            job.payload,
            processed_at=processed_at,
            provider_accepted_at=sent_at,
            provider_name=delivered.provider_name,
            delivery_mode=delivered.delivery_mode,
            provider_message_id=delivered.provider_message_id,
            template_name=delivered.template_name,
            template_language=delivered.template_language,
            recipient=delivered.recipient,
            message_preview=delivered.message_preview,
            provider_response=delivered.provider_response or None,
            sent_at=sent_at,
        )
        updated = self._jobs.conditional_transition(
            job.id,
            status="sent",
            expected_status="pending",
            payload=payload,
        )
        if updated is None:
            logger.warning("job %s was processed concurrently; delivery result not recorded", job.id)
            return self._result(job, "skipped", ALREADY_PROCESSED_REASON)

        dry_run = delivered.delivery_mode == "dry_run"
        self._audit.record(
            tenant_id=job.tenant_id,
            appointment_id=job.appointment_id,
            message_type=build_message_type(job_type),
            status="sent_auto_dry_run" if dry_run else "sent_auto",
            payload={
                "job_id": job.id,
                "delivery_mode": delivered.delivery_mode,
                "provider_message_id": delivered.provider_message_id,
                "template_name": delivered.template_name,
                "message_preview": delivered.message_preview,
            },
            sent_at=delivered.delivered_at,
        )
        logger.info(
            "notification job %s sent type=%s mode=%s recipient=%s",
            job.id,
            job.type,
            delivered.delivery_mode,
            mask_phone(delivered.recipient) if delivered.recipient else "-",
        )
        return self._result(job, "sent", None)

    def _handle_failure(self, job: NotificationJobRecord, job_type: JobType, exc: Exception) -> ProcessorJobResult:
        message = str(exc) or exc.__class__.__name__
        automation = read_automation(job.payload)
        next_retry_count = automation.retry_count + 1
        max_retries = self._settings.max_retries
        can_retry = (
            self._settings.automation_mode == "enabled"
            and is_retryable_delivery_error(exc)
            and next_retry_count <= max_retries
        )
        now = _now_utc()

        if can_retry:
            delay_seconds = compute_retry_delay_seconds(next_retry_count, self._settings.retry_base_delay_seconds)
            next_at = now + timedelta(seconds=delay_seconds)
            payload = merge_automation(
                job.payload,
                retry_count=next_retry_count,
                retry_scheduled_at=iso_utc(now),
                retry_next_at=iso_utc(next_at),
                retry_last_error=message,
            )
            updated = self._jobs.conditional_transition(
                job.id,
                status="pending",
                expected_status="pending",
                payload=payload,
                scheduled_for=next_at,
            )
            if updated is None:
                return self._result(job, "skipped", ALREADY_PROCESSED_REASON)
            self._audit.record(
                tenant_id=job.tenant_id,
                appointment_id=job.appointment_id,
                message_type=build_message_type(job_type),
                status="retry_scheduled_auto",
                payload={
                    "job_id": job.id,
                    "error": message,
                    "retry_count": next_retry_count,
                    "max_retries": max_retries,
                    "retry_next_at": iso_utc(next_at),
                },
            )
            logger.warning(
                "notification job %s failed, retry %s/%s in %ss: %s",
                job.id,
                next_retry_count,
                max_retries,
                delay_seconds,
                message,
            )
            return self._result(
                job,
                "skipped",
                f"Retry scheduled in {delay_seconds}s ({next_retry_count}/{max_retries})",
            )

        payload = merge_automation(
            job.payload,
            processed_at=iso_utc(now),
            failed_at=iso_utc(now),
            error=message,
            retry_count=next_retry_count,
        )
        updated = self._jobs.conditional_transition(
            job.id,
            status="failed",
            expected_status="pending",
            payload=payload,
        )
        if updated is None:
            return self._result(job, "skipped", ALREADY_PROCESSED_REASON)
        self._audit.record(
            tenant_id=job.tenant_id,
            appointment_id=job.appointment_id,
            message_type=build_message_type(job_type),
            status="failed_auto",
            payload={"job_id": job.id, "error": message, "retry_count": next_retry_count},
        )
        logger.warning("notification job %s failed permanently: %s", job.id, message)
        return self._result(job, "failed", message)

    @staticmethod
    def _result(job: NotificationJobRecord, status: str, reason: str | None) -> ProcessorJobResult:
        return ProcessorJobResult(
            job_id=job.id,
            appointment_id=job.appointment_id,
            type=job.type,
            status=status,  # type: ignore[arg-type]
            reason=reason,
        )
