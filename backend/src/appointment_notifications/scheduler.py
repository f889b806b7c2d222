from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .audit_log import AutomationAuditLogger
from .automation import AutomationMetadata, iso_utc, parse_iso_datetime, with_automation
from .config import Settings
from .jobs import NotificationJobRepository
from .models import (
    WHATSAPP_CHANNEL,
    EnqueueResult,
    JobType,
    LifecycleScheduleResult,
)
from .processor import NotificationDispatchProcessor
from .service_window import CustomerServiceWindowEvaluator
from .templates import build_message_type

logger = logging.getLogger(__name__)

REMINDER_LEAD_TIME = timedelta(hours=24)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class NotificationScheduler:
    """Producer side of the queue: turns appointment lifecycle events into jobs."""

    def __init__(
        self,
        *,
        settings: Settings,
        jobs: NotificationJobRepository,
        audit: AutomationAuditLogger,
        processor: NotificationDispatchProcessor,
        window_evaluator: CustomerServiceWindowEvaluator,
    ) -> None:
        self._settings = settings
        self._jobs = jobs
        self._audit = audit
        self._processor = processor
        self._window_evaluator = window_evaluator

    def enqueue(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        job_type: JobType,
        scheduled_for: datetime,
        payload: dict[str, Any],
        source: str,
        automation: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        if not self._settings.queue_enabled:
            return EnqueueResult(status="skipped", reason="queue_disabled")
        if not self._settings.is_tenant_allowed(tenant_id):
            logger.info("skipping %s job for tenant %s: tenant not allowed", job_type.value, tenant_id)
            return EnqueueResult(status="skipped", reason="tenant_not_allowed")

        existing = self._jobs.find_pending_duplicate(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            channel=WHATSAPP_CHANNEL,
            job_type=job_type.value,
        )
        if existing is not None:
            return EnqueueResult(status="skipped", reason="duplicate_pending", job_id=existing.id)

        metadata = AutomationMetadata.model_validate(
            {
                **(automation or {}),
                "queued_at": iso_utc(_now_utc()),
                "source": source,
                "mode_at_queue_time": self._settings.automation_mode,
                "queue_enabled": True,
            }
        )
        job = self._jobs.insert(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            job_type=job_type.value,
            scheduled_for=scheduled_for,
            payload=with_automation(payload, metadata),
            channel=WHATSAPP_CHANNEL,
        )
        self._audit.record(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            message_type=build_message_type(job_type),
            status="queued_auto",
            payload={
                "job_id": job.id,
                "source": source,
                "scheduled_for": iso_utc(job.scheduled_for),
                "mode_at_queue_time": self._settings.automation_mode,
            },
        )
        logger.info("queued %s job %s scheduled_for=%s", job_type.value, job.id, iso_utc(job.scheduled_for))

        if self._settings.auto_dispatch_on_queue and self._settings.dispatch_enabled:
            try:
                self._processor.process_pending(job_id=job.id, job_type=job_type, limit=1)
            except Exception:
                logger.exception("immediate dispatch failed for job %s; cron or poller will retry", job.id)

        return EnqueueResult(status="queued", job_id=job.id)

    def schedule_lifecycle_notifications(
        self,
        *,
        tenant_id: str,
        appointment_id: str,
        start_time: datetime | str,
        source: str,
    ) -> LifecycleScheduleResult:
        start = parse_iso_datetime(start_time)
        if start is None:
            raise ValueError(f"invalid appointment start time: {start_time!r}")
        start_iso = iso_utc(start)

        created = self.enqueue(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            job_type=JobType.APPOINTMENT_CREATED,
            scheduled_for=_now_utc(),
            payload={"appointment_id": appointment_id, "start_time": start_iso},
            source=source,
        )
        reminder = self.enqueue(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            job_type=JobType.APPOINTMENT_REMINDER,
            scheduled_for=start - REMINDER_LEAD_TIME,
            payload={"appointment_id": appointment_id, "start_time": start_iso, "reminder_window": "24h"},
            source=source,
        )
        return LifecycleScheduleResult(created=created, reminder=reminder)

    def schedule_canceled_notification(
        self,
        *,
        tenant_id: str,
        appointment_id: str,
        source: str,
        notify_client: bool,
        start_time: datetime | str | None = None,
        now: datetime | None = None,
    ) -> EnqueueResult:
        if not notify_client:
            return EnqueueResult(status="skipped", reason="notify_client_disabled")
        if not self._settings.queue_enabled:
            return EnqueueResult(status="skipped", reason="queue_disabled")
        if not self._settings.is_tenant_allowed(tenant_id):
            self._record_canceled_skip(
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                source=source,
                reason="tenant_not_allowed",
            )
            return EnqueueResult(status="skipped", reason="tenant_not_allowed")

        window = self._window_evaluator.evaluate(tenant_id=tenant_id, appointment_id=appointment_id, now=now)
        if not window.is_open or not window.customer_wa_id:
            reason = (
                "customer_service_window_expired"
                if window.reason == "expired"
                else "customer_service_window_no_inbound"
            )
            self._record_canceled_skip(
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                source=source,
                reason=reason,
                extra={
                    "customer_service_window_checked_at": window.checked_at,
                    "customer_service_window_last_inbound_at": window.last_inbound_at,
                },
            )
            return EnqueueResult(status="skipped", reason=reason)

        payload: dict[str, Any] = {"appointment_id": appointment_id}
        start = parse_iso_datetime(start_time)
        if start is not None:
            payload["start_time"] = iso_utc(start)
        return self.enqueue(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            job_type=JobType.APPOINTMENT_CANCELED,
            scheduled_for=now or _now_utc(),
            payload=payload,
            source=source,
            automation={
                "customer_service_window_checked_at": window.checked_at,
                "customer_service_window_last_inbound_at": window.last_inbound_at,
                "customer_service_window_result": "open",
                "customer_wa_id": window.customer_wa_id,
            },
        )

    def _record_canceled_skip(
        self,
        *,
        tenant_id: str,
        appointment_id: str,
        source: str,
        reason: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        logger.info("canceled notification for appointment %s skipped: %s", appointment_id, reason)
        self._audit.record(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            message_type=build_message_type(JobType.APPOINTMENT_CANCELED),
            status="skipped_auto",
            payload={"source": source, "skipped_reason": reason, **(extra or {})},
        )
