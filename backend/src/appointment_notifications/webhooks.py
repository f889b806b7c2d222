"""Handlers for Meta Cloud webhook deliveries.

Two independent handlers share one payload: delivery-status events update the
nested automation metadata of the job that produced the outbound message, and
interactive button replies trigger an automatic free-text answer. Neither
changes the top-level job status, which only reflects the engine's own send
attempt.
"""

from __future__ import annotations

import logging
import unicodedata
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from .appointments import AppointmentDirectory, AppointmentLookupError
from .audit_log import INBOUND_REPLY_MESSAGE_TYPE, INBOUND_REPLY_STATUS, AutomationAuditLogger
from .automation import MetaInboundEvent, MetaStatusEvent, iso_utc, read_automation, with_automation
from .config import Settings
from .errors import DeliveryError
from .jobs import NotificationJobRecord, NotificationJobRepository
from .meta_client import WhatsAppProviderClient, mask_phone, only_digits
from .models import (
    ButtonAction,
    InboundWebhookSummary,
    JobType,
    NonMessageFieldSummary,
    StatusWebhookSummary,
    WebhookProcessResponse,
)
from .templates import (
    build_button_reply_message,
    build_message_type,
    build_voucher_link,
    resolve_public_base_url,
)

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3
TRACKED_NON_MESSAGE_FIELDS = (
    "message_template_status_update",
    "message_template_quality_update",
    "history",
    "smb_message_echoes",
    "smb_app_state_sync",
)
_MESSAGE_FIELD = "messages"

_REPLY_MESSAGE_TYPES: dict[str, str] = {
    "confirm": "auto_appointment_reply_confirmed",
    "reschedule": "auto_appointment_reply_reschedule",
    "talk_to_jana": "auto_appointment_reply_talk_to_jana",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: object) -> list[Any]:
    return value if isinstance(value, list) else []


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def iter_change_values(payload: dict[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    for entry in _as_list(payload.get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            change = _as_dict(change)
            yield _text(change.get("field")) or _MESSAGE_FIELD, _as_dict(change.get("value"))


def normalize_meta_status(status: object) -> str:
    return _text(status).lower() or "unknown"


def map_status_to_log_status(status: str) -> str:
    return f"provider_{status}"


def extract_status_failure_message(errors: object) -> str | None:
    parts: list[str] = []
    for entry in _as_list(errors):
        if not isinstance(entry, dict):
            continue
        raw_code = entry.get("code")
        if isinstance(raw_code, bool):
            code = ""
        elif isinstance(raw_code, (int, float)):
            code = str(int(raw_code))
        else:
            code = _text(raw_code)
        text = _text(entry.get("message")) or _text(entry.get("title"))
        if code and text:
            parts.append(f"{code}: {text}")
        elif code or text:
            parts.append(code or text)
    return " | ".join(parts) if parts else None


def extract_button_selection(message: dict[str, Any]) -> str:
    message_type = message.get("type")
    if message_type == "interactive":
        interactive = _as_dict(message.get("interactive"))
        if interactive.get("type") != "button_reply":
            return ""
        reply = _as_dict(interactive.get("button_reply"))
        return _text(reply.get("title")) or _text(reply.get("id"))
    if message_type == "button":
        button = _as_dict(message.get("button"))
        return _text(button.get("text")) or _text(button.get("payload"))
    return ""


def _fold_text(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.strip().lower()


def map_button_selection_to_action(selection: str) -> ButtonAction | None:
    normalized = _fold_text(selection)
    if not normalized:
        return None
    if "confirm" in normalized:
        return "confirm"
    if "reagendar" in normalized:
        return "reschedule"
    if "falar" in normalized or "jana" in normalized:
        return "talk_to_jana"
    return None


def summarize_non_message_fields(payload: dict[str, Any]) -> NonMessageFieldSummary:
    summary = NonMessageFieldSummary(tracked={name: 0 for name in TRACKED_NON_MESSAGE_FIELDS})
    for field, _ in iter_change_values(payload):
        if field == _MESSAGE_FIELD:
            continue
        summary.total += 1
        if field in summary.tracked:
            summary.tracked[field] += 1
        elif field not in summary.unknown_fields:
            summary.unknown_fields.append(field)
    return summary


def _parse_epoch(value: object) -> datetime | None:
    text = _text(value) if not isinstance(value, (int, float)) else str(value)
    if not text:
        return None
    try:
        return datetime.fromtimestamp(int(float(text)), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def _message_type_for(job: NotificationJobRecord) -> str:
    job_type = JobType.parse(job.type)
    return build_message_type(job_type) if job_type is not None else "auto_notification"


class MetaWebhookProcessor:
    def __init__(
        self,
        *,
        settings: Settings,
        jobs: NotificationJobRepository,
        audit: AutomationAuditLogger,
        directory: AppointmentDirectory,
        client_factory: Callable[[], WhatsAppProviderClient],
    ) -> None:
        self._settings = settings
        self._jobs = jobs
        self._audit = audit
        self._directory = directory
        self._client_factory = client_factory

    def process_webhook_events(self, payload: dict[str, Any], *, webhook_origin: str | None = None) -> WebhookProcessResponse:
        return WebhookProcessResponse(
            ok=True,
            statuses=self.process_status_events(payload),
            inbound_messages=self.process_inbound_messages(payload, webhook_origin=webhook_origin),
            non_message_fields=summarize_non_message_fields(payload),
        )

    # Delivery status events

    def process_status_events(self, payload: dict[str, Any]) -> StatusWebhookSummary:
        summary = StatusWebhookSummary()
        for field, value in iter_change_values(payload):
            if field != _MESSAGE_FIELD:
                continue
            for raw_event in _as_list(value.get("statuses")):
                event = _as_dict(raw_event)
                provider_message_id = _text(event.get("id"))
                if not provider_message_id:
                    continue
                summary.processed += 1
                try:
                    outcome = self._apply_status_event(provider_message_id, event)
                except Exception:
                    logger.exception("failed to apply status event for provider message %s", provider_message_id)
                    continue
                if outcome == "unmatched":
                    summary.unmatched += 1
                    continue
                summary.matched_jobs += 1
                if outcome == "duplicate":
                    summary.duplicates += 1
        return summary

    def _apply_status_event(self, provider_message_id: str, event: dict[str, Any]) -> str:
        status = normalize_meta_status(event.get("status"))
        raw_timestamp = event.get("timestamp")
        provider_timestamp = str(raw_timestamp).strip() if raw_timestamp is not None else ""
        dedupe_key = (provider_message_id, status, provider_timestamp)
        failure_message = extract_status_failure_message(event.get("errors")) if status == "failed" else None

        for _ in range(MAX_WRITE_ATTEMPTS):
            job = self._jobs.find_by_provider_message_id(provider_message_id)
            if job is None:
                return "unmatched"
            automation = read_automation(job.payload)
            if automation.has_status_event(dedupe_key):
                return "duplicate"

            now_iso = iso_utc(_now_utc())
            automation.append_status_event(
                MetaStatusEvent(
                    at=now_iso,
                    provider_message_id=provider_message_id,
                    provider_status=status,
                    provider_timestamp=provider_timestamp or None,
                    recipient_id=_text(event.get("recipient_id")) or None,
                    conversation=event.get("conversation") if isinstance(event.get("conversation"), dict) else None,
                    pricing=event.get("pricing") if isinstance(event.get("pricing"), dict) else None,
                    errors=event.get("errors") if isinstance(event.get("errors"), list) else None,
                )
            )
            automation.provider_delivery_status = status
            automation.provider_delivery_updated_at = now_iso
            automation.provider_delivery_error = failure_message
            updated = self._jobs.conditional_transition(
                job.id,
                status=job.status,
                expected_status=job.status,
                expected_version=job.version,
                payload=with_automation(job.payload, automation),
                release_claim=False,
            )
            if updated is None:
                continue

            sent_at = None
            if status in {"delivered", "read"}:
                sent_at = _parse_epoch(raw_timestamp) or _now_utc()
            self._audit.record(
                tenant_id=job.tenant_id,
                appointment_id=job.appointment_id,
                message_type=_message_type_for(job),
                status=map_status_to_log_status(status),
                payload={
                    "job_id": job.id,
                    "provider_message_id": provider_message_id,
                    "provider_status": status,
                    "provider_timestamp": provider_timestamp or None,
                    "error": failure_message,
                },
                sent_at=sent_at,
            )
            return "applied"

        logger.warning("status event for %s lost %s concurrent write races", provider_message_id, MAX_WRITE_ATTEMPTS)
        return "conflict"

    # Inbound interactive replies

    def process_inbound_messages(self, payload: dict[str, Any], *, webhook_origin: str | None = None) -> InboundWebhookSummary:
        summary = InboundWebhookSummary()
        for field, value in iter_change_values(payload):
            if field != _MESSAGE_FIELD:
                continue
            for raw_message in _as_list(value.get("messages")):
                message = _as_dict(raw_message)
                selection = extract_button_selection(message)
                if not selection:
                    continue
                summary.processed += 1
                try:
                    outcome = self._handle_inbound_message(message, selection, webhook_origin=webhook_origin)
                except Exception:
                    logger.exception("failed to handle inbound WhatsApp reply %s", _text(message.get("id")))
                    continue
                if outcome == "replied":
                    summary.replied += 1
                elif outcome == "unmatched":
                    summary.unmatched += 1
                elif outcome == "ignored":
                    summary.ignored += 1
        return summary

    def _handle_inbound_message(self, message: dict[str, Any], selection: str, *, webhook_origin: str | None) -> str:
        action = map_button_selection_to_action(selection)
        if action is None:
            return "ignored"

        parent_provider_message_id = _text(_as_dict(message.get("context")).get("id"))
        customer_wa_id = only_digits(_text(message.get("from")))
        inbound_message_id = _text(message.get("id"))
        if not parent_provider_message_id or not customer_wa_id:
            return "ignored"

        job = self._jobs.find_by_provider_message_id(parent_provider_message_id)
        if job is None:
            return "unmatched"
        if not job.appointment_id:
            return "ignored"
        if inbound_message_id and read_automation(job.payload).has_inbound_event(inbound_message_id):
            return "ignored"

        voucher_link = self._voucher_link(job, webhook_origin)
        reply_text = build_button_reply_message(action, voucher_link)
        reply_provider_message_id: str | None = None
        reply_error: str | None = None
        try:
            sent = self._client_factory().send_text_message(to=customer_wa_id, text=reply_text)
            reply_provider_message_id = sent.provider_message_id
        except DeliveryError as exc:
            reply_error = exc.message
            logger.warning("auto-reply to %s failed: %s", mask_phone(customer_wa_id), exc.message)

        received_at = _parse_epoch(message.get("timestamp")) or _now_utc()
        self._record_inbound_event(
            job,
            MetaInboundEvent(
                at=iso_utc(_now_utc()),
                inbound_message_id=inbound_message_id or None,
                parent_provider_message_id=parent_provider_message_id,
                sender=customer_wa_id,
                selection=selection,
                action=action,
                reply_provider_message_id=reply_provider_message_id,
            ),
        )

        self._audit.record(
            tenant_id=job.tenant_id,
            appointment_id=job.appointment_id,
            message_type=INBOUND_REPLY_MESSAGE_TYPE,
            status=INBOUND_REPLY_STATUS,
            payload={
                "source_job_id": job.id,
                "parent_provider_message_id": parent_provider_message_id,
                "inbound_message_id": inbound_message_id or None,
                "from": customer_wa_id,
                "selection": selection,
                "action": action,
            },
            sent_at=received_at,
        )
        if reply_error is not None:
            return "ignored"

        self._audit.record(
            tenant_id=job.tenant_id,
            appointment_id=job.appointment_id,
            message_type=_REPLY_MESSAGE_TYPES[action],
            status="sent_auto_reply",
            payload={
                "source_job_id": job.id,
                "action": action,
                "to": customer_wa_id,
                "provider_message_id": reply_provider_message_id,
                "voucher_link": voucher_link if action == "confirm" else None,
            },
            sent_at=_now_utc(),
        )
        return "replied"

    def _record_inbound_event(self, job: NotificationJobRecord, event: MetaInboundEvent) -> None:
        current = job
        for _ in range(MAX_WRITE_ATTEMPTS):
            automation = read_automation(current.payload)
            if event.inbound_message_id and automation.has_inbound_event(event.inbound_message_id):
                return
            automation.append_inbound_event(event)
            automation.last_customer_reply_at = event.at
            automation.last_customer_reply_action = event.action
            automation.last_customer_reply_selection = event.selection
            updated = self._jobs.conditional_transition(
                current.id,
                status=current.status,
                expected_status=current.status,
                expected_version=current.version,
                payload=with_automation(current.payload, automation),
                release_claim=False,
            )
            if updated is not None:
                return
            refreshed = self._jobs.get(current.id)
            if refreshed is None:
                return
            current = refreshed
        logger.warning("inbound event for job %s lost %s concurrent write races", job.id, MAX_WRITE_ATTEMPTS)

    def _voucher_link(self, job: NotificationJobRecord, webhook_origin: str | None) -> str:
        base_url = resolve_public_base_url(webhook_origin, self._settings.public_base_url)
        attendance_code: str | None = None
        try:
            record = self._directory.get_appointment(tenant_id=job.tenant_id, appointment_id=job.appointment_id or "")
        except AppointmentLookupError as exc:
            logger.warning("voucher lookup failed for appointment %s: %s", job.appointment_id, exc)
            record = None
        if record is not None:
            attendance_code = record.attendance_code or None
        return build_voucher_link(base_url, appointment_id=job.appointment_id or "", attendance_code=attendance_code)
