"""Typed view over the engine-owned ``payload.automation`` document of a job.

The payload of a notification job has two zones: business data supplied by
whoever scheduled the job (``start_time``, ``reminder_window`` ...) and the
``automation`` sub-document that only the engine writes. The engine reads the
sub-document through :class:`AutomationMetadata`, which validates its shape
and keeps the two event ring buffers bounded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

RING_BUFFER_LIMIT = 20


def iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso_datetime(value: object) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MetaStatusEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    at: str
    provider_message_id: str
    provider_status: str
    provider_timestamp: str | None = None
    recipient_id: str | None = None
    conversation: dict[str, Any] | None = None
    pricing: dict[str, Any] | None = None
    errors: list[Any] | None = None

    def dedupe_key(self) -> tuple[str, str, str]:
        return (self.provider_message_id, self.provider_status, self.provider_timestamp or "")


class MetaInboundEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    at: str
    inbound_message_id: str | None = None
    parent_provider_message_id: str | None = None
    sender: str | None = Field(default=None, alias="from")
    selection: str | None = None
    action: str | None = None
    reply_provider_message_id: str | None = None


def _keep_latest(events: list[Any]) -> list[Any]:
    return events[-RING_BUFFER_LIMIT:]


def _valid_events(model: type[BaseModel], value: object, field_name: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("discarding non-list %s in automation metadata", field_name)
        return []
    events: list[Any] = []
    for item in value:
        try:
            events.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning("dropping malformed %s entry: %s", field_name, exc.errors()[:1])
    return events


class AutomationMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    queued_at: str | None = None
    source: str | None = None
    mode_at_queue_time: str | None = None
    queue_enabled: bool | None = None

    processed_at: str | None = None
    provider_accepted_at: str | None = None
    provider_name: str | None = None
    delivery_mode: str | None = None
    provider_message_id: str | None = None
    template_name: str | None = None
    template_language: str | None = None
    recipient: str | None = None
    message_preview: str | None = None
    provider_response: dict[str, Any] | None = None
    sent_at: str | None = None

    retry_count: int = 0
    retry_scheduled_at: str | None = None
    retry_next_at: str | None = None
    retry_last_error: str | None = None
    failed_at: str | None = None
    error: str | None = None

    provider_delivery_status: str | None = None
    provider_delivery_updated_at: str | None = None
    provider_delivery_error: str | None = None
    meta_status_events: list[MetaStatusEvent] = Field(default_factory=list)

    meta_inbound_events: list[MetaInboundEvent] = Field(default_factory=list)
    last_customer_reply_at: str | None = None
    last_customer_reply_action: str | None = None
    last_customer_reply_selection: str | None = None

    customer_wa_id: str | None = None
    customer_service_window_checked_at: str | None = None
    customer_service_window_last_inbound_at: str | None = None
    customer_service_window_result: str | None = None

    @field_validator("meta_status_events", mode="before")
    @classmethod
    def _drop_malformed_status_events(cls, value: object) -> list[Any]:
        return _valid_events(MetaStatusEvent, value, "meta_status_events")

    @field_validator("meta_inbound_events", mode="before")
    @classmethod
    def _drop_malformed_inbound_events(cls, value: object) -> list[Any]:
        return _valid_events(MetaInboundEvent, value, "meta_inbound_events")

    @field_validator("meta_status_events", "meta_inbound_events", mode="after")
    @classmethod
    def _bound_ring_buffer(cls, value: list[Any]) -> list[Any]:
        return _keep_latest(value)

    @field_validator("retry_count", mode="before")
    @classmethod
    def _coerce_retry_count(cls, value: object) -> int:
        if isinstance(value, bool):
            return 0
        if isinstance(value, (int, float)):
            return max(0, int(value))
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return 0

    def has_status_event(self, key: tuple[str, str, str]) -> bool:
        return any(event.dedupe_key() == key for event in self.meta_status_events)

    def has_inbound_event(self, inbound_message_id: str) -> bool:
        return any(event.inbound_message_id == inbound_message_id for event in self.meta_inbound_events)

    def append_status_event(self, event: MetaStatusEvent) -> None:
        self.meta_status_events = _keep_latest([*self.meta_status_events, event])

    def append_inbound_event(self, event: MetaInboundEvent) -> None:
        self.meta_inbound_events = _keep_latest([*self.meta_inbound_events, event])

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def read_automation(payload: dict[str, Any] | None) -> AutomationMetadata:
    """Validate the stored document, dropping only the fields that fail validation."""
    raw = (payload or {}).get("automation")
    if not isinstance(raw, dict):
        return AutomationMetadata()
    document = dict(raw)
    while True:
        try:
            return AutomationMetadata.model_validate(document)
        except ValidationError as exc:
            invalid = {error["loc"][0] for error in exc.errors() if error["loc"]} & set(document)
            if not invalid:
                logger.warning("discarding malformed automation metadata: %s", exc.errors()[:3])
                return AutomationMetadata()
            logger.warning("dropping malformed automation fields: %s", sorted(invalid))
            for key in invalid:
                document.pop(key, None)


def with_automation(payload: dict[str, Any] | None, automation: AutomationMetadata) -> dict[str, Any]:
    return {**(payload or {}), "automation": automation.to_document()}


def merge_automation(payload: dict[str, Any] | None, **changes: Any) -> dict[str, Any]:
    document = read_automation(payload).model_dump(by_alias=True)
    document.update(changes)
    return with_automation(payload, AutomationMetadata.model_validate(document))
