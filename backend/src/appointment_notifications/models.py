from __future__ import annotations

import math
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

NotificationJobStatus = Literal["pending", "sent", "failed"]
AutomationMode = Literal["disabled", "dry_run", "enabled"]
LifecycleSource = Literal["admin_create", "public_booking", "admin_cancel"]
ButtonAction = Literal["confirm", "reschedule", "talk_to_jana"]
ProcessorResultStatus = Literal["sent", "failed", "skipped"]
EnqueueStatus = Literal["queued", "skipped"]
WindowReason = Literal["open", "no_inbound", "expired"]

WHATSAPP_CHANNEL = "whatsapp"


class JobType(str, Enum):
    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_REMINDER = "appointment_reminder"
    APPOINTMENT_CANCELED = "appointment_canceled"

    @classmethod
    def parse(cls, value: object) -> JobType | None:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip())
        except ValueError:
            return None


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProcessorJobResult(_CamelModel):
    job_id: str
    appointment_id: str | None = None
    type: str
    status: ProcessorResultStatus
    reason: str | None = None


class ProcessorSummary(_CamelModel):
    enabled: bool
    mode: AutomationMode
    queue_enabled: bool
    total_scanned: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[ProcessorJobResult] = Field(default_factory=list)


class ProcessorRunRequest(_CamelModel):
    """Filters for a manual processor run; an invalid field is ignored on its own."""

    limit: int | None = None
    appointment_id: str | None = None
    job_id: str | None = None
    type: JobType | None = None

    @field_validator("limit", mode="before")
    @classmethod
    def _finite_limit(cls, value: object) -> int | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if isinstance(value, int):
            return value
        if not math.isfinite(value):
            return None
        return int(value)

    @field_validator("appointment_id", "job_id", mode="before")
    @classmethod
    def _strip_identifier(cls, value: object) -> str | None:
        if not isinstance(value, str):
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("type", mode="before")
    @classmethod
    def _known_job_type(cls, value: object) -> JobType | None:
        return JobType.parse(value)


class EnqueueResult(_CamelModel):
    status: EnqueueStatus
    reason: str | None = None
    job_id: str | None = None


class LifecycleScheduleResult(_CamelModel):
    created: EnqueueResult
    reminder: EnqueueResult


class CustomerServiceWindowCheck(_CamelModel):
    is_open: bool
    reason: WindowReason
    checked_at: str
    last_inbound_at: str | None = None
    customer_wa_id: str | None = None


class StatusWebhookSummary(_CamelModel):
    processed: int = 0
    matched_jobs: int = 0
    unmatched: int = 0
    duplicates: int = 0


class InboundWebhookSummary(_CamelModel):
    processed: int = 0
    replied: int = 0
    ignored: int = 0
    unmatched: int = 0


class NonMessageFieldSummary(_CamelModel):
    total: int = 0
    tracked: dict[str, int] = Field(default_factory=dict)
    unknown_fields: list[str] = Field(default_factory=list)


class WebhookProcessResponse(_CamelModel):
    ok: bool = True
    statuses: StatusWebhookSummary
    inbound_messages: InboundWebhookSummary
    non_message_fields: NonMessageFieldSummary


class ProcessResponse(_CamelModel):
    ok: bool = True
    summary: ProcessorSummary


class HealthResponse(BaseModel):
    ok: bool = True
