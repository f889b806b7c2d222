from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, assert_never

from .automation import read_automation
from .config import Settings
from .errors import DeliveryError, DeliveryErrorKind
from .jobs import NotificationJobRecord
from .meta_client import ProviderSendResult, WhatsAppProviderClient, only_digits
from .models import JobType
from .service_window import CustomerServiceWindowEvaluator
from .templates import (
    AppointmentTemplateContext,
    TemplateContextBuilder,
    build_canceled_session_message,
    build_message_preview,
)

META_CLOUD_PROVIDER = "meta_cloud"


@dataclass(frozen=True)
class DeliveryResult:
    provider_message_id: str | None
    delivered_at: datetime
    delivery_mode: str
    message_preview: str
    template_name: str | None = None
    template_language: str | None = None
    recipient: str | None = None
    provider_name: str | None = None
    provider_response: dict[str, Any] = field(default_factory=dict)


class WhatsAppDeliveryService:
    """Turns a due job into one provider call, or a synthesized result in dry-run mode."""

    def __init__(
        self,
        *,
        settings: Settings,
        context_builder: TemplateContextBuilder,
        client_factory: Callable[[], WhatsAppProviderClient],
        window_evaluator: CustomerServiceWindowEvaluator | None = None,
    ) -> None:
        self._settings = settings
        self._context_builder = context_builder
        self._client_factory = client_factory
        self._window_evaluator = window_evaluator

    def deliver(self, job: NotificationJobRecord, job_type: JobType) -> DeliveryResult:
        if self._settings.automation_mode == "dry_run":
            return DeliveryResult(
                provider_message_id=None,
                delivered_at=datetime.now(timezone.utc),
                delivery_mode="dry_run",
                message_preview=build_message_preview(job),
            )

        if self._settings.automation_provider != META_CLOUD_PROVIDER:
            raise DeliveryError(
                DeliveryErrorKind.CONFIGURATION,
                "WhatsApp automation provider not configured for live sends (set WHATSAPP_AUTOMATION_PROVIDER=meta_cloud).",
            )

        if job_type is JobType.APPOINTMENT_CREATED:
            return self._send_template(
                job,
                template_name=self._settings.meta_created_template_name,
                template_language=self._settings.meta_created_template_language,
                delivery_mode="meta_cloud_template_created_appointment",
            )
        if job_type is JobType.APPOINTMENT_REMINDER:
            return self._send_template(
                job,
                template_name=self._settings.meta_reminder_template_name,
                template_language=self._settings.meta_reminder_template_language,
                delivery_mode="meta_cloud_template_appointment_reminder",
            )
        if job_type is JobType.APPOINTMENT_CANCELED:
            return self._send_canceled_session_message(job)
        assert_never(job_type)

    def _template_recipient(self, context: AppointmentTemplateContext) -> str:
        recipient = only_digits(context.recipient_phone) or only_digits(self._settings.meta_test_recipient)
        if not recipient:
            raise DeliveryError(
                DeliveryErrorKind.VALIDATION,
                "Client has no WhatsApp phone number and WHATSAPP_AUTOMATION_META_TEST_RECIPIENT is empty.",
            )
        return recipient

    def _send_template(
        self,
        job: NotificationJobRecord,
        *,
        template_name: str,
        template_language: str,
        delivery_mode: str,
    ) -> DeliveryResult:
        if not template_name.strip():
            raise DeliveryError(DeliveryErrorKind.CONFIGURATION, f"Template name for {job.type} not configured.")
        context = self._context_builder.load(job)
        recipient = self._template_recipient(context)
        sent = self._client_factory().send_template_message(
            to=recipient,
            template_name=template_name,
            language_code=template_language,
            body_parameters=context.body_parameters(),
        )
        return self._result(
            sent,
            delivery_mode=delivery_mode,
            message_preview=f"Template {template_name} ({template_language})",
            template_name=template_name,
            template_language=template_language,
        )

    def _send_canceled_session_message(self, job: NotificationJobRecord) -> DeliveryResult:
        automation = read_automation(job.payload)
        customer_wa_id = only_digits(automation.customer_wa_id)
        if not customer_wa_id:
            raise DeliveryError(
                DeliveryErrorKind.VALIDATION,
                "The 24h customer service window is not open for this appointment.",
            )
        # A retry may run after backoff has outlasted the window checked at queue time.
        if automation.retry_count > 0 and self._window_evaluator is not None and job.appointment_id:
            window = self._window_evaluator.evaluate(tenant_id=job.tenant_id, appointment_id=job.appointment_id)
            if not window.is_open:
                raise DeliveryError(
                    DeliveryErrorKind.VALIDATION,
                    f"The 24h customer service window closed before the retry ({window.reason}).",
                )
            customer_wa_id = only_digits(window.customer_wa_id) or customer_wa_id
        context = self._context_builder.load(job)
        message = build_canceled_session_message(context)
        sent = self._client_factory().send_text_message(to=customer_wa_id, text=message)
        return self._result(
            sent,
            delivery_mode="meta_cloud_session_appointment_canceled",
            message_preview=message,
        )

    @staticmethod
    def _result(
        sent: ProviderSendResult,
        *,
        delivery_mode: str,
        message_preview: str,
        template_name: str | None = None,
        template_language: str | None = None,
    ) -> DeliveryResult:
        return DeliveryResult(
            provider_message_id=sent.provider_message_id,
            delivered_at=sent.delivered_at,
            delivery_mode=delivery_mode,
            message_preview=message_preview,
            template_name=template_name,
            template_language=template_language,
            recipient=sent.recipient,
            provider_name=META_CLOUD_PROVIDER,
            provider_response=sent.response,
        )
