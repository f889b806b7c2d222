from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import assert_never
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .appointments import (
    AppointmentDirectory,
    AppointmentLookupError,
    AppointmentRecord,
    resolve_messaging_first_name,
)
from .automation import parse_iso_datetime
from .errors import DeliveryError, DeliveryErrorKind
from .jobs import NotificationJobRecord
from .models import ButtonAction, JobType

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "Seu atendimento"
SIGNATURE_LINE = "Flora | Estúdio Corpo & Alma Humanizado"

_PT_BR_WEEKDAYS = (
    "segunda-feira",
    "terça-feira",
    "quarta-feira",
    "quinta-feira",
    "sexta-feira",
    "sábado",
    "domingo",
)


@dataclass(frozen=True)
class AppointmentTemplateContext:
    client_name: str
    service_name: str
    date_label: str
    time_label: str
    location_line: str
    recipient_phone: str = ""

    def body_parameters(self) -> list[str]:
        return [self.client_name, self.service_name, self.date_label, self.time_label, self.location_line]


def _business_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError:
        logger.warning("unknown business timezone %s, falling back to America/Sao_Paulo", timezone_name)
        return ZoneInfo("America/Sao_Paulo")


def format_appointment_date(start_time: datetime | str | None, timezone_name: str = "America/Sao_Paulo") -> tuple[str, str]:
    """Return ``("Segunda-feira, 10/03", "12:00")`` style labels in the business timezone."""
    parsed = parse_iso_datetime(start_time)
    if parsed is None:
        return "--", "--:--"
    local = parsed.astimezone(_business_zone(timezone_name))
    weekday = _PT_BR_WEEKDAYS[local.weekday()]
    date_label = f"{weekday[0].upper()}{weekday[1:]}, {local.day:02d}/{local.month:02d}"
    return date_label, f"{local.hour:02d}:{local.minute:02d}"


def resolve_location_line(record: AppointmentRecord, studio_location_line: str) -> str:
    client_address = record.client.full_address.strip() or ", ".join(record.address_parts())
    if record.is_home_visit:
        if client_address:
            return f"No endereço informado: {client_address}"
        return "Atendimento domiciliar (endereço a confirmar)"
    if studio_location_line.strip():
        return f"No estúdio: {studio_location_line.strip()}"
    return "No estúdio"


class TemplateContextBuilder:
    def __init__(self, *, directory: AppointmentDirectory, studio_location_line: str, timezone_name: str) -> None:
        self._directory = directory
        self._studio_location_line = studio_location_line
        self._timezone_name = timezone_name

    def load_appointment(self, job: NotificationJobRecord) -> AppointmentRecord:
        if not job.appointment_id:
            raise DeliveryError(DeliveryErrorKind.VALIDATION, "Job has no appointment_id to build the message.")
        try:
            record = self._directory.get_appointment(tenant_id=job.tenant_id, appointment_id=job.appointment_id)
        except AppointmentLookupError as exc:
            raise DeliveryError(
                DeliveryErrorKind.TRANSIENT,
                f"Failed to load appointment data for WhatsApp message: {exc}",
            ) from exc
        if record is None:
            raise DeliveryError(DeliveryErrorKind.NOT_FOUND, "Appointment not found for WhatsApp message.")
        return record

    def load(self, job: NotificationJobRecord) -> AppointmentTemplateContext:
        record = self.load_appointment(job)
        start_time = record.start_time or job.payload.get("start_time")
        date_label, time_label = format_appointment_date(start_time, self._timezone_name)
        return AppointmentTemplateContext(
            client_name=resolve_messaging_first_name(record.client),
            service_name=record.service_name.strip() or DEFAULT_SERVICE_NAME,
            date_label=date_label,
            time_label=time_label,
            location_line=resolve_location_line(record, self._studio_location_line),
            recipient_phone=record.client.phone,
        )


def build_message_type(job_type: JobType) -> str:
    if job_type is JobType.APPOINTMENT_CREATED:
        return "auto_appointment_created"
    if job_type is JobType.APPOINTMENT_REMINDER:
        return "auto_appointment_reminder"
    if job_type is JobType.APPOINTMENT_CANCELED:
        return "auto_appointment_canceled"
    assert_never(job_type)


def build_message_preview(job: NotificationJobRecord) -> str:
    start_time = job.payload.get("start_time")
    suffix = f" • {start_time}" if isinstance(start_time, str) and start_time else ""
    job_type = JobType.parse(job.type)
    if job_type is JobType.APPOINTMENT_CREATED:
        return f"Automação WhatsApp (agendamento criado){suffix}"
    if job_type is JobType.APPOINTMENT_REMINDER:
        return f"Automação WhatsApp (lembrete){suffix}"
    if job_type is JobType.APPOINTMENT_CANCELED:
        return "Automação WhatsApp (agendamento cancelado)"
    return "Automação WhatsApp"


def build_button_reply_message(action: ButtonAction, voucher_link: str) -> str:
    if action == "confirm":
        return (
            "Perfeito! Seu agendamento está confirmado ✅\n\n"
            "Aqui está o seu voucher para facilitar:\n"
            f"{voucher_link}\n\n"
            f"{SIGNATURE_LINE}"
        )
    if action == "reschedule":
        return (
            "Perfeito! Iniciando seu reagendamento ✅\n\n"
            "Vou registrar sua solicitação e a Jana/estúdio dará sequência por aqui.\n\n"
            f"{SIGNATURE_LINE}"
        )
    return (
        "Perfeito! Vou sinalizar que você quer falar com a Jana ✅\n\n"
        "Ela (ou o estúdio) continua o atendimento por aqui.\n\n"
        f"{SIGNATURE_LINE}"
    )


def build_canceled_session_message(context: AppointmentTemplateContext) -> str:
    return (
        f"Olá, {context.client_name}! Tudo bem?\n\n"
        "Aqui é a Flora, assistente virtual do Estúdio Corpo & Alma Humanizado. 🌿\n\n"
        "⚠️ Estou passando para avisar que o horário abaixo foi cancelado:\n\n"
        f"✨ *Seu cuidado:* {context.service_name}\n"
        f"🗓️ *Horário cancelado:* {context.date_label}, às {context.time_label}\n"
        f"📍 *Nosso ponto de encontro:* {context.location_line}\n\n"
        "Se precisar, responda por aqui que ajudamos com um novo horário.\n\n"
        f"{SIGNATURE_LINE}"
    )


def resolve_public_base_url(webhook_origin: str | None, default: str) -> str:
    if webhook_origin:
        parts = urlsplit(webhook_origin.strip())
        if parts.scheme in {"http", "https"} and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
    return default.rstrip("/")


def build_voucher_path(*, appointment_id: str | None, attendance_code: str | None) -> str:
    identifier = (attendance_code or "").strip() or (appointment_id or "").strip()
    return f"/voucher/{identifier}" if identifier else ""


def build_voucher_link(base_url: str, *, appointment_id: str, attendance_code: str | None) -> str:
    return f"{base_url.rstrip('/')}{build_voucher_path(appointment_id=appointment_id, attendance_code=attendance_code)}"
