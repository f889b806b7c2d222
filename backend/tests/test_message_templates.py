from __future__ import annotations

from datetime import datetime, timezone

import pytest

from appointment_notifications.appointments import (
    AppointmentLookupError,
    AppointmentRecord,
    ClientRecord,
    InMemoryAppointmentDirectory,
    resolve_messaging_first_name,
)
from appointment_notifications.errors import DeliveryError, DeliveryErrorKind
from appointment_notifications.jobs import NotificationJobRecord
from appointment_notifications.models import JobType
from appointment_notifications.templates import (
    SIGNATURE_LINE,
    TemplateContextBuilder,
    build_button_reply_message,
    build_canceled_session_message,
    build_message_preview,
    build_message_type,
    build_voucher_link,
    format_appointment_date,
    resolve_location_line,
    resolve_public_base_url,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _job(*, appointment_id: str | None = "appt-1", job_type: str = "appointment_created", payload=None) -> NotificationJobRecord:
    return NotificationJobRecord(
        id="njob_000001",
        tenant_id="tenant-1",
        appointment_id=appointment_id,
        channel="whatsapp",
        type=job_type,
        status="pending",
        scheduled_for=NOW,
        payload=payload or {},
        claimed_until=None,
        version=1,
        created_at=NOW,
        updated_at=NOW,
    )


def _builder(directory) -> TemplateContextBuilder:
    return TemplateContextBuilder(
        directory=directory,
        studio_location_line="Rua das Flores, 100",
        timezone_name="America/Sao_Paulo",
    )


@pytest.mark.parametrize(
    ("client", "expected"),
    [
        (ClientRecord(name="Ana Souza", public_first_name="Aninha", public_last_name="Souza"), "Aninha"),
        (ClientRecord(name="Ana Souza", public_last_name="Souza"), "Souza"),
        (ClientRecord(name="Ana Souza (VIP)", internal_reference="(Dona Ana)"), "Dona Ana"),
        (ClientRecord(name="Beatriz Lima (indicação Carla)"), "Beatriz"),
        (ClientRecord(name="   "), "Cliente"),
    ],
)
def test_resolve_messaging_first_name_policy(client: ClientRecord, expected: str) -> None:
    assert resolve_messaging_first_name(client) == expected


def test_format_appointment_date_uses_business_timezone() -> None:
    assert format_appointment_date("2025-03-10T15:00:00Z") == ("Segunda-feira, 10/03", "12:00")
    assert format_appointment_date(datetime(2025, 3, 15, 13, 30, tzinfo=timezone.utc)) == ("Sábado, 15/03", "10:30")


def test_format_appointment_date_placeholders_for_invalid_input() -> None:
    assert format_appointment_date("not-a-date") == ("--", "--:--")
    assert format_appointment_date(None) == ("--", "--:--")


def test_resolve_location_line_variants() -> None:
    studio = AppointmentRecord(appointment_id="a", tenant_id="t", start_time=None)
    assert resolve_location_line(studio, "Rua das Flores, 100") == "No estúdio: Rua das Flores, 100"
    assert resolve_location_line(studio, "  ") == "No estúdio"

    home_with_parts = AppointmentRecord(
        appointment_id="a",
        tenant_id="t",
        start_time=None,
        is_home_visit=True,
        address_street="Rua A",
        address_number="10",
        address_city="São Paulo",
    )
    assert resolve_location_line(home_with_parts, "") == "No endereço informado: Rua A, 10, São Paulo"

    home_with_client_address = AppointmentRecord(
        appointment_id="a",
        tenant_id="t",
        start_time=None,
        is_home_visit=True,
        client=ClientRecord(full_address="Av. Paulista, 1000 - Bela Vista"),
    )
    assert resolve_location_line(home_with_client_address, "") == "No endereço informado: Av. Paulista, 1000 - Bela Vista"

    home_unknown = AppointmentRecord(appointment_id="a", tenant_id="t", start_time=None, is_home_visit=True)
    assert resolve_location_line(home_unknown, "") == "Atendimento domiciliar (endereço a confirmar)"


def test_context_builder_loads_template_parameters() -> None:
    directory = InMemoryAppointmentDirectory()
    directory.upsert(
        AppointmentRecord(
            appointment_id="appt-1",
            tenant_id="tenant-1",
            start_time="2025-03-10T15:00:00Z",
            service_name="Massagem relaxante",
            client=ClientRecord(name="Ana Souza", phone="+55 11 99999-0000"),
        )
    )

    context = _builder(directory).load(_job())

    assert context.body_parameters() == [
        "Ana",
        "Massagem relaxante",
        "Segunda-feira, 10/03",
        "12:00",
        "No estúdio: Rua das Flores, 100",
    ]
    assert context.recipient_phone == "+55 11 99999-0000"


def test_context_builder_defaults_service_name_and_start_time_from_payload() -> None:
    directory = InMemoryAppointmentDirectory()
    directory.upsert(AppointmentRecord(appointment_id="appt-1", tenant_id="tenant-1", start_time=None))

    context = _builder(directory).load(_job(payload={"start_time": "2025-03-10T15:00:00Z"}))

    assert context.service_name == "Seu atendimento"
    assert context.date_label == "Segunda-feira, 10/03"
    assert context.client_name == "Cliente"


def test_context_builder_error_kinds() -> None:
    directory = InMemoryAppointmentDirectory()

    with pytest.raises(DeliveryError) as missing_id:
        _builder(directory).load(_job(appointment_id=None))
    assert missing_id.value.kind is DeliveryErrorKind.VALIDATION

    with pytest.raises(DeliveryError) as not_found:
        _builder(directory).load(_job())
    assert not_found.value.kind is DeliveryErrorKind.NOT_FOUND

    class _BrokenDirectory:
        def get_appointment(self, *, tenant_id: str, appointment_id: str):
            raise AppointmentLookupError("connection refused")

    with pytest.raises(DeliveryError) as lookup_failed:
        _builder(_BrokenDirectory()).load(_job())
    assert lookup_failed.value.kind is DeliveryErrorKind.TRANSIENT
    assert "connection refused" in lookup_failed.value.message


def test_message_type_and_preview_per_job_type() -> None:
    assert build_message_type(JobType.APPOINTMENT_CREATED) == "auto_appointment_created"
    assert build_message_type(JobType.APPOINTMENT_REMINDER) == "auto_appointment_reminder"
    assert build_message_type(JobType.APPOINTMENT_CANCELED) == "auto_appointment_canceled"

    preview = build_message_preview(_job(job_type="appointment_reminder", payload={"start_time": "2025-03-10T15:00:00Z"}))
    assert preview == "Automação WhatsApp (lembrete) • 2025-03-10T15:00:00Z"
    assert build_message_preview(_job(job_type="appointment_canceled")) == "Automação WhatsApp (agendamento cancelado)"


def test_button_reply_messages() -> None:
    confirm = build_button_reply_message("confirm", "https://example.test/voucher/ABC123")
    assert "https://example.test/voucher/ABC123" in confirm
    assert confirm.endswith(SIGNATURE_LINE)
    assert "reagendamento" in build_button_reply_message("reschedule", "")
    assert "Jana" in build_button_reply_message("talk_to_jana", "")


def test_canceled_session_message_mentions_slot() -> None:
    directory = InMemoryAppointmentDirectory()
    directory.upsert(
        AppointmentRecord(
            appointment_id="appt-1",
            tenant_id="tenant-1",
            start_time="2025-03-10T15:00:00Z",
            service_name="Drenagem",
            client=ClientRecord(public_first_name="Carla"),
        )
    )
    message = build_canceled_session_message(_builder(directory).load(_job(job_type="appointment_canceled")))

    assert message.startswith("Olá, Carla!")
    assert "Drenagem" in message
    assert "Segunda-feira, 10/03, às 12:00" in message


def test_voucher_link_helpers() -> None:
    assert resolve_public_base_url("https://app.example.test/api/whatsapp/meta/webhook", "https://fallback.test") == (
        "https://app.example.test"
    )
    assert resolve_public_base_url("ftp://files.example.test", "https://fallback.test/") == "https://fallback.test"
    assert resolve_public_base_url(None, "https://fallback.test") == "https://fallback.test"

    assert (
        build_voucher_link("https://app.example.test/", appointment_id="appt-1", attendance_code="ABC123")
        == "https://app.example.test/voucher/ABC123"
    )
    assert (
        build_voucher_link("https://app.example.test", appointment_id="appt-1", attendance_code=None)
        == "https://app.example.test/voucher/appt-1"
    )
