from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from appointment_notifications.appointments import InMemoryAppointmentDirectory
from appointment_notifications.audit_log import (
    INBOUND_REPLY_MESSAGE_TYPE,
    INBOUND_REPLY_STATUS,
    AutomationAuditLogger,
    InMemoryAutomationMessageLogRepository,
)
from appointment_notifications.automation import read_automation
from appointment_notifications.config import Settings
from appointment_notifications.delivery import WhatsAppDeliveryService
from appointment_notifications.jobs import InMemoryNotificationJobRepository
from appointment_notifications.models import JobType
from appointment_notifications.processor import NotificationDispatchProcessor
from appointment_notifications.scheduler import NotificationScheduler
from appointment_notifications.service_window import CustomerServiceWindowEvaluator
from appointment_notifications.templates import TemplateContextBuilder


def _settings(**overrides) -> Settings:
    values = {
        "automation_mode": "disabled",
        "queue_enabled": True,
        "auto_dispatch_on_queue": True,
    }
    values.update(overrides)
    return Settings(**values)


def _scheduler(settings: Settings, *, processor=None):
    jobs = InMemoryNotificationJobRepository()
    log = InMemoryAutomationMessageLogRepository()
    audit = AutomationAuditLogger(log)
    if processor is None:
        processor = NotificationDispatchProcessor(
            settings=settings,
            jobs=jobs,
            audit=audit,
            delivery=WhatsAppDeliveryService(
                settings=settings,
                context_builder=TemplateContextBuilder(
                    directory=InMemoryAppointmentDirectory(),
                    studio_location_line="",
                    timezone_name="America/Sao_Paulo",
                ),
                client_factory=MagicMock(),
            ),
        )
    scheduler = NotificationScheduler(
        settings=settings,
        jobs=jobs,
        audit=audit,
        processor=processor,
        window_evaluator=CustomerServiceWindowEvaluator(log_repository=log),
    )
    return scheduler, jobs, log


def test_duplicate_pending_enqueue_returns_existing_job() -> None:
    scheduler, jobs, log = _scheduler(_settings())
    scheduled_for = datetime.now(timezone.utc) + timedelta(hours=1)

    first = scheduler.enqueue(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        job_type=JobType.APPOINTMENT_CREATED,
        scheduled_for=scheduled_for,
        payload={"appointment_id": "appt-1"},
        source="admin_create",
    )
    second = scheduler.enqueue(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        job_type=JobType.APPOINTMENT_CREATED,
        scheduled_for=scheduled_for,
        payload={"appointment_id": "appt-1"},
        source="public_booking",
    )

    assert first.status == "queued"
    assert second.status == "skipped"
    assert second.reason == "duplicate_pending"
    assert second.job_id == first.job_id
    assert len(jobs.list_jobs()) == 1
    assert [entry.status for entry in log.list_entries()] == ["queued_auto"]

    stored = jobs.get(first.job_id)
    assert stored is not None
    automation = read_automation(stored.payload)
    assert automation.source == "admin_create"
    assert automation.mode_at_queue_time == "disabled"
    assert automation.queued_at is not None


def test_enqueue_respects_queue_flag_and_tenant_allow_list() -> None:
    disabled_scheduler, disabled_jobs, _ = _scheduler(_settings(queue_enabled=False))
    result = disabled_scheduler.enqueue(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        job_type=JobType.APPOINTMENT_CREATED,
        scheduled_for=datetime.now(timezone.utc),
        payload={},
        source="admin_create",
    )
    assert (result.status, result.reason) == ("skipped", "queue_disabled")
    assert disabled_jobs.list_jobs() == []

    restricted_scheduler, restricted_jobs, _ = _scheduler(_settings(allowed_tenant_ids=("tenant-2",)))
    result = restricted_scheduler.enqueue(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        job_type=JobType.APPOINTMENT_CREATED,
        scheduled_for=datetime.now(timezone.utc),
        payload={},
        source="admin_create",
    )
    assert (result.status, result.reason) == ("skipped", "tenant_not_allowed")
    assert restricted_jobs.list_jobs() == []


def test_lifecycle_scheduling_places_reminder_one_day_before_start() -> None:
    scheduler, jobs, _ = _scheduler(_settings())
    before = datetime.now(timezone.utc)

    result = scheduler.schedule_lifecycle_notifications(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        start_time="2025-03-10T15:00:00Z",
        source="admin_create",
    )

    assert result.created.status == "queued"
    assert result.reminder.status == "queued"
    reminder = jobs.get(result.reminder.job_id)
    created = jobs.get(result.created.job_id)
    assert reminder is not None and created is not None
    assert reminder.type == "appointment_reminder"
    assert reminder.scheduled_for == datetime(2025, 3, 9, 15, 0, tzinfo=timezone.utc)
    assert reminder.payload["reminder_window"] == "24h"
    assert reminder.payload["start_time"] == "2025-03-10T15:00:00Z"
    assert created.type == "appointment_created"
    assert before - timedelta(seconds=5) <= created.scheduled_for <= datetime.now(timezone.utc) + timedelta(seconds=5)


def test_lifecycle_scheduling_rejects_invalid_start_time() -> None:
    scheduler, jobs, _ = _scheduler(_settings())

    with pytest.raises(ValueError):
        scheduler.schedule_lifecycle_notifications(
            tenant_id="tenant-1",
            appointment_id="appt-1",
            start_time="tomorrow at noon",
            source="admin_create",
        )
    assert jobs.list_jobs() == []


def test_enqueue_dispatches_due_job_immediately_in_dry_run() -> None:
    scheduler, jobs, log = _scheduler(_settings(automation_mode="dry_run"))
    start = datetime.now(timezone.utc) + timedelta(days=3)

    result = scheduler.schedule_lifecycle_notifications(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        start_time=start,
        source="public_booking",
    )

    created = jobs.get(result.created.job_id)
    reminder = jobs.get(result.reminder.job_id)
    assert created is not None and reminder is not None
    assert created.status == "sent"
    assert reminder.status == "pending"
    assert "sent_auto_dry_run" in [entry.status for entry in log.list_entries()]


def test_immediate_dispatch_failure_does_not_fail_enqueue() -> None:
    processor = MagicMock()
    processor.process_pending.side_effect = RuntimeError("database unavailable")
    scheduler, jobs, _ = _scheduler(_settings(automation_mode="enabled"), processor=processor)

    result = scheduler.enqueue(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        job_type=JobType.APPOINTMENT_CREATED,
        scheduled_for=datetime.now(timezone.utc),
        payload={},
        source="admin_create",
    )

    assert result.status == "queued"
    processor.process_pending.assert_called_once_with(
        job_id=result.job_id,
        job_type=JobType.APPOINTMENT_CREATED,
        limit=1,
    )
    assert len(jobs.list_jobs()) == 1


def test_canceled_notification_requires_opt_in() -> None:
    scheduler, jobs, log = _scheduler(_settings())

    result = scheduler.schedule_canceled_notification(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        source="admin_cancel",
        notify_client=False,
    )

    assert (result.status, result.reason) == ("skipped", "notify_client_disabled")
    assert jobs.list_jobs() == []
    assert log.list_entries() == []


def test_canceled_notification_skipped_without_inbound_reply() -> None:
    scheduler, jobs, log = _scheduler(_settings())

    result = scheduler.schedule_canceled_notification(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        source="admin_cancel",
        notify_client=True,
    )

    assert (result.status, result.reason) == ("skipped", "customer_service_window_no_inbound")
    assert jobs.list_jobs() == []
    entries = log.list_entries()
    assert [(entry.type, entry.status) for entry in entries] == [("auto_appointment_canceled", "skipped_auto")]
    assert entries[0].payload["skipped_reason"] == "customer_service_window_no_inbound"


def test_canceled_notification_skipped_when_window_expired() -> None:
    scheduler, jobs, log = _scheduler(_settings())
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    log.append(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        message_type=INBOUND_REPLY_MESSAGE_TYPE,
        status=INBOUND_REPLY_STATUS,
        payload={"from": "5511988887777"},
        sent_at=now - timedelta(hours=25),
    )

    result = scheduler.schedule_canceled_notification(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        source="admin_cancel",
        notify_client=True,
        now=now,
    )

    assert result.reason == "customer_service_window_expired"
    assert jobs.list_jobs() == []


def test_canceled_notification_queued_inside_window() -> None:
    scheduler, jobs, log = _scheduler(_settings())
    now = datetime.now(timezone.utc)
    log.append(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        message_type=INBOUND_REPLY_MESSAGE_TYPE,
        status=INBOUND_REPLY_STATUS,
        payload={"from": "+55 11 98888-7777"},
        sent_at=now - timedelta(hours=2),
    )

    result = scheduler.schedule_canceled_notification(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        source="admin_cancel",
        notify_client=True,
        start_time="2026-03-12T13:00:00Z",
        now=now,
    )

    assert result.status == "queued"
    job = jobs.get(result.job_id)
    assert job is not None
    assert job.type == "appointment_canceled"
    assert job.payload["start_time"] == "2026-03-12T13:00:00Z"
    automation = read_automation(job.payload)
    assert automation.customer_wa_id == "5511988887777"
    assert automation.customer_service_window_result == "open"
    assert automation.customer_service_window_last_inbound_at is not None
