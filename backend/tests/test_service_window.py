from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from appointment_notifications.audit_log import (
    INBOUND_REPLY_MESSAGE_TYPE,
    INBOUND_REPLY_STATUS,
    InMemoryAutomationMessageLogRepository,
)
from appointment_notifications.service_window import CustomerServiceWindowEvaluator

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _log_inbound(log: InMemoryAutomationMessageLogRepository, *, at: datetime, sender: str | None = "+55 11 98888-7777") -> None:
    payload = {"from": sender} if sender is not None else {}
    log.append(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        message_type=INBOUND_REPLY_MESSAGE_TYPE,
        status=INBOUND_REPLY_STATUS,
        payload=payload,
        sent_at=at,
    )


def _evaluate(log) -> object:
    return CustomerServiceWindowEvaluator(log_repository=log).evaluate(
        tenant_id="tenant-1",
        appointment_id="appt-1",
        now=NOW,
    )


def test_window_without_inbound_reply() -> None:
    check = _evaluate(InMemoryAutomationMessageLogRepository())

    assert check.is_open is False
    assert check.reason == "no_inbound"
    assert check.checked_at == "2026-03-10T12:00:00Z"


def test_window_open_just_inside_twenty_four_hours() -> None:
    log = InMemoryAutomationMessageLogRepository()
    _log_inbound(log, at=NOW - timedelta(hours=24) + timedelta(seconds=1))

    check = _evaluate(log)

    assert check.is_open is True
    assert check.reason == "open"
    assert check.customer_wa_id == "5511988887777"
    assert check.last_inbound_at == "2026-03-09T12:00:01Z"


def test_window_expired_just_past_twenty_four_hours() -> None:
    log = InMemoryAutomationMessageLogRepository()
    _log_inbound(log, at=NOW - timedelta(hours=24) - timedelta(seconds=1))

    check = _evaluate(log)

    assert check.is_open is False
    assert check.reason == "expired"


def test_window_uses_latest_inbound_reply() -> None:
    log = InMemoryAutomationMessageLogRepository()
    _log_inbound(log, at=NOW - timedelta(days=3))
    _log_inbound(log, at=NOW - timedelta(hours=2), sender="5511977776666")

    check = _evaluate(log)

    assert check.is_open is True
    assert check.customer_wa_id == "5511977776666"


def test_window_requires_sender_digits() -> None:
    log = InMemoryAutomationMessageLogRepository()
    _log_inbound(log, at=NOW - timedelta(hours=1), sender=None)

    assert _evaluate(log).reason == "no_inbound"


def test_window_lookup_failure_is_treated_as_no_inbound() -> None:
    broken = MagicMock()
    broken.latest_entry.side_effect = RuntimeError("database unavailable")

    check = _evaluate(broken)

    assert check.is_open is False
    assert check.reason == "no_inbound"
