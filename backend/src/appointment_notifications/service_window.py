from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from .audit_log import INBOUND_REPLY_MESSAGE_TYPE, INBOUND_REPLY_STATUS, AutomationMessageLogRepository
from .automation import iso_utc, parse_iso_datetime
from .meta_client import only_digits
from .models import CustomerServiceWindowCheck

logger = logging.getLogger(__name__)

CUSTOMER_SERVICE_WINDOW = timedelta(hours=24)


class CustomerServiceWindowEvaluator:
    """Decides whether a free-text message may be sent to a customer.

    The messaging platform only accepts non-template messages within 24 hours
    of the customer's last inbound message, so the most recent logged inbound
    reply for the appointment is the source of truth.
    """

    def __init__(self, *, log_repository: AutomationMessageLogRepository) -> None:
        self._log_repository = log_repository

    def evaluate(self, *, tenant_id: str, appointment_id: str, now: datetime | None = None) -> CustomerServiceWindowCheck:
        current = now or datetime.now(timezone.utc)
        checked_at = iso_utc(current)
        try:
            entry = self._log_repository.latest_entry(
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                message_type=INBOUND_REPLY_MESSAGE_TYPE,
                status=INBOUND_REPLY_STATUS,
            )
        except Exception:
            logger.exception("customer service window lookup failed for appointment %s", appointment_id)
            return CustomerServiceWindowCheck(is_open=False, reason="no_inbound", checked_at=checked_at)

        if entry is None:
            return CustomerServiceWindowCheck(is_open=False, reason="no_inbound", checked_at=checked_at)

        last_inbound_at = parse_iso_datetime(entry.sent_at or entry.created_at)
        sender = entry.payload.get("from")
        customer_wa_id = only_digits(sender) if isinstance(sender, str) else ""
        if last_inbound_at is None or not customer_wa_id:
            return CustomerServiceWindowCheck(is_open=False, reason="no_inbound", checked_at=checked_at)

        elapsed = current - last_inbound_at
        is_open = timedelta(0) <= elapsed <= CUSTOMER_SERVICE_WINDOW
        return CustomerServiceWindowCheck(
            is_open=is_open,
            reason="open" if is_open else "expired",
            checked_at=checked_at,
            last_inbound_at=iso_utc(last_inbound_at),
            customer_wa_id=customer_wa_id,
        )
