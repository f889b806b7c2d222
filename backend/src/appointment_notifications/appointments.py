from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

DEFAULT_CLIENT_NAME = "Cliente"

_TRAILING_REFERENCE_RE = re.compile(r"\s*\([^)]*\)\s*$")


class AppointmentLookupError(RuntimeError):
    """Raised when the appointment store cannot be queried."""


@dataclass(frozen=True)
class ClientRecord:
    name: str = ""
    full_address: str = ""
    public_first_name: str = ""
    public_last_name: str = ""
    internal_reference: str = ""
    phone: str = ""


@dataclass(frozen=True)
class AppointmentRecord:
    appointment_id: str
    tenant_id: str
    start_time: datetime | str | None
    service_name: str = ""
    is_home_visit: bool = False
    attendance_code: str = ""
    address_street: str = ""
    address_number: str = ""
    address_district: str = ""
    address_city: str = ""
    address_state: str = ""
    client: ClientRecord = field(default_factory=ClientRecord)

    def address_parts(self) -> list[str]:
        parts = [
            self.address_street,
            self.address_number,
            self.address_district,
            self.address_city,
            self.address_state,
        ]
        return [value.strip() for value in parts if value and value.strip()]


class AppointmentDirectory(Protocol):
    def get_appointment(self, *, tenant_id: str, appointment_id: str) -> AppointmentRecord | None: ...


class InMemoryAppointmentDirectory:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._appointments: dict[tuple[str, str], AppointmentRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._appointments.clear()

    def upsert(self, record: AppointmentRecord) -> AppointmentRecord:
        with self._lock:
            self._appointments[(record.tenant_id, record.appointment_id)] = record
        return record

    def get_appointment(self, *, tenant_id: str, appointment_id: str) -> AppointmentRecord | None:
        with self._lock:
            return self._appointments.get((tenant_id, appointment_id))


def _first_word(value: str) -> str:
    words = value.split()
    return words[0] if words else ""


def resolve_messaging_first_name(client: ClientRecord) -> str:
    """Pick the name used to greet a client in outbound messages.

    Public first name wins, then the public last name, then the internal
    reference, then the first word of the raw name once its "(reference)"
    suffix is removed. Falls back to a generic label.
    """
    public_first = client.public_first_name.strip()
    if public_first:
        return public_first
    public_last = client.public_last_name.strip()
    if public_last:
        return public_last
    reference = client.internal_reference.strip().strip("()").strip()
    if reference:
        return reference
    internal = client.name.strip()
    stripped = _TRAILING_REFERENCE_RE.sub("", internal).strip()
    return _first_word(stripped or internal) or DEFAULT_CLIENT_NAME
