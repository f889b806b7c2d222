from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

logger = logging.getLogger(__name__)

INBOUND_REPLY_MESSAGE_TYPE = "auto_appointment_reply_inbound"
INBOUND_REPLY_STATUS = "received_auto_reply"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AutomationMessageLogEntry:
    entry_id: int
    tenant_id: str
    appointment_id: str | None
    type: str
    status: str
    payload: dict[str, Any]
    sent_at: datetime | None
    created_at: datetime


class AutomationMessageLogRepository(Protocol):
    def reset(self) -> None: ...

    def append(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        message_type: str,
        status: str,
        payload: dict[str, Any],
        sent_at: datetime | None = None,
    ) -> AutomationMessageLogEntry: ...

    def list_entries(self, *, tenant_id: str | None = None, appointment_id: str | None = None) -> list[AutomationMessageLogEntry]: ...

    def latest_entry(
        self,
        *,
        tenant_id: str,
        appointment_id: str,
        message_type: str,
        status: str,
    ) -> AutomationMessageLogEntry | None: ...


class InMemoryAutomationMessageLogRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = 1
        self._entries: list[AutomationMessageLogEntry] = []

    def reset(self) -> None:
        with self._lock:
            self._counter = 1
            self._entries.clear()

    def append(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        message_type: str,
        status: str,
        payload: dict[str, Any],
        sent_at: datetime | None = None,
    ) -> AutomationMessageLogEntry:
        with self._lock:
            entry = AutomationMessageLogEntry(
                entry_id=self._counter,
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                type=message_type,
                status=status,
                payload=copy.deepcopy(payload),
                sent_at=_coerce_utc(sent_at) if sent_at is not None else None,
                created_at=_now_utc(),
            )
            self._counter += 1
            self._entries.append(entry)
            return entry

    def list_entries(self, *, tenant_id: str | None = None, appointment_id: str | None = None) -> list[AutomationMessageLogEntry]:
        with self._lock:
            return [
                entry
                for entry in self._entries
                if (tenant_id is None or entry.tenant_id == tenant_id)
                and (appointment_id is None or entry.appointment_id == appointment_id)
            ]

    def latest_entry(
        self,
        *,
        tenant_id: str,
        appointment_id: str,
        message_type: str,
        status: str,
    ) -> AutomationMessageLogEntry | None:
        with self._lock:
            for entry in reversed(self._entries):
                if (
                    entry.tenant_id == tenant_id
                    and entry.appointment_id == appointment_id
                    and entry.type == message_type
                    and entry.status == status
                ):
                    return entry
        return None


class AutomationMessageLogBase(DeclarativeBase):
    pass


class _AutomationMessageLogRow(AutomationMessageLogBase):
    __tablename__ = "appointment_message_log"

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    appointment_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyAutomationMessageLogRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for NOTIFICATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AutomationMessageLogBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    @staticmethod
    def _entry(row: _AutomationMessageLogRow) -> AutomationMessageLogEntry:
        payload = json.loads(row.payload_json or "{}")
        return AutomationMessageLogEntry(
            entry_id=row.entry_id,
            tenant_id=row.tenant_id,
            appointment_id=row.appointment_id,
            type=row.type,
            status=row.status,
            payload=payload if isinstance(payload, dict) else {},
            sent_at=_coerce_utc(row.sent_at) if row.sent_at is not None else None,
            created_at=_coerce_utc(row.created_at),
        )

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AutomationMessageLogRow).delete()

    def append(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        message_type: str,
        status: str,
        payload: dict[str, Any],
        sent_at: datetime | None = None,
    ) -> AutomationMessageLogEntry:
        row = _AutomationMessageLogRow(
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            type=message_type,
            status=status,
            payload_json=json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False),
            sent_at=_coerce_utc(sent_at) if sent_at is not None else None,
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
                session.flush()
            return self._entry(row)

    def list_entries(self, *, tenant_id: str | None = None, appointment_id: str | None = None) -> list[AutomationMessageLogEntry]:
        stmt = select(_AutomationMessageLogRow)
        if tenant_id is not None:
            stmt = stmt.where(_AutomationMessageLogRow.tenant_id == tenant_id)
        if appointment_id is not None:
            stmt = stmt.where(_AutomationMessageLogRow.appointment_id == appointment_id)
        stmt = stmt.order_by(_AutomationMessageLogRow.entry_id.asc())
        with self._session() as session:
            return [self._entry(row) for row in session.execute(stmt).scalars().all()]

    def latest_entry(
        self,
        *,
        tenant_id: str,
        appointment_id: str,
        message_type: str,
        status: str,
    ) -> AutomationMessageLogEntry | None:
        stmt = (
            select(_AutomationMessageLogRow)
            .where(
                _AutomationMessageLogRow.tenant_id == tenant_id,
                _AutomationMessageLogRow.appointment_id == appointment_id,
                _AutomationMessageLogRow.type == message_type,
                _AutomationMessageLogRow.status == status,
            )
            .order_by(_AutomationMessageLogRow.created_at.desc(), _AutomationMessageLogRow.entry_id.desc())
            .limit(1)
        )
        with self._session() as session:
            row = session.execute(stmt).scalars().first()
            return None if row is None else self._entry(row)


def create_automation_message_log_repository(*, backend: str, database_url: str) -> AutomationMessageLogRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAutomationMessageLogRepository(database_url)
    if normalized == "inmemory":
        return InMemoryAutomationMessageLogRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")


class AutomationAuditLogger:
    """Writes audit entries without letting a log failure abort engine work."""

    def __init__(self, repository: AutomationMessageLogRepository) -> None:
        self._repository = repository

    @property
    def repository(self) -> AutomationMessageLogRepository:
        return self._repository

    def record(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        message_type: str,
        status: str,
        payload: dict[str, Any],
        sent_at: datetime | None = None,
    ) -> None:
        try:
            self._repository.append(
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                message_type=message_type,
                status=status,
                payload=payload,
                sent_at=sent_at,
            )
        except Exception:
            logger.exception(
                "failed to write automation audit entry type=%s status=%s appointment=%s",
                message_type,
                status,
                appointment_id,
            )
