from __future__ import annotations

import copy
import json
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from sqlalchemy import DateTime, Index, Integer, String, Text, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import WHATSAPP_CHANNEL

CLAIM_LEASE_SECONDS = 300


class NotificationJobNotFoundError(KeyError):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _provider_message_id_of(payload: dict[str, Any]) -> str | None:
    automation = payload.get("automation")
    if not isinstance(automation, dict):
        return None
    value = automation.get("provider_message_id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True)
class NotificationJobRecord:
    id: str
    tenant_id: str
    appointment_id: str | None
    channel: str
    type: str
    status: str
    scheduled_for: datetime
    payload: dict[str, Any]
    claimed_until: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime


class NotificationJobRepository(Protocol):
    def reset(self) -> None: ...

    def insert(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        job_type: str,
        scheduled_for: datetime,
        payload: dict[str, Any],
        channel: str = WHATSAPP_CHANNEL,
        status: str = "pending",
    ) -> NotificationJobRecord: ...

    def get(self, job_id: str) -> NotificationJobRecord | None: ...

    def find_pending_duplicate(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        channel: str,
        job_type: str,
    ) -> NotificationJobRecord | None: ...

    def list_due_jobs(
        self,
        *,
        now: datetime,
        limit: int,
        channel: str = WHATSAPP_CHANNEL,
        appointment_id: str | None = None,
        job_id: str | None = None,
        job_type: str | None = None,
    ) -> list[NotificationJobRecord]: ...

    def claim(self, job_id: str, *, now: datetime, lease_seconds: int = CLAIM_LEASE_SECONDS) -> NotificationJobRecord | None: ...

    def conditional_transition(
        self,
        job_id: str,
        *,
        status: str,
        expected_status: str | None,
        payload: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
        expected_version: int | None = None,
        release_claim: bool = True,
    ) -> NotificationJobRecord | None: ...

    def find_by_provider_message_id(self, provider_message_id: str) -> NotificationJobRecord | None: ...

    def list_jobs(self, *, tenant_id: str | None = None, appointment_id: str | None = None) -> list[NotificationJobRecord]: ...


class InMemoryNotificationJobRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = 1
        self._jobs: dict[str, NotificationJobRecord] = {}

    @staticmethod
    def _snapshot(row: NotificationJobRecord) -> NotificationJobRecord:
        return NotificationJobRecord(**{**row.__dict__, "payload": copy.deepcopy(row.payload)})

    def reset(self) -> None:
        with self._lock:
            self._counter = 1
            self._jobs.clear()

    def insert(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        job_type: str,
        scheduled_for: datetime,
        payload: dict[str, Any],
        channel: str = WHATSAPP_CHANNEL,
        status: str = "pending",
    ) -> NotificationJobRecord:
        with self._lock:
            job_id = f"njob_{self._counter:06d}"
            self._counter += 1
            now = _now_utc()
            row = NotificationJobRecord(
                id=job_id,
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                channel=channel,
                type=job_type,
                status=status,
                scheduled_for=_coerce_utc(scheduled_for),
                payload=copy.deepcopy(payload),
                claimed_until=None,
                version=1,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job_id] = row
            return self._snapshot(row)

    def get(self, job_id: str) -> NotificationJobRecord | None:
        with self._lock:
            row = self._jobs.get(job_id)
            return None if row is None else self._snapshot(row)

    def find_pending_duplicate(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        channel: str,
        job_type: str,
    ) -> NotificationJobRecord | None:
        with self._lock:
            for row in self._jobs.values():
                if (
                    row.status == "pending"
                    and row.tenant_id == tenant_id
                    and row.appointment_id == appointment_id
                    and row.channel == channel
                    and row.type == job_type
                ):
                    return self._snapshot(row)
        return None

    def list_due_jobs(
        self,
        *,
        now: datetime,
        limit: int,
        channel: str = WHATSAPP_CHANNEL,
        appointment_id: str | None = None,
        job_id: str | None = None,
        job_type: str | None = None,
    ) -> list[NotificationJobRecord]:
        current = _coerce_utc(now)
        with self._lock:
            due = [
                row
                for row in self._jobs.values()
                if row.status == "pending"
                and row.scheduled_for <= current
                and row.channel == channel
                and (appointment_id is None or row.appointment_id == appointment_id)
                and (job_id is None or row.id == job_id)
                and (job_type is None or row.type == job_type)
            ]
            due.sort(key=lambda value: (value.scheduled_for, value.created_at))
            return [self._snapshot(row) for row in due[: max(0, limit)]]

    def claim(self, job_id: str, *, now: datetime, lease_seconds: int = CLAIM_LEASE_SECONDS) -> NotificationJobRecord | None:
        current = _coerce_utc(now)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.status != "pending":
                return None
            if row.claimed_until is not None and row.claimed_until > current:
                return None
            claimed = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "claimed_until": current + timedelta(seconds=lease_seconds),
                    "version": row.version + 1,
                    "updated_at": _now_utc(),
                }
            )
            self._jobs[job_id] = claimed
            return self._snapshot(claimed)

    def conditional_transition(
        self,
        job_id: str,
        *,
        status: str,
        expected_status: str | None,
        payload: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
        expected_version: int | None = None,
        release_claim: bool = True,
    ) -> NotificationJobRecord | None:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                raise NotificationJobNotFoundError(job_id)
            if expected_status is not None and row.status != expected_status:
                return None
            if expected_version is not None and row.version != expected_version:
                return None
            updated = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "status": status,
                    "payload": copy.deepcopy(payload) if payload is not None else row.payload,
                    "scheduled_for": _coerce_utc(scheduled_for) if scheduled_for is not None else row.scheduled_for,
                    "claimed_until": None if release_claim else row.claimed_until,
                    "version": row.version + 1,
                    "updated_at": _now_utc(),
                }
            )
            self._jobs[job_id] = updated
            return self._snapshot(updated)

    def find_by_provider_message_id(self, provider_message_id: str) -> NotificationJobRecord | None:
        target = provider_message_id.strip()
        if not target:
            return None
        with self._lock:
            for row in self._jobs.values():
                if _provider_message_id_of(row.payload) == target:
                    return self._snapshot(row)
        return None

    def list_jobs(self, *, tenant_id: str | None = None, appointment_id: str | None = None) -> list[NotificationJobRecord]:
        with self._lock:
            rows = [
                row
                for row in self._jobs.values()
                if (tenant_id is None or row.tenant_id == tenant_id)
                and (appointment_id is None or row.appointment_id == appointment_id)
            ]
            rows.sort(key=lambda value: (value.created_at, value.id))
            return [self._snapshot(row) for row in rows]


class NotificationJobsBase(DeclarativeBase):
    pass


class _NotificationJobRow(NotificationJobsBase):
    __tablename__ = "notification_jobs"
    __table_args__ = (Index("ix_notification_jobs_status_scheduled_for", "status", "scheduled_for"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    appointment_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _dump_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class SqlAlchemyNotificationJobRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for NOTIFICATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            NotificationJobsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    @staticmethod
    def _record(row: _NotificationJobRow) -> NotificationJobRecord:
        payload = json.loads(row.payload_json or "{}")
        return NotificationJobRecord(
            id=row.id,
            tenant_id=row.tenant_id,
            appointment_id=row.appointment_id,
            channel=row.channel,
            type=row.type,
            status=row.status,
            scheduled_for=_coerce_utc(row.scheduled_for),
            payload=payload if isinstance(payload, dict) else {},
            claimed_until=_coerce_utc(row.claimed_until) if row.claimed_until is not None else None,
            version=row.version,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationJobRow).delete()

    def insert(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        job_type: str,
        scheduled_for: datetime,
        payload: dict[str, Any],
        channel: str = WHATSAPP_CHANNEL,
        status: str = "pending",
    ) -> NotificationJobRecord:
        now = _now_utc()
        row = _NotificationJobRow(
            id=f"njob_{secrets.token_hex(8)}",
            tenant_id=tenant_id,
            appointment_id=appointment_id,
            channel=channel,
            type=job_type,
            status=status,
            scheduled_for=_coerce_utc(scheduled_for),
            payload_json=_dump_payload(payload),
            provider_message_id=_provider_message_id_of(payload),
            claimed_until=None,
            version=1,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
            return self._record(row)

    def get(self, job_id: str) -> NotificationJobRecord | None:
        with self._session() as session:
            row = session.get(_NotificationJobRow, job_id)
            return None if row is None else self._record(row)

    def find_pending_duplicate(
        self,
        *,
        tenant_id: str,
        appointment_id: str | None,
        channel: str,
        job_type: str,
    ) -> NotificationJobRecord | None:
        stmt = select(_NotificationJobRow).where(
            _NotificationJobRow.status == "pending",
            _NotificationJobRow.tenant_id == tenant_id,
            _NotificationJobRow.channel == channel,
            _NotificationJobRow.type == job_type,
        )
        if appointment_id is None:
            stmt = stmt.where(_NotificationJobRow.appointment_id.is_(None))
        else:
            stmt = stmt.where(_NotificationJobRow.appointment_id == appointment_id)
        with self._session() as session:
            row = session.execute(stmt.limit(1)).scalars().first()
            return None if row is None else self._record(row)

    def list_due_jobs(
        self,
        *,
        now: datetime,
        limit: int,
        channel: str = WHATSAPP_CHANNEL,
        appointment_id: str | None = None,
        job_id: str | None = None,
        job_type: str | None = None,
    ) -> list[NotificationJobRecord]:
        stmt = select(_NotificationJobRow).where(
            _NotificationJobRow.status == "pending",
            _NotificationJobRow.scheduled_for <= _coerce_utc(now),
            _NotificationJobRow.channel == channel,
        )
        if appointment_id is not None:
            stmt = stmt.where(_NotificationJobRow.appointment_id == appointment_id)
        if job_id is not None:
            stmt = stmt.where(_NotificationJobRow.id == job_id)
        if job_type is not None:
            stmt = stmt.where(_NotificationJobRow.type == job_type)
        stmt = stmt.order_by(_NotificationJobRow.scheduled_for.asc(), _NotificationJobRow.created_at.asc())
        with self._session() as session:
            rows = session.execute(stmt.limit(max(0, limit))).scalars().all()
            return [self._record(row) for row in rows]

    def claim(self, job_id: str, *, now: datetime, lease_seconds: int = CLAIM_LEASE_SECONDS) -> NotificationJobRecord | None:
        current = _coerce_utc(now)
        stmt = (
            update(_NotificationJobRow)
            .where(
                _NotificationJobRow.id == job_id,
                _NotificationJobRow.status == "pending",
                (_NotificationJobRow.claimed_until.is_(None)) | (_NotificationJobRow.claimed_until <= current),
            )
            .values(
                claimed_until=current + timedelta(seconds=lease_seconds),
                version=_NotificationJobRow.version + 1,
                updated_at=_now_utc(),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            with session.begin():
                result = session.execute(stmt)
                if result.rowcount != 1:
                    return None
                row = session.get(_NotificationJobRow, job_id)
                return None if row is None else self._record(row)

    def conditional_transition(
        self,
        job_id: str,
        *,
        status: str,
        expected_status: str | None,
        payload: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
        expected_version: int | None = None,
        release_claim: bool = True,
    ) -> NotificationJobRecord | None:
        values: dict[str, Any] = {
            "status": status,
            "version": _NotificationJobRow.version + 1,
            "updated_at": _now_utc(),
        }
        if payload is not None:
            values["payload_json"] = _dump_payload(payload)
            values["provider_message_id"] = _provider_message_id_of(payload)
        if scheduled_for is not None:
            values["scheduled_for"] = _coerce_utc(scheduled_for)
        if release_claim:
            values["claimed_until"] = None

        stmt = update(_NotificationJobRow).where(_NotificationJobRow.id == job_id)
        if expected_status is not None:
            stmt = stmt.where(_NotificationJobRow.status == expected_status)
        if expected_version is not None:
            stmt = stmt.where(_NotificationJobRow.version == expected_version)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        with self._session() as session:
            with session.begin():
                result = session.execute(stmt)
                if result.rowcount != 1:
                    if session.get(_NotificationJobRow, job_id) is None:
                        raise NotificationJobNotFoundError(job_id)
                    return None
                row = session.get(_NotificationJobRow, job_id)
                return None if row is None else self._record(row)

    def find_by_provider_message_id(self, provider_message_id: str) -> NotificationJobRecord | None:
        target = provider_message_id.strip()
        if not target:
            return None
        stmt = (
            select(_NotificationJobRow)
            .where(_NotificationJobRow.provider_message_id == target)
            .order_by(_NotificationJobRow.created_at.desc())
            .limit(1)
        )
        with self._session() as session:
            row = session.execute(stmt).scalars().first()
            return None if row is None else self._record(row)

    def list_jobs(self, *, tenant_id: str | None = None, appointment_id: str | None = None) -> list[NotificationJobRecord]:
        stmt = select(_NotificationJobRow)
        if tenant_id is not None:
            stmt = stmt.where(_NotificationJobRow.tenant_id == tenant_id)
        if appointment_id is not None:
            stmt = stmt.where(_NotificationJobRow.appointment_id == appointment_id)
        stmt = stmt.order_by(_NotificationJobRow.created_at.asc(), _NotificationJobRow.id.asc())
        with self._session() as session:
            return [self._record(row) for row in session.execute(stmt).scalars().all()]


def create_notification_job_repository(*, backend: str, database_url: str) -> NotificationJobRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyNotificationJobRepository(database_url)
    if normalized == "inmemory":
        return InMemoryNotificationJobRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
