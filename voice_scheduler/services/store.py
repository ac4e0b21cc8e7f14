"""Durable booking store backed by SQLAlchemy.

Every public method runs in its own short transaction, so each call is
atomic at the level of a single entity read or write.  Callers that need
check-then-write semantics (booking, rescheduling) re-read immediately
before writing; the partial unique index on active (date, time) pairs
rejects whatever slips through that window.

Returned ORM instances are detached (``expire_on_commit=False``), so their
column attributes stay readable after the transaction closes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, create_engine, make_url, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from voice_scheduler.models import (
    SESSION_ACTIVE,
    SESSION_ENDED,
    STATUS_CANCELLED,
    STATUS_SCHEDULED,
    Appointment,
    Base,
    CallSession,
    ToolCallLog,
    User,
)

logger = logging.getLogger(__name__)

_USER_FIELDS = frozenset({"phone_number", "name"})
_APPOINTMENT_FIELDS = frozenset({"date", "time", "description", "status"})
_SESSION_FIELDS = frozenset({
    "user_id", "phone_number", "status", "transcript", "summary",
    "booked_appointments", "user_preferences", "ended_at",
})


class StorageError(Exception):
    """Raised when a store operation fails."""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class SlotConflictError(StorageError):
    """Raised when a write would put two active appointments on one slot."""


# The active-slot index is partial only where the dialect supports a WHERE
# clause on an index; elsewhere it would block rebooking cancelled slots.
SUPPORTED_BACKENDS = frozenset({"sqlite", "postgresql"})


def create_store_engine(url: str) -> Engine:
    """Create an engine for *url*.

    Only SQLite and PostgreSQL are supported; any other backend raises
    ``ValueError``.

    In-memory SQLite gets a single shared connection so that worker
    threads (``asyncio.to_thread``) all see the same database.  That
    connection is serialized by ``BookingStore``, which makes in-memory
    SQLite fine for tests and single-process use but a poor fit for many
    concurrent sessions.
    """
    backend = make_url(url).get_backend_name()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(f"Unsupported database backend: {backend}")
    if backend == "sqlite" and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True)


def _apply_patch(obj: Any, patch: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Unknown field(s) for {type(obj).__name__}: {', '.join(sorted(unknown))}")
    for key, value in patch.items():
        setattr(obj, key, value)


class BookingStore:
    """Users, appointments, call sessions and tool-call logs."""

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        if engine.dialect.name not in SUPPORTED_BACKENDS:
            raise ValueError(f"Unsupported database backend: {engine.dialect.name}")
        self._engine = engine
        # A static pool shares one connection across threads.
        self._lock = threading.RLock() if isinstance(engine.pool, StaticPool) else nullcontext()
        self._sessions = sessionmaker(engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str, *, create_tables: bool = True) -> BookingStore:
        return cls(create_store_engine(url), create_tables=create_tables)

    # ── Transactions ─────────────────────────────────────────────────

    @contextmanager
    def _transaction(self, operation: str, *, slot_write: bool = False) -> Iterator[Session]:
        """Run one unit of work, translating driver errors to StorageError."""
        try:
            with self._lock, self._sessions.begin() as db:
                yield db
        except IntegrityError as exc:
            if slot_write:
                logger.info("Store: %s rejected by active-slot constraint", operation)
                raise SlotConflictError(
                    "That slot is already held by another active appointment.",
                    operation=operation,
                ) from exc
            logger.error("Store: integrity error during %s: %s", operation, exc)
            raise StorageError(f"{operation} failed: {exc}", operation=operation) from exc
        except SQLAlchemyError as exc:
            logger.error("Store: %s failed: %s", operation, exc)
            raise StorageError(f"{operation} failed: {exc}", operation=operation) from exc

    # ── Users ────────────────────────────────────────────────────────

    def get_user(self, user_id: int) -> User | None:
        with self._transaction("get_user") as db:
            return db.get(User, user_id)

    def find_user_by_phone(self, phone_number: str) -> User | None:
        with self._transaction("find_user_by_phone") as db:
            return db.scalars(select(User).where(User.phone_number == phone_number)).first()

    def create_user(self, phone_number: str, name: str | None = None) -> User:
        with self._transaction("create_user") as db:
            user = User(phone_number=phone_number, name=name)
            db.add(user)
            db.flush()
            return user

    def update_user(self, user_id: int, **patch: Any) -> User | None:
        """Replace only the fields given in *patch*."""
        with self._transaction("update_user") as db:
            user = db.get(User, user_id)
            if user is None:
                return None
            _apply_patch(user, patch, _USER_FIELDS)
            return user

    # ── Appointments ─────────────────────────────────────────────────

    def get_appointment(self, appointment_id: int) -> Appointment | None:
        with self._transaction("get_appointment") as db:
            return db.get(Appointment, appointment_id)

    def create_appointment(
        self,
        user_id: int,
        date: str,
        time: str,
        description: str | None = None,
        status: str = STATUS_SCHEDULED,
    ) -> Appointment:
        with self._transaction("create_appointment", slot_write=status != STATUS_CANCELLED) as db:
            appointment = Appointment(
                user_id=user_id,
                date=date,
                time=time,
                description=description,
                status=status,
            )
            db.add(appointment)
            db.flush()
            return appointment

    def update_appointment(self, appointment_id: int, **patch: Any) -> Appointment | None:
        with self._transaction("update_appointment", slot_write=True) as db:
            appointment = db.get(Appointment, appointment_id)
            if appointment is None:
                return None
            _apply_patch(appointment, patch, _APPOINTMENT_FIELDS)
            db.flush()
            return appointment

    def cancel_appointment(self, appointment_id: int) -> Appointment | None:
        """Mark an appointment cancelled.  Cancelling twice is a no-op."""
        with self._transaction("cancel_appointment") as db:
            appointment = db.get(Appointment, appointment_id)
            if appointment is None:
                return None
            if appointment.status != STATUS_CANCELLED:
                appointment.status = STATUS_CANCELLED
            return appointment

    def list_appointments_by_user(self, user_id: int) -> list[Appointment]:
        """All of a user's appointments, newest first (cancelled included)."""
        with self._transaction("list_appointments_by_user") as db:
            stmt = (
                select(Appointment)
                .where(Appointment.user_id == user_id)
                .order_by(Appointment.created_at.desc(), Appointment.id.desc())
            )
            return list(db.scalars(stmt))

    def list_active_booked_slots(self) -> set[tuple[str, str]]:
        """Every (date, time) held by a non-cancelled appointment, any user."""
        with self._transaction("list_active_booked_slots") as db:
            rows = db.execute(
                select(Appointment.date, Appointment.time).where(Appointment.status != STATUS_CANCELLED)
            )
            return {(row.date, row.time) for row in rows}

    # ── Call sessions ────────────────────────────────────────────────

    def get_call_session(self, session_id: int) -> CallSession | None:
        with self._transaction("get_call_session") as db:
            return db.get(CallSession, session_id)

    def create_call_session(
        self,
        user_id: int | None = None,
        phone_number: str | None = None,
    ) -> CallSession:
        with self._transaction("create_call_session") as db:
            session = CallSession(user_id=user_id, phone_number=phone_number, status=SESSION_ACTIVE)
            db.add(session)
            db.flush()
            return session

    def update_call_session(self, session_id: int, **patch: Any) -> CallSession | None:
        with self._transaction("update_call_session") as db:
            session = db.get(CallSession, session_id)
            if session is None:
                return None
            _apply_patch(session, patch, _SESSION_FIELDS)
            return session

    def end_call_session(
        self,
        session_id: int,
        summary: str,
        appointments_snapshot: str | None = None,
        preferences_snapshot: str | None = None,
        transcript: str | None = None,
    ) -> CallSession | None:
        """Finalize a session.  Ending twice overwrites the stored fields."""
        with self._transaction("end_call_session") as db:
            session = db.get(CallSession, session_id)
            if session is None:
                return None
            session.status = SESSION_ENDED
            session.summary = summary
            session.booked_appointments = appointments_snapshot
            session.user_preferences = preferences_snapshot
            session.transcript = transcript
            session.ended_at = datetime.now(UTC)
            return session

    # ── Tool-call log ────────────────────────────────────────────────

    def append_tool_call_log(
        self,
        session_id: int,
        tool_name: str,
        args_json: str | None,
        result_json: str | None = None,
    ) -> ToolCallLog:
        with self._transaction("append_tool_call_log") as db:
            entry = ToolCallLog(
                session_id=session_id,
                tool_name=tool_name,
                parameters=args_json,
                result=result_json,
            )
            db.add(entry)
            db.flush()
            return entry

    def list_tool_call_logs(self, session_id: int) -> list[ToolCallLog]:
        with self._transaction("list_tool_call_logs") as db:
            stmt = (
                select(ToolCallLog)
                .where(ToolCallLog.session_id == session_id)
                .order_by(ToolCallLog.created_at, ToolCallLog.id)
            )
            return list(db.scalars(stmt))
