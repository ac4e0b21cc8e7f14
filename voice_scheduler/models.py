"""SQLAlchemy ORM entities for the booking store.

Four tables: users, appointments, call_sessions and tool_calls.  The
``uq_appointments_active_slot`` partial unique index is the store-level
guard against double booking: at most one non-cancelled appointment may
hold a given (date, time).  The index is partial on SQLite and PostgreSQL
only, which is why the store accepts no other backend.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ── Status vocabularies ──────────────────────────────────────────────

STATUS_SCHEDULED = "scheduled"
STATUS_CONFIRMED = "confirmed"
STATUS_PENDING = "pending"
STATUS_CANCELLED = "cancelled"

APPOINTMENT_STATUSES = (STATUS_SCHEDULED, STATUS_CONFIRMED, STATUS_PENDING, STATUS_CANCELLED)

SESSION_ACTIVE = "active"
SESSION_ENDED = "ended"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class User(Base):
    """A caller, keyed by a digits-only phone number."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.id} {self.phone_number}>"


class Appointment(Base):
    """A booked slot.  Never deleted; cancellation is a status change."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_active_slot",
            "date",
            "time",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    time: Mapped[str] = mapped_column(String(8), nullable=False)  # "09:00 AM"
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_SCHEDULED)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.status != STATUS_CANCELLED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date,
            "time": self.time,
            "description": self.description,
            "status": self.status,
        }

    def __repr__(self) -> str:
        return f"<Appointment {self.id} {self.date} {self.time} ({self.status})>"


class CallSession(Base):
    """One live conversation, finalized by the call summarizer."""

    __tablename__ = "call_sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=SESSION_ACTIVE)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    booked_appointments: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    user_preferences: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<CallSession {self.id} ({self.status})>"


class ToolCallLog(Base):
    """Append-only audit record of one tool invocation."""

    __tablename__ = "tool_calls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("call_sessions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    tool_name: Mapped[str] = mapped_column(Text, nullable=False)
    parameters: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
