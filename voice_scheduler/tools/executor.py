"""Executes the seven scheduling tools against the booking store.

Each tool takes typed arguments plus the session's ConversationContext and
returns a human-readable string the chat model can speak from.  Bad input,
missing identification, ownership mismatches and slot conflicts are all
answered with guidance text; only store failures propagate, so the
conversation loop can turn them into a terminal error for the turn.

Booking and rescheduling re-read the booked slots immediately before the
write.  The store's unique index on active slots catches anything that
changes in between, and that is reported as the same conflict.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from voice_scheduler.context import ConversationContext
from voice_scheduler.models import STATUS_SCHEDULED, Appointment, User
from voice_scheduler.services.metrics import metrics
from voice_scheduler.services.slots import available_slots, is_catalog_slot
from voice_scheduler.services.store import BookingStore, SlotConflictError
from voice_scheduler.tools.schemas import (
    BookAppointment,
    CancelAppointment,
    EndConversation,
    FetchSlots,
    IdentifyUser,
    ModifyAppointment,
    RetrieveAppointments,
    ToolCall,
    UnknownToolError,
    parse_tool_call,
)

logger = logging.getLogger(__name__)

PHONE_DIGITS = 10
MAX_LISTED_SLOTS = 5

_NON_DIGITS = re.compile(r"\D")
_TIME_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([AaPp])\.?\s*[Mm]\.?$|^(\d{1,2}):(\d{2})$")


# ── Normalization helpers ────────────────────────────────────────────


def normalize_phone(raw: str | None) -> str:
    """Strip everything but digits: ``"(555) 123-4567"`` → ``"5551234567"``."""
    return _NON_DIGITS.sub("", raw or "")


def format_phone(digits: str) -> str:
    """Render ten digits as ``555-123-4567`` for read-back."""
    return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"


def normalize_time(value: str | None) -> str:
    """Canonical slot-label form: zero-padded hour, uppercase AM/PM.

    ``"9:00 am"`` and ``"9 AM"`` both become ``"09:00 AM"``.  Anything that
    does not look like a clock time is returned stripped but unchanged.
    """
    value = (value or "").strip()
    match = _TIME_RE.match(value)
    if not match:
        return value
    hour, minute, period, hour_24, minute_24 = match.groups()
    if hour_24 is not None:
        return f"{int(hour_24):02d}:{minute_24}"
    return f"{int(hour):02d}:{minute or '00'} {period.upper()}M"


def lookup_or_create_user(store: BookingStore, phone: str, name: str | None = None) -> tuple[User, bool]:
    """Find the user for *phone* or create one.  Returns ``(user, created)``.

    An existing name is never overwritten; *name* only fills a blank one.
    """
    name = (name or "").strip() or None
    user = store.find_user_by_phone(phone)
    if user is None:
        user = store.create_user(phone, name=name)
        logger.info("Created user %s", user.id)
        return user, True
    if name and not user.name:
        user = store.update_user(user.id, name=name) or user
        logger.info("Filled in name for user %s", user.id)
    return user, False


def _describe(appointment: Appointment) -> str:
    suffix = f" for {appointment.description}" if appointment.description else ""
    return f"{appointment.date} at {appointment.time}{suffix}"


# ── Results ──────────────────────────────────────────────────────────


@dataclass
class ToolResult:
    """What a tool hands back to the conversation loop."""

    text: str
    context: ConversationContext
    end_call: bool = False
    outcome: str = "ok"  # "ok" or "rejected"


# ── Executor ─────────────────────────────────────────────────────────


class ToolExecutor:
    """Dispatches typed tool calls to their implementations."""

    def __init__(self, store: BookingStore, *, booking_status: str = STATUS_SCHEDULED) -> None:
        self._store = store
        self._booking_status = booking_status
        self._handlers: dict[str, Callable[[Any, ConversationContext], ToolResult]] = {
            "identify_user": self._identify_user,
            "fetch_slots": self._fetch_slots,
            "book_appointment": self._book_appointment,
            "retrieve_appointments": self._retrieve_appointments,
            "cancel_appointment": self._cancel_appointment,
            "modify_appointment": self._modify_appointment,
            "end_conversation": self._end_conversation,
        }

    def execute_named(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        context: ConversationContext,
    ) -> ToolResult:
        """Validate raw arguments for *name*, then execute."""
        try:
            call = parse_tool_call(name, arguments)
        except UnknownToolError:
            logger.warning("Model requested unknown tool %r", name)
            metrics.record_tool(name, "rejected")
            return ToolResult(f"Unknown tool: {name}", context, outcome="rejected")
        except ValidationError as exc:
            fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
            logger.info("Invalid arguments for %s: %s", name, fields)
            metrics.record_tool(name, "rejected")
            return ToolResult(
                f"I'm missing or couldn't understand some details for {name.replace('_', ' ')}"
                f" ({', '.join(fields) or 'arguments'}). Could you please repeat them?",
                context,
                outcome="rejected",
            )
        return self.execute(call, context)

    def execute(self, call: ToolCall, context: ConversationContext) -> ToolResult:
        handler = self._handlers[call.tool]
        try:
            result = handler(call, context)
        except Exception:
            metrics.record_tool(call.tool, "error")
            raise
        metrics.record_tool(call.tool, result.outcome)
        return result

    # ── identify_user ────────────────────────────────────────────────

    def _identify_user(self, call: IdentifyUser, context: ConversationContext) -> ToolResult:
        digits = normalize_phone(call.phone_number)

        if len(digits) > PHONE_DIGITS:
            return ToolResult(
                f"I heard {call.phone_number}, but that seems to have more than {PHONE_DIGITS} digits. "
                "Could you please repeat your phone number slowly?",
                context,
                outcome="rejected",
            )
        if len(digits) < PHONE_DIGITS:
            return ToolResult(
                f"I heard {call.phone_number}, but that seems to have fewer than {PHONE_DIGITS} digits. "
                "Could you please repeat your complete phone number?",
                context,
                outcome="rejected",
            )

        user, created = lookup_or_create_user(self._store, digits, call.name)
        formatted = format_phone(digits)

        if created:
            text = (
                f"Just to confirm, your phone number is {formatted}. "
                "I've created a new account for you. You don't have any appointments scheduled yet. "
                "Would you like to book an appointment?"
            )
        else:
            active = [a for a in self._store.list_appointments_by_user(user.id) if a.is_active]
            if not active:
                appointment_info = "You don't have any appointments scheduled."
            else:
                plural = "s" if len(active) > 1 else ""
                listing = "; ".join(_describe(a) for a in active)
                appointment_info = f"You have {len(active)} appointment{plural}: {listing}."
            greeting = f"Welcome back {user.name}!" if user.name else "Welcome back!"
            text = (
                f"Just to confirm, your phone number is {formatted}. {greeting} {appointment_info} "
                "Would you like to book a new appointment, or modify or cancel an existing one?"
            )

        context.user_id = user.id
        context.phone_number = digits
        context.user_name = user.name or None

        self._store.update_call_session(context.session_id, user_id=user.id, phone_number=digits)
        logger.info("Session %s identified as user %s (new=%s)", context.session_id, user.id, created)
        return ToolResult(text, context)

    # ── fetch_slots ──────────────────────────────────────────────────

    def _fetch_slots(self, call: FetchSlots, context: ConversationContext) -> ToolResult:
        booked = self._store.list_active_booked_slots()
        available = available_slots(booked, call.date)

        if not available:
            if call.date:
                text = f"No available slots on {call.date}. Would you like to check another date?"
            else:
                text = "No available slots at the moment. Please check back later."
            return ToolResult(text, context)

        listed = ", ".join(f"{s.date} at {s.time}" for s in available[:MAX_LISTED_SLOTS])
        more = len(available) - MAX_LISTED_SLOTS
        suffix = f" and {more} more" if more > 0 else ""
        return ToolResult(f"Available slots: {listed}{suffix}.", context)

    # ── book_appointment ─────────────────────────────────────────────

    def _book_appointment(self, call: BookAppointment, context: ConversationContext) -> ToolResult:
        if not context.is_identified:
            return ToolResult(
                "Please provide your phone number first so I can identify you before booking.",
                context,
                outcome="rejected",
            )

        date, time = call.date, normalize_time(call.time)
        taken = (
            f"Sorry, the slot on {date} at {time} is already booked. "
            "Would you like to pick another time?"
        )

        # Fresh read right before the write.
        if (date, time) in self._store.list_active_booked_slots():
            return ToolResult(taken, context, outcome="rejected")

        if not is_catalog_slot(date, time):
            return ToolResult(
                f"Sorry, {date} at {time} is not an available slot. Let me show you what's available.",
                context,
                outcome="rejected",
            )

        try:
            appointment = self._store.create_appointment(
                context.user_id,
                date,
                time,
                description=call.description,
                status=self._booking_status,
            )
        except SlotConflictError:
            logger.info("Slot %s %s taken between check and write", date, time)
            return ToolResult(taken, context, outcome="rejected")

        logger.info("Booked appointment %s for user %s", appointment.id, context.user_id)
        text = f"Appointment booked successfully for {date} at {time}. Your appointment ID is {appointment.id}."
        if call.description:
            text += f" Description: {call.description}"
        return ToolResult(text, context)

    # ── retrieve_appointments ────────────────────────────────────────

    def _retrieve_appointments(self, call: RetrieveAppointments, context: ConversationContext) -> ToolResult:
        if not context.is_identified:
            return ToolResult(
                "Please provide your phone number first so I can look up your appointments.",
                context,
                outcome="rejected",
            )

        active = [a for a in self._store.list_appointments_by_user(context.user_id) if a.is_active]
        if not active:
            return ToolResult("You don't have any appointments scheduled.", context)

        listing = "; ".join(
            f"ID {a.id}: {a.date} at {a.time} ({a.status})"
            + (f" - {a.description}" if a.description else "")
            for a in active
        )
        return ToolResult(f"Your appointments: {listing}", context)

    # ── cancel_appointment ───────────────────────────────────────────

    def _cancel_appointment(self, call: CancelAppointment, context: ConversationContext) -> ToolResult:
        if not context.is_identified:
            return ToolResult("Please provide your phone number first.", context, outcome="rejected")

        appointment = self._store.get_appointment(call.appointment_id)
        if appointment is None:
            return ToolResult(f"Appointment {call.appointment_id} not found.", context, outcome="rejected")
        if appointment.user_id != context.user_id:
            return ToolResult("You can only cancel your own appointments.", context, outcome="rejected")
        if not appointment.is_active:
            return ToolResult("This appointment is already cancelled.", context)

        self._store.cancel_appointment(appointment.id)
        logger.info("Cancelled appointment %s for user %s", appointment.id, context.user_id)
        return ToolResult(
            f"Appointment {appointment.id} on {appointment.date} at {appointment.time} has been cancelled.",
            context,
        )

    # ── modify_appointment ───────────────────────────────────────────

    def _modify_appointment(self, call: ModifyAppointment, context: ConversationContext) -> ToolResult:
        if not context.is_identified:
            return ToolResult("Please provide your phone number first.", context, outcome="rejected")

        if not call.new_date and not call.new_time:
            return ToolResult(
                "Please specify what you'd like to change - the date, time, or both.",
                context,
                outcome="rejected",
            )

        appointment = self._store.get_appointment(call.appointment_id)
        if appointment is None:
            return ToolResult(f"Appointment {call.appointment_id} not found.", context, outcome="rejected")
        if appointment.user_id != context.user_id:
            return ToolResult("You can only modify your own appointments.", context, outcome="rejected")

        target_date = call.new_date or appointment.date
        target_time = normalize_time(call.new_time) if call.new_time else appointment.time
        taken = f"Sorry, {target_date} at {target_time} is already booked."

        # An active appointment may stay on its own slot; a cancelled one
        # no longer holds it, so whoever does is a real conflict.
        own_slot = appointment.is_active and (target_date, target_time) == (appointment.date, appointment.time)
        if not own_slot and (target_date, target_time) in self._store.list_active_booked_slots():
            return ToolResult(taken, context, outcome="rejected")

        try:
            self._store.update_appointment(
                appointment.id,
                date=target_date,
                time=target_time,
                status=STATUS_SCHEDULED,
            )
        except SlotConflictError:
            logger.info("Slot %s %s taken between check and reschedule", target_date, target_time)
            return ToolResult(taken, context, outcome="rejected")

        logger.info("Rescheduled appointment %s to %s %s", appointment.id, target_date, target_time)
        return ToolResult(
            f"Appointment {appointment.id} has been rescheduled to {target_date} at {target_time}.",
            context,
        )

    # ── end_conversation ─────────────────────────────────────────────

    def _end_conversation(self, call: EndConversation, context: ConversationContext) -> ToolResult:
        return ToolResult(
            "Goodbye! Thank you for using our scheduling service.",
            context,
            end_call=True,
        )
