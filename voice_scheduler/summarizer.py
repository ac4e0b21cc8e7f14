"""Post-call transcript reconciliation.

After a call ends, the transcript is run through a structured-extraction
model that pulls out who called and which bookings and cancellations they
clearly confirmed.  Those requests are then applied to the store, skipping
anything that already happened during the call through the tools, and the
session is finalized exactly once.

Running the summarizer twice over the same transcript creates nothing new
the second time: every booking request is checked against the caller's
active appointments by (date, normalized time) before it is written.
"""

from __future__ import annotations

import json
import logging

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from voice_scheduler import config
from voice_scheduler.models import STATUS_PENDING, Appointment, CallSession, User
from voice_scheduler.services.metrics import metrics
from voice_scheduler.services.store import BookingStore, SlotConflictError
from voice_scheduler.tools.executor import PHONE_DIGITS, lookup_or_create_user, normalize_phone, normalize_time

logger = logging.getLogger(__name__)

DEFAULT_BOOKING_DESCRIPTION = "Appointment booked via voice call"
DEFAULT_SUMMARY = "Call completed."
FALLBACK_SUMMARY_WITH_TRANSCRIPT = "Call completed. Transcript has been saved."


# ── Extraction schema ────────────────────────────────────────────────


class BookingRequest(BaseModel):
    date: str | None = Field(None, description="Appointment date in YYYY-MM-DD format")
    time: str | None = Field(None, description="Appointment time such as '9:00 AM' or '2:30 PM'")
    description: str | None = Field(None, description="What the appointment is for")


class CancellationRequest(BaseModel):
    date: str | None = Field(None, description="Date of the appointment to cancel")
    time: str | None = Field(None, description="Time of the appointment to cancel")


class CallExtraction(BaseModel):
    """Appointment information extracted from a voice call transcript."""

    user_name: str | None = Field(None, description="The caller's name if mentioned")
    phone_number: str | None = Field(None, description="The caller's phone number, digits only")
    booking_requests: list[BookingRequest] = Field(
        default_factory=list,
        description="Appointments the caller clearly confirmed they want to book",
    )
    cancellation_requests: list[CancellationRequest] = Field(
        default_factory=list,
        description="Appointments the caller clearly confirmed they want to cancel",
    )
    summary: str = Field("", description="A 2-3 sentence summary of what was discussed and accomplished")
    user_preferences: list[str] = Field(
        default_factory=list,
        description="Preferences mentioned, like preferred times or special needs",
    )


# ── Result ───────────────────────────────────────────────────────────


class AppointmentSnapshot(BaseModel):
    id: int
    date: str
    time: str
    description: str | None = None
    status: str


class CallSummary(BaseModel):
    summary: str
    appointments: list[AppointmentSnapshot] = Field(default_factory=list)
    user_preferences: list[str] = Field(default_factory=list)
    user_name: str | None = None
    phone_number: str | None = None
    new_appointments_created: int = 0


# ── Extraction ───────────────────────────────────────────────────────

EXTRACTION_SYSTEM_PROMPT = (
    "You are a precise data extraction assistant. "
    "Extract appointment information from voice call transcripts."
)

EXTRACTION_PROMPT_TEMPLATE = """Analyze this voice call transcript and extract appointment information.

CONVERSATION TRANSCRIPT:
{transcript}

TOOL ACTIVITY DURING THE CALL:
{tool_activity}

Rules:
- Only include bookings the caller clearly confirmed. Asking about availability is not a booking.
- Only include cancellations the caller clearly confirmed.
- Phone numbers are 10 digits with all formatting removed.
- Dates are YYYY-MM-DD; assume the current year ({year}) if none was given.
- Leave lists empty when nothing was confirmed."""


def _build_extraction_llm():
    """Build the cheaper extraction model, bound to the CallExtraction schema."""
    llm = ChatAnthropic(
        model=config.EXTRACTION_MODEL_NAME,
        api_key=config.ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=1024,
        timeout=config.LLM_TIMEOUT_SECONDS,
    )
    return llm.with_structured_output(CallExtraction)


def _extract(llm, transcript: str, tool_activity: str, year: int) -> CallExtraction:
    prompt = EXTRACTION_PROMPT_TEMPLATE.format(
        transcript=transcript or "No transcript available",
        tool_activity=tool_activity or "None",
        year=year,
    )
    with metrics.track("anthropic", "call_extraction"):
        result = llm.invoke([SystemMessage(content=EXTRACTION_SYSTEM_PROMPT), HumanMessage(content=prompt)])
    return CallExtraction.model_validate(result)


# ── Reconciliation ───────────────────────────────────────────────────


def _resolve_user(
    store: BookingStore,
    session: CallSession,
    extraction: CallExtraction,
) -> User | None:
    """Session user first; otherwise look up or create one from the phone number."""
    name = (extraction.user_name or "").strip() or None

    if session.user_id is not None:
        user = store.get_user(session.user_id)
        if user is not None:
            if name and not user.name:
                user = store.update_user(user.id, name=name) or user
            return user

    phone = normalize_phone(extraction.phone_number) or normalize_phone(session.phone_number)
    if len(phone) != PHONE_DIGITS:
        return None
    user, created = lookup_or_create_user(store, phone, name)
    if created:
        logger.info("Created user %s from call transcript", user.id)
    return user


def _slot(appointment: Appointment) -> tuple[str, str]:
    return appointment.date, normalize_time(appointment.time)


def _apply_bookings(store: BookingStore, user: User, requests: list[BookingRequest]) -> int:
    taken = {_slot(a) for a in store.list_appointments_by_user(user.id) if a.is_active}
    created = 0
    for request in requests:
        if not request.date or not request.time:
            continue
        key = (request.date, normalize_time(request.time))
        if key in taken:
            logger.info("Skipping duplicate booking %s %s", *key)
            continue
        try:
            appointment = store.create_appointment(
                user.id,
                key[0],
                key[1],
                description=request.description or DEFAULT_BOOKING_DESCRIPTION,
                status=STATUS_PENDING,
            )
        except SlotConflictError:
            logger.info("Slot %s %s is held by someone else; booking request skipped", *key)
            continue
        taken.add(key)
        created += 1
        logger.info("Created appointment %s from transcript", appointment.id)
    return created


def _apply_cancellations(store: BookingStore, user: User, requests: list[CancellationRequest]) -> None:
    for request in requests:
        key = (request.date, normalize_time(request.time))
        match = next(
            (a for a in store.list_appointments_by_user(user.id) if a.is_active and _slot(a) == key),
            None,
        )
        if match is None:
            logger.info("No active appointment to cancel at %s %s", *key)
            continue
        store.cancel_appointment(match.id)
        logger.info("Cancelled appointment %s from transcript", match.id)


def _snapshot(store: BookingStore, user: User | None) -> list[AppointmentSnapshot]:
    if user is None:
        return []
    return [AppointmentSnapshot.model_validate(a.to_dict()) for a in store.list_appointments_by_user(user.id)]


def _dump(snapshot: list[AppointmentSnapshot]) -> str:
    return json.dumps([a.model_dump() for a in snapshot])


def summarize_call(
    store: BookingStore,
    session_id: int,
    transcript: str | None = None,
    *,
    llm=None,
) -> CallSummary:
    """Extract, reconcile and finalize one call session.

    The session is finalized on every path: if extraction or reconciliation
    fails, a minimal summary is stored instead.  Writes already applied
    before a failure are kept.
    """
    session = store.get_call_session(session_id)
    if session is None:
        raise LookupError(f"Call session {session_id} not found")

    if transcript is None:
        transcript = session.transcript or ""

    tool_logs = store.list_tool_call_logs(session_id)
    tool_activity = "\n".join(
        f"{log.tool_name}: {log.parameters or ''} -> {log.result or 'completed'}" for log in tool_logs
    )
    logger.debug("Summarizing session %s (%d tool calls)", session_id, len(tool_logs))

    user: User | None = store.get_user(session.user_id) if session.user_id is not None else None

    try:
        extraction = _extract(
            llm or _build_extraction_llm(),
            transcript,
            tool_activity,
            session.created_at.year,
        )
        user = _resolve_user(store, session, extraction)

        created = 0
        if user is not None:
            created = _apply_bookings(store, user, extraction.booking_requests)
            _apply_cancellations(store, user, extraction.cancellation_requests)
        elif extraction.booking_requests or extraction.cancellation_requests:
            logger.warning(
                "Session %s: %d booking and %d cancellation request(s) left unresolved, no caller identified",
                session_id, len(extraction.booking_requests), len(extraction.cancellation_requests),
            )

        appointments = _snapshot(store, user)
        summary = extraction.summary.strip() or DEFAULT_SUMMARY
        if created:
            summary += f" ({created} appointment(s) created)"

        store.end_call_session(
            session_id,
            summary,
            appointments_snapshot=_dump(appointments),
            preferences_snapshot=json.dumps(extraction.user_preferences),
            transcript=transcript,
        )
        logger.info("Session %s finalized (%d new appointment(s))", session_id, created)

        return CallSummary(
            summary=summary,
            appointments=appointments,
            user_preferences=extraction.user_preferences,
            user_name=(user.name if user else None) or extraction.user_name,
            phone_number=(user.phone_number if user else None)
            or normalize_phone(extraction.phone_number)
            or session.phone_number,
            new_appointments_created=created,
        )

    except Exception:
        logger.exception("Call summary failed for session %s; storing minimal summary", session_id)

    appointments = _snapshot(store, user)
    summary = FALLBACK_SUMMARY_WITH_TRANSCRIPT if transcript else DEFAULT_SUMMARY
    store.end_call_session(
        session_id,
        summary,
        appointments_snapshot=_dump(appointments),
        preferences_snapshot="[]",
        transcript=transcript,
    )
    return CallSummary(
        summary=summary,
        appointments=appointments,
        user_name=user.name if user else None,
        phone_number=session.phone_number,
    )
