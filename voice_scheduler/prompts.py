"""Prompts for the voice scheduling agent."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from voice_scheduler.models import STATUS_CANCELLED

SYSTEM_PROMPT_TEMPLATE = """You are a friendly AI voice assistant for an appointment scheduling service.

## Current Date
Today is **{current_date}** ({current_day_of_week}).
Use this to resolve relative dates like "tomorrow" or "next Friday".

## Your Role
You help callers:
1. **Identify** themselves by phone number
2. **View** available appointment slots
3. **Book** new appointments
4. **Retrieve** their existing appointments
5. **Cancel** appointments
6. **Modify** appointment dates and times

## Guidelines
- Ask for the caller's phone number first and use `identify_user` before booking or changing anything.
- Phone numbers are exactly 10 digits. If what you heard has more or fewer, ask the caller to repeat it slowly.
- Read the phone number back to the caller once it is confirmed.
- Callers who are not identified yet may still hear the available slots (`fetch_slots`).
- Confirm the date and time with the caller before calling `book_appointment`.
- If a slot is taken, offer other available times instead.
- Use appointment IDs from `retrieve_appointments` for `cancel_appointment` and `modify_appointment`.
- When the caller says goodbye or is done, call `end_conversation`.

## Tone
You are speaking, not writing. Keep replies short and natural, with no
markdown, lists, or emoji. Never invent appointment data; only report what
the tools return.
"""


def get_system_prompt() -> str:
    """Return the system prompt with today's date injected."""
    now = datetime.now(UTC)
    return SYSTEM_PROMPT_TEMPLATE.format(
        current_date=now.strftime("%Y-%m-%d"),
        current_day_of_week=now.strftime("%A"),
    )


# ── Per-call context (providers without tool calling) ───────────────

CALL_CONTEXT_TEMPLATE = """You are a warm, patient AI appointment scheduling assistant speaking with a caller.

Speak calmly and kindly, keep replies concise, and never rush the caller.
{user_line}
{appointment_block}

WHEN THE CALLER ASKS ABOUT THEIR APPOINTMENTS:
- Read out the appointments from the data above exactly as written.

WHEN THE CALLER WANTS TO BOOK:
- Ask which date works best, suggest times, and ask for a short description.
- Repeat the date and time back before confirming.

WHEN THE CALLER WANTS TO CANCEL:
- Ask which appointment, and confirm the date and time back to them.

Never invent or guess appointment data. Today's date is {current_date}."""

_APPOINTMENTS_BLOCK = """
########## APPOINTMENT DATA - READ EXACTLY ##########
{listing}
########## END OF DATA ##########

This caller has exactly {count} appointment(s). Say dates, times and
descriptions exactly as written. If asked about an appointment that is not
listed, say you don't see it in their records."""

_NO_APPOINTMENTS_BLOCK = """
########## APPOINTMENT DATA ##########
This caller has ZERO appointments scheduled.
########## END OF DATA ##########

Tell the caller they have no appointments. Do not invent any."""


def _field(appointment, name: str):
    if isinstance(appointment, dict):
        return appointment.get(name)
    return getattr(appointment, name, None)


def build_call_context_prompt(
    user_name: str | None,
    appointments: Iterable,
    phone_number: str | None = None,
) -> str:
    """Per-call system prompt embedding a snapshot of the caller's appointments.

    *appointments* may be ORM rows or dicts with ``date``/``time``/
    ``description``/``status`` keys; cancelled ones are left out.
    """
    active = [a for a in appointments if _field(a, "status") != STATUS_CANCELLED]

    if active:
        listing = "\n".join(
            f'APPOINTMENT {i}: Date={_field(a, "date")}, Time={_field(a, "time")}, '
            f'Description="{_field(a, "description") or "General appointment"}"'
            for i, a in enumerate(active, start=1)
        )
        appointment_block = _APPOINTMENTS_BLOCK.format(listing=listing, count=len(active))
    else:
        appointment_block = _NO_APPOINTMENTS_BLOCK

    user_line = ""
    if user_name:
        user_line = f"\nCURRENT CALLER: {user_name}"
        if phone_number:
            user_line += f" (phone ending in {phone_number[-4:]})"

    return CALL_CONTEXT_TEMPLATE.format(
        user_line=user_line,
        appointment_block=appointment_block,
        current_date=datetime.now(UTC).strftime("%Y-%m-%d"),
    )


def build_call_greeting(user_name: str | None, phone_number: str | None = None) -> str:
    """Opening line; a known caller is asked to confirm by the last four phone digits."""
    if user_name and phone_number:
        return (
            f"Hi there! It's lovely to connect with you. I have {user_name} here, "
            f"with a phone number ending in {phone_number[-4:]}. Is that you? "
            "Just want to make sure I have the right person before we get started."
        )
    if user_name:
        return (
            f"Hi {user_name}! So nice to hear from you again. I'm here to help with "
            "your appointments whenever you're ready. What can I do for you today?"
        )
    return (
        "Hi there! Welcome, it's so nice to meet you. I'm here to help you with "
        "scheduling appointments. To get started, could you please share your "
        "name and phone number with me?"
    )
