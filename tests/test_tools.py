"""Tests for the seven scheduling tools.

Covers:
  - Phone normalization and identify_user (new / returning / bad length)
  - Booking, including conflicts and the store-level backstop
  - Retrieval, cancellation and rescheduling rules
  - Argument validation at the tool boundary
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from voice_scheduler.models import STATUS_CANCELLED, STATUS_CONFIRMED, STATUS_SCHEDULED
from voice_scheduler.services.store import SlotConflictError, StorageError
from voice_scheduler.tools.executor import (
    ToolExecutor,
    format_phone,
    lookup_or_create_user,
    normalize_phone,
    normalize_time,
)

PHONE = "5551234567"


def _identify(executor, context, phone=PHONE, **extra):
    return executor.execute_named("identify_user", {"phone_number": phone, **extra}, context)


def _book(executor, context, date="2026-01-28", time="09:00 AM", **extra):
    return executor.execute_named("book_appointment", {"date": date, "time": time, **extra}, context)


# ── Helpers ──────────────────────────────────────────────────────────


class TestNormalization:
    @pytest.mark.parametrize("raw", ["555-123-4567", "(555) 123-4567", "5551234567", "555.123.4567"])
    def test_phone_formats_normalize_identically(self, raw):
        assert normalize_phone(raw) == PHONE

    def test_format_phone(self):
        assert format_phone(PHONE) == "555-123-4567"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("9:00 am", "09:00 AM"),
            ("09:00 AM", "09:00 AM"),
            ("2:30pm", "02:30 PM"),
            ("9 AM", "09:00 AM"),
            ("10 a.m.", "10:00 AM"),
            ("14:00", "14:00"),
            ("noon", "noon"),
        ],
    )
    def test_normalize_time(self, raw, expected):
        assert normalize_time(raw) == expected


class TestNameFillOnce:
    def test_name_filled_when_absent(self, store):
        user, created = lookup_or_create_user(store, PHONE)
        assert created and user.name is None
        user, created = lookup_or_create_user(store, PHONE, "Ada")
        assert not created
        assert user.name == "Ada"

    def test_existing_name_never_overwritten(self, store):
        lookup_or_create_user(store, PHONE, "Ada")
        user, _ = lookup_or_create_user(store, PHONE, "Someone Else")
        assert user.name == "Ada"
        assert store.find_user_by_phone(PHONE).name == "Ada"


# ── identify_user ────────────────────────────────────────────────────


class TestIdentifyUser:
    def test_new_caller_gets_account(self, executor, context, store):
        result = _identify(executor, context, "(555) 123-4567")
        assert "555-123-4567" in result.text
        assert "created a new account" in result.text
        assert "don't have any appointments" in result.text
        assert context.user_id is not None
        assert context.phone_number == PHONE

    def test_identification_is_persisted_on_session(self, executor, context, store):
        _identify(executor, context)
        session = store.get_call_session(context.session_id)
        assert session.user_id == context.user_id
        assert session.phone_number == PHONE

    def test_returning_caller_hears_appointments(self, executor, context, store, make_context):
        user = store.create_user(PHONE, name="Ada")
        store.create_appointment(user.id, "2026-01-29", "11:00 AM", description="cleaning")
        cancelled = store.create_appointment(user.id, "2026-01-30", "10:00 AM")
        store.cancel_appointment(cancelled.id)

        result = _identify(executor, context)
        assert "Welcome back Ada!" in result.text
        assert "You have 1 appointment: 2026-01-29 at 11:00 AM for cleaning." in result.text
        assert context.user_name == "Ada"

    def test_too_many_digits(self, executor, context):
        result = _identify(executor, context, "555 123 45678")
        assert "more than 10 digits" in result.text
        assert result.outcome == "rejected"
        assert not context.is_identified

    def test_too_few_digits(self, executor, context):
        result = _identify(executor, context, "555 1234")
        assert "fewer than 10 digits" in result.text
        assert not context.is_identified

    def test_spoken_name_fills_blank_name(self, executor, context, store):
        store.create_user(PHONE)
        _identify(executor, context, name="Grace")
        assert store.find_user_by_phone(PHONE).name == "Grace"


# ── fetch_slots ──────────────────────────────────────────────────────


class TestFetchSlots:
    def test_lists_first_five_and_count(self, executor, context):
        result = executor.execute_named("fetch_slots", {}, context)
        assert result.text.startswith("Available slots: 2026-01-28 at 09:00 AM")
        assert "and 12 more" in result.text

    def test_filters_by_date(self, executor, context):
        result = executor.execute_named("fetch_slots", {"date": "2026-01-30"}, context)
        assert result.text == (
            "Available slots: 2026-01-30 at 10:00 AM, 2026-01-30 at 02:00 PM, 2026-01-30 at 03:30 PM."
        )

    def test_no_slots_on_date(self, executor, context):
        result = executor.execute_named("fetch_slots", {"date": "2026-05-01"}, context)
        assert "No available slots on 2026-05-01" in result.text

    def test_works_without_identification(self, executor, context):
        assert executor.execute_named("fetch_slots", {}, context).outcome == "ok"


# ── book_appointment ─────────────────────────────────────────────────


class TestBookAppointment:
    def test_fresh_booking_scenario(self, executor, context, store):
        first = _identify(executor, context)
        assert "don't have any appointments" in first.text

        result = _book(executor, context)
        appointment = store.list_appointments_by_user(context.user_id)[0]
        assert result.text == (
            "Appointment booked successfully for 2026-01-28 at 09:00 AM. "
            f"Your appointment ID is {appointment.id}."
        )
        assert appointment.status == STATUS_SCHEDULED

        slots = executor.execute_named("fetch_slots", {"date": "2026-01-28"}, context)
        assert "09:00 AM" not in slots.text

    def test_requires_identification(self, executor, context, store):
        result = _book(executor, context)
        assert "phone number first" in result.text
        assert store.list_active_booked_slots() == set()

    def test_time_is_normalized(self, executor, context, store):
        _identify(executor, context)
        result = _book(executor, context, time="9:00 am")
        assert "09:00 AM" in result.text
        assert store.list_active_booked_slots() == {("2026-01-28", "09:00 AM")}

    def test_conflict_between_two_callers(self, executor, context, store, make_context):
        other = make_context()
        _identify(executor, context)
        _identify(executor, other, "5559876543")

        assert "booked successfully" in _book(executor, context).text
        result = _book(executor, other)
        assert result.text == (
            "Sorry, the slot on 2026-01-28 at 09:00 AM is already booked. "
            "Would you like to pick another time?"
        )
        assert store.list_appointments_by_user(other.user_id) == []

    def test_slot_outside_catalog_is_rejected(self, executor, context, store):
        _identify(executor, context)
        result = _book(executor, context, time="07:00 AM")
        assert "is not an available slot" in result.text
        assert store.list_active_booked_slots() == set()

    def test_store_backstop_reports_conflict(self, executor, context, store):
        _identify(executor, context)
        # The fresh read misses a booking that lands just before the write.
        with patch.object(store, "list_active_booked_slots", return_value=set()):
            with patch.object(store, "create_appointment", side_effect=SlotConflictError("taken")):
                result = _book(executor, context)
        assert "already booked" in result.text
        assert result.outcome == "rejected"

    def test_storage_failure_propagates(self, executor, context, store):
        _identify(executor, context)
        with patch.object(store, "create_appointment", side_effect=StorageError("db down")):
            with pytest.raises(StorageError):
                _book(executor, context)

    def test_configured_booking_status(self, store, context):
        executor = ToolExecutor(store, booking_status=STATUS_CONFIRMED)
        _identify(executor, context)
        _book(executor, context, description="checkup")
        (appointment,) = store.list_appointments_by_user(context.user_id)
        assert appointment.status == STATUS_CONFIRMED
        assert appointment.description == "checkup"


# ── retrieve_appointments ────────────────────────────────────────────


class TestRetrieveAppointments:
    def test_lists_active_with_ids(self, executor, context, store):
        _identify(executor, context)
        _book(executor, context, description="cleaning")
        _book(executor, context, date="2026-01-29", time="11:00 AM")
        cancelled = store.list_appointments_by_user(context.user_id)[0]
        store.cancel_appointment(cancelled.id)

        result = executor.execute_named("retrieve_appointments", {}, context)
        assert result.text.startswith("Your appointments: ID ")
        assert "2026-01-28 at 09:00 AM (scheduled) - cleaning" in result.text
        assert "2026-01-29" not in result.text

    def test_none_scheduled(self, executor, context):
        _identify(executor, context)
        result = executor.execute_named("retrieve_appointments", {}, context)
        assert result.text == "You don't have any appointments scheduled."

    def test_requires_identification(self, executor, context):
        result = executor.execute_named("retrieve_appointments", {}, context)
        assert result.outcome == "rejected"


# ── cancel_appointment ───────────────────────────────────────────────


class TestCancelAppointment:
    def _booked_id(self, executor, context, store):
        _identify(executor, context)
        _book(executor, context)
        return store.list_appointments_by_user(context.user_id)[0].id

    def test_cancel_then_cancel_again(self, executor, context, store):
        appt_id = self._booked_id(executor, context, store)
        first = executor.execute_named("cancel_appointment", {"appointment_id": appt_id}, context)
        second = executor.execute_named("cancel_appointment", {"appointment_id": appt_id}, context)
        assert "has been cancelled" in first.text
        assert second.text == "This appointment is already cancelled."
        assert second.outcome == "ok"
        assert store.get_appointment(appt_id).status == STATUS_CANCELLED

    def test_not_found(self, executor, context):
        _identify(executor, context)
        result = executor.execute_named("cancel_appointment", {"appointment_id": 404}, context)
        assert result.text == "Appointment 404 not found."

    def test_other_callers_appointment(self, executor, context, store, make_context):
        appt_id = self._booked_id(executor, context, store)
        intruder = make_context()
        _identify(executor, intruder, "5559876543")
        result = executor.execute_named("cancel_appointment", {"appointment_id": appt_id}, intruder)
        assert result.text == "You can only cancel your own appointments."
        assert store.get_appointment(appt_id).is_active

    def test_frees_the_slot(self, executor, context, store):
        appt_id = self._booked_id(executor, context, store)
        executor.execute_named("cancel_appointment", {"appointment_id": appt_id}, context)
        assert store.list_active_booked_slots() == set()


# ── modify_appointment ───────────────────────────────────────────────


class TestModifyAppointment:
    @pytest.fixture
    def two_bookings(self, executor, context, store):
        _identify(executor, context)
        _book(executor, context, date="2026-01-29", time="11:00 AM")
        _book(executor, context, date="2026-01-29", time="01:00 PM")
        b, a = store.list_appointments_by_user(context.user_id)
        return a, b

    def test_move_onto_occupied_slot_conflicts(self, executor, context, store, two_bookings):
        a, b = two_bookings
        result = executor.execute_named(
            "modify_appointment", {"appointment_id": b.id, "new_time": "11:00 AM"}, context,
        )
        assert result.text == "Sorry, 2026-01-29 at 11:00 AM is already booked."
        unchanged = store.get_appointment(b.id)
        assert (unchanged.date, unchanged.time) == ("2026-01-29", "01:00 PM")

    def test_move_onto_own_slot_succeeds(self, executor, context, store, two_bookings):
        _, b = two_bookings
        result = executor.execute_named(
            "modify_appointment",
            {"appointment_id": b.id, "new_date": "2026-01-29", "new_time": "1:00 pm"},
            context,
        )
        assert result.text == f"Appointment {b.id} has been rescheduled to 2026-01-29 at 01:00 PM."

    def test_date_only_keeps_time(self, executor, context, store, two_bookings):
        a, _ = two_bookings
        executor.execute_named("modify_appointment", {"appointment_id": a.id, "new_date": "2026-01-31"}, context)
        moved = store.get_appointment(a.id)
        assert (moved.date, moved.time) == ("2026-01-31", "11:00 AM")
        assert moved.status == STATUS_SCHEDULED

    def test_nothing_to_change(self, executor, context, two_bookings):
        a, _ = two_bookings
        result = executor.execute_named("modify_appointment", {"appointment_id": a.id}, context)
        assert "what you'd like to change" in result.text

    def test_cancelled_appointment_cannot_reclaim_taken_slot(self, executor, context, store, make_context):
        _identify(executor, context)
        _book(executor, context)
        (mine,) = store.list_appointments_by_user(context.user_id)
        executor.execute_named("cancel_appointment", {"appointment_id": mine.id}, context)

        other = make_context()
        _identify(executor, other, "5559876543")
        _book(executor, other)

        result = executor.execute_named(
            "modify_appointment",
            {"appointment_id": mine.id, "new_date": "2026-01-28", "new_time": "09:00 AM"},
            context,
        )
        assert "already booked" in result.text
        assert store.get_appointment(mine.id).status == STATUS_CANCELLED

    def test_modify_reactivates_cancelled_appointment(self, executor, context, store):
        _identify(executor, context)
        _book(executor, context)
        (mine,) = store.list_appointments_by_user(context.user_id)
        store.cancel_appointment(mine.id)

        executor.execute_named("modify_appointment", {"appointment_id": mine.id, "new_time": "10:00 AM"}, context)
        moved = store.get_appointment(mine.id)
        assert moved.status == STATUS_SCHEDULED
        assert moved.time == "10:00 AM"

    def test_requires_identification(self, executor, context):
        result = executor.execute_named(
            "modify_appointment", {"appointment_id": 1, "new_time": "10:00 AM"}, context,
        )
        assert result.text == "Please provide your phone number first."


# ── end_conversation and validation ──────────────────────────────────


class TestEndConversation:
    def test_sets_end_call_without_closing_session(self, executor, context, store):
        result = executor.execute_named("end_conversation", {}, context)
        assert result.end_call is True
        assert "Goodbye" in result.text
        assert store.get_call_session(context.session_id).status == "active"


class TestValidation:
    def test_missing_argument_becomes_guidance(self, executor, context):
        _identify(executor, context)
        result = executor.execute_named("book_appointment", {"date": "2026-01-28"}, context)
        assert result.outcome == "rejected"
        assert "time" in result.text

    def test_unknown_tool_becomes_guidance(self, executor, context):
        result = executor.execute_named("teleport", {}, context)
        assert result.text == "Unknown tool: teleport"

    def test_tool_metrics_are_recorded(self, executor, context):
        with patch("voice_scheduler.tools.executor.metrics") as mock_metrics:
            executor.execute_named("fetch_slots", {}, context)
            executor.execute_named("book_appointment", {"date": "2026-01-28", "time": "09:00 AM"}, context)
        outcomes = [c.args for c in mock_metrics.record_tool.call_args_list]
        assert outcomes == [("fetch_slots", "ok"), ("book_appointment", "rejected")]
