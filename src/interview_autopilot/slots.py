"""Single-session slot generation.

Deterministic scan over a scheduling window using pre-fetched interviewer
free/busy data and existing bookings. Performs no I/O.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from interview_autopilot.availability import DEFAULT_SLOT_MINUTES, round_up
from interview_autopilot.schemas import (
    AvailableSlot,
    Booking,
    BookingStatus,
    InterviewerAvailability,
    SchedulingRequest,
    as_utc,
)
from interview_autopilot.timezones import format_in_timezone, within_working_hours

MAX_SLOTS = 30


def generate_slots(
    request: SchedulingRequest,
    availability: list[InterviewerAvailability],
    existing_bookings: list[Booking],
    now: datetime | None = None,
    increment_minutes: int = DEFAULT_SLOT_MINUTES,
    max_slots: int = MAX_SLOTS,
) -> list[AvailableSlot]:
    """Enumerate bookable slots for ``request``.

    The cursor starts at the later of the window start and ``now``, rounded up
    to the grid, and advances one grid step at a time. A slot is kept only if
    every interviewer is inside working hours and free, and no live booking for
    any of the request's interviewers overlaps it.
    """
    now = as_utc(now) if now else datetime.now(timezone.utc)
    duration = timedelta(minutes=request.duration_minutes)
    step = timedelta(minutes=increment_minutes)
    window_end = request.window_end

    slots: list[AvailableSlot] = []
    cursor = round_up(max(request.window_start, now), increment_minutes)

    while cursor < window_end and len(slots) < max_slots:
        slot_end = cursor + duration
        if slot_end > window_end:
            cursor += step
            continue

        all_free = all(_is_slot_available(cursor, slot_end, ia) for ia in availability)
        if all_free and not has_booking_conflict(
            cursor, slot_end, existing_bookings, request.interviewer_emails
        ):
            slots.append(AvailableSlot(
                slot_id=generate_slot_id(cursor, slot_end, request.interviewer_emails),
                start=cursor,
                end=slot_end,
                display_start=format_in_timezone(cursor, request.candidate_timezone),
                display_end=format_in_timezone(slot_end, request.candidate_timezone),
            ))
        cursor += step

    return slots


def _is_slot_available(start: datetime, end: datetime, availability: InterviewerAvailability) -> bool:
    if availability.working_hours and not within_working_hours(start, end, availability.working_hours):
        return False
    return not any(start < busy.end and end > busy.start for busy in availability.busy_intervals)


def has_booking_conflict(
    start: datetime,
    end: datetime,
    bookings: Iterable[Booking],
    interviewer_emails: Iterable[str],
) -> bool:
    """True if a live booking involving any of ``interviewer_emails`` overlaps [start, end).

    Bookings that list no interviewers belong to the request itself and count
    against every interviewer.
    """
    wanted = {e.lower() for e in interviewer_emails}
    for booking in bookings:
        if booking.status == BookingStatus.CANCELLED:
            continue
        if booking.interviewer_emails and not wanted & {e.lower() for e in booking.interviewer_emails}:
            continue
        if start < booking.scheduled_end and end > booking.scheduled_start:
            return True
    return False


def generate_slot_id(start: datetime, end: datetime, interviewer_emails: Iterable[str]) -> str:
    """Stable id for a slot; independent of interviewer order and email case."""
    emails = ",".join(sorted(e.lower() for e in interviewer_emails))
    data = f"{as_utc(start).isoformat()}|{as_utc(end).isoformat()}|{emails}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


def validate_slot_id(
    slot_id: str, start: datetime, end: datetime, interviewer_emails: Iterable[str]
) -> bool:
    return slot_id == generate_slot_id(start, end, interviewer_emails)


def find_slot_by_id(slots: Iterable[AvailableSlot], slot_id: str) -> AvailableSlot | None:
    return next((slot for slot in slots if slot.slot_id == slot_id), None)
