"""Tests for the SQLite store."""

from __future__ import annotations

import pytest
from factories import block, session, utc

from interview_autopilot.database import IdempotencyConflict
from interview_autopilot.errors import InvalidStateError, NotFoundError
from interview_autopilot.schemas import (
    AvailabilityRequest,
    AvailabilityRequestStatus,
    Booking,
    BookingStatus,
    LoopBooking,
    LoopBookingStatus,
    LoopSolveResult,
    LoopSolveRun,
    LoopSolveStatus,
    LoopTemplate,
    RollbackDetails,
)


def _run(key=None, request_id="req-1"):
    return LoopSolveRun(availability_request_id=request_id, loop_template_id="tpl", solve_idempotency_key=key)


def _loop_booking(key="commit-1", status=LoopBookingStatus.PENDING):
    return LoopBooking(
        availability_request_id="req-1", solve_run_id="run-1",
        chosen_solution_id="solution-1", commit_idempotency_key=key, status=status,
    )


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

def test_availability_request_round_trip(db):
    request = AvailabilityRequest(
        candidate_name="Ada", candidate_email="ada@x.com", candidate_timezone="Europe/London",
        interviewer_emails=["a@x.com"], window_start=utc(2, 0), window_end=utc(7, 0),
    )
    db.save_availability_request(request)

    loaded = db.get_availability_request(request.id)
    assert loaded.candidate_timezone == "Europe/London"
    assert loaded.interviewer_emails == ["a@x.com"]
    assert loaded.window_start == utc(2, 0)
    assert loaded.status == AvailabilityRequestStatus.PENDING

    db.update_availability_request_status(request.id, AvailabilityRequestStatus.SUBMITTED)
    assert db.get_availability_request(request.id).status == AvailabilityRequestStatus.SUBMITTED
    assert db.get_availability_request("nope") is None


def test_candidate_blocks_are_replaced(db):
    db.save_candidate_blocks("req-1", [block(3, 9, 11), block(2, 9, 11)])
    assert [b.start for b in db.list_candidate_blocks("req-1")] == [utc(2, 9), utc(3, 9)]

    db.save_candidate_blocks("req-1", [block(4, 13, 15)])
    assert [b.start for b in db.list_candidate_blocks("req-1")] == [utc(4, 13)]
    assert db.list_candidate_blocks("req-2") == []


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

def test_bookings_in_range_filters_status_time_and_interviewers(db):
    inside = Booking(scheduled_start=utc(2, 10), scheduled_end=utc(2, 11), interviewer_emails=["a@x.com"])
    cancelled = Booking(
        scheduled_start=utc(2, 10), scheduled_end=utc(2, 11),
        interviewer_emails=["a@x.com"], status=BookingStatus.CANCELLED,
    )
    outside = Booking(scheduled_start=utc(3, 10), scheduled_end=utc(3, 11), interviewer_emails=["a@x.com"])
    other = Booking(scheduled_start=utc(2, 12), scheduled_end=utc(2, 13), interviewer_emails=["z@x.com"])
    anyone = Booking(scheduled_start=utc(2, 14), scheduled_end=utc(2, 15))
    for b in (inside, cancelled, outside, other, anyone):
        db.save_booking(b)

    window = (utc(2, 0), utc(3, 0))
    assert {b.id for b in db.list_bookings_in_range(*window)} == {inside.id, other.id, anyone.id}
    assert {b.id for b in db.list_bookings_in_range(*window, ["A@x.com"])} == {inside.id, anyone.id}


def test_booking_status_update(db):
    booking = Booking(scheduled_start=utc(2, 10), scheduled_end=utc(2, 11))
    db.save_booking(booking)
    db.update_booking_status(booking.id, BookingStatus.CANCELLED, "rolled back")
    loaded = db.get_booking(booking.id)
    assert loaded.status == BookingStatus.CANCELLED
    assert loaded.cancellation_reason == "rolled back"


# ---------------------------------------------------------------------------
# Loop templates
# ---------------------------------------------------------------------------

def test_loop_template_round_trip(db):
    template = LoopTemplate(
        name="Backend onsite",
        sessions=[session("screen", 0, 45, ["a@x.com"], buffer_before_minutes=10)],
    )
    db.save_loop_template(template)
    inactive = LoopTemplate(name="Retired", is_active=False)
    db.save_loop_template(inactive)

    loaded = db.get_loop_template(template.id)
    assert loaded.sessions[0].loop_template_id == template.id
    assert loaded.sessions[0].constraints.buffer_before_minutes == 10
    assert [t.id for t in db.list_loop_templates()] == [template.id]
    assert {t.id for t in db.list_loop_templates(active_only=False)} == {template.id, inactive.id}


# ---------------------------------------------------------------------------
# Solve runs
# ---------------------------------------------------------------------------

def test_solve_run_result_is_written_once(db):
    run = _run()
    db.create_solve_run(run)
    assert db.get_solve_run(run.id).result_snapshot is None

    result = LoopSolveResult(status=LoopSolveStatus.UNSATISFIABLE)
    db.save_solve_result(run.id, result)
    loaded = db.get_solve_run(run.id)
    assert loaded.status == LoopSolveStatus.UNSATISFIABLE
    assert loaded.result_snapshot.solve_id == result.solve_id

    with pytest.raises(InvalidStateError):
        db.save_solve_result(run.id, LoopSolveResult(status=LoopSolveStatus.SOLVED))
    with pytest.raises(NotFoundError):
        db.save_solve_result("missing", result)

    db.mark_solve_run_error(run.id, "too late")
    assert db.get_solve_run(run.id).status == LoopSolveStatus.UNSATISFIABLE


def test_solve_idempotency_key_is_unique(db):
    db.create_solve_run(_run(key="solve-1"))
    with pytest.raises(IdempotencyConflict):
        db.create_solve_run(_run(key="solve-1"))
    db.create_solve_run(_run())
    db.create_solve_run(_run())
    assert db.get_solve_run_by_idempotency_key("solve-1") is not None


def test_mark_solve_run_error(db):
    run = _run()
    db.create_solve_run(run)
    db.mark_solve_run_error(run.id, "boom", 12)
    loaded = db.get_solve_run(run.id)
    assert loaded.status == LoopSolveStatus.ERROR
    assert loaded.error_message == "boom"
    assert loaded.solve_duration_ms == 12


def test_last_solve_run(db):
    first, second = _run(), _run()
    db.create_solve_run(first)
    db.create_solve_run(second)
    assert db.last_solve_run("req-1").id == second.id
    assert db.last_solve_run("req-2") is None


# ---------------------------------------------------------------------------
# Loop bookings
# ---------------------------------------------------------------------------

def test_one_live_loop_booking_per_key(db):
    db.create_loop_booking(_loop_booking())
    with pytest.raises(IdempotencyConflict):
        db.create_loop_booking(_loop_booking())


def test_failed_loop_booking_frees_key(db):
    failed = _loop_booking()
    db.create_loop_booking(failed)
    details = RollbackDetails(events_created=1, events_rolled_back=1)
    db.update_loop_booking_status(failed.id, LoopBookingStatus.FAILED, "boom", details)

    retry = _loop_booking()
    db.create_loop_booking(retry)

    assert db.get_loop_booking_by_idempotency_key("commit-1").id == retry.id
    loaded = db.get_loop_booking(failed.id)
    assert loaded.rollback_attempted
    assert loaded.rollback_details == details
    assert loaded.error_message == "boom"
