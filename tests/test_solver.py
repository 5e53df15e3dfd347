"""Tests for the Loop Autopilot solver."""

from __future__ import annotations

import itertools
from datetime import timedelta

from factories import block, busy, free, session, utc

from interview_autopilot.schemas import (
    ActionType,
    Booking,
    Confidence,
    ConstraintKey,
    LoopSolveStatus,
    SchedulingPolicy,
    Severity,
)
from interview_autopilot.solver import build_feasible_slots_for_session, solve_loop

TZ = "UTC"


def _keys(result):
    return [v.key for v in result.top_constraints]


# ---------------------------------------------------------------------------
# Degenerate inputs
# ---------------------------------------------------------------------------

def test_no_sessions_is_unsatisfiable():
    result = solve_loop([], [block(2, 9, 17)], TZ, [free("a@x.com")])
    assert result.status == LoopSolveStatus.UNSATISFIABLE
    assert result.solutions == []


def test_no_candidate_blocks_reports_missing_availability():
    result = solve_loop([session("screen", 0, 45, ["a@x.com"])], [], TZ, [free("a@x.com")])
    assert result.status == LoopSolveStatus.UNSATISFIABLE
    assert _keys(result) == [ConstraintKey.NO_CANDIDATE_AVAILABILITY]
    assert result.recommended_actions[0].action_type == ActionType.EXPAND_CANDIDATE_AVAILABILITY
    assert result.recommended_actions[0].priority == 1


def test_empty_pool_is_reported_per_session():
    sessions = [session("one", 0, 45, []), session("two", 1, 45, [])]
    result = solve_loop(sessions, [block(2, 9, 17)], TZ, [])
    assert result.status == LoopSolveStatus.UNSATISFIABLE
    assert _keys(result) == [ConstraintKey.INTERVIEWER_POOL_EMPTY] * 2
    actions = result.recommended_actions
    assert [a.action_type for a in actions] == [ActionType.ADD_INTERVIEWERS_TO_POOL] * 2
    assert {a.payload.session_id for a in actions} == {"one", "two"}


# ---------------------------------------------------------------------------
# Feasible loops
# ---------------------------------------------------------------------------

def test_single_session_is_solved():
    sessions = [session("screen", 0, 45, ["a@x.com"], name="Phone Screen")]
    result = solve_loop(sessions, [block(2, 9, 12)], TZ, [free("a@x.com")])

    assert result.status == LoopSolveStatus.SOLVED
    assert len(result.solutions) >= 1
    scheduled = result.solutions[0].sessions[0]
    assert scheduled.session_name == "Phone Screen"
    assert scheduled.end - scheduled.start == timedelta(minutes=45)
    assert scheduled.interviewer_email == "a@x.com"
    assert result.solutions[0].is_single_day


def test_three_sessions_are_sequential():
    sessions = [
        session("screen", 0, 45, ["a@x.com"]),
        session("technical", 1, 60, ["b@x.com"]),
        session("values", 2, 45, ["c@x.com"]),
    ]
    blocks = [block(day, 9, 17) for day in (2, 3, 4)]
    schedules = [free("a@x.com"), free("b@x.com"), free("c@x.com")]

    result = solve_loop(sessions, blocks, TZ, schedules)

    assert result.status == LoopSolveStatus.SOLVED
    assert result.solutions
    for solution in result.solutions:
        assert [s.session_id for s in solution.sessions] == ["screen", "technical", "values"]
        for current, following in zip(solution.sessions, solution.sessions[1:]):
            assert current.end <= following.start


def test_busy_pool_member_is_never_chosen():
    sessions = [session("screen", 0, 60, ["a@x.com", "b@x.com"])]
    schedules = [busy("a@x.com", (utc(2, 0), utc(3, 0))), free("b@x.com")]

    result = solve_loop(sessions, [block(2, 9, 17)], TZ, schedules)

    assert result.status == LoopSolveStatus.SOLVED
    for solution in result.solutions:
        assert solution.sessions[0].interviewer_email == "b@x.com"


def test_days_span_respects_policy():
    sessions = [
        session("one", 0, 60, ["a@x.com"]),
        session("two", 1, 60, ["a@x.com"]),
        session("three", 2, 60, ["a@x.com"]),
    ]
    blocks = [block(day, 9, 11) for day in (2, 3, 4, 5)]
    policy = SchedulingPolicy(max_days_span=2)

    result = solve_loop(sessions, blocks, TZ, [free("a@x.com")], policy=policy)

    assert result.status == LoopSolveStatus.SOLVED
    assert result.solutions
    assert all(s.days_span <= 2 for s in result.solutions)
    assert all(not s.is_single_day for s in result.solutions)


def test_solutions_are_ranked_and_capped():
    sessions = [session("screen", 0, 30, ["a@x.com"])]
    blocks = [block(day, 9, 17) for day in (2, 3, 4)]
    policy = SchedulingPolicy(max_solutions_to_return=3)

    result = solve_loop(sessions, blocks, TZ, [free("a@x.com")], policy=policy)

    assert len(result.solutions) == 3
    scores = [s.score for s in result.solutions]
    assert scores == sorted(scores, reverse=True)
    assert result.solutions[0].loop_start == utc(2, 9)
    assert len({s.loop_start.date() for s in result.solutions}) > 1
    assert result.confidence == Confidence.HIGH


def test_solve_is_deterministic():
    sessions = [session("screen", 0, 45, ["a@x.com", "b@x.com"]), session("deep", 1, 60, ["c@x.com"])]
    blocks = [block(2, 9, 13), block(3, 13, 17)]
    schedules = [free("a@x.com"), busy("b@x.com", (utc(2, 9), utc(2, 10))), free("c@x.com")]

    first = solve_loop(sessions, blocks, TZ, schedules)
    second = solve_loop(sessions, blocks, TZ, schedules)

    assert [s.solution_id for s in first.solutions] == [s.solution_id for s in second.solutions]
    assert [s.score for s in first.solutions] == [s.score for s in second.solutions]


def test_rationale_and_conflict_summary():
    sessions = [session("screen", 0, 60, ["a@x.com", "b@x.com"])]
    schedules = [busy("a@x.com", (utc(2, 9), utc(2, 12))), free("b@x.com")]

    result = solve_loop(sessions, [block(2, 9, 12)], TZ, schedules)

    best = result.solutions[0]
    assert best.rationale_summary == "All 1 sessions on Mon, Mar 2"
    assert best.conflicts_checked.interviewer_busy_avoided == 1
    assert "b@x.com is free" in best.sessions[0].reason
    assert best.sessions[0].display_start == "Mon, Mar 2 at 9:00 AM UTC"


def test_reordering_finds_loops_fixed_order_cannot():
    sessions = [session("late", 0, 60, ["a@x.com"]), session("early", 1, 60, ["b@x.com"])]
    schedules = [
        busy("a@x.com", (utc(2, 9), utc(2, 14)), (utc(2, 15), utc(2, 17))),
        busy("b@x.com", (utc(2, 9), utc(2, 10)), (utc(2, 11), utc(2, 17))),
    ]
    blocks = [block(2, 9, 17)]

    fixed = solve_loop(sessions, blocks, TZ, schedules)
    assert fixed.status == LoopSolveStatus.UNSATISFIABLE

    reordered = solve_loop(
        sessions, blocks, TZ, schedules, policy=SchedulingPolicy(reorder_sessions_allowed=True)
    )
    assert reordered.status == LoopSolveStatus.SOLVED
    assert [s.session_id for s in reordered.solutions[0].sessions] == ["early", "late"]


def test_buffers_pad_interviewer_busy_time():
    sessions = [session("screen", 0, 60, ["a@x.com"], buffer_before_minutes=15)]
    schedules = [busy("a@x.com", (utc(2, 9), utc(2, 10)))]

    result = solve_loop(sessions, [block(2, 9, 12)], TZ, schedules)

    assert result.solutions[0].loop_start == utc(2, 10, 15)


def test_cancelled_bookings_do_not_block():
    sessions = [session("screen", 0, 60, ["a@x.com"])]
    bookings = [Booking(
        scheduled_start=utc(2, 9), scheduled_end=utc(2, 12),
        interviewer_emails=["a@x.com"], status="cancelled",
    )]
    result = solve_loop(sessions, [block(2, 9, 12)], TZ, [free("a@x.com")], bookings)
    assert result.status == LoopSolveStatus.SOLVED


def test_feasible_slots_list_every_free_interviewer():
    s = session("screen", 0, 60, ["a@x.com", "b@x.com"])
    schedules = {"a@x.com": free("a@x.com"), "b@x.com": free("b@x.com")}
    placements = build_feasible_slots_for_session(
        s, [block(2, 9, 11)], TZ, schedules, [], SchedulingPolicy()
    )
    starts = [(p.start, p.interviewer_email) for p in placements]
    assert starts[:2] == [(utc(2, 9), "a@x.com"), (utc(2, 9), "b@x.com")]
    assert max(p.end for p in placements) == utc(2, 11)
    assert len(placements) == 2 * 5


def test_feasible_slots_fit_inside_fragmented_free_time():
    s = session("screen", 0, 60, ["a@x.com"])
    schedules = {"a@x.com": busy(
        "a@x.com",
        (utc(2, 10), utc(2, 11)), (utc(2, 13), utc(2, 14)), (utc(3, 9), utc(3, 16)),
    )}
    placements = build_feasible_slots_for_session(
        s, [block(2, 9, 17), block(3, 9, 17)], TZ, schedules, [], SchedulingPolicy()
    )
    starts = {p.start for p in placements}
    assert {utc(2, 9), utc(2, 11), utc(2, 12), utc(2, 14), utc(2, 16), utc(3, 16)} <= starts
    assert not starts & {utc(2, 9, 30), utc(2, 10), utc(2, 12, 30), utc(2, 13), utc(3, 9), utc(3, 15)}
    fragments = [
        (utc(2, 9), utc(2, 10)), (utc(2, 11), utc(2, 13)),
        (utc(2, 14), utc(2, 17)), (utc(3, 16), utc(3, 17)),
    ]
    assert all(any(lo <= p.start and p.end <= hi for lo, hi in fragments) for p in placements)


# ---------------------------------------------------------------------------
# Infeasibility diagnostics
# ---------------------------------------------------------------------------

def test_all_pool_members_busy():
    sessions = [session("screen", 0, 60, ["a@x.com", "b@x.com"])]
    schedules = [
        busy("a@x.com", (utc(2, 0), utc(3, 0))),
        busy("b@x.com", (utc(2, 0), utc(3, 0))),
    ]
    result = solve_loop(sessions, [block(2, 9, 17)], TZ, schedules)

    assert result.status == LoopSolveStatus.UNSATISFIABLE
    assert ConstraintKey.INTERVIEWER_POOL_ALL_BUSY in _keys(result)
    assert result.top_constraints[0].severity == Severity.BLOCKING
    assert result.recommended_actions[0].action_type == ActionType.ADD_INTERVIEWERS_TO_POOL


def test_unknown_interviewers_count_as_busy():
    result = solve_loop([session("screen", 0, 60, ["ghost@x.com"])], [block(2, 9, 17)], TZ, [])
    assert _keys(result) == [ConstraintKey.INTERVIEWER_POOL_ALL_BUSY]


def test_session_longer_than_every_block():
    sessions = [session("screen", 0, 45, ["a@x.com"])]
    result = solve_loop(sessions, [block(2, 10, 10.5)], TZ, [free("a@x.com")])

    assert result.status == LoopSolveStatus.UNSATISFIABLE
    assert _keys(result) == [ConstraintKey.SESSION_TOO_LONG_FOR_BLOCKS]
    evidence = result.top_constraints[0].evidence
    assert evidence.kind == "duration"
    assert evidence.longest_block_minutes == 30
    action = result.recommended_actions[0]
    assert action.action_type == ActionType.REDUCE_SESSION_DURATION
    assert action.payload.suggested_value == 30


def test_existing_bookings_conflict():
    sessions = [session("screen", 0, 60, ["a@x.com"])]
    bookings = [Booking(scheduled_start=utc(2, 9), scheduled_end=utc(2, 12), interviewer_emails=["a@x.com"])]

    result = solve_loop(sessions, [block(2, 9, 12)], TZ, [free("a@x.com")], bookings)

    assert _keys(result) == [ConstraintKey.CONFLICTING_EXISTING_BOOKINGS]


def test_business_hours_violation():
    sessions = [session("screen", 0, 60, ["a@x.com"])]
    evening = [block(2, 18, 20)]

    result = solve_loop(sessions, evening, TZ, [free("a@x.com")])
    assert _keys(result) == [ConstraintKey.BUSINESS_HOURS_VIOLATION]
    assert result.recommended_actions[0].action_type == ActionType.EXTEND_BUSINESS_HOURS

    relaxed = solve_loop(
        sessions, evening, TZ, [free("a@x.com")], policy=SchedulingPolicy(enforce_business_hours=False)
    )
    assert relaxed.status == LoopSolveStatus.SOLVED


def test_explicit_session_window_applies_without_enforcement():
    sessions = [session("screen", 0, 60, ["a@x.com"], earliest_start_local="13:00", latest_end_local="15:00")]
    result = solve_loop(
        sessions, [block(2, 9, 17)], TZ, [free("a@x.com")],
        policy=SchedulingPolicy(enforce_business_hours=False),
    )
    for solution in result.solutions:
        assert utc(2, 13) <= solution.loop_start and solution.loop_end <= utc(2, 15)


def test_required_gap_that_cannot_fit():
    sessions = [
        session("one", 0, 60, ["a@x.com"], min_gap_to_next_minutes=30),
        session("two", 1, 60, ["b@x.com"]),
    ]
    result = solve_loop(sessions, [block(2, 9, 11)], TZ, [free("a@x.com"), free("b@x.com")])

    assert result.status == LoopSolveStatus.UNSATISFIABLE
    assert ConstraintKey.INSUFFICIENT_GAP_BETWEEN_SESSIONS in _keys(result)
    action = next(a for a in result.recommended_actions if a.action_type == ActionType.REMOVE_BUFFER_CONSTRAINTS)
    assert action.payload.session_id == "one"
    assert action.payload.suggested_value == 0


def test_loop_that_needs_more_days():
    sessions = [session(name, i, 60, ["a@x.com"]) for i, name in enumerate(("one", "two", "three"))]
    blocks = [block(day, 9, 10) for day in (2, 3, 4)]

    result = solve_loop(sessions, blocks, TZ, [free("a@x.com")], policy=SchedulingPolicy(max_days_span=2))

    assert result.status == LoopSolveStatus.UNSATISFIABLE
    assert ConstraintKey.MAX_DAYS_EXCEEDED in _keys(result)
    action = next(a for a in result.recommended_actions if a.action_type == ActionType.ALLOW_MULTI_DAY)
    assert action.payload.suggested_value == 3


# ---------------------------------------------------------------------------
# Caps
# ---------------------------------------------------------------------------

def test_iteration_cap_after_a_solution_is_partial():
    sessions = [session("screen", 0, 60, ["a@x.com"])]
    policy = SchedulingPolicy(max_search_iterations=1)

    result = solve_loop(sessions, [block(2, 9, 17)], TZ, [free("a@x.com")], policy=policy)

    assert result.status == LoopSolveStatus.PARTIAL
    assert len(result.solutions) == 1
    assert result.metadata.iteration_limit_reached
    assert result.confidence == Confidence.MEDIUM


def test_iteration_cap_before_a_solution_is_timeout():
    sessions = [session("one", 0, 60, ["a@x.com"]), session("two", 1, 60, ["a@x.com"])]
    policy = SchedulingPolicy(max_search_iterations=1)

    result = solve_loop(sessions, [block(2, 9, 17)], TZ, [free("a@x.com")], policy=policy)

    assert result.status == LoopSolveStatus.TIMEOUT
    assert result.solutions == []
    assert result.confidence == Confidence.LOW


def test_wall_clock_cap():
    ticks = itertools.count(0, 60)  # each reading is a minute later
    sessions = [session("screen", 0, 60, ["a@x.com"])]

    result = solve_loop(
        sessions, [block(2, 9, 17)], TZ, [free("a@x.com")], clock=lambda: next(ticks)
    )

    assert result.status == LoopSolveStatus.TIMEOUT
    assert result.metadata.timed_out
