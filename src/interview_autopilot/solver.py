"""Loop Autopilot solver.

Deterministic, bounded backtracking search that places every session of an
interview loop in order, one interviewer per session, inside the candidate's
availability. The solver performs no I/O: candidate blocks, interviewer
schedules and existing bookings are fetched by the caller. Two independent
caps bound each solve: ``max_search_iterations`` and ``solver_timeout_ms``.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
import time
from bisect import bisect_left, bisect_right
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from interview_autopilot.availability import (
    longest_block_minutes,
    normalize_blocks,
    round_up,
    subtract_busy,
    total_minutes,
)
from interview_autopilot.diagnostics import SEVERITY_RANK, build_unsat_diagnostics
from interview_autopilot.ranking import rank_solutions
from interview_autopilot.schemas import (
    AvailabilityBlock,
    AvailabilityEvidence,
    Booking,
    BookingEvidence,
    BookingStatus,
    BusinessHoursEvidence,
    Confidence,
    ConflictCheckSummary,
    ConstraintKey,
    ConstraintViolation,
    DaysSpanEvidence,
    DurationEvidence,
    GapEvidence,
    InterviewerSchedule,
    LoopSolution,
    LoopSolveResult,
    LoopSolveStatus,
    PoolEvidence,
    ScheduledSession,
    SchedulingPolicy,
    SessionTemplate,
    Severity,
    SolveMetadata,
    TimeInterval,
)
from interview_autopilot.timezones import (
    format_date,
    format_in_timezone,
    format_time,
    local_date,
    within_local_window,
    within_working_hours,
)

log = logging.getLogger(__name__)

DEFAULT_EARLIEST_START = "09:00"
DEFAULT_LATEST_END = "17:00"


# ---------------------------------------------------------------------------
# Internal types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeasiblePlacement:
    """One way to host a session: a start time and an interviewer."""

    session_id: str
    session_name: str
    start: datetime
    end: datetime
    interviewer_email: str
    day: date  # candidate-local
    block: AvailabilityBlock
    busy_avoided: int = 0
    bookings_avoided: int = 0
    boundary_avoided: int = 0


@dataclass
class FeasibilityStats:
    slots_evaluated: int = 0
    boundary_rejections: int = 0
    outside_hours: int = 0
    busy_rejections: int = 0
    booking_rejections: int = 0
    unknown_interviewers: list[str] = field(default_factory=list)
    # Minutes of candidate time each interviewer has free, before and after bookings.
    free_minutes: dict[str, float] = field(default_factory=dict)
    bookable_minutes: dict[str, float] = field(default_factory=dict)


@dataclass
class _SolveContext:
    policy: SchedulingPolicy
    candidate_timezone: str
    clock: Callable[[], float]
    started: float
    iterations: int = 0
    slots_evaluated: int = 0
    timed_out: bool = False
    iteration_limit_reached: bool = False
    violations: dict[tuple[ConstraintKey, str | None], ConstraintViolation] = field(default_factory=dict)

    def exhausted(self) -> bool:
        if self.iterations >= self.policy.max_search_iterations:
            self.iteration_limit_reached = True
        if (self.clock() - self.started) * 1000 > self.policy.solver_timeout_ms:
            self.timed_out = True
        return self.timed_out or self.iteration_limit_reached

    def record(self, violation: ConstraintViolation) -> None:
        key = (violation.key, violation.evidence.session_id)
        existing = self.violations.get(key)
        if existing is None:
            self.violations[key] = violation
        else:
            self.violations[key] = existing.model_copy(update={"occurrences": existing.occurrences + 1})

    def elapsed_ms(self) -> int:
        return int((self.clock() - self.started) * 1000)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def solve_loop(
    sessions: Sequence[SessionTemplate],
    candidate_blocks: Iterable[AvailabilityBlock],
    candidate_timezone: str,
    interviewer_schedules: Mapping[str, InterviewerSchedule] | Iterable[InterviewerSchedule],
    existing_bookings: Iterable[Booking] = (),
    policy: SchedulingPolicy | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> LoopSolveResult:
    """Search for full-loop placements.

    Returns ``SOLVED`` with ranked solutions, ``UNSATISFIABLE`` with the
    violations that explain why, ``TIMEOUT`` when a cap was hit before any
    solution was found, or ``PARTIAL`` when a cap was hit after at least one.
    """
    policy = policy or SchedulingPolicy()
    ctx = _SolveContext(policy=policy, candidate_timezone=candidate_timezone, clock=clock, started=clock())
    schedules = _index_schedules(interviewer_schedules)
    bookings = [b for b in existing_bookings if b.status != BookingStatus.CANCELLED]
    graph_api_calls = len(schedules)

    if not sessions:
        return _unsatisfiable(ctx, graph_api_calls)

    raw_blocks = list(candidate_blocks)
    blocks = normalize_blocks(raw_blocks, interval_minutes=policy.slot_granularity_minutes)
    if not blocks:
        details = (
            f"None of the {len(raw_blocks)} availability blocks survive grid alignment"
            if raw_blocks else "No availability blocks found"
        )
        ctx.record(ConstraintViolation(
            key=ConstraintKey.NO_CANDIDATE_AVAILABILITY,
            severity=Severity.BLOCKING,
            description="Candidate has not provided any usable availability",
            evidence=AvailabilityEvidence(details=details, block_count=len(raw_blocks)),
        ))
        return _unsatisfiable(ctx, graph_api_calls)

    ordered = sorted(sessions, key=lambda s: (s.order, s.id))

    feasible: dict[str, list[FeasiblePlacement]] = {}
    for session in ordered:
        stats = FeasibilityStats()
        placements = build_feasible_slots_for_session(
            session, blocks, candidate_timezone, schedules, bookings, policy, stats
        )
        ctx.slots_evaluated += stats.slots_evaluated
        feasible[session.id] = placements
        log.debug("Session %s (%s): %d feasible placements", session.id, session.name, len(placements))
        if not placements:
            ctx.record(_explain_infeasible(session, blocks, candidate_timezone, policy, stats))

    if any(not feasible[s.id] for s in ordered):
        return _unsatisfiable(ctx, graph_api_calls)

    target = policy.max_solutions_to_return * 2
    solutions: list[LoopSolution] = []
    seen: set[tuple] = set()
    orderings = itertools.permutations(ordered) if policy.reorder_sessions_allowed else iter([tuple(ordered)])
    for ordering in orderings:
        if len(solutions) >= target or ctx.exhausted():
            break
        _search_ordering(list(ordering), feasible, ctx, solutions, seen, target)

    kept = []
    for solution in solutions:
        if solution.days_span > policy.max_days_span:
            ctx.record(_days_violation(solution.days_span, policy.max_days_span))
            continue
        kept.append(solution)

    capped = ctx.timed_out or ctx.iteration_limit_reached
    if not kept:
        if not capped and not ctx.violations:
            ctx.record(ConstraintViolation(
                key=ConstraintKey.INSUFFICIENT_GAP_BETWEEN_SESSIONS,
                severity=Severity.BLOCKING,
                description="Could not find a valid sequence of sessions",
                evidence=GapEvidence(details="No valid ordering found within constraints"),
            ))
        return _unsatisfiable(ctx, graph_api_calls)

    top = rank_solutions(kept, policy)[: policy.max_solutions_to_return]
    status = LoopSolveStatus.PARTIAL if capped else LoopSolveStatus.SOLVED
    result = LoopSolveResult(
        status=status,
        solutions=top,
        confidence=Confidence.HIGH if len(top) >= 3 else Confidence.MEDIUM,
        metadata=_metadata(ctx, graph_api_calls),
    )
    log.info(
        "Loop solve %s: %s with %d solution(s), %d iterations, %d ms",
        result.solve_id, status.value, len(top), ctx.iterations, result.metadata.solve_duration_ms,
    )
    return result


def _index_schedules(
    schedules: Mapping[str, InterviewerSchedule] | Iterable[InterviewerSchedule],
) -> dict[str, InterviewerSchedule]:
    values = schedules.values() if isinstance(schedules, Mapping) else schedules
    return {s.email.lower(): s for s in values}


# ---------------------------------------------------------------------------
# Feasibility
# ---------------------------------------------------------------------------

def build_feasible_slots_for_session(
    session: SessionTemplate,
    candidate_blocks: Sequence[AvailabilityBlock],
    candidate_timezone: str,
    interviewer_schedules: Mapping[str, InterviewerSchedule],
    existing_bookings: Sequence[Booking],
    policy: SchedulingPolicy,
    stats: FeasibilityStats | None = None,
) -> list[FeasiblePlacement]:
    """Every (start, interviewer) pair that can host ``session``.

    Candidate blocks are intersected with each pool member's free time (busy
    intervals and live bookings removed, widened by the session's buffers),
    then scanned on the policy grid. Results are ordered by start time, then
    pool order. ``candidate_blocks`` must be normalized (sorted and disjoint).
    """
    stats = stats if stats is not None else FeasibilityStats()
    pool = list(dict.fromkeys(e.lower() for e in session.interviewer_pool.emails))
    duration = timedelta(minutes=session.duration_minutes)
    step = timedelta(minutes=policy.slot_granularity_minutes)
    constraints = session.constraints
    before = timedelta(minutes=constraints.buffer_before_minutes or 0)
    after = timedelta(minutes=constraints.buffer_after_minutes or 0)

    earliest = constraints.earliest_start_local
    latest = constraints.latest_end_local
    if policy.enforce_business_hours:
        earliest = earliest or DEFAULT_EARLIEST_START
        latest = latest or DEFAULT_LATEST_END

    free: dict[str, list[AvailabilityBlock]] = {}
    bookable: dict[str, list[AvailabilityBlock]] = {}
    for email in pool:
        schedule = interviewer_schedules.get(email)
        if schedule is None:
            stats.unknown_interviewers.append(email)
            continue
        # A slot [s, e) needs the interviewer free over [s - before, e + after].
        busy = [
            TimeInterval(start=b.start - after, end=b.end + before)
            for b in schedule.busy_intervals
            if b.start < b.end
        ]
        booked = [
            TimeInterval(start=b.scheduled_start - after, end=b.scheduled_end + before)
            for b in existing_bookings
            if b.scheduled_start < b.scheduled_end
            and (not b.interviewer_emails or email in {e.lower() for e in b.interviewer_emails})
        ]
        free[email] = subtract_busy(candidate_blocks, busy)
        bookable[email] = subtract_busy(free[email], booked)
        stats.free_minutes[email] = total_minutes(free[email])
        stats.bookable_minutes[email] = total_minutes(bookable[email])

    placements: list[FeasiblePlacement] = []
    for block in candidate_blocks:
        starts = []
        cursor = round_up(block.start, policy.slot_granularity_minutes)
        while cursor < block.end:
            starts.append(cursor)
            cursor += step
        overruns = sum(1 for s in starts if s + duration > block.end)

        for start in starts:
            stats.slots_evaluated += 1
            end = start + duration
            if end > block.end:
                stats.boundary_rejections += 1
                continue
            if earliest and latest and not within_local_window(start, end, candidate_timezone, earliest, latest):
                stats.outside_hours += 1
                continue

            accepted: list[str] = []
            busy_skipped = booked_skipped = 0
            for email in pool:
                if email not in free:
                    continue
                schedule = interviewer_schedules[email]
                if (
                    policy.enforce_business_hours
                    and schedule.working_hours is not None
                    and not within_working_hours(start, end, schedule.working_hours)
                ):
                    stats.outside_hours += 1
                    continue
                if _contains(bookable[email], start, end):
                    accepted.append(email)
                elif _contains(free[email], start, end):
                    booked_skipped += 1
                    stats.booking_rejections += 1
                else:
                    busy_skipped += 1
                    stats.busy_rejections += 1

            day = local_date(start, candidate_timezone)
            for email in accepted:
                placements.append(FeasiblePlacement(
                    session_id=session.id,
                    session_name=session.name,
                    start=start,
                    end=end,
                    interviewer_email=_original_email(session, email),
                    day=day,
                    block=block,
                    busy_avoided=busy_skipped,
                    bookings_avoided=booked_skipped,
                    boundary_avoided=overruns,
                ))

    return placements


def _contains(blocks: Sequence[AvailabilityBlock], start: datetime, end: datetime) -> bool:
    # Blocks are sorted and disjoint, so only the last one starting at or before ``start`` can hold it.
    i = bisect_right(blocks, start, key=lambda b: b.start) - 1
    return i >= 0 and end <= blocks[i].end


def _original_email(session: SessionTemplate, lowered: str) -> str:
    return next((e for e in session.interviewer_pool.emails if e.lower() == lowered), lowered)


def _explain_infeasible(
    session: SessionTemplate,
    blocks: Sequence[AvailabilityBlock],
    candidate_timezone: str,
    policy: SchedulingPolicy,
    stats: FeasibilityStats,
) -> ConstraintViolation:
    """Attribute a session's lack of placements to the most specific cause."""
    pool = session.interviewer_pool.emails
    name = session.name

    if not pool:
        return ConstraintViolation(
            key=ConstraintKey.INTERVIEWER_POOL_EMPTY,
            severity=Severity.BLOCKING,
            description=f'No interviewers assigned to "{name}"',
            evidence=PoolEvidence(session_id=session.id, details="The interviewer pool for this session is empty"),
        )

    lowered = list(dict.fromkeys(e.lower() for e in pool))
    fully_busy = [e for e in lowered if stats.free_minutes.get(e, 0) == 0]
    if len(fully_busy) == len(lowered):
        unknown = len(stats.unknown_interviewers)
        details = f"All {len(lowered)} interviewers are busy for the candidate's entire availability"
        if unknown:
            details += f" ({unknown} without calendar data)"
        return ConstraintViolation(
            key=ConstraintKey.INTERVIEWER_POOL_ALL_BUSY,
            severity=Severity.BLOCKING,
            description=f'All interviewers for "{name}" are busy during candidate availability',
            evidence=PoolEvidence(
                session_id=session.id,
                interviewer_email=lowered[0] if len(lowered) == 1 else None,
                details=details,
                pool_size=len(lowered),
            ),
        )

    if all(stats.bookable_minutes.get(e, 0) == 0 for e in lowered):
        return ConstraintViolation(
            key=ConstraintKey.CONFLICTING_EXISTING_BOOKINGS,
            severity=Severity.BLOCKING,
            description=f'Existing interview bookings leave no free time for "{name}"',
            evidence=BookingEvidence(
                session_id=session.id,
                details="Every pool member's free time is taken by confirmed bookings",
                booking_count=stats.booking_rejections,
            ),
        )

    longest = longest_block_minutes(blocks)
    if session.duration_minutes > longest:
        return ConstraintViolation(
            key=ConstraintKey.SESSION_TOO_LONG_FOR_BLOCKS,
            severity=Severity.BLOCKING,
            description=f'"{name}" ({session.duration_minutes} min) is longer than any availability block',
            evidence=DurationEvidence(
                session_id=session.id,
                details=f"Longest candidate block is {longest} minutes",
                duration_minutes=session.duration_minutes,
                longest_block_minutes=longest,
            ),
        )

    if stats.outside_hours:
        earliest = session.constraints.earliest_start_local or DEFAULT_EARLIEST_START
        latest = session.constraints.latest_end_local or DEFAULT_LATEST_END
        return ConstraintViolation(
            key=ConstraintKey.BUSINESS_HOURS_VIOLATION,
            severity=Severity.BLOCKING,
            description=f'"{name}" cannot be scheduled within business hours',
            evidence=BusinessHoursEvidence(
                session_id=session.id,
                details=f"{stats.outside_hours} candidate slots fall outside {earliest}-{latest} {candidate_timezone}",
                earliest_start_local=earliest,
                latest_end_local=latest,
                time_zone=candidate_timezone,
            ),
        )

    return ConstraintViolation(
        key=ConstraintKey.INTERVIEWER_POOL_ALL_BUSY,
        severity=Severity.LIMITING,
        description=f'No interviewer for "{name}" has a free stretch of {session.duration_minutes} minutes',
        evidence=PoolEvidence(
            session_id=session.id,
            details="Interviewers have free time, but only in fragments shorter than the session",
            pool_size=len(lowered),
        ),
    )


def _days_violation(days_span: int, max_days_span: int) -> ConstraintViolation:
    return ConstraintViolation(
        key=ConstraintKey.MAX_DAYS_EXCEEDED,
        severity=Severity.LIMITING,
        description=f"Loop would span {days_span} days (max {max_days_span})",
        evidence=DaysSpanEvidence(
            details="Sessions cannot be fitted within the allowed number of days",
            days_span=days_span,
            max_days_span=max_days_span,
        ),
    )


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def _search_ordering(
    ordering: list[SessionTemplate],
    feasible: dict[str, list[FeasiblePlacement]],
    ctx: _SolveContext,
    solutions: list[LoopSolution],
    seen: set[tuple],
    target: int,
) -> None:
    """Find at most one loop per starting point of the first session.

    Starting points are visited round-robin across candidate days (first slot
    of each day, then the second slot of each day, ...) so alternatives cover
    different days before different times on the same day.
    """
    per_day: dict[date, int] = {}
    ranked: list[tuple[int, date, int, FeasiblePlacement]] = []
    for position, placement in enumerate(feasible[ordering[0].id]):
        rank = per_day.get(placement.day, 0)
        per_day[placement.day] = rank + 1
        ranked.append((rank, placement.day, position, placement))
    ranked.sort(key=lambda r: r[:3])
    starting_points = [r[3] for r in ranked]

    dead: set[tuple[int, datetime, date]] = set()
    for first in starting_points:
        if len(solutions) >= target or ctx.exhausted():
            return
        placed = _extend([first], 1, ordering, feasible, ctx, dead)
        if placed is None:
            continue
        signature = tuple((p.session_id, p.start, p.interviewer_email) for p in placed)
        if signature in seen:
            continue
        seen.add(signature)
        solutions.append(_build_solution(placed, ctx.candidate_timezone))


def _extend(
    placed: list[FeasiblePlacement],
    index: int,
    ordering: list[SessionTemplate],
    feasible: dict[str, list[FeasiblePlacement]],
    ctx: _SolveContext,
    dead: set[tuple[int, datetime, date]],
) -> list[FeasiblePlacement] | None:
    """Depth-first: place ``ordering[index:]`` after ``placed``, earliest first."""
    if ctx.exhausted():
        return None
    ctx.iterations += 1

    if index >= len(ordering):
        return placed

    previous = ordering[index - 1]
    last = placed[-1]
    gap = timedelta(minutes=previous.constraints.min_gap_to_next_minutes or 0)
    min_start = last.end + gap
    first_day = placed[0].day

    # The outcome only depends on where the next session may start and on which
    # day the loop began, so failed states are remembered.
    state = (index, min_start, first_day)
    if state in dead:
        return None

    session = ordering[index]
    candidates = feasible[session.id]
    begin = bisect_left(candidates, min_start, key=lambda p: p.start)

    if begin == len(candidates) and gap and bisect_left(candidates, last.end, key=lambda p: p.start) < begin:
        ctx.record(ConstraintViolation(
            key=ConstraintKey.INSUFFICIENT_GAP_BETWEEN_SESSIONS,
            severity=Severity.LIMITING,
            description=f'No slot for "{session.name}" leaves the required gap after "{previous.name}"',
            evidence=GapEvidence(
                session_id=previous.id,
                next_session_id=session.id,
                gap_minutes=previous.constraints.min_gap_to_next_minutes or 0,
                details=f"{int(gap.total_seconds() // 60)} minute gap required after {previous.name}",
            ),
        ))

    for candidate in candidates[begin:]:
        span = (candidate.day - first_day).days + 1
        if span > ctx.policy.max_days_span:
            # Candidates are sorted by start, so every later one spans further.
            ctx.record(_days_violation(span, ctx.policy.max_days_span))
            break
        result = _extend(placed + [candidate], index + 1, ordering, feasible, ctx, dead)
        if result is not None:
            return result
        if ctx.timed_out or ctx.iteration_limit_reached:
            return None

    dead.add(state)
    return None


# ---------------------------------------------------------------------------
# Result building
# ---------------------------------------------------------------------------

def _build_solution(placed: list[FeasiblePlacement], candidate_timezone: str) -> LoopSolution:
    sessions = [
        ScheduledSession(
            session_id=p.session_id,
            session_name=p.session_name,
            start=p.start,
            end=p.end,
            interviewer_email=p.interviewer_email,
            reason=_reason(p, candidate_timezone),
            display_start=format_in_timezone(p.start, candidate_timezone),
            display_end=format_in_timezone(p.end, candidate_timezone),
        )
        for p in placed
    ]
    first, last = placed[0], placed[-1]
    days_span = (last.day - first.day).days + 1
    is_single_day = days_span == 1
    rationale = (
        f"All {len(sessions)} sessions on {format_date(first.start, candidate_timezone)}"
        if is_single_day
        else f"{len(sessions)} sessions across {days_span} days"
    )

    fingerprint = "|".join(f"{p.session_id}@{p.start.isoformat()}@{p.interviewer_email.lower()}" for p in placed)
    return LoopSolution(
        solution_id="solution-" + hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:12],
        days_span=days_span,
        is_single_day=is_single_day,
        sessions=sessions,
        rationale_summary=rationale,
        total_duration_minutes=int((last.end - first.start).total_seconds() // 60),
        loop_start=first.start,
        loop_end=last.end,
        conflicts_checked=ConflictCheckSummary(
            interviewer_busy_avoided=sum(p.busy_avoided for p in placed),
            existing_bookings_avoided=sum(p.bookings_avoided for p in placed),
            candidate_block_boundary_avoided=sum(p.boundary_avoided for p in placed),
        ),
    )


def _reason(placement: FeasiblePlacement, candidate_timezone: str) -> str:
    parts = [
        f"{placement.interviewer_email} is free "
        f"{format_time(placement.start, candidate_timezone)}-{format_time(placement.end, candidate_timezone)}"
    ]
    if placement.busy_avoided or placement.bookings_avoided:
        parts.append(
            f"skipped {placement.busy_avoided} busy and {placement.bookings_avoided} booked pool member(s)"
        )
    parts.append(
        "inside candidate block "
        f"{format_time(placement.block.start, candidate_timezone)}-{format_time(placement.block.end, candidate_timezone)}"
    )
    return "; ".join(parts)


def _metadata(ctx: _SolveContext, graph_api_calls: int) -> SolveMetadata:
    return SolveMetadata(
        solve_duration_ms=ctx.elapsed_ms(),
        search_iterations=ctx.iterations,
        slots_evaluated=ctx.slots_evaluated,
        graph_api_calls=graph_api_calls,
        timed_out=ctx.timed_out,
        iteration_limit_reached=ctx.iteration_limit_reached,
    )


def _ranked_violations(ctx: _SolveContext) -> list[ConstraintViolation]:
    indexed = list(enumerate(ctx.violations.values()))
    indexed.sort(key=lambda pair: (SEVERITY_RANK[pair[1].severity], -pair[1].occurrences, pair[0]))
    return [violation for _, violation in indexed]


def _unsatisfiable(ctx: _SolveContext, graph_api_calls: int) -> LoopSolveResult:
    capped = ctx.timed_out or ctx.iteration_limit_reached
    violations = _ranked_violations(ctx)
    result = LoopSolveResult(
        status=LoopSolveStatus.TIMEOUT if capped else LoopSolveStatus.UNSATISFIABLE,
        top_constraints=violations,
        recommended_actions=build_unsat_diagnostics(violations),
        confidence=Confidence.LOW if capped else Confidence.HIGH,
        metadata=_metadata(ctx, graph_api_calls),
    )
    log.info(
        "Loop solve %s: %s (%s)",
        result.solve_id, result.status.value,
        ", ".join(v.key.value for v in violations) or "no sessions",
    )
    return result
