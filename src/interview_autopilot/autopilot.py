"""Loop Autopilot service: gathers solver inputs, runs solves and records them.

Candidate availability, interviewer calendars and existing bookings are read
before the solver runs; the calendar and booking reads are independent and run
concurrently. The solver itself stays synchronous and free of I/O.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime

from interview_autopilot.availability import normalize_blocks
from interview_autopilot.commit import LoopCommitCoordinator
from interview_autopilot.config import Config
from interview_autopilot.database import Database, IdempotencyConflict
from interview_autopilot.errors import (
    AutopilotError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from interview_autopilot.schemas import (
    AvailabilityRequestStatus,
    AvailableSlot,
    Booking,
    InterviewerSchedule,
    LoopCommitResult,
    LoopSolveRequest,
    LoopSolveRun,
    LoopSolveStatus,
    LoopTemplate,
    MeetingDetails,
    SchedulingPolicy,
    SchedulingRequest,
    SessionTemplate,
)
from interview_autopilot.slots import generate_slots
from interview_autopilot.solver import solve_loop
from interview_autopilot.timezones import is_valid_timezone
from interview_autopilot.tools.calendar import CalendarClient, CalendarError, get_calendar_client

log = logging.getLogger(__name__)


class LoopAutopilot:
    def __init__(
        self,
        config: Config,
        db: Database | None = None,
        calendar: CalendarClient | None = None,
    ) -> None:
        self.config = config
        self.db = db or Database(config.db_path)
        self.calendar = calendar or get_calendar_client(config)
        self.coordinator = LoopCommitCoordinator(self.db, self.calendar, config.organizer_email)

    # -- Loop templates -------------------------------------------------------

    def create_loop_template(
        self, name: str, sessions: list[SessionTemplate], description: str = ""
    ) -> LoopTemplate:
        """Store a template; sessions are renumbered in the order given."""
        if not name:
            raise ValidationError("Template name is required")
        if not sessions:
            raise ValidationError("At least one session is required")
        for i, s in enumerate(sessions, start=1):
            if not s.name:
                raise ValidationError(f"Session {i} must have a name")

        template = LoopTemplate(name=name, description=description)
        template.sessions = [
            s.model_copy(update={"order": i, "loop_template_id": template.id})
            for i, s in enumerate(sessions)
        ]
        self.db.save_loop_template(template)
        log.info("Created loop template %s (%s) with %d sessions", template.id, name, len(sessions))
        return template

    def list_loop_templates(self, include_inactive: bool = False) -> list[LoopTemplate]:
        return self.db.list_loop_templates(active_only=not include_inactive)

    # -- Solving --------------------------------------------------------------

    def solve(self, request: LoopSolveRequest) -> tuple[LoopSolveRun, bool]:
        """Blocking wrapper around :meth:`solve_async`."""
        return asyncio.run(self.solve_async(request))

    async def solve_async(self, request: LoopSolveRequest) -> tuple[LoopSolveRun, bool]:
        """Run the loop solver for an availability request.

        Returns ``(run, cached)``. ``cached`` is True when a finished run
        already exists for ``request.solve_idempotency_key``.
        """
        key = request.solve_idempotency_key
        if key:
            existing = self.db.get_solve_run_by_idempotency_key(key)
            if existing is not None and existing.result_snapshot is not None:
                log.info("Solve key %s already has run %s", key, existing.id)
                return existing, True
            if existing is not None:
                raise ConflictError(f"Solve run {existing.id} for this key has no result ({existing.status.value})")

        availability_request = self.db.get_availability_request(request.availability_request_id)
        if availability_request is None:
            raise NotFoundError("Availability request not found")
        if availability_request.status == AvailabilityRequestStatus.PENDING:
            raise InvalidStateError("Candidate has not submitted availability yet")
        if availability_request.status == AvailabilityRequestStatus.BOOKED:
            raise ConflictError("Interview has already been booked")
        if availability_request.status in (AvailabilityRequestStatus.CANCELLED, AvailabilityRequestStatus.EXPIRED):
            raise ConflictError(f"Availability request is {availability_request.status.value}")

        template = self.db.get_loop_template(request.loop_template_id)
        if template is None:
            raise NotFoundError("Loop template not found")
        if not template.is_active:
            raise InvalidStateError("Loop template is not active")
        if not template.sessions:
            raise InvalidStateError("Loop template has no sessions")

        sessions = [
            s.model_copy(update={"interviewer_pool": request.interviewer_pool_overrides[s.id]})
            if s.id in request.interviewer_pool_overrides else s
            for s in template.sessions
        ]
        for s in sessions:
            if not s.interviewer_pool.emails:
                raise ValidationError(f'Session "{s.name}" has no interviewers in pool')

        policy = self._build_policy(request.policy_overrides)

        raw_blocks = self.db.list_candidate_blocks(request.availability_request_id)
        if not raw_blocks:
            raise InvalidStateError("No candidate availability blocks found")
        blocks = normalize_blocks(raw_blocks, interval_minutes=policy.slot_granularity_minutes) or raw_blocks
        window_start = min(b.start for b in blocks)
        window_end = max(b.end for b in blocks)

        emails = list(dict.fromkeys(e for s in sessions for e in s.interviewer_pool.emails))
        loop = asyncio.get_running_loop()
        try:
            schedules, bookings = await asyncio.gather(
                loop.run_in_executor(
                    None, self.calendar.get_schedule,
                    emails, window_start, window_end, policy.slot_granularity_minutes,
                ),
                loop.run_in_executor(None, self.db.list_bookings_in_range, window_start, window_end),
            )
        except CalendarError as e:
            log.error("Fetching interviewer calendars failed: %s", e.message)
            raise AutopilotError("Failed to fetch interviewer calendars", status_code=502) from e

        candidate_timezone = (
            request.candidate_timezone
            or availability_request.candidate_timezone
            or self.config.default_candidate_timezone
        )
        if not is_valid_timezone(candidate_timezone):
            raise ValidationError(f"Unknown timezone: {candidate_timezone}")

        run = LoopSolveRun(
            availability_request_id=request.availability_request_id,
            loop_template_id=request.loop_template_id,
            inputs_snapshot=request.model_dump(mode="json"),
            status=LoopSolveStatus.ERROR,
            solve_idempotency_key=key,
        )
        try:
            self.db.create_solve_run(run)
        except IdempotencyConflict as e:
            raise ConflictError("A solve with this idempotency key is already running") from e

        started = time.monotonic()
        try:
            result = solve_loop(
                sessions, raw_blocks, candidate_timezone,
                {s.email.lower(): s for s in schedules}, bookings, policy,
            )
        except Exception as e:
            elapsed = int((time.monotonic() - started) * 1000)
            log.error("Solver failed for run %s", run.id, exc_info=True)
            self.db.mark_solve_run_error(run.id, str(e) or type(e).__name__, elapsed)
            raise

        self.db.save_solve_result(run.id, result)
        return self.db.get_solve_run(run.id), False

    def last_run(self, availability_request_id: str) -> LoopSolveRun | None:
        return self.db.last_solve_run(availability_request_id)

    def _build_policy(self, overrides: dict) -> SchedulingPolicy:
        base = self.config.default_policy()
        unknown = set(overrides) - set(SchedulingPolicy.model_fields)
        if unknown:
            raise ValidationError(f"Unknown policy settings: {', '.join(sorted(unknown))}")
        return base.with_overrides(**overrides)

    # -- Single-session slots -------------------------------------------------

    def get_slots(self, request: SchedulingRequest, now: datetime | None = None) -> list[AvailableSlot]:
        schedules, bookings = asyncio.run(self._fetch_slot_inputs(request))
        found = {s.email.lower() for s in schedules}
        for email in request.interviewer_emails:
            if email.lower() not in found:
                log.warning("No calendar data for %s; treating as free", email)
        return generate_slots(request, schedules, bookings, now=now)

    async def _fetch_slot_inputs(
        self, request: SchedulingRequest
    ) -> tuple[list[InterviewerSchedule], list[Booking]]:
        loop = asyncio.get_running_loop()
        schedules, bookings = await asyncio.gather(
            loop.run_in_executor(
                None, self.calendar.get_schedule,
                request.interviewer_emails, request.window_start, request.window_end,
            ),
            loop.run_in_executor(
                None, self.db.list_bookings_in_range,
                request.window_start, request.window_end, request.interviewer_emails,
            ),
        )
        return schedules, bookings

    # -- Commit ---------------------------------------------------------------

    def commit(
        self,
        solve_run_id: str,
        solution_id: str,
        commit_idempotency_key: str,
        organizer_email: str | None = None,
        meeting_details: MeetingDetails | None = None,
    ) -> LoopCommitResult:
        return self.coordinator.commit(
            solve_run_id, solution_id, commit_idempotency_key, organizer_email, meeting_details
        )

    def close(self) -> None:
        self.db.close()
