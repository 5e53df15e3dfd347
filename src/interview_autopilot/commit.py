"""Loop commit coordinator.

Books every session of a chosen solution as a calendar event, one at a time.
This is a saga, not a transaction: when any session fails, the events that
were created are cancelled again and the outcome is recorded on the loop
booking, including rollback failures.
"""

from __future__ import annotations

import logging

from interview_autopilot.database import Database, IdempotencyConflict
from interview_autopilot.errors import ConflictError, InvalidStateError, NotFoundError
from interview_autopilot.schemas import (
    AvailabilityRequest,
    AvailabilityRequestStatus,
    BookedSessionInfo,
    Booking,
    BookingStatus,
    CommitStatus,
    CreateEventPayload,
    LoopBooking,
    LoopBookingItem,
    LoopBookingStatus,
    LoopCommitResult,
    LoopSolveStatus,
    MeetingDetails,
    RollbackDetails,
    ScheduledSession,
)
from interview_autopilot.timezones import format_in_timezone
from interview_autopilot.tools.calendar import CalendarClient, CalendarError

log = logging.getLogger(__name__)

ROLLBACK_REASON = "Interview loop could not be fully booked"

_CLOSED_REQUEST_STATUSES = (
    AvailabilityRequestStatus.BOOKED,
    AvailabilityRequestStatus.CANCELLED,
    AvailabilityRequestStatus.EXPIRED,
)


class LoopCommitCoordinator:
    def __init__(self, db: Database, calendar: CalendarClient, organizer_email: str = "") -> None:
        self.db = db
        self.calendar = calendar
        self.organizer_email = organizer_email

    def commit(
        self,
        solve_run_id: str,
        solution_id: str,
        commit_idempotency_key: str,
        organizer_email: str | None = None,
        meeting_details: MeetingDetails | None = None,
    ) -> LoopCommitResult:
        """Book ``solution_id`` from solve run ``solve_run_id``.

        Returns ``ALREADY_COMMITTED`` when the key has a committed booking,
        ``COMMITTED`` when every session was booked, and ``FAILED`` (with
        rollback details) otherwise. Raises ``ConflictError`` while another
        commit with the same key is in flight, and ``NotFoundError`` or
        ``InvalidStateError`` before any side effect when the inputs are unusable.
        """
        if not commit_idempotency_key:
            raise InvalidStateError("commit_idempotency_key is required")

        existing = self.db.get_loop_booking_by_idempotency_key(commit_idempotency_key)
        if existing is not None:
            if existing.status == LoopBookingStatus.COMMITTED:
                return self._already_committed(existing)
            if existing.status == LoopBookingStatus.PENDING:
                raise ConflictError("Commit is already in progress")
            # FAILED and CANCELLED attempts may be retried with a fresh booking row.

        run = self.db.get_solve_run(solve_run_id)
        if run is None:
            raise NotFoundError(f"Solve run not found: {solve_run_id}")
        if run.result_snapshot is None:
            raise InvalidStateError("Solve run has no result")
        if run.status != LoopSolveStatus.SOLVED:
            raise InvalidStateError(f"Cannot commit - solve status is {run.status.value}")

        solution = next((s for s in run.result_snapshot.solutions if s.solution_id == solution_id), None)
        if solution is None:
            raise NotFoundError(f"Solution {solution_id} not found in solve result")

        request = self.db.get_availability_request(run.availability_request_id)
        if request is None:
            raise NotFoundError(f"Availability request not found: {run.availability_request_id}")
        if request.status in _CLOSED_REQUEST_STATUSES:
            raise ConflictError(f"Availability request is {request.status.value}")

        loop_booking = LoopBooking(
            availability_request_id=run.availability_request_id,
            loop_template_id=run.loop_template_id,
            solve_run_id=run.id,
            chosen_solution_id=solution_id,
            commit_idempotency_key=commit_idempotency_key,
        )
        try:
            self.db.create_loop_booking(loop_booking)
        except IdempotencyConflict:
            # Another commit with this key got its row in first.
            winner = self.db.get_loop_booking_by_idempotency_key(commit_idempotency_key)
            if winner is not None and winner.status == LoopBookingStatus.COMMITTED:
                return self._already_committed(winner)
            raise ConflictError("Commit is already in progress")

        organizer = organizer_email or request.organizer_email or self.organizer_email
        details = meeting_details or MeetingDetails()
        log.info(
            "Committing loop booking %s: %d sessions for request %s",
            loop_booking.id, len(solution.sessions), request.id,
        )

        created: list[BookedSessionInfo] = []
        errors: list[str] = []
        for session in solution.sessions:
            try:
                self._book_session(
                    loop_booking, request, session, organizer, details, commit_idempotency_key, created
                )
            except CalendarError as e:
                log.error(
                    "Booking session %s failed (status %s, retryable=%s): %s",
                    session.session_id, e.status_code, e.retryable, e.message,
                )
                errors.append(f'Failed to book "{session.session_name}": {e.message}')
            except Exception as e:
                log.error("Booking session %s failed", session.session_id, exc_info=True)
                errors.append(f'Failed to book "{session.session_name}": {e}')

        if errors:
            rollback = self._rollback(organizer, created)
            message = "; ".join(errors)
            self.db.update_loop_booking_status(
                loop_booking.id, LoopBookingStatus.FAILED,
                error_message=message, rollback_details=rollback,
            )
            log.error(
                "Loop booking %s failed: %d/%d events created, %d rolled back",
                loop_booking.id, len(created), len(solution.sessions), rollback.events_rolled_back,
            )
            return LoopCommitResult(
                status=CommitStatus.FAILED,
                loop_booking_id=loop_booking.id,
                error_message=message,
                rollback_details=rollback,
            )

        self.db.update_loop_booking_status(loop_booking.id, LoopBookingStatus.COMMITTED)
        self.db.update_availability_request_status(request.id, AvailabilityRequestStatus.BOOKED)
        log.info("Loop booking %s committed", loop_booking.id)
        return LoopCommitResult(
            status=CommitStatus.COMMITTED,
            loop_booking_id=loop_booking.id,
            booked_sessions=created,
        )

    def _already_committed(self, loop_booking: LoopBooking) -> LoopCommitResult:
        items = self.db.list_loop_booking_items(loop_booking.id)
        names = self._session_names(loop_booking)
        log.info("Commit key %s already committed as %s", loop_booking.commit_idempotency_key, loop_booking.id)
        return LoopCommitResult(
            status=CommitStatus.ALREADY_COMMITTED,
            loop_booking_id=loop_booking.id,
            booked_sessions=[
                info for info in (self._item_to_info(item, names) for item in items) if info is not None
            ],
        )

    def _session_names(self, loop_booking: LoopBooking) -> dict[str, str]:
        run = self.db.get_solve_run(loop_booking.solve_run_id)
        if run is None or run.result_snapshot is None:
            return {}
        return {
            s.session_id: s.session_name
            for solution in run.result_snapshot.solutions
            if solution.solution_id == loop_booking.chosen_solution_id
            for s in solution.sessions
        }

    def _item_to_info(self, item: LoopBookingItem, names: dict[str, str]) -> BookedSessionInfo | None:
        booking = self.db.get_booking(item.booking_id)
        if booking is None:
            return None
        return BookedSessionInfo(
            session_id=item.session_template_id,
            session_name=names.get(item.session_template_id, item.session_template_id),
            booking_id=booking.id,
            calendar_event_id=item.calendar_event_id,
            start=booking.scheduled_start,
            end=booking.scheduled_end,
            interviewer_email=booking.interviewer_emails[0] if booking.interviewer_emails else "",
        )

    def _book_session(
        self,
        loop_booking: LoopBooking,
        request: AvailabilityRequest,
        session: ScheduledSession,
        organizer: str,
        details: MeetingDetails,
        commit_key: str,
        created: list[BookedSessionInfo],
    ) -> None:
        """Create the calendar event for ``session`` and record it.

        The event joins ``created`` as soon as the calendar accepts it, before
        any database write.
        """
        tz = request.candidate_timezone or "UTC"
        candidate = request.candidate_name or request.candidate_email
        subject = details.title or f"{session.session_name} - {candidate}".strip(" -")
        body = details.body_template or (
            f"{session.session_name} interview with {candidate}\n"
            f"When: {format_in_timezone(session.start, tz)}\n"
            f"Interviewer: {session.interviewer_email}"
        )
        attendees = [e for e in (session.interviewer_email, request.candidate_email) if e]

        event = self.calendar.create_event(organizer, CreateEventPayload(
            subject=subject,
            body=body,
            start=session.start,
            end=session.end,
            time_zone=tz,
            attendees=attendees,
            is_online_meeting=details.include_online_meeting,
            transaction_id=f"{commit_key}:{session.session_id}",
        ))

        booking = Booking(
            availability_request_id=request.id,
            scheduled_start=session.start,
            scheduled_end=session.end,
            interviewer_emails=[session.interviewer_email],
            calendar_event_id=event.event_id,
            ical_uid=event.ical_uid,
            join_url=event.join_url,
        )
        created.append(BookedSessionInfo(
            session_id=session.session_id,
            session_name=session.session_name,
            booking_id=booking.id,
            calendar_event_id=event.event_id,
            start=session.start,
            end=session.end,
            interviewer_email=session.interviewer_email,
        ))

        self.db.save_booking(booking)
        self.db.create_loop_booking_item(LoopBookingItem(
            loop_booking_id=loop_booking.id,
            session_template_id=session.session_id,
            booking_id=booking.id,
            calendar_event_id=event.event_id,
        ))
        log.info("Booked session %s as event %s", session.session_id, event.event_id)

    def _rollback(self, organizer: str, created: list[BookedSessionInfo]) -> RollbackDetails:
        """Cancel every created event. Failures are recorded, never raised.

        Loop booking items are left as written; the booking row carries the
        cancellation.
        """
        details = RollbackDetails(events_created=len(created))
        for info in created:
            try:
                self.calendar.cancel_event(organizer, info.calendar_event_id, ROLLBACK_REASON)
            except CalendarError as e:
                log.warning("Rollback of event %s failed: %s", info.calendar_event_id, e.message)
                details.rollback_errors.append(f"Failed to rollback {info.session_id}: {e.message}")
                continue
            except Exception as e:
                log.warning("Rollback of event %s failed", info.calendar_event_id, exc_info=True)
                details.rollback_errors.append(f"Failed to rollback {info.session_id}: {e}")
                continue
            details.events_rolled_back += 1

            try:
                self.db.update_booking_status(info.booking_id, BookingStatus.CANCELLED, ROLLBACK_REASON)
            except Exception as e:
                log.warning("Marking booking %s cancelled failed", info.booking_id, exc_info=True)
                details.rollback_errors.append(
                    f"Event for {info.session_id} cancelled but booking {info.booking_id} not updated: {e}"
                )
        return details
