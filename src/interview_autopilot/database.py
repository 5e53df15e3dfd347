"""SQLite persistence layer: availability requests, bookings, solve runs and loop bookings."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from interview_autopilot.errors import InvalidStateError, NotFoundError
from interview_autopilot.schemas import (
    AvailabilityBlock,
    AvailabilityRequest,
    AvailabilityRequestStatus,
    Booking,
    BookingStatus,
    LoopBooking,
    LoopBookingItem,
    LoopBookingStatus,
    LoopSolveResult,
    LoopSolveRun,
    LoopSolveStatus,
    LoopTemplate,
    RollbackDetails,
    SessionTemplate,
    as_utc,
)


class IdempotencyConflict(Exception):
    """A live row already holds this idempotency key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Idempotency key already in use: {key}")
        self.key = key


def _ts(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    def __init__(self, db_path: Path | str = "interview_autopilot.db") -> None:
        self.db_path = str(db_path)
        # Reads may run on a worker thread while the caller waits on them.
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_tables()

    def _init_tables(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS availability_requests (
                id TEXT PRIMARY KEY,
                candidate_name TEXT,
                candidate_email TEXT,
                candidate_timezone TEXT,
                organizer_email TEXT,
                interviewer_emails TEXT,  -- JSON array
                duration_minutes INTEGER DEFAULT 60,
                window_start TEXT,
                window_end TEXT,
                status TEXT DEFAULT 'pending',
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS candidate_availability_blocks (
                id TEXT PRIMARY KEY,
                availability_request_id TEXT NOT NULL,
                start_at TEXT NOT NULL,
                end_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS bookings (
                id TEXT PRIMARY KEY,
                availability_request_id TEXT,
                scheduled_start TEXT NOT NULL,
                scheduled_end TEXT NOT NULL,
                interviewer_emails TEXT,  -- JSON array
                calendar_event_id TEXT,
                ical_uid TEXT,
                join_url TEXT,
                status TEXT DEFAULT 'confirmed',
                cancellation_reason TEXT,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS loop_templates (
                id TEXT PRIMARY KEY,
                name TEXT,
                description TEXT,
                is_active INTEGER DEFAULT 1,
                sessions TEXT,  -- JSON array of session templates
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS loop_solve_runs (
                id TEXT PRIMARY KEY,
                availability_request_id TEXT NOT NULL,
                loop_template_id TEXT NOT NULL,
                inputs_snapshot TEXT,  -- JSON
                status TEXT NOT NULL,
                result_snapshot TEXT,  -- JSON, written once
                solutions_count INTEGER DEFAULT 0,
                solve_duration_ms INTEGER,
                search_iterations INTEGER,
                graph_api_calls INTEGER,
                error_message TEXT,
                solve_idempotency_key TEXT UNIQUE,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS loop_bookings (
                id TEXT PRIMARY KEY,
                availability_request_id TEXT NOT NULL,
                loop_template_id TEXT,
                solve_run_id TEXT NOT NULL,
                chosen_solution_id TEXT NOT NULL,
                commit_idempotency_key TEXT NOT NULL,
                status TEXT DEFAULT 'PENDING',
                rollback_attempted INTEGER DEFAULT 0,
                rollback_details TEXT,  -- JSON
                error_message TEXT,
                created_at TEXT
            );

            -- At most one live booking per commit key; FAILED rows do not count.
            CREATE UNIQUE INDEX IF NOT EXISTS loop_bookings_live_commit_key
                ON loop_bookings (commit_idempotency_key)
                WHERE status IN ('PENDING', 'COMMITTED');

            CREATE TABLE IF NOT EXISTS loop_booking_items (
                id TEXT PRIMARY KEY,
                loop_booking_id TEXT NOT NULL,
                session_template_id TEXT NOT NULL,
                booking_id TEXT NOT NULL,
                calendar_event_id TEXT NOT NULL,
                status TEXT DEFAULT 'confirmed'
            );
        """)
        self.conn.commit()

    # -- Availability requests ------------------------------------------------

    def save_availability_request(self, r: AvailabilityRequest) -> None:
        self.conn.execute(
            """INSERT OR REPLACE INTO availability_requests
               (id, candidate_name, candidate_email, candidate_timezone, organizer_email,
                interviewer_emails, duration_minutes, window_start, window_end, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                r.id, r.candidate_name, r.candidate_email, r.candidate_timezone,
                r.organizer_email, json.dumps(r.interviewer_emails), r.duration_minutes,
                _ts(r.window_start), _ts(r.window_end), r.status.value,
                _ts(datetime.now(timezone.utc)),
            ),
        )
        self.conn.commit()

    def get_availability_request(self, request_id: str) -> AvailabilityRequest | None:
        row = self.conn.execute(
            "SELECT * FROM availability_requests WHERE id = ?", (request_id,)
        ).fetchone()
        if not row:
            return None
        return AvailabilityRequest(
            id=row["id"],
            candidate_name=row["candidate_name"] or "",
            candidate_email=row["candidate_email"] or "",
            candidate_timezone=row["candidate_timezone"],
            organizer_email=row["organizer_email"] or "",
            interviewer_emails=json.loads(row["interviewer_emails"]) if row["interviewer_emails"] else [],
            duration_minutes=row["duration_minutes"] or 60,
            window_start=_parse_ts(row["window_start"]),
            window_end=_parse_ts(row["window_end"]),
            status=AvailabilityRequestStatus(row["status"]),
        )

    def update_availability_request_status(
        self, request_id: str, status: AvailabilityRequestStatus
    ) -> None:
        self.conn.execute(
            "UPDATE availability_requests SET status = ? WHERE id = ?",
            (status.value, request_id),
        )
        self.conn.commit()

    # -- Candidate availability -----------------------------------------------

    def save_candidate_blocks(self, request_id: str, blocks: list[AvailabilityBlock]) -> None:
        """Replace the candidate's submitted blocks for ``request_id``."""
        with self.conn:
            self.conn.execute(
                "DELETE FROM candidate_availability_blocks WHERE availability_request_id = ?",
                (request_id,),
            )
            self.conn.executemany(
                """INSERT INTO candidate_availability_blocks
                   (id, availability_request_id, start_at, end_at) VALUES (?, ?, ?, ?)""",
                [(b.id, request_id, _ts(b.start), _ts(b.end)) for b in blocks],
            )

    def list_candidate_blocks(self, request_id: str) -> list[AvailabilityBlock]:
        rows = self.conn.execute(
            """SELECT * FROM candidate_availability_blocks
               WHERE availability_request_id = ? ORDER BY start_at""",
            (request_id,),
        ).fetchall()
        return [
            AvailabilityBlock(id=r["id"], start=_parse_ts(r["start_at"]), end=_parse_ts(r["end_at"]))
            for r in rows
        ]

    # -- Bookings -------------------------------------------------------------

    def save_booking(self, b: Booking) -> None:
        self.conn.execute(
            """INSERT OR REPLACE INTO bookings
               (id, availability_request_id, scheduled_start, scheduled_end, interviewer_emails,
                calendar_event_id, ical_uid, join_url, status, cancellation_reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                b.id, b.availability_request_id, _ts(b.scheduled_start), _ts(b.scheduled_end),
                json.dumps(b.interviewer_emails), b.calendar_event_id, b.ical_uid, b.join_url,
                b.status.value, b.cancellation_reason, _ts(datetime.now(timezone.utc)),
            ),
        )
        self.conn.commit()

    def get_booking(self, booking_id: str) -> Booking | None:
        row = self.conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            return None
        return self._row_to_booking(row)

    def list_bookings_in_range(
        self, start: datetime, end: datetime, interviewer_emails: list[str] | None = None
    ) -> list[Booking]:
        """Confirmed or rescheduled bookings overlapping [start, end).

        With ``interviewer_emails``, only bookings sharing at least one of them
        (or listing no interviewers at all) are returned.
        """
        start, end = as_utc(start), as_utc(end)
        rows = self.conn.execute(
            "SELECT * FROM bookings WHERE status IN (?, ?) ORDER BY scheduled_start",
            (BookingStatus.CONFIRMED.value, BookingStatus.RESCHEDULED.value),
        ).fetchall()
        wanted = {e.lower() for e in interviewer_emails} if interviewer_emails is not None else None

        bookings = []
        for row in rows:
            booking = self._row_to_booking(row)
            if not (booking.scheduled_start < end and booking.scheduled_end > start):
                continue
            if wanted is not None and booking.interviewer_emails and not (
                wanted & {e.lower() for e in booking.interviewer_emails}
            ):
                continue
            bookings.append(booking)
        return bookings

    def update_booking_status(
        self, booking_id: str, status: BookingStatus, cancellation_reason: str | None = None
    ) -> None:
        self.conn.execute(
            "UPDATE bookings SET status = ?, cancellation_reason = ? WHERE id = ?",
            (status.value, cancellation_reason, booking_id),
        )
        self.conn.commit()

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            availability_request_id=row["availability_request_id"],
            scheduled_start=_parse_ts(row["scheduled_start"]),
            scheduled_end=_parse_ts(row["scheduled_end"]),
            interviewer_emails=json.loads(row["interviewer_emails"]) if row["interviewer_emails"] else [],
            calendar_event_id=row["calendar_event_id"],
            ical_uid=row["ical_uid"],
            join_url=row["join_url"],
            status=BookingStatus(row["status"]),
            cancellation_reason=row["cancellation_reason"],
        )

    # -- Loop templates -------------------------------------------------------

    def save_loop_template(self, t: LoopTemplate) -> None:
        sessions = [s.model_copy(update={"loop_template_id": t.id}) for s in t.sessions]
        self.conn.execute(
            """INSERT OR REPLACE INTO loop_templates
               (id, name, description, is_active, sessions, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                t.id, t.name, t.description, int(t.is_active),
                json.dumps([s.model_dump(mode="json") for s in sessions]),
                _ts(t.created_at),
            ),
        )
        self.conn.commit()

    def get_loop_template(self, template_id: str) -> LoopTemplate | None:
        row = self.conn.execute(
            "SELECT * FROM loop_templates WHERE id = ?", (template_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_loop_template(row)

    def list_loop_templates(self, active_only: bool = True) -> list[LoopTemplate]:
        if active_only:
            rows = self.conn.execute(
                "SELECT * FROM loop_templates WHERE is_active = 1 ORDER BY created_at DESC"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM loop_templates ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_loop_template(r) for r in rows]

    def _row_to_loop_template(self, row: sqlite3.Row) -> LoopTemplate:
        return LoopTemplate(
            id=row["id"],
            name=row["name"] or "",
            description=row["description"] or "",
            is_active=bool(row["is_active"]),
            sessions=[SessionTemplate.model_validate(s) for s in json.loads(row["sessions"] or "[]")],
            created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
        )

    # -- Solve runs -----------------------------------------------------------

    def create_solve_run(self, run: LoopSolveRun) -> None:
        try:
            self.conn.execute(
                """INSERT INTO loop_solve_runs
                   (id, availability_request_id, loop_template_id, inputs_snapshot, status,
                    solve_idempotency_key, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    run.id, run.availability_request_id, run.loop_template_id,
                    json.dumps(run.inputs_snapshot, default=str), run.status.value,
                    run.solve_idempotency_key, _ts(run.created_at),
                ),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise IdempotencyConflict(run.solve_idempotency_key or run.id) from e

    def save_solve_result(self, run_id: str, result: LoopSolveResult) -> None:
        """Store the result snapshot. Snapshots are immutable once written."""
        cursor = self.conn.execute(
            """UPDATE loop_solve_runs
               SET status = ?, result_snapshot = ?, solutions_count = ?, solve_duration_ms = ?,
                   search_iterations = ?, graph_api_calls = ?
               WHERE id = ? AND result_snapshot IS NULL""",
            (
                result.status.value, result.model_dump_json(), len(result.solutions),
                result.metadata.solve_duration_ms, result.metadata.search_iterations,
                result.metadata.graph_api_calls, run_id,
            ),
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            if self.get_solve_run(run_id) is None:
                raise NotFoundError(f"Solve run not found: {run_id}")
            raise InvalidStateError(f"Solve run {run_id} already has a result snapshot")

    def mark_solve_run_error(self, run_id: str, error_message: str, solve_duration_ms: int | None = None) -> None:
        self.conn.execute(
            """UPDATE loop_solve_runs SET status = ?, error_message = ?, solve_duration_ms = ?
               WHERE id = ? AND result_snapshot IS NULL""",
            (LoopSolveStatus.ERROR.value, error_message, solve_duration_ms, run_id),
        )
        self.conn.commit()

    def get_solve_run(self, run_id: str) -> LoopSolveRun | None:
        row = self.conn.execute(
            "SELECT * FROM loop_solve_runs WHERE id = ?", (run_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_solve_run(row)

    def get_solve_run_by_idempotency_key(self, key: str) -> LoopSolveRun | None:
        row = self.conn.execute(
            "SELECT * FROM loop_solve_runs WHERE solve_idempotency_key = ?", (key,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_solve_run(row)

    def last_solve_run(self, availability_request_id: str) -> LoopSolveRun | None:
        row = self.conn.execute(
            """SELECT * FROM loop_solve_runs WHERE availability_request_id = ?
               ORDER BY created_at DESC, rowid DESC LIMIT 1""",
            (availability_request_id,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_solve_run(row)

    def _row_to_solve_run(self, row: sqlite3.Row) -> LoopSolveRun:
        return LoopSolveRun(
            id=row["id"],
            availability_request_id=row["availability_request_id"],
            loop_template_id=row["loop_template_id"],
            inputs_snapshot=json.loads(row["inputs_snapshot"]) if row["inputs_snapshot"] else {},
            status=LoopSolveStatus(row["status"]),
            result_snapshot=(
                LoopSolveResult.model_validate_json(row["result_snapshot"])
                if row["result_snapshot"] else None
            ),
            solutions_count=row["solutions_count"] or 0,
            solve_duration_ms=row["solve_duration_ms"],
            search_iterations=row["search_iterations"],
            graph_api_calls=row["graph_api_calls"],
            error_message=row["error_message"],
            solve_idempotency_key=row["solve_idempotency_key"],
            created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
        )

    # -- Loop bookings --------------------------------------------------------

    def create_loop_booking(self, lb: LoopBooking) -> None:
        """Insert a loop booking. Raises ``IdempotencyConflict`` if a live row holds the key."""
        try:
            self.conn.execute(
                """INSERT INTO loop_bookings
                   (id, availability_request_id, loop_template_id, solve_run_id, chosen_solution_id,
                    commit_idempotency_key, status, rollback_attempted, rollback_details,
                    error_message, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    lb.id, lb.availability_request_id, lb.loop_template_id, lb.solve_run_id,
                    lb.chosen_solution_id, lb.commit_idempotency_key, lb.status.value,
                    int(lb.rollback_attempted),
                    lb.rollback_details.model_dump_json() if lb.rollback_details else None,
                    lb.error_message, _ts(lb.created_at),
                ),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise IdempotencyConflict(lb.commit_idempotency_key) from e

    def get_loop_booking(self, loop_booking_id: str) -> LoopBooking | None:
        row = self.conn.execute(
            "SELECT * FROM loop_bookings WHERE id = ?", (loop_booking_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_loop_booking(row)

    def get_loop_booking_by_idempotency_key(self, key: str) -> LoopBooking | None:
        """Most recent loop booking for ``key``, live or not."""
        row = self.conn.execute(
            """SELECT * FROM loop_bookings WHERE commit_idempotency_key = ?
               ORDER BY created_at DESC, rowid DESC LIMIT 1""",
            (key,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_loop_booking(row)

    def update_loop_booking_status(
        self,
        loop_booking_id: str,
        status: LoopBookingStatus,
        error_message: str | None = None,
        rollback_details: RollbackDetails | None = None,
    ) -> None:
        self.conn.execute(
            """UPDATE loop_bookings
               SET status = ?, error_message = ?, rollback_attempted = ?, rollback_details = ?
               WHERE id = ?""",
            (
                status.value, error_message, int(rollback_details is not None),
                rollback_details.model_dump_json() if rollback_details else None,
                loop_booking_id,
            ),
        )
        self.conn.commit()

    def _row_to_loop_booking(self, row: sqlite3.Row) -> LoopBooking:
        return LoopBooking(
            id=row["id"],
            availability_request_id=row["availability_request_id"],
            loop_template_id=row["loop_template_id"] or "",
            solve_run_id=row["solve_run_id"],
            chosen_solution_id=row["chosen_solution_id"],
            commit_idempotency_key=row["commit_idempotency_key"],
            status=LoopBookingStatus(row["status"]),
            rollback_attempted=bool(row["rollback_attempted"]),
            rollback_details=(
                RollbackDetails.model_validate_json(row["rollback_details"])
                if row["rollback_details"] else None
            ),
            error_message=row["error_message"],
            created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
        )

    def create_loop_booking_item(self, item: LoopBookingItem) -> None:
        self.conn.execute(
            """INSERT INTO loop_booking_items
               (id, loop_booking_id, session_template_id, booking_id, calendar_event_id, status)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                item.id, item.loop_booking_id, item.session_template_id,
                item.booking_id, item.calendar_event_id, item.status.value,
            ),
        )
        self.conn.commit()

    def list_loop_booking_items(self, loop_booking_id: str) -> list[LoopBookingItem]:
        rows = self.conn.execute(
            "SELECT * FROM loop_booking_items WHERE loop_booking_id = ? ORDER BY rowid",
            (loop_booking_id,),
        ).fetchall()
        return [
            LoopBookingItem(
                id=r["id"], loop_booking_id=r["loop_booking_id"],
                session_template_id=r["session_template_id"], booking_id=r["booking_id"],
                calendar_event_id=r["calendar_event_id"], status=BookingStatus(r["status"]),
            )
            for r in rows
        ]

    def close(self) -> None:
        self.conn.close()
