"""Calendar capability: free/busy lookup, event creation and cancellation.

Only an in-memory backend ships with the package. It prints created and
cancelled events to the console and supports failure injection for testing
commit rollback.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from rich.console import Console
from rich.panel import Panel

from interview_autopilot.config import Config
from interview_autopilot.schemas import (
    BusyInterval,
    CreatedEvent,
    CreateEventPayload,
    InterviewerSchedule,
)
from interview_autopilot.timezones import format_in_timezone

log = logging.getLogger(__name__)

console = Console()


class CalendarError(Exception):
    """A calendar API call failed. ``status_code`` 0 means the request never got a response."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500


class CalendarClient(Protocol):
    def get_schedule(
        self, emails: list[str], start: datetime, end: datetime, granularity_minutes: int = 15
    ) -> list[InterviewerSchedule]: ...

    def create_event(self, organizer_email: str, payload: CreateEventPayload) -> CreatedEvent: ...

    def cancel_event(self, organizer_email: str, event_id: str, reason: str = "") -> None: ...


class InMemoryCalendarClient:
    """Calendar backed by dictionaries.

    ``fail_on_create`` holds event subjects or transaction ids whose creation
    should fail; ``fail_on_cancel`` holds event ids whose cancellation should
    fail. Each maps to the HTTP status reported by the raised ``CalendarError``.
    """

    def __init__(
        self,
        schedules: Iterable[InterviewerSchedule] = (),
        echo: bool = False,
        fail_on_create: dict[str, int] | None = None,
        fail_on_cancel: dict[str, int] | None = None,
    ) -> None:
        self.schedules: dict[str, InterviewerSchedule] = {s.email.lower(): s for s in schedules}
        self.events: dict[str, CreateEventPayload] = {}
        self.cancelled: dict[str, str] = {}
        self.echo = echo
        self.fail_on_create = dict(fail_on_create or {})
        self.fail_on_cancel = dict(fail_on_cancel or {})
        self.create_calls = 0
        self.cancel_calls = 0
        self._by_transaction: dict[str, CreatedEvent] = {}

    def get_schedule(
        self, emails: list[str], start: datetime, end: datetime, granularity_minutes: int = 15
    ) -> list[InterviewerSchedule]:
        """Schedules for ``emails`` with busy intervals clipped to [start, end).

        Unknown addresses are omitted, as a free/busy API does for mailboxes it
        cannot resolve.
        """
        result = []
        for email in emails:
            schedule = self.schedules.get(email.lower())
            if schedule is None:
                log.debug("No calendar data for %s", email)
                continue
            busy = [
                BusyInterval(
                    start=max(b.start, start), end=min(b.end, end),
                    status=b.status, is_private=b.is_private,
                )
                for b in schedule.busy_intervals
                if b.start < end and b.end > start
            ]
            result.append(InterviewerSchedule(email=email, busy_intervals=busy, working_hours=schedule.working_hours))
        return result

    def create_event(self, organizer_email: str, payload: CreateEventPayload) -> CreatedEvent:
        self.create_calls += 1
        status = self.fail_on_create.get(payload.subject, self.fail_on_create.get(payload.transaction_id))
        if status is not None:
            raise CalendarError(f"Event creation rejected for {payload.subject!r}", status_code=status)

        # Retried creations with the same transaction id return the original event.
        if payload.transaction_id and payload.transaction_id in self._by_transaction:
            return self._by_transaction[payload.transaction_id]

        event_id = f"event-{uuid.uuid4().hex[:12]}"
        created = CreatedEvent(
            event_id=event_id,
            ical_uid=f"{event_id}@interview-autopilot",
            join_url=f"https://meet.example.com/{event_id}" if payload.is_online_meeting else None,
        )
        self.events[event_id] = payload
        if payload.transaction_id:
            self._by_transaction[payload.transaction_id] = created

        if self.echo:
            console.print(Panel(
                f"[bold]Organizer:[/bold] {organizer_email}\n"
                f"[bold]Subject:[/bold] {payload.subject}\n"
                f"[bold]When:[/bold] {format_in_timezone(payload.start, payload.time_zone)}"
                f" - {format_in_timezone(payload.end, payload.time_zone)}\n"
                f"[bold]Attendees:[/bold] {', '.join(payload.attendees)}\n\n"
                f"{payload.body}",
                title="Calendar Event (Memory Mode)",
                border_style="cyan",
            ))
        return created

    def cancel_event(self, organizer_email: str, event_id: str, reason: str = "") -> None:
        self.cancel_calls += 1
        status = self.fail_on_cancel.get(event_id)
        if status is not None:
            raise CalendarError(f"Cancellation rejected for event {event_id}", status_code=status)
        if event_id not in self.events:
            raise CalendarError(f"Event not found: {event_id}", status_code=404)

        self.events.pop(event_id)
        self.cancelled[event_id] = reason
        self._by_transaction = {k: v for k, v in self._by_transaction.items() if v.event_id != event_id}
        if self.echo:
            console.print(f"[yellow]Cancelled event {event_id}[/yellow] ({reason or 'no reason given'})")


def get_calendar_client(config: Config, schedules: Iterable[InterviewerSchedule] = ()) -> CalendarClient:
    """Build the calendar client for the configured backend."""
    backend = config.calendar_backend.lower()
    if backend != "memory":
        log.warning("Unsupported calendar backend %r, using in-memory calendar", config.calendar_backend)
    return InMemoryCalendarClient(schedules=schedules, echo=True)
