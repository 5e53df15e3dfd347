"""Tests for the in-memory calendar client."""

from __future__ import annotations

import pytest
from factories import busy, utc

from interview_autopilot.config import Config
from interview_autopilot.schemas import CreateEventPayload
from interview_autopilot.tools.calendar import CalendarError, InMemoryCalendarClient, get_calendar_client


def _payload(subject="Screen - Ada", transaction_id=""):
    return CreateEventPayload(subject=subject, start=utc(2, 9), end=utc(2, 10), transaction_id=transaction_id)


@pytest.mark.parametrize(
    "status_code, retryable",
    [(0, True), (429, True), (500, True), (503, True), (400, False), (404, False), (409, False)],
)
def test_calendar_error_retryable(status_code, retryable):
    assert CalendarError("failed", status_code).retryable is retryable


def test_get_schedule_clips_and_skips_unknown():
    calendar = InMemoryCalendarClient(schedules=[
        busy("a@x.com", (utc(1, 22), utc(2, 10)), (utc(5, 9), utc(5, 10))),
    ])

    schedules = calendar.get_schedule(["A@x.com", "ghost@x.com"], utc(2, 0), utc(3, 0))

    assert [s.email for s in schedules] == ["A@x.com"]
    assert [(b.start, b.end) for b in schedules[0].busy_intervals] == [(utc(2, 0), utc(2, 10))]


def test_create_event_dedupes_transaction_ids():
    calendar = InMemoryCalendarClient()
    first = calendar.create_event("org@x.com", _payload(transaction_id="k:screen"))
    again = calendar.create_event("org@x.com", _payload(transaction_id="k:screen"))
    other = calendar.create_event("org@x.com", _payload(transaction_id="k:deep"))

    assert again.event_id == first.event_id
    assert other.event_id != first.event_id
    assert len(calendar.events) == 2
    assert first.join_url is not None


def test_injected_failures():
    calendar = InMemoryCalendarClient(fail_on_create={"Screen - Ada": 503})
    with pytest.raises(CalendarError) as excinfo:
        calendar.create_event("org@x.com", _payload())
    assert excinfo.value.status_code == 503
    assert excinfo.value.retryable

    by_transaction = InMemoryCalendarClient(fail_on_create={"k:screen": 0})
    with pytest.raises(CalendarError):
        by_transaction.create_event("org@x.com", _payload(transaction_id="k:screen"))


def test_cancel_event():
    calendar = InMemoryCalendarClient()
    event = calendar.create_event("org@x.com", _payload(transaction_id="k:screen"))

    calendar.cancel_event("org@x.com", event.event_id, "changed plans")

    assert calendar.events == {}
    assert calendar.cancelled == {event.event_id: "changed plans"}
    with pytest.raises(CalendarError) as excinfo:
        calendar.cancel_event("org@x.com", event.event_id)
    assert excinfo.value.status_code == 404
    assert calendar.create_event("org@x.com", _payload(transaction_id="k:screen")).event_id != event.event_id


def test_get_calendar_client_falls_back_to_memory():
    client = get_calendar_client(Config(calendar_backend="graph"))
    assert isinstance(client, InMemoryCalendarClient)
