"""Data models for slot generation, loop solving and loop booking."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def _prefixed_id(prefix: str):
    return lambda: f"{prefix}-{uuid.uuid4().hex[:12]}"


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _UtcModel(BaseModel):
    """Base for models whose datetime fields are always UTC-aware."""

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BusyStatus(str, Enum):
    BUSY = "busy"
    TENTATIVE = "tentative"
    OOF = "oof"
    WORKING_ELSEWHERE = "workingElsewhere"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class AvailabilityRequestStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class LoopSolveStatus(str, Enum):
    SOLVED = "SOLVED"
    UNSATISFIABLE = "UNSATISFIABLE"
    PARTIAL = "PARTIAL"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ConstraintKey(str, Enum):
    NO_CANDIDATE_AVAILABILITY = "NO_CANDIDATE_AVAILABILITY"
    INTERVIEWER_POOL_EMPTY = "INTERVIEWER_POOL_EMPTY"
    INTERVIEWER_POOL_ALL_BUSY = "INTERVIEWER_POOL_ALL_BUSY"
    SESSION_TOO_LONG_FOR_BLOCKS = "SESSION_TOO_LONG_FOR_BLOCKS"
    INSUFFICIENT_GAP_BETWEEN_SESSIONS = "INSUFFICIENT_GAP_BETWEEN_SESSIONS"
    BUSINESS_HOURS_VIOLATION = "BUSINESS_HOURS_VIOLATION"
    MAX_DAYS_EXCEEDED = "MAX_DAYS_EXCEEDED"
    CONFLICTING_EXISTING_BOOKINGS = "CONFLICTING_EXISTING_BOOKINGS"


class Severity(str, Enum):
    BLOCKING = "BLOCKING"
    LIMITING = "LIMITING"
    MINOR = "MINOR"


class ActionType(str, Enum):
    EXPAND_CANDIDATE_AVAILABILITY = "EXPAND_CANDIDATE_AVAILABILITY"
    ADD_INTERVIEWERS_TO_POOL = "ADD_INTERVIEWERS_TO_POOL"
    REDUCE_SESSION_DURATION = "REDUCE_SESSION_DURATION"
    ALLOW_MULTI_DAY = "ALLOW_MULTI_DAY"
    REMOVE_BUFFER_CONSTRAINTS = "REMOVE_BUFFER_CONSTRAINTS"
    EXTEND_BUSINESS_HOURS = "EXTEND_BUSINESS_HOURS"


class Impact(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class LoopBookingStatus(str, Enum):
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class CommitStatus(str, Enum):
    COMMITTED = "COMMITTED"
    ALREADY_COMMITTED = "ALREADY_COMMITTED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Time and availability
# ---------------------------------------------------------------------------

class TimeInterval(_UtcModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> TimeInterval:
        if self.start >= self.end:
            raise ValueError("interval start must be before end")
        return self


class AvailabilityBlock(_UtcModel):
    """A candidate's free window. Ordering is checked by normalization, not here."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"block-{uuid.uuid4().hex[:8]}")
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


class BusyInterval(_UtcModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    status: BusyStatus = BusyStatus.BUSY
    is_private: bool = False


class WorkingHours(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: str = "09:00"
    end: str = "17:00"
    time_zone: str = "UTC"
    days_of_week: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])  # 0=Sun


class InterviewerSchedule(BaseModel):
    email: str
    busy_intervals: list[BusyInterval] = Field(default_factory=list)
    working_hours: WorkingHours | None = None


# Calendar free/busy lookups return the same shape.
InterviewerAvailability = InterviewerSchedule


# ---------------------------------------------------------------------------
# Session templates and policy
# ---------------------------------------------------------------------------

class InterviewerPool(BaseModel):
    model_config = ConfigDict(frozen=True)

    emails: list[str] = Field(default_factory=list)
    required_count: int = 1
    preferred_tags: list[str] | None = None


class SessionConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    earliest_start_local: str | None = None  # "HH:MM"
    latest_end_local: str | None = None
    buffer_before_minutes: int | None = None
    buffer_after_minutes: int | None = None
    min_gap_to_next_minutes: int | None = None


class SessionTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_short_id)
    loop_template_id: str = ""
    order: int
    name: str
    duration_minutes: int = Field(gt=0, le=480)
    interviewer_pool: InterviewerPool = Field(default_factory=InterviewerPool)
    constraints: SessionConstraints = Field(default_factory=SessionConstraints)


class LoopTemplate(BaseModel):
    id: str = Field(default_factory=_prefixed_id("loop-template"))
    name: str
    description: str = ""
    is_active: bool = True
    sessions: list[SessionTemplate] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SchedulingPolicy(BaseModel):
    """Solver configuration, passed by value into every solve call."""

    model_config = ConfigDict(frozen=True)

    slot_granularity_minutes: int = Field(default=15, gt=0)
    max_solutions_to_return: int = Field(default=10, gt=0)
    prefer_single_day: bool = True
    max_days_span: int = Field(default=3, gt=0)
    enforce_business_hours: bool = True
    reorder_sessions_allowed: bool = False
    solver_timeout_ms: int = Field(default=10_000, gt=0)
    max_search_iterations: int = Field(default=10_000, gt=0)

    def with_overrides(self, **overrides: Any) -> SchedulingPolicy:
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return SchedulingPolicy(**values)


# ---------------------------------------------------------------------------
# Solver output
# ---------------------------------------------------------------------------

class ScheduledSession(_UtcModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    session_name: str
    start: datetime
    end: datetime
    interviewer_email: str
    reason: str = ""
    display_start: str = ""
    display_end: str = ""


class ConflictCheckSummary(BaseModel):
    interviewer_busy_avoided: int = 0
    existing_bookings_avoided: int = 0
    candidate_block_boundary_avoided: int = 0


class LoopSolution(_UtcModel):
    model_config = ConfigDict(frozen=True)

    solution_id: str = Field(default_factory=_prefixed_id("solution"))
    score: float = 0.0
    days_span: int
    is_single_day: bool
    sessions: list[ScheduledSession]
    rationale_summary: str = ""
    total_duration_minutes: int
    loop_start: datetime
    loop_end: datetime
    conflicts_checked: ConflictCheckSummary = Field(default_factory=ConflictCheckSummary)


class _EvidenceBase(BaseModel):
    session_id: str | None = None
    interviewer_email: str | None = None
    time_range: TimeInterval | None = None
    details: str = ""


class AvailabilityEvidence(_EvidenceBase):
    kind: Literal["availability"] = "availability"
    block_count: int = 0


class PoolEvidence(_EvidenceBase):
    kind: Literal["pool"] = "pool"
    pool_size: int = 0


class DurationEvidence(_EvidenceBase):
    kind: Literal["duration"] = "duration"
    duration_minutes: int = 0
    longest_block_minutes: int = 0


class GapEvidence(_EvidenceBase):
    kind: Literal["gap"] = "gap"
    next_session_id: str | None = None
    gap_minutes: int = 0


class BusinessHoursEvidence(_EvidenceBase):
    kind: Literal["business_hours"] = "business_hours"
    earliest_start_local: str = ""
    latest_end_local: str = ""
    time_zone: str = ""


class DaysSpanEvidence(_EvidenceBase):
    kind: Literal["days_span"] = "days_span"
    days_span: int = 0
    max_days_span: int = 0


class BookingEvidence(_EvidenceBase):
    kind: Literal["booking"] = "booking"
    booking_count: int = 0


ConstraintEvidence = Annotated[
    Union[
        AvailabilityEvidence,
        PoolEvidence,
        DurationEvidence,
        GapEvidence,
        BusinessHoursEvidence,
        DaysSpanEvidence,
        BookingEvidence,
    ],
    Field(discriminator="kind"),
]


class ConstraintViolation(BaseModel):
    key: ConstraintKey
    severity: Severity
    description: str
    evidence: ConstraintEvidence
    occurrences: int = 1


class ActionPayload(BaseModel):
    session_id: str | None = None
    suggested_value: int | str | None = None
    estimated_impact: Impact = Impact.MEDIUM


class RecommendedAction(BaseModel):
    action_type: ActionType
    description: str
    priority: int
    payload: ActionPayload


class SolveMetadata(BaseModel):
    solve_duration_ms: int = 0
    search_iterations: int = 0
    slots_evaluated: int = 0
    graph_api_calls: int = 0
    timed_out: bool = False
    iteration_limit_reached: bool = False


class LoopSolveResult(BaseModel):
    solve_id: str = Field(default_factory=_prefixed_id("solve"))
    status: LoopSolveStatus
    solutions: list[LoopSolution] = Field(default_factory=list)
    top_constraints: list[ConstraintViolation] = Field(default_factory=list)
    recommended_actions: list[RecommendedAction] = Field(default_factory=list)
    confidence: Confidence = Confidence.HIGH
    metadata: SolveMetadata = Field(default_factory=SolveMetadata)


# ---------------------------------------------------------------------------
# Requests, bookings and persisted runs
# ---------------------------------------------------------------------------

class AvailabilityRequest(_UtcModel):
    id: str = Field(default_factory=_short_id)
    candidate_name: str = ""
    candidate_email: str = ""
    candidate_timezone: str | None = None
    organizer_email: str = ""
    interviewer_emails: list[str] = Field(default_factory=list)
    duration_minutes: int = 60
    window_start: datetime
    window_end: datetime
    status: AvailabilityRequestStatus = AvailabilityRequestStatus.PENDING


class Booking(_UtcModel):
    id: str = Field(default_factory=_prefixed_id("booking"))
    availability_request_id: str | None = None
    scheduled_start: datetime
    scheduled_end: datetime
    interviewer_emails: list[str] = Field(default_factory=list)
    calendar_event_id: str | None = None
    ical_uid: str | None = None
    join_url: str | None = None
    status: BookingStatus = BookingStatus.CONFIRMED
    cancellation_reason: str | None = None


class SchedulingRequest(_UtcModel):
    """A single-session request: one duration, one fixed interviewer set."""

    id: str = Field(default_factory=_short_id)
    duration_minutes: int = Field(gt=0)
    interviewer_emails: list[str] = Field(default_factory=list)
    window_start: datetime
    window_end: datetime
    candidate_timezone: str = "UTC"


class AvailableSlot(_UtcModel):
    model_config = ConfigDict(frozen=True)

    slot_id: str
    start: datetime
    end: datetime
    display_start: str = ""
    display_end: str = ""


class LoopSolveRequest(BaseModel):
    availability_request_id: str
    loop_template_id: str
    candidate_timezone: str | None = None
    organizer_email: str = ""
    interviewer_pool_overrides: dict[str, InterviewerPool] = Field(default_factory=dict)
    policy_overrides: dict[str, Any] = Field(default_factory=dict)
    solve_idempotency_key: str | None = None


class LoopSolveRun(BaseModel):
    id: str = Field(default_factory=_prefixed_id("solve-run"))
    availability_request_id: str
    loop_template_id: str
    inputs_snapshot: dict[str, Any] = Field(default_factory=dict)
    status: LoopSolveStatus = LoopSolveStatus.ERROR
    result_snapshot: LoopSolveResult | None = None
    solutions_count: int = 0
    solve_duration_ms: int | None = None
    search_iterations: int | None = None
    graph_api_calls: int | None = None
    error_message: str | None = None
    solve_idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RollbackDetails(BaseModel):
    events_created: int = 0
    events_rolled_back: int = 0
    rollback_errors: list[str] = Field(default_factory=list)


class LoopBooking(BaseModel):
    id: str = Field(default_factory=_prefixed_id("loop-booking"))
    availability_request_id: str
    loop_template_id: str = ""
    solve_run_id: str
    chosen_solution_id: str
    commit_idempotency_key: str
    status: LoopBookingStatus = LoopBookingStatus.PENDING
    rollback_attempted: bool = False
    rollback_details: RollbackDetails | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LoopBookingItem(BaseModel):
    id: str = Field(default_factory=_short_id)
    loop_booking_id: str
    session_template_id: str
    booking_id: str
    calendar_event_id: str
    status: BookingStatus = BookingStatus.CONFIRMED


class MeetingDetails(BaseModel):
    title: str | None = None
    body_template: str | None = None
    include_online_meeting: bool = True


class BookedSessionInfo(_UtcModel):
    session_id: str
    session_name: str
    booking_id: str
    calendar_event_id: str
    start: datetime
    end: datetime
    interviewer_email: str


class LoopCommitResult(BaseModel):
    status: CommitStatus
    loop_booking_id: str
    booked_sessions: list[BookedSessionInfo] = Field(default_factory=list)
    error_message: str | None = None
    rollback_details: RollbackDetails | None = None


# ---------------------------------------------------------------------------
# Calendar capability payloads
# ---------------------------------------------------------------------------

class CreateEventPayload(_UtcModel):
    subject: str
    body: str = ""
    start: datetime
    end: datetime
    time_zone: str = "UTC"
    attendees: list[str] = Field(default_factory=list)
    is_online_meeting: bool = True
    transaction_id: str = ""


class CreatedEvent(BaseModel):
    event_id: str
    ical_uid: str | None = None
    join_url: str | None = None
