"""UNSAT diagnostics: turn constraint violations into recommended actions."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from interview_autopilot.schemas import (
    ActionPayload,
    ActionType,
    ConstraintKey,
    ConstraintViolation,
    DaysSpanEvidence,
    DurationEvidence,
    Impact,
    RecommendedAction,
    Severity,
)

SEVERITY_RANK = {Severity.BLOCKING: 0, Severity.LIMITING: 1, Severity.MINOR: 2}

_IMPACT = {Severity.BLOCKING: Impact.HIGH, Severity.LIMITING: Impact.MEDIUM, Severity.MINOR: Impact.LOW}


@dataclass(frozen=True)
class _Rule:
    action_type: ActionType
    description: str
    suggest: Callable[[ConstraintViolation], int | str | None] = lambda v: None


def _suggest_duration(violation: ConstraintViolation) -> int | None:
    evidence = violation.evidence
    if isinstance(evidence, DurationEvidence) and evidence.longest_block_minutes > 0:
        return evidence.longest_block_minutes
    return None


def _suggest_days(violation: ConstraintViolation) -> int | None:
    evidence = violation.evidence
    if isinstance(evidence, DaysSpanEvidence) and evidence.max_days_span > 0:
        return evidence.max_days_span + 1
    return None


# One rule per violation key.
RULES: dict[ConstraintKey, _Rule] = {
    ConstraintKey.INTERVIEWER_POOL_EMPTY: _Rule(
        ActionType.ADD_INTERVIEWERS_TO_POOL, "Add interviewers to the pool for this session"
    ),
    ConstraintKey.INTERVIEWER_POOL_ALL_BUSY: _Rule(
        ActionType.ADD_INTERVIEWERS_TO_POOL, "Add interviewers who are free during the candidate's availability"
    ),
    ConstraintKey.CONFLICTING_EXISTING_BOOKINGS: _Rule(
        ActionType.ADD_INTERVIEWERS_TO_POOL, "Add interviewers without conflicting interview bookings"
    ),
    ConstraintKey.NO_CANDIDATE_AVAILABILITY: _Rule(
        ActionType.EXPAND_CANDIDATE_AVAILABILITY, "Ask the candidate to provide more availability"
    ),
    ConstraintKey.SESSION_TOO_LONG_FOR_BLOCKS: _Rule(
        ActionType.REDUCE_SESSION_DURATION, "Reduce the session duration to fit the candidate's blocks",
        _suggest_duration,
    ),
    ConstraintKey.MAX_DAYS_EXCEEDED: _Rule(
        ActionType.ALLOW_MULTI_DAY, "Allow the loop to span more days", _suggest_days
    ),
    ConstraintKey.INSUFFICIENT_GAP_BETWEEN_SESSIONS: _Rule(
        ActionType.REMOVE_BUFFER_CONSTRAINTS, "Reduce or remove the gap required between sessions",
        lambda v: 0,
    ),
    ConstraintKey.BUSINESS_HOURS_VIOLATION: _Rule(
        ActionType.EXTEND_BUSINESS_HOURS, "Extend the allowed time-of-day window for this session"
    ),
}


def build_unsat_diagnostics(violations: Iterable[ConstraintViolation]) -> list[RecommendedAction]:
    """Map violations to deduplicated, prioritized actions.

    Actions are keyed by ``(action_type, evidence.session_id)``: repeated
    violations for one session collapse, different sessions stay separate.
    Priority 1 is the most useful action: worst severity first, then the
    action types spanning the most sessions, then the most violations resolved.
    """
    groups: dict[tuple[ActionType, str | None], list[ConstraintViolation]] = {}
    for violation in violations:
        rule = RULES[violation.key]
        groups.setdefault((rule.action_type, violation.evidence.session_id), []).append(violation)

    sessions_per_type: dict[ActionType, int] = {}
    for action_type, _session_id in groups:
        sessions_per_type[action_type] = sessions_per_type.get(action_type, 0) + 1

    candidates = []
    for index, ((action_type, session_id), grouped) in enumerate(groups.items()):
        first = grouped[0]
        rule = RULES[first.key]
        worst = min(grouped, key=lambda v: SEVERITY_RANK[v.severity]).severity
        resolves = sum(v.occurrences for v in grouped)
        suggested = next((s for s in map(rule.suggest, grouped) if s is not None), None)
        sort_key = (SEVERITY_RANK[worst], -sessions_per_type[action_type], -resolves, index)
        payload = ActionPayload(session_id=session_id, suggested_value=suggested, estimated_impact=_IMPACT[worst])
        candidates.append((sort_key, action_type, rule.description, payload))

    candidates.sort(key=lambda c: c[0])
    return [
        RecommendedAction(action_type=action_type, description=description, priority=rank, payload=payload)
        for rank, (_key, action_type, description, payload) in enumerate(candidates, start=1)
    ]
