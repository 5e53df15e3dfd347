"""Solution scoring and ranking.

A score depends only on the solution and the policy, so ranking a subset
leaves each solution's score unchanged. Equal scores put the earlier loop
first, then keep creation order.
"""

from __future__ import annotations

from collections.abc import Sequence

from interview_autopilot.schemas import LoopSolution, SchedulingPolicy

SINGLE_DAY_BONUS = 50.0
DAY_SPAN_PENALTY = 15.0
COMPACTNESS_WEIGHT = 10.0
DIVERSITY_PER_INTERVIEWER = 2.0
DIVERSITY_CAP = 10.0

_COMPACT_DAY_MINUTES = 8 * 60


def score_solution(solution: LoopSolution, policy: SchedulingPolicy) -> float:
    score = 0.0

    if policy.prefer_single_day and solution.is_single_day:
        score += SINGLE_DAY_BONUS
    score -= DAY_SPAN_PENALTY * (solution.days_span - 1)

    compactness = 1 - min(solution.total_duration_minutes / _COMPACT_DAY_MINUTES, 1.0)
    score += COMPACTNESS_WEIGHT * compactness

    interviewers = {s.interviewer_email.lower() for s in solution.sessions}
    score += min(len(interviewers) * DIVERSITY_PER_INTERVIEWER, DIVERSITY_CAP)

    return round(score, 2)


def rank_solutions(solutions: Sequence[LoopSolution], policy: SchedulingPolicy) -> list[LoopSolution]:
    """Return scored copies of ``solutions``, best first."""
    scored = [
        (solution.model_copy(update={"score": score_solution(solution, policy)}), index)
        for index, solution in enumerate(solutions)
    ]
    scored.sort(key=lambda pair: (-pair[0].score, pair[0].loop_start, pair[1]))
    return [solution for solution, _ in scored]
