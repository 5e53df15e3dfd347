"""Configuration loading from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from interview_autopilot.schemas import SchedulingPolicy


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path("interview_autopilot.db"))
    calendar_backend: str = "memory"
    organizer_email: str = "scheduling@example.com"
    default_candidate_timezone: str = "America/New_York"
    log_level: str = "INFO"

    # SchedulingPolicy defaults
    slot_granularity_minutes: int = 15
    max_solutions_to_return: int = 10
    prefer_single_day: bool = True
    max_days_span: int = 3
    enforce_business_hours: bool = True
    reorder_sessions_allowed: bool = False
    solver_timeout_ms: int = 10_000
    max_search_iterations: int = 10_000

    def __post_init__(self) -> None:
        self.log_level = self.log_level.upper()
        if not isinstance(self.db_path, Path):
            self.db_path = Path(self.db_path)

    def default_policy(self) -> SchedulingPolicy:
        """Build a fresh policy from the configured defaults."""
        return SchedulingPolicy(
            slot_granularity_minutes=self.slot_granularity_minutes,
            max_solutions_to_return=self.max_solutions_to_return,
            prefer_single_day=self.prefer_single_day,
            max_days_span=self.max_days_span,
            enforce_business_hours=self.enforce_business_hours,
            reorder_sessions_allowed=self.reorder_sessions_allowed,
            solver_timeout_ms=self.solver_timeout_ms,
            max_search_iterations=self.max_search_iterations,
        )


def load_config(env_file: str | None = None) -> Config:
    """Load configuration from .env file and environment variables."""
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    return Config(
        db_path=Path(os.getenv("AUTOPILOT_DB_PATH", "interview_autopilot.db")),
        calendar_backend=os.getenv("CALENDAR_BACKEND", "memory"),
        organizer_email=os.getenv("ORGANIZER_EMAIL", "scheduling@example.com"),
        default_candidate_timezone=os.getenv("DEFAULT_CANDIDATE_TIMEZONE", "America/New_York"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        slot_granularity_minutes=int(os.getenv("SLOT_GRANULARITY_MINUTES", "15")),
        max_solutions_to_return=int(os.getenv("MAX_SOLUTIONS_TO_RETURN", "10")),
        prefer_single_day=_env_bool("PREFER_SINGLE_DAY", True),
        max_days_span=int(os.getenv("MAX_DAYS_SPAN", "3")),
        enforce_business_hours=_env_bool("ENFORCE_BUSINESS_HOURS", True),
        reorder_sessions_allowed=_env_bool("REORDER_SESSIONS_ALLOWED", False),
        solver_timeout_ms=int(os.getenv("SOLVER_TIMEOUT_MS", "10000")),
        max_search_iterations=int(os.getenv("MAX_SEARCH_ITERATIONS", "10000")),
    )
