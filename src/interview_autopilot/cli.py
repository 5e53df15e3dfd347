"""Terminal front-end: solve a loop scenario or list single-session slots."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from interview_autopilot.config import Config, load_config
from interview_autopilot.schemas import (
    AvailabilityBlock,
    Booking,
    InterviewerSchedule,
    LoopSolveResult,
    SchedulingRequest,
    SessionTemplate,
)
from interview_autopilot.slots import generate_slots
from interview_autopilot.solver import solve_loop

custom_theme = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
})

console = Console(theme=custom_theme)

log = logging.getLogger(__name__)


class LoopScenario(BaseModel):
    candidate_timezone: str | None = None
    sessions: list[SessionTemplate] = Field(default_factory=list)
    candidate_blocks: list[AvailabilityBlock] = Field(default_factory=list)
    interviewer_schedules: list[InterviewerSchedule] = Field(default_factory=list)
    existing_bookings: list[Booking] = Field(default_factory=list)
    policy: dict = Field(default_factory=dict)


class SlotScenario(BaseModel):
    request: SchedulingRequest
    interviewer_schedules: list[InterviewerSchedule] = Field(default_factory=list)
    existing_bookings: list[Booking] = Field(default_factory=list)
    now: datetime | None = None


def _parse_policy_value(raw: str) -> bool | int | str:
    lowered = raw.strip().lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    try:
        return int(raw)
    except ValueError:
        return raw


def _parse_policy_args(pairs: list[str]) -> dict:
    overrides = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        overrides[key.strip()] = _parse_policy_value(value)
    return overrides


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="interview-autopilot",
        description="Interview slot generation and loop scheduling.",
    )
    parser.add_argument("--env-file", help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    solve = sub.add_parser("solve", help="Solve a multi-session interview loop")
    solve.add_argument("scenario", type=Path, help="Scenario JSON file")
    solve.add_argument(
        "--policy", action="append", default=[], metavar="KEY=VALUE",
        help="Override a scheduling policy setting (repeatable)",
    )

    slots = sub.add_parser("slots", help="List bookable slots for a single session")
    slots.add_argument("scenario", type=Path, help="Scenario JSON file")
    return parser


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point for the interview-autopilot CLI."""
    args = _build_parser().parse_args(argv)
    config = load_config(args.env_file)
    _setup_logging(config.log_level)

    try:
        data = json.loads(args.scenario.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[error]Cannot read scenario {args.scenario}: {e}[/error]")
        return 2
    log.debug("Loaded scenario %s", args.scenario)

    try:
        if args.command == "solve":
            scenario = LoopScenario.model_validate(data)
            overrides = {**scenario.policy, **_parse_policy_args(args.policy)}
            _run_solve(config, scenario, overrides)
        else:
            _run_slots(SlotScenario.model_validate(data))
    except (SchemaError, ValueError) as e:
        console.print(f"[error]Invalid scenario: {e}[/error]")
        return 2
    return 0


def _run_solve(config: Config, scenario: LoopScenario, overrides: dict) -> LoopSolveResult:
    policy = config.default_policy().with_overrides(**overrides)
    tz = scenario.candidate_timezone or config.default_candidate_timezone
    result = solve_loop(
        scenario.sessions,
        scenario.candidate_blocks,
        tz,
        scenario.interviewer_schedules,
        scenario.existing_bookings,
        policy,
    )

    meta = result.metadata
    console.print(Panel(
        f"[bold]Status:[/bold] {result.status.value}    "
        f"[bold]Confidence:[/bold] {result.confidence.value}\n"
        f"{len(result.solutions)} solution(s), {meta.search_iterations} iterations, "
        f"{meta.slots_evaluated} slots evaluated, {meta.solve_duration_ms} ms",
        title=f"Loop Solve {result.solve_id}",
        border_style="green" if result.solutions else "red",
    ))

    for rank, solution in enumerate(result.solutions, start=1):
        table = Table(title=f"#{rank}  {solution.rationale_summary}  (score {solution.score})")
        table.add_column("Session", style="bold")
        table.add_column("Start")
        table.add_column("End")
        table.add_column("Interviewer", style="cyan")
        for s in solution.sessions:
            table.add_row(s.session_name, s.display_start, s.display_end, s.interviewer_email)
        console.print(table)

    if result.top_constraints:
        table = Table(title="Constraints")
        table.add_column("Key", style="bold")
        table.add_column("Severity")
        table.add_column("Description")
        table.add_column("Details")
        for v in result.top_constraints:
            table.add_row(v.key.value, v.severity.value, v.description, v.evidence.details)
        console.print(table)

    if result.recommended_actions:
        table = Table(title="Recommended actions")
        table.add_column("#", justify="right")
        table.add_column("Action", style="bold")
        table.add_column("Session")
        table.add_column("Suggested")
        table.add_column("Impact")
        for a in result.recommended_actions:
            suggested = a.payload.suggested_value
            table.add_row(
                str(a.priority), a.description, a.payload.session_id or "-",
                "-" if suggested is None else str(suggested), a.payload.estimated_impact.value,
            )
        console.print(table)
    return result


def _run_slots(scenario: SlotScenario) -> None:
    slots = generate_slots(
        scenario.request, scenario.interviewer_schedules, scenario.existing_bookings, now=scenario.now
    )
    if not slots:
        console.print("[warning]No available slots in this window.[/warning]")
        return

    table = Table(title=f"{len(slots)} available slot(s) ({scenario.request.candidate_timezone})")
    table.add_column("Slot ID", style="dim")
    table.add_column("Start", style="bold")
    table.add_column("End")
    for slot in slots:
        table.add_row(slot.slot_id, slot.display_start, slot.display_end)
    console.print(table)


if __name__ == "__main__":
    sys.exit(main())
