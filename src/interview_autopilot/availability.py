"""Availability blocks: grid snapping, normalization and busy-time subtraction.

All blocks are UTC. Normalized block sets are sorted, pairwise non-overlapping
and every boundary sits on the configured grid.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Protocol

import pydantic
from pydantic import BaseModel, Field

from interview_autopilot.schemas import AvailabilityBlock, as_utc

log = logging.getLogger(__name__)

DEFAULT_SLOT_MINUTES = 15

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


class Interval(Protocol):
    start: datetime
    end: datetime


# ---------------------------------------------------------------------------
# Snapping
# ---------------------------------------------------------------------------

def snap_to_interval(
    value: datetime,
    interval_minutes: int = DEFAULT_SLOT_MINUTES,
    direction: Literal["round", "floor", "ceil"] = "round",
) -> datetime:
    """Snap ``value`` to a multiple of ``interval_minutes`` since the epoch."""
    step = interval_minutes * 60_000_000
    micros = (value - _EPOCH) // _MICROSECOND
    if direction == "floor":
        snapped = (micros // step) * step
    elif direction == "ceil":
        snapped = -((-micros) // step) * step
    else:
        snapped = ((micros + step // 2) // step) * step
    return _EPOCH + timedelta(microseconds=snapped)


def round_up(value: datetime, interval_minutes: int = DEFAULT_SLOT_MINUTES) -> datetime:
    return snap_to_interval(value, interval_minutes, "ceil")


def round_down(value: datetime, interval_minutes: int = DEFAULT_SLOT_MINUTES) -> datetime:
    return snap_to_interval(value, interval_minutes, "floor")


def is_aligned(value: datetime, interval_minutes: int = DEFAULT_SLOT_MINUTES) -> bool:
    return ((value - _EPOCH) // _MICROSECOND) % (interval_minutes * 60_000_000) == 0


# ---------------------------------------------------------------------------
# Interval predicates
# ---------------------------------------------------------------------------

def overlaps(a: Interval, b: Interval) -> bool:
    """Half-open overlap test."""
    return a.start < b.end and b.start < a.end


def is_valid_block(block: AvailabilityBlock) -> bool:
    return block.start < block.end


def are_adjacent(a: Interval, b: Interval, max_gap_minutes: int = 0) -> bool:
    """True if one interval ends within ``max_gap_minutes`` before the other starts."""
    gap = timedelta(minutes=max_gap_minutes)
    after = b.start - a.end
    before = a.start - b.end
    return timedelta(0) <= after <= gap or timedelta(0) <= before <= gap


def merge_blocks(a: AvailabilityBlock, b: AvailabilityBlock) -> AvailabilityBlock:
    """Union of two blocks. Keeps the identity of ``a``."""
    return AvailabilityBlock(id=a.id, start=min(a.start, b.start), end=max(a.end, b.end))


def merge_adjacent(
    blocks: Iterable[AvailabilityBlock], max_gap_minutes: int = 0
) -> list[AvailabilityBlock]:
    ordered = sorted(blocks, key=lambda b: b.start)
    if not ordered:
        return []

    merged = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if overlaps(last, current) or are_adjacent(last, current, max_gap_minutes):
            merged[-1] = merge_blocks(last, current)
        else:
            merged.append(current)
    return merged


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _coerce_block(raw: AvailabilityBlock | Mapping[str, Any], index: int) -> AvailabilityBlock | None:
    if isinstance(raw, AvailabilityBlock):
        return raw
    try:
        return AvailabilityBlock(
            id=raw.get("id") or f"block-{index}",
            start=raw.get("start", raw.get("start_at")),
            end=raw.get("end", raw.get("end_at")),
        )
    except pydantic.ValidationError:
        log.debug("Discarding unparsable availability block #%d: %r", index, raw)
        return None


def normalize_blocks(
    blocks: Iterable[AvailabilityBlock | Mapping[str, Any]],
    interval_minutes: int = DEFAULT_SLOT_MINUTES,
    max_gap_minutes: int = 0,
    min_duration_minutes: int | None = None,
) -> list[AvailabilityBlock]:
    """Canonicalize raw candidate blocks.

    Drops unparsable or non-chronological blocks, snaps starts up and ends down
    to the grid, drops blocks shorter than ``min_duration_minutes`` (default:
    one grid step), then sorts and merges overlapping or adjacent blocks.
    """
    if min_duration_minutes is None:
        min_duration_minutes = interval_minutes

    snapped: list[AvailabilityBlock] = []
    for index, raw in enumerate(blocks):
        block = _coerce_block(raw, index)
        if block is None or not is_valid_block(block):
            continue
        start = round_up(block.start, interval_minutes)
        end = round_down(block.end, interval_minutes)
        if start >= end:
            continue
        if (end - start) < timedelta(minutes=min_duration_minutes):
            continue
        snapped.append(AvailabilityBlock(id=block.id, start=start, end=end))

    return merge_adjacent(snapped, max_gap_minutes)


# ---------------------------------------------------------------------------
# Busy subtraction
# ---------------------------------------------------------------------------

def subtract_busy(
    blocks: Iterable[AvailabilityBlock], busy_intervals: Iterable[Interval]
) -> list[AvailabilityBlock]:
    """Remove busy time from each block.

    Every busy interval splits the remaining pieces of a block into zero, one or
    two sub-blocks. Pieces are re-identified as ``<block id>-<n>``.
    """
    busy = list(busy_intervals)
    if not busy:
        return list(blocks)

    result: list[AvailabilityBlock] = []
    for block in blocks:
        remaining: list[tuple[datetime, datetime]] = [(block.start, block.end)]
        for interval in busy:
            pieces: list[tuple[datetime, datetime]] = []
            for start, end in remaining:
                if not (start < interval.end and interval.start < end):
                    pieces.append((start, end))
                    continue
                if start < interval.start:
                    pieces.append((start, interval.start))
                if end > interval.end:
                    pieces.append((interval.end, end))
            remaining = pieces
            if not remaining:
                break

        for i, (start, end) in enumerate(remaining):
            result.append(AvailabilityBlock(id=f"{block.id}-{i}", start=start, end=end))
    return result


def total_minutes(blocks: Iterable[AvailabilityBlock]) -> float:
    return sum(b.duration_minutes for b in blocks)


def longest_block_minutes(blocks: Iterable[AvailabilityBlock]) -> int:
    return int(max((b.duration_minutes for b in blocks), default=0))


# ---------------------------------------------------------------------------
# Candidate submission validation
# ---------------------------------------------------------------------------

class BlockValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    normalized_blocks: list[AvailabilityBlock] = Field(default_factory=list)
    total_minutes: float = 0.0


def validate_blocks(
    blocks: list[AvailabilityBlock | Mapping[str, Any]],
    window_start: datetime,
    window_end: datetime,
    min_total_minutes: int = 180,
    min_blocks: int = 5,
    duration_minutes: int = 60,
    interval_minutes: int = DEFAULT_SLOT_MINUTES,
) -> BlockValidationResult:
    """Validate a candidate's submitted blocks against a request's requirements.

    Unlike :func:`normalize_blocks`, problems are reported rather than silently
    dropped, so the candidate can be told what to fix.
    """
    window_start, window_end = as_utc(window_start), as_utc(window_end)
    errors: list[str] = []
    parsed: list[AvailabilityBlock] = []

    for index, raw in enumerate(blocks):
        label = f"Block {index + 1}"
        block = _coerce_block(raw, index)
        if block is None:
            errors.append(f"{label}: Invalid start or end date")
            continue
        if not is_valid_block(block):
            errors.append(f"{label}: Start time must be before end time")
            continue
        start = round_up(block.start, interval_minutes)
        end = round_down(block.end, interval_minutes)
        if start >= end:
            errors.append(f"{label}: Block too short after {interval_minutes}-minute alignment")
            continue
        parsed.append(AvailabilityBlock(id=block.id, start=start, end=end))

    if errors:
        return BlockValidationResult(valid=False, errors=errors)

    parsed.sort(key=lambda b: b.start)
    for i in range(len(parsed)):
        for j in range(i + 1, len(parsed)):
            if overlaps(parsed[i], parsed[j]):
                errors.append(f"Blocks {i + 1} and {j + 1} overlap")
    if errors:
        return BlockValidationResult(valid=False, errors=errors)

    merged = merge_adjacent(parsed)
    for i, block in enumerate(merged):
        if block.start < window_start:
            errors.append(f"Block {i + 1}: Starts before the scheduling window")
        if block.end > window_end:
            errors.append(f"Block {i + 1}: Ends after the scheduling window")

    usable = [b for b in merged if b.duration_minutes >= duration_minutes]
    usable_minutes = total_minutes(usable)

    if len(usable) < min_blocks:
        errors.append(
            f"Need at least {min_blocks} availability blocks "
            f"({duration_minutes}+ min each), got {len(usable)}"
        )
    if usable_minutes < min_total_minutes:
        errors.append(
            f"Need at least {min_total_minutes} minutes of availability, got {int(usable_minutes)}"
        )

    return BlockValidationResult(
        valid=not errors,
        errors=errors,
        normalized_blocks=usable,
        total_minutes=usable_minutes,
    )
