"""Tests for availability block normalization, subtraction and validation."""

from __future__ import annotations

from datetime import timedelta

from factories import block, utc

from interview_autopilot.availability import (
    are_adjacent,
    is_aligned,
    merge_adjacent,
    normalize_blocks,
    overlaps,
    snap_to_interval,
    subtract_busy,
    validate_blocks,
)
from interview_autopilot.schemas import AvailabilityBlock, TimeInterval


# ---------------------------------------------------------------------------
# Snapping
# ---------------------------------------------------------------------------

def test_snap_directions():
    t = utc(2, 9, 7)
    assert snap_to_interval(t, 15, "floor") == utc(2, 9, 0)
    assert snap_to_interval(t, 15, "ceil") == utc(2, 9, 15)
    assert snap_to_interval(t, 15, "round") == utc(2, 9, 0)
    assert snap_to_interval(utc(2, 9, 8), 15, "round") == utc(2, 9, 15)


def test_snap_keeps_aligned_values():
    t = utc(2, 9, 30)
    for direction in ("floor", "ceil", "round"):
        assert snap_to_interval(t, 15, direction) == t
    assert is_aligned(t, 15)
    assert not is_aligned(utc(2, 9, 31), 15)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def test_overlaps_is_half_open():
    a = TimeInterval(start=utc(2, 9), end=utc(2, 10))
    b = TimeInterval(start=utc(2, 10), end=utc(2, 11))
    c = TimeInterval(start=utc(2, 9, 30), end=utc(2, 10, 30))
    assert not overlaps(a, b)
    assert overlaps(a, c)


def test_are_adjacent_with_gap():
    a = block(2, 9, 10)
    b = block(2, 10.25, 11)
    assert not are_adjacent(a, b)
    assert are_adjacent(a, b, max_gap_minutes=15)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_normalize_sorts_merges_and_aligns():
    raw = [
        AvailabilityBlock(id="late", start=utc(3, 13, 5), end=utc(3, 15, 50)),
        AvailabilityBlock(id="a", start=utc(2, 9), end=utc(2, 10, 30)),
        AvailabilityBlock(id="b", start=utc(2, 10), end=utc(2, 12)),
        AvailabilityBlock(id="c", start=utc(2, 12), end=utc(2, 12, 30)),
    ]
    blocks = normalize_blocks(raw)

    assert [(b.start, b.end) for b in blocks] == [
        (utc(2, 9), utc(2, 12, 30)),
        (utc(3, 13, 15), utc(3, 15, 45)),
    ]
    for b in blocks:
        assert is_aligned(b.start) and is_aligned(b.end)
    for first, second in zip(blocks, blocks[1:]):
        assert first.end < second.start


def test_normalize_drops_invalid_and_tiny_blocks():
    raw = [
        AvailabilityBlock(start=utc(2, 10), end=utc(2, 9)),  # reversed
        AvailabilityBlock(start=utc(2, 9, 1), end=utc(2, 9, 14)),  # vanishes on the grid
        {"start": "not a date", "end": "2026-03-02T10:00:00Z"},
        {"start_at": "2026-03-02T13:00:00Z", "end_at": "2026-03-02T14:00:00Z"},
    ]
    blocks = normalize_blocks(raw)
    assert len(blocks) == 1
    assert blocks[0].start == utc(2, 13)


def test_normalize_min_duration():
    raw = [block(2, 9, 9.5), block(2, 11, 13)]
    blocks = normalize_blocks(raw, min_duration_minutes=60)
    assert [b.start for b in blocks] == [utc(2, 11)]


def test_normalize_treats_naive_datetimes_as_utc():
    b = AvailabilityBlock(start=utc(2, 9).replace(tzinfo=None), end=utc(2, 10).replace(tzinfo=None))
    assert normalize_blocks([b])[0].start == utc(2, 9)


def test_merge_adjacent_keeps_first_id():
    merged = merge_adjacent([block(2, 10, 11, "second"), block(2, 9, 10, "first")])
    assert len(merged) == 1
    assert merged[0].id == "first"


# ---------------------------------------------------------------------------
# Busy subtraction
# ---------------------------------------------------------------------------

def test_subtract_busy_fully_covered_block_disappears():
    blocks = [block(2, 10, 11)]
    busy = [TimeInterval(start=utc(2, 9), end=utc(2, 12))]
    assert subtract_busy(blocks, busy) == []


def test_subtract_busy_without_busy_is_identity():
    blocks = [block(2, 9, 11, "x"), block(3, 9, 11, "y")]
    assert subtract_busy(blocks, []) == blocks


def test_subtract_busy_splits_block():
    blocks = [block(2, 9, 12, "x")]
    busy = [TimeInterval(start=utc(2, 10), end=utc(2, 10, 30))]
    pieces = subtract_busy(blocks, busy)
    assert [(p.start, p.end) for p in pieces] == [
        (utc(2, 9), utc(2, 10)),
        (utc(2, 10, 30), utc(2, 12)),
    ]
    assert [p.id for p in pieces] == ["x-0", "x-1"]


def test_subtract_busy_ignores_touching_intervals():
    blocks = [block(2, 9, 10)]
    busy = [TimeInterval(start=utc(2, 10), end=utc(2, 11))]
    pieces = subtract_busy(blocks, busy)
    assert len(pieces) == 1
    assert pieces[0].end - pieces[0].start == timedelta(hours=1)


# ---------------------------------------------------------------------------
# Candidate submission validation
# ---------------------------------------------------------------------------

def _week_of_blocks():
    return [block(day, 9, 11) for day in range(2, 7)]


def test_validate_blocks_accepts_good_submission():
    result = validate_blocks(_week_of_blocks(), utc(2, 0), utc(7, 0))
    assert result.valid
    assert result.errors == []
    assert len(result.normalized_blocks) == 5
    assert result.total_minutes == 600


def test_validate_blocks_reports_overlap():
    blocks = _week_of_blocks() + [block(2, 10, 12)]
    result = validate_blocks(blocks, utc(2, 0), utc(7, 0))
    assert not result.valid
    assert any("overlap" in e for e in result.errors)


def test_validate_blocks_reports_reversed_block():
    blocks = [block(2, 11, 9)]
    result = validate_blocks(blocks, utc(2, 0), utc(7, 0))
    assert result.errors == ["Block 1: Start time must be before end time"]


def test_validate_blocks_outside_window_and_minimums():
    blocks = [block(1, 9, 10), block(2, 9, 9.5)]
    result = validate_blocks(blocks, utc(2, 0), utc(7, 0))
    assert not result.valid
    assert "Block 1: Starts before the scheduling window" in result.errors
    assert any(e.startswith("Need at least 5 availability blocks") for e in result.errors)
    assert any(e.startswith("Need at least 180 minutes") for e in result.errors)
