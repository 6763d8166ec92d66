from __future__ import annotations
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo
from chainproof.services.time_windows import as_utc, runtime_state, window_contains


START = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)
END = START + timedelta(days=1)


def test_window_is_half_open():
    """Start is inside the window, end is not"""
    assert window_contains(START, END, START)
    assert window_contains(START, END, END - timedelta(microseconds=1))
    assert not window_contains(START, END, END)
    assert not window_contains(START, END, START - timedelta(microseconds=1))


def test_runtime_state_boundaries():
    assert runtime_state(START, END, START - timedelta(seconds=1)) == "upcoming"
    assert runtime_state(START, END, START) == "active"
    assert runtime_state(START, END, END) == "ended"


def test_naive_values_are_read_as_utc():
    """SQLite hands back naive datetimes for timezone-aware columns"""
    naive = datetime(2025, 1, 10, 12, 0)
    assert as_utc(naive) == START
    assert as_utc(naive).tzinfo == timezone.utc


def test_other_offsets_compare_by_instant():
    # 07:00 in New York (EST) is 12:00Z
    ny = datetime(2025, 1, 10, 7, 0, tzinfo=ZoneInfo("America/New_York"))
    assert as_utc(ny) == START
    assert window_contains(ny, END, START)
    assert not window_contains(START, END, END.astimezone(ZoneInfo("Asia/Tokyo")))
