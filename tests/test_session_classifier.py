from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from session_scalper.session.classifier import classify, is_market_open, is_optimal_timing, session_for_hour, session_window
from session_scalper.types import SessionName


def _t(hour: int, minute: int = 0, day: int = 10) -> datetime:
    # 2024-01-10 is a Wednesday
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


def test_hour_table():
    assert classify(_t(3)).name is SessionName.ASIA
    assert classify(_t(6, 30)).name is SessionName.OVERLAP
    assert classify(_t(8)).name is SessionName.LONDON
    assert classify(_t(11, 15)).name is SessionName.OVERLAP
    assert classify(_t(13)).name is SessionName.NEWYORK
    assert classify(_t(18)).name is SessionName.AFTER_HOURS
    assert session_for_hour(24) is SessionName.ASIA


def test_progress_within_session():
    assert classify(_t(8)).progress == pytest.approx(0.25)
    assert classify(_t(7)).progress == pytest.approx(0.0)
    assert classify(_t(18)).progress == pytest.approx(0.5)


def test_naive_timestamps_are_utc():
    assert classify(datetime(2024, 1, 10, 9, 0)).name is SessionName.LONDON


def test_optimal_timing_is_early_part_of_session():
    assert is_optimal_timing(_t(9, 59), SessionName.LONDON)
    assert not is_optimal_timing(_t(10, 0), SessionName.LONDON)
    assert is_optimal_timing(_t(14, 0), SessionName.NEWYORK)
    assert not is_optimal_timing(_t(15, 0), SessionName.NEWYORK)
    assert not is_optimal_timing(_t(2), SessionName.ASIA)


def test_market_hours():
    assert is_market_open(_t(8))
    assert is_market_open(_t(23, 30))
    assert not is_market_open(_t(18))
    assert not is_market_open(_t(8, day=13))  # Saturday


def test_session_window():
    start, end = session_window(SessionName.ASIA, date(2024, 1, 10))
    assert start == _t(0)
    assert end == _t(6)
    with pytest.raises(ValueError):
        session_window(SessionName.OVERLAP, date(2024, 1, 10))
