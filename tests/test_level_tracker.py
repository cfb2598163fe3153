from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from session_scalper.config import DEFAULT_CONFIG
from session_scalper.data.candles import make_candle
from session_scalper.errors import InvariantViolation
from session_scalper.levels import tracker
from session_scalper.levels.sessions import extend_session, has_valid_range, open_session, session_quality
from session_scalper.types import Direction, LevelStatus, LevelType, SessionName, SessionQuality

SPEC = DEFAULT_CONFIG.spec("EURUSD")
DAY = datetime(2024, 1, 10, tzinfo=timezone.utc)


def _c(hour, minute, o, h, l, c, v=1000):
    return make_candle(SPEC, timeframe="M1", time=DAY + timedelta(hours=hour, minutes=minute), open=o, high=h, low=l, close=c, volume=v)


def _asia_session():
    rows = [
        _c(0, 0, 1.0850, 1.0860, 1.0845, 1.0855),
        _c(2, 0, 1.0855, 1.0875, 1.0850, 1.0870),
        _c(4, 0, 1.0870, 1.0872, 1.0840, 1.0845),
        _c(5, 59, 1.0845, 1.0862, 1.0843, 1.0860),
    ]
    s = open_session(SPEC, rows[0])
    for c in rows[1:]:
        s = extend_session(SPEC, s, c)
    return s


def _asia_levels():
    s = _asia_session()
    levels, _ = tracker.establish((), tracker.session_levels(SPEC, s, s.end))
    return levels


def _by_type(levels, level_type):
    return next(lv for lv in levels if lv.level_type is level_type)


def test_session_metrics():
    s = _asia_session()
    assert s.name is SessionName.ASIA
    assert (s.high, s.low, s.close) == (1.0875, 1.0840, 1.0860)
    assert s.range_pips == 35
    assert s.candle_count == 4
    assert s.volatility_score == pytest.approx(0.44)
    assert session_quality(s) is SessionQuality.NORMAL
    assert has_valid_range(SPEC, s)


def test_closed_asia_session_levels():
    levels = _asia_levels()
    types = {lv.level_type for lv in levels}
    assert types == {
        LevelType.ASIA_HIGH,
        LevelType.ASIA_LOW,
        LevelType.VWAP_ASIA,
        LevelType.PIVOT_DAILY,
        LevelType.ROUND_NUMBER,
    }
    high = _by_type(levels, LevelType.ASIA_HIGH)
    assert high.price == 1.0875
    assert high.bias is Direction.LONG
    assert high.status is LevelStatus.ACTIVE
    assert _by_type(levels, LevelType.ASIA_LOW).bias is Direction.SHORT
    assert _by_type(levels, LevelType.ROUND_NUMBER).price == pytest.approx(1.085)
    assert high.strength == pytest.approx(0.65)


def test_new_york_close_adds_day_levels():
    s = replace(_asia_session(), name=SessionName.NEWYORK)
    levels = tracker.session_levels(SPEC, s, s.end, day_sessions=[s])
    types = {lv.level_type for lv in levels}
    assert LevelType.PREVIOUS_DAY_HIGH in types
    assert LevelType.WEEKLY_HIGH not in types


def test_establish_is_idempotent_per_session(caplog):
    s = _asia_session()
    levels, first = tracker.establish((), tracker.session_levels(SPEC, s, s.end))
    with caplog.at_level(logging.ERROR):
        levels2, second = tracker.establish(levels, tracker.session_levels(SPEC, s, s.end))
    assert len(first) == 5
    assert second == []
    assert levels2 == levels
    assert any("level_establish_rejected" in r.getMessage() for r in caplog.records)


def test_london_close_above_asia_high_breaks_once():
    levels = _asia_levels()
    update = tracker.apply_candle(SPEC, levels, _c(7, 30, 1.0870, 1.0885, 1.0869, 1.0883, v=2000))
    broken = [e.level for e in update.breaks if e.level.level_type is LevelType.ASIA_HIGH]
    assert len(broken) == 1
    lv = broken[0]
    assert lv.status is LevelStatus.BROKEN
    assert lv.broken_by_session is SessionName.LONDON
    assert lv.broken_price == 1.0883

    again = tracker.apply_candle(SPEC, update.levels, _c(7, 31, 1.0883, 1.0895, 1.0882, 1.0890))
    assert not [e for e in again.breaks if e.level.level_type is LevelType.ASIA_HIGH]


def test_close_within_threshold_is_a_touch():
    levels = _asia_levels()
    update = tracker.apply_candle(SPEC, levels, _c(7, 30, 1.0870, 1.0879, 1.0868, 1.0872))
    assert not update.breaks
    high = _by_type(update.levels, LevelType.ASIA_HIGH)
    assert high.status is LevelStatus.RETESTED
    assert high.touch_count == 2
    assert high.max_rejection_pips == pytest.approx(7.0)
    assert high.strength == pytest.approx(0.6 + 0.1 + 0.007)


def test_wick_through_level_closing_back_is_a_rejection():
    levels = _asia_levels()
    update = tracker.apply_candle(SPEC, levels, _c(7, 30, 1.0868, 1.0881, 1.0866, 1.0870))
    assert not update.breaks
    high = _by_type(update.levels, LevelType.ASIA_HIGH)
    assert high.status is LevelStatus.RETESTED
    assert high.max_rejection_pips == pytest.approx(11.0)
    assert [lv.level_type for lv in update.touched] == [LevelType.ASIA_HIGH]


def test_candle_away_from_level_is_not_a_touch():
    levels = _asia_levels()
    update = tracker.apply_candle(SPEC, levels, _c(7, 30, 1.0864, 1.0868, 1.0863, 1.0866))
    assert update.touched == []
    assert update.levels == levels


def test_levels_not_yet_established_are_skipped():
    levels = _asia_levels()
    early = _c(5, 0, 1.0870, 1.0890, 1.0869, 1.0888)
    update = tracker.apply_candle(SPEC, levels, early)
    assert update.breaks == []
    assert update.levels == levels


def test_strength_is_clamped():
    lv = replace(_by_type(_asia_levels(), LevelType.ASIA_HIGH), importance=0.8, touch_count=10, max_rejection_pips=500.0)
    assert lv.strength == 1.0


def test_retest_outcomes():
    levels = _asia_levels()
    update = tracker.apply_candle(SPEC, levels, _c(7, 30, 1.0870, 1.0885, 1.0869, 1.0883))
    broken = update.breaks[0].level
    at = DAY + timedelta(hours=8)
    held = tracker.record_retest(broken, at, held=True)
    assert held.status is LevelStatus.RETESTED
    assert held.retest_count == 1
    failed = tracker.record_retest(broken, at, held=False)
    assert failed.status is LevelStatus.WEAKENED
    assert not failed.is_live
    with pytest.raises(InvariantViolation):
        broken.moved_to(LevelStatus.BROKEN)


def test_expiry_after_max_age():
    levels = _asia_levels()
    now = DAY + timedelta(hours=6 + 73)
    out, expired = tracker.expire(levels, now, DEFAULT_CONFIG.level_max_age_hours)
    assert len(expired) == len(levels)
    assert all(lv.status is LevelStatus.INACTIVE for lv in out)
    _, none = tracker.expire(out, now, DEFAULT_CONFIG.level_max_age_hours)
    assert none == []


def test_prune_keeps_recent_inactive():
    levels = _asia_levels()
    out, _ = tracker.expire(levels, DAY + timedelta(days=5), 72)
    assert len(tracker.prune(out, keep_inactive=2)) == 2
