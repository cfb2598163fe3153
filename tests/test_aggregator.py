from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from session_scalper.config import DEFAULT_CONFIG
from session_scalper.data.aggregator import WindowAggregator, aggregate_window
from session_scalper.data.candles import make_candle
from session_scalper.errors import GapError
from session_scalper.types import Timeframe

SPEC = DEFAULT_CONFIG.spec("EURUSD")
T0 = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


def _m1(k: int, price: float = 1.0850):
    p = price + k * 0.0001
    return make_candle(
        SPEC,
        timeframe="M1",
        time=T0 + timedelta(minutes=k),
        open=p,
        high=p + 0.0004,
        low=p - 0.0002,
        close=p + 0.0001,
        volume=100 + k,
    )


def _agg(minutes):
    agg = WindowAggregator(SPEC, (Timeframe.M1, Timeframe.M5, Timeframe.M30))
    for k in minutes:
        agg.add(_m1(k))
    return agg


def test_complete_windows_only():
    agg = _agg(range(10))
    built, cursor = agg.ready(Timeframe.M5)
    assert [c.time for c in built] == [T0, T0 + timedelta(minutes=5)]
    assert cursor == T0 + timedelta(minutes=10)

    first = built[0]
    assert first.timeframe is Timeframe.M5
    assert first.open == _m1(0).open
    assert first.close == _m1(4).close
    assert first.high == max(_m1(k).high for k in range(5))
    assert first.low == min(_m1(k).low for k in range(5))
    assert first.volume == sum(100 + k for k in range(5))

    m30, _ = agg.ready(Timeframe.M30)
    assert m30 == []


def test_commit_advances_cursor():
    agg = _agg(range(10))
    built, cursor = agg.ready(Timeframe.M5)
    agg.commit(Timeframe.M5, cursor)
    again, _ = agg.ready(Timeframe.M5)
    assert again == []
    assert len(built) == 2


def test_partial_leading_window_is_skipped():
    agg = _agg(range(2, 10))
    built, _ = agg.ready(Timeframe.M5)
    assert [c.time for c in built] == [T0 + timedelta(minutes=5)]


def test_gap_windows_are_logged(caplog):
    agg = _agg(list(range(5)) + list(range(20, 25)))
    with caplog.at_level(logging.WARNING):
        built, cursor = agg.ready(Timeframe.M5)
    assert [c.time for c in built] == [T0, T0 + timedelta(minutes=20)]
    assert cursor == T0 + timedelta(minutes=25)
    assert any("aggregation_gap" in r.getMessage() for r in caplog.records)


def test_stale_base_candles_are_ignored():
    agg = _agg(range(5))
    agg.add(_m1(1))
    assert agg.last_time == T0 + timedelta(minutes=4)


def test_empty_window_raises_gap_error():
    with pytest.raises(GapError):
        aggregate_window(SPEC, [], Timeframe.M5, T0)


def test_aggregator_rejects_derived_input():
    agg = WindowAggregator(SPEC, (Timeframe.M5,))
    c = make_candle(SPEC, timeframe="M5", time=T0, open=1.0, high=1.0, low=1.0, close=1.0)
    with pytest.raises(ValueError):
        agg.add(c)


def test_catch_up_batch_keeps_every_window(caplog):
    agg = _agg(range(240))
    with caplog.at_level(logging.WARNING):
        m5, m5_cursor = agg.ready(Timeframe.M5)
        agg.commit(Timeframe.M5, m5_cursor)
        m30, _ = agg.ready(Timeframe.M30)
    assert len(m5) == 48
    assert len(m30) == 8
    assert m30[-1].close == _m1(239).close
    assert not any("aggregation_gap" in r.getMessage() for r in caplog.records)


def test_window_open_and_close_follow_time_order():
    shuffled = [_m1(k) for k in (3, 0, 4, 1, 2)]
    c = aggregate_window(SPEC, shuffled, Timeframe.M5, T0)
    assert c.open == _m1(0).open
    assert c.close == _m1(4).close
    assert c.volume == sum(100 + k for k in range(5))
