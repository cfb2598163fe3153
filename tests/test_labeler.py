from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from session_scalper.config import DEFAULT_CONFIG
from session_scalper.data.candles import make_candle
from session_scalper.labeling.labeler import label_signals
from session_scalper.types import Direction, SessionName, SetupCategory, Signal

SPEC = DEFAULT_CONFIG.spec("EURUSD")
T0 = datetime(2024, 1, 10, 7, 30, tzinfo=timezone.utc)


def _bar(k, o, h, l, c):
    return make_candle(SPEC, timeframe="M1", time=T0 + timedelta(minutes=k), open=o, high=h, low=l, close=c)


def _signal(sid="s1", direction=Direction.LONG):
    if direction is Direction.LONG:
        entry, stop, t1 = 1.0883, 1.0872, 1.08995
    else:
        entry, stop, t1 = 1.0832, 1.0843, 1.08155
    return Signal(
        id=sid,
        symbol="EURUSD",
        setup_type="ASIA_BREAKOUT_AT_LONDON",
        category=SetupCategory.BREAKOUT,
        direction=direction,
        entry=entry,
        stop=stop,
        target1=t1,
        target2=None,
        risk_reward=1.5,
        primary_session=SessionName.LONDON,
        origin_session=SessionName.ASIA,
        level_id="l1",
        breakout_id="b1",
        confidence=0.7,
        probability=0.7,
        created_at=T0,
        explanation="x",
    )


def test_target_first_is_a_win():
    bars = [_bar(0, 1.0870, 1.0885, 1.0869, 1.0883), _bar(1, 1.0883, 1.0890, 1.0878, 1.0888), _bar(2, 1.0888, 1.0902, 1.0886, 1.0900)]
    res = label_signals(spec=SPEC, candles=bars, signals=[_signal()])
    ls = res.labeled[0]
    assert ls.label == "win"
    assert ls.minutes_to_outcome == 2
    assert ls.outcome_price == 1.08995
    assert ls.mfe_pips == 19.0
    assert ls.mae_pips == -5.0


def test_bar_touching_both_counts_as_loss():
    bars = [_bar(0, 1.0870, 1.0885, 1.0869, 1.0883), _bar(1, 1.0883, 1.0905, 1.0860, 1.0890)]
    assert label_signals(spec=SPEC, candles=bars, signals=[_signal()]).labeled[0].label == "loss"


def test_short_stop_hit():
    bars = [_bar(0, 1.0840, 1.0841, 1.0830, 1.0832), _bar(1, 1.0832, 1.0845, 1.0831, 1.0844)]
    ls = label_signals(spec=SPEC, candles=bars, signals=[_signal(direction=Direction.SHORT)]).labeled[0]
    assert ls.label == "loss"
    assert ls.outcome_price == 1.0843


def test_expired_and_dropped():
    bars = [_bar(0, 1.0870, 1.0885, 1.0869, 1.0883), _bar(1, 1.0883, 1.0886, 1.0880, 1.0884)]
    orphan = _signal("s2")
    orphan = replace(orphan, created_at=T0 - timedelta(hours=1))
    res = label_signals(spec=SPEC, candles=bars, signals=[_signal(), orphan])
    assert [ls.label for ls in res.labeled] == ["expired"]
    assert res.labeled[0].minutes_to_outcome == 1
    assert res.dropped == 1
