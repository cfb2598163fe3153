from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pandas as pd
import pytest

from session_scalper.config import DEFAULT_CONFIG
from session_scalper.data import mt5_loader
from session_scalper.data.candles import make_candle, validate_candle
from session_scalper.data.csv_loader import CsvFeed, load_ohlcv_csv
from session_scalper.data.feeds import ReplayFeed, SimulatedFeed
from session_scalper.data.mt5_loader import MT5NotAvailable, Mt5Feed
from session_scalper.types import DataSource, SessionName, Timeframe

T0 = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


def test_simulated_candles_are_well_formed():
    feed = SimulatedFeed(DEFAULT_CONFIG, seed=7)
    first = feed.poll(T0 + timedelta(seconds=30))
    assert len(first) == 2
    later = feed.poll(T0 + timedelta(minutes=30, seconds=10))
    assert len(later) == 2 * 30

    by_symbol: dict[str, list] = {}
    for c in first + later:
        validate_candle(c, DEFAULT_CONFIG)
        assert c.high >= max(c.open, c.close)
        assert c.low <= min(c.open, c.close)
        assert c.volume > 0
        assert c.session is SessionName.LONDON
        assert c.source is DataSource.SIMULATOR
        by_symbol.setdefault(c.symbol, []).append(c)

    for sym, rows in by_symbol.items():
        spec = DEFAULT_CONFIG.spec(sym)
        times = [c.time for c in rows]
        assert times == sorted(set(times))
        assert all(abs(c.close - spec.base_price) <= spec.base_price * 0.05 + 1e-5 for c in rows)
        # each bar opens at the previous close
        assert all(b.open == a.close for a, b in zip(rows, rows[1:]))


def test_simulated_feed_is_seeded():
    a = SimulatedFeed(DEFAULT_CONFIG, seed=3).poll(T0)
    b = SimulatedFeed(DEFAULT_CONFIG, seed=3).poll(T0)
    assert [c.close for c in a] == [c.close for c in b]


def test_simulated_feed_skips_closed_market():
    saturday = datetime(2024, 1, 13, 9, 0, tzinfo=timezone.utc)
    assert SimulatedFeed(DEFAULT_CONFIG, seed=1).poll(saturday) == []
    assert len(SimulatedFeed(DEFAULT_CONFIG, seed=1, respect_market_hours=False).poll(saturday)) == 2


def test_replay_feed_releases_closed_candles():
    spec = DEFAULT_CONFIG.spec("EURUSD")
    c = make_candle(spec, timeframe="M1", time=T0, open=1.085, high=1.086, low=1.084, close=1.0855)
    feed = ReplayFeed([c])
    assert feed.poll(T0 + timedelta(seconds=30)) == []
    assert feed.poll(T0 + timedelta(minutes=1)) == [c]
    assert feed.exhausted
    assert feed.poll(T0 + timedelta(hours=1)) == []


def test_csv_feed_reads_mt5_export(tmp_path):
    path = tmp_path / "eurusd_m1.csv"
    pd.DataFrame(
        {
            "time": ["2024-01-10 09:01:00", "2024-01-10 09:00:00"],
            "open": [1.0851, 1.0850],
            "high": [1.0855, 1.0854],
            "low": [1.0849, 1.0848],
            "close": [1.0853, 1.0851],
            "tick_volume": [120, 100],
        }
    ).to_csv(path, index=False)

    df = load_ohlcv_csv(path, schema="mt5")
    assert list(df.columns) == ["time", "open", "high", "low", "close", "volume"]
    assert str(df["time"].dt.tz) == "UTC"

    candles = CsvFeed(DEFAULT_CONFIG.spec("EURUSD"), path, schema="mt5").drain()
    assert [c.time for c in candles] == [T0, T0 + timedelta(minutes=1)]
    assert candles[0].volume == 100
    assert candles[0].source is DataSource.HISTORICAL
    assert candles[0].timeframe is Timeframe.M1


def test_csv_missing_column(tmp_path):
    path = tmp_path / "bad.csv"
    pd.DataFrame({"time": ["2024-01-10 09:00:00"], "open": [1.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        load_ohlcv_csv(path)


def test_mt5_feed_requires_package(monkeypatch):
    def _missing():
        raise MT5NotAvailable("MetaTrader5 Python package is not available")

    monkeypatch.setattr(mt5_loader, "_require_mt5", _missing)
    with pytest.raises(MT5NotAvailable):
        Mt5Feed(DEFAULT_CONFIG)


def _fake_mt5(rates):
    return SimpleNamespace(
        TIMEFRAME_M1=1,
        TIMEFRAME_M5=5,
        TIMEFRAME_M30=30,
        initialize=lambda: True,
        shutdown=lambda: None,
        copy_rates_from_pos=lambda symbol, tf, start, count: rates[-count:],
    )


def test_mt5_feed_skips_forming_and_seen_bars(monkeypatch):
    rates = [
        {
            "time": int((T0 + timedelta(minutes=k)).timestamp()),
            "open": 1.0850,
            "high": 1.0856,
            "low": 1.0848,
            "close": 1.0852,
            "tick_volume": 50 + k,
            "spread": 1,
            "real_volume": 0,
        }
        for k in range(3)
    ]
    monkeypatch.setattr(mt5_loader, "_require_mt5", lambda: _fake_mt5(rates))
    feed = Mt5Feed(DEFAULT_CONFIG, bars=5)

    first = feed.poll(T0 + timedelta(minutes=2, seconds=30))
    eur = [c for c in first if c.symbol == "EURUSD"]
    assert [c.time for c in eur] == [T0, T0 + timedelta(minutes=1)]
    assert eur[0].source is DataSource.LIVE
    assert eur[1].volume == 51

    second = feed.poll(T0 + timedelta(minutes=3, seconds=5))
    assert [c.time for c in second if c.symbol == "EURUSD"] == [T0 + timedelta(minutes=2)]
    assert feed.poll(T0 + timedelta(minutes=3, seconds=40)) == []
