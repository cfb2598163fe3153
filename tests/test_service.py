from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from session_scalper.config import DEFAULT_CONFIG
from session_scalper.data.candles import make_candle
from session_scalper.data.feeds import SimulatedFeed
from session_scalper.runtime.engine import ScalperEngine
from session_scalper.runtime.service import SignalSink, _write_status, build_feed
from session_scalper.storage.memory import InMemoryStorage

SPEC = DEFAULT_CONFIG.spec("EURUSD")
DAY = datetime(2024, 1, 10, tzinfo=timezone.utc)


def _engine_with_signal():
    engine = ScalperEngine(DEFAULT_CONFIG, InMemoryStorage())
    rows = [
        (0, 0, 1.0850, 1.0860, 1.0845, 1.0855, 1000),
        (2, 0, 1.0855, 1.0875, 1.0850, 1.0870, 1000),
        (4, 0, 1.0870, 1.0872, 1.0840, 1.0845, 1000),
        (5, 59, 1.0845, 1.0862, 1.0843, 1.0860, 1000),
        (6, 30, 1.0862, 1.0866, 1.0861, 1.0864, 1000),
        (7, 30, 1.0870, 1.0885, 1.0869, 1.0883, 2000),
    ]
    for h, m, o, hi, lo, c, v in rows:
        engine.ingest(make_candle(SPEC, timeframe="M1", time=DAY + timedelta(hours=h, minutes=m), open=o, high=hi, low=lo, close=c, volume=v))
    return engine


def test_sink_writes_each_signal_once(tmp_path):
    engine = _engine_with_signal()
    sink = SignalSink(engine, tmp_path / "signals")
    now = DAY + timedelta(hours=7, minutes=31)
    sink(now, [])
    sink(now + timedelta(minutes=1), [])
    files = list((tmp_path / "signals").glob("signal_*.json"))
    assert len(files) == 1
    assert sink.signals_today == 1
    payload = json.loads(files[0].read_text(encoding="utf-8"))
    assert payload["id"] == sink.last_signal_id

    sink(now + timedelta(days=1), [])
    assert sink.signals_today == 0


def test_status_file(tmp_path):
    engine = _engine_with_signal()
    sink = SignalSink(engine, tmp_path)
    now = DAY + timedelta(hours=7, minutes=31)
    sink(now, [])
    path = tmp_path / "status.json"
    _write_status(path, sink.status(now))
    status = json.loads(path.read_text())
    assert status["session"] == "LONDON"
    assert status["market_open"] is True
    assert status["active_signals"] == 1
    assert status["active_levels"] >= 5
    assert status["last_error"] is None


def test_build_simulator_feed():
    assert isinstance(build_feed("simulator", DEFAULT_CONFIG, csv_paths=[], seed=1), SimulatedFeed)
