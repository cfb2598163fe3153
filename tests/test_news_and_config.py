from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from session_scalper.config import DEFAULT_CONFIG, load_config
from session_scalper.news import StaticNewsProvider, load_news_calendar
from session_scalper.types import ImpactLevel, NewsEvent

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def test_static_provider_window():
    events = [
        NewsEvent(id="a", currency="USD", time=NOW + timedelta(minutes=10)),
        NewsEvent(id="b", currency="USD", time=NOW + timedelta(minutes=90)),
        NewsEvent(id="c", currency="USD", time=NOW + timedelta(minutes=5), impact=ImpactLevel.MEDIUM),
        NewsEvent(id="d", currency="EUR", time=NOW - timedelta(minutes=5)),
    ]
    provider = StaticNewsProvider(events, clock=lambda: NOW)
    assert [e.id for e in provider.get_upcoming_high_impact_news(60)] == ["a"]
    assert [e.id for e in StaticNewsProvider(events).get_upcoming_high_impact_news(60)] == ["d", "a", "b"]


def test_calendar_from_csv(tmp_path):
    path = tmp_path / "calendar.csv"
    pd.DataFrame(
        [
            {"id": "nfp", "currency": "usd", "time": "2024-01-10 13:30:00", "impact": "high", "title": "Non-Farm Payrolls"},
            {"id": "", "currency": "EUR", "time": "2024-01-10 09:00:00", "impact": "", "title": ""},
        ]
    ).to_csv(path, index=False)
    events = load_news_calendar(path)
    assert events[0].currency == "USD"
    assert events[0].time == datetime(2024, 1, 10, 13, 30, tzinfo=timezone.utc)
    assert events[0].impact is ImpactLevel.HIGH
    assert events[1].id == "news-1"
    assert events[1].impact is ImpactLevel.HIGH


def test_calendar_from_json(tmp_path):
    path = tmp_path / "calendar.json"
    path.write_text(json.dumps([{"currency": "XAU", "time": "2024-01-10T14:00:00Z", "impact": "MEDIUM"}]))
    (ev,) = load_news_calendar(path)
    assert ev.currency == "XAU"
    assert ev.impact is ImpactLevel.MEDIUM


def test_config_overlay(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(
        json.dumps(
            {
                "volume_lookback": 10,
                "timeframes": ["M1", "M5"],
                "symbols": [
                    {"symbol": "eurusd", "break_threshold_pips": 4.0},
                    {"symbol": "GBPUSD", "currencies": ["GBP", "USD"], "base_price": 1.27},
                ],
            }
        )
    )
    cfg = load_config(path)
    assert cfg.volume_lookback == 10
    assert cfg.timeframes == ("M1", "M5")
    assert cfg.spec("EURUSD").break_threshold_pips == 4.0
    assert cfg.spec("EURUSD").pip_size == DEFAULT_CONFIG.spec("EURUSD").pip_size
    assert cfg.spec("gbpusd").currencies == ("GBP", "USD")
    assert cfg.symbol_names == ("EURUSD", "XAUUSD", "GBPUSD")


def test_config_rejects_unknown_keys(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"risk_per_trade": 0.01}))
    with pytest.raises(ValueError):
        load_config(path)
