from __future__ import annotations

import logging
from datetime import datetime, timedelta

import pandas as pd

from session_scalper.config import ScalperConfig
from session_scalper.data.csv_loader import candles_from_frame
from session_scalper.types import Candle, DataSource, Timeframe
from session_scalper.utils import floor_minutes

logger = logging.getLogger(__name__)


class MT5NotAvailable(RuntimeError):
    pass


def _require_mt5():
    try:
        import MetaTrader5 as mt5  # type: ignore
    except Exception as e:  # noqa: BLE001
        raise MT5NotAvailable("MetaTrader5 Python package is not available") from e
    return mt5


def _timeframe_from_str(mt5, timeframe: str) -> int:
    m = {
        "M1": "TIMEFRAME_M1",
        "M5": "TIMEFRAME_M5",
        "M30": "TIMEFRAME_M30",
    }
    tf = timeframe.upper()
    if tf not in m:
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    return int(getattr(mt5, m[tf]))


def _rates_frame(rates) -> pd.DataFrame:
    df = pd.DataFrame(rates)
    df["time"] = pd.to_datetime(df["time"], unit="s", utc=True)
    df = df.rename(columns={"tick_volume": "volume"})
    return df[["time", "open", "high", "low", "close", "volume"]].copy()


def load_rates_recent(*, symbol: str, timeframe: str = "M1", bars: int = 10) -> pd.DataFrame:
    mt5 = _require_mt5()
    if bars <= 0:
        raise ValueError("bars must be > 0")
    tf = _timeframe_from_str(mt5, timeframe)
    if not mt5.initialize():
        raise RuntimeError("mt5.initialize() failed")
    try:
        rates = mt5.copy_rates_from_pos(symbol, tf, 0, int(bars))
        if rates is None:
            raise RuntimeError("mt5.copy_rates_from_pos returned None")
        return _rates_frame(rates)
    finally:
        mt5.shutdown()


def get_spread_pips(*, symbol: str, pip_size: float) -> float:
    mt5 = _require_mt5()
    if not mt5.initialize():
        raise RuntimeError("mt5.initialize() failed")
    try:
        tick = mt5.symbol_info_tick(symbol)
        if tick is None:
            raise RuntimeError("mt5.symbol_info_tick returned None")
        spread = float(tick.ask) - float(tick.bid)
        return float(spread / float(pip_size))
    finally:
        mt5.shutdown()


class Mt5Feed:
    """Latest closed M1 bars from a MetaTrader5 terminal."""

    def __init__(self, cfg: ScalperConfig, *, bars: int = 10) -> None:
        _require_mt5()
        self.cfg = cfg
        self.bars = int(bars)
        self._last: dict[str, datetime] = {}

    def poll(self, now: datetime) -> list[Candle]:
        # the bar still forming at ``now`` is not closed yet
        forming = floor_minutes(now, 1)
        out: list[Candle] = []
        for spec in self.cfg.symbols:
            df = load_rates_recent(symbol=spec.symbol, timeframe=Timeframe.M1.value, bars=self.bars)
            candles = [c for c in candles_from_frame(spec, df, source=DataSource.LIVE) if c.time < forming]
            last = self._last.get(spec.symbol)
            if last is not None:
                candles = [c for c in candles if c.time > last]
            if candles:
                self._last[spec.symbol] = candles[-1].time
                if last is not None and candles[0].time - last > timedelta(minutes=1):
                    logger.warning("mt5_feed_gap symbol=%s last=%s next=%s", spec.symbol, last, candles[0].time)
            out.extend(candles)
        out.sort(key=lambda c: (c.time, c.symbol))
        return out
