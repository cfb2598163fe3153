from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta

import pandas as pd

from session_scalper.config import SymbolSpec
from session_scalper.data.candles import make_candle
from session_scalper.errors import GapError
from session_scalper.types import Candle, Timeframe
from session_scalper.utils import floor_minutes

logger = logging.getLogger(__name__)

_ONE_MINUTE = timedelta(minutes=1)


def aggregate_window(spec: SymbolSpec, candles: list[Candle], timeframe: Timeframe, start: datetime) -> Candle:
    """OHLCV of ``candles`` as one ``timeframe`` candle stamped at ``start``."""
    if not candles:
        raise GapError(spec.symbol, timeframe.value, start, start + timedelta(minutes=timeframe.minutes))
    df = pd.DataFrame(
        [{"time": c.time, "open": c.open, "high": c.high, "low": c.low, "close": c.close, "volume": c.volume} for c in candles]
    )
    df = df.sort_values("time")
    return make_candle(
        spec,
        timeframe=timeframe,
        time=start,
        open=float(df["open"].iloc[0]),
        high=float(df["high"].max()),
        low=float(df["low"].min()),
        close=float(df["close"].iloc[-1]),
        volume=int(df["volume"].sum()),
        source=candles[0].source,
    )


class WindowAggregator:
    """Builds higher-timeframe candles for one symbol from its base candles.

    A window is emitted only once it is complete, i.e. the base stream has
    reached its last minute. The first window starts at the first boundary at
    or after the first base candle so a partial leading window is never built.
    """

    def __init__(self, spec: SymbolSpec, timeframes: tuple[Timeframe, ...]) -> None:
        self.spec = spec
        self.timeframes = tuple(tf for tf in timeframes if tf is not Timeframe.M1)
        self._buffer: deque[Candle] = deque()
        self._cursor: dict[Timeframe, datetime] = {}
        self._last_time: datetime | None = None

    @property
    def last_time(self) -> datetime | None:
        return self._last_time

    def add(self, candle: Candle) -> None:
        if candle.timeframe is not Timeframe.M1:
            raise ValueError(f"aggregator takes M1 candles, got {candle.timeframe.value}")
        if self._last_time is not None and candle.time <= self._last_time:
            return
        self._last_time = candle.time
        if not self.timeframes:
            return
        self._buffer.append(candle)
        for tf in self.timeframes:
            if tf not in self._cursor:
                start = floor_minutes(candle.time, tf.minutes)
                if start < candle.time:
                    start += timedelta(minutes=tf.minutes)
                self._cursor[tf] = start

    def ready(self, timeframe: Timeframe) -> tuple[list[Candle], datetime | None]:
        """Candles for every complete window plus the cursor to commit afterwards."""
        cursor = self._cursor.get(timeframe)
        if cursor is None or self._last_time is None:
            return [], None
        width = timedelta(minutes=timeframe.minutes)
        out: list[Candle] = []
        gap_start: datetime | None = None
        gap_windows = 0
        while cursor + width <= self._last_time + _ONE_MINUTE:
            end = cursor + width
            window = [c for c in self._buffer if cursor <= c.time < end]
            try:
                out.append(aggregate_window(self.spec, window, timeframe, cursor))
            except GapError:
                if gap_start is None:
                    gap_start = cursor
                gap_windows += 1
            cursor = end
        if gap_windows:
            gap = GapError(self.spec.symbol, timeframe.value, gap_start, cursor, gap_windows)
            logger.warning("aggregation_gap %s", gap)
        return out, cursor

    def commit(self, timeframe: Timeframe, cursor: datetime) -> None:
        self._cursor[timeframe] = cursor
        # Base candles stay buffered until every timeframe's window has passed them.
        oldest = min(self._cursor.values())
        while self._buffer and self._buffer[0].time < oldest:
            self._buffer.popleft()
