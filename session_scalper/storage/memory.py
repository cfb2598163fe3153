from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

from session_scalper.errors import DuplicateCandleError
from session_scalper.storage.base import PersistBatch
from session_scalper.types import Breakout, Candle, Level, Signal, TradingSession


class InMemoryStorage:
    """Reference storage: dicts behind one lock.

    Candles are write-once per (symbol, timeframe, time). Sessions, levels,
    breakouts and signals are upserted by key/id.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.candles: dict[tuple[str, str, datetime], Candle] = {}
        self.sessions: dict[str, TradingSession] = {}
        self.levels: dict[str, Level] = {}
        self.breakouts: dict[str, Breakout] = {}
        self.signals: dict[str, Signal] = {}
        self.commits = 0

    def commit(self, batch: PersistBatch, timeout: float) -> None:
        if not self._lock.acquire(timeout=timeout):
            raise TimeoutError(f"storage lock not acquired within {timeout}s")
        try:
            seen: set[tuple[str, str, datetime]] = set()
            for c in batch.candles:
                if c.key in self.candles or c.key in seen:
                    raise DuplicateCandleError(c.symbol, c.timeframe.value, c.time)
                seen.add(c.key)
            for c in batch.candles:
                self.candles[c.key] = c
            for s in batch.sessions:
                self.sessions[s.key] = s
            for lv in batch.levels:
                self.levels[lv.id] = lv
            for b in batch.breakouts:
                self.breakouts[b.id] = b
            for sig in batch.signals:
                self.signals[sig.id] = sig
            self.commits += 1
        finally:
            self._lock.release()

    def get_candles(self, symbol: str, timeframe: str, since: Optional[datetime] = None) -> list[Candle]:
        with self._lock:
            rows = [c for c in self.candles.values() if c.symbol == symbol and c.timeframe.value == timeframe]
        if since is not None:
            rows = [c for c in rows if c.time >= since]
        return sorted(rows, key=lambda c: c.time)

    def get_levels(self, symbol: str) -> list[Level]:
        with self._lock:
            return [lv for lv in self.levels.values() if lv.symbol == symbol]

    def get_breakouts(self, symbol: str, since: Optional[datetime] = None) -> list[Breakout]:
        with self._lock:
            rows = [b for b in self.breakouts.values() if b.symbol == symbol]
        if since is not None:
            rows = [b for b in rows if b.time >= since]
        return sorted(rows, key=lambda b: b.time)

    def get_signals(self, symbol: str) -> list[Signal]:
        with self._lock:
            return sorted((s for s in self.signals.values() if s.symbol == symbol), key=lambda s: s.created_at)
