from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from session_scalper.types import Breakout, Candle, Level, Signal, TradingSession


@dataclass(frozen=True)
class PersistBatch:
    """Everything one engine update writes; committed all-or-nothing."""

    candles: tuple[Candle, ...] = ()
    sessions: tuple[TradingSession, ...] = ()
    levels: tuple[Level, ...] = ()
    breakouts: tuple[Breakout, ...] = ()
    signals: tuple[Signal, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.candles or self.sessions or self.levels or self.breakouts or self.signals)


class Storage(Protocol):
    def commit(self, batch: PersistBatch, timeout: float) -> None:
        """Persist ``batch`` atomically within ``timeout`` seconds.

        Raises DuplicateCandleError for an already stored candle key.
        """
        ...

    def get_candles(self, symbol: str, timeframe: str, since: Optional[datetime] = None) -> list[Candle]: ...

    def get_levels(self, symbol: str) -> list[Level]: ...

    def get_breakouts(self, symbol: str, since: Optional[datetime] = None) -> list[Breakout]: ...

    def get_signals(self, symbol: str) -> list[Signal]: ...
