from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import numpy as np

from session_scalper.config import ScalperConfig, SymbolSpec
from session_scalper.data.candles import make_candle
from session_scalper.session.classifier import classify, is_market_open
from session_scalper.types import Candle, DataSource, SessionName, Timeframe
from session_scalper.utils import ensure_utc, floor_minutes, pips_to_price

logger = logging.getLogger(__name__)

SESSION_VOLATILITY = {
    SessionName.ASIA: 0.7,
    SessionName.LONDON: 1.2,
    SessionName.NEWYORK: 1.0,
}
SESSION_VOLUME = {
    SessionName.LONDON: 1.5,
    SessionName.NEWYORK: 1.2,
}


class CandleFeed(Protocol):
    def poll(self, now: datetime) -> list[Candle]:
        """Base candles closed at or before ``now``, oldest first."""
        ...


@dataclass
class _WalkState:
    last_close: float
    last_move_pips: float = 0.0
    last_time: datetime | None = None


class SimulatedFeed:
    """Random-walk M1 candles for every configured symbol.

    Moves scale with the session (quiet Asia, busy London), carry a little
    momentum from the previous bar and now and then take a news shock.
    Prices stay within 5% of the symbol's base price.
    """

    def __init__(
        self,
        cfg: ScalperConfig,
        *,
        seed: int | None = None,
        respect_market_hours: bool = True,
        max_catch_up: int = 240,
    ) -> None:
        self.cfg = cfg
        self.rng = np.random.default_rng(seed)
        self.respect_market_hours = respect_market_hours
        self.max_catch_up = int(max_catch_up)
        self._state = {s.symbol: _WalkState(last_close=s.base_price) for s in cfg.symbols}

    def poll(self, now: datetime) -> list[Candle]:
        # the bar for minute T closes at T + 1min
        latest = floor_minutes(now, 1) - timedelta(minutes=1)
        out: list[Candle] = []
        for spec in self.cfg.symbols:
            st = self._state[spec.symbol]
            if st.last_time is None:
                start = latest
            else:
                start = max(st.last_time + timedelta(minutes=1), latest - timedelta(minutes=self.max_catch_up - 1))
            t = start
            while t <= latest:
                if not self.respect_market_hours or is_market_open(t):
                    out.append(self.next_candle(spec, t))
                st.last_time = t
                t += timedelta(minutes=1)
        out.sort(key=lambda c: (c.time, c.symbol))
        return out

    def next_candle(self, spec: SymbolSpec, t: datetime) -> Candle:
        st = self._state[spec.symbol]
        session = classify(t).name

        max_move = spec.daily_range_pips * 0.1
        vol_mult = SESSION_VOLATILITY.get(session, 0.9)
        momentum = float(np.tanh(st.last_move_pips / max_move)) if max_move > 0 else 0.0
        shock = float(self.rng.normal() * 2.0) if self.rng.random() < 0.05 else 0.0
        move_pips = self.rng.normal() * max_move * vol_mult + momentum * max_move * 0.3 + shock * max_move * 0.5

        open_ = st.last_close
        close = open_ + pips_to_price(spec, move_pips)
        close = min(max(close, spec.base_price * 0.95), spec.base_price * 1.05)

        body = abs(close - open_)
        extra = body * 1.5
        high = max(open_, close) + self.rng.random() * extra
        low = min(open_, close) - self.rng.random() * extra

        volume = spec.base_volume * SESSION_VOLUME.get(session, 0.8) * (0.5 + self.rng.random())

        candle = make_candle(
            spec,
            timeframe=Timeframe.M1,
            time=t,
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=volume,
            source=DataSource.SIMULATOR,
        )
        st.last_move_pips = (candle.close - open_) / spec.pip_size
        st.last_close = candle.close
        return candle


class ReplayFeed:
    """Serves a fixed list of candles in time order, releasing each once closed."""

    def __init__(self, candles: list[Candle]) -> None:
        self._candles = sorted(candles, key=lambda c: (c.time, c.symbol))
        self._pos = 0

    def __len__(self) -> int:
        return len(self._candles)

    @property
    def exhausted(self) -> bool:
        return self._pos >= len(self._candles)

    def poll(self, now: datetime) -> list[Candle]:
        cutoff = ensure_utc(now)
        out: list[Candle] = []
        while self._pos < len(self._candles):
            c = self._candles[self._pos]
            if c.time + timedelta(minutes=c.timeframe.minutes) > cutoff:
                break
            out.append(c)
            self._pos += 1
        return out

    def drain(self) -> list[Candle]:
        out = self._candles[self._pos :]
        self._pos = len(self._candles)
        return out
