from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from session_scalper.data.feeds import CandleFeed
from session_scalper.errors import UpstreamError, ValidationError
from session_scalper.runtime.engine import ScalperEngine
from session_scalper.types import Candle, Timeframe

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Tier:
    timeframe: Timeframe
    # completions of the previous tier per firing; 0 for the base tier
    every: int = 0


def tiers_for(timeframes: tuple[str, ...]) -> tuple[Tier, ...]:
    tfs = sorted((Timeframe(tf) for tf in timeframes), key=lambda t: t.minutes)
    out = [Tier(tfs[0])]
    for prev, cur in zip(tfs, tfs[1:]):
        if cur.minutes % prev.minutes:
            raise ValueError(f"{cur.value} is not a multiple of {prev.value}")
        out.append(Tier(cur, every=cur.minutes // prev.minutes))
    return tuple(out)


class Scheduler:
    """Periodic driver: the base tier polls the feed and ingests, slower tiers aggregate.

    Each tier runs on its own thread. A derived tier fires after ``every``
    completions of the tier below it, so it never sees a partial window.
    ``stop`` is idempotent and waits for in-flight ticks.
    """

    def __init__(
        self,
        engine: ScalperEngine,
        feed: CandleFeed,
        *,
        interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        on_tick: Optional[Callable[[datetime, list[Candle]], None]] = None,
    ) -> None:
        self.engine = engine
        self.feed = feed
        self.interval = float(interval_seconds if interval_seconds is not None else engine.cfg.base_interval_seconds)
        self.clock = clock
        self.on_tick = on_tick
        self.tiers = tiers_for(engine.cfg.timeframes)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._queues: list[queue.Queue] = [queue.Queue() for _ in self.tiers]
        self._counts = [0 for _ in self.tiers]
        self._pending: list[Candle] = []
        self._state_lock = threading.Lock()
        self.completions = [0 for _ in self.tiers]

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        with self._state_lock:
            if self._threads:
                return
            self._stop.clear()
            self._threads = [threading.Thread(target=self._run_base, name="tier-base", daemon=True)]
            for i in range(1, len(self.tiers)):
                name = f"tier-{self.tiers[i].timeframe.value}"
                self._threads.append(threading.Thread(target=self._run_derived, args=(i,), name=name, daemon=True))
            for t in self._threads:
                t.start()
        logger.info("scheduler_started tiers=%s interval=%.1fs", [t.timeframe.value for t in self.tiers], self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._state_lock:
            threads, self._threads = self._threads, []
        if not threads:
            return
        self._stop.set()
        for q in self._queues:
            q.put(None)
        for t in threads:
            t.join(timeout)
        logger.info("scheduler_stopped")

    def tick(self, now: Optional[datetime] = None) -> list[Candle]:
        """One base tick plus every derived tier it completes, run inline."""
        ingested = self._base_tick(now or self.clock())
        self._cascade(0, inline=True)
        return ingested

    def _run_base(self) -> None:
        while not self._stop.is_set():
            try:
                self._base_tick(self.clock())
            except Exception:  # noqa: BLE001
                logger.exception("base_tick_error")
            else:
                self._cascade(0, inline=False)
            self._stop.wait(self.interval)

    def _run_derived(self, index: int) -> None:
        q = self._queues[index]
        while True:
            token = q.get()
            if token is None or self._stop.is_set():
                return
            try:
                self._derived_tick(index)
            except Exception:  # noqa: BLE001
                logger.exception("derived_tick_error tier=%s", self.tiers[index].timeframe.value)
            else:
                self._cascade(index, inline=False)

    def _cascade(self, index: int, *, inline: bool) -> None:
        """Record a completion of tier ``index`` and fire the next tier when due."""
        self.completions[index] += 1
        nxt = index + 1
        if nxt >= len(self.tiers):
            return
        self._counts[nxt] += 1
        if self._counts[nxt] < self.tiers[nxt].every:
            return
        self._counts[nxt] = 0
        if inline:
            self._derived_tick(nxt)
            self._cascade(nxt, inline=True)
        else:
            self._queues[nxt].put(True)

    def _base_tick(self, now: datetime) -> list[Candle]:
        candles = self._pending + self.feed.poll(now)
        self._pending = []
        ingested: list[Candle] = []
        for i, c in enumerate(candles):
            try:
                res = self.engine.ingest(c)
            except ValidationError as e:
                logger.warning("candle_rejected %s: %s", c.key, e)
                continue
            except UpstreamError as e:
                # keep the rest for the next tick so per-symbol order is preserved
                logger.warning("ingest_retry_later %s: %s", c.key, e)
                self._pending = candles[i:]
                break
            if not res.duplicate:
                ingested.append(c)
        try:
            self.engine.close_sessions(now)
            self.engine.expire_levels(now)
        except UpstreamError as e:
            logger.warning("housekeeping_retry_later %s", e)
        if self.on_tick is not None:
            self.on_tick(now, ingested)
        return ingested

    def _derived_tick(self, index: int) -> list[Candle]:
        tf = self.tiers[index].timeframe
        out: list[Candle] = []
        for symbol in self.engine.engines:
            try:
                out.extend(self.engine.aggregate(symbol, tf))
            except UpstreamError as e:
                logger.warning("aggregate_retry_later symbol=%s tf=%s: %s", symbol, tf.value, e)
        return out
