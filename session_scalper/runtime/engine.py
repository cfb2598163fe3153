from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Literal, Mapping, Optional

from session_scalper.breakout.detector import check_retest, detect, track_follow_through
from session_scalper.config import ScalperConfig, SymbolSpec
from session_scalper.data.aggregator import WindowAggregator
from session_scalper.data.candles import validate_candle
from session_scalper.errors import DuplicateCandleError, UpstreamError, ValidationError
from session_scalper.levels import tracker
from session_scalper.levels.sessions import extend_session, finalize_session, mark_breakout, open_session, session_key
from session_scalper.news import NewsProvider
from session_scalper.signals.generator import ProbabilityModel, generate
from session_scalper.storage.base import PersistBatch, Storage
from session_scalper.types import (
    Breakout,
    Candle,
    Level,
    NewsEvent,
    SetupCategory,
    Signal,
    SignalStatus,
    Timeframe,
    TradingSession,
)

logger = logging.getLogger(__name__)

_EMPTY: Mapping = MappingProxyType({})


@dataclass(frozen=True)
class SymbolState:
    """Immutable per-symbol snapshot; every update publishes a new one."""

    symbol: str
    version: int = 0
    last_times: Mapping[Timeframe, datetime] = field(default_factory=lambda: _EMPTY)
    latest: Mapping[Timeframe, Candle] = field(default_factory=lambda: _EMPTY)
    recent: tuple[Candle, ...] = ()
    sessions: Mapping[str, TradingSession] = field(default_factory=lambda: _EMPTY)
    levels: tuple[Level, ...] = ()
    breakouts: tuple[Breakout, ...] = ()
    signals: tuple[Signal, ...] = ()


@dataclass(frozen=True)
class IngestResult:
    candle: Candle
    status: Literal["accepted", "duplicate"]
    version: int
    established: tuple[Level, ...] = ()
    breakouts: tuple[Breakout, ...] = ()
    signals: tuple[Signal, ...] = ()

    @property
    def duplicate(self) -> bool:
        return self.status == "duplicate"


def _frozen(d: dict) -> Mapping:
    return MappingProxyType(dict(d))


def _trim_signals(signals: tuple[Signal, ...], limit: int) -> tuple[Signal, ...]:
    """Keep every live signal and the newest terminal ones, ``limit`` in total."""
    if len(signals) <= limit:
        return signals
    live = [s for s in signals if not s.status.is_terminal]
    done = [s for s in signals if s.status.is_terminal]
    keep = max(0, limit - len(live))
    return tuple(sorted(live + done[len(done) - keep :], key=lambda s: s.created_at))


class SymbolEngine:
    """Single-writer owner of one symbol's levels, breakouts and signals.

    Writers serialize on the symbol's lock, build the next snapshot from the
    current one, persist the changes and only then swap the reference.
    Readers never lock.
    """

    def __init__(
        self,
        cfg: ScalperConfig,
        spec: SymbolSpec,
        storage: Storage,
        *,
        news: Optional[NewsProvider] = None,
        model: Optional[ProbabilityModel] = None,
    ) -> None:
        self.cfg = cfg
        self.spec = spec
        self.storage = storage
        self.news = news
        self.model = model
        self.base_timeframe = Timeframe(cfg.base_timeframe)
        self._lock = threading.Lock()
        self._state = SymbolState(symbol=spec.symbol)
        self._aggregator = WindowAggregator(spec, tuple(Timeframe(tf) for tf in cfg.timeframes))

    @property
    def state(self) -> SymbolState:
        return self._state

    def ingest(self, candle: Candle) -> IngestResult:
        validate_candle(candle, self.cfg)
        with self._lock:
            st = self._state
            last = st.last_times.get(candle.timeframe)
            if last is not None and (candle.time == last or (candle.time < last and self._stored(candle))):
                logger.debug("duplicate_candle %s", candle.key)
                return IngestResult(candle=candle, status="duplicate", version=st.version)
            if last is not None and candle.time < last:
                raise ValidationError(f"out-of-order candle {candle.key}, last {last.isoformat()}")

            if candle.timeframe is not self.base_timeframe:
                nxt = self._with_candle(st, candle)
                if not self._commit(PersistBatch(candles=(candle,))):
                    return IngestResult(candle=candle, status="duplicate", version=st.version)
                self._state = nxt
                return IngestResult(candle=candle, status="accepted", version=nxt.version)

            result, nxt, batch = self._step(st, candle)
            if not self._commit(batch):
                return IngestResult(candle=candle, status="duplicate", version=st.version)
            self._state = nxt
            self._aggregator.add(candle)
            return replace(result, version=nxt.version)

    def aggregate(self, timeframe: Timeframe | str) -> list[Candle]:
        """Emit higher-timeframe candles for every window completed so far."""
        tf = Timeframe(timeframe)
        with self._lock:
            built, cursor = self._aggregator.ready(tf)
            if cursor is None:
                return []
            st = self._state
            last = st.last_times.get(tf)
            fresh = [c for c in built if last is None or c.time > last]
            if fresh:
                nxt = st
                for c in fresh:
                    nxt = self._with_candle(nxt, c, bump=False)
                nxt = replace(nxt, version=st.version + 1)
                if not self._commit(PersistBatch(candles=tuple(fresh))):
                    fresh = []
                else:
                    self._state = nxt
            self._aggregator.commit(tf, cursor)
            return fresh

    def close_sessions(self, now: datetime) -> list[Level]:
        """Finalize sessions whose window has ended and establish their levels."""
        with self._lock:
            st = self._state
            sessions, levels, closed, established = self._close_due(dict(st.sessions), st.levels, now)
            if not closed:
                return []
            nxt = replace(st, version=st.version + 1, sessions=_frozen(sessions), levels=levels)
            self._commit(PersistBatch(sessions=tuple(closed), levels=tuple(established)))
            self._state = nxt
            return established

    def expire_levels(self, now: datetime) -> list[Level]:
        with self._lock:
            st = self._state
            levels, expired = tracker.expire(st.levels, now, self.cfg.level_max_age_hours)
            if not expired:
                return []
            self._commit(PersistBatch(levels=tuple(expired)))
            self._state = replace(st, version=st.version + 1, levels=tracker.prune(levels))
            logger.info("levels_expired symbol=%s count=%d", self.spec.symbol, len(expired))
            return expired

    def update_signal_status(self, signal_id: str, status: SignalStatus | str) -> Optional[Signal]:
        target = SignalStatus(status)
        with self._lock:
            st = self._state
            current = next((s for s in st.signals if s.id == signal_id), None)
            if current is None:
                return None
            updated = current.moved_to(target)
            self._commit(PersistBatch(signals=(updated,)))
            signals = tuple(updated if s.id == signal_id else s for s in st.signals)
            self._state = replace(st, version=st.version + 1, signals=signals)
            return updated

    def active_levels(self) -> list[Level]:
        return [lv for lv in self._state.levels if lv.is_live]

    def recent_breakouts(self, since: Optional[datetime] = None) -> list[Breakout]:
        rows = self._state.breakouts
        if since is not None:
            rows = tuple(b for b in rows if b.time >= since)
        return sorted(rows, key=lambda b: b.time)

    def active_signals(self) -> list[Signal]:
        return [s for s in self._state.signals if not s.status.is_terminal]

    def latest_price(self) -> Optional[float]:
        c = self._state.latest.get(self.base_timeframe)
        return c.close if c is not None else None

    def _commit(self, batch: PersistBatch) -> bool:
        """False when storage already holds the batch's candle."""
        if batch.empty:
            return True
        try:
            self.storage.commit(batch, timeout=self.cfg.storage_timeout_seconds)
        except DuplicateCandleError as e:
            logger.debug("duplicate_candle_in_storage %s", e)
            return False
        except Exception as e:  # noqa: BLE001
            raise UpstreamError("storage", str(e)) from e
        return True

    def _stored(self, candle: Candle) -> bool:
        try:
            rows = self.storage.get_candles(candle.symbol, candle.timeframe.value, since=candle.time)
        except Exception as e:  # noqa: BLE001
            raise UpstreamError("storage", str(e)) from e
        return any(c.key == candle.key for c in rows)

    def _with_candle(self, st: SymbolState, candle: Candle, *, bump: bool = True) -> SymbolState:
        last_times = dict(st.last_times)
        last_times[candle.timeframe] = candle.time
        latest = dict(st.latest)
        latest[candle.timeframe] = candle
        return replace(
            st,
            version=st.version + 1 if bump else st.version,
            last_times=_frozen(last_times),
            latest=_frozen(latest),
        )

    def _fetch_news(self) -> list[NewsEvent]:
        if self.news is None:
            return []
        try:
            return list(self.news.get_upcoming_high_impact_news(self.cfg.news_window_minutes))
        except Exception as e:  # noqa: BLE001
            raise UpstreamError("news", str(e)) from e

    def _close_due(
        self,
        sessions: dict[str, TradingSession],
        levels: tuple[Level, ...],
        now: datetime,
    ) -> tuple[dict[str, TradingSession], tuple[Level, ...], list[TradingSession], list[Level]]:
        closed: list[TradingSession] = []
        established: list[Level] = []
        due = sorted((s for s in sessions.values() if not s.finalized and s.end <= now), key=lambda s: s.end)
        for s in due:
            final = finalize_session(s)
            sessions[final.key] = final
            closed.append(final)
            day = [x for x in sessions.values() if x.finalized and x.session_date == final.session_date]
            week = [
                x
                for x in sessions.values()
                if x.finalized and x.session_date.isocalendar()[:2] == final.session_date.isocalendar()[:2]
            ]
            candidates = tracker.session_levels(self.spec, final, final.end, day_sessions=day, week_sessions=week)
            levels, accepted = tracker.establish(levels, candidates)
            established.extend(accepted)
            logger.info(
                "session_closed symbol=%s session=%s range_pips=%d levels=%d",
                self.spec.symbol,
                final.key,
                final.range_pips,
                len(accepted),
            )
        return sessions, levels, closed, established

    def _step(self, st: SymbolState, candle: Candle) -> tuple[IngestResult, SymbolState, PersistBatch]:
        spec = self.spec
        sessions = dict(st.sessions)

        # sessions whose window ended before this candle
        sessions, levels, closed, established = self._close_due(sessions, st.levels, candle.time)
        changed_sessions: dict[str, TradingSession] = {s.key: s for s in closed}

        if candle.session.is_trading_session:
            key = session_key(spec.symbol, candle.session, candle.time.date())
            cur = sessions.get(key)
            if cur is None:
                cur = open_session(spec, candle)
            elif not cur.finalized:
                cur = extend_session(spec, cur, candle)
            sessions[key] = cur
            changed_sessions[key] = cur

        changed_levels: dict[str, Level] = {lv.id: lv for lv in established}
        changed_breakouts: dict[str, Breakout] = {}
        by_level = {lv.id: lv for lv in levels}

        # follow-through and retests of earlier breakouts
        breakouts = list(st.breakouts)
        for i, b in enumerate(breakouts):
            if not b.still_valid or candle.time <= b.time:
                continue
            nb = track_follow_through(spec, b, candle)
            lv = by_level.get(b.level_id)
            if lv is not None:
                outcome = check_retest(spec, nb, lv, candle)
                if outcome is not None:
                    nb = outcome.breakout
                    by_level[lv.id] = outcome.level
                    changed_levels[lv.id] = outcome.level
                    levels = tracker.replace_level(levels, outcome.level)
                    logger.info(
                        "retest symbol=%s level=%s held=%s",
                        spec.symbol,
                        lv.level_type.value,
                        outcome.held,
                    )
            if nb is not b:
                breakouts[i] = nb
                changed_breakouts[nb.id] = nb

        update = tracker.apply_candle(spec, levels, candle)
        levels = update.levels
        for lv in update.changed:
            changed_levels[lv.id] = lv

        new_breakouts: list[Breakout] = []
        if update.breaks:
            news = self._fetch_news()
            for event in update.breaks:
                b = detect(self.cfg, spec, event, st.recent, news)
                new_breakouts.append(b)
                origin = sessions.get(event.level.session_key)
                if origin is not None and not origin.breakout_occurred:
                    origin = mark_breakout(origin, b.direction)
                    sessions[origin.key] = origin
                    changed_sessions[origin.key] = origin
            breakouts.extend(new_breakouts)
            for b in new_breakouts:
                changed_breakouts[b.id] = b

        new_signals: list[Signal] = []
        new_ids = {b.id for b in new_breakouts}
        for i, b in enumerate(breakouts):
            if b.signal_generated:
                continue
            if b.id in new_ids:
                category = SetupCategory.BREAKOUT
            elif b.id in changed_breakouts and b.retest_occurred and b.retest_held:
                category = SetupCategory.RETEST
            else:
                continue
            lv = next((x for x in levels if x.id == b.level_id), None)
            if lv is None:
                continue
            sig = generate(
                self.cfg,
                spec,
                b,
                lv,
                levels,
                now=candle.time,
                category=category,
                origin=sessions.get(lv.session_key),
                model=self.model,
            )
            if sig is None:
                continue
            new_signals.append(sig)
            breakouts[i] = replace(b, signal_generated=True)
            changed_breakouts[b.id] = breakouts[i]

        keep_from = candle.time.date() - timedelta(days=8)
        sessions = {k: s for k, s in sessions.items() if s.session_date >= keep_from}
        signals = _trim_signals(st.signals + tuple(new_signals), self.cfg.signal_history)

        lookback = max(self.cfg.volume_lookback, 1)
        nxt = self._with_candle(st, candle)
        nxt = replace(
            nxt,
            recent=(st.recent + (candle,))[-lookback:],
            sessions=_frozen(sessions),
            levels=tracker.prune(levels),
            breakouts=tuple(breakouts[-self.cfg.breakout_history :]),
            signals=signals,
        )
        batch = PersistBatch(
            candles=(candle,),
            sessions=tuple(changed_sessions.values()),
            levels=tuple(changed_levels.values()),
            breakouts=tuple(changed_breakouts.values()),
            signals=tuple(new_signals),
        )
        result = IngestResult(
            candle=candle,
            status="accepted",
            version=nxt.version,
            established=tuple(established),
            breakouts=tuple(new_breakouts),
            signals=tuple(new_signals),
        )
        return result, nxt, batch


class ScalperEngine:
    """Routes work to one SymbolEngine per configured symbol."""

    def __init__(
        self,
        cfg: ScalperConfig,
        storage: Storage,
        *,
        news: Optional[NewsProvider] = None,
        model: Optional[ProbabilityModel] = None,
    ) -> None:
        self.cfg = cfg
        self.storage = storage
        self.engines: dict[str, SymbolEngine] = {
            spec.symbol: SymbolEngine(cfg, spec, storage, news=news, model=model) for spec in cfg.symbols
        }

    def engine(self, symbol: str) -> Optional[SymbolEngine]:
        return self.engines.get(symbol.upper())

    def ingest(self, candle: Candle) -> IngestResult:
        eng = self.engine(candle.symbol)
        if eng is None:
            raise ValidationError(f"unsupported symbol: {candle.symbol!r}")
        return eng.ingest(candle)

    def aggregate(self, symbol: str, timeframe: Timeframe | str) -> list[Candle]:
        eng = self.engine(symbol)
        return eng.aggregate(timeframe) if eng is not None else []

    def close_sessions(self, now: datetime) -> list[Level]:
        out: list[Level] = []
        for eng in self.engines.values():
            out.extend(eng.close_sessions(now))
        return out

    def expire_levels(self, now: datetime) -> list[Level]:
        out: list[Level] = []
        for eng in self.engines.values():
            out.extend(eng.expire_levels(now))
        return out

    def update_signal_status(self, symbol: str, signal_id: str, status: SignalStatus | str) -> Optional[Signal]:
        eng = self.engine(symbol)
        return eng.update_signal_status(signal_id, status) if eng is not None else None

    def get_active_levels(self, symbol: str) -> list[Level]:
        eng = self.engine(symbol)
        return eng.active_levels() if eng is not None else []

    def get_recent_breakouts(self, symbol: str, since: Optional[datetime] = None) -> list[Breakout]:
        eng = self.engine(symbol)
        return eng.recent_breakouts(since) if eng is not None else []

    def get_active_signals(self, symbol: str) -> list[Signal]:
        eng = self.engine(symbol)
        return eng.active_signals() if eng is not None else []

    def latest_price(self, symbol: str) -> Optional[float]:
        eng = self.engine(symbol)
        return eng.latest_price() if eng is not None else None
