from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from session_scalper.config import SymbolSpec
from session_scalper.errors import InvariantViolation
from session_scalper.types import (
    BreakEvent,
    Candle,
    Direction,
    Level,
    LevelStatus,
    LevelType,
    SessionName,
    TradingSession,
    session_level_types,
)
from session_scalper.utils import new_id, pips_to_price, price_to_pips

logger = logging.getLogger(__name__)

IMPORTANCE: dict[LevelType, float] = {
    LevelType.ASIA_HIGH: 0.6,
    LevelType.ASIA_LOW: 0.6,
    LevelType.LONDON_HIGH: 0.6,
    LevelType.LONDON_LOW: 0.6,
    LevelType.NY_HIGH: 0.6,
    LevelType.NY_LOW: 0.6,
    LevelType.VWAP_ASIA: 0.5,
    LevelType.VWAP_LONDON: 0.5,
    LevelType.VWAP_NY: 0.5,
    LevelType.PIVOT_DAILY: 0.55,
    LevelType.ROUND_NUMBER: 0.4,
    LevelType.PREVIOUS_DAY_HIGH: 0.7,
    LevelType.PREVIOUS_DAY_LOW: 0.7,
    LevelType.WEEKLY_HIGH: 0.8,
    LevelType.WEEKLY_LOW: 0.8,
}


@dataclass(frozen=True)
class TrackerUpdate:
    levels: tuple[Level, ...]
    breaks: list[BreakEvent] = field(default_factory=list)
    touched: list[Level] = field(default_factory=list)

    @property
    def changed(self) -> list[Level]:
        return [e.level for e in self.breaks] + self.touched


def level_bias(level_type: LevelType, price: float, reference_close: float) -> Direction:
    """Direction a break of the level would take.

    Neutral levels (VWAP, pivot, round numbers) break in the direction of the
    level as seen from the close it was established against.
    """
    d = level_type.break_direction
    if d is not None:
        return d
    return Direction.LONG if price >= reference_close else Direction.SHORT


def build_level(
    spec: SymbolSpec,
    level_type: LevelType,
    price: float,
    session: TradingSession,
    established_at: datetime,
) -> Level:
    return Level(
        id=new_id(),
        symbol=spec.symbol,
        level_type=level_type,
        price=round(float(price), 5),
        session_key=session.key,
        session_name=session.name,
        established_at=established_at,
        bias=level_bias(level_type, price, session.close),
        importance=IMPORTANCE[level_type],
        volume_at_establishment=session.volume,
    )


def nearest_round_number(spec: SymbolSpec, price: float) -> float:
    step = pips_to_price(spec, spec.round_number_step_pips)
    below = math.floor(price / step) * step
    above = below + step
    return below if price - below <= above - price else above


def session_levels(
    spec: SymbolSpec,
    session: TradingSession,
    established_at: datetime,
    *,
    day_sessions: Sequence[TradingSession] = (),
    week_sessions: Sequence[TradingSession] = (),
) -> list[Level]:
    """Candidate levels produced by a closing session.

    New York closes also carry the day's extremes (previous-day levels for the
    next day) and, on Fridays, the week's extremes.
    """
    high_t, low_t, vwap_t = session_level_types(session.name)
    out = [
        build_level(spec, high_t, session.high, session, established_at),
        build_level(spec, low_t, session.low, session, established_at),
        build_level(spec, vwap_t, session.vwap, session, established_at),
        build_level(spec, LevelType.PIVOT_DAILY, session.pivot, session, established_at),
        build_level(spec, LevelType.ROUND_NUMBER, nearest_round_number(spec, session.close), session, established_at),
    ]
    if session.name is SessionName.NEWYORK:
        day = [s for s in day_sessions if s.session_date == session.session_date] or [session]
        out.append(build_level(spec, LevelType.PREVIOUS_DAY_HIGH, max(s.high for s in day), session, established_at))
        out.append(build_level(spec, LevelType.PREVIOUS_DAY_LOW, min(s.low for s in day), session, established_at))
        if session.session_date.weekday() == 4:
            week = list(week_sessions) or [session]
            out.append(build_level(spec, LevelType.WEEKLY_HIGH, max(s.high for s in week), session, established_at))
            out.append(build_level(spec, LevelType.WEEKLY_LOW, min(s.low for s in week), session, established_at))
    return out


def establish(levels: tuple[Level, ...], candidates: Iterable[Level]) -> tuple[tuple[Level, ...], list[Level]]:
    """Add candidates, keeping at most one live level per (symbol, type, session)."""
    live = {lv.identity for lv in levels if lv.is_live}
    accepted: list[Level] = []
    for lv in candidates:
        if lv.identity in live:
            err = InvariantViolation(f"level {lv.level_type.value} already established for {lv.session_key}")
            logger.error("level_establish_rejected %s", err)
            continue
        live.add(lv.identity)
        accepted.append(lv)
    return levels + tuple(accepted), accepted


def _breaks(spec: SymbolSpec, level: Level, candle: Candle) -> bool:
    if level.bias is Direction.LONG:
        penetration = candle.close - level.price
    else:
        penetration = level.price - candle.close
    return price_to_pips(spec, penetration) > spec.break_threshold_pips


def _rejection_pips(spec: SymbolSpec, level: Level, candle: Candle) -> float | None:
    """Wick length on the side of the candle that reached the level, or None if it never got there.

    Only called for candles that did not break the level, so a wick piercing
    it by any distance still counts as a touch.
    """
    tol = pips_to_price(spec, spec.touch_tolerance_pips)
    if not candle.low - tol <= level.price <= candle.high + tol:
        return None
    if level.price >= max(candle.open, candle.close):
        wick = candle.upper_wick
    elif level.price <= min(candle.open, candle.close):
        wick = candle.lower_wick
    else:
        wick = max(candle.upper_wick, candle.lower_wick)
    return max(0.0, price_to_pips(spec, wick))


def apply_candle(spec: SymbolSpec, levels: tuple[Level, ...], candle: Candle) -> TrackerUpdate:
    """Breaks first, then touches on the levels that did not break."""
    out: list[Level] = []
    breaks: list[BreakEvent] = []
    touched: list[Level] = []
    for lv in levels:
        if not lv.is_unbroken or lv.established_at > candle.time:
            out.append(lv)
            continue
        if _breaks(spec, lv, candle):
            lv = lv.moved_to(
                LevelStatus.BROKEN,
                broken_at=candle.time,
                broken_price=candle.close,
                broken_by_session=candle.session,
            )
            breaks.append(BreakEvent(level=lv, candle=candle, session=candle.session))
            out.append(lv)
            continue
        rejection = _rejection_pips(spec, lv, candle)
        if rejection is not None:
            lv = lv.moved_to(
                LevelStatus.RETESTED,
                touch_count=lv.touch_count + 1,
                max_rejection_pips=max(lv.max_rejection_pips, round(rejection, 1)),
            )
            touched.append(lv)
        out.append(lv)
    return TrackerUpdate(levels=tuple(out), breaks=breaks, touched=touched)


def record_retest(level: Level, at: datetime, held: bool) -> Level:
    """Broken level revisited; a failed retest leaves it weakened."""
    lv = level.moved_to(LevelStatus.RETESTED, retest_count=level.retest_count + 1, last_retest_at=at)
    if not held:
        lv = lv.moved_to(LevelStatus.WEAKENED)
    return lv


def expire(levels: tuple[Level, ...], now: datetime, max_age_hours: float) -> tuple[tuple[Level, ...], list[Level]]:
    cutoff = now - timedelta(hours=max_age_hours)
    out: list[Level] = []
    expired: list[Level] = []
    for lv in levels:
        if lv.status is not LevelStatus.INACTIVE and lv.established_at < cutoff:
            lv = lv.moved_to(LevelStatus.INACTIVE)
            expired.append(lv)
        out.append(lv)
    return tuple(out), expired


def replace_level(levels: tuple[Level, ...], updated: Level) -> tuple[Level, ...]:
    return tuple(updated if lv.id == updated.id else lv for lv in levels)


def prune(levels: tuple[Level, ...], keep_inactive: int = 200) -> tuple[Level, ...]:
    """Drop the oldest INACTIVE levels beyond ``keep_inactive``."""
    inactive = [lv for lv in levels if lv.status is LevelStatus.INACTIVE]
    if len(inactive) <= keep_inactive:
        return levels
    drop = {lv.id for lv in sorted(inactive, key=lambda x: x.established_at)[: len(inactive) - keep_inactive]}
    return tuple(lv for lv in levels if lv.id not in drop)
