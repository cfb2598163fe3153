from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional, Sequence

import numpy as np

from session_scalper.config import ScalperConfig, SymbolSpec
from session_scalper.levels.tracker import record_retest
from session_scalper.session.classifier import is_optimal_timing
from session_scalper.types import BreakEvent, Breakout, Candle, Direction, ImpactLevel, Level, LevelStatus, NewsEvent
from session_scalper.utils import clamp01, new_id, pips_to_price, price_to_pips, whole_pips

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetestOutcome:
    breakout: Breakout
    level: Level
    held: bool


def volume_ratio(candle: Candle, history: Sequence[Candle], lookback: int) -> Optional[float]:
    """Break candle volume over the mean of the preceding ``lookback`` base candles."""
    prior = [c.volume for c in history if c.time < candle.time][-lookback:]
    if not prior:
        return None
    mean = float(np.mean(prior))
    if mean <= 0:
        return None
    return round(candle.volume / mean, 2)


def momentum_strength(spec: SymbolSpec, level: Level, candle: Candle) -> float:
    penetration = abs(price_to_pips(spec, candle.close - level.price))
    reach = min(penetration / (3.0 * spec.break_threshold_pips), 1.0) if spec.break_threshold_pips > 0 else 1.0
    return round(clamp01(0.6 * candle.body_ratio + 0.4 * reach), 4)


def nearest_news(
    spec: SymbolSpec,
    at: datetime,
    news: Sequence[NewsEvent],
    window_minutes: int,
) -> tuple[Optional[NewsEvent], Optional[int]]:
    """Closest high-impact event for one of the symbol's currencies."""
    best: Optional[NewsEvent] = None
    best_minutes: Optional[int] = None
    currencies = set(spec.currencies)
    for ev in news:
        if ev.impact is not ImpactLevel.HIGH or (currencies and ev.currency not in currencies):
            continue
        minutes = int(abs((ev.time - at).total_seconds()) // 60)
        if minutes > window_minutes:
            continue
        if best_minutes is None or minutes < best_minutes:
            best, best_minutes = ev, minutes
    return best, best_minutes


def detect(
    cfg: ScalperConfig,
    spec: SymbolSpec,
    event: BreakEvent,
    history: Sequence[Candle],
    news: Sequence[NewsEvent] = (),
) -> Breakout:
    level, candle = event.level, event.candle
    ratio = volume_ratio(candle, history, cfg.volume_lookback)
    ev, minutes = nearest_news(spec, candle.time, news, cfg.news_window_minutes)
    b = Breakout(
        id=new_id(),
        symbol=spec.symbol,
        level_id=level.id,
        level_type=level.level_type,
        level_price=level.price,
        origin_session=level.session_name,
        breakout_session=event.session,
        time=candle.time,
        price=candle.close,
        direction=level.bias,
        volume_confirmation=ratio is not None and ratio >= cfg.volume_confirmation_ratio,
        volume_ratio=ratio,
        momentum_strength=momentum_strength(spec, level, candle),
        optimal_timing=is_optimal_timing(candle.time, event.session),
        news_event_id=ev.id if ev is not None else None,
        news_impact=ev.impact if ev is not None else None,
        minutes_to_news=minutes,
    )
    logger.info(
        "breakout symbol=%s level=%s dir=%s strength=%.2f category=%s",
        b.symbol,
        b.level_type.value,
        b.direction.value,
        b.strength,
        b.performance_category,
    )
    return b


def track_follow_through(spec: SymbolSpec, breakout: Breakout, candle: Candle) -> Breakout:
    if breakout.direction is Direction.LONG:
        excursion = candle.high - breakout.price
    else:
        excursion = breakout.price - candle.low
    pips = max(0, whole_pips(spec, excursion))
    if pips <= breakout.max_follow_through_pips:
        return breakout
    return replace(breakout, max_follow_through_pips=pips, max_follow_through_at=candle.time)


def check_retest(spec: SymbolSpec, breakout: Breakout, level: Level, candle: Candle) -> Optional[RetestOutcome]:
    """First return of price to the broken level after the break."""
    if breakout.retest_occurred or candle.time <= breakout.time or level.status is not LevelStatus.BROKEN:
        return None
    tol = pips_to_price(spec, spec.touch_tolerance_pips)
    if breakout.direction is Direction.LONG:
        returned = candle.low <= level.price + tol
        held = candle.close > level.price
        retest_price = max(candle.low, level.price)
    else:
        returned = candle.high >= level.price - tol
        held = candle.close < level.price
        retest_price = min(candle.high, level.price)
    if not returned:
        return None
    updated = replace(
        breakout,
        retest_occurred=True,
        retest_at=candle.time,
        retest_price=round(retest_price, 5),
        retest_held=held,
    )
    return RetestOutcome(breakout=updated, level=record_retest(level, candle.time, held), held=held)


def setup_type(breakout: Breakout, category: str = "BREAKOUT") -> str:
    return f"{breakout.origin_session.value}_{category}_AT_{breakout.breakout_session.value}"


def breakout_context(breakout: Breakout, now: datetime) -> dict[str, Any]:
    """Flat summary of a breakout for notification and model features."""
    ctx: dict[str, Any] = {
        "setup_type": setup_type(breakout),
        "breakout_strength": round(breakout.strength, 4),
        "performance_category": breakout.performance_category,
        "technical_confirmation": breakout.technically_confirmed,
        "news_context": breakout.has_news_catalyst,
        "session_timing": breakout.optimal_timing,
        "setup_description": breakout.describe(),
        "minutes_since_breakout": int((now - breakout.time).total_seconds() // 60),
        "still_valid": breakout.still_valid,
        "max_follow_through_pips": breakout.max_follow_through_pips,
    }
    if breakout.retest_occurred:
        ctx["retest_outcome"] = "HELD" if breakout.retest_held else "FAILED"
    return ctx
