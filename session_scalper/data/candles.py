from __future__ import annotations

import math
from datetime import datetime

from session_scalper.config import ScalperConfig, SymbolSpec
from session_scalper.errors import ValidationError
from session_scalper.session.classifier import classify
from session_scalper.types import Candle, DataSource, Timeframe, VolatilityLevel
from session_scalper.utils import ensure_utc, price_to_pips

# Upper bounds in pips, applied to (high - low).
VOLATILITY_THRESHOLDS_PIPS: tuple[tuple[float, VolatilityLevel], ...] = (
    (5.0, VolatilityLevel.LOW),
    (20.0, VolatilityLevel.NORMAL),
    (50.0, VolatilityLevel.HIGH),
)


def volatility_level(spec: SymbolSpec, price_range: float) -> VolatilityLevel:
    pips = price_to_pips(spec, price_range)
    for upper, level in VOLATILITY_THRESHOLDS_PIPS:
        if pips < upper:
            return level
    return VolatilityLevel.EXTREME


def make_candle(
    spec: SymbolSpec,
    *,
    timeframe: Timeframe | str,
    time: datetime,
    open: float,
    high: float,
    low: float,
    close: float,
    volume: int | float = 0,
    source: DataSource = DataSource.SIMULATOR,
    digits: int = 5,
) -> Candle:
    """Build a candle with session and volatility fields filled in."""
    t = ensure_utc(time).replace(second=0, microsecond=0)
    info = classify(t)
    o, h, l, c = (round(float(x), digits) for x in (open, high, low, close))
    return Candle(
        symbol=spec.symbol,
        timeframe=Timeframe(timeframe),
        time=t,
        open=o,
        high=h,
        low=l,
        close=c,
        volume=int(volume),
        session=info.name,
        session_progress=info.progress,
        source=source,
        volatility=volatility_level(spec, h - l),
        spread_pips=spec.spread_pips,
    )


def validate_candle(candle: Candle, cfg: ScalperConfig) -> SymbolSpec:
    spec = cfg.spec(candle.symbol)
    if spec is None or len(candle.symbol) > 10:
        raise ValidationError(f"unsupported symbol: {candle.symbol!r}")
    if candle.timeframe.value not in cfg.timeframes:
        raise ValidationError(f"unsupported timeframe: {candle.timeframe.value}")
    t = candle.time
    if t.tzinfo is None or t.utcoffset().total_seconds() != 0:
        raise ValidationError(f"timestamp must be UTC: {t!r}")
    if t.second or t.microsecond:
        raise ValidationError(f"timestamp not minute-aligned: {t.isoformat()}")
    prices = (candle.open, candle.high, candle.low, candle.close)
    if any(not math.isfinite(p) or p <= 0 for p in prices):
        raise ValidationError(f"non-positive price in {candle.key}: {prices}")
    if not (candle.high >= max(candle.open, candle.close) and min(candle.open, candle.close) >= candle.low):
        raise ValidationError(f"malformed OHLC ordering in {candle.key}: {prices}")
    if candle.volume < 0:
        raise ValidationError(f"negative volume in {candle.key}")
    if not 0.0 <= candle.session_progress <= 1.0:
        raise ValidationError(f"session progress out of range in {candle.key}")
    return spec
