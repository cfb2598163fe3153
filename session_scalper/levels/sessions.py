from __future__ import annotations

from dataclasses import replace
from datetime import date

from session_scalper.config import SymbolSpec
from session_scalper.session.classifier import session_window
from session_scalper.types import Candle, Direction, SessionName, SessionQuality, TradingSession
from session_scalper.utils import clamp01, whole_pips

# Upper bounds on volatility score
QUALITY_BUCKETS: tuple[tuple[float, SessionQuality], ...] = (
    (0.25, SessionQuality.QUIET),
    (0.5, SessionQuality.NORMAL),
    (0.8, SessionQuality.ACTIVE),
)


def session_key(symbol: str, name: SessionName, day: date) -> str:
    return f"{symbol}:{name.value}:{day.isoformat()}"


def open_session(spec: SymbolSpec, candle: Candle) -> TradingSession:
    if not candle.session.is_trading_session:
        raise ValueError(f"{candle.session.value} is not a trading session")
    day = candle.time.date()
    start, end = session_window(candle.session, day)
    return _with_metrics(
        spec,
        TradingSession(
            symbol=spec.symbol,
            name=candle.session,
            session_date=day,
            start=start,
            end=end,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            volume=candle.volume,
            price_volume=candle.typical_price * candle.volume,
            candle_count=1,
        ),
    )


def extend_session(spec: SymbolSpec, session: TradingSession, candle: Candle) -> TradingSession:
    """Fold one more candle of the window into ``session``."""
    if session.finalized:
        raise ValueError(f"session {session.key} is finalized")
    return _with_metrics(
        spec,
        replace(
            session,
            high=max(session.high, candle.high),
            low=min(session.low, candle.low),
            close=candle.close,
            volume=session.volume + candle.volume,
            price_volume=session.price_volume + candle.typical_price * candle.volume,
            candle_count=session.candle_count + 1,
        ),
    )


def finalize_session(session: TradingSession) -> TradingSession:
    return replace(session, finalized=True)


def mark_breakout(session: TradingSession, direction: Direction) -> TradingSession:
    if session.breakout_occurred:
        return session
    return replace(session, breakout_occurred=True, breakout_direction=direction)


def session_quality(session: TradingSession) -> SessionQuality:
    for upper, quality in QUALITY_BUCKETS:
        if session.volatility_score < upper:
            return quality
    return SessionQuality.VOLATILE


def has_valid_range(spec: SymbolSpec, session: TradingSession) -> bool:
    return spec.min_valid_range_pips <= session.range_pips <= spec.max_valid_range_pips


def _with_metrics(spec: SymbolSpec, session: TradingSession) -> TradingSession:
    pips = max(0, whole_pips(spec, session.high - session.low))
    score = clamp01(pips / spec.daily_range_pips) if spec.daily_range_pips > 0 else 0.0
    return replace(session, range_pips=pips, volatility_score=round(score, 2))
