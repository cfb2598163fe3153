from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from session_scalper.breakout.detector import setup_type
from session_scalper.config import ScalperConfig, SymbolSpec
from session_scalper.features.builder import signal_features
from session_scalper.levels.sessions import has_valid_range
from session_scalper.signals.factors import key_factors, risk_factors
from session_scalper.types import Breakout, Level, SetupCategory, Signal, TradingSession
from session_scalper.utils import clamp01, new_id, pips_to_price, price_to_pips

logger = logging.getLogger(__name__)


class ProbabilityModel(Protocol):
    def score(self, features: dict[str, float | int | str | None]) -> float: ...


@dataclass(frozen=True)
class Conflicts:
    opposing_level: Optional[Level]
    off_session: bool
    volume_unconfirmed: bool

    @property
    def count(self) -> int:
        return int(self.opposing_level is not None) + int(self.off_session) + int(self.volume_unconfirmed)


def eligible(breakout: Breakout, category: SetupCategory) -> bool:
    if breakout.signal_generated:
        return False
    if category is SetupCategory.RETEST:
        return bool(breakout.retest_occurred and breakout.retest_held)
    return breakout.technically_confirmed or breakout.has_news_catalyst


def find_conflicts(breakout: Breakout, entry: float, target1: float, levels: Sequence[Level]) -> Conflicts:
    lo, hi = sorted((entry, target1))
    opposing = None
    for lv in levels:
        if lv.id == breakout.level_id or not lv.is_unbroken:
            continue
        # unbroken resistance (LONG) or support (SHORT) in the path to target1
        if lv.bias is breakout.direction and lo < lv.price < hi:
            if opposing is None or abs(lv.price - entry) < abs(opposing.price - entry):
                opposing = lv
    return Conflicts(
        opposing_level=opposing,
        off_session=not breakout.breakout_session.is_trading_session,
        volume_unconfirmed=not breakout.volume_confirmation,
    )


def confidence_score(breakout: Breakout, level: Level, conflicts: Conflicts) -> float:
    context = 1.0 - conflicts.count / 3.0
    return round(clamp01(0.5 * breakout.strength + 0.3 * level.strength + 0.2 * context), 4)


def news_context(breakout: Breakout) -> str:
    if breakout.news_event_id is None and breakout.minutes_to_news is None:
        return "CLEAR"
    impact = breakout.news_impact.value if breakout.news_impact is not None else "HIGH"
    return f"{impact}_IMPACT_WITHIN_{breakout.minutes_to_news or 0}M"


def default_explanation(
    symbol: str,
    setup: str,
    session_context: str,
    confidence: float,
    risk_reward: float,
) -> str:
    text = f"{setup.replace('_', ' ')} setup on {symbol} during {session_context}"
    if confidence >= 0.8:
        text += ". High confidence setup"
    elif confidence >= 0.6:
        text += ". Medium confidence setup"
    else:
        text += ". Low confidence setup"
    if risk_reward >= 2.0:
        text += " with favorable risk/reward"
    return text


def generate(
    cfg: ScalperConfig,
    spec: SymbolSpec,
    breakout: Breakout,
    level: Level,
    levels: Sequence[Level],
    *,
    now: datetime,
    category: SetupCategory = SetupCategory.BREAKOUT,
    origin: Optional[TradingSession] = None,
    model: Optional[ProbabilityModel] = None,
    explanation: Optional[str] = None,
) -> Optional[Signal]:
    """Signal for ``breakout`` or None when it does not qualify."""
    if not eligible(breakout, category):
        return None

    if category is SetupCategory.RETEST:
        entry = breakout.retest_price if breakout.retest_price is not None else breakout.price
    else:
        entry = breakout.price
    buffer = pips_to_price(spec, spec.stop_buffer_pips)
    sign = breakout.direction.sign
    stop = level.price - sign * buffer
    risk = (entry - stop) * sign
    if risk <= 0:
        logger.info("signal_rejected breakout=%s reason=non_positive_risk entry=%s stop=%s", breakout.id, entry, stop)
        return None

    target1 = entry + sign * risk * cfg.rr_target1
    target2 = entry + sign * risk * cfg.rr_target2
    rr = abs(target1 - entry) / abs(entry - stop)

    conflicts = find_conflicts(breakout, entry, target1, levels)
    confidence = confidence_score(breakout, level, conflicts)
    risk_pips = price_to_pips(spec, risk)

    probability = confidence
    if model is not None:
        feats = signal_features(
            breakout,
            level,
            category=category,
            risk_pips=risk_pips,
            risk_reward=rr,
            confidence=confidence,
        )
        probability = round(clamp01(model.score(feats)), 4)

    setup = setup_type(breakout, category.value)
    session_context = f"{breakout.breakout_session.value} session"
    if explanation is None or not explanation.strip():
        explanation = default_explanation(spec.symbol, setup, session_context, confidence, rr)

    opposing = conflicts.opposing_level
    signal = Signal(
        id=new_id(),
        symbol=spec.symbol,
        setup_type=setup,
        category=category,
        direction=breakout.direction,
        entry=round(entry, 5),
        stop=round(stop, 5),
        target1=round(target1, 5),
        target2=round(target2, 5),
        risk_reward=round(rr, 2),
        primary_session=breakout.breakout_session,
        origin_session=breakout.origin_session,
        level_id=level.id,
        breakout_id=breakout.id,
        confidence=confidence,
        probability=probability,
        created_at=now,
        explanation=explanation,
        news_context=news_context(breakout),
        key_factors=key_factors(
            breakout_strength=breakout.strength,
            level_strength=level.strength,
            level_type=level.level_type.value,
            origin_session=breakout.origin_session.value,
            volume_ratio=breakout.volume_ratio,
            momentum=breakout.momentum_strength,
            volume_confirmed=breakout.volume_confirmation,
            optimal_timing=breakout.optimal_timing,
            news_catalyst=breakout.has_news_catalyst,
            retest_held=breakout.retest_held if category is SetupCategory.RETEST else None,
            follow_through_pips=float(breakout.max_follow_through_pips),
        ),
        risk_factors=risk_factors(
            opposing_level=opposing.level_type.value if opposing is not None else None,
            opposing_level_pips=abs(price_to_pips(spec, opposing.price - entry)) if opposing is not None else None,
            off_session=conflicts.off_session,
            volume_unconfirmed=conflicts.volume_unconfirmed,
            minutes_to_news=float(breakout.minutes_to_news) if breakout.minutes_to_news is not None else None,
            session_range_pips=float(origin.range_pips) if origin is not None else None,
            session_range_invalid=not has_valid_range(spec, origin) if origin is not None else None,
        ),
    )
    logger.info(
        "signal symbol=%s setup=%s dir=%s entry=%s stop=%s t1=%s rr=%.2f conf=%.2f",
        signal.symbol,
        signal.setup_type,
        signal.direction.value,
        signal.entry,
        signal.stop,
        signal.target1,
        signal.risk_reward,
        signal.confidence,
    )
    return signal


def signal_context(signal: Signal, spec: SymbolSpec) -> dict:
    """Payload handed to the notification layer."""
    trade = {
        "entry_price": signal.entry,
        "stop_loss": signal.stop,
        "take_profit_1": signal.target1,
        "risk_reward_ratio": signal.risk_reward,
        "stop_distance_pips": round(abs(price_to_pips(spec, signal.entry - signal.stop)), 1),
        "tp1_distance_pips": round(abs(price_to_pips(spec, signal.target1 - signal.entry)), 1),
    }
    if signal.target2 is not None:
        trade["take_profit_2"] = signal.target2
    return {
        "signal_id": signal.signal_ref,
        "setup_type": signal.setup_type,
        "setup_category": signal.category.value,
        "signal_direction": signal.direction.value,
        "confidence_score": signal.confidence,
        "probability": signal.probability,
        "primary_session": signal.primary_session.value,
        "origin_session": signal.origin_session.value,
        "trade_parameters": trade,
        "market_context": {"news_environment": signal.news_context},
        "key_success_factors": dict(signal.key_factors),
        "risk_factors": dict(signal.risk_factors),
        "signal_quality": "HIGH" if signal.is_high_quality else "MEDIUM",
        "explanation": signal.explanation,
        "status": signal.status.value,
        "created_at": signal.created_at.isoformat(),
    }
