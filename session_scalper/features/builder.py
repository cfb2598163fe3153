from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

import pandas as pd

from session_scalper.types import Breakout, Level, SetupCategory


@dataclass(frozen=True)
class FeatureRow:
    time: datetime
    signal_id: str
    features: dict[str, float | int | str | None]


def signal_features(
    breakout: Breakout,
    level: Level,
    *,
    category: SetupCategory,
    risk_pips: float,
    risk_reward: float,
    confidence: float,
) -> dict[str, float | int | str | None]:
    """Model inputs known at the moment a signal is issued."""
    return {
        "symbol": breakout.symbol,
        "direction": breakout.direction.value,
        "category": category.value,
        "level_type": breakout.level_type.value,
        "origin_session": breakout.origin_session.value,
        "breakout_session": breakout.breakout_session.value,
        "breakout_strength": round(breakout.strength, 4),
        "volume_ratio": breakout.volume_ratio if breakout.volume_ratio is not None else 0.0,
        "volume_confirmed": int(breakout.volume_confirmation),
        "momentum": breakout.momentum_strength if breakout.momentum_strength is not None else 0.0,
        "optimal_timing": int(breakout.optimal_timing),
        "news_catalyst": int(breakout.has_news_catalyst),
        "level_strength": round(level.strength, 4),
        "level_touch_count": level.touch_count,
        "level_rejection_pips": level.max_rejection_pips,
        "risk_pips": round(risk_pips, 1),
        "rr_ratio": round(risk_reward, 2),
        "confidence": round(confidence, 4),
        "hour": breakout.time.hour,
    }


def feature_frame(rows: Sequence[FeatureRow]) -> pd.DataFrame:
    df = pd.DataFrame([r.features for r in rows])
    if len(df):
        df.insert(0, "time", [r.time for r in rows])
        df.insert(1, "signal_id", [r.signal_id for r in rows])
    return df
