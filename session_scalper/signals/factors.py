"""Closed vocabulary for the key/risk factor maps carried by a signal.

Values are limited to float, str and bool so a signal serializes to flat JSON.
"""

from __future__ import annotations

from typing import Optional

from session_scalper.errors import ValidationError
from session_scalper.types import FactorValue

KEY_FACTORS: dict[str, type] = {
    "breakout_strength": float,
    "level_strength": float,
    "level_type": str,
    "origin_session": str,
    "volume_ratio": float,
    "momentum": float,
    "volume_confirmed": bool,
    "optimal_timing": bool,
    "news_catalyst": bool,
    "retest_held": bool,
    "follow_through_pips": float,
}

RISK_FACTORS: dict[str, type] = {
    "opposing_level": str,
    "opposing_level_pips": float,
    "off_session": bool,
    "volume_unconfirmed": bool,
    "minutes_to_news": float,
    "session_range_pips": float,
    "session_range_invalid": bool,
}


def factor_map(vocabulary: dict[str, type], **values: Optional[FactorValue]) -> dict[str, FactorValue]:
    """Validated factor map; ``None`` values are dropped."""
    out: dict[str, FactorValue] = {}
    for key, value in values.items():
        kind = vocabulary.get(key)
        if kind is None:
            raise ValidationError(f"Unknown factor: {key}")
        if value is None:
            continue
        if kind is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"Factor {key} expects a number, got {value!r}")
            out[key] = round(float(value), 4)
        elif not isinstance(value, kind):
            raise ValidationError(f"Factor {key} expects {kind.__name__}, got {value!r}")
        else:
            out[key] = value
    return out


def key_factors(**values: Optional[FactorValue]) -> dict[str, FactorValue]:
    return factor_map(KEY_FACTORS, **values)


def risk_factors(**values: Optional[FactorValue]) -> dict[str, FactorValue]:
    return factor_map(RISK_FACTORS, **values)
