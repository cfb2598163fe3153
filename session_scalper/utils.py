from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from session_scalper.config import SymbolSpec


def pip_value(spec: SymbolSpec) -> float:
    return spec.pip_size


def price_to_pips(spec: SymbolSpec, price_delta: float) -> float:
    return price_delta / pip_value(spec)


def pips_to_price(spec: SymbolSpec, pips: float) -> float:
    return pips * pip_value(spec)


def whole_pips(spec: SymbolSpec, price_delta: float) -> int:
    # 1e-9 absorbs float noise like 7.9999999 pips
    return int(math.floor(price_to_pips(spec, price_delta) + 1e-9))


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def floor_minutes(dt: datetime, minutes: int) -> datetime:
    dt = ensure_utc(dt).replace(second=0, microsecond=0)
    total = dt.hour * 60 + dt.minute
    return dt.replace(hour=0, minute=0) + timedelta(minutes=total - total % minutes)


def new_id() -> str:
    return uuid4().hex


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))
