from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from session_scalper.types import SessionName
from session_scalper.utils import ensure_utc


@dataclass(frozen=True)
class SessionWindow:
    name: SessionName
    start_hour: int
    end_hour: int
    optimal_end_hour: int | None = None

    @property
    def minutes(self) -> int:
        return (self.end_hour - self.start_hour) * 60


@dataclass(frozen=True)
class SessionInfo:
    name: SessionName
    progress: float


# Canonical UTC table. Hours not covered by a trading session are OVERLAP
# (hand-over between two sessions) or AFTER_HOURS.
TRADING_WINDOWS: dict[SessionName, SessionWindow] = {
    SessionName.ASIA: SessionWindow(SessionName.ASIA, 0, 6),
    SessionName.LONDON: SessionWindow(SessionName.LONDON, 7, 11, optimal_end_hour=10),
    SessionName.NEWYORK: SessionWindow(SessionName.NEWYORK, 12, 16, optimal_end_hour=15),
}

_HOUR_TABLE: tuple[SessionName, ...] = tuple(
    next(
        (w.name for w in TRADING_WINDOWS.values() if w.start_hour <= h < w.end_hour),
        SessionName.OVERLAP if h in (6, 11) else SessionName.AFTER_HOURS,
    )
    for h in range(24)
)

# Daily pause between the New York close and the Asia open.
MARKET_PAUSE = (time(17, 0), time(23, 0))


def session_for_hour(hour: int) -> SessionName:
    return _HOUR_TABLE[hour % 24]


def classify(instant: datetime) -> SessionInfo:
    dt = ensure_utc(instant)
    name = _HOUR_TABLE[dt.hour]
    window = TRADING_WINDOWS.get(name)
    if window is None:
        return SessionInfo(name=name, progress=0.5)
    elapsed = (dt.hour - window.start_hour) * 60 + dt.minute + dt.second / 60.0
    progress = max(0.0, min(1.0, elapsed / window.minutes))
    return SessionInfo(name=name, progress=progress)


def session_window(name: SessionName, day: date) -> tuple[datetime, datetime]:
    window = TRADING_WINDOWS.get(name)
    if window is None:
        raise ValueError(f"{name.value} has no fixed window")
    start = datetime.combine(day, time(0, 0), tzinfo=timezone.utc) + timedelta(hours=window.start_hour)
    return start, start + timedelta(minutes=window.minutes)


def is_optimal_timing(instant: datetime, session: SessionName) -> bool:
    """True when ``instant`` falls in the early part of ``session``."""
    window = TRADING_WINDOWS.get(session)
    if window is None or window.optimal_end_hour is None:
        return False
    dt = ensure_utc(instant)
    return window.start_hour <= dt.hour < window.optimal_end_hour


def is_market_open(instant: datetime) -> bool:
    dt = ensure_utc(instant)
    if dt.weekday() >= 5:
        return False
    t = dt.time()
    return not (MARKET_PAUSE[0] <= t < MARKET_PAUSE[1])
