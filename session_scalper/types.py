from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union

from session_scalper.errors import InvariantViolation, ValidationError


class Timeframe(str, Enum):
    M1 = "M1"
    M5 = "M5"
    M30 = "M30"

    @property
    def minutes(self) -> int:
        return int(self.value[1:])


class SessionName(str, Enum):
    ASIA = "ASIA"
    LONDON = "LONDON"
    NEWYORK = "NEWYORK"
    OVERLAP = "OVERLAP"
    AFTER_HOURS = "AFTER_HOURS"

    @property
    def is_trading_session(self) -> bool:
        return self in (SessionName.ASIA, SessionName.LONDON, SessionName.NEWYORK)


class DataSource(str, Enum):
    SIMULATOR = "SIMULATOR"
    LIVE = "LIVE"
    HISTORICAL = "HISTORICAL"


class VolatilityLevel(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class SessionQuality(str, Enum):
    QUIET = "QUIET"
    NORMAL = "NORMAL"
    ACTIVE = "ACTIVE"
    VOLATILE = "VOLATILE"


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


class LevelType(str, Enum):
    ASIA_HIGH = "ASIA_HIGH"
    ASIA_LOW = "ASIA_LOW"
    LONDON_HIGH = "LONDON_HIGH"
    LONDON_LOW = "LONDON_LOW"
    NY_HIGH = "NY_HIGH"
    NY_LOW = "NY_LOW"
    VWAP_ASIA = "VWAP_ASIA"
    VWAP_LONDON = "VWAP_LONDON"
    VWAP_NY = "VWAP_NY"
    PIVOT_DAILY = "PIVOT_DAILY"
    ROUND_NUMBER = "ROUND_NUMBER"
    PREVIOUS_DAY_HIGH = "PREVIOUS_DAY_HIGH"
    PREVIOUS_DAY_LOW = "PREVIOUS_DAY_LOW"
    WEEKLY_HIGH = "WEEKLY_HIGH"
    WEEKLY_LOW = "WEEKLY_LOW"

    @property
    def break_direction(self) -> Optional[Direction]:
        """Direction a break of this level takes, or None for neutral levels."""
        if self.value.endswith("_HIGH"):
            return Direction.LONG
        if self.value.endswith("_LOW"):
            return Direction.SHORT
        return None


_SESSION_PREFIX = {
    SessionName.ASIA: "ASIA",
    SessionName.LONDON: "LONDON",
    SessionName.NEWYORK: "NY",
}


def session_level_types(session: SessionName) -> tuple[LevelType, LevelType, LevelType]:
    """(high, low, vwap) level types owned by a trading session."""
    prefix = _SESSION_PREFIX[session]
    return LevelType(f"{prefix}_HIGH"), LevelType(f"{prefix}_LOW"), LevelType(f"VWAP_{prefix}")


class LevelStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BROKEN = "BROKEN"
    RETESTED = "RETESTED"
    WEAKENED = "WEAKENED"
    INACTIVE = "INACTIVE"


LEVEL_TRANSITIONS: dict[LevelStatus, frozenset[LevelStatus]] = {
    LevelStatus.ACTIVE: frozenset({LevelStatus.BROKEN, LevelStatus.RETESTED, LevelStatus.INACTIVE}),
    LevelStatus.RETESTED: frozenset({LevelStatus.BROKEN, LevelStatus.WEAKENED, LevelStatus.INACTIVE}),
    LevelStatus.BROKEN: frozenset({LevelStatus.RETESTED, LevelStatus.INACTIVE}),
    LevelStatus.WEAKENED: frozenset({LevelStatus.INACTIVE}),
    LevelStatus.INACTIVE: frozenset(),
}


class SetupCategory(str, Enum):
    BREAKOUT = "BREAKOUT"
    RETEST = "RETEST"
    BOUNCE = "BOUNCE"
    CONTINUATION = "CONTINUATION"


class SignalStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIGGERED = "TRIGGERED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SignalStatus.COMPLETED, SignalStatus.EXPIRED, SignalStatus.CANCELLED)


SIGNAL_TRANSITIONS: dict[SignalStatus, frozenset[SignalStatus]] = {
    SignalStatus.ACTIVE: frozenset({SignalStatus.TRIGGERED, SignalStatus.EXPIRED, SignalStatus.CANCELLED}),
    SignalStatus.TRIGGERED: frozenset({SignalStatus.COMPLETED, SignalStatus.EXPIRED, SignalStatus.CANCELLED}),
    SignalStatus.COMPLETED: frozenset(),
    SignalStatus.EXPIRED: frozenset(),
    SignalStatus.CANCELLED: frozenset(),
}


class ImpactLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


FactorValue = Union[float, str, bool]


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe: Timeframe
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    session: SessionName = SessionName.AFTER_HOURS
    session_progress: float = 0.5
    source: DataSource = DataSource.SIMULATOR
    volatility: VolatilityLevel = VolatilityLevel.NORMAL
    spread_pips: float | None = None

    @property
    def key(self) -> tuple[str, str, datetime]:
        return self.symbol, self.timeframe.value, self.time

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def body_ratio(self) -> float:
        return self.body / self.range if self.range > 0 else 0.0

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


@dataclass(frozen=True)
class TradingSession:
    symbol: str
    name: SessionName
    session_date: date
    start: datetime
    end: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    price_volume: float = 0.0
    candle_count: int = 0
    range_pips: int = 0
    volatility_score: float = 0.0
    breakout_occurred: bool = False
    breakout_direction: Direction | None = None
    finalized: bool = False

    @property
    def key(self) -> str:
        return f"{self.symbol}:{self.name.value}:{self.session_date.isoformat()}"

    @property
    def vwap(self) -> float:
        if self.volume > 0:
            return self.price_volume / self.volume
        return (self.high + self.low + self.close) / 3.0

    @property
    def pivot(self) -> float:
        return (self.high + self.low + self.close) / 3.0

    @property
    def resistance(self) -> float:
        return 2.0 * self.pivot - self.low

    @property
    def support(self) -> float:
        return 2.0 * self.pivot - self.high

    @property
    def midpoint(self) -> float:
        return (self.high + self.low) / 2.0


@dataclass(frozen=True)
class Level:
    id: str
    symbol: str
    level_type: LevelType
    price: float
    session_key: str
    session_name: SessionName
    established_at: datetime
    bias: Direction
    importance: float = 0.5
    touch_count: int = 1
    max_rejection_pips: float = 0.0
    volume_at_establishment: int = 0
    status: LevelStatus = LevelStatus.ACTIVE
    broken_at: datetime | None = None
    broken_price: float | None = None
    broken_by_session: SessionName | None = None
    retest_count: int = 0
    last_retest_at: datetime | None = None

    @property
    def identity(self) -> tuple[str, LevelType, str]:
        return self.symbol, self.level_type, self.session_key

    @property
    def is_unbroken(self) -> bool:
        return self.broken_at is None and self.status in (LevelStatus.ACTIVE, LevelStatus.RETESTED)

    @property
    def is_live(self) -> bool:
        return self.status not in (LevelStatus.WEAKENED, LevelStatus.INACTIVE)

    @property
    def strength(self) -> float:
        touch_bonus = min(self.touch_count * 0.05, 0.2)
        rejection_bonus = min(max(self.max_rejection_pips, 0.0) * 0.001, 0.1)
        return max(0.0, min(1.0, self.importance + touch_bonus + rejection_bonus))

    def moved_to(self, status: LevelStatus, **changes) -> "Level":
        if status is not self.status and status not in LEVEL_TRANSITIONS[self.status]:
            raise InvariantViolation(f"level {self.id} {self.status.value} -> {status.value} not allowed")
        if status is LevelStatus.BROKEN and self.broken_at is not None:
            raise InvariantViolation(f"level {self.id} already broken at {self.broken_at}")
        return replace(self, status=status, **changes)

    def describe(self) -> str:
        text = f"{self.level_type.value.replace('_', ' ')} level at {self.price:.5f} ({self.touch_count} touches, importance: {self.importance:.2f})"
        if self.retest_count > 0:
            text += f", retested {self.retest_count} times"
        if self.broken_by_session is not None:
            text += f", BROKEN by {self.broken_by_session.value} session"
        return text


@dataclass(frozen=True)
class NewsEvent:
    id: str
    currency: str
    time: datetime
    impact: ImpactLevel = ImpactLevel.HIGH
    title: str = ""


@dataclass(frozen=True)
class Breakout:
    id: str
    symbol: str
    level_id: str
    level_type: LevelType
    level_price: float
    origin_session: SessionName
    breakout_session: SessionName
    time: datetime
    price: float
    direction: Direction
    volume_confirmation: bool = False
    volume_ratio: float | None = None
    momentum_strength: float | None = None
    optimal_timing: bool = False
    news_event_id: str | None = None
    news_impact: ImpactLevel | None = None
    minutes_to_news: int | None = None
    retest_occurred: bool = False
    retest_at: datetime | None = None
    retest_price: float | None = None
    retest_held: bool | None = None
    max_follow_through_pips: int = 0
    max_follow_through_at: datetime | None = None
    signal_generated: bool = False

    @property
    def has_news_catalyst(self) -> bool:
        return self.news_event_id is not None or (self.minutes_to_news is not None and self.minutes_to_news <= 60)

    @property
    def technically_confirmed(self) -> bool:
        return bool(self.volume_confirmation) and self.momentum_strength is not None and self.momentum_strength >= 0.6

    @property
    def strength(self) -> float:
        score = 0.0
        if self.volume_confirmation:
            score += 0.30
        if self.momentum_strength is not None:
            score += max(0.0, min(1.0, self.momentum_strength)) * 0.40
        if self.has_news_catalyst:
            score += 0.20
        if self.optimal_timing:
            score += 0.10
        return max(0.0, min(1.0, score))

    @property
    def performance_category(self) -> str:
        s = self.strength
        if s >= 0.8:
            return "HIGH_PROBABILITY"
        if s >= 0.6:
            return "MEDIUM_PROBABILITY"
        return "LOW_PROBABILITY"

    @property
    def still_valid(self) -> bool:
        return not self.retest_occurred or bool(self.retest_held)

    def describe(self) -> str:
        text = f"{self.symbol} {self.direction.value.lower()} breakout at {self.breakout_session.value} session"
        text += f" (broke {self.level_type.value} from {self.origin_session.value} session)"
        if self.volume_confirmation:
            text += " with volume confirmation"
        if self.has_news_catalyst:
            text += " near news event"
        return text


@dataclass(frozen=True)
class Signal:
    id: str
    symbol: str
    setup_type: str
    category: SetupCategory
    direction: Direction
    entry: float
    stop: float
    target1: float
    target2: float | None
    risk_reward: float
    primary_session: SessionName
    origin_session: SessionName
    level_id: str
    breakout_id: str
    confidence: float
    probability: float
    created_at: datetime
    explanation: str
    status: SignalStatus = SignalStatus.ACTIVE
    news_context: str = "CLEAR"
    key_factors: dict[str, FactorValue] = field(default_factory=dict)
    risk_factors: dict[str, FactorValue] = field(default_factory=dict)

    @property
    def is_high_quality(self) -> bool:
        return self.confidence >= 0.8 and self.risk_reward >= 1.5

    @property
    def signal_ref(self) -> str:
        return f"{self.symbol}_{self.setup_type.replace('_', '')}_{self.created_at.strftime('%Y%m%d_%H%M%S')}"

    def moved_to(self, status: SignalStatus) -> "Signal":
        if status not in SIGNAL_TRANSITIONS[self.status]:
            raise ValidationError(f"signal {self.id} {self.status.value} -> {status.value} not allowed")
        return replace(self, status=status)


@dataclass(frozen=True)
class BreakEvent:
    level: Level
    candle: Candle
    session: SessionName
