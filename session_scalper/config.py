from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path


@dataclass(frozen=True)
class SymbolSpec:
    symbol: str
    pip_size: float = 0.0001
    currencies: tuple[str, ...] = ()

    # Simulator
    base_price: float = 1.0
    daily_range_pips: int = 80
    spread_pips: float = 0.5
    base_volume: int = 1000

    # Level tracking (pips)
    break_threshold_pips: float = 5.0
    touch_tolerance_pips: float = 3.0
    stop_buffer_pips: float = 3.0
    round_number_step_pips: float = 50.0

    # Session ranges outside [min, max] pips are low quality
    min_valid_range_pips: int = 15
    max_valid_range_pips: int = 100


@dataclass(frozen=True)
class ScalperConfig:
    symbols: tuple[SymbolSpec, ...] = (
        SymbolSpec(
            symbol="EURUSD",
            pip_size=0.0001,
            currencies=("EUR", "USD"),
            base_price=1.0850,
            daily_range_pips=80,
            spread_pips=0.5,
            base_volume=1000,
        ),
        SymbolSpec(
            symbol="XAUUSD",
            pip_size=0.01,
            currencies=("XAU", "USD"),
            base_price=1950.0,
            daily_range_pips=1500,
            spread_pips=20.0,
            base_volume=500,
            break_threshold_pips=50.0,
            touch_tolerance_pips=30.0,
            stop_buffer_pips=30.0,
            round_number_step_pips=1000.0,
            min_valid_range_pips=150,
            max_valid_range_pips=1000,
        ),
    )
    base_timeframe: str = "M1"
    timeframes: tuple[str, ...] = ("M1", "M5", "M30")

    # Breakout scoring
    volume_lookback: int = 20
    volume_confirmation_ratio: float = 1.5
    momentum_confirmation: float = 0.6
    news_window_minutes: int = 60

    # Signal construction
    rr_target1: float = 1.5
    rr_target2: float = 2.5

    # Housekeeping
    level_max_age_hours: int = 72
    breakout_history: int = 200
    signal_history: int = 200
    storage_timeout_seconds: float = 2.0

    # Scheduler (seconds)
    base_interval_seconds: int = 60

    _by_symbol: dict[str, SymbolSpec] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_symbol", {s.symbol: s for s in self.symbols})

    def spec(self, symbol: str) -> SymbolSpec | None:
        return self._by_symbol.get(symbol.upper())

    @property
    def symbol_names(self) -> tuple[str, ...]:
        return tuple(s.symbol for s in self.symbols)


DEFAULT_CONFIG = ScalperConfig()


def load_config(path: str | Path, *, base: ScalperConfig = DEFAULT_CONFIG) -> ScalperConfig:
    """Overlay a JSON file onto ``base``.

    Top-level keys map to ``ScalperConfig`` fields. ``symbols`` is a list of
    objects; an entry whose ``symbol`` matches an existing spec overrides it,
    other entries are added.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    allowed = {f.name for f in fields(ScalperConfig) if f.init}
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")

    overrides = {k: v for k, v in raw.items() if k != "symbols"}
    for k in ("timeframes",):
        if k in overrides:
            overrides[k] = tuple(overrides[k])

    symbols = list(base.symbols)
    for entry in raw.get("symbols", []):
        name = str(entry["symbol"]).upper()
        entry = {**entry, "symbol": name}
        if "currencies" in entry:
            entry["currencies"] = tuple(entry["currencies"])
        idx = next((i for i, s in enumerate(symbols) if s.symbol == name), None)
        if idx is None:
            symbols.append(SymbolSpec(**entry))
        else:
            symbols[idx] = replace(symbols[idx], **entry)
    return replace(base, symbols=tuple(symbols), **overrides)
