from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from session_scalper.config import SymbolSpec
from session_scalper.types import Candle, Direction, Signal
from session_scalper.utils import price_to_pips


@dataclass(frozen=True)
class LabeledSignal:
    signal: Signal
    label: str
    mfe_pips: float
    mae_pips: float
    minutes_to_outcome: int
    outcome_price: float | None


@dataclass(frozen=True)
class LabelingResult:
    labeled: list[LabeledSignal]
    dropped: int


def label_signals(
    *,
    spec: SymbolSpec,
    candles: Sequence[Candle],
    signals: Sequence[Signal],
    max_lookahead_bars: int = 240,
    expired_label: str = "expired",
) -> LabelingResult:
    """Walk forward from each signal: target1 first is a win, stop first a loss.

    A bar touching both counts as a loss. Signals that reach neither within
    ``max_lookahead_bars`` are labelled ``expired_label``.
    """
    bars = sorted((c for c in candles if c.symbol == spec.symbol), key=lambda c: c.time)
    idx_by_time = {c.time: i for i, c in enumerate(bars)}

    labeled: list[LabeledSignal] = []
    dropped = 0
    for s in signals:
        if s.symbol != spec.symbol:
            dropped += 1
            continue
        start_idx = idx_by_time.get(s.created_at)
        if start_idx is None:
            dropped += 1
            continue

        mfe = 0.0
        mae = 0.0
        outcome: str | None = None
        outcome_price: float | None = None
        minutes = 0
        end = min(len(bars), start_idx + 1 + max_lookahead_bars)
        for j in range(start_idx + 1, end):
            bar = bars[j]
            if s.direction is Direction.LONG:
                mfe = max(mfe, price_to_pips(spec, bar.high - s.entry))
                mae = min(mae, price_to_pips(spec, bar.low - s.entry))
                hit_sl = bar.low <= s.stop
                hit_tp = bar.high >= s.target1
            else:
                mfe = max(mfe, price_to_pips(spec, s.entry - bar.low))
                mae = min(mae, price_to_pips(spec, s.entry - bar.high))
                hit_sl = bar.high >= s.stop
                hit_tp = bar.low <= s.target1
            if hit_sl or hit_tp:
                outcome = "loss" if hit_sl else "win"
                outcome_price = s.stop if hit_sl else s.target1
                minutes = int((bar.time - s.created_at).total_seconds() // 60)
                break

        if outcome is None:
            last_t = bars[end - 1].time
            outcome = expired_label
            minutes = int((last_t - s.created_at).total_seconds() // 60)

        labeled.append(
            LabeledSignal(
                signal=s,
                label=outcome,
                mfe_pips=round(float(mfe), 1),
                mae_pips=round(float(mae), 1),
                minutes_to_outcome=minutes,
                outcome_price=outcome_price,
            )
        )
    return LabelingResult(labeled=labeled, dropped=dropped)
