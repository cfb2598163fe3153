from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from session_scalper.config import DEFAULT_CONFIG, ScalperConfig, load_config
from session_scalper.data.csv_loader import CsvFeed
from session_scalper.data.feeds import ReplayFeed
from session_scalper.execution.signal_writer import record, write_signal_json
from session_scalper.labeling.labeler import label_signals
from session_scalper.ml.model import ProbabilityScorer
from session_scalper.news import StaticNewsProvider, load_news_calendar
from session_scalper.runtime.engine import ScalperEngine
from session_scalper.runtime.scheduler import Scheduler
from session_scalper.signals.generator import ProbabilityModel
from session_scalper.storage.memory import InMemoryStorage
from session_scalper.types import Breakout, Candle, NewsEvent, Signal, Timeframe


@dataclass(frozen=True)
class ReplaySummary:
    candles: int
    derived_candles: int
    levels: int
    breakouts: int
    signals: int
    by_category: dict[str, int]
    by_setup: dict[str, int]
    outcomes: dict[str, int]
    win_rate: float


@dataclass
class ReplayResult:
    engine: ScalperEngine
    storage: InMemoryStorage
    candles: list[Candle]

    def breakouts(self) -> list[Breakout]:
        return [b for sym in self.engine.engines for b in self.storage.get_breakouts(sym)]

    def signals(self) -> list[Signal]:
        return [s for sym in self.engine.engines for s in self.storage.get_signals(sym)]


def run_replay(
    candles: Sequence[Candle],
    *,
    cfg: ScalperConfig = DEFAULT_CONFIG,
    news: Sequence[NewsEvent] = (),
    model: Optional[ProbabilityModel] = None,
) -> ReplayResult:
    """Feed ``candles`` through the scheduler one closed minute at a time."""
    storage = InMemoryStorage()
    engine = ScalperEngine(cfg, storage, news=StaticNewsProvider(news), model=model)
    feed = ReplayFeed(list(candles))
    scheduler = Scheduler(engine, feed)
    for t in sorted({c.time for c in candles}):
        scheduler.tick(t + timedelta(minutes=1))
    return ReplayResult(engine=engine, storage=storage, candles=list(candles))


def summarize(result: ReplayResult, cfg: ScalperConfig = DEFAULT_CONFIG) -> ReplaySummary:
    breakouts = result.breakouts()
    signals = result.signals()
    outcomes: dict[str, int] = {}
    for sym in result.engine.engines:
        spec = cfg.spec(sym)
        res = label_signals(spec=spec, candles=result.candles, signals=[s for s in signals if s.symbol == sym])
        for ls in res.labeled:
            outcomes[ls.label] = outcomes.get(ls.label, 0) + 1
    decided = outcomes.get("win", 0) + outcomes.get("loss", 0)
    derived = sum(
        len(result.storage.get_candles(sym, tf.value))
        for sym in result.engine.engines
        for tf in (Timeframe.M5, Timeframe.M30)
    )
    by_category = pd.Series([b.performance_category for b in breakouts], dtype="object").value_counts()
    by_setup = pd.Series([s.setup_type for s in signals], dtype="object").value_counts()
    return ReplaySummary(
        candles=len(result.candles),
        derived_candles=derived,
        levels=len(result.storage.levels),
        breakouts=len(breakouts),
        signals=len(signals),
        by_category={str(k): int(v) for k, v in by_category.items()},
        by_setup={str(k): int(v) for k, v in by_setup.items()},
        outcomes=outcomes,
        win_rate=float(outcomes.get("win", 0) / decided) if decided else 0.0,
    )


def parse_csv_arg(value: str) -> tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("expected SYMBOL=path.csv")
    sym, path = value.split("=", 1)
    return sym.strip().upper(), path.strip()


def main() -> int:
    ap = argparse.ArgumentParser(description="Replay historical M1 candles through the level/breakout/signal engine")
    ap.add_argument("--csv", type=parse_csv_arg, action="append", required=True, help="SYMBOL=path.csv, repeatable")
    ap.add_argument("--schema", choices=["mt5", "generic"], default="generic")
    ap.add_argument("--config", default="")
    ap.add_argument("--news", default="")
    ap.add_argument("--model", default="")
    ap.add_argument("--out-breakouts", default="")
    ap.add_argument("--out-signals", default="")
    ap.add_argument("--signals-dir", default="")
    args = ap.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(message)s")

    cfg = load_config(args.config) if args.config else DEFAULT_CONFIG
    candles: list[Candle] = []
    for sym, path in args.csv:
        spec = cfg.spec(sym)
        if spec is None:
            raise SystemExit(f"unsupported symbol: {sym}")
        candles.extend(CsvFeed(spec, path, schema=args.schema).drain())
    news = load_news_calendar(args.news) if args.news else []
    model = ProbabilityScorer.load(args.model) if args.model else None

    result = run_replay(candles, cfg=cfg, news=news, model=model)
    summ = summarize(result, cfg)
    print(json.dumps(asdict(summ), separators=(",", ":"), ensure_ascii=False, default=str))

    if args.out_breakouts:
        out_path = Path(args.out_breakouts)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        rows = [{**record(b), "strength": b.strength, "category": b.performance_category} for b in result.breakouts()]
        pd.DataFrame(rows).to_csv(out_path, index=False)
    if args.out_signals:
        out_path = Path(args.out_signals)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        pd.DataFrame([record(s) for s in result.signals()]).to_csv(out_path, index=False)
    if args.signals_dir:
        for s in result.signals():
            write_signal_json(s, cfg.spec(s.symbol), out_dir=args.signals_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
