from __future__ import annotations

import argparse
import json
import logging
import os
import time as time_mod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from session_scalper.config import DEFAULT_CONFIG, ScalperConfig, load_config
from session_scalper.data.csv_loader import CsvFeed
from session_scalper.data.feeds import CandleFeed, ReplayFeed, SimulatedFeed
from session_scalper.data.mt5_loader import Mt5Feed
from session_scalper.execution.signal_writer import write_signal_json
from session_scalper.ml.model import ProbabilityScorer
from session_scalper.news import StaticNewsProvider, load_news_calendar
from session_scalper.pipelines.replay import parse_csv_arg
from session_scalper.runtime.engine import ScalperEngine
from session_scalper.runtime.scheduler import Scheduler, utc_now
from session_scalper.session.classifier import classify, is_market_open
from session_scalper.storage.memory import InMemoryStorage
from session_scalper.types import Candle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceStatus:
    time_utc: str
    session: str
    market_open: bool
    candles: int
    active_levels: int
    active_signals: int
    signals_today: int
    last_signal_id: str | None
    last_error: str | None


def _write_status(path: Path, status: ServiceStatus) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(status), separators=(",", ":"), ensure_ascii=False))
    tmp.replace(path)


def _day_key_utc(now: datetime) -> str:
    dt = now
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).date().isoformat()


class SignalSink:
    """Scheduler tick callback: writes each new signal once and keeps daily counts."""

    def __init__(self, engine: ScalperEngine, out_dir: str | Path) -> None:
        self.engine = engine
        self.out_dir = Path(out_dir)
        self.candles = 0
        self.day = ""
        self.signals_today = 0
        self.last_signal_id: str | None = None
        self._written: set[str] = set()

    def __call__(self, now: datetime, ingested: list[Candle]) -> None:
        day = _day_key_utc(now)
        if day != self.day:
            self.day = day
            self.signals_today = 0
        self.candles += len(ingested)
        for sym, eng in self.engine.engines.items():
            for sig in eng.active_signals():
                if sig.id in self._written:
                    continue
                path = write_signal_json(sig, eng.spec, out_dir=self.out_dir)
                self._written.add(sig.id)
                self.signals_today += 1
                self.last_signal_id = sig.id
                logger.info(
                    "signal_written symbol=%s setup=%s dir=%s entry=%.5f conf=%.2f path=%s",
                    sym,
                    sig.setup_type,
                    sig.direction.value,
                    sig.entry,
                    sig.confidence,
                    path,
                )

    def status(self, now: datetime, last_error: str | None = None) -> ServiceStatus:
        return ServiceStatus(
            time_utc=now.isoformat(),
            session=classify(now).name.value,
            market_open=is_market_open(now),
            candles=self.candles,
            active_levels=sum(len(e.active_levels()) for e in self.engine.engines.values()),
            active_signals=sum(len(e.active_signals()) for e in self.engine.engines.values()),
            signals_today=self.signals_today,
            last_signal_id=self.last_signal_id,
            last_error=last_error,
        )


def build_feed(source: str, cfg: ScalperConfig, *, csv_paths: list[tuple[str, str]], seed: int | None) -> CandleFeed:
    if source == "simulator":
        return SimulatedFeed(cfg, seed=seed)
    if source == "mt5":
        return Mt5Feed(cfg)
    if not csv_paths:
        raise ValueError("--csv is required when --source=csv")
    candles: list[Candle] = []
    for sym, path in csv_paths:
        spec = cfg.spec(sym)
        if spec is None:
            raise ValueError(f"unsupported symbol: {sym}")
        candles.extend(CsvFeed(spec, path).drain())
    return ReplayFeed(candles)


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--source", choices=["simulator", "csv", "mt5"], default="simulator")
    ap.add_argument("--csv", type=parse_csv_arg, action="append", default=[], help="SYMBOL=path.csv, repeatable")
    ap.add_argument("--config", default="")
    ap.add_argument("--news", default="")
    ap.add_argument("--model", default="")
    ap.add_argument("--out-dir", required=True)
    ap.add_argument("--interval-seconds", type=int, default=0)
    ap.add_argument("--status-file", default="service_status.json")
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--threaded", action="store_true", help="run each timeframe tier on its own thread")
    ap.add_argument("--log-file", default="")
    args = ap.parse_args()

    log_level = os.environ.get("SESSION_SCALPER_LOG_LEVEL", "INFO").upper()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), handlers=handlers, format="%(asctime)s %(levelname)s %(message)s")

    cfg = load_config(args.config) if args.config else DEFAULT_CONFIG
    interval = int(args.interval_seconds) or int(cfg.base_interval_seconds)
    news = StaticNewsProvider(load_news_calendar(args.news) if args.news else [], clock=utc_now)
    model = ProbabilityScorer.load(args.model) if args.model else None
    engine = ScalperEngine(cfg, InMemoryStorage(), news=news, model=model)
    feed = build_feed(args.source, cfg, csv_paths=args.csv, seed=args.seed)
    sink = SignalSink(engine, args.out_dir)
    scheduler = Scheduler(engine, feed, interval_seconds=interval, on_tick=sink)

    status_path = Path(args.status_file)
    if args.threaded:
        scheduler.start()
    try:
        while True:
            err: str | None = None
            if not args.threaded:
                try:
                    scheduler.tick()
                except Exception as e:  # noqa: BLE001
                    logging.exception("service_run_error")
                    err = str(e)
            _write_status(status_path, sink.status(utc_now(), err))
            time_mod.sleep(max(1, interval))
    except KeyboardInterrupt:
        logger.info("service_interrupted")
    finally:
        scheduler.stop(timeout=float(interval))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
