from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from session_scalper.config import SymbolSpec
from session_scalper.signals.generator import signal_context
from session_scalper.types import Signal


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def record(obj: Any) -> dict:
    """Dataclass record as JSON-ready primitives."""
    return _plain(asdict(obj))


def write_signal_json(signal: Signal, spec: SymbolSpec, *, out_dir: str | Path) -> Path:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)
    payload = record(signal)
    payload["context"] = signal_context(signal, spec)
    path = p / f"signal_{signal.id}.json"
    tmp = p / f".signal_{signal.id}.json.tmp"
    tmp.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)
    return path


def write_signal_csv(signal: Signal, *, out_dir: str | Path) -> Path:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)
    ts = signal.created_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    line = ",".join(
        [
            signal.id,
            ts,
            signal.symbol,
            signal.setup_type,
            signal.direction.value,
            f"{signal.entry:.5f}",
            f"{signal.stop:.5f}",
            f"{signal.target1:.5f}",
            f"{signal.target2:.5f}" if signal.target2 is not None else "",
            f"{signal.risk_reward:.2f}",
            f"{signal.confidence:.4f}",
            f"{signal.probability:.4f}",
            signal.status.value,
        ]
    )
    path = p / f"signal_{signal.id}.csv"
    tmp = p / f".signal_{signal.id}.csv.tmp"
    tmp.write_text(line, encoding="utf-8")
    tmp.replace(path)
    return path
