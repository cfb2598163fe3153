from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

import pandas as pd

from session_scalper.types import ImpactLevel, NewsEvent
from session_scalper.utils import ensure_utc


class NewsProvider(Protocol):
    def get_upcoming_high_impact_news(self, within_minutes: int) -> list[NewsEvent]: ...


class StaticNewsProvider:
    """Fixed economic calendar.

    Without a clock every high-impact event is returned and the caller filters
    by distance to the break; with one, only events in the next
    ``within_minutes`` are.
    """

    def __init__(self, events: Iterable[NewsEvent] = (), *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.events = sorted(events, key=lambda e: e.time)
        self.clock = clock

    def get_upcoming_high_impact_news(self, within_minutes: int) -> list[NewsEvent]:
        high = [e for e in self.events if e.impact is ImpactLevel.HIGH]
        if self.clock is None:
            return high
        now = ensure_utc(self.clock())
        horizon = now + timedelta(minutes=within_minutes)
        return [e for e in high if now <= e.time <= horizon]


def load_news_calendar(path: str | Path) -> list[NewsEvent]:
    """Read a calendar from JSON (list of objects) or CSV.

    Expected fields: id, currency, time, impact, title.
    """
    p = Path(path)
    if p.suffix.lower() == ".json":
        rows = json.loads(p.read_text(encoding="utf-8"))
        df = pd.DataFrame(rows)
    else:
        df = pd.read_csv(p)
    for c in ("currency", "time"):
        if c not in df.columns:
            raise ValueError(f"Missing '{c}' column in {p}")
    df["time"] = pd.to_datetime(df["time"], utc=True)
    for c in ("id", "impact", "title"):
        if c in df.columns:
            df[c] = df[c].astype(object).where(df[c].notna(), "")
    out: list[NewsEvent] = []
    for i, row in enumerate(df.to_dict(orient="records")):
        out.append(
            NewsEvent(
                id=str(row.get("id") or f"news-{i}"),
                currency=str(row["currency"]).upper(),
                time=row["time"].to_pydatetime(),
                impact=ImpactLevel(str(row.get("impact") or "HIGH").upper()),
                title=str(row.get("title") or ""),
            )
        )
    return out
