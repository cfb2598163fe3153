from __future__ import annotations

import time
from pathlib import Path
from typing import Literal

import pandas as pd

from session_scalper.config import SymbolSpec
from session_scalper.data.candles import make_candle
from session_scalper.data.feeds import ReplayFeed
from session_scalper.types import Candle, DataSource, Timeframe


def load_ohlcv_csv(
    path: str | Path,
    *,
    time_col: str = "time",
    schema: Literal["mt5", "generic"] = "generic",
) -> pd.DataFrame:
    p = Path(path)
    # Exports from a running terminal may still be locked
    retries = 3
    while retries > 0:
        try:
            df = pd.read_csv(p)
            break
        except (PermissionError, pd.errors.EmptyDataError):
            retries -= 1
            if retries == 0:
                raise
            time.sleep(0.5)
    if time_col not in df.columns:
        raise ValueError(f"Missing '{time_col}' column in {p}")
    # naive timestamps are taken as UTC
    df[time_col] = pd.to_datetime(df[time_col], errors="raise", utc=True)
    if schema == "mt5":
        df = df.rename(columns={"tick_volume": "volume"})
    for c in ("open", "high", "low", "close"):
        if c not in df.columns:
            raise ValueError(f"Missing '{c}' column in {p}")
    if "volume" not in df.columns:
        df["volume"] = 0
    df = df[[time_col, "open", "high", "low", "close", "volume"]].copy()
    df = df.sort_values(time_col).reset_index(drop=True)
    df = df.rename(columns={time_col: "time"})
    return df


def candles_from_frame(
    spec: SymbolSpec,
    df: pd.DataFrame,
    *,
    timeframe: Timeframe = Timeframe.M1,
    source: DataSource = DataSource.HISTORICAL,
) -> list[Candle]:
    out: list[Candle] = []
    for row in df.itertuples(index=False):
        out.append(
            make_candle(
                spec,
                timeframe=timeframe,
                time=pd.Timestamp(row.time).to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=int(row.volume),
                source=source,
            )
        )
    return out


class CsvFeed(ReplayFeed):
    """Historical M1 candles for one symbol read from a CSV export."""

    def __init__(self, spec: SymbolSpec, path: str | Path, *, schema: Literal["mt5", "generic"] = "generic") -> None:
        self.spec = spec
        self.path = Path(path)
        df = load_ohlcv_csv(self.path, schema=schema)
        super().__init__(candles_from_frame(spec, df))
