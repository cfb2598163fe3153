from __future__ import annotations


class ScalperError(Exception):
    pass


class ValidationError(ScalperError, ValueError):
    """Input rejected at the ingestion boundary. State is never mutated."""


class DuplicateCandleError(ScalperError):
    """A candle for an already-seen (symbol, timeframe, timestamp)."""

    def __init__(self, symbol: str, timeframe: str, timestamp: object) -> None:
        super().__init__(f"duplicate candle {symbol} {timeframe} {timestamp}")
        self.symbol = symbol
        self.timeframe = timeframe
        self.timestamp = timestamp


class GapError(ScalperError):
    """An aggregation window with no input candles."""

    def __init__(self, symbol: str, timeframe: str, start: object, end: object, windows: int = 1) -> None:
        super().__init__(f"no {symbol} base candles for {timeframe} window(s) {start} -> {end} ({windows})")
        self.symbol = symbol
        self.timeframe = timeframe
        self.start = start
        self.end = end
        self.windows = windows


class InvariantViolation(ScalperError, AssertionError):
    """Programming error: a state the tracker must never reach."""


class UpstreamError(ScalperError, RuntimeError):
    """A collaborator (storage, news) failed; the operation can be retried."""

    retryable = True

    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
