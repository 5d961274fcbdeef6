"""
Kline Pipeline Errors

Every failure the aggregation and rollup paths distinguish between.
None of them is process-fatal: callers decide whether to skip, swallow,
or hand a single message back for redelivery.
"""


class KlineError(Exception):
    """Base exception for the kline pipeline"""


class InvalidTradeError(KlineError):
    """Malformed trade event. Dropped and logged, never retried."""


class ConditionCheckFailed(KlineError):
    """
    A conditional write lost to a value already in the store.

    Raised by the high/low compare-and-set operations when a concurrent
    writer already holds the stronger extremum. Expected, not an error.
    """


class StoreError(KlineError):
    """Candle store write or read failed (connection, timeout, server error)"""


class SymbolProcessingError(KlineError):
    """Rollup failed for one symbol. The next scheduled run recomputes it."""

    def __init__(self, symbol: str, mode: str, cause: BaseException):
        super().__init__(f"Rollup failed for {symbol} ({mode}): {cause}")
        self.symbol = symbol
        self.mode = mode
        self.cause = cause
