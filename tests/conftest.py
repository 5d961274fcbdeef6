"""Shared test fixtures for the kline pipeline."""

import asyncio
import json
from dataclasses import replace
from typing import Callable, Optional

import pytest

from dataflow.errors import ConditionCheckFailed, StoreError
from schemas.market_data import Candle, TradingMode, candle_pk, candle_sk


class FakeCandleStore:
    """In-memory CandleStore.

    Every method yields to the event loop once and then applies its change
    without further awaits, so each call is atomic the way a single SQL
    statement is, while concurrent callers still interleave.

    ``fail_when(op, symbol, interval, price)`` returning True makes that
    call raise StoreError.
    """

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], Candle] = {}
        self.put_batches: list[int] = []
        self.fail_when: Optional[Callable[[str, str, str, Optional[float]], bool]] = None
        self.fail_put = False
        self.query_calls = 0

    async def _enter(self, op: str, symbol: str, interval: str, price: Optional[float]) -> None:
        await asyncio.sleep(0)
        if self.fail_when is not None and self.fail_when(op, symbol, interval, price):
            raise StoreError(f"{op} failed for {symbol} {interval}")

    def _row(self, symbol: str, mode: TradingMode, interval: str, start: int) -> Candle:
        key = (candle_pk(symbol, mode), candle_sk(interval, start))
        if key not in self.rows:
            self.rows[key] = Candle(symbol=symbol, mode=mode, interval=interval, time=start)
        return self.rows[key]

    def get(self, symbol: str, mode: TradingMode, interval: str, start: int) -> Optional[Candle]:
        return self.rows.get((candle_pk(symbol, mode), candle_sk(interval, start)))

    async def merge_trade(self, symbol, mode, interval, start, price, qty, quote_qty, now_ms) -> None:
        await self._enter("merge", symbol, interval, price)
        row = self._row(symbol, mode, interval, start)
        if row.open is None:
            row.open = price
        if row.high is None:
            row.high = price
        if row.low is None:
            row.low = price
        row.close = price
        row.volume_base += qty
        row.volume_quote += quote_qty
        row.trade_count += 1
        row.updated_at = now_ms

    async def raise_high(self, symbol, mode, interval, start, price, now_ms) -> None:
        await self._enter("high", symbol, interval, price)
        row = self._row(symbol, mode, interval, start)
        if row.high is not None and row.high >= price:
            raise ConditionCheckFailed(f"high {row.high} >= {price}")
        row.high = price
        row.updated_at = now_ms

    async def lower_low(self, symbol, mode, interval, start, price, now_ms) -> None:
        await self._enter("low", symbol, interval, price)
        row = self._row(symbol, mode, interval, start)
        if row.low is not None and row.low <= price:
            raise ConditionCheckFailed(f"low {row.low} <= {price}")
        row.low = price
        row.updated_at = now_ms

    async def put_candles(self, candles: list[Candle]) -> None:
        await asyncio.sleep(0)
        if self.fail_put:
            raise StoreError("batch write failed")
        self.put_batches.append(len(candles))
        for candle in candles:
            self.rows[(candle.pk, candle.sk)] = replace(candle)

    async def query_page(
        self, symbol, mode, interval, start=None, end=None, limit=None, descending=False
    ) -> list[Candle]:
        await self._enter("query", symbol, interval, None)
        self.query_calls += 1
        pk = candle_pk(symbol, mode)
        matches = [
            replace(c)
            for (row_pk, _), c in self.rows.items()
            if row_pk == pk
            and c.interval == interval
            and (start is None or c.time >= start)
            and (end is None or c.time <= end)
        ]
        matches.sort(key=lambda c: c.time, reverse=descending)
        return matches[:limit] if limit is not None else matches


class FakeEnumerator:
    """SymbolEnumerator returning fixed symbols per mode."""

    def __init__(self, symbols: dict, fail_modes: tuple = ()) -> None:
        self.symbols = symbols
        self.fail_modes = fail_modes
        self.calls: list[TradingMode] = []

    async def list_tradable_symbols(self, mode: TradingMode) -> list[str]:
        self.calls.append(mode)
        if mode in self.fail_modes:
            raise StoreError(f"markets table unavailable for {mode.value}")
        return list(self.symbols.get(mode, []))


def trade_body(
    price: float,
    qty: float = 1.0,
    timestamp: int = 1_700_000_000_000,
    market: str = "BTC-USD",
    mode: str = "REAL",
) -> str:
    """JSON body of a trade event as published on the trades stream."""
    return json.dumps(
        {"market": market, "mode": mode, "price": price, "qty": qty, "timestamp": timestamp}
    )


def daily_candle(
    day: int,
    open: Optional[float],
    high: Optional[float],
    low: Optional[float],
    close: Optional[float],
    volume: float = 1.0,
    symbol: str = "BTC-USD",
    mode: TradingMode = TradingMode.REAL,
    start: int = 1_704_067_200,  # 2024-01-01 00:00 UTC, a Monday
    updated_at: int = 0,
) -> Candle:
    """Daily candle ``day`` days after ``start``."""
    return Candle(
        symbol=symbol,
        mode=mode,
        interval="1d",
        time=start + day * 86400,
        open=open,
        high=high,
        low=low,
        close=close,
        volume_base=volume,
        volume_quote=volume * (close or 0.0),
        trade_count=1,
        updated_at=updated_at or (start + day * 86400) * 1000,
    )


@pytest.fixture
def store() -> FakeCandleStore:
    """Empty in-memory candle store."""
    return FakeCandleStore()
