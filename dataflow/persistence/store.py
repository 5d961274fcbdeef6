"""
Candle Store

Postgres-backed kline storage addressed by (symbol, mode, interval, bucket start).

The aggregator never reads before writing. Every update is one atomic
statement:
- merge_trade   -> INSERT .. ON CONFLICT DO UPDATE with additive sums
- raise_high    -> conditional upsert, applies only if high is absent or lower
- lower_low     -> conditional upsert, applies only if low is absent or higher

Rollup jobs overwrite weekly/monthly candles with put_candles and read daily
candles back with query_page / iter_candles.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional, Protocol

import asyncpg

from dataflow.errors import ConditionCheckFailed, StoreError
from schemas.market_data import Candle, TradingMode, candle_pk, candle_sk, mode_value

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS klines (
    pk TEXT NOT NULL,
    sk TEXT NOT NULL,
    market_symbol TEXT,
    mode TEXT,
    kline_interval TEXT,
    open_time BIGINT,
    open DOUBLE PRECISION,
    high DOUBLE PRECISION,
    low DOUBLE PRECISION,
    close DOUBLE PRECISION,
    volume_base DOUBLE PRECISION NOT NULL DEFAULT 0,
    volume_quote DOUBLE PRECISION NOT NULL DEFAULT 0,
    trade_count BIGINT NOT NULL DEFAULT 0,
    updated_at BIGINT,
    PRIMARY KEY (pk, sk)
);

CREATE INDEX IF NOT EXISTS idx_klines_pk_interval_time
    ON klines (pk, kline_interval, open_time);
"""

MERGE_TRADE_SQL = """
INSERT INTO klines AS k (
    pk, sk, market_symbol, mode, kline_interval, open_time,
    open, high, low, close, volume_base, volume_quote, trade_count, updated_at
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $7, $7, $7, $8, $9, 1, $10)
ON CONFLICT (pk, sk) DO UPDATE SET
    market_symbol = COALESCE(k.market_symbol, EXCLUDED.market_symbol),
    mode = COALESCE(k.mode, EXCLUDED.mode),
    kline_interval = COALESCE(k.kline_interval, EXCLUDED.kline_interval),
    open_time = COALESCE(k.open_time, EXCLUDED.open_time),
    open = COALESCE(k.open, EXCLUDED.open),
    high = COALESCE(k.high, EXCLUDED.high),
    low = COALESCE(k.low, EXCLUDED.low),
    close = EXCLUDED.close,
    updated_at = EXCLUDED.updated_at,
    volume_base = k.volume_base + EXCLUDED.volume_base,
    volume_quote = k.volume_quote + EXCLUDED.volume_quote,
    trade_count = k.trade_count + 1
"""

# A CAS that lands before the bucket's first merge creates the row; the merge
# then keeps the extremum because it only fills high/low when absent.
RAISE_HIGH_SQL = """
INSERT INTO klines AS k (pk, sk, market_symbol, mode, kline_interval, open_time, high, updated_at)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
ON CONFLICT (pk, sk) DO UPDATE SET
    high = EXCLUDED.high,
    updated_at = EXCLUDED.updated_at
WHERE k.high IS NULL OR k.high < EXCLUDED.high
RETURNING 1
"""

LOWER_LOW_SQL = """
INSERT INTO klines AS k (pk, sk, market_symbol, mode, kline_interval, open_time, low, updated_at)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
ON CONFLICT (pk, sk) DO UPDATE SET
    low = EXCLUDED.low,
    updated_at = EXCLUDED.updated_at
WHERE k.low IS NULL OR k.low > EXCLUDED.low
RETURNING 1
"""

PUT_CANDLE_SQL = """
INSERT INTO klines (
    pk, sk, market_symbol, mode, kline_interval, open_time,
    open, high, low, close, volume_base, volume_quote, trade_count, updated_at
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
ON CONFLICT (pk, sk) DO UPDATE SET
    market_symbol = EXCLUDED.market_symbol,
    mode = EXCLUDED.mode,
    kline_interval = EXCLUDED.kline_interval,
    open_time = EXCLUDED.open_time,
    open = EXCLUDED.open,
    high = EXCLUDED.high,
    low = EXCLUDED.low,
    close = EXCLUDED.close,
    volume_base = EXCLUDED.volume_base,
    volume_quote = EXCLUDED.volume_quote,
    trade_count = EXCLUDED.trade_count,
    updated_at = EXCLUDED.updated_at
"""

_SELECT_COLUMNS = (
    "market_symbol, mode, kline_interval, open_time, open, high, low, close, "
    "volume_base, volume_quote, trade_count, updated_at"
)

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class CandleStore(Protocol):
    """
    Storage primitives the aggregator and rollup jobs rely on.

    Implementations must make each method individually atomic. raise_high
    and lower_low raise ConditionCheckFailed when the stored extremum is
    already at least as strong as ``price``.
    """

    async def merge_trade(
        self, symbol: str, mode: TradingMode, interval: str, start: int,
        price: float, qty: float, quote_qty: float, now_ms: int,
    ) -> None: ...

    async def raise_high(
        self, symbol: str, mode: TradingMode, interval: str, start: int,
        price: float, now_ms: int,
    ) -> None: ...

    async def lower_low(
        self, symbol: str, mode: TradingMode, interval: str, start: int,
        price: float, now_ms: int,
    ) -> None: ...

    async def put_candles(self, candles: list[Candle]) -> None: ...

    async def query_page(
        self, symbol: str, mode: TradingMode, interval: str,
        start: Optional[int] = None, end: Optional[int] = None,
        limit: Optional[int] = None, descending: bool = False,
    ) -> list[Candle]: ...


async def iter_candles(
    store: CandleStore,
    symbol: str,
    mode: TradingMode,
    interval: str,
    start: int,
    end: int,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> AsyncIterator[Candle]:
    """
    Page through candles with ``start <= time <= end`` in ascending order.

    Each page resumes one second after the last bucket seen, so pages never
    overlap.
    """
    cursor = start
    while cursor <= end:
        page = await store.query_page(symbol, mode, interval, start=cursor, end=end, limit=page_size)
        for candle in page:
            yield candle
        if len(page) < page_size:
            return
        cursor = page[-1].time + 1


def _row_to_candle(row) -> Candle:
    return Candle(
        symbol=row["market_symbol"],
        mode=TradingMode(row["mode"]),
        interval=row["kline_interval"],
        time=int(row["open_time"]),
        open=row["open"],
        high=row["high"],
        low=row["low"],
        close=row["close"],
        volume_base=row["volume_base"],
        volume_quote=row["volume_quote"],
        trade_count=int(row["trade_count"]),
        updated_at=int(row["updated_at"] or 0),
    )


class PostgresCandleStore:
    """
    CandleStore on Postgres via an asyncpg pool.

    Usage:
        store = PostgresCandleStore(db_url)
        await store.connect()
        await store.ensure_schema()
        ...
        await store.close()
    """

    def __init__(
        self,
        db_url: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        command_timeout: float = 60,
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.db_url = db_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Candle store not connected. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Create the connection pool"""
        if self._pool is not None:
            return
        logger.info("Connecting candle store to Postgres...")
        self._pool = await asyncpg.create_pool(
            self.db_url,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=self.command_timeout,
        )
        logger.info("Candle store connected")

    async def close(self) -> None:
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Candle store connection closed")

    async def ensure_schema(self) -> None:
        """Create the klines table and index if missing"""
        try:
            await self.pool.execute(SCHEMA_SQL)
        except _STORE_ERRORS as e:
            raise StoreError(f"Failed to create klines schema: {e}") from e

    @staticmethod
    def _key_args(symbol: str, mode: TradingMode, interval: str, start: int) -> tuple:
        return (
            candle_pk(symbol, mode),
            candle_sk(interval, start),
            symbol,
            mode_value(mode),
            interval,
            start,
        )

    async def merge_trade(
        self, symbol: str, mode: TradingMode, interval: str, start: int,
        price: float, qty: float, quote_qty: float, now_ms: int,
    ) -> None:
        try:
            await self.pool.execute(
                MERGE_TRADE_SQL,
                *self._key_args(symbol, mode, interval, start),
                price,
                qty,
                quote_qty,
                now_ms,
            )
        except _STORE_ERRORS as e:
            raise StoreError(f"merge failed for {candle_pk(symbol, mode)} {candle_sk(interval, start)}: {e}") from e

    async def raise_high(
        self, symbol: str, mode: TradingMode, interval: str, start: int,
        price: float, now_ms: int,
    ) -> None:
        await self._conditional_extremum(RAISE_HIGH_SQL, "high", symbol, mode, interval, start, price, now_ms)

    async def lower_low(
        self, symbol: str, mode: TradingMode, interval: str, start: int,
        price: float, now_ms: int,
    ) -> None:
        await self._conditional_extremum(LOWER_LOW_SQL, "low", symbol, mode, interval, start, price, now_ms)

    async def _conditional_extremum(
        self, sql: str, field: str, symbol: str, mode: TradingMode, interval: str,
        start: int, price: float, now_ms: int,
    ) -> None:
        try:
            applied = await self.pool.fetchval(
                sql, *self._key_args(symbol, mode, interval, start), price, now_ms
            )
        except _STORE_ERRORS as e:
            raise StoreError(f"{field} update failed for {candle_pk(symbol, mode)} {candle_sk(interval, start)}: {e}") from e
        if applied is None:
            raise ConditionCheckFailed(
                f"{field} for {candle_pk(symbol, mode)} {candle_sk(interval, start)} already beats {price}"
            )

    async def put_candles(self, candles: list[Candle]) -> None:
        """Overwrite candles unconditionally in a single batch"""
        if not candles:
            return
        try:
            async with self.pool.acquire() as conn:
                await conn.executemany(
                    PUT_CANDLE_SQL,
                    [
                        (
                            candle.pk,
                            candle.sk,
                            candle.symbol,
                            mode_value(candle.mode),
                            candle.interval,
                            candle.time,
                            candle.open,
                            candle.high,
                            candle.low,
                            candle.close,
                            candle.volume_base,
                            candle.volume_quote,
                            candle.trade_count,
                            candle.updated_at,
                        )
                        for candle in candles
                    ],
                )
        except _STORE_ERRORS as e:
            raise StoreError(f"Failed to write {len(candles)} candles: {e}") from e
        logger.debug(f"Wrote {len(candles)} candles")

    async def query_page(
        self, symbol: str, mode: TradingMode, interval: str,
        start: Optional[int] = None, end: Optional[int] = None,
        limit: Optional[int] = None, descending: bool = False,
    ) -> list[Candle]:
        """
        Candles of one series with ``start <= time <= end``.

        Returned in ascending time order unless ``descending`` is set.
        """
        conditions = ["pk = $1", "kline_interval = $2"]
        params: list = [candle_pk(symbol, mode), interval]

        if start is not None:
            params.append(start)
            conditions.append(f"open_time >= ${len(params)}")
        if end is not None:
            params.append(end)
            conditions.append(f"open_time <= ${len(params)}")

        query = (
            f"SELECT {_SELECT_COLUMNS} FROM klines WHERE {' AND '.join(conditions)} "
            f"ORDER BY open_time {'DESC' if descending else 'ASC'}"
        )
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        try:
            rows = await self.pool.fetch(query, *params)
        except _STORE_ERRORS as e:
            raise StoreError(f"Range query failed for {candle_pk(symbol, mode)} {interval}: {e}") from e
        return [_row_to_candle(row) for row in rows]
