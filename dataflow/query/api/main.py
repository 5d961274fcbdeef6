"""
Query API

FastAPI service for reading klines back out of the candle store.

HTTP Endpoints:
- GET  /        - Health check
- GET  /health  - Detailed health status
- GET  /klines  - Candles of one market/mode/interval, ascending by time

/klines query parameters:
    market     instrument symbol (required)
    mode       REAL or PAPER (required)
    interval   one of SUPPORTED_INTERVALS (default 1h)
    startTime  UNIX ms, inclusive
    endTime    UNIX ms, inclusive
    limit      1..2000 (default 500)

With a startTime the first ``limit`` candles from there are returned.
Without one, the latest ``limit`` candles up to endTime (or now) are.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from dataflow.errors import StoreError
from dataflow.persistence.store import CandleStore, PostgresCandleStore
from engine.config.loader import ConfigLoader
from schemas.market_data import SUPPORTED_INTERVALS, TradingMode

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = "1h"
DEFAULT_LIMIT = 500
MAX_LIMIT = 2000


class KlineResponse(BaseModel):
    """Single chart candle; ``time`` is the bucket start in epoch seconds"""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None


# Global candle store
store: Optional[CandleStore] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for the store connection"""
    global store

    logger.info("Starting Query API...")

    config_path = os.getenv("CONFIG_PATH")
    config = ConfigLoader(Path(config_path) if config_path else None).load()
    pg_store = PostgresCandleStore(
        config.store.database_url,
        min_pool_size=config.store.min_pool_size,
        max_pool_size=config.store.max_pool_size,
        command_timeout=config.store.command_timeout,
    )

    try:
        await pg_store.connect()
        store = pg_store
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        store = None

    yield

    if store is pg_store:
        await pg_store.close()
        store = None
    logger.info("Query API shutdown complete")


app = FastAPI(
    title="Kline Pipeline - Query API",
    description="Query aggregated kline data",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "status": "running",
        "service": "kline-query-api",
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/health")
async def health():
    """Detailed health status"""
    return {
        "status": "healthy",
        "service": "kline-query-api",
        "database_connected": store is not None,
        "timestamp": datetime.now().isoformat(),
    }


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=400, detail=detail)


@app.get("/klines")
async def get_klines(
    market: Optional[str] = Query(default=None, description="Instrument symbol"),
    mode: Optional[str] = Query(default=None, description="REAL or PAPER"),
    interval: str = Query(default=DEFAULT_INTERVAL),
    startTime: Optional[int] = Query(default=None, description="UNIX ms, inclusive"),
    endTime: Optional[int] = Query(default=None, description="UNIX ms, inclusive"),
    limit: int = Query(default=DEFAULT_LIMIT),
) -> list[KlineResponse]:
    """
    Fetch candles for one series.

    Raises:
        400: Missing market, bad mode/interval/limit, or startTime after endTime
        500: Store query failed
        503: Database unavailable
    """
    if not market:
        raise _bad_request("Query parameter 'market' (instrument symbol) is required")
    if mode not in (TradingMode.REAL.value, TradingMode.PAPER.value):
        raise _bad_request("Query parameter 'mode' (REAL or PAPER) is required")
    if interval not in SUPPORTED_INTERVALS:
        raise _bad_request(f"Invalid interval '{interval}'. Must be one of: {list(SUPPORTED_INTERVALS)}")
    if limit <= 0 or limit > MAX_LIMIT:
        raise _bad_request(f"Invalid 'limit'. Must be between 1 and {MAX_LIMIT}")

    start = startTime // 1000 if startTime is not None else None
    end = endTime // 1000 if endTime is not None else None
    if start is not None and end is not None and start > end:
        raise _bad_request("startTime cannot be after endTime")

    if store is None:
        raise HTTPException(status_code=503, detail="Database connection unavailable")

    symbol = market.upper()
    # Without a start, take the newest candles and flip them back to ascending
    descending = start is None

    try:
        candles = await store.query_page(
            symbol, TradingMode(mode), interval,
            start=start, end=end, limit=limit, descending=descending,
        )
    except StoreError as e:
        logger.error(f"Kline query failed for {symbol} {mode} {interval}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error fetching kline data")

    if descending:
        candles = list(reversed(candles))

    klines = []
    for candle in candles:
        if not candle.is_complete:
            logger.warning(f"Skipping incomplete kline {candle.pk} {candle.sk}")
            continue
        klines.append(
            KlineResponse(
                time=candle.time,
                open=candle.open,
                high=candle.high,
                low=candle.low,
                close=candle.close,
                volume=candle.volume_base,
            )
        )

    logger.info(f"Fetched {len(klines)} klines for {symbol} {mode} {interval} (limit={limit})")
    return klines


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    port = int(os.getenv("PORT", "8001"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Query API on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
