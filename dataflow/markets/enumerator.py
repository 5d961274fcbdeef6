"""
Symbol Enumerators

Read-only listings of tradable instruments per trading mode, used by the
rollup jobs to decide which series to recompute.

Two variants:
- SpotSymbolEnumerator: ACTIVE spot/underlying pairs only
- FullSymbolEnumerator: spot pairs plus their perpetuals and every ACTIVE
  option/future instrument listed under each underlying

Both page through the markets tables with keyset pagination. The tables
are owned by the market listing service:
- markets(symbol, mode, type, status, allows_perpetuals, allows_options,
  allows_futures)
- instruments(symbol, mode, underlying, derivative_type, status)
"""

import logging
from typing import AsyncIterator, Protocol

import asyncpg

from schemas.market_data import TradingMode, mode_value

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100

_UNDERLYINGS_SQL = """
SELECT symbol, allows_perpetuals, allows_options, allows_futures
FROM markets
WHERE status = 'ACTIVE' AND type = 'SPOT' AND mode = $1 AND symbol > $2
ORDER BY symbol
LIMIT $3
"""

_INSTRUMENTS_SQL = """
SELECT symbol
FROM instruments
WHERE underlying = $1 AND mode = $2 AND derivative_type = $3
  AND status = 'ACTIVE' AND symbol > $4
ORDER BY symbol
LIMIT $5
"""


class SymbolEnumerator(Protocol):
    """Lists every currently tradable symbol for a trading mode"""

    async def list_tradable_symbols(self, mode: TradingMode) -> list[str]: ...


class SpotSymbolEnumerator:
    """Active spot/underlying pairs only"""

    def __init__(self, pool: asyncpg.Pool, page_size: int = DEFAULT_PAGE_SIZE):
        self._pool = pool
        self.page_size = page_size

    async def _iter_underlyings(self, mode: TradingMode) -> AsyncIterator:
        last_symbol = ""
        while True:
            rows = await self._pool.fetch(_UNDERLYINGS_SQL, mode_value(mode), last_symbol, self.page_size)
            for row in rows:
                yield row
            if len(rows) < self.page_size:
                return
            last_symbol = rows[-1]["symbol"]

    async def list_tradable_symbols(self, mode: TradingMode) -> list[str]:
        symbols = [row["symbol"] async for row in self._iter_underlyings(mode) if row["symbol"]]
        logger.info(f"Found {len(symbols)} active spot markets for {mode_value(mode)}")
        return symbols


class FullSymbolEnumerator(SpotSymbolEnumerator):
    """
    Spot pairs, their perpetuals and all activated option/future instruments.

    A perpetual has no row of its own: it is implied by the underlying's
    ``allows_perpetuals`` flag and named ``<SYMBOL>-PERP``.
    """

    async def _iter_instruments(
        self, underlying: str, mode: TradingMode, derivative_type: str
    ) -> AsyncIterator[str]:
        last_symbol = ""
        while True:
            rows = await self._pool.fetch(
                _INSTRUMENTS_SQL, underlying, mode_value(mode), derivative_type, last_symbol, self.page_size
            )
            for row in rows:
                yield row["symbol"]
            if len(rows) < self.page_size:
                return
            last_symbol = rows[-1]["symbol"]

    async def list_tradable_symbols(self, mode: TradingMode) -> list[str]:
        # dict keeps insertion order and drops duplicates
        symbols: dict[str, None] = {}

        async for underlying in self._iter_underlyings(mode):
            symbol = underlying["symbol"]
            if not symbol:
                continue
            symbols[symbol] = None

            if underlying["allows_perpetuals"]:
                symbols[f"{symbol}-PERP"] = None

            derivative_types = []
            if underlying["allows_options"]:
                derivative_types.append("OPTION")
            if underlying["allows_futures"]:
                derivative_types.append("FUTURE")

            for derivative_type in derivative_types:
                async for instrument in self._iter_instruments(symbol, mode, derivative_type):
                    if instrument:
                        symbols[instrument] = None

        logger.info(f"Found {len(symbols)} unique active instruments for {mode_value(mode)}")
        return list(symbols)
