"""
Rollup Jobs

Scheduled recomputation of weekly and monthly candles from daily candles.

Every run rebuilds each candle from scratch and overwrites it, so a job that
failed half way, or timed out, is fixed by running it again. Weekly output
is never fed into monthly; both read the daily series directly.

The jobs assume the daily candles of their window are no longer changing
when they run. Nothing enforces that.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from dataflow.errors import StoreError, SymbolProcessingError
from dataflow.markets.enumerator import SymbolEnumerator
from dataflow.persistence.store import DEFAULT_PAGE_SIZE, CandleStore, iter_candles
from engine.rollup.compute import rollup_candles
from engine.rollup.windows import RollupWindow, previous_month_window, previous_week_window
from schemas.market_data import (
    DAILY_INTERVAL,
    MONTHLY_INTERVAL,
    WEEKLY_INTERVAL,
    Candle,
    TradingMode,
)

logger = logging.getLogger(__name__)

# Largest batch the store accepts in one write
MAX_BATCH_WRITE = 25


@dataclass
class RollupReport:
    """What one run did"""
    interval: str
    window: RollupWindow
    symbols: int = 0
    written: int = 0
    skipped: int = 0
    failed: list[str] = field(default_factory=list)
    failed_modes: list[TradingMode] = field(default_factory=list)


class RollupJob:
    """
    Base rollup: for every mode and symbol, read the daily candles of the
    window and write one candle at (symbol, mode, interval, window start).

    Subclasses choose the target interval and the window.
    """

    name = "rollup"
    interval = ""

    def __init__(
        self,
        store: CandleStore,
        enumerator: SymbolEnumerator,
        modes: Optional[Iterable[TradingMode]] = None,
        batch_write_size: int = MAX_BATCH_WRITE,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        if not 1 <= batch_write_size <= MAX_BATCH_WRITE:
            raise ValueError(f"batch_write_size must be between 1 and {MAX_BATCH_WRITE}")
        self.store = store
        self.enumerator = enumerator
        self.modes = list(modes) if modes is not None else [TradingMode.REAL, TradingMode.PAPER]
        self.batch_write_size = batch_write_size
        self.page_size = page_size

    def window_for(self, now: datetime) -> RollupWindow:
        raise NotImplementedError

    async def run(self, now: Optional[datetime] = None) -> RollupReport:
        """Recompute every candle of the window ending before ``now``"""
        window = self.window_for(now or datetime.now(timezone.utc))
        report = RollupReport(interval=self.interval, window=window)
        pending: list[Candle] = []

        logger.info(f"[{self.name}] Starting for window {window.label}")

        for mode in self.modes:
            try:
                symbols = await self.enumerator.list_tradable_symbols(mode)
            except Exception as e:
                logger.error(f"[{self.name}] Could not list symbols for {mode.value}: {e}", exc_info=True)
                report.failed_modes.append(mode)
                continue

            for symbol in symbols:
                report.symbols += 1
                try:
                    candle = await self.rollup_symbol(symbol, mode, window)
                except Exception as e:
                    error = SymbolProcessingError(symbol, mode.value, e)
                    logger.error(f"[{self.name}] {error}", exc_info=True)
                    report.failed.append(f"{symbol}#{mode.value}")
                    continue

                if candle is None:
                    report.skipped += 1
                    continue

                pending.append(candle)
                if len(pending) >= self.batch_write_size:
                    await self._flush(pending, report)
                    pending = []

        if pending:
            await self._flush(pending, report)

        logger.info(
            f"[{self.name}] Finished window {window.label}: {report.written} written, "
            f"{report.skipped} without data, {len(report.failed)} failed"
        )
        return report

    async def rollup_symbol(self, symbol: str, mode: TradingMode, window: RollupWindow) -> Optional[Candle]:
        """Daily candles of the window folded into one candle, or None if there are none"""
        days = [
            day
            async for day in iter_candles(
                self.store, symbol, mode, DAILY_INTERVAL, window.start, window.end - 1, self.page_size
            )
        ]
        if not days:
            return None
        return rollup_candles(days, symbol, mode, self.interval, window.start)

    async def _flush(self, candles: list[Candle], report: RollupReport) -> None:
        try:
            await self.store.put_candles(candles)
        except StoreError as e:
            logger.error(f"[{self.name}] Failed to write {len(candles)} candles: {e}")
            report.failed.extend(f"{c.symbol}#{c.mode.value}" for c in candles)
            return
        report.written += len(candles)
        logger.info(f"[{self.name}] Wrote {len(candles)} {self.interval} candles")


class WeeklyRollupJob(RollupJob):
    """Weekly candles for the last completed ISO week, over all instruments"""

    name = "WeeklyRollup"
    interval = WEEKLY_INTERVAL

    def window_for(self, now: datetime) -> RollupWindow:
        return previous_week_window(now)


class MonthlyRollupJob(RollupJob):
    """Monthly candles for the previous calendar month"""

    name = "MonthlyRollup"
    interval = MONTHLY_INTERVAL

    def window_for(self, now: datetime) -> RollupWindow:
        return previous_month_window(now)
