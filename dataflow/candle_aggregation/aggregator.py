"""
Kline Aggregator

Folds executed trades into intraday candles (1m .. 1d) in the candle store.

Each trade touches one bucket per interval with three independent atomic
store operations:
  1. merge      - first-writer-wins identity/open, last-writer-wins close,
                  additive volumes and trade count
  2. high CAS   - only if the stored high is absent or lower
  3. low CAS    - only if the stored low is absent or higher

The operations commute, so there is no lock and no read-modify-write.
Delivery is at-least-once: a redelivered trade counts its volume again and
may leave a stale close. High, low and open are unaffected by duplicates.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from nats.aio.msg import Msg
from nats.errors import TimeoutError as NatsTimeoutError

from dataflow.adapters.nats_client import NatsClient, NatsConfig
from dataflow.errors import ConditionCheckFailed, InvalidTradeError
from dataflow.persistence.store import CandleStore, PostgresCandleStore
from engine.config.loader import ConfigLoader
from schemas.market_data import INTRADAY_INTERVALS, TradeEvent, TradeRecord, bucket_start

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BatchResult:
    """Outcome of one batch. Only failed message ids go back for redelivery."""
    batch_item_failures: list[str] = field(default_factory=list)
    applied: int = 0
    skipped: int = 0


class KlineAggregator:
    """Applies batches of trades to the candle store"""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"

    def __init__(
        self,
        store: CandleStore,
        intervals: Optional[Iterable[str]] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store = store
        self.intervals = list(intervals) if intervals is not None else list(INTRADAY_INTERVALS)
        self._clock = clock

        unknown = [i for i in self.intervals if i not in INTRADAY_INTERVALS]
        if unknown:
            raise ValueError(f"Unsupported intervals: {unknown}")

    async def process_batch(self, records: list[TradeRecord]) -> BatchResult:
        """
        Apply every trade in the batch concurrently.

        A malformed trade is skipped. A store failure fails only its own
        message; the rest of the batch completes regardless.
        """
        outcomes = await asyncio.gather(*(self._process_record(record) for record in records))

        result = BatchResult()
        for record, outcome in zip(records, outcomes):
            if outcome == self.FAILED:
                result.batch_item_failures.append(record.message_id)
            elif outcome == self.SKIPPED:
                result.skipped += 1
            else:
                result.applied += 1

        if result.batch_item_failures:
            logger.warning(
                f"Batch completed with {len(result.batch_item_failures)} failures: "
                f"{result.batch_item_failures}"
            )
        else:
            logger.debug(f"Batch completed: {result.applied} applied, {result.skipped} skipped")
        return result

    async def _process_record(self, record: TradeRecord) -> str:
        try:
            trade = TradeEvent.from_json(record.body)
        except InvalidTradeError as e:
            logger.warning(f"Skipping invalid trade in message {record.message_id}: {e}")
            return self.SKIPPED

        try:
            await self.apply_trade(trade)
        except Exception as e:
            logger.error(
                f"Failed to apply trade {trade.trade_id or '-'} from message {record.message_id}: {e}",
                exc_info=True,
            )
            return self.FAILED
        return self.APPLIED

    async def apply_trade(self, trade: TradeEvent) -> None:
        """
        Fold one trade into every configured interval.

        All store operations run concurrently and are awaited together.
        Raises the first unexpected store error once all of them finished.
        """
        now = self._clock()
        operations = []

        for interval in self.intervals:
            start = bucket_start(trade.timestamp, INTRADAY_INTERVALS[interval])
            operations.append(
                self.store.merge_trade(
                    trade.market, trade.mode, interval, start,
                    trade.price, trade.qty, trade.quote_qty, now,
                )
            )
            operations.append(
                self._conditional(
                    self.store.raise_high(trade.market, trade.mode, interval, start, trade.price, now)
                )
            )
            operations.append(
                self._conditional(
                    self.store.lower_low(trade.market, trade.mode, interval, start, trade.price, now)
                )
            )

        results = await asyncio.gather(*operations, return_exceptions=True)
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome

    @staticmethod
    async def _conditional(operation) -> None:
        try:
            await operation
        except ConditionCheckFailed as e:
            # another writer already holds a stronger extremum
            logger.debug(str(e))


class KlineAggregationService:
    """
    Pulls trade batches from JetStream and feeds them to the aggregator.

    Messages in ``batch_item_failures`` are nak'd for redelivery, everything
    else (including malformed trades) is ack'd.
    """

    def __init__(
        self,
        nats_client: NatsClient,
        aggregator: KlineAggregator,
        batch_size: int = 10,
        fetch_timeout: float = 5.0,
    ):
        self.nats = nats_client
        self.aggregator = aggregator
        self.batch_size = batch_size
        self.fetch_timeout = fetch_timeout

        self._subscription = None
        self._consume_task: Optional[asyncio.Task] = None

        # Metrics
        self.trades_applied = 0
        self.trades_skipped = 0
        self.trades_failed = 0
        self.fetch_errors = 0

    @staticmethod
    def _message_id(msg: Msg) -> str:
        return str(msg.metadata.sequence.stream)

    async def handle_messages(self, msgs: list[Msg]) -> BatchResult:
        """Process one fetched batch and settle every message"""
        records = [
            TradeRecord(message_id=self._message_id(msg), body=msg.data.decode("utf-8", errors="replace"))
            for msg in msgs
        ]
        result = await self.aggregator.process_batch(records)
        failed = set(result.batch_item_failures)

        for msg, record in zip(msgs, records):
            try:
                if record.message_id in failed:
                    await msg.nak()
                else:
                    await msg.ack()
            except Exception as e:
                # unsettled messages come back after ack_wait
                logger.error(f"Failed to settle message {record.message_id}: {e}")

        self.trades_applied += result.applied
        self.trades_skipped += result.skipped
        self.trades_failed += len(result.batch_item_failures)
        return result

    async def _consume(self) -> None:
        """Fetch and process batches until cancelled"""
        while True:
            try:
                msgs = await self._subscription.fetch(self.batch_size, timeout=self.fetch_timeout)
            except NatsTimeoutError:
                continue
            except Exception as e:
                # connection drops and JetStream API errors; the client reconnects underneath
                self.fetch_errors += 1
                logger.error(f"Failed to fetch trades: {e}", exc_info=True)
                await asyncio.sleep(self.fetch_timeout)
                continue
            await self.handle_messages(msgs)

    async def start(self) -> None:
        """Start consuming trades"""
        logger.info(f"Starting kline aggregator for intervals: {self.aggregator.intervals}")
        await self.nats.ensure_trade_stream()
        self._subscription = await self.nats.pull_trades()
        self._consume_task = asyncio.create_task(self._consume())
        logger.info("Kline aggregator started")

    async def stop(self) -> None:
        """Stop consuming. In-flight unsettled messages are redelivered."""
        if self._consume_task:
            self._consume_task.cancel()
            try:
                await self._consume_task
            except asyncio.CancelledError:
                pass

        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None

        logger.info(
            f"Kline aggregator stopped. Applied {self.trades_applied}, "
            f"skipped {self.trades_skipped}, failed {self.trades_failed} trades"
        )


async def main():
    """Main entry point"""
    config_path = os.getenv("CONFIG_PATH")
    config = ConfigLoader(Path(config_path) if config_path else None).load()

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    store = PostgresCandleStore(
        config.store.database_url,
        min_pool_size=config.store.min_pool_size,
        max_pool_size=config.store.max_pool_size,
        command_timeout=config.store.command_timeout,
    )
    nats_client = NatsClient(NatsConfig.from_env())
    aggregator = KlineAggregator(store, config.aggregator.intervals)
    service = KlineAggregationService(
        nats_client,
        aggregator,
        batch_size=config.aggregator.batch_size,
        fetch_timeout=config.aggregator.fetch_timeout,
    )

    try:
        await store.connect()
        await store.ensure_schema()
        await nats_client.connect()
        await service.start()
        logger.info("Kline aggregator running. Press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(60)
            logger.info(
                f"Stats: {service.trades_applied} applied, "
                f"{service.trades_skipped} skipped, {service.trades_failed} failed, "
                f"{service.fetch_errors} fetch errors"
            )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        await service.stop()
        await nats_client.close()
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
