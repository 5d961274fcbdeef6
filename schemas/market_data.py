"""
Market Data Types

Core types flowing through the kline pipeline.
Trades arrive over NATS; candles are persisted to Postgres and read back
by the rollup jobs and the query API.
"""

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from dataflow.errors import InvalidTradeError


class TradingMode(str, Enum):
    """Trading venue mode. Candles for each mode are kept apart."""
    REAL = "REAL"
    PAPER = "PAPER"


# Intraday intervals written by the aggregator (seconds)
INTRADAY_INTERVALS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}

DAILY_INTERVAL = "1d"
WEEKLY_INTERVAL = "1w"
MONTHLY_INTERVAL = "1M"

SUPPORTED_INTERVALS = (*INTRADAY_INTERVALS, WEEKLY_INTERVAL, MONTHLY_INTERVAL)

WEEK_SECONDS = 7 * 86400


def bucket_start(timestamp_ms: int, interval_seconds: int) -> int:
    """Floor-align a trade timestamp (ms) to its bucket start (s)"""
    seconds = timestamp_ms // 1000
    return seconds - (seconds % interval_seconds)


def bucket_end(interval: str, start: int) -> int:
    """Exclusive end (s) of the bucket starting at ``start``"""
    if interval in INTRADAY_INTERVALS:
        return start + INTRADAY_INTERVALS[interval]
    if interval == WEEKLY_INTERVAL:
        return start + WEEK_SECONDS
    if interval == MONTHLY_INTERVAL:
        first = datetime.fromtimestamp(start, tz=timezone.utc)
        if first.month == 12:
            nxt = first.replace(year=first.year + 1, month=1)
        else:
            nxt = first.replace(month=first.month + 1)
        return int(nxt.timestamp())
    raise ValueError(f"Unsupported interval: {interval}")


def mode_value(mode: Any) -> str:
    """Plain upper-case string for a TradingMode or raw mode string"""
    if isinstance(mode, TradingMode):
        return mode.value
    return str(mode).upper()


def candle_pk(symbol: str, mode: Any) -> str:
    """Partition key shared by every interval of one instrument/mode"""
    return f"MARKET#{symbol.upper()}#{mode_value(mode)}"


def candle_sk(interval: str, start: int) -> str:
    """Sort key of one bucket"""
    return f"INTERVAL#{interval}#TS#{start}"


def _to_number(value: Any) -> Optional[float]:
    # bools are ints in Python; a trade never carries one legitimately
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


@dataclass
class TradeRecord:
    """One delivered message: broker identifier plus raw JSON body"""
    message_id: str
    body: str


@dataclass
class TradeEvent:
    """Executed trade, as published by the matching engine"""
    market: str
    mode: TradingMode
    price: float
    qty: float
    timestamp: int  # epoch millis
    trade_id: Optional[str] = None

    @property
    def quote_qty(self) -> float:
        """Trade size in quote units"""
        return self.price * self.qty

    @classmethod
    def from_dict(cls, data: Any) -> "TradeEvent":
        """
        Validate and build a TradeEvent.

        ``market`` and ``mode`` fall back to the trade's ``pk``
        (``MARKET#<SYMBOL>#<MODE>``) when the producer left them out.

        Raises:
            InvalidTradeError: missing fields, non-numeric values,
                zero quantity, non-positive price or unknown mode
        """
        if not isinstance(data, dict):
            raise InvalidTradeError(f"Trade payload is not an object: {data!r}")

        market = data.get("market")
        mode = data.get("mode")
        pk = data.get("pk")
        if (not market or not mode) and isinstance(pk, str):
            parts = pk.split("#")
            if not mode and len(parts) == 3:
                mode = parts[2]
            if not market and len(parts) >= 2:
                market = parts[1]

        if not market or not mode:
            raise InvalidTradeError(f"Trade missing market or mode: {data!r}")
        if data.get("price") is None or data.get("qty") is None or data.get("timestamp") is None:
            raise InvalidTradeError(f"Trade missing price, qty or timestamp: {data!r}")

        price = _to_number(data["price"])
        qty = _to_number(data["qty"])
        timestamp = _to_number(data["timestamp"])
        if price is None or qty is None or timestamp is None:
            raise InvalidTradeError(f"Non-numeric price, qty or timestamp: {data!r}")
        if qty == 0:
            raise InvalidTradeError(f"Zero quantity trade: {data!r}")
        if price <= 0:
            raise InvalidTradeError(f"Non-positive price: {data!r}")

        try:
            trading_mode = TradingMode(mode_value(mode))
        except ValueError:
            raise InvalidTradeError(f"Unknown trading mode {mode!r}") from None

        trade_id = data.get("tradeId")
        return cls(
            market=str(market),
            mode=trading_mode,
            price=price,
            qty=qty,
            timestamp=math.floor(timestamp),
            trade_id=str(trade_id) if trade_id is not None else None,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "TradeEvent":
        """Deserialize from JSON string"""
        try:
            data = json.loads(json_str)
        except (TypeError, ValueError) as e:
            raise InvalidTradeError(f"Trade body is not valid JSON: {e}") from e
        return cls.from_dict(data)


@dataclass
class Candle:
    """
    OHLCV candle for one (symbol, mode, interval, bucket start).

    Prices stay ``None`` until a write sets them: a bucket can briefly hold
    only a compare-and-set extremum before its primary merge lands.
    """
    symbol: str
    mode: TradingMode
    interval: str
    time: int  # bucket start, epoch seconds
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume_base: float = 0.0
    volume_quote: float = 0.0
    trade_count: int = 0
    updated_at: int = 0  # epoch millis

    @property
    def pk(self) -> str:
        return candle_pk(self.symbol, self.mode)

    @property
    def sk(self) -> str:
        return candle_sk(self.interval, self.time)

    @property
    def is_complete(self) -> bool:
        """True once every OHLC field is present"""
        return None not in (self.open, self.high, self.low, self.close)

    def end_time(self) -> int:
        return bucket_end(self.interval, self.time)

    def is_closed(self, now: Optional[float] = None) -> bool:
        """
        Whether the bucket's window has passed.

        There is no close marker in the store; readers infer it from the
        wall clock.
        """
        if now is None:
            now = datetime.now(timezone.utc).timestamp()
        return now >= self.end_time()

    def to_dict(self) -> dict:
        """Convert to the persisted record shape"""
        return {
            "pk": self.pk,
            "sk": self.sk,
            "marketSymbol": self.symbol,
            "mode": self.mode.value,
            "interval": self.interval,
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volumeBase": self.volume_base,
            "volumeQuote": self.volume_quote,
            "tradeCount": self.trade_count,
            "updatedAt": self.updated_at,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Candle":
        """Create Candle from a persisted record"""
        return cls(
            symbol=data["marketSymbol"],
            mode=TradingMode(data["mode"]),
            interval=data["interval"],
            time=int(data["time"]),
            open=data.get("open"),
            high=data.get("high"),
            low=data.get("low"),
            close=data.get("close"),
            volume_base=data.get("volumeBase") or 0.0,
            volume_quote=data.get("volumeQuote") or 0.0,
            trade_count=data.get("tradeCount") or 0,
            updated_at=data.get("updatedAt") or 0,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Candle":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))
