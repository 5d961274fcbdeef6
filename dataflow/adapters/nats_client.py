"""
NATS Client Adapter

Async NATS/JetStream client used to consume trade events.
Trades are read from a durable JetStream pull consumer so that every message
is delivered at least once and can be redelivered on its own with nak().
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import nats
from nats.aio.client import Client as NatsConnection
from nats.js import JetStreamContext
from nats.js.api import AckPolicy, ConsumerConfig, StreamConfig
from nats.js.errors import NotFoundError

logger = logging.getLogger(__name__)

# Publishers use trades.{symbol}.{mode}, with every character outside
# [A-Za-z0-9_-] in the symbol replaced by an underscore.
TRADE_SUBJECTS = "trades.>"


@dataclass
class NatsConfig:
    """NATS connection and trade stream configuration"""
    servers: list[str] = field(default_factory=lambda: ["nats://localhost:4222"])
    name: str = "kline-aggregator"
    reconnect_time_wait: float = 2.0
    max_reconnect_attempts: int = -1  # Infinite reconnects
    ping_interval: int = 20
    max_outstanding_pings: int = 3
    stream: str = "TRADES"
    durable: str = "kline-aggregator"
    ack_wait: float = 30.0
    max_deliver: int = -1

    @classmethod
    def from_env(cls, prefix: str = "NATS") -> "NatsConfig":
        """Create config from environment variables"""
        servers = os.getenv(f"{prefix}_SERVERS", "nats://localhost:4222")
        return cls(
            servers=servers.split(","),
            name=os.getenv(f"{prefix}_CLIENT_NAME", "kline-aggregator"),
            stream=os.getenv(f"{prefix}_TRADE_STREAM", "TRADES"),
            durable=os.getenv(f"{prefix}_DURABLE", "kline-aggregator"),
            ack_wait=float(os.getenv(f"{prefix}_ACK_WAIT", "30")),
            max_deliver=int(os.getenv(f"{prefix}_MAX_DELIVER", "-1")),
        )


class NatsClient:
    """
    Async NATS client wrapper for the kline pipeline.

    Topic Patterns:
    - trades.{symbol}.{mode}      - Executed trades from the matching engine
    """

    def __init__(self, config: Optional[NatsConfig] = None):
        self.config = config or NatsConfig()
        self._nc: Optional[NatsConnection] = None
        self._js: Optional[JetStreamContext] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Check if client is connected"""
        return self._connected and self._nc is not None and self._nc.is_connected

    async def connect(self) -> None:
        """Establish connection to NATS server"""
        if self._connected:
            return

        async def error_handler(e):
            logger.error(f"NATS error: {e}")

        async def closed_handler():
            logger.warning("NATS connection closed")
            self._connected = False

        async def reconnected_handler():
            logger.info("NATS reconnected")
            self._connected = True

        async def disconnected_handler():
            logger.warning("NATS disconnected")
            self._connected = False

        try:
            self._nc = await nats.connect(
                servers=self.config.servers,
                name=self.config.name,
                reconnect_time_wait=self.config.reconnect_time_wait,
                max_reconnect_attempts=self.config.max_reconnect_attempts,
                ping_interval=self.config.ping_interval,
                max_outstanding_pings=self.config.max_outstanding_pings,
                error_cb=error_handler,
                closed_cb=closed_handler,
                reconnected_cb=reconnected_handler,
                disconnected_cb=disconnected_handler,
            )
            self._js = self._nc.jetstream()
            self._connected = True
            logger.info(f"Connected to NATS: {self.config.servers}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def close(self) -> None:
        """Close NATS connection"""
        if self._nc:
            await self._nc.drain()
            self._connected = False
            logger.info("NATS connection closed")

    @property
    def jetstream(self) -> JetStreamContext:
        if not self.is_connected or self._js is None:
            raise RuntimeError("NATS client not connected")
        return self._js

    async def ensure_trade_stream(self) -> None:
        """Create the trade stream if it does not exist yet"""
        try:
            await self.jetstream.stream_info(self.config.stream)
        except NotFoundError:
            await self.jetstream.add_stream(
                StreamConfig(name=self.config.stream, subjects=[TRADE_SUBJECTS])
            )
            logger.info(f"Created JetStream stream {self.config.stream}")

    async def pull_trades(self) -> JetStreamContext.PullSubscription:
        """
        Bind a durable pull consumer on all trade subjects.

        Explicit acks: the caller acks processed messages and naks the ones
        that must be redelivered.
        """
        sub = await self.jetstream.pull_subscribe(
            TRADE_SUBJECTS,
            durable=self.config.durable,
            stream=self.config.stream,
            config=ConsumerConfig(
                ack_policy=AckPolicy.EXPLICIT,
                ack_wait=self.config.ack_wait,
                max_deliver=self.config.max_deliver,
            ),
        )
        logger.info(f"Pulling {TRADE_SUBJECTS} (durable: {self.config.durable})")
        return sub

