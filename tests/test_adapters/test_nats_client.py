"""Tests for the NATS adapter configuration and stream setup."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from nats.js.api import AckPolicy
from nats.js.errors import NotFoundError

from dataflow.adapters.nats_client import TRADE_SUBJECTS, NatsClient, NatsConfig


class TestNatsConfig:
    """Tests for environment configuration."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("NATS_SERVERS", "NATS_TRADE_STREAM", "NATS_DURABLE", "NATS_ACK_WAIT"):
            monkeypatch.delenv(name, raising=False)

        config = NatsConfig.from_env()

        assert config.servers == ["nats://localhost:4222"]
        assert config.stream == "TRADES"
        assert config.durable == "kline-aggregator"
        assert config.ack_wait == 30.0

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NATS_SERVERS", "nats://a:4222,nats://b:4222")
        monkeypatch.setenv("NATS_DURABLE", "klines-2")
        monkeypatch.setenv("NATS_MAX_DELIVER", "20")

        config = NatsConfig.from_env()

        assert config.servers == ["nats://a:4222", "nats://b:4222"]
        assert config.durable == "klines-2"
        assert config.max_deliver == 20


def _connected_client() -> tuple[NatsClient, MagicMock]:
    client = NatsClient(NatsConfig())
    js = MagicMock()
    js.stream_info = AsyncMock()
    js.add_stream = AsyncMock()
    js.pull_subscribe = AsyncMock(return_value="subscription")
    client._nc = MagicMock(is_connected=True)
    client._js = js
    client._connected = True
    return client, js


class TestNatsClient:
    """Tests for JetStream stream and consumer setup."""

    def test_jetstream_requires_connection(self) -> None:
        with pytest.raises(RuntimeError):
            NatsClient().jetstream

    @pytest.mark.asyncio
    async def test_existing_stream_left_alone(self) -> None:
        client, js = _connected_client()

        await client.ensure_trade_stream()

        js.stream_info.assert_awaited_once_with("TRADES")
        js.add_stream.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_stream_created(self) -> None:
        client, js = _connected_client()
        js.stream_info.side_effect = NotFoundError()

        await client.ensure_trade_stream()

        config = js.add_stream.await_args.args[0]
        assert config.name == "TRADES"
        assert config.subjects == [TRADE_SUBJECTS]

    @pytest.mark.asyncio
    async def test_pull_trades_uses_durable_explicit_ack(self) -> None:
        client, js = _connected_client()

        subscription = await client.pull_trades()

        assert subscription == "subscription"
        args, kwargs = js.pull_subscribe.await_args
        assert args == ("trades.>",)
        assert kwargs["durable"] == "kline-aggregator"
        assert kwargs["stream"] == "TRADES"
        assert kwargs["config"].ack_policy == AckPolicy.EXPLICIT
