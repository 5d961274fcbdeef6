"""
NATS Adapters

Provides the NATS/JetStream client used to consume trade events.
"""

from dataflow.adapters.nats_client import TRADE_SUBJECTS, NatsClient, NatsConfig

__all__ = ["NatsClient", "NatsConfig", "TRADE_SUBJECTS"]
