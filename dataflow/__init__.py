"""
Dataflow Layer

Event I/O layer for the kline pipeline. Contains:
- adapters: NATS JetStream trade consumer
- candle_aggregation: Trade to intraday candle aggregation
- persistence: Postgres candle store
- markets: Tradable symbol enumeration for the rollup jobs
- query: HTTP API over stored candles
"""
