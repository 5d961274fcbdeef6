"""
Candle Aggregation Service

Consumes executed trades from NATS JetStream and folds them into candles.
Intervals: 1m, 5m, 15m, 30m, 1h, 4h, 1d.
"""
