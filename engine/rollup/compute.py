"""
Rollup Computation

Derives one coarse candle from the daily candles of its window. The result
is a pure function of the inputs: same days in, identical candle out.
"""

import math
from typing import Iterable, Optional

from schemas.market_data import Candle, TradingMode


def rollup_candles(
    days: Iterable[Candle],
    symbol: str,
    mode: TradingMode,
    interval: str,
    start: int,
) -> Optional[Candle]:
    """
    Combine daily candles into a single candle starting at ``start``.

    open comes from the earliest day and close from the latest. high/low are
    the extremes over all days, volumes and trade counts are summed.
    ``updated_at`` is the newest source ``updated_at`` rather than the wall
    clock, so a rerun writes exactly the same record.

    Days without an open never received a primary merge and are ignored.
    Returns None when no usable day remains.
    """
    usable = sorted((d for d in days if d.open is not None), key=lambda d: d.time)
    if not usable:
        return None

    open_price = usable[0].open
    close_price = usable[-1].close
    high = -math.inf
    low = math.inf
    volume_base = 0.0
    volume_quote = 0.0
    trade_count = 0
    updated_at = 0

    for day in usable:
        if day.high is not None and day.high > high:
            high = day.high
        if day.low is not None and day.low < low:
            low = day.low
        volume_base += day.volume_base or 0.0
        volume_quote += day.volume_quote or 0.0
        trade_count += day.trade_count or 0
        updated_at = max(updated_at, day.updated_at or 0)

    # never emit an infinite sentinel
    if high == -math.inf:
        high = open_price
    if low == math.inf:
        low = open_price

    return Candle(
        symbol=symbol,
        mode=mode,
        interval=interval,
        time=start,
        open=open_price,
        high=high,
        low=low,
        close=close_price,
        volume_base=volume_base,
        volume_quote=volume_quote,
        trade_count=trade_count,
        updated_at=updated_at,
    )
