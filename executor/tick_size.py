"""
Tick size quantization for limit prices.
Computed prices (compensation orders, slippage-adjusted limits) must land on
the market's tick grid before they reach the venue.
"""

from __future__ import annotations

import math

from scanner.models import Side


def parse_tick(tick_size: str | float) -> float:
    tick = float(tick_size)
    if tick <= 0 or tick >= 1:
        raise ValueError(f"tick_size must be in (0, 1), got {tick_size}")
    return tick


def quantize_price(price: float, tick_size: str | float, side: Side) -> float:
    """
    Snap *price* onto the tick grid in the aggressive direction for *side*:
    up for a buy, down for a sell. The result is clamped to [tick, 1 - tick],
    the range the venue accepts.

    Raises:
        ValueError: If price is outside [0, 1] or tick_size is invalid.
    """
    tick = parse_tick(tick_size)
    if math.isnan(price) or price < 0.0 or price > 1.0:
        raise ValueError(f"price must be within [0, 1], got {price}")

    steps = price / tick
    # Absorb float noise so 0.46 / 0.01 = 45.999... stays on 46.
    nearest = round(steps)
    if abs(steps - nearest) < 1e-9:
        steps = nearest
    elif side is Side.BUY:
        steps = math.ceil(steps)
    else:
        steps = math.floor(steps)

    decimals = max(0, -int(math.floor(math.log10(tick))))
    quantized = round(steps * tick, decimals)
    return min(max(quantized, tick), round(1.0 - tick, decimals))


def slipped_price(price: float, max_slippage: float, side: Side, tick_size: str | float) -> float:
    """Worst acceptable limit for *side* given *max_slippage*, on the tick grid."""
    target = price + max_slippage if side is Side.BUY else price - max_slippage
    return quantize_price(max(0.0, min(1.0, target)), tick_size, side)
