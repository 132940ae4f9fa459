"""Binance USDT-M futures and spot access for the snapshot engine.

Implements the async REST client (exchange info, klines, long/short ratios)
and the command-line entry point.
"""

__all__ = [
    "api",
    "cli",
]
