"""CEX Market Snapshot - cross-sectional panels over a whole exchange universe.

Provides:
- Market structure panel: log-normalized closes for every USDT pair, ranked by net change
- Long/short ratio panel: latest long-account share per pair, ranked with outliers
- TTL snapshot cache keyed by collection params, and a no-data symbol registry
- Binance async client and CLI
"""

__version__ = "0.1.0"

from .errors import AnchorMissingError, BuildTimeoutError, ExchangeError, SnapshotError, UniverseResolutionError
from .service import MarketSnapshotService
from .types import CollectionParams, Instrument, LsrScope, RequestRange, Symbol, Timeframe

__all__ = [
    "AnchorMissingError",
    "BuildTimeoutError",
    "CollectionParams",
    "ExchangeError",
    "Instrument",
    "LsrScope",
    "MarketSnapshotService",
    "RequestRange",
    "SnapshotError",
    "Symbol",
    "Timeframe",
    "UniverseResolutionError",
    "__version__",
]
