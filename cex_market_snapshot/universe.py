from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

from .errors import ExchangeError, UniverseResolutionError
from .exchange import ExchangeClient
from .types import Instrument, Symbol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Universe:
    instrument: Instrument
    symbols: Tuple[Symbol, ...]

    @property
    def total(self) -> int:
        return len(self.symbols)

    def __contains__(self, symbol: object) -> bool:
        return symbol in self.symbols


async def resolve_universe(client: ExchangeClient, instrument: Instrument, quote: str = "USDT") -> Universe:
    """Query exchange metadata once and return every listed symbol quoted in ``quote``.

    There is no partial-universe mode: any failure here aborts the build.
    """
    logger.debug("Fetching exchange info for %s", instrument)
    try:
        listed = await client.exchange_info(instrument)
    except ExchangeError as e:
        logger.error("Failed to fetch exchange info for %s: %s", instrument, e)
        raise UniverseResolutionError(f"exchange info for {instrument} failed: {e}") from e

    quote = quote.upper()
    seen = set()
    symbols = []
    for s in listed:
        if s.quote != quote or s in seen:
            continue
        seen.add(s)
        symbols.append(s)
    if not symbols:
        raise UniverseResolutionError(f"no {quote} symbols listed for {instrument}")
    logger.info("Found %d %s pairs from exchange info", len(symbols), quote)
    return Universe(instrument, tuple(symbols))
