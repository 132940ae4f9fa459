"""Interface the snapshot engine expects from an exchange client.

Clients are shared read-only across concurrent fetch tasks; a method may retry
internally a bounded number of times and must raise ``ExchangeError`` once it
gives up.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from .types import Instrument, Kline, LsrPoint, LsrScope, RequestRange, Symbol, Timeframe


class ExchangeClient(ABC):
    name: str = "exchange"

    @abstractmethod
    async def exchange_info(self, instrument: Instrument) -> List[Symbol]:
        """Symbols currently trading for the instrument, in exchange order."""

    @abstractmethod
    async def klines(
        self, symbol: Symbol, timeframe: Timeframe, range: RequestRange, instrument: Instrument
    ) -> List[Kline]:
        ...

    @abstractmethod
    async def long_short_ratio(
        self, symbol: Symbol, timeframe: Timeframe, range: RequestRange, scope: LsrScope
    ) -> List[LsrPoint]:
        ...

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "ExchangeClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
