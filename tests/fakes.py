from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from typing import Dict, List, Optional, Sequence


def _proj_root() -> Path:
    return Path(__file__).resolve().parents[1]


root = _proj_root()
if str(root) not in sys.path:
    sys.path.append(str(root))

from cex_market_snapshot.errors import ExchangeError  # noqa: E402
from cex_market_snapshot.exchange import ExchangeClient  # noqa: E402
from cex_market_snapshot.types import Kline, LsrPoint, Symbol  # noqa: E402


T0_MS = 1_704_067_200_000  # 2024-01-01 00:00:00 UTC
FIVE_MIN_MS = 300_000


def make_klines(n: int, start_price: float = 100.0, growth: float = 0.001, start_ms: int = T0_MS, step_ms: int = FIVE_MIN_MS) -> List[Kline]:
    out = []
    for i in range(n):
        price = start_price * math.exp(growth * i)
        ot = start_ms + i * step_ms
        out.append(
            Kline(
                open_time_ms=ot,
                open=f"{price}",
                high=f"{price * 1.01}",
                low=f"{price * 0.99}",
                close=f"{price}",
                volume="10.0",
                close_time_ms=ot + step_ms - 1,
                quote_volume=f"{price * 10.0}",
            )
        )
    return out


def make_lsr(n: int, first_long: float, last_long: float, start_ms: int = T0_MS) -> List[LsrPoint]:
    out = []
    for i in range(n):
        frac = i / (n - 1) if n > 1 else 1.0
        long_share = first_long + (last_long - first_long) * frac
        out.append(LsrPoint(start_ms + i * FIVE_MIN_MS, long_share, 1 - long_share, long_share / (1 - long_share)))
    return out


class FakeClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now = self.now + timedelta(**kw)


class FakeExchange(ExchangeClient):
    """In-memory exchange; records every call and the peak number of concurrent fetches."""

    name = "Fake"

    def __init__(
        self,
        symbols: Sequence[str],
        klines: Optional[Dict[str, List[Kline]]] = None,
        lsr: Optional[Dict[str, List[LsrPoint]]] = None,
        errors: Optional[Dict[str, Exception]] = None,
        info_error: Optional[Exception] = None,
        delay: float = 0.0,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.symbols = list(symbols)
        self.kline_data = klines or {}
        self.lsr_data = lsr or {}
        self.errors = errors or {}
        self.info_error = info_error
        self.delay = delay
        self.delays = delays or {}
        self.calls: List[tuple] = []
        self.cancelled: List[str] = []
        self.in_flight = 0
        self.max_in_flight_seen = 0
        self.closed = False

    @property
    def network_calls(self) -> int:
        return len(self.calls)

    def fetched(self, kind: str = "klines") -> List[str]:
        return [s for k, s in self.calls if k == kind]

    async def exchange_info(self, instrument):
        self.calls.append(("exchange_info", str(instrument)))
        if self.info_error is not None:
            raise self.info_error
        return [Symbol.parse(s) for s in self.symbols]

    async def _serve(self, kind: str, symbol: Symbol, data: Dict[str, list]) -> list:
        name = str(symbol)
        self.calls.append((kind, name))
        self.in_flight += 1
        self.max_in_flight_seen = max(self.max_in_flight_seen, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(name, self.delay))
        except asyncio.CancelledError:
            self.cancelled.append(name)
            raise
        finally:
            self.in_flight -= 1
        if name in self.errors:
            raise self.errors[name]
        return list(data.get(name, []))

    async def klines(self, symbol, timeframe, range, instrument):
        return await self._serve("klines", symbol, self.kline_data)

    async def long_short_ratio(self, symbol, timeframe, range, scope):
        return await self._serve("lsr", symbol, self.lsr_data)

    async def close(self) -> None:
        self.closed = True


def boom(msg: str = "connection reset") -> ExchangeError:
    return ExchangeError(msg, retryable=True)
