"""Scatter/gather of one fetch per candidate symbol.

Each symbol resolves to one of three outcomes: data, a soft miss (the fetch
succeeded but returned nothing) or a fetch error. Only the anchor symbol's
failure is fatal; everything else is absorbed into the report's counts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from .errors import AnchorMissingError, ExchangeError
from .registry import NoDataCycle
from .types import Symbol


logger = logging.getLogger(__name__)

FetchFn = Callable[[Symbol], Awaitable[Sequence[Any]]]

DEFAULT_MAX_IN_FLIGHT = 32
DEFAULT_MIN_SUCCESS_RATE = 0.7


@dataclass
class FetchReport:
    universe_size: int
    series: Dict[Symbol, Sequence[Any]] = field(default_factory=dict)
    soft_misses: List[Symbol] = field(default_factory=list)
    failures: Dict[Symbol, str] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.universe_size <= 0:
            return 0.0
        return len(self.series) / self.universe_size


@dataclass(frozen=True)
class _Outcome:
    symbol: Symbol
    data: Optional[Sequence[Any]] = None
    error: Optional[str] = None


async def fetch_all(
    symbols: Iterable[Symbol],
    fetch: FetchFn,
    *,
    universe_size: int,
    anchor: Optional[Symbol] = None,
    registry: Optional[NoDataCycle] = None,
    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    min_success_rate: float = DEFAULT_MIN_SUCCESS_RATE,
) -> FetchReport:
    """Fetch every candidate concurrently with at most ``max_in_flight`` requests outstanding.

    Raises AnchorMissingError (after cancelling all outstanding fetches) when the
    anchor is not a candidate, fails, or comes back empty. Cancelling the caller
    cancels every in-flight fetch as well.
    """
    if max_in_flight < 1:
        raise ValueError("max_in_flight must be >= 1")
    candidates = list(dict.fromkeys(symbols))
    if anchor is not None:
        if anchor not in candidates:
            raise AnchorMissingError(str(anchor), "not among the candidate symbols")
        candidates.remove(anchor)
        candidates.insert(0, anchor)

    sem = asyncio.Semaphore(max_in_flight)

    async def fetch_one(symbol: Symbol) -> _Outcome:
        async with sem:
            try:
                data = await fetch(symbol)
            except (ExchangeError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
                logger.warning("Couldn't fetch data for %s: %s", symbol, reason)
                return _Outcome(symbol, error=reason)
        if not data:
            logger.info("No data for %s", symbol)
            if registry is not None and symbol != anchor:
                await registry.record(symbol)
            return _Outcome(symbol)
        logger.debug("Fetched %d data points for %s", len(data), symbol)
        return _Outcome(symbol, data=data)

    tasks = [asyncio.ensure_future(fetch_one(s)) for s in candidates]
    try:
        if anchor is not None:
            first = await tasks[0]
            if first.error is not None:
                logger.error("Anchor %s fetch failed: %s", anchor, first.error)
                raise AnchorMissingError(str(anchor), f"fetch failed: {first.error}")
            if first.data is None:
                logger.error("Anchor %s returned no data", anchor)
                raise AnchorMissingError(str(anchor), "no data returned")
        outcomes = await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    report = FetchReport(universe_size=universe_size)
    for o in outcomes:
        if o.error is not None:
            report.failures[o.symbol] = o.error
        elif o.data is None:
            report.soft_misses.append(o.symbol)
        else:
            report.series[o.symbol] = o.data

    rate = report.success_rate
    msg = "Fetched data for %d/%d pairs, %d failed, %d without data (%.1f%% success rate)"
    args = (len(report.series), universe_size, len(report.failures), len(report.soft_misses), rate * 100)
    if rate < min_success_rate:
        logger.warning(msg + " - below %.0f%% threshold", *args, min_success_rate * 100)
    else:
        logger.info(msg, *args)
    return report
