"""Snapshot build pipeline.

universe -> no-data filter -> concurrent fetch -> normalize/align -> cache -> rank

A fresh cached snapshot short-circuits the pipeline with no network I/O. Only
universe resolution and anchor failures abort a build.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from .chart import ChartPayload, build_chart
from .config import SnapshotConfig
from .errors import AnchorMissingError, BuildTimeoutError
from .exchange import ExchangeClient
from .persistence import SnapshotCache, now_utc
from .ranking import RankedCollection
from .registry import NoDataRegistry
from .scheduler import FetchReport, fetch_all
from .types import (
    CollectionParams,
    Instrument,
    LsrScope,
    PersistedSnapshot,
    RequestRange,
    Symbol,
    Timeframe,
)
from .universe import Universe, resolve_universe
from .validation import align_to_anchor, normalize_panel, time_index_of


logger = logging.getLogger(__name__)

T = TypeVar("T")

KLINES_REGISTRY = "klines"
LSR_REGISTRY = "lsr"

# ratio endpoints only exist for perpetuals
_REGISTRY_INSTRUMENTS = {
    KLINES_REGISTRY: (Instrument.PERP, Instrument.SPOT),
    LSR_REGISTRY: (Instrument.PERP,),
}


def registry_name(panel: str, instrument: Instrument) -> str:
    """A symbol lacking data on one endpoint or market says nothing about the others."""
    return f"{panel}_{instrument}"


@dataclass
class MarketStructure:
    params: CollectionParams
    snapshot: PersistedSnapshot
    ranked: RankedCollection
    chart: ChartPayload
    from_cache: bool
    report: Optional[FetchReport] = None
    misaligned: List[Symbol] = field(default_factory=list)

    @property
    def series(self) -> Dict[Symbol, List[float]]:
        return {Symbol.parse(k): v for k, v in self.snapshot.normalized_series.items()}

    @property
    def coverage(self) -> str:
        return self.ranked.coverage


@dataclass
class LsrPanel:
    timeframe: Timeframe
    scope: LsrScope
    ranked: RankedCollection
    report: FetchReport
    collected_at: datetime

    @property
    def coverage(self) -> str:
        return self.ranked.coverage


class MarketSnapshotService:
    """Builds market snapshots from an injected client, cache and registries."""

    def __init__(
        self,
        client: ExchangeClient,
        cache: SnapshotCache,
        registries: Optional[Dict[str, NoDataRegistry]] = None,
        config: Optional[SnapshotConfig] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.client = client
        self.cache = cache
        self.registries = registries or {}
        self.config = config or SnapshotConfig()
        self.clock = clock

    @classmethod
    def from_config(cls, client: ExchangeClient, config: SnapshotConfig) -> "MarketSnapshotService":
        registries = {}
        for panel, instruments in _REGISTRY_INSTRUMENTS.items():
            for instrument in instruments:
                name = registry_name(panel, instrument)
                registries[name] = NoDataRegistry(config.registry_path(name), config.registry_max_age)
        return cls(client, SnapshotCache(config.cache_dir), registries, config)

    @property
    def anchor(self) -> Symbol:
        return Symbol.parse(self.config.anchor)

    async def _with_deadline(self, coro: Awaitable[T]) -> T:
        timeout = self.config.build_timeout_s
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            raise BuildTimeoutError(f"build did not finish within {timeout}s") from e

    async def _collect(
        self,
        universe: Universe,
        registry_key: str,
        fetch: Callable[[Symbol], Awaitable[list]],
        anchor: Optional[Symbol] = None,
    ) -> FetchReport:
        registry = self.registries.get(registry_key)
        cycle = registry.load(self.clock()) if registry is not None else None
        candidates = list(universe.symbols)
        if cycle is not None:
            candidates = cycle.filter(candidates, keep=[anchor] if anchor is not None else [])
        try:
            return await fetch_all(
                candidates,
                fetch,
                universe_size=universe.total,
                anchor=anchor,
                registry=cycle,
                max_in_flight=self.config.max_in_flight,
                min_success_rate=self.config.min_success_rate,
            )
        finally:
            if cycle is not None:
                try:
                    cycle.persist()
                except OSError as e:
                    logger.warning("Failed to persist no-data registry %s: %s", cycle.registry.path, e)

    async def build_market_structure(self, params: CollectionParams) -> MarketStructure:
        return await self._with_deadline(self._build_market_structure(params))

    async def _build_market_structure(self, params: CollectionParams) -> MarketStructure:
        logger.info(
            "Building market structure for %s %s with bars=%d, tf=%s",
            self.config.exchange_name,
            params.instrument,
            params.range.bars,
            params.timeframe,
        )
        cached = self.cache.try_load(params, now=self.clock())
        if cached is not None:
            return self._assemble(cached, from_cache=True)

        logger.info("No valid cache found, fetching fresh data")
        anchor = self.anchor
        universe = await resolve_universe(self.client, params.instrument, self.config.quote)

        async def fetch(symbol: Symbol) -> list:
            return await self.client.klines(symbol, params.timeframe, params.range, params.instrument)

        report = await self._collect(universe, registry_name(KLINES_REGISTRY, params.instrument), fetch, anchor=anchor)

        time_index = time_index_of(report.series[anchor])
        normalized = normalize_panel(report.series)
        if anchor not in normalized:
            raise AnchorMissingError(str(anchor), "closes could not be normalized")
        aligned = align_to_anchor(normalized, time_index)

        snapshot = PersistedSnapshot(
            collected_at=self.clock(),
            normalized_series={str(s): v for s, v in aligned.retained.items()},
            time_index=time_index,
            params=params,
            universe_size=universe.total,
        )
        try:
            self.cache.save(snapshot)
        except OSError as e:
            logger.warning("Failed to save market structure snapshot: %s", e)
        return self._assemble(snapshot, from_cache=False, report=report, misaligned=aligned.dropped)

    def _assemble(
        self,
        snapshot: PersistedSnapshot,
        from_cache: bool,
        report: Optional[FetchReport] = None,
        misaligned: Optional[List[Symbol]] = None,
    ) -> MarketStructure:
        series = {Symbol.parse(k): v for k, v in snapshot.normalized_series.items()}
        ranked = RankedCollection.from_price_series(series, snapshot.universe_size)
        chart = build_chart(
            ranked,
            series,
            snapshot.time_index,
            snapshot.params.instrument,
            anchor=self.anchor,
            warn_below=self.config.min_success_rate,
        )
        return MarketStructure(
            params=snapshot.params,
            snapshot=snapshot,
            ranked=ranked,
            chart=chart,
            from_cache=from_cache,
            report=report,
            misaligned=list(misaligned or []),
        )

    async def build_lsr(
        self,
        timeframe: Timeframe,
        range: RequestRange,
        scope: LsrScope = LsrScope.GLOBAL,
    ) -> LsrPanel:
        return await self._with_deadline(self._build_lsr(timeframe, range, scope))

    async def _build_lsr(self, timeframe: Timeframe, range: RequestRange, scope: LsrScope) -> LsrPanel:
        logger.info("Building %s long/short ratios with bars=%d, tf=%s", scope.value, range.bars, timeframe)
        universe = await resolve_universe(self.client, Instrument.PERP, self.config.quote)

        async def fetch(symbol: Symbol) -> list:
            return await self.client.long_short_ratio(symbol, timeframe, range, scope)

        report = await self._collect(universe, registry_name(LSR_REGISTRY, Instrument.PERP), fetch)
        ranked = RankedCollection.from_ratio_series(report.series, universe.total)
        return LsrPanel(timeframe, scope, ranked, report, self.clock())
