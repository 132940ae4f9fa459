from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .types import LsrPoint, Symbol


logger = logging.getLogger(__name__)

CHANGE_STR_LEN = 28
PRICE_TITLES = ("Top Losers (% change)", "Top Gainers (% change)")
RATIO_TITLES = ("Most Shorted (% longs)", "Most Longed (% longs)")


def sample_size(n: int) -> int:
    """round(ln(n)), half away from zero. Grows slowly with the universe size."""
    if n <= 1:
        return 0
    return int(math.floor(math.log(n) + 0.5))


@dataclass(frozen=True)
class RankedEntry:
    symbol: Symbol
    value: float
    change: float


def _sign(x: float) -> str:
    return "+" if x >= 0 else "-"


@dataclass
class RankedCollection:
    """Entries sorted ascending by value. ``total`` is the size of the resolved universe."""

    entries: List[RankedEntry]
    total: int
    kind: str = "price"
    dropped: List[Symbol] = field(default_factory=list)

    @classmethod
    def build(cls, entries: Iterable[RankedEntry], total: int, kind: str = "price") -> "RankedCollection":
        kept: List[RankedEntry] = []
        dropped: List[Symbol] = []
        for e in entries:
            if math.isfinite(e.value) and math.isfinite(e.change):
                kept.append(e)
            else:
                logger.warning("Dropping %s from ranking: non-finite value %r", e.symbol, e.value)
                dropped.append(e.symbol)
        kept.sort(key=lambda e: (e.value, str(e.symbol)))
        return cls(kept, total, kind, dropped)

    @classmethod
    def from_price_series(cls, series: Mapping[Symbol, Sequence[float]], total: int) -> "RankedCollection":
        entries = []
        for symbol, values in series.items():
            if not values:
                continue
            net = float(values[-1]) - float(values[0])
            entries.append(RankedEntry(symbol, net, net))
        return cls.build(entries, total, kind="price")

    @classmethod
    def from_ratio_series(cls, series: Mapping[Symbol, Sequence[LsrPoint]], total: int) -> "RankedCollection":
        entries = []
        for symbol, points in series.items():
            if not points:
                continue
            last = points[-1].long_share
            entries.append(RankedEntry(symbol, last, last - points[0].long_share))
        return cls.build(entries, total, kind="ratio")

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def symbols(self) -> List[Symbol]:
        return [e.symbol for e in self.entries]

    def get(self, symbol: Symbol) -> Optional[RankedEntry]:
        for e in self.entries:
            if e.symbol == symbol:
                return e
        return None

    def top(self, k: Optional[int] = None) -> List[RankedEntry]:
        """Largest values first."""
        k = sample_size(len(self)) if k is None else k
        if k <= 0:
            return []
        return list(reversed(self.entries[-k:]))

    def bottom(self, k: Optional[int] = None) -> List[RankedEntry]:
        """Smallest values first."""
        k = sample_size(len(self)) if k is None else k
        if k <= 0:
            return []
        return self.entries[:k]

    @property
    def average(self) -> float:
        if not self.entries:
            return float("nan")
        return sum(e.value for e in self.entries) / len(self.entries)

    @property
    def success_rate(self) -> float:
        return len(self) / self.total if self.total else 0.0

    @property
    def coverage(self) -> str:
        return f"{len(self)}/{self.total}"

    def format_entry(self, e: RankedEntry) -> str:
        name = e.symbol.display_name
        if self.kind == "ratio":
            cell = f"{name:<8}{e.value * 100:>5.1f}% {_sign(e.change)}{abs(e.change) * 100:.2f}%"
        else:
            cell = f"{name:<8}{_sign(e.change)}{abs(e.change) * 100:>6.2f}%"
        return f"{cell:<{CHANGE_STR_LEN}}"

    def format_outliers(
        self,
        rows: Optional[int] = None,
        titles: Optional[Tuple[str, str]] = None,
        exchange: str = "Binance",
        instrument: str = "perp",
    ) -> str:
        """Two side-by-side columns of extremes, then average and coverage lines."""
        titles = titles or (RATIO_TITLES if self.kind == "ratio" else PRICE_TITLES)
        n_rows = sample_size(len(self)) if rows is None else rows
        n_rows = min(n_rows, len(self) // 2)
        bottom, top = self.bottom(n_rows), self.top(n_rows)

        lines = []
        if n_rows > 0:
            lines.append(f"{titles[0]:<{CHANGE_STR_LEN}}{titles[1]:<{CHANGE_STR_LEN}}")
        for lo, hi in zip(bottom, top):
            lines.append(self.format_entry(lo) + self.format_entry(hi))
        lines.append("-" * CHANGE_STR_LEN)
        avg = self.average
        lines.append(f"Average: {avg * 100:.2f}%" if math.isfinite(avg) else "Average: n/a")
        lines.append(f"Collected for {self.coverage} pairs on {exchange}/{instrument}")
        return "\n".join(lines)
