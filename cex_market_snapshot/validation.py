from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

import numpy as np

from .binance.api import klines_to_dataframe
from .types import Kline, Symbol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlignmentResult:
    retained: Dict[Symbol, List[float]]
    dropped: List[Symbol] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.dropped


def time_index_of(klines: Sequence[Kline]) -> List[int]:
    """Open times (epoch ms) of the anchor's bars, ascending."""
    df = klines_to_dataframe(list(klines))
    return [int(t) for t in df["open_time_ms"].tolist()]


def normalize_closes(klines: Sequence[Kline]) -> List[float]:
    """Log-returns of each close relative to the first close: ln(close[i] / close[0]).

    The first element is exactly 0.0. Raises ValueError on empty input or on
    closes that are not positive and finite.
    """
    if not klines:
        raise ValueError("cannot normalize an empty series")
    closes = klines_to_dataframe(list(klines))["close"].to_numpy(dtype=float)
    if not np.isfinite(closes).all() or (closes <= 0).any():
        raise ValueError("closes must be positive and finite")
    normalized = np.log(closes / closes[0])
    out = [float(x) for x in normalized]
    out[0] = 0.0
    return out


def normalize_panel(raw: Mapping[Symbol, Sequence[Kline]]) -> Dict[Symbol, List[float]]:
    """Normalize each symbol independently; symbols without usable closes are skipped."""
    out: Dict[Symbol, List[float]] = {}
    for symbol, klines in raw.items():
        if not klines:
            logger.info("Received empty data for %s, skipping", symbol)
            continue
        try:
            out[symbol] = normalize_closes(klines)
        except ValueError as e:
            logger.warning("Dropping %s: %s", symbol, e)
    return out


def align_to_anchor(series: Mapping[Symbol, List[float]], time_index: Sequence[int]) -> AlignmentResult:
    """Keep only series whose length equals the anchor time index. No padding, no truncation."""
    retained: Dict[Symbol, List[float]] = {}
    dropped: List[Symbol] = []
    expected = len(time_index)
    for symbol, values in series.items():
        if len(values) != expected:
            logger.warning("misaligned: %s (%d points, anchor has %d)", symbol, len(values), expected)
            dropped.append(symbol)
            continue
        retained[symbol] = values
    return AlignmentResult(retained, dropped)
