from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List


class Instrument(str, Enum):
    SPOT = "spot"
    PERP = "perp"

    @classmethod
    def parse(cls, value: str | "Instrument") -> "Instrument":
        if isinstance(value, Instrument):
            return value
        v = str(value).strip().lower()
        if v in ("perp", "perpetual", "futures", "um"):
            return cls.PERP
        if v == "spot":
            return cls.SPOT
        raise ValueError(f"unknown instrument: {value!r}")

    def __str__(self) -> str:
        return self.value


class LsrScope(str, Enum):
    """Which long/short ratio the exchange reports."""

    GLOBAL = "global"
    TOP_ACCOUNTS = "top_accounts"
    TOP_POSITIONS = "top_positions"

    @classmethod
    def parse(cls, value: str | "LsrScope") -> "LsrScope":
        if isinstance(value, LsrScope):
            return value
        return cls(str(value).strip().lower())


@dataclass(frozen=True, eq=False)
class Symbol:
    """Exchange trading pair, e.g. BTC-USDT. Compared and hashed by its string form."""

    base: str
    quote: str

    def __str__(self) -> str:
        return f"{self.base}-{self.quote}"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Symbol):
            return str(self) == str(other)
        if isinstance(other, str):
            return str(self) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))

    def __lt__(self, other: "Symbol") -> bool:
        return str(self) < str(other)

    @property
    def exchange_symbol(self) -> str:
        return f"{self.base}{self.quote}"

    @property
    def display_name(self) -> str:
        # 1000PEPE-USDT -> PEPE
        name = self.base
        if name.startswith("1000") and len(name) > 4:
            name = name[4:]
        return name

    @classmethod
    def parse(cls, value: str, quote: str | None = None) -> "Symbol":
        v = value.strip().upper()
        if "-" in v:
            base, q = v.split("-", 1)
            return cls(base, q)
        if quote and v.endswith(quote.upper()) and len(v) > len(quote):
            return cls(v[: -len(quote)], quote.upper())
        raise ValueError(f"cannot parse symbol {value!r}")


_TF_UNITS: Dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "M": 30 * 86400,
}
_TF_RE = re.compile(r"^(\d+)([smhdwM])$")


@dataclass(frozen=True)
class Timeframe:
    """Named sampling interval such as "5m" or "1d"."""

    name: str
    seconds: int = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        m = _TF_RE.match(self.name)
        if m is None or int(m.group(1)) <= 0:
            raise ValueError(f"invalid timeframe: {self.name!r}")
        object.__setattr__(self, "seconds", int(m.group(1)) * _TF_UNITS[m.group(2)])

    @property
    def ms(self) -> int:
        return self.seconds * 1000

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.seconds)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class RequestRange:
    """Number of most recent bars to request."""

    bars: int

    def __post_init__(self) -> None:
        if int(self.bars) <= 0:
            raise ValueError(f"bars must be positive, got {self.bars}")

    def span(self, tf: Timeframe) -> timedelta:
        return tf.duration * self.bars

    def __str__(self) -> str:
        return str(self.bars)


@dataclass(frozen=True)
class Kline:
    open_time_ms: int
    open: str
    high: str
    low: str
    close: str
    volume: str
    close_time_ms: int
    quote_volume: str = "0"


@dataclass(frozen=True)
class LsrPoint:
    timestamp_ms: int
    long_share: float
    short_share: float
    long_short_ratio: float


@dataclass(frozen=True)
class CollectionParams:
    timeframe: Timeframe
    range: RequestRange
    instrument: Instrument
    panel: str = "market_structure"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "panel": self.panel,
            "instrument": self.instrument.value,
            "timeframe": self.timeframe.name,
            "bars": self.range.bars,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CollectionParams":
        return cls(
            timeframe=Timeframe(str(d["timeframe"])),
            range=RequestRange(int(d["bars"])),
            instrument=Instrument.parse(d["instrument"]),
            panel=str(d.get("panel", "market_structure")),
        )

    def cache_key(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:12]
        slug = f"{self.panel}_{self.instrument.value}_{self.timeframe.name}_{self.range.bars}"
        slug = re.sub(r"[^A-Za-z0-9_.-]", "_", slug)
        return f"{slug}_{digest}"


@dataclass
class PersistedSnapshot:
    collected_at: datetime
    normalized_series: Dict[str, List[float]]
    time_index: List[int]
    params: CollectionParams
    universe_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collected_at": self.collected_at.isoformat(),
            "normalized_series": self.normalized_series,
            "time_index": self.time_index,
            "params": self.params.to_dict(),
            "universe_size": self.universe_size,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PersistedSnapshot":
        return cls(
            collected_at=datetime.fromisoformat(d["collected_at"]),
            normalized_series={str(k): [float(x) for x in v] for k, v in d["normalized_series"].items()},
            time_index=[int(t) for t in d["time_index"]],
            params=CollectionParams.from_dict(d["params"]),
            universe_size=int(d.get("universe_size", 0)),
        )
