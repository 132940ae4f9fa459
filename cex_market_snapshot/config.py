from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from .registry import DEFAULT_MAX_AGE


ENV_PREFIX = "CEX_SNAPSHOT_"


def default_state_dir() -> Path:
    xdg = os.getenv("XDG_STATE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "state"
    return base / "cex_market_snapshot"


def _env(key: str, default: Any = None, cast: Optional[type] = None) -> Any:
    val = os.getenv(ENV_PREFIX + key)
    if val is None or val == "":
        return default
    if cast is None:
        return val
    try:
        return cast(val)
    except (TypeError, ValueError):
        return default


@dataclass
class SnapshotConfig:
    state_dir: Path = field(default_factory=default_state_dir)
    exchange_name: str = "Binance"
    anchor: str = "BTC-USDT"
    quote: str = "USDT"
    max_in_flight: int = 32
    max_tries: int = 3
    request_timeout_s: float = 60.0
    build_timeout_s: Optional[float] = None
    min_success_rate: float = 0.7
    registry_max_age: timedelta = DEFAULT_MAX_AGE

    @property
    def cache_dir(self) -> Path:
        return Path(self.state_dir) / "snapshots"

    def registry_path(self, name: str) -> Path:
        return Path(self.state_dir) / f"{name}_no_data_pairs.txt"

    @classmethod
    def from_env(cls) -> "SnapshotConfig":
        """Defaults overridden by CEX_SNAPSHOT_* environment variables."""
        base = cls()
        registry_days = _env("REGISTRY_MAX_AGE_DAYS", None, float)
        return cls(
            state_dir=Path(_env("STATE_DIR", base.state_dir)),
            exchange_name=_env("EXCHANGE", base.exchange_name),
            anchor=_env("ANCHOR", base.anchor),
            quote=_env("QUOTE", base.quote),
            max_in_flight=_env("MAX_IN_FLIGHT", base.max_in_flight, int),
            max_tries=_env("MAX_TRIES", base.max_tries, int),
            request_timeout_s=_env("REQUEST_TIMEOUT_S", base.request_timeout_s, float),
            build_timeout_s=_env("BUILD_TIMEOUT_S", base.build_timeout_s, float),
            min_success_rate=_env("MIN_SUCCESS_RATE", base.min_success_rate, float),
            registry_max_age=timedelta(days=registry_days) if registry_days is not None else base.registry_max_age,
        )
