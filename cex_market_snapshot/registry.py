"""Time-boxed set of symbols the exchange is known to return no data for.

Listing metadata includes pairs with no history behind a given endpoint (fresh
listings, pairs without ratio data). Requesting them every cycle is wasted
traffic, but the exchange may start serving any of them later, so the whole set
is dropped once it is older than ``max_age`` and re-derived from scratch.

File format: an optional ``# refreshed <iso timestamp>`` header, then one symbol
string per line. Files without the header age by their mtime.

Each build works on its own ``NoDataCycle``; the registry itself holds no
per-build state, so overlapping builds never clobber each other's misses.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from .types import Symbol


logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(days=30)
REFRESHED_PREFIX = "# refreshed "


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


class NoDataCycle:
    """Registry members as loaded for one build, plus the misses that build records."""

    def __init__(self, registry: "NoDataRegistry", known: Iterable[str], now: datetime):
        self.registry = registry
        self.known = frozenset(known)
        self.now = now
        self._new: List[str] = []
        self._lock = asyncio.Lock()

    @property
    def new_misses(self) -> List[str]:
        return list(self._new)

    def filter(self, universe: Iterable[Symbol], keep: Iterable[Symbol] = ()) -> List[Symbol]:
        keep_set = {str(s) for s in keep}
        symbols = list(universe)
        out = [s for s in symbols if str(s) not in self.known or str(s) in keep_set]
        skipped = len(symbols) - len(out)
        if skipped:
            logger.debug("Skipping %d symbols listed in %s", skipped, self.registry.path.name)
        return out

    async def record(self, symbol: Symbol) -> None:
        async with self._lock:
            name = str(symbol)
            if name not in self._new:
                self._new.append(name)

    def persist(self) -> bool:
        return self.registry.persist(self)


class NoDataRegistry:
    def __init__(self, path: Path, max_age: timedelta = DEFAULT_MAX_AGE):
        self.path = Path(path)
        self.max_age = max_age

    def _scan(self) -> Tuple[Optional[datetime], Set[str]]:
        """Last refresh time and members; (None, empty) when there is no readable file."""
        try:
            text = self.path.read_text(encoding="utf-8")
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None, set()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read no-data registry %s: %s", self.path, e)
            return None, set()

        refreshed = datetime.fromtimestamp(mtime, tz=timezone.utc)
        names: Set[str] = set()
        for line in text.splitlines():
            line = line.strip()
            if line.startswith(REFRESHED_PREFIX):
                try:
                    refreshed = _utc(datetime.fromisoformat(line[len(REFRESHED_PREFIX):].strip()))
                except ValueError:
                    logger.debug("Bad refresh header in %s, using mtime", self.path.name)
            elif line and not line.startswith("#"):
                names.add(line)
        return refreshed, names

    def age(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        refreshed, _ = self._scan()
        if refreshed is None:
            return None
        return (now or datetime.now(timezone.utc)) - refreshed

    def read(self, now: Optional[datetime] = None) -> Set[str]:
        """Current members; an expired or missing file yields an empty set."""
        now = now or datetime.now(timezone.utc)
        refreshed, names = self._scan()
        if refreshed is None:
            return set()
        age = now - refreshed
        if age >= self.max_age:
            logger.info("No-data registry %s expired (age %s), retrying all symbols", self.path.name, age)
            return set()
        return names

    def load(self, now: Optional[datetime] = None) -> NoDataCycle:
        now = now or datetime.now(timezone.utc)
        return NoDataCycle(self, self.read(now), now)

    def persist(self, cycle: NoDataCycle) -> bool:
        """Merge a cycle's misses into the file. Writes only if the cycle recorded something.

        The file is re-read first, so misses written by an overlapping build survive.
        After an expired load only the new misses are kept and the registry starts over.
        """
        new = cycle.new_misses
        if not new:
            return False
        merged = sorted(self.read(cycle.now).union(new))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        body = [f"{REFRESHED_PREFIX}{cycle.now.isoformat()}", *merged]
        tmp.write_text("\n".join(body) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)
        logger.info("Recorded %d new no-data symbols in %s", len(new), self.path.name)
        return True
