from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .types import CollectionParams, PersistedSnapshot


logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SnapshotCache:
    """One JSON snapshot per CollectionParams, fresh for one timeframe duration.

    The TTL comes from the timeframe: a 1m panel goes stale after a minute, a 1d
    panel after a day.
    """

    root_dir: Path

    def cache_dir(self) -> Path:
        d = Path(self.root_dir)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def path_for(self, params: CollectionParams) -> Path:
        return Path(self.root_dir) / f"{params.cache_key()}.json"

    def try_load(self, params: CollectionParams, now: Optional[datetime] = None) -> Optional[PersistedSnapshot]:
        path = self.path_for(params)
        if not path.exists():
            logger.debug("No cached snapshot at %s", path)
            return None
        try:
            snapshot = PersistedSnapshot.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable snapshot %s: %s", path, e)
            return None

        if snapshot.params != params:
            logger.warning("Cache params mismatch in %s, ignoring cached data", path.name)
            return None

        collected_at = snapshot.collected_at
        if collected_at.tzinfo is None:
            collected_at = collected_at.replace(tzinfo=timezone.utc)
        age = (now or now_utc()) - collected_at
        max_age = params.timeframe.duration
        if age >= max_age:
            logger.info("Cached snapshot is too old (age: %s, max: %s)", age, max_age)
            return None

        logger.info("Loaded %s snapshot from cache (age: %s)", params.panel, age)
        return snapshot

    def save(self, snapshot: PersistedSnapshot) -> Path:
        """Overwrite the snapshot for its params. Concurrent writers: last one wins."""
        out = self.cache_dir() / f"{snapshot.params.cache_key()}.json"
        tmp = out.with_suffix(f".{os.getpid()}.tmp")
        tmp.write_text(json.dumps(snapshot.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, out)
        logger.info("Saved %s snapshot to %s", snapshot.params.panel, out)
        return out
