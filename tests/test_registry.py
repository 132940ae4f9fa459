#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fakes import root  # noqa: F401

from cex_market_snapshot.registry import NoDataRegistry
from cex_market_snapshot.types import Symbol


NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _write(path: Path, names, age: timedelta) -> None:
    path.write_text("\n".join(names) + "\n", encoding="utf-8")
    ts = (NOW - age).timestamp()
    os.utime(path, (ts, ts))


def _members(path: Path):
    return [ln for ln in path.read_text(encoding="utf-8").splitlines() if ln and not ln.startswith("#")]


def _universe(*names):
    return [Symbol.parse(n) for n in names]


def test_missing_file_loads_empty():
    with tempfile.TemporaryDirectory() as d:
        reg = NoDataRegistry(Path(d) / "none.txt")
        cycle = reg.load(NOW)
        assert cycle.known == frozenset()
        assert cycle.filter(_universe("BTC-USDT")) == _universe("BTC-USDT")
        assert reg.age(NOW) is None


def test_fresh_registry_filters_members():
    with tempfile.TemporaryDirectory() as d:
        path = Path(d) / "lsr_perp_no_data_pairs.txt"
        _write(path, ["XYZ-USDT", "", "ABC-USDT"], timedelta(days=3))
        cycle = NoDataRegistry(path).load(NOW)
        assert cycle.known == {"XYZ-USDT", "ABC-USDT"}
        out = cycle.filter(_universe("BTC-USDT", "XYZ-USDT", "ETH-USDT", "ABC-USDT"))
        assert [str(s) for s in out] == ["BTC-USDT", "ETH-USDT"]
        # the anchor is never filtered out
        keep = cycle.filter(_universe("XYZ-USDT", "ETH-USDT"), keep=_universe("XYZ-USDT"))
        assert [str(s) for s in keep] == ["XYZ-USDT", "ETH-USDT"]


def test_expired_registry_retries_everything_and_rebuilds():
    with tempfile.TemporaryDirectory() as d:
        path = Path(d) / "reg.txt"
        _write(path, ["OLD1-USDT", "OLD2-USDT"], timedelta(days=30, seconds=1))
        reg = NoDataRegistry(path)
        cycle = reg.load(NOW)
        assert cycle.known == frozenset()
        assert len(cycle.filter(_universe("OLD1-USDT", "OLD2-USDT"))) == 2

        asyncio.run(cycle.record(Symbol.parse("OLD2-USDT")))
        assert cycle.persist() is True
        assert _members(path) == ["OLD2-USDT"]


def test_refresh_header_drives_expiry():
    with tempfile.TemporaryDirectory() as d:
        path = Path(d) / "reg.txt"
        reg = NoDataRegistry(path)
        cycle = reg.load(NOW)
        asyncio.run(cycle.record(Symbol.parse("NEW-USDT")))
        cycle.persist()
        assert path.read_text(encoding="utf-8").splitlines()[0] == "# refreshed " + NOW.isoformat()

        # file mtime is "now" on the real clock; the header wins
        assert reg.age(NOW + timedelta(days=2)) == timedelta(days=2)
        assert reg.read(NOW + timedelta(days=29)) == {"NEW-USDT"}
        assert reg.read(NOW + timedelta(days=30)) == set()


def test_persist_merges_and_skips_when_nothing_new():
    with tempfile.TemporaryDirectory() as d:
        path = Path(d) / "reg.txt"
        _write(path, ["AAA-USDT"], timedelta(days=1))
        mtime_before = path.stat().st_mtime
        reg = NoDataRegistry(path)
        cycle = reg.load(NOW)
        assert cycle.persist() is False
        assert path.stat().st_mtime == mtime_before

        async def record_many():
            await asyncio.gather(*(cycle.record(Symbol(f"N{i}", "USDT")) for i in range(20)))
            await cycle.record(Symbol("N0", "USDT"))

        asyncio.run(record_many())
        assert len(cycle.new_misses) == 20
        assert cycle.persist() is True
        names = _members(path)
        assert "AAA-USDT" in names and len(names) == 21
        assert names == sorted(names)


def test_overlapping_cycles_keep_each_others_misses():
    with tempfile.TemporaryDirectory() as d:
        reg = NoDataRegistry(Path(d) / "reg.txt")
        first, second = reg.load(NOW), reg.load(NOW)

        async def both():
            await first.record(Symbol.parse("ONE-USDT"))
            await second.record(Symbol.parse("TWO-USDT"))

        asyncio.run(both())
        assert first.new_misses == ["ONE-USDT"] and second.new_misses == ["TWO-USDT"]
        first.persist()
        second.persist()
        assert reg.read(NOW) == {"ONE-USDT", "TWO-USDT"}


def main() -> None:
    for name, fn in sorted(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
    print("registry tests OK")


if __name__ == "__main__":
    main()
