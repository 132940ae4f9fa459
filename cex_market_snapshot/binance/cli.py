from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from ..config import SnapshotConfig
from ..errors import SnapshotError
from ..exchange import ExchangeClient
from ..ranking import PRICE_TITLES
from ..service import MarketSnapshotService
from ..types import CollectionParams, Instrument, LsrScope, RequestRange, Timeframe
from .api import BinanceClient


DEFAULT_TIMEFRAME = "5m"
DEFAULT_BARS = 24 * 12 + 1  # 24h of 5m bars


@dataclass
class RunConfig:
    panel: str
    timeframe: str = DEFAULT_TIMEFRAME
    bars: int = DEFAULT_BARS
    instrument: str = "perp"
    scope: str = "global"
    rows: Optional[int] = None
    html_path: Optional[Path] = None
    watch_s: Optional[float] = None
    debug: bool = False
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig.from_env)


def _plain(title: str) -> str:
    # chart titles may carry an html span around the collected count
    return re.sub(r"<[^>]+>", "", title)


async def build_once(service: MarketSnapshotService, cfg: RunConfig) -> int:
    threshold = service.config.min_success_rate
    exchange = service.config.exchange_name
    if cfg.panel == "market-structure":
        params = CollectionParams(Timeframe(cfg.timeframe), RequestRange(cfg.bars), Instrument.parse(cfg.instrument))
        ms = await service.build_market_structure(params)
        print(_plain(ms.chart.title))
        print(ms.ranked.format_outliers(cfg.rows, PRICE_TITLES, exchange, str(params.instrument)))
        if cfg.html_path is not None:
            cfg.html_path.parent.mkdir(parents=True, exist_ok=True)
            cfg.html_path.write_text(ms.chart.to_html(), encoding="utf-8")
        ranked = ms.ranked
        summary = f"panel=market_structure collected={ranked.coverage} cached={ms.from_cache} misaligned={len(ms.misaligned)}"
    else:
        panel = await service.build_lsr(Timeframe(cfg.timeframe), RequestRange(cfg.bars), LsrScope.parse(cfg.scope))
        ranked = panel.ranked
        print(ranked.format_outliers(cfg.rows, exchange=exchange, instrument=str(Instrument.PERP)))
        summary = (
            f"panel=lsr scope={panel.scope.value} collected={ranked.coverage} "
            f"failed={len(panel.report.failures)} no_data={len(panel.report.soft_misses)}"
        )

    if ranked.success_rate < threshold:
        print(f"[WARN] only {ranked.coverage} pairs collected (below {threshold:.0%})")
    print(summary)
    return 0


async def run(cfg: RunConfig, client: Optional[ExchangeClient] = None) -> int:
    if client is None:
        client = BinanceClient(
            max_tries=cfg.snapshot.max_tries,
            request_timeout_s=cfg.snapshot.request_timeout_s,
        )
    async with client:
        service = MarketSnapshotService.from_config(client, cfg.snapshot)
        while True:
            try:
                code = await build_once(service, cfg)
            except SnapshotError as e:
                print(f"[ERROR] {e}", file=sys.stderr)
                code = 2
            if not cfg.watch_s:
                return code
            await asyncio.sleep(cfg.watch_s)


def run_once(cfg: RunConfig, client: Optional[ExchangeClient] = None) -> int:
    return asyncio.run(run(replace(cfg, watch_s=None), client))


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    p = argparse.ArgumentParser(description="Cross-sectional market snapshots over every USDT pair on Binance")
    p.add_argument("panel", choices=["market-structure", "lsr"], help="Which panel to build")
    p.add_argument("--tf", default=DEFAULT_TIMEFRAME, help="Bar timeframe, e.g. 5m, 1h, 1d")
    p.add_argument("--bars", type=int, default=DEFAULT_BARS, help="Number of most recent bars to request")
    p.add_argument("--instrument", default="perp", choices=["perp", "spot"], help="Market for the price panel")
    p.add_argument("--scope", default="global", choices=[s.value for s in LsrScope], help="Long/short ratio kind")
    p.add_argument("--rows", type=int, default=None, help="Outlier rows per column (default: round(ln N))")
    p.add_argument("--state-dir", type=Path, default=None, help="Directory for cached snapshots and no-data lists")
    p.add_argument("--max-in-flight", type=int, default=None, help="Max concurrent requests to the exchange")
    p.add_argument("--timeout", type=float, default=None, help="Abort a build after this many seconds")
    p.add_argument("--html", type=Path, default=None, help="Write the market-structure chart as an html fragment")
    p.add_argument("--watch", type=float, default=None, help="Rebuild every N seconds")
    p.add_argument("--debug", action="store_true", help="Verbose logging")
    args = p.parse_args(argv)

    snap = SnapshotConfig.from_env()
    if args.state_dir is not None:
        snap.state_dir = args.state_dir
    if args.max_in_flight is not None:
        snap.max_in_flight = args.max_in_flight
    if args.timeout is not None:
        snap.build_timeout_s = args.timeout

    return RunConfig(
        panel=args.panel,
        timeframe=args.tf,
        bars=args.bars,
        instrument=args.instrument,
        scope=args.scope,
        rows=args.rows,
        html_path=args.html,
        watch_s=args.watch,
        debug=args.debug,
        snapshot=snap,
    )


def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if cfg.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run(cfg))
    except KeyboardInterrupt:
        return 130
    except Exception as e:  # surface clear error message
        print(f"[ERROR] {e}", file=sys.stderr)
        if cfg.debug:
            raise
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
