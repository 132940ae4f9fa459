#!/usr/bin/env python3
from __future__ import annotations

import contextlib
import io
import tempfile
from pathlib import Path
import sys


def _tests_dir() -> Path:
    return Path(__file__).resolve().parents[1]


if str(_tests_dir()) not in sys.path:
    sys.path.append(str(_tests_dir()))

from fakes import FakeExchange, boom, make_klines, make_lsr  # noqa: E402

from cex_market_snapshot.binance.cli import RunConfig, parse_args, run_once  # noqa: E402
from cex_market_snapshot.config import SnapshotConfig  # noqa: E402


def _exchange() -> FakeExchange:
    names = ["BTC-USDT", "ETH-USDT", "SOL-USDT", "XYZ-USDT"]
    return FakeExchange(
        names,
        klines={
            "BTC-USDT": make_klines(6),
            "ETH-USDT": make_klines(6, growth=0.01),
            "SOL-USDT": make_klines(6, growth=-0.01),
        },
        lsr={n: make_lsr(6, 0.5, 0.4 + 0.05 * i) for i, n in enumerate(names)},
        errors={"XYZ-USDT": boom()},
    )


def _run(cfg: RunConfig, fx: FakeExchange):
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = run_once(cfg, client=fx)
    return code, out.getvalue(), err.getvalue()


def test_market_structure_prints_outliers_and_writes_html():
    with tempfile.TemporaryDirectory() as d:
        html = Path(d) / "out" / "chart.html"
        cfg = RunConfig(panel="market-structure", bars=6, html_path=html, snapshot=SnapshotConfig(state_dir=Path(d)))
        fx = _exchange()
        code, out, _ = _run(cfg, fx)
        assert code == 0
        assert out.splitlines()[0] == "Last 0.4h of 3/4 pairs on perp"
        assert "Top Gainers (% change)" in out
        assert "Collected for 3/4 pairs on Binance/perp" in out
        assert "panel=market_structure collected=3/4 cached=False misaligned=0" in out
        assert "[WARN]" not in out
        assert html.exists() and "<div" in html.read_text(encoding="utf-8")
        assert fx.closed

        code, out, _ = _run(cfg, _exchange())
        assert code == 0 and "cached=True" in out


def test_lsr_panel_and_low_coverage_warning():
    with tempfile.TemporaryDirectory() as d:
        fx = _exchange()
        fx.errors.update({"SOL-USDT": boom(), "ETH-USDT": boom()})
        cfg = RunConfig(panel="lsr", bars=6, snapshot=SnapshotConfig(state_dir=Path(d)))
        code, out, _ = _run(cfg, fx)
        assert code == 0
        assert "Most Shorted (% longs)" not in out  # one pair, no outlier rows
        assert "Collected for 1/4 pairs on Binance/perp" in out
        assert "[WARN] only 1/4 pairs collected (below 70%)" in out
        assert "panel=lsr scope=global collected=1/4 failed=3 no_data=0" in out


def test_fatal_errors_exit_with_code_2():
    with tempfile.TemporaryDirectory() as d:
        fx = _exchange()
        fx.errors["BTC-USDT"] = boom("anchor down")
        cfg = RunConfig(panel="market-structure", bars=6, snapshot=SnapshotConfig(state_dir=Path(d)))
        code, out, err = _run(cfg, fx)
        assert code == 2
        assert "[ERROR] anchor BTC-USDT missing" in err
        assert out == ""

        fx = FakeExchange([], info_error=boom("exchangeInfo down"))
        code, _, err = _run(cfg, fx)
        assert code == 2 and "exchangeInfo down" in err


def test_parse_args_overrides_snapshot_config():
    cfg = parse_args(["lsr", "--tf", "1h", "--bars", "48", "--scope", "top_positions", "--state-dir", "/tmp/x", "--max-in-flight", "4", "--timeout", "30"])
    assert cfg.panel == "lsr" and cfg.timeframe == "1h" and cfg.bars == 48
    assert cfg.scope == "top_positions"
    assert cfg.snapshot.state_dir == Path("/tmp/x")
    assert cfg.snapshot.max_in_flight == 4
    assert cfg.snapshot.build_timeout_s == 30.0
    defaults = parse_args(["market-structure"])
    assert defaults.timeframe == "5m" and defaults.bars == 289 and defaults.instrument == "perp"


def main() -> None:
    for name, fn in sorted(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
    print("cli tests OK")


if __name__ == "__main__":
    main()
