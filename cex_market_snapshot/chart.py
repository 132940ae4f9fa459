from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

import pandas as pd
import plotly.graph_objects as go

from .ranking import RankedCollection
from .types import Instrument, Symbol


WARN_COLOR = "#f59e0b"
ANCHOR_COLOR = "gold"


@dataclass
class ChartPayload:
    title: str
    hours: float
    collected: int
    total: int
    figure: go.Figure

    def to_html(self) -> str:
        return self.figure.to_html(full_html=False, include_plotlyjs="cdn")


def hours_covered(time_index: Sequence[int]) -> float:
    if len(time_index) < 2:
        return 0.0
    return abs(time_index[-1] - time_index[0]) / 3_600_000


def _fmt_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else f"{hours:.1f}"


def chart_title(collected: int, total: int, hours: float, instrument: Instrument, warn_below: float = 0.7) -> str:
    rate = collected / total if total else 0.0
    numerator = str(collected)
    if rate < warn_below:
        numerator = f'<span style="color: {WARN_COLOR};">{collected}</span>'
    return f"Last {_fmt_hours(hours)}h of {numerator}/{total} pairs on {instrument}"


def build_chart(
    ranked: RankedCollection,
    series: Mapping[Symbol, Sequence[float]],
    time_index: Sequence[int],
    instrument: Instrument,
    anchor: Optional[Symbol] = None,
    warn_below: float = 0.7,
) -> ChartPayload:
    """Plot every normalized series: grey body, labelled top/bottom samples, anchor in gold."""
    x: List[str] = [str(t) for t in pd.to_datetime(list(time_index), unit="ms", utc=True)]
    hours = hours_covered(time_index)
    title = chart_title(len(ranked), ranked.total, hours, instrument, warn_below)

    top = ranked.top()
    bottom = ranked.bottom()
    highlighted = {e.symbol for e in top} | {e.symbol for e in bottom}

    fig = go.Figure()
    for symbol in ranked.symbols:
        if symbol == anchor or symbol in highlighted:
            continue
        fig.add_trace(
            go.Scatter(x=x, y=list(series[symbol]), mode="lines", line=dict(width=1, color="grey"), showlegend=False)
        )

    def labelled(symbol: Symbol, label: str, width: float, color: Optional[str] = None) -> None:
        entry = ranked.get(symbol)
        change = entry.change if entry is not None else 0.0
        sign = "+" if change >= 0 else "-"
        line = dict(width=width)
        if color:
            line["color"] = color
        fig.add_trace(
            go.Scatter(
                x=x,
                y=list(series[symbol]),
                mode="lines",
                line=line,
                name=f"{label:<5}{sign}{abs(change) * 100:>5.2f}%",
            )
        )

    for e in top:
        if e.symbol != anchor:
            labelled(e.symbol, e.symbol.display_name, 2.0)
    if anchor is not None and anchor in series:
        labelled(anchor, f"~{anchor.display_name}~", 3.5, ANCHOR_COLOR)
    for e in reversed(bottom):
        if e.symbol != anchor and e.symbol not in {t.symbol for t in top}:
            labelled(e.symbol, e.symbol.display_name, 2.0)

    fig.update_layout(
        title=dict(text=title, x=0.5),
        xaxis=dict(title="Time (UTC)", gridcolor="lightgray"),
        yaxis=dict(title="ln(close / first close)", gridcolor="lightgray"),
        template="plotly_white",
        showlegend=True,
    )
    return ChartPayload(title=title, hours=hours, collected=len(ranked), total=ranked.total, figure=fig)
