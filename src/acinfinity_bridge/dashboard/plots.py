"""
Gauge figures for the status dashboard.
"""

from typing import Mapping, Optional

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

# slot name -> (title, unit suffix, axis range)
GAUGES = {
    "temperature": ("Temperature", "°C", (0.0, 45.0)),
    "humidity": ("Humidity", "%", (0.0, 100.0)),
    "vpd": ("VPD", " kPa", (0.0, 3.0)),
    "rssi": ("RSSI", " dBm", (-100.0, -30.0)),
}


def create_gauge(
    value: Optional[float], title: str, suffix: str, axis_range: tuple[float, float]
) -> go.Indicator:
    """Single gauge indicator. An unavailable value renders as an empty gauge."""
    return go.Indicator(
        mode="gauge+number",
        value=value,
        number={"suffix": suffix, "valueformat": ".2f"},
        title={"text": title if value is not None else f"{title} (no data)"},
        gauge={"axis": {"range": list(axis_range)}},
    )


def create_status_figure(snapshot: Mapping[str, Optional[float]]) -> go.Figure:
    """One row of gauges, one per telemetry slot."""
    fig = make_subplots(
        rows=1,
        cols=len(GAUGES),
        specs=[[{"type": "indicator"}] * len(GAUGES)],
    )
    for col, (name, (title, suffix, axis_range)) in enumerate(GAUGES.items(), start=1):
        fig.add_trace(
            create_gauge(snapshot.get(name), title, suffix, axis_range), row=1, col=col
        )
    fig.update_layout(height=300, margin={"l": 30, "r": 30, "t": 60, "b": 20})
    return fig
