"""
mbdr Release Latency Histogram (Functional Core)

Pure function – no file I/O, no side effects.
Input: outcomes DataFrame as produced by ``AggregateReport.to_dataframe``.
Output: plotly.graph_objects.Figure.

Package Location: src/mbdr/plotting/latency.py

Failed vesicles and failed files are excluded; vesicles that did not
release are reported in the title, never plotted as a latency.
"""

from __future__ import annotations

from typing import Optional

import pandas as pd
import plotly.graph_objects as go

# Latencies are stored in seconds and plotted in milliseconds
_MS: float = 1e3


def plot_latency_histogram(
    df_outcomes: pd.DataFrame,
    bin_width_ms: Optional[float] = None,
    by_vesicle: bool = False,
    title: str = "Release latency",
) -> go.Figure:
    """
    Build a release latency histogram.

    Args:
        df_outcomes: DataFrame with at least the columns::

            vesicle  : str, vesicle id (None for failed files)
            released : bool
            latency  : float seconds, NaN when not released
            failure  : str or None

        bin_width_ms: Histogram bin width in milliseconds; plotly picks the
            bins when ``None``.
        by_vesicle: Overlay one histogram per vesicle instead of pooling.
        title: Figure title prefix.

    Returns:
        ``go.Figure`` with one histogram trace (or one per vesicle).
    """
    analysed = df_outcomes[
        df_outcomes['vesicle'].notna() & df_outcomes['failure'].isna()
    ]
    released = analysed[analysed['released'].astype(bool)]
    n_released = len(released)
    n_total = len(analysed)

    xbins = dict(size=bin_width_ms) if bin_width_ms else None

    fig = go.Figure()
    if by_vesicle:
        for vesicle, group in released.groupby('vesicle', sort=False):
            fig.add_trace(go.Histogram(
                x=group['latency'] * _MS,
                name=f"vesicle {vesicle}",
                xbins=xbins,
                opacity=0.6,
            ))
        fig.update_layout(barmode='overlay')
    else:
        fig.add_trace(go.Histogram(
            x=released['latency'] * _MS,
            name="all vesicles",
            xbins=xbins,
            marker_color='steelblue',
        ))

    fig.update_layout(
        title=f"{title} ({n_released}/{n_total} vesicles released)",
        xaxis_title="latency [ms]",
        yaxis_title="release events",
        template='plotly_white',
        showlegend=by_vesicle,
    )
    return fig
