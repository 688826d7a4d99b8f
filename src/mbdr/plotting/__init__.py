"""
mbdr Plotting Package (Functional Core)

Pure plotting functions only – no file I/O, no side effects.
Every public function accepts DataFrames and returns a
``plotly.graph_objects.Figure``.

Modules:
    latency: Release latency histogram, pooled or per vesicle.
"""

from .latency import plot_latency_histogram

__all__ = [
    'plot_latency_histogram',
]
