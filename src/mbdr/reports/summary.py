"""
mbdr Release Summary (Imperative Shell)

Turns an ``AggregateReport`` into per-vesicle statistics and plain-text /
CSV output.  No analysis logic lives here; all numbers come from the
outcomes computed by ``src/mbdr/analysis/release.py``.

Package Location: src/mbdr/reports/summary.py

Usage::

    from mbdr.data import BatchRunner
    from mbdr.reports import summarize, format_summary

    report = BatchRunner(model, fusion, threads=4).run(paths)
    print(format_summary(report))
    summarize(report).to_csv("latency_stats.csv", index=False)
"""

from __future__ import annotations

from pathlib import Path
from typing import List

import numpy as np
import pandas as pd

from ..data.batch import AggregateReport

_POOLED = "all"

_STAT_COLUMNS = [
    'vesicle', 'released', 'not_released', 'failed', 'release_probability',
    'latency_mean', 'latency_std', 'latency_median', 'latency_min', 'latency_max',
]


def summarize(report: AggregateReport) -> pd.DataFrame:
    """
    Per-vesicle release statistics plus a pooled ``"all"`` row.

    ``release_probability`` is released / (released + not_released); failed
    vesicles are excluded from the denominator so data problems never bias
    the release statistics.

    Args:
        report: Result of ``BatchRunner.run``.

    Returns:
        DataFrame with columns ``_STAT_COLUMNS``; vesicles in order of first
        appearance, pooled row last.
    """
    df = report.to_dataframe()
    df = df[df['vesicle'].notna()]

    rows = []
    for vesicle, group in df.groupby('vesicle', sort=False):
        rows.append(_stats_row(vesicle, group))
    rows.append(_stats_row(_POOLED, df))
    return pd.DataFrame(rows, columns=_STAT_COLUMNS)


def _stats_row(label: str, group: pd.DataFrame) -> dict:
    failed = int(group['failure'].notna().sum())
    released = int(group['released'].astype(bool).sum())
    not_released = len(group) - released - failed
    latencies = group.loc[group['released'].astype(bool), 'latency'].to_numpy(float)
    analysed = released + not_released

    def stat(fn) -> float:
        return float(fn(latencies)) if latencies.size else np.nan

    return {
        'vesicle': label,
        'released': released,
        'not_released': not_released,
        'failed': failed,
        'release_probability': released / analysed if analysed else np.nan,
        'latency_mean': stat(np.mean),
        'latency_std': stat(np.std),
        'latency_median': stat(np.median),
        'latency_min': stat(np.min),
        'latency_max': stat(np.max),
    }


def format_summary(report: AggregateReport) -> str:
    """Render a short human-readable summary of a batch run."""
    lines: List[str] = []
    n_files = len(report.files)
    n_failed_files = len(report.failed_files)
    lines.append(
        f"files analysed: {n_files - n_failed_files}/{n_files}"
    )
    lines.append(
        f"vesicles: {report.released_count} released, "
        f"{report.unreleased_count} not released, "
        f"{report.failed_vesicle_count} failed"
    )

    latencies = report.latencies()
    if latencies.size:
        lines.append(
            f"latency [ms]: mean {latencies.mean() * 1e3:.4f}  "
            f"std {latencies.std() * 1e3:.4f}  "
            f"min {latencies.min() * 1e3:.4f}  "
            f"max {latencies.max() * 1e3:.4f}"
        )
    else:
        lines.append("latency [ms]: no release events")

    for f in report.failed_files:
        lines.append(f"  failed: {f.path} ({f.error})")
    return "\n".join(lines)


def write_outcomes_csv(report: AggregateReport, path: Path) -> Path:
    """Write one row per vesicle outcome (and failed file) to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    report.to_dataframe().to_csv(path, index=False)
    return path
