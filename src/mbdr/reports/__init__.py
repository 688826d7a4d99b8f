"""
mbdr Reports Package (Imperative Shell)

Turns batch results into statistics tables, text summaries and CSV files.
No analysis logic lives here.

Modules:
    summary: summarize() per-vesicle statistics, format_summary() text
             output and write_outcomes_csv().
"""

from .summary import (
    format_summary,
    summarize,
    write_outcomes_csv,
)

__all__ = [
    'format_summary',
    'summarize',
    'write_outcomes_csv',
]
