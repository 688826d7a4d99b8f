from __future__ import annotations

import math

import pandas as pd
import plotly.graph_objects as go
import pytest

from mbdr.analysis.decoders import ApiVersion
from mbdr.analysis.release import FailureReason, ReleaseOutcome
from mbdr.data.batch import AggregateReport, FileResult
from mbdr.plotting import plot_latency_histogram
from mbdr.reports import format_summary, summarize, write_outcomes_csv


def _released(vesicle, latency):
    return ReleaseOutcome(vesicle, True, iteration=int(latency * 1e6), latency=latency)


@pytest.fixture
def report():
    return AggregateReport(files=[
        FileResult("seed_0.bz2", ApiVersion.V1, (
            _released("a", 1e-3),
            ReleaseOutcome("b", False),
        )),
        FileResult("seed_1.bz2", ApiVersion.V2, (
            _released("a", 3e-3),
            ReleaseOutcome("b", False, failure=FailureReason.MISSING_DATA,
                           detail="missing blocks: x"),
        )),
        FileResult("seed_2.bz2", error="ContainerReadError: gone", unreadable=True),
    ])


def test_summarize(report):
    stats = summarize(report).set_index("vesicle")

    assert list(stats.index) == ["a", "b", "all"]
    assert stats.loc["a", "released"] == 2
    assert stats.loc["a", "release_probability"] == 1.0
    assert stats.loc["a", "latency_mean"] == pytest.approx(2e-3)
    assert stats.loc["a", "latency_min"] == pytest.approx(1e-3)
    assert stats.loc["a", "latency_max"] == pytest.approx(3e-3)

    assert stats.loc["b", "released"] == 0
    assert stats.loc["b", "not_released"] == 1
    assert stats.loc["b", "failed"] == 1
    # failed vesicles never enter the probability
    assert stats.loc["b", "release_probability"] == 0.0
    assert math.isnan(stats.loc["b", "latency_mean"])

    assert stats.loc["all", "released"] == 2
    assert stats.loc["all", "not_released"] == 1
    assert stats.loc["all", "failed"] == 1
    assert stats.loc["all", "release_probability"] == pytest.approx(2 / 3)


def test_summarize_only_failures():
    report = AggregateReport(files=[
        FileResult("x", ApiVersion.V1, (
            ReleaseOutcome("a", False, failure=FailureReason.MALFORMED_DATA),
        )),
    ])

    stats = summarize(report).set_index("vesicle")

    assert stats.loc["a", "failed"] == 1
    assert math.isnan(stats.loc["a", "release_probability"])


def test_format_summary(report):
    text = format_summary(report)

    assert "files analysed: 2/3" in text
    assert "2 released, 1 not released, 1 failed" in text
    assert "mean 2.0000" in text
    assert "failed: seed_2.bz2 (ContainerReadError: gone)" in text


def test_format_summary_without_releases():
    report = AggregateReport(files=[
        FileResult("x", ApiVersion.V2, (ReleaseOutcome("a", False),)),
    ])

    assert "no release events" in format_summary(report)


def test_write_outcomes_csv(report, tmp_path):
    target = write_outcomes_csv(report, tmp_path / "out" / "outcomes.csv")

    df = pd.read_csv(target)
    assert len(df) == 5
    assert df["failure"].tolist()[-2:] == ["missing_data", "file_error"]


def test_latency_histogram(report):
    fig = plot_latency_histogram(report.to_dataframe(), bin_width_ms=0.5)

    assert isinstance(fig, go.Figure)
    assert len(fig.data) == 1
    assert sorted(fig.data[0].x) == pytest.approx([1.0, 3.0])
    assert fig.data[0].xbins.size == 0.5
    assert "(2/3 vesicles released)" in fig.layout.title.text


def test_latency_histogram_by_vesicle():
    report = AggregateReport(files=[
        FileResult("x", ApiVersion.V1, (_released("a", 1e-3), _released("b", 2e-3))),
    ])

    fig = plot_latency_histogram(report.to_dataframe(), by_vesicle=True)

    assert [t.name for t in fig.data] == ["vesicle a", "vesicle b"]
    assert fig.layout.barmode == "overlay"
