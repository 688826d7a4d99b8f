from __future__ import annotations

import dataclasses
import logging
import struct

import numpy as np
import pandas as pd
import pytest

from mbdr.analysis.decoders import ApiVersion
from mbdr.config import ConfigError
from mbdr.data.batch import AggregateReport, BatchError, BatchRunner, _partition
from tests.helpers import TAG_V2, encode_v1, encode_v2, site_blocks


VESICLES = ("1_1", "1_2")
SITES = (1, 2, 3, 4)


def _release_at(onset, n=10):
    values = np.zeros(n)
    values[onset:] = 1.0
    return values


@pytest.fixture
def seed_files(make_container):
    """Six seeds, alternating container versions, release at iteration i."""
    paths = []
    for i in range(6):
        encoder = encode_v1 if i % 2 == 0 else encode_v2
        blocks = site_blocks(VESICLES, SITES, _release_at(i))
        paths.append(make_container(f"seed_{i:04d}.bin.bz2", encoder(blocks)))
    return paths


def test_run_collects_outcomes_in_input_order(small_model, small_fusion, seed_files):
    report = BatchRunner(small_model, small_fusion).run(seed_files)

    assert [f.path for f in report.files] == [str(p) for p in seed_files]
    assert [f.api_version for f in report.files] == [
        ApiVersion.V1, ApiVersion.V2] * 3
    for i, f in enumerate(report.files):
        assert [o.vesicle_id for o in f.outcomes] == list(VESICLES)
        assert [o.iteration for o in f.outcomes] == [i, i]
    assert report.released_count == 12
    assert report.unreleased_count == 0
    assert report.failed_vesicle_count == 0
    np.testing.assert_allclose(
        report.latencies(), np.repeat(np.arange(6) * 1e-6, 2)
    )


@pytest.mark.parametrize("threads", [2, 3, 4, 16])
def test_thread_count_does_not_change_the_report(
    small_model, small_fusion, seed_files, threads
):
    serial = BatchRunner(small_model, small_fusion, threads=1).run(seed_files)
    parallel = BatchRunner(small_model, small_fusion, threads=threads).run(seed_files)

    assert parallel == serial
    pd.testing.assert_frame_equal(parallel.to_dataframe(), serial.to_dataframe())


def test_energy_model_with_seed_is_reproducible_across_threads(
    small_model, small_fusion, make_container
):
    fusion = dataclasses.replace(
        small_fusion, energy_model=True, base_rate=5e3, syt_energy=1.0
    )
    blocks = site_blocks(VESICLES, SITES, np.ones(400))
    paths = [make_container(f"s{i}.bz2", encode_v2(blocks)) for i in range(5)]

    one = BatchRunner(small_model, fusion, threads=1, seed=42).run(paths)
    many = BatchRunner(small_model, fusion, threads=3, seed=42).run(paths)

    assert one == many
    # each file gets its own random stream
    assert len({f.outcomes for f in one.files}) > 1


def test_unreadable_and_malformed_files_are_isolated(
    small_model, small_fusion, seed_files, tmp_path, make_container, caplog
):
    missing = tmp_path / "missing.bin.bz2"
    unknown = make_container("future.bz2", b"MCELL_BINARY_API_7" + bytes(40))
    paths = [seed_files[0], missing, unknown, seed_files[1]]

    with caplog.at_level(logging.WARNING, logger="mbdr"):
        report = BatchRunner(small_model, small_fusion, threads=2).run(paths)

    ok0, gone, bad, ok1 = report.files
    assert not ok0.failed and not ok1.failed
    assert gone.unreadable and gone.error.startswith("ContainerReadError")
    assert not bad.unreadable and bad.error.startswith("UnknownVersionError")
    assert [f.path for f in report.failed_files] == [str(missing), str(unknown)]
    assert report.released_count == 4
    assert str(missing) in caplog.text


def test_oversized_header_fails_only_that_file(
    small_model, small_fusion, seed_files, make_container
):
    header = TAG_V2 + struct.pack("<HdQQQ", 0, 1e-6, 2 ** 40, 2 ** 40, 1)
    header += b"bound_vesicle_1_1_1\x00" + struct.pack("<QH", 1, 1)
    bad = make_container("corrupt.bz2", header)

    report = BatchRunner(small_model, small_fusion).run([seed_files[1], bad])

    good, corrupt = report.files
    assert not good.failed
    assert report.released_count == 2
    assert corrupt.error.startswith("TruncatedError")
    assert not corrupt.unreadable


def test_missing_vesicle_data_is_counted_apart_from_no_release(
    small_model, small_fusion, make_container
):
    blocks = site_blocks(VESICLES, SITES, np.zeros(5))
    blocks.pop("bound_vesicle_1_2_4")
    path = make_container("partial.bz2", encode_v1(blocks))

    report = BatchRunner(small_model, small_fusion).run([path])

    assert report.released_count == 0
    assert report.unreleased_count == 1
    assert report.failed_vesicle_count == 1
    assert report.failed_files == []


def test_empty_input_is_a_batch_error(small_model, small_fusion):
    with pytest.raises(BatchError):
        BatchRunner(small_model, small_fusion).run([])


def test_all_files_unreadable_is_a_batch_error(small_model, small_fusion, tmp_path):
    with pytest.raises(BatchError):
        BatchRunner(small_model, small_fusion, threads=2).run(
            [tmp_path / "a.bz2", tmp_path / "b.bz2"]
        )


def test_invalid_configuration_fails_before_any_file(small_model, small_fusion):
    fusion = dataclasses.replace(small_fusion, num_sensors_required_active=5)

    with pytest.raises(ConfigError):
        BatchRunner(small_model, fusion)


def test_thread_count_must_be_positive(small_model, small_fusion):
    with pytest.raises(ValueError):
        BatchRunner(small_model, small_fusion, threads=0)


def test_to_dataframe(small_model, small_fusion, seed_files, tmp_path):
    paths = [seed_files[2], tmp_path / "gone.bz2"]

    df = BatchRunner(small_model, small_fusion).run(paths).to_dataframe()

    assert list(df.columns) == [
        "file", "api_version", "vesicle", "released", "iteration",
        "latency", "pulse", "failure", "detail",
    ]
    assert len(df) == 3
    assert df["vesicle"].tolist()[:2] == list(VESICLES)
    assert df["iteration"].tolist()[:2] == [2, 2]
    assert df["api_version"].iloc[0] == "MCELL_BINARY_API_1"
    assert df["failure"].iloc[2] == "file_error"
    assert df["iteration"].dtype == "Int64"


def test_empty_report():
    report = AggregateReport()

    assert report.released_count == 0
    assert report.latencies().size == 0
    assert report.latencies_by_vesicle() == {}
    assert report.to_dataframe().empty


@pytest.mark.parametrize(
    "n, parts, sizes",
    [(6, 1, [6]), (6, 4, [2, 2, 1, 1]), (2, 8, [1, 1]), (7, 3, [3, 2, 2])],
)
def test_partition_is_contiguous(n, parts, sizes):
    items = list(range(n))

    chunks = _partition(items, parts)

    assert [len(c) for c in chunks] == sizes
    assert [x for c in chunks for x in c] == items
