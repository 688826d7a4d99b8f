from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mbdr.config import CaSensor, FusionModel, SensorTopology, SimModel  # noqa: E402
from tests.helpers import write_container  # noqa: E402


@pytest.fixture
def small_model() -> SimModel:
    """Two vesicles, two synaptotagmin sensors of two sites each, no pulses."""

    return SimModel(
        topology=SensorTopology(
            vesicle_ids=("1_1", "1_2"),
            sensors=(CaSensor((1, 2)), CaSensor((3, 4))),
        ),
        pulse_duration=0.0,
    )


@pytest.fixture
def small_fusion() -> FusionModel:
    return FusionModel(
        num_sensors_total=2,
        num_sensors_required_active=2,
        num_sites_required_per_sensor=1,
    )


@pytest.fixture
def make_container(tmp_path: Path) -> Callable[[str, bytes], Path]:
    """Factory writing a bzip2 container below ``tmp_path``."""

    def _make(name: str, payload: bytes) -> Path:
        return write_container(tmp_path / name, payload)

    return _make
