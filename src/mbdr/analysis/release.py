"""
Vesicle Release Detection (Functional Core)

Pure functions only.  No I/O, no logging, no shared mutable state: the
same trace analysed twice with the same configuration and seed yields the
same outcomes.

Package Location: src/mbdr/analysis/release.py

Per vesicle the detector walks a small forward-only state machine::

    Pending --(t* found)--------> Released(t*)
    Pending --(trace ends)------> Exhausted      (released=False, no failure)
    Pending --(block missing)---> Failed(MISSING_DATA)
    Pending --(NaN / negative)--> Failed(MALFORMED_DATA)

Occupancy Rule:
    A site counts as occupied at iteration t when its block sample is > 0.
    A sensor is active at t when at least ``num_sites_required_per_sensor``
    of its sites are occupied.

Pulses:
    With a pulse duration the latency is measured from the onset of the
    pulse containing t*; releases after the last onset count towards the
    last pulse.

Deterministic Rule:
    t* is the first iteration at which the number of active synaptotagmin
    sensors is >= ``num_sensors_required_active``.

Energy Model:
    The active-sensor configuration at every iteration sets a fusion rate.
    Cumulative hazard H(t) = sum(rate * time_step) is non-decreasing; one
    unit-exponential threshold is drawn per vesicle and t* is the first
    iteration with H(t) >= threshold.  The random stream for vesicle ``i``
    is ``numpy.random.default_rng([*seed, i])``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..config import FusionModel, SimModel, SiteType
from .decoders import Trace

# Per-seed suffix the simulator appends to block names, e.g. ".0001.dat"
_SEED_SUFFIX = re.compile(r"(\.\d+)?\.dat$")

# Fraction of a pulse below which a time counts as on the next onset
_ONSET_TOLERANCE: float = 1e-9

Seed = Union[None, int, Sequence[int]]
RateFunction = Callable[[np.ndarray, np.ndarray, FusionModel], np.ndarray]


class FailureReason(Enum):
    MISSING_DATA = "missing_data"
    MALFORMED_DATA = "malformed_data"


@dataclass(frozen=True)
class ReleaseOutcome:
    """Result of analysing one vesicle in one trace.

    ``latency`` and ``iteration`` are set iff ``released``; ``failure`` is
    set iff the vesicle's data was absent or malformed.  ``pulse`` is the
    index of the stimulus pulse the release fell into when the model has a
    pulse duration.
    """

    vesicle_id: str
    released: bool
    iteration: Optional[int] = None
    latency: Optional[float] = None
    pulse: Optional[int] = None
    failure: Optional[FailureReason] = None
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.failure is not None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def analyze_trace(
    trace: Trace,
    model: SimModel,
    fusion: FusionModel,
    seed: Seed = None,
    rate_fn: Optional[RateFunction] = None,
) -> Tuple[ReleaseOutcome, ...]:
    """
    Determine release events for every vesicle of the model in one trace.

    Args:
        trace: Fully decoded trace (``trace.blocks`` must not be ``None``).
        model: Simulation model holding the sensor topology and pulse timing.
        fusion: Release rule parameters; assumed already validated.
        seed: Entropy for the energy model.  ``None`` draws fresh entropy;
            ignored by the deterministic rule.
        rate_fn: Energy-model rate function; defaults to
            :func:`energy_rate`.

    Returns:
        One ``ReleaseOutcome`` per vesicle, in topology order.

    Raises:
        ValueError: If the trace was decoded header-only.
    """
    if trace.blocks is None:
        raise ValueError("trace holds no data blocks; decode it with read()")

    blocks = trace.blocks
    index = build_block_index(blocks.columns)
    times = trace.header.sample_times()
    rate_fn = rate_fn or energy_rate

    outcomes: List[ReleaseOutcome] = []
    for vesicle_index, vesicle_id in enumerate(model.topology.vesicle_ids):
        outcomes.append(
            _analyze_vesicle(
                vesicle_id, blocks, index, times, trace.header.time_step,
                model, fusion, _vesicle_entropy(seed, vesicle_index), rate_fn,
            )
        )
    return tuple(outcomes)


def energy_rate(
    active_syt: np.ndarray,
    bound_y: np.ndarray,
    fusion: FusionModel,
) -> np.ndarray:
    """Fusion rate per iteration from the active-sensor configuration.

    ``rate = base_rate * exp(syt_energy * n_active_syt + y_energy * n_bound_y)``
    """
    return fusion.base_rate * np.exp(
        fusion.syt_energy * active_syt + fusion.y_energy * bound_y
    )


def build_block_index(names: Iterable[str]) -> Dict[str, str]:
    """Map lookup keys to trace column names.

    Every name is reachable under itself and under its stem with a trailing
    seed suffix (``.0001.dat`` or ``.dat``) removed.  Exact names win over
    stems when the two collide.
    """
    names = list(names)
    index: Dict[str, str] = {}
    for name in names:
        stem = _SEED_SUFFIX.sub("", name)
        if stem != name:
            index.setdefault(stem, name)
    for name in names:
        index[name] = name
    return index


def first_passage(signal: np.ndarray) -> Optional[int]:
    """Index of the first ``True`` in a boolean vector, or ``None``."""
    if signal.size == 0 or not signal.any():
        return None
    return int(np.argmax(signal))


def pulse_index(event_time: float, pulse_duration: float, num_pulses: int) -> int:
    """Index of the stimulus pulse whose onset most recently precedes
    ``event_time``.

    Times within ``_ONSET_TOLERANCE`` pulses of an onset belong to that
    pulse, so ``0.3`` with 0.1 s pulses is pulse 3 despite float rounding.
    Releases after the last onset stay in pulse ``num_pulses - 1``.
    """
    pulse = math.floor(event_time / pulse_duration + _ONSET_TOLERANCE)
    return max(0, min(pulse, num_pulses - 1))


def deterministic_release_iteration(
    active_counts: np.ndarray, required: int
) -> Optional[int]:
    return first_passage(active_counts >= required)


def stochastic_release_iteration(
    rate: np.ndarray, time_step: float, rng: np.random.Generator
) -> Optional[int]:
    """Sample a single release iteration from a per-iteration rate.

    Negative rates are treated as zero so the cumulative hazard never
    decreases.
    """
    hazard = np.cumsum(np.clip(rate, 0.0, None) * time_step)
    threshold = rng.exponential(1.0)
    return first_passage(hazard >= threshold)


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

def _vesicle_entropy(seed: Seed, vesicle_index: int) -> Optional[List[int]]:
    if seed is None:
        return None
    if isinstance(seed, (int, np.integer)):
        return [int(seed), vesicle_index]
    return [int(s) for s in seed] + [vesicle_index]


def _analyze_vesicle(
    vesicle_id: str,
    blocks: pd.DataFrame,
    index: Dict[str, str],
    times: np.ndarray,
    time_step: float,
    model: SimModel,
    fusion: FusionModel,
    entropy: Optional[List[int]],
    rate_fn: RateFunction,
) -> ReleaseOutcome:
    topo = model.topology

    # Resolve every site block before looking at any sample
    sensor_columns: List[List[str]] = []
    missing: List[str] = []
    for sensor in topo.sensors:
        columns = []
        for site in sensor.sites:
            key = topo.block_name(vesicle_id, site)
            if key in index:
                columns.append(index[key])
            else:
                missing.append(key)
        sensor_columns.append(columns)

    if missing:
        return ReleaseOutcome(
            vesicle_id=vesicle_id,
            released=False,
            failure=FailureReason.MISSING_DATA,
            detail="missing blocks: " + ", ".join(missing),
        )

    occupancy: List[np.ndarray] = []
    for columns in sensor_columns:
        values = blocks[columns].to_numpy(dtype=np.float64)
        if np.isnan(values).any() or (values < 0).any():
            return ReleaseOutcome(
                vesicle_id=vesicle_id,
                released=False,
                failure=FailureReason.MALFORMED_DATA,
                detail="NaN or negative samples in: " + ", ".join(columns),
            )
        occupancy.append((values > 0).sum(axis=1))

    n = len(blocks)
    syt = topo.sensor_indices(SiteType.SYT)
    active_syt = np.zeros(n, dtype=np.int64)
    for i in syt:
        active_syt += occupancy[i] >= fusion.num_sites_required_per_sensor

    if fusion.energy_model:
        bound_y = np.zeros(n, dtype=np.int64)
        for i in topo.sensor_indices(SiteType.Y):
            bound_y += occupancy[i]
        rate = np.asarray(rate_fn(active_syt, bound_y, fusion), dtype=np.float64)
        t_star = stochastic_release_iteration(
            rate, time_step, np.random.default_rng(entropy)
        )
    else:
        t_star = deterministic_release_iteration(
            active_syt, fusion.num_sensors_required_active
        )

    if t_star is None:
        return ReleaseOutcome(vesicle_id=vesicle_id, released=False)

    event_time = float(times[t_star])
    pulse: Optional[int] = None
    latency = event_time
    if model.pulse_duration > 0:
        pulse = pulse_index(event_time, model.pulse_duration, model.num_pulses)
        latency = max(0.0, event_time - pulse * model.pulse_duration)

    return ReleaseOutcome(
        vesicle_id=vesicle_id,
        released=True,
        iteration=t_star,
        latency=latency,
        pulse=pulse,
    )
