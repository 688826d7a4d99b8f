"""
Model Configuration for mbdr

Immutable descriptions of the simulated system (vesicles, calcium sensors,
stimulus pulses) and of the fusion rule applied to it.  A configuration is
assembled once at startup, either from the built-in mouse NMJ preset or
from a JSON document, validated once with :func:`validate_config`, and then
shared read-only by every worker of a batch run.

Package Location: src/mbdr/config.py

JSON layout::

    {
        "model": {
            "vesicle_ids":    ["1_1", "1_2"],
            "block_template": "bound_vesicle_{vesicle}_{site}",
            "pulse_duration": 3e-3,
            "num_pulses":     1,
            "sensors": [
                {"sites": [8, 9, 29, 30, 31], "site_type": "syt"},
                {"sites": [60],               "site_type": "y"}
            ]
        },
        "fusion": {
            "num_sensors_total":             8,
            "num_sensors_required_active":   2,
            "num_sites_required_per_sensor": 2,
            "energy_model":                  false
        }
    }
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple


class ConfigError(ValueError):
    """Invalid model or fusion configuration.

    Fatal for the whole run; raised before any file is processed.
    """
    pass


class SiteType(Enum):
    """Kind of calcium-binding site a sensor is made of."""

    SYT = "syt"
    Y = "y"


@dataclass(frozen=True)
class CaSensor:
    """A calcium sensor: a group of binding sites of one type."""

    sites: Tuple[int, ...]
    site_type: SiteType = SiteType.SYT


@dataclass(frozen=True)
class SensorTopology:
    """Maps every vesicle's sensors onto block names of a decoded trace.

    All vesicles share the same sensor layout.  The block holding site
    ``s`` of vesicle ``v`` is ``block_template.format(vesicle=v, site=s)``.
    """

    vesicle_ids: Tuple[str, ...]
    sensors: Tuple[CaSensor, ...]
    block_template: str = "bound_vesicle_{vesicle}_{site}"

    def sites_for(self, vesicle_id: str, sensor_index: int) -> Tuple[int, ...]:
        if vesicle_id not in self.vesicle_ids:
            raise KeyError(f"unknown vesicle {vesicle_id!r}")
        return self.sensors[sensor_index].sites

    def block_name(self, vesicle_id: str, site: int) -> str:
        return self.block_template.format(vesicle=vesicle_id, site=site)

    def sensor_indices(self, site_type: SiteType) -> List[int]:
        return [i for i, s in enumerate(self.sensors) if s.site_type is site_type]


@dataclass(frozen=True)
class SimModel:
    """Static description of the simulated system."""

    topology: SensorTopology
    pulse_duration: float = 0.0
    num_pulses: int = 1


@dataclass(frozen=True)
class FusionModel:
    """Release rule parameters.

    Deterministic rule: a vesicle fuses at the first iteration where at
    least ``num_sensors_required_active`` synaptotagmin sensors each have at
    least ``num_sites_required_per_sensor`` occupied sites.

    Energy model: fusion rate ``base_rate * exp(syt_energy * n_active_syt
    + y_energy * n_bound_y)`` with energies in units of kT.
    """

    num_sensors_total: int
    num_sensors_required_active: int
    num_sites_required_per_sensor: int = 0
    energy_model: bool = False
    base_rate: float = 0.0
    syt_energy: float = 0.0
    y_energy: float = 0.0


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_config(model: SimModel, fusion: FusionModel) -> None:
    """Check a model/fusion combination once, before any analysis.

    Raises:
        ConfigError: Describing the first problem found.
    """
    topo = model.topology

    if not topo.vesicle_ids:
        raise ConfigError("no vesicles configured")
    if len(set(topo.vesicle_ids)) != len(topo.vesicle_ids):
        raise ConfigError("vesicle ids must be unique")
    if "{vesicle}" not in topo.block_template or "{site}" not in topo.block_template:
        raise ConfigError(
            f"block template {topo.block_template!r} must contain "
            f"'{{vesicle}}' and '{{site}}'"
        )

    seen: Dict[SiteType, set] = {t: set() for t in SiteType}
    for i, sensor in enumerate(topo.sensors):
        if not sensor.sites:
            raise ConfigError(f"sensor {i} has no sites")
        if any(s < 0 for s in sensor.sites):
            raise ConfigError(f"sensor {i} has negative site indices")
        if len(set(sensor.sites)) != len(sensor.sites):
            raise ConfigError(f"sensor {i} lists a site more than once")
        shared = seen[sensor.site_type].intersection(sensor.sites)
        if shared:
            raise ConfigError(
                f"sites {sorted(shared)} of sensor {i} already belong to "
                f"another {sensor.site_type.value} sensor"
            )
        seen[sensor.site_type].update(sensor.sites)

    for name in ("num_sensors_total", "num_sensors_required_active",
                 "num_sites_required_per_sensor"):
        if getattr(fusion, name) < 0:
            raise ConfigError(f"{name} must be >= 0")

    if fusion.num_sensors_required_active > fusion.num_sensors_total:
        raise ConfigError(
            f"num_sensors_required_active ({fusion.num_sensors_required_active}) "
            f"exceeds num_sensors_total ({fusion.num_sensors_total})"
        )

    syt = topo.sensor_indices(SiteType.SYT)
    if len(syt) != fusion.num_sensors_total:
        raise ConfigError(
            f"topology defines {len(syt)} synaptotagmin sensors, fusion model "
            f"expects {fusion.num_sensors_total}"
        )
    if syt:
        smallest = min(len(topo.sensors[i].sites) for i in syt)
        if fusion.num_sites_required_per_sensor > smallest:
            raise ConfigError(
                f"num_sites_required_per_sensor "
                f"({fusion.num_sites_required_per_sensor}) exceeds the size of "
                f"the smallest sensor ({smallest})"
            )

    if fusion.energy_model:
        for name in ("base_rate", "syt_energy", "y_energy"):
            if not math.isfinite(getattr(fusion, name)):
                raise ConfigError(f"{name} must be finite")
        if fusion.base_rate < 0:
            raise ConfigError("base_rate must be >= 0")

    if model.pulse_duration < 0 or not math.isfinite(model.pulse_duration):
        raise ConfigError("pulse_duration must be a finite value >= 0")
    if model.num_pulses < 1:
        raise ConfigError("num_pulses must be >= 1")


# ---------------------------------------------------------------------------
# Mouse NMJ preset
# ---------------------------------------------------------------------------
# 6 active zones with 2 vesicles each, 8 synaptotagmin sensors of 5 sites
# (Dittrich et al., Biophys. J. 2013, 104:2751-2763).

_MOUSE_SYT_SITES: Tuple[Tuple[int, ...], ...] = (
    (8, 9, 29, 30, 31),
    (7, 32, 33, 34, 35),
    (3, 6, 36, 37, 38),
    (17, 39, 40, 41, 42),
    (15, 16, 43, 44, 45),
    (14, 46, 47, 48, 49),
    (4, 12, 24, 50, 51),
    (10, 25, 26, 27, 28),
)

MOUSE_NMJ_MODEL = SimModel(
    topology=SensorTopology(
        vesicle_ids=tuple(
            f"{az}_{v}" for az in range(1, 7) for v in (1, 2)
        ),
        sensors=tuple(CaSensor(sites) for sites in _MOUSE_SYT_SITES),
    ),
    pulse_duration=3e-3,
    num_pulses=1,
)

# A sensor with 0 required sites is active with nothing bound
MOUSE_NMJ_FUSION = FusionModel(
    num_sensors_total=8,
    num_sensors_required_active=2,
    num_sites_required_per_sensor=2,
    energy_model=False,
)


# ---------------------------------------------------------------------------
# JSON loading
# ---------------------------------------------------------------------------

def _sensor_from_dict(raw: Dict[str, Any], index: int) -> CaSensor:
    try:
        site_type = SiteType(raw.get("site_type", "syt"))
    except ValueError as exc:
        raise ConfigError(
            f"sensor {index}: unknown site type {raw.get('site_type')!r}"
        ) from exc
    sites: Iterable[Any] = raw.get("sites", ())
    try:
        return CaSensor(sites=tuple(int(s) for s in sites), site_type=site_type)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"sensor {index}: invalid site list {sites!r}") from exc


def config_from_dict(raw: Dict[str, Any]) -> Tuple[SimModel, FusionModel]:
    """Build ``(SimModel, FusionModel)`` from a parsed JSON document.

    Missing sections or keys fall back to the mouse NMJ preset.

    Raises:
        ConfigError: On unknown keys or values of the wrong type.
    """
    model_raw = dict(raw.get("model", {}))
    fusion_raw = dict(raw.get("fusion", {}))

    preset_topo = MOUSE_NMJ_MODEL.topology
    if "sensors" in model_raw:
        sensors = tuple(
            _sensor_from_dict(s, i) for i, s in enumerate(model_raw.pop("sensors"))
        )
    else:
        sensors = preset_topo.sensors

    try:
        topology = SensorTopology(
            vesicle_ids=tuple(
                str(v) for v in model_raw.pop("vesicle_ids", preset_topo.vesicle_ids)
            ),
            sensors=sensors,
            block_template=str(
                model_raw.pop("block_template", preset_topo.block_template)
            ),
        )
        model = SimModel(
            topology=topology,
            pulse_duration=float(
                model_raw.pop("pulse_duration", MOUSE_NMJ_MODEL.pulse_duration)
            ),
            num_pulses=int(model_raw.pop("num_pulses", MOUSE_NMJ_MODEL.num_pulses)),
        )
        if model_raw:
            raise ConfigError(f"unknown model keys: {sorted(model_raw)}")
        fusion = FusionModel(**{**_fusion_defaults(), **fusion_raw})
    except TypeError as exc:
        raise ConfigError(f"invalid fusion configuration: {exc}") from exc
    except ValueError as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"invalid model configuration: {exc}") from exc
    return model, fusion


def _fusion_defaults() -> Dict[str, Any]:
    return {
        f: getattr(MOUSE_NMJ_FUSION, f)
        for f in MOUSE_NMJ_FUSION.__dataclass_fields__
    }


def load_model_config(path: Path) -> Tuple[SimModel, FusionModel]:
    """Read a JSON model configuration file.

    Args:
        path: Path to the JSON document.

    Returns:
        ``(SimModel, FusionModel)``; not yet validated.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    path = Path(path)
    try:
        with path.open() as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot load model configuration {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a JSON object")
    return config_from_dict(raw)
