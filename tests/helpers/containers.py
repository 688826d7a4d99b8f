"""Encoders producing MCell binary containers in both supported layouts."""

from __future__ import annotations

import bz2
import struct
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

TAG_V1 = b"MCELL_BINARY_API_1"
TAG_V2 = b"MCELL_BINARY_API_2"

DTYPE_INT = 0
DTYPE_DOUBLE = 1
_NUMPY_DTYPES = {DTYPE_INT: "<i4", DTYPE_DOUBLE: "<f8"}


def encode_v1(
    blocks: Mapping[str, Sequence[float]],
    time_step: float = 1e-6,
    iteration_count: Optional[int] = None,
    sample_counts: Optional[Mapping[str, int]] = None,
) -> bytes:
    """Encode ``blocks`` (name -> samples) as an uncompressed API 1 stream."""
    arrays = {name: np.asarray(v, dtype="<f8") for name, v in blocks.items()}
    if iteration_count is None:
        iteration_count = len(next(iter(arrays.values()))) if arrays else 0
    sample_counts = dict(sample_counts or {})

    out = bytearray(TAG_V1)
    out += struct.pack("<dII", time_step, iteration_count, len(arrays))
    for name, values in arrays.items():
        raw = name.encode("ascii")
        out += struct.pack("<H", len(raw)) + raw
        out += struct.pack("<I", sample_counts.get(name, len(values)))
    for values in arrays.values():
        out += values.tobytes()
    return bytes(out)


def encode_v2(
    blocks: Mapping[str, object],
    time_step: float = 1e-6,
    buffer_size: int = 4,
    dtypes: Optional[Mapping[str, Sequence[int]]] = None,
    output_times: Optional[Sequence[float]] = None,
) -> bytes:
    """Encode ``blocks`` as an uncompressed API 2 stream.

    A block value is either a 1-D sample sequence (one column) or a tuple of
    column sequences.  ``dtypes`` maps block names to per-column dtype codes
    (default: double).
    """
    dtypes = dict(dtypes or {})
    columns: Dict[str, List[np.ndarray]] = {}
    codes: Dict[str, List[int]] = {}
    for name, value in blocks.items():
        cols = list(value) if isinstance(value, tuple) else [value]
        block_codes = list(dtypes.get(name, [DTYPE_DOUBLE] * len(cols)))
        columns[name] = [
            np.asarray(c, dtype=_NUMPY_DTYPES[code])
            for c, code in zip(cols, block_codes)
        ]
        codes[name] = block_codes

    first = next(iter(columns.values()), [np.empty(0)])
    iteration_count = len(first[0])

    out = bytearray(TAG_V2)
    if output_times is None:
        out += struct.pack("<Hd", 0, time_step)
    else:
        out += struct.pack("<HQ", 1, len(output_times))
        out += np.asarray(output_times, dtype="<f8").tobytes()
    out += struct.pack("<QQQ", iteration_count, buffer_size, len(columns))
    for name in columns:
        out += name.encode("ascii") + b"\x00"
    for name in columns:
        out += struct.pack("<Q", len(codes[name]))
        for code in codes[name]:
            out += struct.pack("<H", code)

    start = 0
    while start < iteration_count:
        stop = min(start + buffer_size, iteration_count)
        for cols in columns.values():
            for col in cols:
                out += col[start:stop].tobytes()
        start = stop
    return bytes(out)


def write_container(path: Path, payload: bytes) -> Path:
    """bzip2-compress ``payload`` into ``path``."""
    path = Path(path)
    path.write_bytes(bz2.compress(payload))
    return path


def site_blocks(
    vesicles: Iterable[str],
    sites: Iterable[int],
    values: Sequence[float],
    template: str = "bound_vesicle_{vesicle}_{site}",
) -> Dict[str, np.ndarray]:
    """One identical block per (vesicle, site) pair."""
    sites = list(sites)
    return {
        template.format(vesicle=v, site=s): np.asarray(values, dtype=float)
        for v in vesicles
        for s in sites
    }
