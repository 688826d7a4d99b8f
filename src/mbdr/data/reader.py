"""
MCell Binary Container Reader (Imperative Shell)

Opens bzip2-compressed MCell binary output files and hands the
decompressed stream to the functional core in
``src/mbdr/analysis/decoders.py``.  The API tag at the start of the stream
selects the decoder; callers always get a uniform ``Trace`` back.

Package Location: src/mbdr/data/reader.py

Header-only reads:
    ``read_header`` stops after the header and never materialises the data
    blocks.  Use it whenever only metadata (block names, iteration count,
    time step) is needed; it avoids decompressing the bulk of the file.
"""

from __future__ import annotations

import bz2
import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Union

import pandas as pd

from ..analysis.decoders import Trace, decode_stream

log = logging.getLogger(__name__)

PathLike = Union[str, Path]


class ContainerReadError(Exception):
    """Opening, reading or decompressing a container failed.

    Fatal for that file only.  The underlying ``OSError`` / ``EOFError`` is
    chained as ``__cause__``.
    """

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path


def _open_and_decode(path: PathLike, header_only: bool) -> Trace:
    path = Path(path)
    try:
        with bz2.open(path, "rb") as stream:
            trace = decode_stream(stream, header_only=header_only)
    except (OSError, EOFError) as exc:
        raise ContainerReadError(path, str(exc) or type(exc).__name__) from exc

    log.debug(
        "decoded %s",
        path.name,
        extra={
            "api_version": trace.header.api_version.tag,
            "blocks": trace.header.block_count,
            "iterations": trace.header.iteration_count,
            "header_only": header_only,
        },
    )
    return trace


def read_header(path: PathLike) -> Trace:
    """Parse only the header of a container.

    Args:
        path: Path to a bzip2-compressed MCell binary file.

    Returns:
        ``Trace`` whose ``blocks`` is ``None``.

    Raises:
        ContainerReadError: If the file cannot be opened or decompressed.
        FormatError: If the tag or header is invalid.
    """
    return _open_and_decode(path, header_only=True)


def read(path: PathLike) -> Trace:
    """Parse header and data blocks of a container.

    The header is decoded first through the same tag dispatch as
    :func:`read_header`; any header failure short-circuits before the
    payload is touched.

    Args:
        path: Path to a bzip2-compressed MCell binary file.

    Returns:
        Fully populated ``Trace``.

    Raises:
        ContainerReadError: If the file cannot be opened or decompressed.
        FormatError: If the tag, header or payload is invalid.
    """
    return _open_and_decode(path, header_only=False)


def get_blocks(
    trace: Trace,
    names: Optional[Iterable[str]] = None,
    pattern: Optional[str] = None,
) -> pd.DataFrame:
    """Select data blocks of a decoded trace by exact name and/or regex.

    With neither ``names`` nor ``pattern`` every block is returned.  The
    result carries a leading ``time`` column with the simulation time of
    each iteration.

    Args:
        trace: Fully decoded trace.
        names: Exact block names to include.
        pattern: Regular expression; blocks whose name it matches (via
            ``re.search``) are included.

    Returns:
        DataFrame indexed by iteration, columns in header order.

    Raises:
        KeyError: If a requested name does not exist.
        ValueError: If the trace was decoded header-only.
    """
    if trace.blocks is None:
        raise ValueError("trace holds no data blocks; decode it with read()")

    wanted: List[str]
    if names is None and pattern is None:
        wanted = list(trace.header.block_names)
    else:
        requested = set(names or ())
        unknown = requested.difference(trace.header.block_names)
        if unknown:
            raise KeyError(f"unknown blocks: {sorted(unknown)}")
        regex = re.compile(pattern) if pattern is not None else None
        wanted = [
            n for n in trace.header.block_names
            if n in requested or (regex is not None and regex.search(n))
        ]

    out = trace.blocks[wanted].copy()
    out.insert(0, "time", trace.header.sample_times())
    return out
