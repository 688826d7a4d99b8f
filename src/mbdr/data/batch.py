"""
Batch Release Analysis Engine (Imperative Shell)

Runs container decoding and release detection over many simulation output
files (one file per simulation seed) and merges the per-vesicle outcomes
into one ``AggregateReport``.

Package Location: src/mbdr/data/batch.py

Worker model
============
The input list is split into ``threads`` contiguous chunks.  Each chunk is
processed sequentially by one worker of a ``ThreadPoolExecutor``; workers
share only the read-only model configuration.  Partials are merged in chunk
order, which equals input order, so the report is identical for every
thread count.  Memory per worker is bounded by one decoded trace: the
trace is dropped as soon as its outcomes are computed.

Failure policy
==============
- ``ConfigError``: raised from the constructor, before any file is read.
- ``ContainerReadError`` / ``FormatError``: recorded on that file's
  ``FileResult``; sibling files continue.
- Missing or malformed vesicle data: recorded on the vesicle's
  ``ReleaseOutcome``; sibling vesicles continue.
- Empty path list, or no file could be opened at all: ``BatchError``.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..analysis.decoders import ApiVersion, FormatError
from ..analysis.release import ReleaseOutcome, analyze_trace
from ..config import FusionModel, SimModel, validate_config
from .reader import ContainerReadError, read

log = logging.getLogger(__name__)

PathLike = Union[str, Path]


class BatchError(Exception):
    """A whole batch run cannot produce a meaningful report."""
    pass


@dataclass(frozen=True)
class FileResult:
    """Outcomes for one input file, or the reason it could not be analysed."""

    path: str
    api_version: Optional[ApiVersion] = None
    outcomes: Tuple[ReleaseOutcome, ...] = ()
    error: Optional[str] = None
    unreadable: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class AggregateReport:
    """All file results of a run, in input order.

    "Not released" (a valid negative result) and "failed" (missing or
    malformed data, unreadable file) are always counted separately.
    """

    files: List[FileResult] = field(default_factory=list)

    def _outcomes(self):
        for f in self.files:
            yield from f.outcomes

    @property
    def released_count(self) -> int:
        return sum(1 for o in self._outcomes() if o.released)

    @property
    def unreleased_count(self) -> int:
        return sum(1 for o in self._outcomes() if not o.released and not o.failed)

    @property
    def failed_vesicle_count(self) -> int:
        return sum(1 for o in self._outcomes() if o.failed)

    @property
    def failed_files(self) -> List[FileResult]:
        return [f for f in self.files if f.failed]

    def latencies(self) -> np.ndarray:
        """Pooled release latencies in input and vesicle order."""
        return np.array(
            [o.latency for o in self._outcomes() if o.released], dtype=np.float64
        )

    def latencies_by_vesicle(self) -> Dict[str, List[float]]:
        out: Dict[str, List[float]] = {}
        for o in self._outcomes():
            if o.released:
                out.setdefault(o.vesicle_id, []).append(o.latency)
        return out

    def to_dataframe(self) -> pd.DataFrame:
        """One row per vesicle outcome plus one row per failed file.

        Columns: ``file``, ``api_version``, ``vesicle``, ``released``,
        ``iteration``, ``latency``, ``pulse``, ``failure``, ``detail``.
        """
        rows = []
        for f in self.files:
            version = f.api_version.tag if f.api_version else None
            if f.failed:
                rows.append({
                    'file': f.path, 'api_version': version, 'vesicle': None,
                    'released': False, 'iteration': None, 'latency': None,
                    'pulse': None, 'failure': 'file_error', 'detail': f.error,
                })
                continue
            for o in f.outcomes:
                rows.append({
                    'file': f.path,
                    'api_version': version,
                    'vesicle': o.vesicle_id,
                    'released': o.released,
                    'iteration': o.iteration,
                    'latency': o.latency,
                    'pulse': o.pulse,
                    'failure': o.failure.value if o.failure else None,
                    'detail': o.detail or None,
                })
        columns = [
            'file', 'api_version', 'vesicle', 'released', 'iteration',
            'latency', 'pulse', 'failure', 'detail',
        ]
        df = pd.DataFrame(rows, columns=columns)
        df['iteration'] = df['iteration'].astype('Int64')
        df['pulse'] = df['pulse'].astype('Int64')
        df['latency'] = df['latency'].astype(float)
        return df


class BatchRunner:
    """Decode and analyse a list of files with a bounded thread pool.

    Args:
        model:   Simulation model (topology, pulse timing).
        fusion:  Release rule parameters.
        threads: Number of parallel workers.  Each worker holds one decoded
                 file in memory at a time, so peak memory grows with it.
        seed:    Base entropy for the energy model.  File ``i`` analyses
                 with ``[seed, i]``, independent of which worker runs it.

    Raises:
        ConfigError: If ``model`` and ``fusion`` are inconsistent.
        ValueError:  If ``threads`` < 1.
    """

    def __init__(
        self,
        model: SimModel,
        fusion: FusionModel,
        threads: int = 1,
        seed: Optional[int] = None,
    ) -> None:
        validate_config(model, fusion)
        if threads < 1:
            raise ValueError("threads must be >= 1")
        self.model = model
        self.fusion = fusion
        self.threads = threads
        self.seed = seed

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def run(self, paths: Sequence[PathLike]) -> AggregateReport:
        """Analyse every file in ``paths``.

        Returns:
            ``AggregateReport`` with one ``FileResult`` per input path, in
            input order.

        Raises:
            BatchError: If ``paths`` is empty or none of the files could be
                opened.
        """
        paths = [str(p) for p in paths]
        if not paths:
            raise BatchError("no input files given")

        chunks = _partition(list(enumerate(paths)), self.threads)
        log.info(
            "analysing %d files with %d worker(s)", len(paths), len(chunks),
            extra={"files": len(paths), "workers": len(chunks)},
        )
        started = time.perf_counter()

        if len(chunks) == 1:
            partials = [self._process_chunk(chunks[0])]
        else:
            with ThreadPoolExecutor(max_workers=len(chunks)) as executor:
                futures = [executor.submit(self._process_chunk, c) for c in chunks]
                # merge in assignment order, not completion order
                partials = [f.result() for f in futures]

        report = AggregateReport(files=[r for part in partials for r in part])

        if all(f.unreadable for f in report.files):
            raise BatchError(f"none of the {len(paths)} input files could be opened")

        log.info(
            "batch finished in %.2fs: %d released, %d not released, "
            "%d failed vesicles, %d failed files",
            time.perf_counter() - started,
            report.released_count,
            report.unreleased_count,
            report.failed_vesicle_count,
            len(report.failed_files),
        )
        return report

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _process_chunk(self, chunk: List[Tuple[int, str]]) -> List[FileResult]:
        return [self._process_file(index, path) for index, path in chunk]

    def _process_file(self, index: int, path: str) -> FileResult:
        try:
            trace = read(path)
        except ContainerReadError as exc:
            log.warning("cannot read %s: %s", path, exc, extra={"file": path})
            return FileResult(
                path=path, error=f"ContainerReadError: {exc}", unreadable=True
            )
        except FormatError as exc:
            log.warning("cannot decode %s: %s", path, exc, extra={"file": path})
            return FileResult(path=path, error=f"{type(exc).__name__}: {exc}")

        seed = None if self.seed is None else [self.seed, index]
        version = trace.api_version
        try:
            outcomes = analyze_trace(trace, self.model, self.fusion, seed=seed)
        except Exception as exc:
            log.exception("analysis of %s failed", path, extra={"file": path})
            return FileResult(
                path=path, api_version=version,
                error=f"{type(exc).__name__}: {exc}",
            )
        finally:
            del trace

        for o in outcomes:
            if o.failed:
                log.warning(
                    "%s: vesicle %s %s", path, o.vesicle_id, o.failure.value,
                    extra={"file": path, "vesicle": o.vesicle_id},
                )
        return FileResult(path=path, api_version=version, outcomes=outcomes)


def _partition(items: List, parts: int) -> List[List]:
    """Split ``items`` into at most ``parts`` contiguous, non-empty chunks."""
    parts = max(1, min(parts, len(items)))
    size, extra = divmod(len(items), parts)
    chunks, start = [], 0
    for i in range(parts):
        stop = start + size + (1 if i < extra else 0)
        chunks.append(items[start:stop])
        start = stop
    return chunks
