"""
MCell Binary Container Decoders (Functional Core)

This module decodes the two supported on-disk layouts of MCell binary
reaction output.  It follows the "Functional Core" pattern: every function
consumes an already-opened, already-decompressed binary stream and returns
plain data structures.  Opening files and bzip2 decompression live in
``mbdr.data.reader``.

Package Location: src/mbdr/analysis/decoders.py

Layouts (little-endian)
-----------------------
MCELL_BINARY_API_1::

    f8  time_step
    u4  iteration_count
    u4  block_count
    block_count x { u2 name_length, name bytes, u4 sample_count }
    payload: block after block, sample_count x f8

MCELL_BINARY_API_2::

    u2  output_type          (0 = STEP, 1 = TIME_LIST)
        STEP:       f8 time_step
        TIME_LIST:  u8 n, n x f8 output times
    u8  iteration_count
    u8  buffer_size          (iterations per payload chunk)
    u8  block_count
    block_count x NUL-terminated name
    block_count x { u8 column_count, column_count x u2 dtype }
    payload: chunks of up to buffer_size iterations; inside a chunk,
             block after block, column after column

Both versions normalize into the same ``Trace``: a header plus a float64
``DataFrame`` with one column per block and one row per iteration.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

API_TAG_LENGTH: int = len("MCELL_BINARY_API_2")

_U2 = struct.Struct("<H")
_U4 = struct.Struct("<I")
_U8 = struct.Struct("<Q")
_F8 = struct.Struct("<d")
_F8_DTYPE = np.dtype("<f8")

# Largest single stream.read() request
_READ_PIECE: int = 1 << 20

# V2 output types
_OUTPUT_STEP: int = 0
_OUTPUT_TIME_LIST: int = 1

# V2 column dtypes -> numpy dtypes
_V2_DTYPES: Dict[int, np.dtype] = {
    0: np.dtype("<i4"),
    1: np.dtype("<f8"),
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class FormatError(Exception):
    """Base class for container format errors.

    Every ``FormatError`` is fatal for the file being decoded only.
    """
    pass


class EmptyOrTruncatedError(FormatError):
    """The stream ended before a complete API tag could be read."""

    def __init__(self, received: int):
        super().__init__(
            f"file empty or truncated: expected {API_TAG_LENGTH} tag bytes, "
            f"got {received}"
        )
        self.received = received


class UnknownVersionError(FormatError):
    """The API tag is not one of the supported versions."""

    def __init__(self, tag: bytes):
        super().__init__(f"unknown mcell binary api version {tag!r}")
        self.tag = tag


class TruncatedError(FormatError):
    """The stream ended inside a header or payload."""
    pass


class MalformedHeaderError(FormatError):
    """The header was read completely but its contents are inconsistent."""
    pass


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TraceHeader:
    """Metadata decoded from a container header.

    ``buffer_size`` and ``column_dtypes`` describe the V2 payload chunking
    and on-disk sample type of every trace column; both are ``None`` for V1.
    """

    api_version: "ApiVersion"
    time_step: float
    iteration_count: int
    block_names: Tuple[str, ...]
    output_times: Optional[Tuple[float, ...]] = None
    buffer_size: Optional[int] = None
    column_dtypes: Optional[Tuple[str, ...]] = None

    @property
    def block_count(self) -> int:
        return len(self.block_names)

    def sample_times(self) -> np.ndarray:
        """Return the simulation time of every output iteration."""
        if self.output_times is not None:
            return np.asarray(self.output_times, dtype=np.float64)
        return np.arange(self.iteration_count, dtype=np.float64) * self.time_step


@dataclass
class Trace:
    """Decoded contents of one container.

    ``blocks`` is ``None`` after a header-only read.  Otherwise it holds one
    float64 column per block name (in header order) and exactly
    ``header.iteration_count`` rows.
    """

    header: TraceHeader
    blocks: Optional[pd.DataFrame] = None

    @property
    def api_version(self) -> "ApiVersion":
        return self.header.api_version


# ---------------------------------------------------------------------------
# Low-level stream helpers
# ---------------------------------------------------------------------------

def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    """Read exactly ``size`` bytes or raise ``TruncatedError``.

    Memory grows with the bytes actually read, never with ``size`` alone.
    """
    chunks: List[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(min(remaining, _READ_PIECE))
        if not chunk:
            raise TruncatedError(
                f"stream ended while reading {what}: "
                f"{size - remaining} of {size} bytes available"
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _unpack(stream: BinaryIO, fmt: struct.Struct, what: str):
    return fmt.unpack(_read_exact(stream, fmt.size, what))[0]


def _read_samples(
    stream: BinaryIO, dtype: np.dtype, count: int, what: str
) -> np.ndarray:
    raw = _read_exact(stream, dtype.itemsize * count, what)
    return np.frombuffer(raw, dtype=dtype, count=count).astype(np.float64)


def _decode_name(raw: bytes) -> str:
    try:
        return raw.decode("ascii")
    except UnicodeDecodeError as exc:
        raise MalformedHeaderError(f"block name {raw!r} is not ASCII") from exc


def _check_unique(names: List[str]) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise MalformedHeaderError(f"duplicate block name {name!r}")
        seen.add(name)


def read_api_tag(stream: BinaryIO) -> bytes:
    """Read the fixed-width API tag from the start of ``stream``.

    Raises:
        EmptyOrTruncatedError: If fewer than ``API_TAG_LENGTH`` bytes exist.
    """
    tag = b""
    while len(tag) < API_TAG_LENGTH:
        chunk = stream.read(API_TAG_LENGTH - len(tag))
        if not chunk:
            raise EmptyOrTruncatedError(len(tag))
        tag += chunk
    return tag


# ---------------------------------------------------------------------------
# API version 1
# ---------------------------------------------------------------------------

def decode_header_v1(stream: BinaryIO) -> TraceHeader:
    """Decode an API 1 header positioned right after the tag.

    Args:
        stream: Binary stream positioned after the API tag.

    Returns:
        The decoded ``TraceHeader``.

    Raises:
        TruncatedError: If the stream ends inside the header.
        MalformedHeaderError: If a block's sample count differs from the
            iteration count or block names repeat.
    """
    time_step = _unpack(stream, _F8, "time step")
    iteration_count = _unpack(stream, _U4, "iteration count")
    block_count = _unpack(stream, _U4, "block count")

    names: List[str] = []
    for i in range(block_count):
        name_length = _unpack(stream, _U2, f"name length of block {i}")
        name = _decode_name(_read_exact(stream, name_length, f"name of block {i}"))
        sample_count = _unpack(stream, _U4, f"sample count of block {name!r}")
        if sample_count != iteration_count:
            raise MalformedHeaderError(
                f"block {name!r} declares {sample_count} samples, "
                f"expected {iteration_count}"
            )
        names.append(name)
    _check_unique(names)

    return TraceHeader(
        api_version=ApiVersion.V1,
        time_step=time_step,
        iteration_count=iteration_count,
        block_names=tuple(names),
    )


def decode_data_v1(stream: BinaryIO, header: TraceHeader) -> pd.DataFrame:
    """Decode the block-contiguous float64 payload of an API 1 container."""
    n = header.iteration_count
    columns: Dict[str, np.ndarray] = {}
    for name in header.block_names:
        columns[name] = _read_samples(
            stream, _F8_DTYPE, n, f"payload of block {name!r}"
        )
    return _as_frame(columns, header)


# ---------------------------------------------------------------------------
# API version 2
# ---------------------------------------------------------------------------

def _read_cstring(stream: BinaryIO, what: str) -> bytes:
    out = bytearray()
    while True:
        byte = stream.read(1)
        if not byte:
            raise TruncatedError(f"stream ended while reading {what}")
        if byte == b"\x00":
            return bytes(out)
        out += byte


def decode_header_v2(stream: BinaryIO) -> TraceHeader:
    """Decode an API 2 header positioned right after the tag.

    Multi-column blocks expand into one trace column per data column,
    named ``"<block>:<column>"``.

    Raises:
        TruncatedError: If the stream ends inside the header.
        MalformedHeaderError: On unknown output types or dtypes, empty
            blocks, inconsistent time lists or duplicate names.
    """
    output_type = _unpack(stream, _U2, "output type")
    output_times: Optional[Tuple[float, ...]] = None
    if output_type == _OUTPUT_STEP:
        time_step = _unpack(stream, _F8, "time step")
    elif output_type == _OUTPUT_TIME_LIST:
        n_times = _unpack(stream, _U8, "time list length")
        output_times = tuple(
            _read_samples(stream, _F8_DTYPE, n_times, "time list").tolist()
        )
        time_step = output_times[1] - output_times[0] if n_times > 1 else 0.0
    else:
        raise MalformedHeaderError(f"unknown output type {output_type}")

    iteration_count = _unpack(stream, _U8, "iteration count")
    buffer_size = _unpack(stream, _U8, "buffer size")
    block_count = _unpack(stream, _U8, "block count")

    if output_times is not None and len(output_times) != iteration_count:
        raise MalformedHeaderError(
            f"time list holds {len(output_times)} entries, "
            f"expected {iteration_count}"
        )
    if iteration_count > 0 and buffer_size == 0:
        raise MalformedHeaderError("buffer size must be positive")

    raw_names = [
        _decode_name(_read_cstring(stream, f"name of block {i}"))
        for i in range(block_count)
    ]

    names: List[str] = []
    dtypes: List[str] = []
    for raw_name in raw_names:
        column_count = _unpack(stream, _U8, f"column count of {raw_name!r}")
        if column_count == 0:
            raise MalformedHeaderError(f"block {raw_name!r} has no columns")
        for c in range(column_count):
            code = _unpack(stream, _U2, f"dtype of {raw_name!r}:{c}")
            if code not in _V2_DTYPES:
                raise MalformedHeaderError(
                    f"block {raw_name!r} column {c} has unknown dtype {code}"
                )
            dtypes.append(_V2_DTYPES[code].str)
        if column_count == 1:
            names.append(raw_name)
        else:
            names.extend(f"{raw_name}:{c}" for c in range(column_count))
    _check_unique(names)

    return TraceHeader(
        api_version=ApiVersion.V2,
        time_step=time_step,
        iteration_count=iteration_count,
        block_names=tuple(names),
        output_times=output_times,
        buffer_size=buffer_size,
        column_dtypes=tuple(dtypes),
    )


def decode_data_v2(stream: BinaryIO, header: TraceHeader) -> pd.DataFrame:
    """Decode the chunked, typed payload of an API 2 container."""
    if header.buffer_size is None or header.column_dtypes is None:
        raise ValueError("header was not produced by decode_header_v2")

    n = header.iteration_count
    flat_dtypes = [np.dtype(code) for code in header.column_dtypes]
    # chunks are kept as read and joined at the end, so a short stream
    # fails before anything of the declared size is allocated
    pieces: List[List[np.ndarray]] = [[] for _ in flat_dtypes]

    start = 0
    while flat_dtypes and start < n:
        stop = min(start + header.buffer_size, n)
        for k, (name, dtype) in enumerate(zip(header.block_names, flat_dtypes)):
            pieces[k].append(_read_samples(
                stream, dtype, stop - start,
                f"payload of {name!r} at iteration {start}",
            ))
        start = stop

    arrays = [
        np.concatenate(p) if p else np.empty(0, dtype=np.float64) for p in pieces
    ]
    return _as_frame(dict(zip(header.block_names, arrays)), header)


def _as_frame(columns: Dict[str, np.ndarray], header: TraceHeader) -> pd.DataFrame:
    index = pd.RangeIndex(header.iteration_count, name="iteration")
    return pd.DataFrame(columns, index=index, columns=list(header.block_names))


# ---------------------------------------------------------------------------
# Version dispatch
# ---------------------------------------------------------------------------

class ApiVersion(Enum):
    """Supported container versions, each carrying its decoder pair."""

    V1 = ("MCELL_BINARY_API_1", decode_header_v1, decode_data_v1)
    V2 = ("MCELL_BINARY_API_2", decode_header_v2, decode_data_v2)

    def __init__(
        self,
        tag: str,
        header_decoder: Callable[[BinaryIO], TraceHeader],
        data_decoder: Callable[[BinaryIO, TraceHeader], pd.DataFrame],
    ):
        self.tag = tag
        self.header_decoder = header_decoder
        self.data_decoder = data_decoder

    @classmethod
    def from_tag(cls, tag: bytes) -> "ApiVersion":
        """Map raw tag bytes to a version.

        Raises:
            UnknownVersionError: If no version matches exactly.
        """
        for version in cls:
            if tag == version.tag.encode("ascii"):
                return version
        raise UnknownVersionError(tag)

    def __str__(self) -> str:
        return self.tag


def decode_stream(stream: BinaryIO, header_only: bool = False) -> Trace:
    """Decode a decompressed container stream into a ``Trace``.

    The header is always decoded first; a header failure short-circuits
    before any payload is touched.

    Args:
        stream: Decompressed binary stream positioned at the API tag.
        header_only: When ``True`` the payload is not read and
            ``Trace.blocks`` is ``None``.

    Returns:
        The decoded ``Trace``.

    Raises:
        FormatError: On any tag, header or payload problem.
    """
    version = ApiVersion.from_tag(read_api_tag(stream))
    header = version.header_decoder(stream)
    if header_only:
        return Trace(header=header)
    return Trace(header=header, blocks=version.data_decoder(stream, header))
