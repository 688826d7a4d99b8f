"""
mbdr Analysis Package (Functional Core)

This package contains pure transformation functions with no file I/O.
All functions accept streams, arrays or DataFrames and return decoded or
derived data.

Modules:
- decoders: Binary container parsing (MCELL_BINARY_API_1 / _2)
- release:  Vesicle release detection over decoded traces
"""

from .decoders import (
    API_TAG_LENGTH,
    ApiVersion,
    EmptyOrTruncatedError,
    FormatError,
    MalformedHeaderError,
    Trace,
    TraceHeader,
    TruncatedError,
    UnknownVersionError,
    decode_stream,
    read_api_tag,
)

from .release import (
    FailureReason,
    ReleaseOutcome,
    analyze_trace,
    build_block_index,
    energy_rate,
    first_passage,
    pulse_index,
)

__all__ = [
    # Decoders
    'API_TAG_LENGTH',
    'ApiVersion',
    'EmptyOrTruncatedError',
    'FormatError',
    'MalformedHeaderError',
    'Trace',
    'TraceHeader',
    'TruncatedError',
    'UnknownVersionError',
    'decode_stream',
    'read_api_tag',
    # Release
    'FailureReason',
    'ReleaseOutcome',
    'analyze_trace',
    'build_block_index',
    'energy_rate',
    'first_passage',
    'pulse_index',
]
