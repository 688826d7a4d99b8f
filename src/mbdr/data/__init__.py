"""
mbdr Data Package (Imperative Shell)

This package handles file I/O, decompression and the threaded batch
runner for the mbdr system.

Modules:
- reader: bzip2 container access and API-version dispatch
- batch:  Threaded release analysis over many files and result merging
"""

from .reader import (
    ContainerReadError,
    get_blocks,
    read,
    read_header,
)

from .batch import (
    AggregateReport,
    BatchError,
    BatchRunner,
    FileResult,
)

__all__ = [
    # Reader
    'ContainerReadError',
    'get_blocks',
    'read',
    'read_header',
    # Batch
    'AggregateReport',
    'BatchError',
    'BatchRunner',
    'FileResult',
]
