"""Shared helpers for the mbdr test-suite."""

from .containers import (
    DTYPE_DOUBLE,
    DTYPE_INT,
    TAG_V1,
    TAG_V2,
    encode_v1,
    encode_v2,
    site_blocks,
    write_container,
)

__all__ = [
    "DTYPE_DOUBLE",
    "DTYPE_INT",
    "TAG_V1",
    "TAG_V2",
    "encode_v1",
    "encode_v2",
    "site_blocks",
    "write_container",
]
