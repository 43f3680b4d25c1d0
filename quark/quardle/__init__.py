"""Quardle module.

This module handles:
- The quark.json manifest model and its serialization
- Writing quardle archives
- Reading and unpacking quardle archives on the host
"""

from quark.quardle.archive import (
    create_quardle,
    extract_quardle,
    read_quardle_manifest,
)
from quark.quardle.manifest import QuarkManifest, build_manifest

__all__ = [
    "QuarkManifest",
    "build_manifest",
    "create_quardle",
    "extract_quardle",
    "read_quardle_manifest",
]
