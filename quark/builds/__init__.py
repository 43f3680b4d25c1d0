"""Build pipeline module.

This module handles:
- Running external tools (git, cargo, cpio, xz, build scripts)
- Staging layout and per-artifact cache records
- The ordered pipeline steps producing kaps, kernel, bundle and initramfs
- Orchestration, archiving and staging cleanup
"""

from quark.builds.models import BuildRecord, CacheEntry

__all__ = ["BuildRecord", "CacheEntry"]
