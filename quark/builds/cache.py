"""Per-artifact cache records for the staging directory.

This module handles:
- Deterministic cache keys over the inputs of each pipeline step
- Completion markers (pending/complete) with artifact checksums
- The uniform skip policy consulted before each step runs

Skip policy, per artifact kind and path:
- path absent -> build
- path present, no record -> adopt the existing artifact and skip
- path present, complete record with matching key and checksum -> skip
- path present, pending record -> stale, rebuild
- path present, complete but mismatching record -> re-adopt and skip for
  the cross-build kinds (kaps, kernel); stale for per-build products
"""

from __future__ import annotations

import hashlib
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from quark.builds.layout import compute_artifact_hash
from quark.builds.models import CacheEntry
from quark.db import get_session
from quark.types import ArtifactKind, CacheState

logger = logging.getLogger(__name__)

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"

# Kept across builds; an existing complete artifact is never rebuilt
CROSS_BUILD_KINDS = frozenset({ArtifactKind.KAPS, ArtifactKind.KERNEL})


class CacheDecision(str, Enum):
    """What a step should do with its output path."""

    BUILD = "build"
    SKIP = "skip"
    STALE = "stale"


def compute_cache_key(kind: ArtifactKind, inputs: dict[str, Any]) -> str:
    """Compute a cache key over the inputs of a step.

    The key is a SHA-256 hash of the canonical JSON representation
    of the kind, schema version and inputs.

    Args:
        kind: Artifact kind.
        inputs: JSON-serializable step inputs.

    Returns:
        Cache key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        {
            "schema_version": CACHE_KEY_SCHEMA_VERSION,
            "kind": kind.value,
            "inputs": inputs,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_hex = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_hex}"


class ArtifactCache:
    """Cache records for staged artifacts, stored in the build database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _find(session: Session, kind: ArtifactKind, path: Path) -> CacheEntry | None:
        stmt = select(CacheEntry).where(
            CacheEntry.kind == kind.value,
            CacheEntry.path == str(path),
        )
        return session.execute(stmt).scalar_one_or_none()

    def get(self, kind: ArtifactKind, path: Path) -> CacheEntry | None:
        """Return the cache record for an artifact, if any."""
        with get_session(self.session_factory) as session:
            return self._find(session, kind, path)

    def _upsert(
        self,
        kind: ArtifactKind,
        path: Path,
        cache_key: str,
        state: CacheState,
        sha256: str | None,
    ) -> None:
        with get_session(self.session_factory) as session:
            entry = self._find(session, kind, path)
            if entry is None:
                entry = CacheEntry(kind=kind.value, path=str(path))
                session.add(entry)
            entry.cache_key = cache_key
            entry.state = state.value
            entry.sha256 = sha256

    def check(self, kind: ArtifactKind, path: Path, cache_key: str) -> CacheDecision:
        """Decide whether the artifact at ``path`` can be reused.

        An existing artifact without a record is adopted: its checksum is
        recorded as complete under ``cache_key``. Kaps and kernel artifacts
        with a complete but mismatching record are re-adopted the same way.

        Args:
            kind: Artifact kind.
            path: Artifact path.
            cache_key: Key computed from the step's current inputs.

        Returns:
            CacheDecision for the step.
        """
        if not path.exists():
            return CacheDecision.BUILD

        entry = self.get(kind, path)
        if entry is None:
            logger.info("Adopting existing %s at %s", kind.value, path)
            self._upsert(
                kind, path, cache_key, CacheState.COMPLETE, compute_artifact_hash(path)
            )
            return CacheDecision.SKIP

        if not entry.is_complete():
            logger.warning("%s at %s is incomplete, rebuilding", kind.value, path)
            return CacheDecision.STALE
        sha256 = compute_artifact_hash(path)
        if entry.cache_key == cache_key and entry.sha256 == sha256:
            return CacheDecision.SKIP

        if kind in CROSS_BUILD_KINDS:
            logger.info("Re-adopting existing %s at %s", kind.value, path)
            self._upsert(kind, path, cache_key, CacheState.COMPLETE, sha256)
            return CacheDecision.SKIP
        if entry.cache_key != cache_key:
            logger.warning("%s inputs changed, rebuilding %s", kind.value, path)
        else:
            logger.warning("%s at %s was modified, rebuilding", kind.value, path)
        return CacheDecision.STALE

    def begin(self, kind: ArtifactKind, path: Path, cache_key: str) -> None:
        """Record that a step is about to produce ``path``."""
        self._upsert(kind, path, cache_key, CacheState.PENDING, None)

    def complete(self, kind: ArtifactKind, path: Path, cache_key: str) -> str:
        """Record that ``path`` was fully produced.

        Returns:
            Checksum stored for the artifact.
        """
        sha256 = compute_artifact_hash(path)
        self._upsert(kind, path, cache_key, CacheState.COMPLETE, sha256)
        logger.debug("Recorded %s %s (sha256=%s)", kind.value, path, sha256[:16])
        return sha256

    def checksum(self, kind: ArtifactKind, path: Path) -> str | None:
        """Return the recorded checksum of a complete artifact."""
        entry = self.get(kind, path)
        if entry is None or not entry.is_complete():
            return None
        return entry.sha256

    def invalidate(self, kind: ArtifactKind, path: Path) -> bool:
        """Drop the record for an artifact.

        Returns:
            True if a record was removed.
        """
        with get_session(self.session_factory) as session:
            entry = self._find(session, kind, path)
            if entry is None:
                return False
            session.delete(entry)
            return True

    def list_entries(self) -> list[CacheEntry]:
        """List all cache records ordered by kind."""
        with get_session(self.session_factory) as session:
            stmt = select(CacheEntry).order_by(CacheEntry.kind, CacheEntry.path)
            return list(session.execute(stmt).scalars().all())

    def clear(self, kind: ArtifactKind | None = None) -> int:
        """Delete cache records, optionally for one kind only.

        Artifacts on disk are kept; they are adopted again on the next run.

        Returns:
            Number of records removed.
        """
        with get_session(self.session_factory) as session:
            stmt = delete(CacheEntry)
            if kind is not None:
                stmt = stmt.where(CacheEntry.kind == kind.value)
            result = session.execute(stmt)
            return result.rowcount or 0


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "CROSS_BUILD_KINDS",
    "ArtifactCache",
    "CacheDecision",
    "compute_cache_key",
]
