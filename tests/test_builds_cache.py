"""Tests for builds/cache.py module.

Tests cache key computation and the skip policy over cache records.
"""

from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from quark.builds.cache import (
    ArtifactCache,
    CacheDecision,
    compute_cache_key,
)
from quark.builds.layout import compute_file_hash
from quark.builds.models import CacheEntry  # noqa: F401 - registers the table
from quark.db import Base
from quark.types import ArtifactKind, CacheState


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def cache(engine) -> ArtifactCache:
    """Create an ArtifactCache over the test engine."""
    return ArtifactCache(
        sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    )


@pytest.fixture
def kernel(tmp_path: Path) -> Path:
    """Create a staged kernel binary."""
    path = tmp_path / "vmlinux.bin"
    path.write_bytes(b"kernel")
    return path


class TestComputeCacheKey:
    """Tests for compute_cache_key."""

    def test_key_format(self) -> None:
        """Keys should be prefixed sha256 digests."""
        key = compute_cache_key(ArtifactKind.KAPS, {"ref": "cdce0eb"})
        assert key.startswith("sha256:")
        assert len(key) == len("sha256:") + 64

    def test_deterministic_and_order_independent(self) -> None:
        """Input ordering should not affect the key."""
        a = compute_cache_key(ArtifactKind.KAPS, {"ref": "x", "target": "y"})
        b = compute_cache_key(ArtifactKind.KAPS, {"target": "y", "ref": "x"})
        assert a == b

    def test_key_depends_on_inputs(self) -> None:
        """Different inputs should give different keys."""
        a = compute_cache_key(ArtifactKind.BUNDLE, {"image": "a.tar.gz"})
        b = compute_cache_key(ArtifactKind.BUNDLE, {"image": "b.tar.gz"})
        assert a != b

    def test_key_depends_on_kind(self) -> None:
        """Equal inputs for different kinds should give different keys."""
        a = compute_cache_key(ArtifactKind.KERNEL, {})
        b = compute_cache_key(ArtifactKind.INITRAMFS, {})
        assert a != b


class TestCheck:
    """Tests for the skip policy."""

    def test_missing_path_builds(self, cache: ArtifactCache, tmp_path: Path) -> None:
        """An absent artifact should be built."""
        decision = cache.check(ArtifactKind.KERNEL, tmp_path / "missing", "k")
        assert decision is CacheDecision.BUILD

    def test_adopts_unrecorded_artifact(
        self, cache: ArtifactCache, kernel: Path
    ) -> None:
        """An existing artifact without a record should be adopted and skipped."""
        decision = cache.check(ArtifactKind.KERNEL, kernel, "key")

        assert decision is CacheDecision.SKIP
        entry = cache.get(ArtifactKind.KERNEL, kernel)
        assert entry is not None
        assert entry.state == CacheState.COMPLETE.value
        assert entry.cache_key == "key"
        assert entry.sha256 == compute_file_hash(kernel)
        assert kernel.read_bytes() == b"kernel"

    def test_complete_matching_record_skips(
        self, cache: ArtifactCache, kernel: Path
    ) -> None:
        """A complete record with the same key and checksum should skip."""
        cache.begin(ArtifactKind.KERNEL, kernel, "key")
        cache.complete(ArtifactKind.KERNEL, kernel, "key")
        assert cache.check(ArtifactKind.KERNEL, kernel, "key") is CacheDecision.SKIP

    def test_pending_record_is_stale(self, cache: ArtifactCache, kernel: Path) -> None:
        """An artifact left by an interrupted step should be rebuilt."""
        cache.begin(ArtifactKind.KERNEL, kernel, "key")
        assert cache.check(ArtifactKind.KERNEL, kernel, "key") is CacheDecision.STALE

    def test_changed_inputs_are_stale(
        self, cache: ArtifactCache, tmp_path: Path
    ) -> None:
        """A per-build product with a different cache key should be rebuilt."""
        initramfs = tmp_path / "initramfs.img"
        initramfs.write_bytes(b"cpio")
        cache.complete(ArtifactKind.INITRAMFS, initramfs, "old")
        decision = cache.check(ArtifactKind.INITRAMFS, initramfs, "new")
        assert decision is CacheDecision.STALE

    def test_modified_artifact_is_stale(
        self, cache: ArtifactCache, tmp_path: Path
    ) -> None:
        """A per-build product whose checksum changed should be rebuilt."""
        initramfs = tmp_path / "initramfs.img"
        initramfs.write_bytes(b"cpio")
        cache.complete(ArtifactKind.INITRAMFS, initramfs, "key")
        initramfs.write_bytes(b"tampered")
        decision = cache.check(ArtifactKind.INITRAMFS, initramfs, "key")
        assert decision is CacheDecision.STALE

    @pytest.mark.parametrize("kind", [ArtifactKind.KERNEL, ArtifactKind.KAPS])
    def test_changed_inputs_readopt_cross_build_artifact(
        self, cache: ArtifactCache, kernel: Path, kind: ArtifactKind
    ) -> None:
        """Kaps and kernel with new inputs should be kept and re-recorded."""
        cache.complete(kind, kernel, "old")

        assert cache.check(kind, kernel, "new") is CacheDecision.SKIP
        entry = cache.get(kind, kernel)
        assert entry is not None
        assert entry.cache_key == "new"
        assert kernel.read_bytes() == b"kernel"

    def test_replaced_kernel_is_readopted(
        self, cache: ArtifactCache, kernel: Path
    ) -> None:
        """A kernel replaced by hand should be kept with its new checksum."""
        cache.complete(ArtifactKind.KERNEL, kernel, "key")
        kernel.write_bytes(b"hand-built kernel")

        assert cache.check(ArtifactKind.KERNEL, kernel, "key") is CacheDecision.SKIP
        assert cache.checksum(ArtifactKind.KERNEL, kernel) == compute_file_hash(kernel)
        assert kernel.read_bytes() == b"hand-built kernel"

    def test_pending_kernel_is_still_stale(
        self, cache: ArtifactCache, kernel: Path
    ) -> None:
        """An interrupted kernel build should be rebuilt despite re-adoption."""
        cache.complete(ArtifactKind.KERNEL, kernel, "key")
        cache.begin(ArtifactKind.KERNEL, kernel, "new")
        assert cache.check(ArtifactKind.KERNEL, kernel, "new") is CacheDecision.STALE

    def test_directory_artifact(self, cache: ArtifactCache, tmp_path: Path) -> None:
        """Directory artifacts should be tracked by tree hash."""
        bundle = tmp_path / "ctr-bundle"
        (bundle / "rootfs").mkdir(parents=True)
        (bundle / "config.json").write_text("{}")
        cache.complete(ArtifactKind.BUNDLE, bundle, "key")
        assert cache.check(ArtifactKind.BUNDLE, bundle, "key") is CacheDecision.SKIP

        (bundle / "config.json").write_text('{"changed": true}')
        assert cache.check(ArtifactKind.BUNDLE, bundle, "key") is CacheDecision.STALE


class TestRecords:
    """Tests for record bookkeeping."""

    def test_checksum_only_for_complete(
        self, cache: ArtifactCache, kernel: Path
    ) -> None:
        """checksum() should ignore pending records."""
        cache.begin(ArtifactKind.KERNEL, kernel, "key")
        assert cache.checksum(ArtifactKind.KERNEL, kernel) is None

        sha = cache.complete(ArtifactKind.KERNEL, kernel, "key")
        assert cache.checksum(ArtifactKind.KERNEL, kernel) == sha

    def test_one_record_per_artifact(
        self, cache: ArtifactCache, kernel: Path
    ) -> None:
        """begin/complete should update a single record."""
        cache.begin(ArtifactKind.KERNEL, kernel, "key")
        cache.complete(ArtifactKind.KERNEL, kernel, "key")
        assert len(cache.list_entries()) == 1

    def test_invalidate(self, cache: ArtifactCache, kernel: Path) -> None:
        """invalidate() should drop the record once."""
        cache.complete(ArtifactKind.KERNEL, kernel, "key")
        assert cache.invalidate(ArtifactKind.KERNEL, kernel) is True
        assert cache.invalidate(ArtifactKind.KERNEL, kernel) is False
        assert cache.get(ArtifactKind.KERNEL, kernel) is None

    def test_clear_by_kind(
        self, cache: ArtifactCache, kernel: Path, tmp_path: Path
    ) -> None:
        """clear() should optionally restrict to one kind."""
        initramfs = tmp_path / "initramfs.img"
        initramfs.write_bytes(b"cpio")
        cache.complete(ArtifactKind.KERNEL, kernel, "key")
        cache.complete(ArtifactKind.INITRAMFS, initramfs, "key")

        assert cache.clear(ArtifactKind.INITRAMFS) == 1
        assert [e.kind for e in cache.list_entries()] == ["kernel"]
        assert cache.clear() == 1
        assert cache.list_entries() == []
