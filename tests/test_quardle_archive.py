"""Tests for quardle/archive.py module.

Tests writing, inspecting and unpacking quardle archives.
"""

import io
import tarfile
from pathlib import Path

import pytest

from quark.config import DEFAULT_KERNEL_CMDLINE
from quark.errors import ArchiveError, ExtractionError
from quark.quardle.archive import (
    create_quardle,
    extract_quardle,
    list_quardle_members,
    read_quardle_manifest,
)
from quark.quardle.manifest import build_manifest, write_manifest
from quark.types import BuildRequest


@pytest.fixture
def staged(tmp_path: Path) -> dict[str, Path]:
    """Stage manifest, kernel, initramfs and bundle files."""
    staging = tmp_path / "staging"
    request = BuildRequest("demo", "alpine.tar.gz", True, DEFAULT_KERNEL_CMDLINE)
    manifest = write_manifest(build_manifest(request), staging / "quark.json")

    kernel = staging / "vmlinux.bin"
    kernel.write_bytes(b"kernel")
    initramfs = staging / "initramfs.img"
    initramfs.write_bytes(b"initramfs")

    bundle = staging / "ctr-bundle"
    (bundle / "rootfs" / "bin").mkdir(parents=True)
    (bundle / "config.json").write_text("{}")
    (bundle / "rootfs" / "bin" / "sh").symlink_to("/bin/busybox")

    return {
        "manifest": manifest,
        "kernel": kernel,
        "initramfs": initramfs,
        "bundle": bundle,
    }


def make_archive(staged: dict[str, Path], archive: Path, bundle: bool = True) -> Path:
    """Create a quardle from the staged files."""
    return create_quardle(
        archive,
        manifest_path=staged["manifest"],
        kernel_path=staged["kernel"],
        initramfs_path=staged["initramfs"],
        bundle_dir=staged["bundle"] if bundle else None,
    )


class TestCreateQuardle:
    """Tests for create_quardle."""

    def test_member_order(self, staged, tmp_path: Path) -> None:
        """Members should be stored manifest first, bundle last."""
        archive = make_archive(staged, tmp_path / "out" / "demo.qrk")

        names = list_quardle_members(archive)
        assert names[:4] == ["quark.json", "vmlinux.bin", "initramfs.img", "ctr-bundle"]
        assert "ctr-bundle/config.json" in names

    def test_gzip_tar_format(self, staged, tmp_path: Path) -> None:
        """The archive should be a gzip-compressed tar."""
        archive = make_archive(staged, tmp_path / "demo.qrk", bundle=False)
        assert archive.read_bytes()[:2] == b"\x1f\x8b"
        with tarfile.open(archive, "r:gz") as tar:
            assert tar.getnames() == ["quark.json", "vmlinux.bin", "initramfs.img"]

    def test_missing_input(self, staged, tmp_path: Path) -> None:
        """A missing input should fail without leaving an archive."""
        staged["initramfs"].unlink()
        archive = tmp_path / "out" / "demo.qrk"

        with pytest.raises(ArchiveError) as exc_info:
            make_archive(staged, archive)

        assert exc_info.value.code == "missing_input"
        assert not archive.exists()

    def test_replaces_existing_archive(self, staged, tmp_path: Path) -> None:
        """An existing archive should be replaced whole."""
        archive = tmp_path / "demo.qrk"
        archive.write_bytes(b"old")
        make_archive(staged, archive)

        assert read_quardle_manifest(archive).quardle == "demo"
        assert [p.name for p in tmp_path.iterdir() if p.is_file()] == ["demo.qrk"]


class TestReadQuardleManifest:
    """Tests for read_quardle_manifest."""

    def test_reads_manifest(self, staged, tmp_path: Path) -> None:
        """The embedded manifest should be returned."""
        archive = make_archive(staged, tmp_path / "demo.qrk")
        manifest = read_quardle_manifest(archive)
        assert manifest.offline is True
        assert manifest.bundle == "/ctr-bundle/"

    def test_missing_manifest(self, tmp_path: Path) -> None:
        """An archive without quark.json should be rejected."""
        archive = tmp_path / "bad.qrk"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("vmlinux.bin")
            info.size = 1
            tar.addfile(info, io.BytesIO(b"k"))

        with pytest.raises(ExtractionError) as exc_info:
            read_quardle_manifest(archive)
        assert exc_info.value.code == "invalid_quardle"


class TestExtractQuardle:
    """Tests for extract_quardle."""

    def test_round_trip(self, staged, tmp_path: Path) -> None:
        """Unpacking should reproduce the staged files."""
        archive = make_archive(staged, tmp_path / "demo.qrk")
        output = tmp_path / "unpacked"

        assert extract_quardle(archive, output) is True

        assert (output / "quark.json").read_bytes() == staged["manifest"].read_bytes()
        assert (output / "vmlinux.bin").read_bytes() == b"kernel"
        assert (output / "initramfs.img").read_bytes() == b"initramfs"
        assert (output / "ctr-bundle" / "config.json").read_text() == "{}"
        sh = output / "ctr-bundle" / "rootfs" / "bin" / "sh"
        assert str(sh.readlink()) == "/bin/busybox"

    def test_keeps_bundle_modes(self, staged, tmp_path: Path) -> None:
        """Sticky and setuid modes in the bundle should survive unpacking."""
        rootfs = staged["bundle"] / "rootfs"
        (rootfs / "tmp").mkdir()
        (rootfs / "tmp").chmod(0o1777)
        su = rootfs / "bin" / "su"
        su.write_bytes(b"su")
        su.chmod(0o4755)
        archive = make_archive(staged, tmp_path / "demo.qrk")
        output = tmp_path / "unpacked"

        extract_quardle(archive, output)

        unpacked = output / "ctr-bundle" / "rootfs"
        assert (unpacked / "tmp").stat().st_mode & 0o7777 == 0o1777
        assert (unpacked / "bin" / "su").stat().st_mode & 0o7777 == 0o4755

    def test_existing_output_is_noop(self, staged, tmp_path: Path) -> None:
        """An existing output dir should be left alone."""
        archive = make_archive(staged, tmp_path / "demo.qrk")
        output = tmp_path / "unpacked"
        output.mkdir()
        (output / "marker").write_text("keep")

        assert extract_quardle(archive, output) is False
        assert [p.name for p in output.iterdir()] == ["marker"]

    def test_missing_archive(self, tmp_path: Path) -> None:
        """A missing archive should raise ExtractionError."""
        with pytest.raises(ExtractionError) as exc_info:
            extract_quardle(tmp_path / "missing.qrk", tmp_path / "out")
        assert exc_info.value.code == "archive_not_found"
        assert not (tmp_path / "out").exists()

    def test_corrupt_archive_leaves_nothing(self, tmp_path: Path) -> None:
        """A corrupt archive should leave no output dir behind."""
        archive = tmp_path / "corrupt.qrk"
        archive.write_bytes(b"definitely not gzip")
        output = tmp_path / "unpacked"

        with pytest.raises(ExtractionError):
            extract_quardle(archive, output)

        assert not output.exists()
        assert [p.name for p in tmp_path.iterdir()] == ["corrupt.qrk"]

    def test_rejects_path_traversal(self, tmp_path: Path) -> None:
        """Members escaping the output dir should be refused."""
        archive = tmp_path / "evil.qrk"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("../escape")
            info.size = 1
            tar.addfile(info, io.BytesIO(b"x"))

        with pytest.raises(ExtractionError) as exc_info:
            extract_quardle(archive, tmp_path / "unpacked")

        assert exc_info.value.code == "path_traversal"
        assert not (tmp_path / "unpacked").exists()
        assert not (tmp_path / "escape").exists()
