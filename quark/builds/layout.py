"""Staging directory layout and atomic write helpers.

Every intermediate build product lives at a fixed, name-derived path
inside the staging directory. Each path is either absent or holds a
complete artifact; outputs produced by quark itself are written to a
temporary sibling and renamed into place.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
import tarfile
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from quark.errors import FilesystemError

logger = logging.getLogger(__name__)

# Member and file names shared with the launcher
CONFIG_FILE = "quark.json"
KERNEL_NAME = "vmlinux.bin"
INITRAMFS_NAME = "initramfs.img"
BUNDLE_DIR_NAME = "ctr-bundle"
QUARDLE_SUFFIX = ".qrk"

# Staging paths, relative to the staging directory
KAPS_DIR_NAME = "kaps"
KERNEL_RELATIVE_PATH = Path(
    "linux-cloud-hypervisor/arch/x86/boot/compressed/vmlinux.bin"
)
ROOTFS_DIR_NAME = "alpine-minirootfs"
DOWNLOADS_DIR_NAME = "downloads"

# Where kaps is installed inside the guest
RUNTIME_NAME = "kaps"
KAPS_INSTALL_PATH = f"/opt/{RUNTIME_NAME}"

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass(frozen=True)
class StagingLayout:
    """Well-known paths inside a staging directory.

    Attributes:
        root: The staging directory.
        kaps_dir: kaps git checkout.
        kaps_binary: Release kaps binary produced by cargo.
        kernel: Guest kernel binary.
        rootfs_dir: Extracted root filesystem tree.
        bundle_dir: OCI container bundle (offline mode).
        initramfs: Compressed newc cpio archive of rootfs_dir.
        manifest: quark.json manifest.
        downloads_dir: Cached downloads (rootfs tarball).
    """

    root: Path
    kaps_dir: Path
    kaps_binary: Path
    kernel: Path
    rootfs_dir: Path
    bundle_dir: Path
    initramfs: Path
    manifest: Path
    downloads_dir: Path

    @classmethod
    def from_root(cls, root: Path, kaps_target: str) -> StagingLayout:
        """Derive all staging paths from the staging directory."""
        root = root.resolve()
        kaps_dir = root / KAPS_DIR_NAME
        return cls(
            root=root,
            kaps_dir=kaps_dir,
            kaps_binary=kaps_dir / "target" / kaps_target / "release" / RUNTIME_NAME,
            kernel=root / KERNEL_RELATIVE_PATH,
            rootfs_dir=root / ROOTFS_DIR_NAME,
            bundle_dir=root / BUNDLE_DIR_NAME,
            initramfs=root / INITRAMFS_NAME,
            manifest=root / CONFIG_FILE,
            downloads_dir=root / DOWNLOADS_DIR_NAME,
        )

    def quardle_path(self, output_dir: Path, name: str) -> Path:
        """Return the archive path for a quardle name."""
        return output_dir / f"{name}{QUARDLE_SUFFIX}"


@contextmanager
def atomic_path(target: Path) -> Iterator[Path]:
    """Yield a temporary file path that replaces ``target`` on success.

    The temporary file lives in the target's directory so the final
    rename is atomic. On any error the temporary file is removed and
    ``target`` is left untouched.

    Args:
        target: Final output path.

    Yields:
        Temporary path to write to.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        yield tmp_path
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def write_text_atomic(target: Path, content: str, mode: int | None = None) -> Path:
    """Write text to ``target`` through a temporary file.

    Raises:
        FilesystemError: If the write fails.
    """
    try:
        with atomic_path(target) as tmp_path:
            tmp_path.write_text(content, encoding="utf-8")
            if mode is not None:
                tmp_path.chmod(mode)
    except OSError as e:
        raise FilesystemError(f"Failed to write {target}: {e}") from e
    return target


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash covers sorted relative paths, file modes (lower 9 bits),
    file contents and symlink targets. Symlinks are never followed.

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        rel_path = path.relative_to(directory).as_posix()
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")

        if path.is_symlink():
            hasher.update(b"l")
            hasher.update(os.readlink(path).encode("utf-8"))
        elif path.is_file():
            mode = stat.S_IMODE(path.stat().st_mode)
            hasher.update(f"f{mode:o}".encode())
            hasher.update(b"\0")
            hasher.update(compute_file_hash(path).encode())
        elif path.is_dir():
            hasher.update(b"d")
        hasher.update(b"\0")

    return hasher.hexdigest()


def compute_artifact_hash(path: Path) -> str:
    """Hash a staged artifact, whether a file or a directory tree."""
    if path.is_dir():
        return compute_tree_hash(path)
    return compute_file_hash(path)


def guest_tree_filter(
    member: tarfile.TarInfo, dest_path: str
) -> tarfile.TarInfo | None:
    """Extraction filter for guest trees (base rootfs, bundles).

    Applies tarfile's ``"tar"`` filter but keeps the member's full mode,
    so setuid helpers and a sticky ``/tmp`` survive extraction.
    """
    filtered = tarfile.tar_filter(member, dest_path)
    if filtered is None:
        return None
    return filtered.replace(mode=member.mode, deep=False)


def remove_path(path: Path) -> bool:
    """Remove a file or directory tree if it exists.

    Returns:
        True if something was removed.

    Raises:
        FilesystemError: If removal fails.
    """
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
            return True
        if path.is_dir():
            shutil.rmtree(path)
            return True
    except OSError as e:
        raise FilesystemError(f"Failed to remove {path}: {e}") from e
    return False


__all__ = [
    "BUNDLE_DIR_NAME",
    "CONFIG_FILE",
    "DOWNLOADS_DIR_NAME",
    "HASH_CHUNK_SIZE",
    "INITRAMFS_NAME",
    "KAPS_DIR_NAME",
    "KAPS_INSTALL_PATH",
    "KERNEL_NAME",
    "KERNEL_RELATIVE_PATH",
    "QUARDLE_SUFFIX",
    "ROOTFS_DIR_NAME",
    "RUNTIME_NAME",
    "StagingLayout",
    "atomic_path",
    "compute_artifact_hash",
    "compute_file_hash",
    "compute_tree_hash",
    "guest_tree_filter",
    "remove_path",
    "write_text_atomic",
]
