"""Quardle archive creation and extraction.

A quardle is a gzip-compressed tar holding, in this order: quark.json,
vmlinux.bin, initramfs.img and, for offline builds, the ctr-bundle/
tree. Both writing and unpacking go through a temporary path that is
renamed into place only on success.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
from pathlib import Path

from quark.builds.layout import (
    BUNDLE_DIR_NAME,
    CONFIG_FILE,
    INITRAMFS_NAME,
    KERNEL_NAME,
    atomic_path,
    guest_tree_filter,
)
from quark.errors import ArchiveError, ExtractionError
from quark.quardle.manifest import QuarkManifest, parse_manifest

logger = logging.getLogger(__name__)


def create_quardle(
    archive_path: Path,
    manifest_path: Path,
    kernel_path: Path,
    initramfs_path: Path,
    bundle_dir: Path | None = None,
) -> Path:
    """Write a quardle archive.

    Args:
        archive_path: Target ``.qrk`` path.
        manifest_path: Staged quark.json.
        kernel_path: Staged kernel binary.
        initramfs_path: Staged initramfs image.
        bundle_dir: Staged container bundle (offline builds only).

    Returns:
        archive_path.

    Raises:
        ArchiveError: If any input is missing or the archive cannot be
            written. No archive is left at ``archive_path`` in that case.
    """
    members: list[tuple[Path, str]] = [
        (manifest_path, CONFIG_FILE),
        (kernel_path, KERNEL_NAME),
        (initramfs_path, INITRAMFS_NAME),
    ]
    if bundle_dir is not None:
        members.append((bundle_dir, BUNDLE_DIR_NAME))

    for source, name in members:
        if not source.exists():
            raise ArchiveError(
                f"Cannot archive {name}: {source} does not exist",
                code="missing_input",
            )

    logger.info("Creating the archive %s", archive_path)
    try:
        with atomic_path(archive_path) as tmp_path:
            with tarfile.open(tmp_path, "w:gz") as tar:
                for source, name in members:
                    logger.debug("Adding %s as %s", source, name)
                    tar.add(source, arcname=name, recursive=True)
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to write {archive_path}: {e}") from e

    logger.info("%s has been created", archive_path.name)
    return archive_path


def list_quardle_members(archive_path: Path) -> list[str]:
    """Return archive member names in stored order.

    Raises:
        ExtractionError: If the archive cannot be read.
    """
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            return tar.getnames()
    except (OSError, tarfile.TarError, EOFError) as e:
        raise ExtractionError(f"Failed to read {archive_path}: {e}") from e


def read_quardle_manifest(archive_path: Path) -> QuarkManifest:
    """Read the embedded quark.json without unpacking the archive.

    Raises:
        ExtractionError: If the archive or its manifest cannot be read.
        SerializationError: If the manifest is invalid.
    """
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            member = tar.extractfile(CONFIG_FILE)
            if member is None:
                raise ExtractionError(
                    f"{CONFIG_FILE} in {archive_path} is not a regular file",
                    code="invalid_quardle",
                )
            content = member.read()
    except KeyError as e:
        raise ExtractionError(
            f"{archive_path} has no {CONFIG_FILE}", code="invalid_quardle"
        ) from e
    except (OSError, tarfile.TarError, EOFError) as e:
        raise ExtractionError(f"Failed to read {archive_path}: {e}") from e
    return parse_manifest(content)


def extract_quardle(archive_path: Path, output_dir: Path) -> bool:
    """Extract a quardle archive to the output directory.

    Nothing happens if ``output_dir`` already exists: the quardle is
    considered unpacked. Otherwise the archive is extracted into a
    temporary sibling directory renamed to ``output_dir`` on success.

    Args:
        archive_path: Path to the ``.qrk`` archive.
        output_dir: Directory to create.

    Returns:
        True if the archive was extracted, False if output_dir existed.

    Raises:
        ExtractionError: If the archive is missing or corrupt, or the
            output cannot be written. No output directory is left behind.
    """
    if output_dir.exists():
        logger.info("quardle already unpacked at %s", output_dir)
        return False

    if not archive_path.is_file():
        raise ExtractionError(
            f"quardle not found: {archive_path}", code="archive_not_found"
        )

    logger.info("Unpacking quardle %s to %s", archive_path, output_dir)
    output_dir.parent.mkdir(parents=True, exist_ok=True)
    tmp_dir = Path(
        tempfile.mkdtemp(dir=output_dir.parent, prefix=f".{output_dir.name}.")
    )
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            for member in tar.getmembers():
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            # Bundles carry absolute symlinks and setuid or sticky modes
            tar.extractall(tmp_dir, filter=guest_tree_filter)
        tmp_dir.chmod(0o755)
        tmp_dir.rename(output_dir)
    except ExtractionError:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise
    except (OSError, tarfile.TarError, EOFError) as e:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e

    logger.info("Done")
    return True


__all__ = [
    "create_quardle",
    "extract_quardle",
    "list_quardle_members",
    "read_quardle_manifest",
]
