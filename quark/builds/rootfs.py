"""Guest root filesystem helpers.

This module handles:
- Downloading the base rootfs tarball with checksum verification
- Extracting it into the staging directory
- Rendering the guest init script
- Packing the rootfs tree into an lzma-compressed newc cpio initramfs
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
from pathlib import Path
from urllib.parse import urlparse

import httpx

from quark.builds.layout import atomic_path, compute_file_hash, guest_tree_filter
from quark.builds.toolchain import CapturedOutput, Toolchain
from quark.errors import DownloadError, ExtractionError

logger = logging.getLogger(__name__)

# Seconds; Settings.download_timeout overrides this for builds
DOWNLOAD_TIMEOUT = 3600
DOWNLOAD_CHUNK_SIZE = 64 * 1024

INIT_SCRIPT_TEMPLATE = """#!/bin/sh
#
# Generated by quark. Mounts the pseudo-filesystems, brings up
# loopback networking and hands over to {runtime}.

mount -t devtmpfs dev /dev
mount -t proc proc /proc
mount -t sysfs sysfs /sys
ip link set up dev lo

exec /opt/{runtime} run --bundle /{bundle}
"""


def render_init_script(runtime: str, bundle: str) -> str:
    """Render the guest init script.

    Args:
        runtime: Runtime binary name, installed under /opt.
        bundle: Bundle directory name, at the rootfs root.

    Returns:
        Init script content.
    """
    return INIT_SCRIPT_TEMPLATE.format(runtime=runtime, bundle=bundle)


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> str:
    """Download a file atomically with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        SHA-256 hex digest of the downloaded file.

    Raises:
        DownloadError: If the download or verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            with atomic_path(dest_path) as tmp_path:
                with tmp_path.open("wb") as f:
                    for chunk in response.iter_bytes(chunk_size):
                        f.write(chunk)
                        sha256.update(chunk)
                        total_bytes += len(chunk)

                computed_checksum = sha256.hexdigest()
                if expected_checksum and computed_checksum != expected_checksum.lower():
                    raise DownloadError(
                        f"Checksum mismatch for {url}: "
                        f"expected {expected_checksum}, got {computed_checksum}",
                        code="checksum_mismatch",
                    )

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )
    return computed_checksum


def extract_tarball(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a rootfs tarball into a new directory.

    Extraction targets a temporary sibling directory that is renamed to
    ``dest_dir`` on success. Absolute and parent-relative member names
    are refused; symlinks and file modes inside the rootfs are kept as-is.

    Args:
        archive_path: Path to the (optionally compressed) tarball.
        dest_dir: Directory to create; must not exist.

    Returns:
        dest_dir.

    Raises:
        ExtractionError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)

    dest_dir.parent.mkdir(parents=True, exist_ok=True)
    tmp_dir = Path(tempfile.mkdtemp(dir=dest_dir.parent, prefix=f".{dest_dir.name}."))
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar.getmembers():
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            tar.extractall(tmp_dir, filter=guest_tree_filter)
        tmp_dir.chmod(0o755)
        tmp_dir.rename(dest_dir)
    except tarfile.TarError as e:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except OSError as e:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e
    except ExtractionError:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise

    return dest_dir


class DownloadRootfsProvider:
    """Materializes the base rootfs from a (remote or local) tarball.

    Remote tarballs are cached in ``downloads_dir`` and reused when their
    checksum still matches ``sha256``.

    Args:
        url: http(s) URL, file:// URL or local path of the tarball.
        downloads_dir: Cache directory for downloaded tarballs.
        sha256: Optional expected checksum.
        timeout: Download timeout in seconds.
        client: Optional HTTPX client (one is created per download otherwise).
    """

    def __init__(
        self,
        url: str,
        downloads_dir: Path,
        sha256: str | None = None,
        timeout: float = DOWNLOAD_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.downloads_dir = downloads_dir
        self.sha256 = sha256
        self.timeout = timeout
        self.client = client

    def fetch(self) -> Path:
        """Return a local path to the tarball, downloading it if needed.

        Raises:
            DownloadError: If the download fails or the checksum mismatches.
        """
        parsed = urlparse(self.url)
        if parsed.scheme not in ("http", "https"):
            local = Path(parsed.path if parsed.scheme == "file" else self.url)
            if not local.is_file():
                raise DownloadError(
                    f"Rootfs tarball not found: {local}", code="not_found"
                )
            return local

        filename = Path(parsed.path).name or "rootfs.tar.gz"
        tarball = self.downloads_dir / filename
        if tarball.exists():
            if self.sha256 is None or compute_file_hash(tarball) == self.sha256.lower():
                logger.info("Using cached rootfs tarball %s", tarball)
                return tarball
            logger.warning("Cached %s has a wrong checksum, downloading again", tarball)

        if self.client is not None:
            download_file(self.client, self.url, tarball, self.sha256, self.timeout)
        else:
            with httpx.Client(follow_redirects=True) as client:
                download_file(client, self.url, tarball, self.sha256, self.timeout)
        return tarball

    def materialize(self, dest: Path) -> Path:
        return extract_tarball(self.fetch(), dest)


def pack_initramfs(
    toolchain: Toolchain,
    rootfs_dir: Path,
    output: Path,
    step: str = "rootfs",
) -> CapturedOutput:
    """Pack a rootfs tree into an initramfs image.

    Runs ``find . -print0 | cpio --null --create --owner root:root
    --format=newc | xz -9 --format=lzma`` inside ``rootfs_dir``. The
    image is written to a temporary file and renamed to ``output`` only
    when every process succeeded.

    Raises:
        ToolFailure: If any process of the pipeline fails.
    """
    logger.info("Creating initramfs image %s", output)
    with atomic_path(output) as tmp_path:
        return toolchain.pipe(
            step,
            [
                ["find", ".", "-print0"],
                [
                    "cpio",
                    "--null",
                    "--create",
                    "--owner",
                    "root:root",
                    "--format=newc",
                ],
                ["xz", "-9", "--format=lzma"],
            ],
            output=tmp_path,
            cwd=rootfs_dir,
        )


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "INIT_SCRIPT_TEMPLATE",
    "DownloadRootfsProvider",
    "download_file",
    "extract_tarball",
    "pack_initramfs",
    "render_init_script",
]
