"""Quardle manifest (quark.json) model and serialization.

The manifest describes how the launcher boots a quardle: which kernel
and initramfs to load, the kernel command line, and where kaps and the
optional container bundle live inside the guest.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from quark.builds.layout import (
    BUNDLE_DIR_NAME,
    INITRAMFS_NAME,
    KAPS_INSTALL_PATH,
    KERNEL_NAME,
    write_text_atomic,
)
from quark.errors import FilesystemError, SerializationError
from quark.types import BuildRequest

logger = logging.getLogger(__name__)


class QuarkManifest(BaseModel):
    """Schema of the quark.json file embedded in every quardle.

    Attributes:
        quardle: Name of the quardle.
        kernel: Kernel file name inside the archive.
        initramfs: Initramfs file name inside the archive.
        kernel_cmdline: Kernel command line.
        image: Container image source.
        kaps: Path of the kaps binary inside the guest.
        offline: Whether the container bundle is embedded.
        bundle: Bundle directory inside the guest (offline only).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    quardle: str = Field(description="Name of the generated quardle")
    kernel: str = Field(description="Kernel file name")
    initramfs: str = Field(description="Initramfs image file name")
    kernel_cmdline: str = Field(description="Kernel command line")
    image: str = Field(description="Container image source")
    kaps: str = Field(description="kaps binary path in the guest")
    offline: bool = Field(description="Container image is bundled in the initramfs")
    bundle: str | None = Field(
        default=None, description="Container bundle directory (offline only)"
    )

    @model_validator(mode="after")
    def validate_bundle(self) -> QuarkManifest:
        """Require a bundle exactly when offline."""
        if self.offline and self.bundle is None:
            raise ValueError("bundle is required when offline is true")
        if not self.offline and self.bundle is not None:
            raise ValueError("bundle must be null when offline is false")
        return self


def build_manifest(request: BuildRequest) -> QuarkManifest:
    """Build the manifest for a request.

    Args:
        request: The build request.

    Returns:
        QuarkManifest with the fixed file names of the pipeline.
    """
    return QuarkManifest(
        quardle=request.quardle,
        kernel=KERNEL_NAME,
        initramfs=INITRAMFS_NAME,
        kernel_cmdline=request.kernel_cmdline,
        image=request.image,
        kaps=KAPS_INSTALL_PATH,
        offline=request.offline,
        bundle=f"/{BUNDLE_DIR_NAME}/" if request.offline else None,
    )


def manifest_to_json(manifest: QuarkManifest) -> str:
    """Serialize a manifest to pretty-printed JSON."""
    return manifest.model_dump_json(indent=2) + "\n"


def parse_manifest(content: str | bytes) -> QuarkManifest:
    """Parse and validate manifest JSON.

    Raises:
        SerializationError: If the content is not a valid manifest.
    """
    try:
        return QuarkManifest.model_validate_json(content)
    except ValidationError as e:
        raise SerializationError(f"Invalid quark manifest: {e}") from e


def write_manifest(manifest: QuarkManifest, output_path: Path) -> Path:
    """Write a manifest file atomically.

    Args:
        manifest: Manifest to write.
        output_path: Output file path.

    Returns:
        Path to written manifest file.

    Raises:
        FilesystemError: If the file cannot be written.
    """
    write_text_atomic(output_path, manifest_to_json(manifest))
    logger.info("Wrote manifest to %s", output_path)
    return output_path


def read_manifest(path: Path) -> QuarkManifest:
    """Read and validate a manifest file.

    Raises:
        FilesystemError: If the file cannot be read.
        SerializationError: If the content is not a valid manifest.
    """
    try:
        content = path.read_bytes()
    except OSError as e:
        raise FilesystemError(f"Failed to read manifest {path}: {e}") from e
    return parse_manifest(content)


__all__ = [
    "QuarkManifest",
    "build_manifest",
    "manifest_to_json",
    "parse_manifest",
    "read_manifest",
    "write_manifest",
]
