"""Shared type definitions for quark.

This module contains dataclasses and enums shared across subpackages
to avoid circular imports.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

QUARDLE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")


class BuildStatus(str, Enum):
    """Status of a quardle build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Outcome of a single pipeline step."""

    BUILT = "built"
    SKIPPED = "skipped"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    """Kinds of staged artifacts tracked by the cache."""

    KAPS = "kaps"
    KERNEL = "kernel"
    BUNDLE = "bundle"
    INITRAMFS = "initramfs"


class CacheState(str, Enum):
    """Completion state of a cache entry."""

    PENDING = "pending"
    COMPLETE = "complete"


@dataclass(frozen=True)
class BuildRequest:
    """Immutable input to a quardle build.

    Attributes:
        quardle: Name of the generated quardle (``.qrk`` is appended).
        image: Container image source, a URL or a local path.
        offline: Bundle the container image into the initramfs.
        kernel_cmdline: Kernel command line written to the manifest.
    """

    quardle: str
    image: str
    offline: bool
    kernel_cmdline: str

    def __post_init__(self) -> None:
        """Validate the request after initialization."""
        if not QUARDLE_NAME_PATTERN.match(self.quardle):
            raise ValueError(
                f"quardle name must match {QUARDLE_NAME_PATTERN.pattern}, "
                f"got '{self.quardle}'"
            )
        if not self.image:
            raise ValueError("image must be provided")


@dataclass
class StepOutcome:
    """Result of running one pipeline step."""

    step: str
    status: StepStatus
    message: str = ""
    error: Exception | None = None


@dataclass
class CleanupReport:
    """Paths removed (and failures hit) while cleaning the staging dir."""

    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


__all__ = [
    "QUARDLE_NAME_PATTERN",
    "ArtifactKind",
    "BuildRequest",
    "BuildStatus",
    "CacheState",
    "CleanupReport",
    "StepOutcome",
    "StepStatus",
]
