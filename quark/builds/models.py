"""Build ORM models.

This module defines the CacheEntry model, the completion record for each
staged artifact, and the BuildRecord model storing one row per build.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from quark.db import Base
from quark.types import BuildStatus, CacheState


class CacheEntry(Base):
    """ORM model for a staged artifact's cache record.

    A CacheEntry replaces bare path existence as the memoization key for
    a pipeline step. A ``pending`` entry is written before the step runs
    its tools; ``complete`` is written with the checksum after success.

    Attributes:
        id: Primary key.
        kind: Artifact kind (kaps, kernel, bundle, initramfs).
        path: Absolute path of the artifact.
        cache_key: Hash of the step inputs that produced the artifact.
        sha256: Checksum of the file, or tree hash of the directory.
        state: pending or complete.
        updated_at: Last state change.
    """

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    path: Mapped[str] = mapped_column(String(1000), nullable=False)
    cache_key: Mapped[str] = mapped_column(String(128), nullable=False)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CacheState.PENDING.value
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (UniqueConstraint("kind", "path", name="uq_cache_kind_path"),)

    def __repr__(self) -> str:
        """Return string representation of CacheEntry."""
        return (
            f"<CacheEntry(kind='{self.kind}', state='{self.state}', "
            f"path='{self.path}')>"
        )

    def is_complete(self) -> bool:
        """Check if the artifact was fully produced."""
        return self.state == CacheState.COMPLETE.value


class BuildRecord(Base):
    """ORM model for quardle build records.

    Attributes:
        id: Primary key.
        quardle: Quardle name.
        image: Container image source.
        offline: Whether the image was bundled.
        status: Build status (pending, running, succeeded, failed).
        requested_at: Timestamp when the build was requested.
        started_at: Timestamp when the pipeline started.
        finished_at: Timestamp when the pipeline finished.
        archive_path: Path of the produced archive.
        manifest: The manifest embedded in the archive.
        failed_step: Name of the step that failed, if any.
        error_type: Error code if the build failed.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quardle: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    image: Mapped[str] = mapped_column(String(1000), nullable=False)
    offline: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    archive_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    manifest: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    failed_step: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, quardle='{self.quardle}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self,
        step: str | None = None,
        error_type: str | None = None,
        message: str | None = None,
    ) -> None:
        """Mark this build as failed.

        Args:
            step: Name of the failing step.
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if step:
            self.failed_step = step
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["BuildRecord", "CacheEntry"]
