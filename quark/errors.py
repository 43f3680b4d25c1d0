"""Error types shared across quark modules.

Every error carries a stable ``code`` string so that the CLI and build
records can report failures without parsing messages.
"""

from __future__ import annotations


class QuarkError(Exception):
    """Base error for quark operations."""

    def __init__(self, message: str, code: str = "quark_error") -> None:
        super().__init__(message)
        self.code = code


class ToolFailure(QuarkError):
    """Raised when an external process fails to spawn or exits non-zero."""

    def __init__(
        self,
        message: str,
        step: str | None = None,
        exit_code: int | None = None,
        output: list[str] | None = None,
        code: str = "tool_failed",
    ) -> None:
        super().__init__(message, code=code)
        self.step = step
        self.exit_code = exit_code
        self.output = output or []


class SourceControlError(ToolFailure):
    """Raised when a clone or checkout fails."""

    def __init__(
        self,
        message: str,
        step: str | None = None,
        exit_code: int | None = None,
        output: list[str] | None = None,
        code: str = "source_control_error",
    ) -> None:
        super().__init__(
            message, step=step, exit_code=exit_code, output=output, code=code
        )


class FilesystemError(QuarkError):
    """Raised when a create, copy, remove, open or write fails."""

    def __init__(self, message: str, code: str = "filesystem_error") -> None:
        super().__init__(message, code=code)


class ArchiveError(FilesystemError):
    """Raised when writing a quardle archive fails."""

    def __init__(self, message: str, code: str = "archive_error") -> None:
        super().__init__(message, code=code)


class ExtractionError(FilesystemError):
    """Raised when unpacking a quardle archive fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        super().__init__(message, code=code)


class SerializationError(QuarkError):
    """Raised when a manifest or request cannot be encoded or decoded."""

    def __init__(self, message: str, code: str = "serialization_error") -> None:
        super().__init__(message, code=code)


class DownloadError(QuarkError):
    """Raised when fetching a remote archive fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message, code=code)


class StepFailedError(QuarkError):
    """Raised by the pipeline when a build step fails.

    The underlying error is chained as ``__cause__`` and kept in ``cause``.
    """

    def __init__(self, step: str, cause: Exception) -> None:
        super().__init__(f"Step '{step}' failed: {cause}", code="step_failed")
        self.step = step
        self.cause = cause


__all__ = [
    "ArchiveError",
    "DownloadError",
    "ExtractionError",
    "FilesystemError",
    "QuarkError",
    "SerializationError",
    "SourceControlError",
    "StepFailedError",
    "ToolFailure",
]
