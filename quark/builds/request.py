"""Build request parsing.

Build requests come from CLI flags or from a YAML/JSON request file.
Values missing from a request fall back to the configured defaults.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from quark.config import Settings
from quark.errors import SerializationError
from quark.types import QUARDLE_NAME_PATTERN, BuildRequest


class BuildRequestSchema(BaseModel):
    """Schema of a build request file.

    Attributes:
        quardle: Name of the generated quardle.
        image: Container image URL or local path.
        offline: Bundle the container image into the initramfs.
        kernel_cmdline: Kernel command line override.
    """

    model_config = ConfigDict(extra="forbid")

    quardle: str = Field(description="Name of the generated quardle")
    image: str | None = Field(default=None, description="Container image source")
    offline: bool = Field(default=False, description="Bundle the container image")
    kernel_cmdline: str | None = Field(
        default=None, description="Kernel command line override"
    )

    @field_validator("quardle")
    @classmethod
    def validate_quardle(cls, v: str) -> str:
        """Validate the quardle name is usable as a file name."""
        if not QUARDLE_NAME_PATTERN.match(v):
            raise ValueError(
                f"quardle must match {QUARDLE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    def to_request(self, settings: Settings) -> BuildRequest:
        """Resolve defaults and return an immutable BuildRequest."""
        return BuildRequest(
            quardle=self.quardle,
            image=self.image or settings.default_image,
            offline=self.offline,
            kernel_cmdline=self.kernel_cmdline or settings.kernel_cmdline,
        )


def _load_data(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SerializationError(
            f"Expected a mapping in {path}, got {type(data).__name__}"
        )
    return data


def load_request_file(path: Path) -> BuildRequestSchema:
    """Load and validate a request file (YAML, or JSON by extension).

    Args:
        path: Path to the request file.

    Returns:
        Validated BuildRequestSchema.

    Raises:
        FileNotFoundError: If the file does not exist.
        SerializationError: If the file cannot be parsed or validated.
    """
    try:
        data = _load_data(path)
        return BuildRequestSchema.model_validate(data)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise SerializationError(f"Failed to parse {path}: {e}") from e
    except ValidationError as e:
        raise SerializationError(f"Invalid build request in {path}: {e}") from e


def resolve_request(
    settings: Settings,
    quardle: str | None = None,
    image: str | None = None,
    offline: bool | None = None,
    kernel_cmdline: str | None = None,
    request_file: Path | None = None,
) -> BuildRequest:
    """Merge a request file with CLI values; CLI values win.

    Raises:
        SerializationError: If the request file is invalid.
        ValueError: If no quardle name is given.
    """
    if request_file is not None:
        base = load_request_file(request_file).to_request(settings)
        return BuildRequest(
            quardle=quardle or base.quardle,
            image=image or base.image,
            offline=base.offline if offline is None else offline,
            kernel_cmdline=kernel_cmdline or base.kernel_cmdline,
        )

    if not quardle:
        raise ValueError("a quardle name is required")
    return BuildRequest(
        quardle=quardle,
        image=image or settings.default_image,
        offline=bool(offline),
        kernel_cmdline=kernel_cmdline or settings.kernel_cmdline,
    )


__all__ = [
    "BuildRequestSchema",
    "load_request_file",
    "resolve_request",
]
