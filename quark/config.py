"""Configuration settings for quark.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONTAINER_IMAGE_URL = (
    "https://dl-cdn.alpinelinux.org/alpine/v3.14/releases/x86_64/"
    "alpine-minirootfs-3.14.2-x86_64.tar.gz"
)
DEFAULT_KERNEL_CMDLINE = "console=ttyS0 i8042.nokbd reboot=k panic=1 pci=off"
DEFAULT_KAPS_REPOSITORY_URL = "https://github.com/virt-do/kaps.git"

# The kaps default branch does not build against the musl target; pin a
# known-good revision.
DEFAULT_KAPS_REF = "cdce0eb"
DEFAULT_KAPS_TARGET = "x86_64-unknown-linux-musl"

DB_FILENAME = ".quark-cache.sqlite"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the QUARK_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=Path.cwd,
        description="Staging directory holding intermediate build products",
    )
    output_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory receiving the generated .qrk archives",
    )
    db_url: str | None = Field(
        default=None,
        description="Cache database URL (defaults to a SQLite file in work_dir)",
    )

    # Runtime binary
    kaps_repository_url: str = Field(
        default=DEFAULT_KAPS_REPOSITORY_URL,
        description="Git repository of the kaps runtime",
    )
    kaps_ref: str = Field(
        default=DEFAULT_KAPS_REF,
        description="Git revision of kaps to build",
    )
    kaps_target: str = Field(
        default=DEFAULT_KAPS_TARGET,
        description="Cargo target triple for the kaps build",
    )

    # Build defaults
    default_image: str = Field(
        default=DEFAULT_CONTAINER_IMAGE_URL,
        description="Container image used when none is given",
    )
    kernel_cmdline: str = Field(
        default=DEFAULT_KERNEL_CMDLINE,
        description="Kernel command line used when none is given",
    )

    # External procedures (relative paths resolve against work_dir)
    kernel_script: Path = Field(
        default=Path("kernel/mkkernel.sh"),
        description="Script building the guest kernel",
    )
    bundle_script: Path = Field(
        default=Path("scripts/mkbundle.sh"),
        description="Script creating the container bundle from an image",
    )
    rootfs_script: Path = Field(
        default=Path("scripts/mkrootfs.sh"),
        description="Script materializing the base rootfs (script mode)",
    )

    # Base rootfs
    rootfs_source: Literal["download", "script"] = Field(
        default="download",
        description="How the base rootfs is materialized",
    )
    rootfs_url: str = Field(
        default=DEFAULT_CONTAINER_IMAGE_URL,
        description="Base rootfs tarball (download mode)",
    )
    rootfs_sha256: str | None = Field(
        default=None,
        description="Expected SHA-256 of the rootfs tarball",
    )

    # Operational
    keep_staging: bool = Field(
        default=False,
        description="Keep rootfs, bundle, initramfs and manifest after archiving",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    tool_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for each external tool (None = wait forever)",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for rootfs downloads",
    )

    @property
    def effective_db_url(self) -> str:
        """Return the configured database URL or the staging-dir default."""
        if self.db_url:
            return self.db_url
        return f"sqlite:///{self.work_dir.resolve() / DB_FILENAME}"

    def resolve_script(self, script: Path) -> Path:
        """Resolve a script path against the staging directory."""
        if script.is_absolute():
            return script
        return self.work_dir / script


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_CONTAINER_IMAGE_URL",
    "DEFAULT_KAPS_REF",
    "DEFAULT_KAPS_REPOSITORY_URL",
    "DEFAULT_KAPS_TARGET",
    "DEFAULT_KERNEL_CMDLINE",
    "Settings",
    "get_settings",
    "print_settings_json",
]
