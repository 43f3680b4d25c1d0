"""Pluggable collaborators for the opaque build procedures.

The kernel build, container bundle creation and base rootfs extraction
are delegated to external procedures. Each sits behind a narrow protocol
so the pipeline can be driven by fakes in tests; the default
implementations run the project's shell scripts through the toolchain.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from quark.builds.toolchain import Toolchain
from quark.errors import ToolFailure

logger = logging.getLogger(__name__)


class KernelBuilder(Protocol):
    """Builds the guest kernel and returns the binary's path."""

    def build(self) -> Path: ...


class BundleBuilder(Protocol):
    """Creates an OCI bundle (rootfs + config.json) from an image source."""

    def build(self, image: str) -> Path: ...


class RootfsProvider(Protocol):
    """Materializes the base root filesystem tree at ``dest``."""

    def materialize(self, dest: Path) -> Path: ...


def _require_output(path: Path, step: str, what: str) -> Path:
    if not path.exists():
        raise ToolFailure(
            f"{what} finished but did not produce {path}",
            step=step,
            code="missing_output",
        )
    return path


class ScriptKernelBuilder:
    """Runs the kernel build script, which leaves one binary at ``output``.

    Args:
        toolchain: Toolchain used to run the script.
        script: Path to the build script.
        work_dir: Directory the script runs in.
        output: Path of the kernel binary the script produces.
    """

    step = "kernel"

    def __init__(
        self, toolchain: Toolchain, script: Path, work_dir: Path, output: Path
    ) -> None:
        self.toolchain = toolchain
        self.script = script
        self.work_dir = work_dir
        self.output = output

    def build(self) -> Path:
        self.toolchain.run(self.step, ["bash", str(self.script)], cwd=self.work_dir)
        return _require_output(self.output, self.step, str(self.script))


class ScriptBundleBuilder:
    """Runs the bundle script with the image source as its only argument.

    Args:
        toolchain: Toolchain used to run the script.
        script: Path to the bundle script.
        work_dir: Directory the script runs in.
        output: Bundle directory the script produces.
    """

    step = "bundle"

    def __init__(
        self, toolchain: Toolchain, script: Path, work_dir: Path, output: Path
    ) -> None:
        self.toolchain = toolchain
        self.script = script
        self.work_dir = work_dir
        self.output = output

    def build(self, image: str) -> Path:
        self.toolchain.run(
            self.step, ["bash", str(self.script), image], cwd=self.work_dir
        )
        return _require_output(self.output, self.step, str(self.script))


class ScriptRootfsProvider:
    """Runs the rootfs script, which extracts the base tree into ``dest``.

    The script always writes to a fixed directory in ``work_dir``;
    ``dest`` must be that directory.
    """

    step = "rootfs"

    def __init__(self, toolchain: Toolchain, script: Path, work_dir: Path) -> None:
        self.toolchain = toolchain
        self.script = script
        self.work_dir = work_dir

    def materialize(self, dest: Path) -> Path:
        self.toolchain.run(self.step, ["bash", str(self.script)], cwd=self.work_dir)
        return _require_output(dest, self.step, str(self.script))


__all__ = [
    "BundleBuilder",
    "KernelBuilder",
    "RootfsProvider",
    "ScriptBundleBuilder",
    "ScriptKernelBuilder",
    "ScriptRootfsProvider",
]
