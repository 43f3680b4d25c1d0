"""Shared fixtures and fakes for pipeline tests.

The fakes stand in for the external tools (git, cargo, cpio, xz) and the
opaque kernel, bundle and rootfs procedures, so the pipeline can run
end to end inside tmp_path.
"""

import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from quark.builds.layout import StagingLayout
from quark.builds.toolchain import CapturedOutput, Toolchain
from quark.config import Settings
from quark.errors import ToolFailure


class FakeToolchain(Toolchain):
    """Toolchain recording commands instead of spawning processes.

    ``git clone`` creates the ``.git`` directory, ``cargo build`` writes
    the release binary and ``pipe`` writes a deterministic listing of the
    packed tree. Commands named in ``fail_on`` exit non-zero; with
    ``fail_pipe`` the pipeline writes partial output and then fails.
    """

    def __init__(
        self, fail_on: Sequence[str] = (), fail_pipe: bool = False
    ) -> None:
        super().__init__()
        self.calls: list[tuple[str, list[str]]] = []
        self.fail_on = set(fail_on)
        self.fail_pipe = fail_pipe

    def run(
        self,
        step: str,
        command: Sequence[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> CapturedOutput:
        command = list(command)
        self.calls.append((step, command))
        if command[0] in self.fail_on:
            raise ToolFailure(
                f"{command[0]} failed with exit code 1", step=step, exit_code=1
            )
        if command[:2] == ["git", "clone"]:
            (Path(command[3]) / ".git").mkdir(parents=True)
        elif command[0] == "cargo":
            assert cwd is not None
            target = command[-1].split("=", 1)[1]
            binary = cwd / "target" / target / "release" / "kaps"
            binary.parent.mkdir(parents=True, exist_ok=True)
            binary.write_bytes(b"\x7fELF kaps")
        return CapturedOutput(step=step, command=shlex.join(command), exit_code=0)

    def pipe(
        self,
        step: str,
        commands: Sequence[Sequence[str]],
        output: Path,
        cwd: Path | None = None,
    ) -> CapturedOutput:
        self.calls.append((step, [shlex.join(c) for c in commands]))
        if self.fail_pipe:
            output.write_bytes(b"partial")
            raise ToolFailure("xz failed with exit code 1", step=step, exit_code=1)
        assert cwd is not None
        names = sorted(p.relative_to(cwd).as_posix() for p in cwd.rglob("*"))
        output.write_bytes("\n".join(names).encode())
        return CapturedOutput(step=step, command="pipe", exit_code=0)


class FakeKernelBuilder:
    """Writes a fixed kernel image to ``output``."""

    def __init__(self, output: Path, content: bytes = b"vmlinux") -> None:
        self.output = output
        self.content = content
        self.calls = 0

    def build(self) -> Path:
        self.calls += 1
        self.output.parent.mkdir(parents=True, exist_ok=True)
        self.output.write_bytes(self.content)
        return self.output


class FakeBundleBuilder:
    """Writes a minimal OCI bundle to ``output``."""

    def __init__(self, output: Path) -> None:
        self.output = output
        self.images: list[str] = []

    def build(self, image: str) -> Path:
        self.images.append(image)
        (self.output / "rootfs" / "bin").mkdir(parents=True, exist_ok=True)
        (self.output / "rootfs" / "bin" / "app").write_text("#!/bin/sh\n")
        (self.output / "config.json").write_text('{"ociVersion": "1.0.2"}')
        return self.output


class FakeRootfsProvider:
    """Creates a tiny base rootfs tree with an absolute symlink."""

    def __init__(self) -> None:
        self.calls = 0

    def materialize(self, dest: Path) -> Path:
        self.calls += 1
        (dest / "bin").mkdir(parents=True)
        (dest / "etc").mkdir()
        (dest / "bin" / "busybox").write_bytes(b"busybox")
        (dest / "bin" / "sh").symlink_to("/bin/busybox")
        (dest / "etc" / "hostname").write_text("quark\n")
        return dest


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with the staging and output dirs under tmp_path."""
    return Settings(
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "out",
        db_url=None,
    )


@pytest.fixture
def make_toolchain() -> type[FakeToolchain]:
    """Factory for fake toolchains, e.g. make_toolchain(fail_pipe=True)."""
    return FakeToolchain


@dataclass
class FakePipeline:
    """Fake toolchain and collaborators bound to one staging layout."""

    layout: StagingLayout
    toolchain: FakeToolchain
    kernel_builder: FakeKernelBuilder
    bundle_builder: FakeBundleBuilder
    rootfs_provider: FakeRootfsProvider

    def overrides(self) -> dict[str, Any]:
        """Keyword arguments for create_context() and build_quardle()."""
        return {
            "toolchain": self.toolchain,
            "kernel_builder": self.kernel_builder,
            "bundle_builder": self.bundle_builder,
            "rootfs_provider": self.rootfs_provider,
        }

    def reset(self, toolchain: FakeToolchain | None = None) -> None:
        """Start a fresh run with new call counters."""
        self.toolchain = toolchain or FakeToolchain()
        self.kernel_builder = FakeKernelBuilder(self.layout.kernel)
        self.bundle_builder = FakeBundleBuilder(self.layout.bundle_dir)
        self.rootfs_provider = FakeRootfsProvider()

    @property
    def total_calls(self) -> int:
        """Tool invocations plus collaborator invocations."""
        return (
            len(self.toolchain.calls)
            + self.kernel_builder.calls
            + len(self.bundle_builder.images)
            + self.rootfs_provider.calls
        )


@pytest.fixture
def fakes(settings: Settings) -> FakePipeline:
    """Fake pipeline collaborators for the settings' staging dir."""
    layout = StagingLayout.from_root(settings.work_dir, settings.kaps_target)
    return FakePipeline(
        layout=layout,
        toolchain=FakeToolchain(),
        kernel_builder=FakeKernelBuilder(layout.kernel),
        bundle_builder=FakeBundleBuilder(layout.bundle_dir),
        rootfs_provider=FakeRootfsProvider(),
    )
