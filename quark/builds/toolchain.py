"""External toolchain adapter.

This module handles:
- Running a single external command synchronously
- Streaming its output lines to the logger (and an optional log file)
- Running process pipelines whose final output goes to a file
- Thin wrappers for git, recursive copy and recursive removal

The adapter only looks at exit status; it never interprets tool output.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from quark.errors import FilesystemError, SourceControlError, ToolFailure

logger = logging.getLogger(__name__)

# Number of trailing output lines attached to a ToolFailure
OUTPUT_TAIL_LINES = 20


@dataclass
class CapturedOutput:
    """Output of a successful tool invocation.

    Attributes:
        step: Pipeline step that ran the command.
        command: The command line, shell-quoted.
        exit_code: Process exit code (always 0 on success).
        lines: Captured output lines (stdout and stderr interleaved).
        started_at: Start time.
        finished_at: Finish time.
    """

    step: str
    command: str
    exit_code: int
    lines: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class Toolchain:
    """Runs external tools for pipeline steps.

    Args:
        timeout: Per-command timeout in seconds (None = no timeout).
        log_path: Optional file receiving every command and output line.
        env_override: Environment variables added to every command.
    """

    def __init__(
        self,
        timeout: int | None = None,
        log_path: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.log_path = log_path
        self.env_override = env_override or {}

    def _env(self, env: dict[str, str] | None) -> dict[str, str] | None:
        if not env and not self.env_override:
            return None
        merged = dict(os.environ)
        merged.update(self.env_override)
        if env:
            merged.update(env)
        return merged

    def _log_lines(self, step: str, lines: Sequence[str]) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as log_file:
            for line in lines:
                log_file.write(f"[{step}] {line}\n")

    def run(
        self,
        step: str,
        command: Sequence[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> CapturedOutput:
        """Run one command, streaming its output to the logger.

        Args:
            step: Name of the pipeline step (used as log prefix).
            command: Command and arguments.
            cwd: Working directory.
            env: Extra environment variables.

        Returns:
            CapturedOutput for the finished command.

        Raises:
            ToolFailure: If the command cannot be spawned, times out or
                exits non-zero.
        """
        cmd_str = shlex.join(command)
        logger.info("[%s] Executing: %s", step, cmd_str)
        if cwd is not None:
            logger.debug("[%s] Working directory: %s", step, cwd)
        self._log_lines(step, [f"# Command: {cmd_str}", f"# CWD: {cwd or Path.cwd()}"])

        started_at = datetime.now(timezone.utc)
        try:
            process = subprocess.Popen(
                list(command),
                cwd=cwd,
                env=self._env(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise ToolFailure(
                f"Failed to execute {cmd_str}: {e}",
                step=step,
                code="tool_spawn_error",
            ) from e

        timed_out = threading.Event()
        timer: threading.Timer | None = None
        if self.timeout is not None:

            def _kill() -> None:
                timed_out.set()
                process.kill()

            timer = threading.Timer(self.timeout, _kill)
            timer.daemon = True
            timer.start()

        lines: list[str] = []
        try:
            stdout = process.stdout
            if stdout is not None:
                with stdout:
                    for raw_line in stdout:
                        line = raw_line.rstrip("\n")
                        lines.append(line)
                        logger.info("[%s] %s", step, line)
                        self._log_lines(step, [line])
            exit_code = process.wait()
        finally:
            if timer is not None:
                timer.cancel()

        finished_at = datetime.now(timezone.utc)
        self._log_lines(step, [f"# Exit code: {exit_code}"])

        if timed_out.is_set():
            raise ToolFailure(
                f"{cmd_str} timed out after {self.timeout} seconds",
                step=step,
                exit_code=exit_code,
                output=lines[-OUTPUT_TAIL_LINES:],
                code="tool_timeout",
            )
        if exit_code != 0:
            logger.error("[%s] %s failed with exit code %d", step, cmd_str, exit_code)
            raise ToolFailure(
                f"{cmd_str} failed with exit code {exit_code}",
                step=step,
                exit_code=exit_code,
                output=lines[-OUTPUT_TAIL_LINES:],
            )

        return CapturedOutput(
            step=step,
            command=cmd_str,
            exit_code=exit_code,
            lines=lines,
            started_at=started_at,
            finished_at=finished_at,
        )

    def pipe(
        self,
        step: str,
        commands: Sequence[Sequence[str]],
        output: Path,
        cwd: Path | None = None,
    ) -> CapturedOutput:
        """Run a process pipeline, writing the last stdout to ``output``.

        Diagnostics from every process are collected and logged once the
        pipeline finishes.

        Raises:
            ToolFailure: If any process cannot be spawned, times out or
                exits non-zero.
        """
        if not commands:
            raise ValueError("pipe requires at least one command")

        cmd_str = " | ".join(shlex.join(c) for c in commands)
        logger.info("[%s] Executing: %s > %s", step, cmd_str, output)
        self._log_lines(step, [f"# Command: {cmd_str} > {output}"])

        started_at = datetime.now(timezone.utc)
        processes: list[subprocess.Popen[bytes]] = []
        timed_out = False

        with tempfile.TemporaryFile() as stderr_file, output.open("wb") as out_file:
            try:
                upstream = None
                for index, command in enumerate(commands):
                    is_last = index == len(commands) - 1
                    process = subprocess.Popen(
                        list(command),
                        cwd=cwd,
                        env=self._env(None),
                        stdin=upstream,
                        stdout=out_file if is_last else subprocess.PIPE,
                        stderr=stderr_file,
                    )
                    if upstream is not None:
                        # Let upstream receive SIGPIPE if downstream exits
                        upstream.close()
                    upstream = process.stdout
                    processes.append(process)
            except OSError as e:
                for process in processes:
                    process.kill()
                    process.wait()
                raise ToolFailure(
                    f"Failed to execute {cmd_str}: {e}",
                    step=step,
                    code="tool_spawn_error",
                ) from e

            exit_codes: list[int] = []
            for process in processes:
                try:
                    exit_codes.append(process.wait(timeout=self.timeout))
                except subprocess.TimeoutExpired:
                    timed_out = True
                    for other in processes:
                        other.kill()
                    exit_codes.append(process.wait())

            stderr_file.seek(0)
            lines = stderr_file.read().decode("utf-8", errors="replace").splitlines()

        for line in lines:
            logger.info("[%s] %s", step, line)
        self._log_lines(step, [*lines, f"# Exit codes: {exit_codes}"])

        if timed_out:
            raise ToolFailure(
                f"{cmd_str} timed out after {self.timeout} seconds",
                step=step,
                output=lines[-OUTPUT_TAIL_LINES:],
                code="tool_timeout",
            )
        for command, exit_code in zip(commands, exit_codes):
            if exit_code != 0:
                message = f"{shlex.join(command)} failed with exit code {exit_code}"
                logger.error("[%s] %s", step, message)
                raise ToolFailure(
                    message,
                    step=step,
                    exit_code=exit_code,
                    output=lines[-OUTPUT_TAIL_LINES:],
                )

        return CapturedOutput(
            step=step,
            command=cmd_str,
            exit_code=0,
            lines=lines,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    def git_clone(self, step: str, url: str, dest: Path) -> CapturedOutput:
        """Clone a git repository.

        Raises:
            SourceControlError: If the clone fails.
        """
        try:
            return self.run(step, ["git", "clone", url, str(dest)])
        except ToolFailure as e:
            raise SourceControlError(
                f"Failed to clone {url}: {e}",
                step=step,
                exit_code=e.exit_code,
                output=e.output,
            ) from e

    def git_checkout(self, step: str, repo_dir: Path, ref: str) -> CapturedOutput:
        """Check out a revision in an existing clone.

        Raises:
            SourceControlError: If the checkout fails.
        """
        try:
            return self.run(step, ["git", "checkout", ref], cwd=repo_dir)
        except ToolFailure as e:
            raise SourceControlError(
                f"Failed to checkout {ref} in {repo_dir}: {e}",
                step=step,
                exit_code=e.exit_code,
                output=e.output,
            ) from e

    def copy_tree(self, source: Path, dest: Path) -> Path:
        """Recursively copy a directory, preserving symlinks.

        Raises:
            FilesystemError: If the copy fails.
        """
        logger.debug("Copying %s -> %s", source, dest)
        try:
            shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            raise FilesystemError(f"Failed to copy {source} -> {dest}: {e}") from e
        return dest

    def copy_file(self, source: Path, dest: Path, mode: int | None = None) -> Path:
        """Copy a single file, optionally setting its mode.

        Raises:
            FilesystemError: If the copy fails.
        """
        logger.debug("Copying %s -> %s", source, dest)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
            if mode is not None:
                dest.chmod(mode)
        except OSError as e:
            raise FilesystemError(f"Failed to copy {source} -> {dest}: {e}") from e
        return dest

    def remove_tree(self, path: Path) -> bool:
        """Recursively remove a directory if it exists.

        Returns:
            True if the directory existed and was removed.

        Raises:
            FilesystemError: If removal fails.
        """
        if not path.exists():
            return False
        logger.debug("Removing %s", path)
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise FilesystemError(f"Failed to remove {path}: {e}") from e
        return True


__all__ = [
    "OUTPUT_TAIL_LINES",
    "CapturedOutput",
    "Toolchain",
]
