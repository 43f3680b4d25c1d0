"""Thin CLI wrapper for quark.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from quark import __version__
from quark.config import Settings, get_settings, print_settings_json

app = typer.Typer(
    name="quark",
    help="Quark - build and unpack quardles for micro-VMs",
    no_args_is_help=True,
)
console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)


def configure_logging(level: str) -> None:
    """Route library logging through Rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"quark version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Quark - build and unpack quardles for micro-VMs."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


def _settings_with(
    work_dir: Path | None = None,
    output_dir: Path | None = None,
) -> Settings:
    settings = get_settings()
    update: dict[str, object] = {}
    if work_dir is not None:
        update["work_dir"] = work_dir
    if output_dir is not None:
        update["output_dir"] = output_dir
    return settings.model_copy(update=update) if update else settings


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Staging directory:   {settings.work_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Database URL:        {settings.effective_db_url}")
    console.print()
    console.print("[bold]Runtime binary:[/bold]")
    console.print(f"  Repository:          {settings.kaps_repository_url}")
    console.print(f"  Revision:            {settings.kaps_ref}")
    console.print(f"  Target:              {settings.kaps_target}")
    console.print()
    console.print("[bold]Build defaults:[/bold]")
    console.print(f"  Container image:     {settings.default_image}")
    console.print(f"  Kernel cmdline:      {settings.kernel_cmdline}")
    console.print(f"  Rootfs source:       {settings.rootfs_source}")
    console.print(f"  Keep staging:        {settings.keep_staging}")
    console.print(f"  Log level:           {settings.log_level}")


@app.command()
def build(
    quardle: Annotated[
        str | None,
        typer.Option(
            "--quardle", "-q", help="Name of the quardle (.qrk is appended)"
        ),
    ] = None,
    image: Annotated[
        str | None,
        typer.Option("--image", "-i", help="Container image URL (.tar.gz)"),
    ] = None,
    offline: Annotated[
        bool,
        typer.Option(
            "--offline", "-o", help="Bundle the container image into the rootfs"
        ),
    ] = False,
    kernel_cmdline: Annotated[
        str | None,
        typer.Option("--kernel-cmdline", "-k", help="Override the kernel cmdline"),
    ] = None,
    request_file: Annotated[
        Path | None,
        typer.Option("--request", "-r", help="YAML/JSON build request file"),
    ] = None,
    keep_staging: Annotated[
        bool,
        typer.Option("--keep-staging", help="Keep per-build staging products"),
    ] = False,
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Staging directory"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", help="Directory for the .qrk archive"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a quardle: kernel, initramfs with kaps, optional bundle."""
    from quark.builds.request import resolve_request
    from quark.builds.service import build_quardle
    from quark.errors import QuarkError, StepFailedError

    settings = _settings_with(work_dir, output_dir)

    try:
        request = resolve_request(
            settings,
            quardle=quardle,
            image=image,
            offline=True if offline else None,
            kernel_cmdline=kernel_cmdline,
            request_file=request_file,
        )
    except (QuarkError, ValueError, FileNotFoundError) as e:
        err_console.print(f"[red]Invalid build request: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    try:
        outcome = build_quardle(
            request,
            settings=settings,
            keep_staging=keep_staging or settings.keep_staging,
        )
    except StepFailedError as e:
        if json_output:
            console.print(
                json.dumps(
                    {
                        "success": False,
                        "step": e.step,
                        "code": getattr(e.cause, "code", "error"),
                        "message": str(e.cause),
                    },
                    indent=2,
                )
            )
        else:
            err_console.print(
                f"[red]Build failed at step '{e.step}': {escape(str(e.cause))}[/red]"
            )
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "success": True,
            "build_id": outcome.build_id,
            "archive": str(outcome.archive_path),
            "manifest": outcome.manifest.model_dump(),
            "steps": {o.step: o.status.value for o in outcome.steps},
        }
        if outcome.cleanup is not None:
            output["cleanup_errors"] = outcome.cleanup.errors
        console.print(json.dumps(output, indent=2))
        return

    for step_outcome in outcome.steps:
        console.print(f"  {step_outcome.step:<10} {step_outcome.status.value}")
    if outcome.cleanup is not None and not outcome.cleanup.ok:
        for error in outcome.cleanup.errors:
            err_console.print(f"[yellow]Cleanup: {escape(error)}[/yellow]")
    console.print(f"[green]{outcome.archive_path.name} has been created.[/green]")


@app.command()
def unpack(
    quardle: Annotated[
        Path,
        typer.Option("--quardle", "-q", help="Path to the .qrk archive"),
    ],
    output: Annotated[
        Path,
        typer.Option("--output", "-o", help="Directory to unpack into"),
    ],
) -> None:
    """Unpack a quardle unless the output directory already exists."""
    from quark.errors import QuarkError
    from quark.builds.layout import CONFIG_FILE
    from quark.quardle.archive import extract_quardle
    from quark.quardle.manifest import read_manifest

    try:
        extracted = extract_quardle(quardle, output)
        manifest = read_manifest(output / CONFIG_FILE)
    except QuarkError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    if extracted:
        console.print(f"[green]Unpacked {quardle.name} to {output}[/green]")
    else:
        console.print(f"[yellow]{output} already exists, nothing to do[/yellow]")
    console.print(f"  Kernel:     {output / manifest.kernel}")
    console.print(f"  Initramfs:  {output / manifest.initramfs}")
    console.print(f"  Cmdline:    {manifest.kernel_cmdline}")


@app.command()
def show(
    quardle: Annotated[Path, typer.Argument(help="Path to the .qrk archive")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the manifest embedded in a quardle."""
    from quark.errors import QuarkError
    from quark.quardle.archive import list_quardle_members, read_quardle_manifest

    try:
        manifest = read_quardle_manifest(quardle)
        members = list_quardle_members(quardle)
    except QuarkError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(manifest.model_dump_json(indent=2))
        return

    console.print(f"[bold]{manifest.quardle}[/bold]")
    console.print(f"  Kernel:     {manifest.kernel}")
    console.print(f"  Initramfs:  {manifest.initramfs}")
    console.print(f"  Cmdline:    {manifest.kernel_cmdline}")
    console.print(f"  Image:      {manifest.image}")
    console.print(f"  kaps:       {manifest.kaps}")
    console.print(f"  Offline:    {manifest.offline}")
    if manifest.bundle:
        console.print(f"  Bundle:     {manifest.bundle}")
    console.print(f"  Members:    {len(members)}")


builds_app = typer.Typer(help="Inspect build records")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    quardle: Annotated[
        str | None,
        typer.Option("--quardle", "-q", help="Filter by quardle name"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of builds"),
    ] = 20,
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Staging directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recent builds in a staging directory."""
    from quark.builds.service import init_session_factory, list_builds

    factory = init_session_factory(_settings_with(work_dir))
    with factory() as session:
        builds = list_builds(session, quardle=quardle, limit=limit)

        if json_output:
            output = [
                {
                    "id": b.id,
                    "quardle": b.quardle,
                    "status": b.status,
                    "offline": b.offline,
                    "archive_path": b.archive_path,
                    "failed_step": b.failed_step,
                    "error_message": b.error_message,
                }
                for b in builds
            ]
            console.print(json.dumps(output, indent=2))
            return

        if not builds:
            console.print("[yellow]No builds found[/yellow]")
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        for b in builds:
            color = "green" if b.is_succeeded() else "red"
            console.print(f"  {b.id:>4}  {b.quardle}  [{color}]{b.status}[/{color}]")
            if b.failed_step:
                console.print(f"        failed at {b.failed_step}: {b.error_message}")


cache_app = typer.Typer(help="Inspect and reset staged artifact records")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Staging directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cache records of staged artifacts."""
    from quark.builds.cache import ArtifactCache
    from quark.builds.service import init_session_factory

    cache = ArtifactCache(init_session_factory(_settings_with(work_dir)))
    entries = cache.list_entries()

    if json_output:
        output = [
            {
                "kind": e.kind,
                "path": e.path,
                "state": e.state,
                "sha256": e.sha256,
                "exists": Path(e.path).exists(),
            }
            for e in entries
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not entries:
        console.print("[yellow]No cache records[/yellow]")
        return
    for e in entries:
        marker = "" if Path(e.path).exists() else " [red](missing)[/red]"
        console.print(f"  {e.kind:<10} {e.state:<9} {e.path}{marker}")


@cache_app.command("clear")
def cache_clear(
    kind: Annotated[
        str | None,
        typer.Option("--kind", help="Only clear one kind (kaps, kernel, ...)"),
    ] = None,
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Staging directory"),
    ] = None,
) -> None:
    """Forget cache records; staged files are re-adopted on the next build."""
    from quark.builds.cache import ArtifactCache
    from quark.builds.service import init_session_factory
    from quark.types import ArtifactKind

    artifact_kind: ArtifactKind | None = None
    if kind is not None:
        try:
            artifact_kind = ArtifactKind(kind)
        except ValueError:
            valid = ", ".join(k.value for k in ArtifactKind)
            err_console.print(
                f"[red]Invalid kind: {escape(kind)}. Valid: {valid}[/red]"
            )
            raise typer.Exit(code=1) from None

    cache = ArtifactCache(init_session_factory(_settings_with(work_dir)))
    removed = cache.clear(artifact_kind)
    console.print(f"Removed {removed} cache record(s)")


if __name__ == "__main__":
    app()
