"""Build service module.

This module provides the high-level build API:
- build_quardle(): Main entry point - run the pipeline, archive, clean up
- run_steps(): Run the ordered steps over a BuildContext
- cleanup_staging(): Drop per-build staging products after archiving
- Build record persistence
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from quark.builds.cache import ArtifactCache
from quark.builds.collaborators import (
    BundleBuilder,
    KernelBuilder,
    RootfsProvider,
    ScriptBundleBuilder,
    ScriptKernelBuilder,
    ScriptRootfsProvider,
)
from quark.builds.layout import StagingLayout, remove_path
from quark.builds.models import BuildRecord
from quark.builds.rootfs import DownloadRootfsProvider
from quark.builds.steps import STEPS, BuildContext, StepFunc
from quark.builds.toolchain import Toolchain
from quark.config import Settings, get_settings
from quark.db import create_all_tables, get_engine, get_session, get_session_factory
from quark.errors import (
    FilesystemError,
    QuarkError,
    SerializationError,
    StepFailedError,
)
from quark.quardle.archive import create_quardle
from quark.quardle.manifest import QuarkManifest
from quark.types import (
    ArtifactKind,
    BuildRequest,
    BuildStatus,
    CleanupReport,
    StepOutcome,
    StepStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class BuildOutcome:
    """Result of a successful quardle build.

    Attributes:
        request: The build request.
        archive_path: Path of the written ``.qrk`` archive.
        manifest: Manifest embedded in the archive.
        steps: Outcome of every pipeline step, in order.
        cleanup: Cleanup report (None when staging was kept).
        build_id: ID of the BuildRecord.
    """

    request: BuildRequest
    archive_path: Path
    manifest: QuarkManifest
    steps: list[StepOutcome] = field(default_factory=list)
    cleanup: CleanupReport | None = None
    build_id: int | None = None

    @property
    def built_steps(self) -> list[str]:
        return [o.step for o in self.steps if o.status == StepStatus.BUILT]


def init_session_factory(settings: Settings) -> sessionmaker[Session]:
    """Create the build database for a staging directory if needed."""
    engine = get_engine(settings.effective_db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


def create_context(
    request: BuildRequest,
    settings: Settings,
    session_factory: sessionmaker[Session],
    toolchain: Toolchain | None = None,
    kernel_builder: KernelBuilder | None = None,
    bundle_builder: BundleBuilder | None = None,
    rootfs_provider: RootfsProvider | None = None,
) -> BuildContext:
    """Assemble a BuildContext, filling in the default collaborators.

    Args:
        request: The build request.
        settings: Effective settings.
        session_factory: Session factory for the cache database.
        toolchain: Toolchain; one logging to the staging dir by default.
        kernel_builder: Kernel builder; script-backed by default.
        bundle_builder: Bundle builder; script-backed by default.
        rootfs_provider: Rootfs provider; chosen by settings.rootfs_source.

    Returns:
        BuildContext ready for run_steps().
    """
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    layout = StagingLayout.from_root(settings.work_dir, settings.kaps_target)

    if toolchain is None:
        toolchain = Toolchain(
            timeout=settings.tool_timeout,
            log_path=layout.root / "logs" / f"{request.quardle}.log",
        )
    if kernel_builder is None:
        kernel_builder = ScriptKernelBuilder(
            toolchain,
            settings.resolve_script(settings.kernel_script),
            layout.root,
            layout.kernel,
        )
    if bundle_builder is None:
        bundle_builder = ScriptBundleBuilder(
            toolchain,
            settings.resolve_script(settings.bundle_script),
            layout.root,
            layout.bundle_dir,
        )
    if rootfs_provider is None:
        if settings.rootfs_source == "script":
            rootfs_provider = ScriptRootfsProvider(
                toolchain, settings.resolve_script(settings.rootfs_script), layout.root
            )
        else:
            rootfs_provider = DownloadRootfsProvider(
                settings.rootfs_url,
                layout.downloads_dir,
                sha256=settings.rootfs_sha256,
                timeout=settings.download_timeout,
            )

    return BuildContext(
        request=request,
        settings=settings,
        layout=layout,
        toolchain=toolchain,
        cache=ArtifactCache(session_factory),
        kernel_builder=kernel_builder,
        bundle_builder=bundle_builder,
        rootfs_provider=rootfs_provider,
    )


def run_steps(
    ctx: BuildContext,
    steps: Sequence[tuple[str, StepFunc]] = STEPS,
) -> list[StepOutcome]:
    """Run pipeline steps in order, stopping at the first failure.

    Args:
        ctx: Build context.
        steps: Ordered (name, function) pairs.

    Returns:
        The outcome of every step.

    Raises:
        StepFailedError: If a step fails. Its outcome is recorded in
            ctx.outcomes before raising.
    """
    for name, func in steps:
        logger.debug("Running step %s", name)
        try:
            outcome = func(ctx)
        except (QuarkError, OSError) as e:
            ctx.outcomes.append(StepOutcome(name, StepStatus.FAILED, str(e), error=e))
            logger.error("Step %s failed: %s", name, e)
            raise StepFailedError(name, e) from e
        ctx.outcomes.append(outcome)
        logger.info("Step %s: %s", name, outcome.status.value)
    return ctx.outcomes


def archive_quardle(ctx: BuildContext, output_dir: Path) -> Path:
    """Package the staged manifest, kernel, initramfs (and bundle).

    Raises:
        ArchiveError: If the archive cannot be written.
    """
    layout = ctx.layout
    return create_quardle(
        layout.quardle_path(output_dir, ctx.request.quardle),
        manifest_path=layout.manifest,
        kernel_path=layout.kernel,
        initramfs_path=layout.initramfs,
        bundle_dir=layout.bundle_dir if ctx.request.offline else None,
    )


def cleanup_staging(layout: StagingLayout, cache: ArtifactCache) -> CleanupReport:
    """Remove per-build products from the staging directory.

    The rootfs tree, bundle tree, initramfs and manifest are removed;
    the kaps and kernel binaries stay as a cross-build cache. Failures
    are collected in the report rather than raised.

    Args:
        layout: Staging layout.
        cache: Cache whose records for removed artifacts are dropped.

    Returns:
        CleanupReport listing removed paths and errors.
    """
    report = CleanupReport()
    targets: list[tuple[Path, ArtifactKind | None]] = [
        (layout.rootfs_dir, None),
        (layout.bundle_dir, ArtifactKind.BUNDLE),
        (layout.initramfs, ArtifactKind.INITRAMFS),
        (layout.manifest, None),
    ]
    for path, kind in targets:
        try:
            if remove_path(path):
                report.removed.append(str(path))
            if kind is not None:
                cache.invalidate(kind, path)
        except FilesystemError as e:
            logger.warning("Cleanup failed: %s", e)
            report.errors.append(str(e))
    return report


def _current_step(ctx: BuildContext) -> str:
    """Name of the step running when the pipeline was interrupted."""
    done = len(ctx.outcomes)
    if done < len(STEPS):
        return STEPS[done][0]
    return "archive"


def _record_failure(
    session_factory: sessionmaker[Session],
    build_id: int,
    step: str,
    error_type: str,
    message: str,
) -> None:
    """Mark a build record failed."""
    with get_session(session_factory) as session:
        record = session.get(BuildRecord, build_id)
        if record is not None:
            record.mark_failed(step=step, error_type=error_type, message=message)


def build_quardle(
    request: BuildRequest,
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    keep_staging: bool | None = None,
    toolchain: Toolchain | None = None,
    kernel_builder: KernelBuilder | None = None,
    bundle_builder: BundleBuilder | None = None,
    rootfs_provider: RootfsProvider | None = None,
) -> BuildOutcome:
    """Build a quardle archive.

    This is the main entry point for the build pipeline. It:
    1. Records a BuildRecord in running state
    2. Runs the kaps, kernel, bundle, rootfs and manifest steps in order
    3. Writes ``<output_dir>/<quardle>.qrk``
    4. Removes per-build staging products unless staging is kept
    5. Marks the BuildRecord succeeded (or failed)

    Args:
        request: The build request.
        settings: Application settings.
        session_factory: Session factory; created from settings if omitted.
        keep_staging: Override settings.keep_staging.
        toolchain: Optional toolchain override.
        kernel_builder: Optional kernel builder override.
        bundle_builder: Optional bundle builder override.
        rootfs_provider: Optional rootfs provider override.

    Returns:
        BuildOutcome for the written archive.

    Raises:
        StepFailedError: If any step or the archive write fails. Completed
            steps stay staged and are skipped on retry. Any other error,
            including an interrupt, also marks the record failed and
            propagates unchanged.
    """
    if settings is None:
        settings = get_settings()
    if keep_staging is None:
        keep_staging = settings.keep_staging
    if session_factory is None:
        session_factory = init_session_factory(settings)

    ctx = create_context(
        request,
        settings,
        session_factory,
        toolchain=toolchain,
        kernel_builder=kernel_builder,
        bundle_builder=bundle_builder,
        rootfs_provider=rootfs_provider,
    )

    with get_session(session_factory) as session:
        record = BuildRecord(
            quardle=request.quardle,
            image=request.image,
            offline=request.offline,
            status=BuildStatus.PENDING.value,
        )
        session.add(record)
        session.flush()
        record.mark_running()
        build_id = record.id
    logger.info("Created build record %d for %s", build_id, request.quardle)

    try:
        run_steps(ctx)
        manifest = ctx.manifest
        if manifest is None:
            raise StepFailedError(
                "manifest", SerializationError("No manifest was written")
            )
        try:
            archive_path = archive_quardle(ctx, settings.output_dir)
        except QuarkError as e:
            ctx.outcomes.append(
                StepOutcome("archive", StepStatus.FAILED, str(e), error=e)
            )
            raise StepFailedError("archive", e) from e
    except StepFailedError as e:
        _record_failure(
            session_factory,
            build_id,
            step=e.step,
            error_type=getattr(e.cause, "code", type(e.cause).__name__),
            message=str(e.cause),
        )
        raise
    except BaseException as e:
        _record_failure(
            session_factory,
            build_id,
            step=_current_step(ctx),
            error_type=type(e).__name__,
            message=str(e),
        )
        raise

    ctx.outcomes.append(StepOutcome("archive", StepStatus.BUILT, str(archive_path)))

    cleanup: CleanupReport | None = None
    if keep_staging:
        logger.info("Keeping staging directory %s", ctx.layout.root)
    else:
        cleanup = cleanup_staging(ctx.layout, ctx.cache)

    with get_session(session_factory) as session:
        succeeded = session.get(BuildRecord, build_id)
        if succeeded is not None:
            succeeded.archive_path = str(archive_path)
            succeeded.manifest = manifest.model_dump()
            succeeded.mark_succeeded()

    return BuildOutcome(
        request=request,
        archive_path=archive_path,
        manifest=manifest,
        steps=list(ctx.outcomes),
        cleanup=cleanup,
        build_id=build_id,
    )


def list_builds(
    session: Session,
    quardle: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        quardle: Filter by quardle name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if quardle is not None:
        stmt = stmt.where(BuildRecord.quardle == quardle)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildOutcome",
    "archive_quardle",
    "build_quardle",
    "cleanup_staging",
    "create_context",
    "init_session_factory",
    "list_builds",
    "run_steps",
]
