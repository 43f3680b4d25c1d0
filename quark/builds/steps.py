"""Pipeline steps.

Each step is a plain function taking the shared BuildContext and
returning a StepOutcome. Steps run in the order of ``STEPS``; a step
raises on failure and later steps may rely on every earlier step's
output being present in the staging directory.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from quark.builds.cache import ArtifactCache, CacheDecision, compute_cache_key
from quark.builds.collaborators import BundleBuilder, KernelBuilder, RootfsProvider
from quark.builds.layout import (
    BUNDLE_DIR_NAME,
    RUNTIME_NAME,
    StagingLayout,
    atomic_path,
    remove_path,
    write_text_atomic,
)
from quark.builds.rootfs import (
    INIT_SCRIPT_TEMPLATE,
    pack_initramfs,
    render_init_script,
)
from quark.builds.toolchain import Toolchain
from quark.config import Settings
from quark.errors import FilesystemError, ToolFailure
from quark.quardle.manifest import QuarkManifest, build_manifest, write_manifest
from quark.types import ArtifactKind, BuildRequest, StepOutcome, StepStatus

logger = logging.getLogger(__name__)


@dataclass
class BuildContext:
    """Shared state threaded through the pipeline steps.

    Attributes:
        request: The immutable build request.
        settings: Effective settings.
        layout: Staging paths.
        toolchain: Adapter for external tools.
        cache: Per-artifact cache records.
        kernel_builder: Kernel build procedure.
        bundle_builder: Container bundle procedure.
        rootfs_provider: Base rootfs procedure.
        manifest: Manifest written by the manifest step.
        outcomes: Outcomes of the steps run so far.
    """

    request: BuildRequest
    settings: Settings
    layout: StagingLayout
    toolchain: Toolchain
    cache: ArtifactCache
    kernel_builder: KernelBuilder
    bundle_builder: BundleBuilder
    rootfs_provider: RootfsProvider
    manifest: QuarkManifest | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)


StepFunc = Callable[[BuildContext], StepOutcome]


def _reuse(
    ctx: BuildContext, kind: ArtifactKind, path: Path, cache_key: str
) -> bool:
    """Apply the skip policy; remove stale output so the step rebuilds it."""
    decision = ctx.cache.check(kind, path, cache_key)
    if decision is CacheDecision.SKIP:
        return True
    if decision is CacheDecision.STALE:
        remove_path(path)
    return False


def _publish(produced: Path, target: Path) -> Path:
    """Place a collaborator's output at its staging path.

    Files are copied through a temporary sibling and renamed; directories
    are copied to a temporary sibling directory and renamed.
    """
    if produced.resolve() == target.resolve():
        return target
    logger.debug("Publishing %s -> %s", produced, target)
    try:
        if produced.is_dir():
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_dir = Path(
                tempfile.mkdtemp(dir=target.parent, prefix=f".{target.name}.")
            )
            try:
                shutil.copytree(produced, tmp_dir, symlinks=True, dirs_exist_ok=True)
                tmp_dir.rename(target)
            except BaseException:
                shutil.rmtree(tmp_dir, ignore_errors=True)
                raise
        else:
            with atomic_path(target) as tmp_path:
                shutil.copy2(produced, tmp_path)
    except (OSError, shutil.Error) as e:
        raise FilesystemError(f"Failed to publish {produced} -> {target}: {e}") from e
    return target


def build_kaps(ctx: BuildContext) -> StepOutcome:
    """Clone, pin and compile the kaps runtime binary.

    Skipped when the release binary is already staged.
    """
    step = "kaps"
    layout = ctx.layout
    settings = ctx.settings
    cache_key = compute_cache_key(
        ArtifactKind.KAPS,
        {
            "repository": settings.kaps_repository_url,
            "ref": settings.kaps_ref,
            "target": settings.kaps_target,
        },
    )

    if _reuse(ctx, ArtifactKind.KAPS, layout.kaps_binary, cache_key):
        logger.info("Kaps binary already exists, skipping.")
        return StepOutcome(step, StepStatus.SKIPPED, "kaps binary already exists")

    ctx.cache.begin(ArtifactKind.KAPS, layout.kaps_binary, cache_key)

    if not (layout.kaps_dir / ".git").is_dir():
        ctx.toolchain.remove_tree(layout.kaps_dir)
        logger.info("Cloning the kaps repository...")
        ctx.toolchain.git_clone(step, settings.kaps_repository_url, layout.kaps_dir)
    ctx.toolchain.git_checkout(step, layout.kaps_dir, settings.kaps_ref)

    logger.info("Building kaps binary...")
    ctx.toolchain.run(
        step,
        ["cargo", "build", "--release", f"--target={settings.kaps_target}"],
        cwd=layout.kaps_dir,
    )
    if not layout.kaps_binary.is_file():
        raise ToolFailure(
            f"cargo build finished but {layout.kaps_binary} is missing",
            step=step,
            code="missing_output",
        )

    ctx.cache.complete(ArtifactKind.KAPS, layout.kaps_binary, cache_key)
    return StepOutcome(step, StepStatus.BUILT, str(layout.kaps_binary))


def build_kernel(ctx: BuildContext) -> StepOutcome:
    """Build the guest kernel unless it is already staged."""
    step = "kernel"
    layout = ctx.layout
    cache_key = compute_cache_key(
        ArtifactKind.KERNEL, {"script": str(ctx.settings.kernel_script)}
    )

    if _reuse(ctx, ArtifactKind.KERNEL, layout.kernel, cache_key):
        logger.info("Kernel already exists, no need to re-build it, skipping.")
        return StepOutcome(step, StepStatus.SKIPPED, "kernel already exists")

    ctx.cache.begin(ArtifactKind.KERNEL, layout.kernel, cache_key)
    logger.info("Building kernel...")
    _publish(ctx.kernel_builder.build(), layout.kernel)
    ctx.cache.complete(ArtifactKind.KERNEL, layout.kernel, cache_key)
    return StepOutcome(step, StepStatus.BUILT, str(layout.kernel))


def build_bundle(ctx: BuildContext) -> StepOutcome:
    """Create the container bundle for offline builds."""
    step = "bundle"
    layout = ctx.layout
    if not ctx.request.offline:
        return StepOutcome(step, StepStatus.SKIPPED, "online build, no bundle")

    cache_key = compute_cache_key(ArtifactKind.BUNDLE, {"image": ctx.request.image})
    if _reuse(ctx, ArtifactKind.BUNDLE, layout.bundle_dir, cache_key):
        logger.info("Container bundle already exists, skipping.")
        return StepOutcome(step, StepStatus.SKIPPED, "bundle already exists")

    ctx.cache.begin(ArtifactKind.BUNDLE, layout.bundle_dir, cache_key)
    logger.info("Creating container bundle from %s...", ctx.request.image)
    _publish(ctx.bundle_builder.build(ctx.request.image), layout.bundle_dir)
    ctx.cache.complete(ArtifactKind.BUNDLE, layout.bundle_dir, cache_key)
    return StepOutcome(step, StepStatus.BUILT, str(layout.bundle_dir))


def _rootfs_inputs(ctx: BuildContext) -> dict[str, object]:
    settings = ctx.settings
    inputs: dict[str, object] = {
        "kaps": ctx.cache.checksum(ArtifactKind.KAPS, ctx.layout.kaps_binary),
        "offline": ctx.request.offline,
        "rootfs_source": settings.rootfs_source,
        "init": hashlib.sha256(INIT_SCRIPT_TEMPLATE.encode()).hexdigest(),
    }
    if settings.rootfs_source == "download":
        inputs["rootfs"] = settings.rootfs_url
    else:
        inputs["rootfs"] = str(settings.rootfs_script)
    if ctx.request.offline:
        inputs["bundle"] = ctx.cache.checksum(
            ArtifactKind.BUNDLE, ctx.layout.bundle_dir
        )
    return inputs


def build_rootfs(ctx: BuildContext) -> StepOutcome:
    """Assemble the guest rootfs and pack it into the initramfs image.

    The rootfs tree is scratch space: it is rebuilt from the base
    image every time the initramfs is rebuilt.
    """
    step = "rootfs"
    layout = ctx.layout
    cache_key = compute_cache_key(ArtifactKind.INITRAMFS, _rootfs_inputs(ctx))

    if _reuse(ctx, ArtifactKind.INITRAMFS, layout.initramfs, cache_key):
        logger.info("rootfs image already exists, skipping.")
        return StepOutcome(step, StepStatus.SKIPPED, "initramfs already exists")

    ctx.cache.begin(ArtifactKind.INITRAMFS, layout.initramfs, cache_key)

    ctx.toolchain.remove_tree(layout.rootfs_dir)
    logger.info("Materializing base rootfs...")
    ctx.rootfs_provider.materialize(layout.rootfs_dir)

    # Adding kaps binary to the rootfs
    ctx.toolchain.copy_file(
        layout.kaps_binary, layout.rootfs_dir / "opt" / RUNTIME_NAME, mode=0o755
    )

    if ctx.request.offline:
        # Adding the container bundle to the rootfs
        ctx.toolchain.copy_tree(layout.bundle_dir, layout.rootfs_dir / BUNDLE_DIR_NAME)

    write_text_atomic(
        layout.rootfs_dir / "init",
        render_init_script(RUNTIME_NAME, BUNDLE_DIR_NAME),
        mode=0o755,
    )

    pack_initramfs(ctx.toolchain, layout.rootfs_dir, layout.initramfs, step=step)
    ctx.cache.complete(ArtifactKind.INITRAMFS, layout.initramfs, cache_key)
    return StepOutcome(step, StepStatus.BUILT, str(layout.initramfs))


def write_manifest_step(ctx: BuildContext) -> StepOutcome:
    """Write quark.json for the request."""
    ctx.manifest = build_manifest(ctx.request)
    write_manifest(ctx.manifest, ctx.layout.manifest)
    return StepOutcome("manifest", StepStatus.BUILT, str(ctx.layout.manifest))


STEPS: list[tuple[str, StepFunc]] = [
    ("kaps", build_kaps),
    ("kernel", build_kernel),
    ("bundle", build_bundle),
    ("rootfs", build_rootfs),
    ("manifest", write_manifest_step),
]


__all__ = [
    "STEPS",
    "BuildContext",
    "StepFunc",
    "build_bundle",
    "build_kaps",
    "build_kernel",
    "build_rootfs",
    "write_manifest_step",
]
