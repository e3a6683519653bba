"""Build orchestration service.

This module provides high-level APIs for running builds:
- generate_build_config(): snapshot a configuration and write its scripts
- execute_build(): acquire, inject and package one build
- run_build_job() / process_next_build(): drive a job from an external
  tracker through the pipeline, pushing progress into it
- cleanup_build(): remove a finished build's work directory

Job sequencing and persistence belong to the tracker; this module only
pushes updates.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx

from armbian_imagegen.builds.artifacts import CONFIG_JSON, package_artifacts
from armbian_imagegen.builds.injector import Capabilities, inject, write_files
from armbian_imagegen.builds.scripts import CUSTOMIZE_SCRIPT, generate_scripts
from armbian_imagegen.config import get_settings
from armbian_imagegen.configuration.io import load_configuration, save_configuration
from armbian_imagegen.errors import ImagegenError, OperationCancelled
from armbian_imagegen.images.service import acquire_base_image
from armbian_imagegen.tools import Deadline, SubprocessToolRunner, ToolRunner
from armbian_imagegen.types import BuildArtifact, BuildProgress, BuildProgressCallback

if TYPE_CHECKING:
    from armbian_imagegen.config import Settings
    from armbian_imagegen.configuration.schema import BuildConfiguration

logger = logging.getLogger(__name__)

# Download progress is mapped into this window of the overall build
DOWNLOAD_PROGRESS_START = 15
DOWNLOAD_PROGRESS_END = 29


class JobTracker(Protocol):
    """External job queue/tracker consumed by the build pipeline."""

    def create_job(self, config: BuildConfiguration, requester: str) -> str: ...

    def update_progress(self, job_id: str, phase: str, percent: int, message: str) -> None: ...

    def complete(self, job_id: str, artifacts: list[BuildArtifact]) -> None: ...

    def fail(self, job_id: str, message: str) -> None: ...

    def cancel(self, job_id: str) -> bool: ...

    def next_queued(self) -> str | None: ...

    def has_active_job(self) -> bool: ...


def generate_build_config(
    config: BuildConfiguration,
    job_id: str,
    settings: Settings | None = None,
) -> Path:
    """Create the work directory for a build.

    The configuration is snapshotted and written as config.json together with
    the generated scripts, so later edits to the caller's object do not
    affect the build.

    Args:
        config: Validated build configuration.
        job_id: Build job identifier.
        settings: Application settings (uses defaults if not provided).

    Returns:
        The work directory.
    """
    if settings is None:
        settings = get_settings()

    work_dir = settings.build_dir / job_id
    work_dir.mkdir(parents=True, exist_ok=True)

    snapshot = config.snapshot()
    save_configuration(snapshot, work_dir / CONFIG_JSON)

    scripts = generate_scripts(snapshot)
    write_files(work_dir, scripts)

    # Armbian's build framework picks customization up from userpatches
    if scripts.customize_script:
        customize_dir = work_dir / "userpatches" / "customize-image"
        customize_dir.mkdir(parents=True, exist_ok=True)
        target = customize_dir / CUSTOMIZE_SCRIPT
        target.write_text(scripts.customize_script, encoding="utf-8")
        target.chmod(0o755)

    logger.info("[%s] Generated build configuration in %s", job_id, work_dir)
    return work_dir


class _ProgressReporter:
    """Emits BuildProgress and keeps the lines for build.log."""

    def __init__(self, job_id: str, callback: BuildProgressCallback | None) -> None:
        self.job_id = job_id
        self.callback = callback
        self.lines: list[str] = []

    def __call__(self, phase: str, progress: int, message: str) -> None:
        update = BuildProgress(phase=phase, progress=progress, message=message)
        self.lines.append(f"{update.timestamp.isoformat()} [{phase}] {progress}% {message}")
        logger.info("[%s] %s (%d%%): %s", self.job_id, phase, progress, message)
        if self.callback is not None:
            self.callback(update)

    def download_callback(self) -> Callable[[int, int | None], None]:
        last = DOWNLOAD_PROGRESS_START

        def on_bytes(done: int, total: int | None) -> None:
            nonlocal last
            if not total:
                return
            span = DOWNLOAD_PROGRESS_END - DOWNLOAD_PROGRESS_START
            percent = DOWNLOAD_PROGRESS_START + min(span, done * span // total)
            if percent > last:
                last = percent
                self("downloading", percent, f"Downloaded {done // (1024 * 1024)} MB")

        return on_bytes


def execute_build(
    work_dir: Path,
    job_id: str,
    on_progress: BuildProgressCallback | None = None,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
    runner: ToolRunner | None = None,
    deadline: Deadline | None = None,
    capabilities: Capabilities | None = None,
) -> list[BuildArtifact]:
    """Run the build pipeline for a prepared work directory.

    Phases: initializing 5, downloading 15, configuring 30/45, packaging 70,
    completed 100. Failures emit a 'failed' update at 0 and re-raise.

    Args:
        work_dir: Directory created by generate_build_config().
        job_id: Build job identifier.
        on_progress: Optional progress callback.
        settings: Application settings (uses defaults if not provided).
        client: HTTPX client for downloads.
        runner: Tool runner.
        deadline: Job deadline; defaults to settings.build_timeout.
        capabilities: Injection capabilities; probed when not provided.

    Returns:
        Build artifacts.

    Raises:
        ImagegenError: If a stage fails without a safe fallback.
        OperationCancelled: If the deadline expires or the job is cancelled.
    """
    if settings is None:
        settings = get_settings()
    if runner is None:
        runner = SubprocessToolRunner()
    if deadline is None:
        deadline = Deadline(settings.build_timeout)

    report = _ProgressReporter(job_id, on_progress)
    output_dir = work_dir / "output"

    try:
        report("initializing", 5, "Preparing Armbian configuration...")
        config = load_configuration(work_dir / CONFIG_JSON)
        output_dir.mkdir(parents=True, exist_ok=True)

        report("downloading", 15, "Acquiring base Armbian image...")
        acquisition = acquire_base_image(
            config,
            job_id,
            work_dir,
            settings=settings,
            client=client,
            runner=runner,
            on_progress=report.download_callback(),
            deadline=deadline,
        )
        if acquisition.is_placeholder:
            report("downloading", 29, f"Using placeholder image: {acquisition.reason}")
        else:
            report("downloading", 29, f"Base image ready ({acquisition.source.value})")

        deadline.check()
        report("configuring", 30, "Generating armbian-config scripts...")
        scripts = generate_scripts(config)
        report("configuring", 45, "Generating cloud-init configuration...")

        report("packaging", 70, "Creating configured Armbian image...")
        if acquisition.is_placeholder:
            capabilities = Capabilities(
                in_container=False,
                can_elevate=False,
                reason="base image is a placeholder",
            )
        injection = inject(
            acquisition.image_path,
            scripts,
            job_id,
            output_dir,
            runner,
            deadline=deadline,
            capabilities=capabilities,
        )
        report("packaging", 85, f"Configured image via {injection.strategy.value}")

        metadata = {
            "board": config.board.name,
            "release": config.distribution.release,
            "type": config.distribution.type,
            "source": acquisition.source.value,
            "source_url": acquisition.url,
            "injection": injection.strategy.value,
            "fallback_reason": injection.reason or acquisition.reason,
        }
        report("packaging", 95, "Packaging artifacts...")
        artifacts = package_artifacts(
            injection.image_path,
            work_dir,
            output_dir,
            job_id,
            log_lines=report.lines,
            extra_metadata=metadata,
        )
        report("completed", 100, "Armbian image configured successfully")
        return artifacts

    except Exception as e:
        message = e.message if isinstance(e, ImagegenError) else str(e) or type(e).__name__
        logger.error("[%s] Build failed: %s", job_id, message)
        try:
            report("failed", 0, f"Build failed: {message}")
        except Exception:
            logger.exception("[%s] Could not report build failure", job_id)
        raise


def run_build_job(
    tracker: JobTracker,
    job_id: str,
    config: BuildConfiguration,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
    runner: ToolRunner | None = None,
    deadline: Deadline | None = None,
) -> list[BuildArtifact]:
    """Drive one tracked job through the pipeline.

    Progress is pushed to the tracker; the job is completed with the
    artifacts or failed with the error message, which is then re-raised.
    Cancellation requested through the deadline is not reported as a
    failure, since the tracker initiated it.

    Args:
        tracker: External job tracker.
        job_id: Job identifier.
        config: Build configuration.
        settings: Application settings (uses defaults if not provided).
        client: HTTPX client for downloads.
        runner: Tool runner.
        deadline: Job deadline; defaults to settings.build_timeout.

    Returns:
        Build artifacts.
    """
    if settings is None:
        settings = get_settings()
    if deadline is None:
        deadline = Deadline(settings.build_timeout)

    def push(update: BuildProgress) -> None:
        tracker.update_progress(job_id, update.phase, update.progress, update.message)

    try:
        work_dir = generate_build_config(config, job_id, settings)
        artifacts = execute_build(
            work_dir,
            job_id,
            push,
            settings=settings,
            client=client,
            runner=runner,
            deadline=deadline,
        )
    except OperationCancelled as e:
        if not deadline.cancelled:
            tracker.fail(job_id, e.message)
        raise
    except ImagegenError as e:
        tracker.fail(job_id, e.message)
        raise
    except Exception as e:
        tracker.fail(job_id, str(e) or type(e).__name__)
        raise

    tracker.complete(job_id, artifacts)
    logger.info("[%s] Build succeeded with %d artifacts", job_id, len(artifacts))
    return artifacts


def process_next_build(
    tracker: JobTracker,
    get_config: Callable[[str], BuildConfiguration],
    settings: Settings | None = None,
    client: httpx.Client | None = None,
    runner: ToolRunner | None = None,
) -> str | None:
    """Run the next queued job if nothing else is active.

    Args:
        tracker: External job tracker.
        get_config: Returns the configuration for a job id.
        settings: Application settings (uses defaults if not provided).
        client: HTTPX client for downloads.
        runner: Tool runner.

    Returns:
        The processed job id, or None if no job was started.
    """
    if tracker.has_active_job():
        logger.debug("A build is already active, not starting another")
        return None

    job_id = tracker.next_queued()
    if job_id is None:
        return None

    run_build_job(
        tracker,
        job_id,
        get_config(job_id),
        settings=settings,
        client=client,
        runner=runner,
    )
    return job_id


def cleanup_build(job_id: str, settings: Settings | None = None) -> bool:
    """Remove a build's work directory.

    Removal failures are logged, not raised.

    Args:
        job_id: Build job identifier.
        settings: Application settings (uses defaults if not provided).

    Returns:
        True if the directory was removed, False if it did not exist or
        could not be removed.

    Raises:
        ValueError: If job_id does not name a directory inside build_dir.
    """
    if settings is None:
        settings = get_settings()

    build_root = settings.build_dir.resolve()
    work_dir = (settings.build_dir / job_id).resolve()
    if work_dir == build_root or build_root not in work_dir.parents:
        raise ValueError(f"Invalid build id: {job_id!r}")

    if not work_dir.exists():
        return False

    try:
        shutil.rmtree(work_dir)
    except OSError as e:
        logger.error("[%s] Cleanup of %s failed: %s", job_id, work_dir, e)
        return False

    logger.info("[%s] Cleaned up build files in %s", job_id, work_dir)
    return True


__all__ = [
    "JobTracker",
    "cleanup_build",
    "execute_build",
    "generate_build_config",
    "process_next_build",
    "run_build_job",
]
