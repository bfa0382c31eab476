"""Deployment pipeline executed by the queue worker for one job at a time."""

from __future__ import annotations

import os
import shutil
import time
import zipfile
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import structlog
from prometheus_client import Counter, Histogram

from simpledeploy.core.config import DeploymentNameConfig, Settings
from simpledeploy.core.exceptions import (
    ArtifactExtractionError,
    BackupError,
    DeploymentAbortedError,
    InsufficientDiskSpaceError,
    NoArtifactsError,
    ScriptNotFoundError,
)
from simpledeploy.deploy.backup import create_backup, rotate_backups
from simpledeploy.deploy.extract import UnsafeArchiveError, find_zip_files, safe_extract_zip
from simpledeploy.deploy.job_log import DeploymentLogManager, JobLog
from simpledeploy.deploy.models import Job, PipelineResult
from simpledeploy.deploy.script_runner import (
    BATCH_EXTENSIONS,
    POWERSHELL_EXTENSIONS,
    ScriptContext,
    ScriptRunner,
)
from simpledeploy.utils.disk import available_space, display_file_size
from simpledeploy.webserver.base import ServerWebsite, WebserverControl

logger = structlog.get_logger()

# Checked in this order against each artifact, in upload order
CONVENTIONAL_SCRIPT_NAMES = ("deploy.ps1", "deploy.bat", "deploy.cmd", "deploy.sh", "deploy.py")
SCRIPT_EXTENSIONS = POWERSHELL_EXTENSIONS | BATCH_EXTENSIONS | {".sh", ".py"}

JOBS_TOTAL = Counter(
    "simpledeploy_jobs_total",
    "Deployment jobs processed",
    ["outcome"],
)

JOB_DURATION = Histogram(
    "simpledeploy_job_duration_seconds",
    "Deployment job duration",
)


@dataclass
class _DeploymentContext:
    """State shared between the stages of a single run."""

    job: Job
    log: JobLog
    policy: DeploymentNameConfig
    managed: bool = False
    auto_copy: bool = False
    auto_extract: bool = False
    job_folder: Path = Path()
    backup_folder: Path = Path()
    staged_files: List[str] = field(default_factory=list)
    domain: str = ""
    website: Optional[ServerWebsite] = None
    script_path: Optional[Path] = None
    destination: str = ""
    exit_code: Optional[int] = None


class DeploymentPipeline:
    """Runs the ordered deployment stages for one job.

    ``run`` never raises: fatal stages abort the job, degraded stages log a
    warning and carry on, and anything unexpected is caught at the boundary.
    """

    def __init__(
        self,
        settings: Settings,
        webserver: WebserverControl,
        script_runner: Optional[ScriptRunner] = None,
        log_manager: Optional[DeploymentLogManager] = None,
    ):
        self.settings = settings
        self.webserver = webserver
        self.script_runner = script_runner or ScriptRunner(
            powershell_executable=settings.powershell_executable,
            timeout=settings.script_timeout_seconds,
        )
        self.log_manager = log_manager

    def create_job_log(self, job: Job) -> JobLog:
        file_logger = self.log_manager.get_logger(job.deployment_name) if self.log_manager else None
        return JobLog(job.job_id, file_logger)

    def _stages(self) -> List[Tuple[str, Callable[[_DeploymentContext], None]]]:
        return [
            ("precheck", self._precheck),
            ("folders", self._setup_folders),
            ("artifacts", self._require_artifacts),
            ("stage-artifacts", self._stage_artifacts),
            ("domain", self._resolve_domain),
            ("target-info", self._fetch_target_info),
            ("extract", self._extract_archives),
            ("script", self._resolve_script),
            ("destination", self._resolve_destination),
            ("stop", self._stop_target),
            ("backup", self._backup_destination),
            ("clean", self._clean_destination),
            ("run-script", self._run_script),
            ("copy", self._copy_to_destination),
            ("cleanup", self._cleanup_job_folder),
            ("start", self._start_target),
        ]

    def run(self, job: Job, log: JobLog) -> PipelineResult:
        start = time.monotonic()
        policy = self.settings.deployment_names.policy_for(job.deployment_name)
        ctx = _DeploymentContext(
            job=job,
            log=log,
            policy=policy,
            managed=job.is_managed_website or policy.managed,
            auto_copy=job.auto_copy or policy.auto_copy,
            auto_extract=job.auto_extract or policy.auto_extract,
        )

        log.stage = "start"
        log.info("==Deployment started==")
        logger.info("Processing job", job_id=job.job_id, deployment_name=job.deployment_name)

        success = False
        message = ""
        try:
            for stage_name, stage in self._stages():
                log.stage = stage_name
                stage(ctx)
            success = True
        except DeploymentAbortedError as exc:
            message = str(exc)
            if exc.log_level == "warning":
                log.warning(message)
            else:
                log.error(message)
            logger.warning("Deployment aborted", job_id=job.job_id, stage=exc.stage, reason=message)
        except Exception as exc:
            message = f"Error processing job during stage '{log.stage}': {exc}"
            log.error(message)
            logger.exception("Error processing job", job_id=job.job_id, stage=log.stage)
        finally:
            for artifact in job.artifacts:
                artifact.release()

        failed_stage = log.stage
        elapsed = time.monotonic() - start
        elapsed_text = str(timedelta(seconds=round(elapsed, 3)))
        log.stage = "finish"
        if success:
            log.finish(f"==Deployment complete in {elapsed_text}==")
            logger.info("Processing of job complete", job_id=job.job_id, elapsed_seconds=round(elapsed, 3))
        else:
            log.finish(f"==Deployment aborted after {elapsed_text}==")

        JOBS_TOTAL.labels(outcome="success" if success else "failed").inc()
        JOB_DURATION.observe(elapsed)
        return PipelineResult(
            job_id=job.job_id,
            success=success,
            stage="finish" if success else failed_stage,
            message=message,
            exit_code=ctx.exit_code,
            elapsed_seconds=elapsed,
        )

    # Stages

    def _precheck(self, ctx: _DeploymentContext) -> None:
        free = available_space(self.settings.working_folder)
        required = self.settings.min_free_space
        if free < required:
            raise InsufficientDiskSpaceError(
                f"Insufficient disk space to deploy: {display_file_size(free)} available, "
                f"{display_file_size(required)} required",
                stage="precheck",
            )

    def _setup_folders(self, ctx: _DeploymentContext) -> None:
        name = ctx.job.deployment_name
        working = Path(self.settings.working_folder)
        deployment_jobs = self.settings.jobs_path / name
        ctx.job_folder = deployment_jobs / ctx.job.job_id
        ctx.backup_folder = self.settings.backups_path / name
        for folder in (working, deployment_jobs, ctx.job_folder, ctx.backup_folder):
            folder.mkdir(parents=True, exist_ok=True)

    def _require_artifacts(self, ctx: _DeploymentContext) -> None:
        if not ctx.job.artifacts:
            raise NoArtifactsError("No artifacts provided for deployment!", stage="artifacts")

    def _stage_artifacts(self, ctx: _DeploymentContext) -> None:
        artifacts = ctx.job.artifacts
        ctx.log.info(f"Artifacts ({len(artifacts)}): {', '.join(a.filename for a in artifacts)}")
        for artifact in artifacts:
            filename = Path(artifact.filename.replace("\\", "/")).name
            if filename in ("", ".", ".."):
                ctx.log.warning(f"Skipping artifact with invalid filename '{artifact.filename}'")
                continue
            ctx.log.info(f"Saving artifact {filename} ({display_file_size(len(artifact.data))})")
            (ctx.job_folder / filename).write_bytes(artifact.data)
            artifact.release()
            ctx.staged_files.append(filename)

    def _resolve_domain(self, ctx: _DeploymentContext) -> None:
        ctx.domain = ctx.job.domain or ctx.policy.domain or ctx.job.deployment_name
        ctx.log.info(f"Deploying '{ctx.job.deployment_name}' to domain '{ctx.domain}'")

    def _fetch_target_info(self, ctx: _DeploymentContext) -> None:
        if not ctx.managed:
            ctx.log.info("Not a managed website, skipping webserver lookup")
            return
        ctx.log.info("Fetching information from webserver...")
        try:
            ctx.website = self.webserver.get_website(ctx.domain)
        except Exception as exc:
            ctx.log.warning(f"Webserver lookup for '{ctx.domain}' failed: {exc}")
            ctx.website = None
        if ctx.website is None:
            ctx.log.warning(f"'{ctx.domain}' website could not be found in web server.")
            return
        ctx.log.info(
            f"'{ctx.domain}' website found in web server "
            f"[id '{ctx.website.id}', state '{ctx.website.state}', path '{ctx.website.physical_path}']"
        )

    def _extract_archives(self, ctx: _DeploymentContext) -> None:
        if not ctx.auto_extract:
            ctx.log.info("Auto-extract of zip files skipped due to job setting.")
            return
        zip_files = find_zip_files(ctx.job_folder)
        ctx.log.info(f"Found {len(zip_files)} zip files to extract...")
        for zip_file in zip_files:
            extract_path = zip_file.parent
            ctx.log.info(f"Extracting zip file '{zip_file.name}' to '{extract_path}'...")
            started = time.monotonic()
            try:
                count = safe_extract_zip(zip_file, extract_path)
            except (zipfile.BadZipFile, UnsafeArchiveError, OSError) as exc:
                raise ArtifactExtractionError(
                    f"Error extracting zip file '{zip_file.name}': {exc}", stage="extract"
                ) from exc
            ctx.log.info(
                f"Finished extracting {count} files from '{zip_file.name}' in {time.monotonic() - started:.2f}s"
            )
            try:
                zip_file.unlink()
            except OSError as exc:
                ctx.log.warning(f"Error deleting zip file '{zip_file.name}' after extraction: {exc}")

    def _resolve_script(self, ctx: _DeploymentContext) -> None:
        declared = (ctx.job.deployment_script or "").strip()
        script_name = declared
        if not script_name:
            script_name = self._find_conventional_script(ctx) or ""
            if script_name:
                ctx.log.info(f"No deployment script specified, using '{script_name}'")

        if script_name and "\n" not in script_name:
            staged = self._find_staged_file(ctx.job_folder, script_name)
            if staged is not None:
                ctx.script_path = staged
                ctx.log.info(f"Deployment script '{staged.name}' found in artifacts")
                return

        if declared and not _looks_like_filename(declared):
            filename = self.settings.inline_script_filename
            script = ctx.job.deployment_script or ""
            ctx.log.info(f"Saving deployment script {filename} ({len(script.encode('utf-8'))} bytes)")
            ctx.script_path = ctx.job_folder / filename
            with open(ctx.script_path, "w", encoding="utf-8", newline="") as f:
                f.write(script)
            return

        raise ScriptNotFoundError(
            "Could not determine deployment script - "
            f"artifacts specified a deployment script named '{script_name}' but it was not found "
            "and no direct script was provided.",
            stage="script",
        )

    @staticmethod
    def _find_conventional_script(ctx: _DeploymentContext) -> Optional[str]:
        for filename in ctx.staged_files:
            if filename.lower() in CONVENTIONAL_SCRIPT_NAMES:
                return filename
        # Scripts that came out of an extracted archive
        present = {p.name.lower(): p.name for p in ctx.job_folder.iterdir() if p.is_file()}
        for candidate in CONVENTIONAL_SCRIPT_NAMES:
            if candidate in present:
                return present[candidate]
        return None

    @staticmethod
    def _find_staged_file(job_folder: Path, name: str) -> Optional[Path]:
        relative = Path(name.replace("\\", "/"))
        if relative.is_absolute() or ".." in relative.parts:
            return None
        candidate = job_folder / relative
        if candidate.is_file():
            return candidate
        lowered = relative.as_posix().lower()
        for path in job_folder.rglob("*"):
            if path.is_file() and path.relative_to(job_folder).as_posix().lower() == lowered:
                return path
        return None

    def _resolve_destination(self, ctx: _DeploymentContext) -> None:
        destination = ctx.policy.path or (ctx.website.physical_path if ctx.website else "")
        ctx.destination = os.path.expandvars(destination) if destination else ""
        if ctx.destination:
            ctx.log.info(f"Destination path '{ctx.destination}'")
        else:
            ctx.log.info("No destination path configured or reported by the webserver")

    def _stop_target(self, ctx: _DeploymentContext) -> None:
        if not (ctx.managed and ctx.policy.stop_before_deploy):
            return
        ctx.log.info(f"Stopping website '{ctx.domain}'...")
        if self._control_website("stop", ctx):
            ctx.log.info(f"'{ctx.domain}' stopped!")
        else:
            ctx.log.warning(f"Failed to stop website '{ctx.domain}'!")

    def _backup_destination(self, ctx: _DeploymentContext) -> None:
        if not ctx.policy.backup:
            return
        if not ctx.destination:
            ctx.log.warning("Backup skipped, destination path is unknown")
            return
        source = Path(ctx.destination)
        if not source.is_dir():
            ctx.log.warning(f"Backup skipped, destination '{source}' does not exist")
            return

        ctx.log.info(f"Backing up '{source}'...")
        try:
            archive = create_backup(source, ctx.backup_folder, ctx.job.deployment_name, ctx.job.job_id)
        except (OSError, zipfile.BadZipFile, ValueError) as exc:
            raise BackupError(f"Backup of '{source}' failed, deployment cancelled: {exc}", stage="backup") from exc
        ctx.log.info(f"Backup created '{archive.name}' ({display_file_size(archive.stat().st_size)})")

        rotation = rotate_backups(ctx.backup_folder, self.settings.max_backup_files)
        for deleted in rotation.deleted:
            ctx.log.info(f"Removed old backup '{deleted.name}'")
        for path, error in rotation.failed:
            ctx.log.warning(f"Failed to remove old backup '{path.name}': {error}")

    def _clean_destination(self, ctx: _DeploymentContext) -> None:
        if not ctx.policy.clean_before_deploy:
            return
        if not ctx.destination:
            ctx.log.warning("Clean before deploy skipped, destination path is unknown")
            return
        destination = Path(ctx.destination)
        if not destination.is_dir():
            ctx.log.info(f"Destination '{destination}' does not exist, nothing to clean")
            return
        if _is_unsafe_to_clean(destination, Path(self.settings.working_folder), ctx.job_folder):
            ctx.log.warning(f"Refusing to clean protected path '{destination}'")
            return

        ctx.log.info(f"Cleaning destination '{destination}'...")
        deleted = 0
        for entry in sorted(destination.iterdir()):
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                deleted += 1
            except OSError as exc:
                ctx.log.warning(f"Failed to delete '{entry}': {exc}")
        ctx.log.info(f"Cleaned destination '{destination}', {deleted} entries deleted")

    def _run_script(self, ctx: _DeploymentContext) -> None:
        if ctx.script_path is None:
            raise ScriptNotFoundError("No deployment script to run, deployment cancelled", stage="run-script")
        context = ScriptContext(
            job_id=ctx.job.job_id,
            deployment_name=ctx.job.deployment_name,
            domain=ctx.domain,
            job_path=ctx.job_folder,
            destination_path=ctx.destination,
        )
        result = self.script_runner.run(ctx.script_path, context, ctx.log)
        ctx.exit_code = result.exit_code

    def _copy_to_destination(self, ctx: _DeploymentContext) -> None:
        if not ctx.auto_copy:
            ctx.log.info("Auto-copy of deployment files skipped due to job setting.")
            return
        if not ctx.destination:
            ctx.log.warning("Auto-copy skipped, destination path is unknown")
            return
        destination = Path(ctx.destination)
        files = sorted(
            p for p in ctx.job_folder.rglob("*")
            if p.is_file() and p != ctx.script_path
        )
        ctx.log.info(f"Copying {len(files)} deployment files to '{destination}'...")
        copied = 0
        for source in files:
            target = destination / source.relative_to(ctx.job_folder)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
                copied += 1
            except OSError as exc:
                ctx.log.warning(f"Failed to copy '{source.relative_to(ctx.job_folder)}': {exc}")
        ctx.log.info(f"Finished copying {copied} of {len(files)} deployment files to '{destination}'")

    def _cleanup_job_folder(self, ctx: _DeploymentContext) -> None:
        if not self.settings.cleanup_after_deploy:
            return
        ctx.log.info(f"Cleaning up job folder '{ctx.job_folder}'...")
        if _is_protected_path(ctx.job_folder, Path(self.settings.working_folder)):
            ctx.log.warning(f"Refusing to delete protected path '{ctx.job_folder}'")
            return
        try:
            shutil.rmtree(ctx.job_folder)
        except OSError as exc:
            ctx.log.warning(f"Failed to cleanup folder '{ctx.job_folder}': {exc}")

    def _start_target(self, ctx: _DeploymentContext) -> None:
        if not (ctx.managed and ctx.policy.start_after_deploy):
            return
        ctx.log.info(f"Starting website '{ctx.domain}'...")
        if self._control_website("start", ctx):
            ctx.log.info(f"'{ctx.domain}' started!")
        else:
            ctx.log.warning(f"Failed to start website '{ctx.domain}'!")

    def _control_website(self, action: str, ctx: _DeploymentContext) -> bool:
        try:
            return bool(getattr(self.webserver, action)(ctx.domain))
        except Exception as exc:
            ctx.log.warning(f"Webserver {action} of '{ctx.domain}' raised: {exc}")
            return False


def _looks_like_filename(value: str) -> bool:
    """A single token ending in a script extension names a file, not a script body."""
    if any(ch.isspace() for ch in value):
        return False
    return Path(value).suffix.lower() in SCRIPT_EXTENSIONS


def _is_protected_path(path: Path, working_folder: Path) -> bool:
    resolved = path.resolve()
    if resolved.parent == resolved:
        return True
    return resolved == working_folder.resolve()


def _is_unsafe_to_clean(destination: Path, working_folder: Path, job_folder: Path) -> bool:
    """Roots, any folder holding the working folder, and anything inside the job folder."""
    resolved = destination.resolve()
    if resolved.parent == resolved:
        return True
    working = working_folder.resolve()
    if working == resolved or resolved in working.parents:
        return True
    job = job_folder.resolve()
    return resolved == job or job in resolved.parents
