"""Per-job deployment pipeline.

A job advances strictly through
``SCANNING -> DOWNLOADING -> EXTRACTING -> PLANNING -> DELETING -> CLEANING_UP``
and ends in ``SUCCEEDED`` or ``FAILED``. Any stage error stops the machine;
only the temporary archive is removed afterwards.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import structlog

from deploy_host.core.config import Settings
from deploy_host.core.exceptions import (
    ArchiveError,
    AuthenticationError,
    AuthExpiredError,
    FilesystemMutationError,
)
from deploy_host.core.models import Session
from deploy_host.deploy.fetch import fetch_deployment_archive
from deploy_host.deploy.models import JobRecord, JobStage
from deploy_host.remote.client import ControlServerClient
from deploy_host.sync.extractor import ArchiveEntry, ExtractionResult, OnEntry, extract_archive
from deploy_host.sync.ignore import PathIgnoreMatcher
from deploy_host.sync.manifest import build_manifest
from deploy_host.sync.planner import DeletionPlan, apply_deletions, plan_deletions
from deploy_host.utils.logging import bind_job_context, clear_job_context
from deploy_host.utils.metrics import FILES_DELETED, FILES_WRITTEN, JOB_COUNT, JOB_DURATION

logger = structlog.get_logger()


class JobSink(Protocol):
    """Receives progress and the final result of one job."""

    async def log(self, logtype: str, message: str) -> None: ...

    async def success(self) -> None: ...

    async def failure(self, error: BaseException) -> None: ...


@dataclass
class _JobState:
    record: JobRecord
    sink: JobSink
    existing: Dict[str, str] = field(default_factory=dict)
    archive_path: Optional[Path] = None
    extraction: Optional[ExtractionResult] = None
    plan: DeletionPlan = field(default_factory=DeletionPlan)


class DeploymentJobRunner:
    """Applies one deployment to the target directory."""

    def __init__(
        self,
        settings: Settings,
        client: ControlServerClient,
        session: Session,
        matcher: Optional[PathIgnoreMatcher] = None,
    ):
        self.settings = settings
        self.client = client
        self.session = session
        self.matcher = matcher or PathIgnoreMatcher(settings.ignore_paths_list)
        self.target_path = settings.target_path

    def _stages(self) -> List[Tuple[JobStage, Callable[[_JobState], Awaitable[None]]]]:
        return [
            (JobStage.SCANNING, self._scan),
            (JobStage.DOWNLOADING, self._download),
            (JobStage.EXTRACTING, self._extract),
            (JobStage.PLANNING, self._plan),
            (JobStage.DELETING, self._delete),
            (JobStage.CLEANING_UP, self._cleanup),
        ]

    async def run(self, deployment_id: int, sink: JobSink) -> JobRecord:
        """Run every stage for deployment_id, then report the outcome to sink."""
        state = _JobState(record=JobRecord(deployment_id=deployment_id), sink=sink)
        bind_job_context(deployment_id=deployment_id)
        start = time.monotonic()
        error: Optional[BaseException] = None

        logger.info("Starting deployment", deployment_id=deployment_id)
        try:
            for stage, step in self._stages():
                state.record.update_status(stage)
                await step(state)
            state.record.update_status(JobStage.SUCCEEDED)
        except (AuthExpiredError, AuthenticationError):
            # Not a job outcome: the session is gone, so no result can be reported
            self._discard_archive(state)
            clear_job_context()
            raise
        except Exception as exc:
            error = exc
            state.record.failed_stage = state.record.status
            state.record.error = str(exc)
            state.record.update_status(JobStage.FAILED, {"error": str(exc)})
            self._discard_archive(state)
            logger.error(
                "Deployment failed",
                deployment_id=deployment_id,
                stage=state.record.failed_stage.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        finally:
            JOB_DURATION.observe(time.monotonic() - start)
            JOB_COUNT.labels(status=state.record.status.value).inc()

        try:
            if error is None:
                logger.info(
                    "Deployment complete",
                    deployment_id=deployment_id,
                    written=state.record.files_written,
                    deleted=state.record.files_deleted,
                )
                await sink.success()
            else:
                await sink.failure(error)
        finally:
            clear_job_context()
        return state.record

    async def _scan(self, state: _JobState) -> None:
        await state.sink.log("info", "CMS Deployment Host starting deployment")
        state.existing = await build_manifest(self.target_path, self.matcher)
        state.record.existing_files = len(state.existing)

    async def _download(self, state: _JobState) -> None:
        fd, tmp_path = tempfile.mkstemp(suffix=".zip")
        os.close(fd)
        state.archive_path = Path(tmp_path)
        # Without a delta hint the server sends every file
        hint = None if self.settings.overwrite_all else state.existing
        await fetch_deployment_archive(
            self.client,
            self.session,
            state.record.deployment_id,
            state.archive_path,
            existing_files=hint,
            max_size_bytes=self.settings.max_archive_size,
        )
        await state.sink.log("info", "CMS Deployment Host download complete")

    async def _extract(self, state: _JobState) -> None:
        loop = asyncio.get_running_loop()
        state.extraction = await loop.run_in_executor(
            None,
            extract_archive,
            str(state.archive_path),
            self.target_path,
            self._entry_filter(),
        )
        state.record.files_written = len(state.extraction.new_files)
        FILES_WRITTEN.inc(state.record.files_written)

    def _entry_filter(self) -> OnEntry:
        def on_entry(entry: ArchiveEntry):
            name = entry.name
            if self.matcher.is_ignored(name + "/" if entry.is_dir else name):
                return False
            if not entry.is_dir:
                logger.info("New file", path=name)
            return name

        return on_entry

    async def _plan(self, state: _JobState) -> None:
        extraction = state.extraction or ExtractionResult()
        if self.settings.delete_excess_files and extraction.manifest_error:
            raise ArchiveError(f"Deployment manifest could not be parsed: {extraction.manifest_error}")
        state.plan = plan_deletions(
            state.existing,
            extraction.new_files,
            extraction.manifest,
            delete_enabled=self.settings.delete_excess_files,
            synthesize=self.settings.overwrite_all,
        )
        logger.info("Deletion plan ready", files=len(state.plan.files), folders=len(state.plan.folders))

    async def _delete(self, state: _JobState) -> None:
        if state.plan.empty:
            return
        loop = asyncio.get_running_loop()
        deleted = await loop.run_in_executor(None, apply_deletions, self.target_path, state.plan)
        state.record.files_deleted = deleted
        FILES_DELETED.inc(deleted)

    async def _cleanup(self, state: _JobState) -> None:
        if state.archive_path is None:
            return
        try:
            os.unlink(state.archive_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FilesystemMutationError(f"Error removing temporary archive {state.archive_path}: {e}")
        state.archive_path = None

    def _discard_archive(self, state: _JobState) -> None:
        if state.archive_path is None:
            return
        try:
            os.unlink(state.archive_path)
        except OSError as e:
            logger.warning("Could not remove temporary archive", path=str(state.archive_path), error=str(e))
        state.archive_path = None
