"""
Export Job Controller

Owns the lifecycle of every export job:
1. Fail fast on an empty scenario
2. Resolve assets (resolving)
3. Compose the timeline (composing)
4. Run the five render stages (rendering, progress = stages done / 5)
5. Persist the artifacts and publish the result (done)

Features:
- One background asyncio task per job, no state shared between jobs
  beyond the injected job store
- Cooperative cancellation, honoured before the next phase or stage;
  requests are recorded in the job store so any controller sharing it
  can cancel a job another one is running
- Any failure ends the job as failed with its stage and error kind;
  nothing is published for a failed job
- The job's work directory is removed on every exit path
"""

import asyncio
import copy
from datetime import datetime, timezone
from functools import partial
from typing import Dict, Any, Optional, Set

import structlog

from config import settings as default_settings
from models import ExportJob, JobAlreadyTerminal, JobStatus
from schemas import ScenarioSnapshot
from pipeline.asset_manager import AssetManager
from pipeline.asset_resolver import AssetResolver
from pipeline.error_handler import (
    PipelineError,
    EmptyTimeline,
    PersistFailure,
    JobCancelled,
    JobNotFound,
    JobNotRetryable,
    categorize_error,
    summarize_error,
)
from pipeline.render_invoker import RenderInvoker, RenderOutput, StageResult
from pipeline.timeline import compose_timeline
from services.job_store import JobStore
from services.storage_backend import ArtifactStore
from services.s3_storage import generate_export_s3_key

logger = structlog.get_logger(__name__)


class ExportJobController:
    """
    Run export jobs in the background and answer status queries.

    Example:
        >>> controller = ExportJobController(InMemoryJobStore(), LocalArtifactStore("./out"))
        >>> job = await controller.submit(snapshot)
        >>> controller.get_status(job.job_id)["status"]
        'queued'
        >>> await controller.wait(job.job_id)
    """

    def __init__(
        self,
        job_store: JobStore,
        artifact_store: ArtifactStore,
        resolver: Optional[AssetResolver] = None,
        invoker: Optional[RenderInvoker] = None,
        settings=None
    ):
        """
        Args:
            job_store: Where job records live; the only state shared between jobs
            artifact_store: Durable storage for finished exports
            resolver: Asset resolver (default: AssetResolver())
            invoker: Render invoker (default: RenderInvoker())
            settings: Settings object (default: global settings)
        """
        self.settings = settings or default_settings
        self.job_store = job_store
        self.artifact_store = artifact_store
        self.resolver = resolver or AssetResolver()
        self.invoker = invoker or RenderInvoker(settings=self.settings)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()
        self.logger = structlog.get_logger().bind(service="export_controller")

    # ===== Operations =====

    async def submit(self, snapshot: ScenarioSnapshot, retry_of: Optional[str] = None) -> ExportJob:
        """
        Create a queued job for the snapshot and start it in the background.

        Returns:
            A copy of the job as queued
        """
        job = ExportJob(snapshot=snapshot, retry_of=retry_of)
        self.job_store.save(job)
        queued = copy.deepcopy(job)

        task = asyncio.create_task(self._run(job))
        self._tasks[job.job_id] = task
        task.add_done_callback(partial(self._forget, job.job_id))

        self.logger.info(
            "export_job_submitted",
            job_id=job.job_id,
            scenario_id=snapshot.scenario_id,
            scenes=len(snapshot.scenes),
            retry_of=retry_of
        )
        return queued

    def get_status(self, job_id: str) -> Dict[str, Any]:
        """
        Return the job status contract for a job.

        Raises:
            JobNotFound: If the job is unknown (or expired)
        """
        return self._load(job_id).status_view()

    def cancel(self, job_id: str) -> ExportJob:
        """
        Request cooperative cancellation.

        A running job stops before its next phase or render stage; a stage
        already in flight finishes first. Terminal jobs are returned as-is.

        The request is recorded in the job store. When the store is shared,
        a job running under another controller sees the flag at its next
        check. A non-terminal job with no task here is failed at once if no
        other process can be running it: the store is process-local, or the
        job has not been updated for ORPHANED_JOB_SECONDS.

        Raises:
            JobNotFound: If the job is unknown
        """
        job = self._load(job_id)
        if job.is_terminal:
            return job

        if job_id in self._tasks:
            self._cancel_requested.add(job_id)
            self.logger.info("export_cancel_requested", job_id=job_id, status=job.status)
            return self.job_store.request_cancel(job_id) or job

        if self.job_store.shared and not self._is_orphaned(job):
            self.logger.info("export_cancel_forwarded", job_id=job_id, status=job.status)
            return self.job_store.request_cancel(job_id) or job

        self.logger.warning("export_cancel_orphaned_job", job_id=job_id, status=job.status)
        job.cancel_requested = True
        self._fail(job, JobCancelled(job.status))
        return self._load(job_id)

    async def retry(self, job_id: str) -> ExportJob:
        """
        Start a new job from a failed job's snapshot.

        Raises:
            JobNotFound: If the job is unknown
            JobNotRetryable: If the job has not failed
        """
        job = self._load(job_id)
        if job.status != JobStatus.FAILED:
            raise JobNotRetryable(job_id, job.status)
        return await self.submit(job.snapshot, retry_of=job_id)

    async def wait(self, job_id: str) -> ExportJob:
        """Wait for a job's background task (if any) and return the stored job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._load(job_id)

    async def shutdown(self) -> None:
        """Request cancellation of every running job and wait for them to stop."""
        tasks = list(self._tasks.values())
        if not tasks:
            return

        self._cancel_requested.update(self._tasks.keys())
        self.logger.info("export_controller_shutting_down", running_jobs=len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running_jobs(self) -> int:
        return len(self._tasks)

    # ===== Job run =====

    async def _run(self, job: ExportJob) -> None:
        log = self.logger.bind(job_id=job.job_id, scenario_id=job.snapshot.scenario_id)
        asset_manager = AssetManager(job.job_id, base_path=self.settings.EXPORT_WORK_DIR)
        phase = JobStatus.QUEUED

        try:
            if not job.snapshot.scenes:
                raise EmptyTimeline()

            phase = self._enter(job, JobStatus.RESOLVING)
            await asset_manager.create_job_directory()
            assets = await self.resolver.resolve(job.snapshot, asset_manager)

            phase = self._enter(job, JobStatus.COMPOSING)
            timeline = compose_timeline(job.snapshot, assets, self.settings)
            for warning in timeline.warnings:
                job.add_warning(warning.to_dict())

            phase = self._enter(job, JobStatus.RENDERING)
            output = await self.invoker.render(
                timeline,
                asset_manager,
                should_cancel=partial(self._cancel_wanted, job.job_id),
                on_stage_complete=partial(self._on_stage_complete, job)
            )

            phase = "persisting"
            self._check_cancel(job, phase)
            output_uri, subtitle_uri = await self._persist(job, output)

            # Status and URIs reach the store together or not at all
            finished = copy.deepcopy(job)
            finished.mark_done(output_uri, subtitle_uri)
            self.job_store.save(finished)

            log.info(
                "export_job_completed",
                output_uri=output_uri,
                subtitle_uri=subtitle_uri,
                duration=timeline.duration,
                warnings=len(finished.warnings)
            )

        except asyncio.CancelledError:
            self._fail(job, JobCancelled(phase))
            raise

        except JobAlreadyTerminal as e:
            # Another controller finished the job; its record stands
            log.warning("export_job_superseded", phase=phase, stored_status=e.status)

        except Exception as e:
            self._fail(job, categorize_error(e, stage=phase))

        finally:
            await self._cleanup(asset_manager, log)

    def _enter(self, job: ExportJob, status: str) -> str:
        """Check for cancellation, then move the job into the next phase."""
        self._check_cancel(job, status)
        job.transition(status)
        self.job_store.save(job)
        self.logger.info("export_job_phase", job_id=job.job_id, status=status)
        return status

    def _cancel_wanted(self, job_id: str) -> bool:
        return job_id in self._cancel_requested or self.job_store.cancel_requested(job_id)

    def _check_cancel(self, job: ExportJob, next_phase: str) -> None:
        if self._cancel_wanted(job.job_id):
            raise JobCancelled(next_phase)

    def _on_stage_complete(self, job: ExportJob, result: StageResult) -> None:
        """Save progress after a stage. A lost progress write does not fail the job."""
        job.set_progress(result.number / result.total)
        try:
            self.job_store.save(job)
        except JobAlreadyTerminal:
            raise
        except Exception as e:
            self.logger.warning(
                "export_progress_not_saved",
                job_id=job.job_id,
                stage=result.stage,
                progress=job.progress,
                error=str(e)
            )

    async def _persist(self, job: ExportJob, output: RenderOutput):
        """Copy the final video (and subtitle sidecar) to durable storage."""
        scenario_id = job.snapshot.scenario_id

        try:
            output_uri = await self.artifact_store.persist(
                output.video_path,
                generate_export_s3_key(scenario_id, job.job_id, "final.mp4"),
                "video/mp4"
            )

            subtitle_uri = None
            if output.subtitle_path:
                subtitle_uri = await self.artifact_store.persist(
                    output.subtitle_path,
                    generate_export_s3_key(scenario_id, job.job_id, "subtitles.srt"),
                    "application/x-subrip"
                )
        except Exception as e:
            raise PersistFailure(
                f"Failed to store export artifacts: {e}",
                {"exception_type": type(e).__name__}
            )

        return output_uri, subtitle_uri

    def _fail(self, job: ExportJob, error: PipelineError) -> None:
        """Record a failure on the job. Never publishes an output URI."""
        error.log_error()
        if job.is_terminal:
            return

        job.mark_failed(
            error.code.value,
            error.stage,
            summarize_error(error, self.settings.ERROR_SUMMARY_MAX_CHARS)
        )
        try:
            self.job_store.save(job)
        except JobAlreadyTerminal as e:
            self.logger.warning("export_job_superseded", job_id=job.job_id, stored_status=e.status)
            return
        except Exception as e:
            self.logger.error("export_job_failure_not_saved", job_id=job.job_id, error=str(e))

        self.logger.warning(
            "export_job_failed",
            job_id=job.job_id,
            error_kind=job.error_kind,
            failed_stage=job.failed_stage
        )

    async def _cleanup(self, asset_manager: AssetManager, log) -> None:
        try:
            await asset_manager.cleanup()
        except Exception as e:
            log.warning("cleanup_failed", error=str(e))

    # ===== Helpers =====

    def _load(self, job_id: str) -> ExportJob:
        job = self.job_store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _is_orphaned(self, job: ExportJob) -> bool:
        idle = datetime.now(timezone.utc) - job.updated_at
        return idle.total_seconds() > self.settings.ORPHANED_JOB_SECONDS

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        self._cancel_requested.discard(job_id)


def create_export_controller(settings=None) -> ExportJobController:
    """
    Factory function to build a controller from configuration.

    Uses JOB_STORE_BACKEND for the job store and STORAGE_BACKEND for the
    artifact store.
    """
    from services.job_store import get_job_store
    from services.storage_backend import get_artifact_store

    return ExportJobController(
        job_store=get_job_store(),
        artifact_store=get_artifact_store(),
        settings=settings
    )
