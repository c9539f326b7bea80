"""
Tests for the export job controller.

The controller runs with an in-memory job store, a local artifact store, a
fake resolver and the real render invoker driving a fake FFmpeg runner.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from models import ExportJob, JobStatus, StageNames
from pipeline.error_handler import (
    AssetMissing,
    StageFailure,
    ErrorCode,
    JobNotFound,
    JobNotRetryable,
)
from pipeline.export_controller import ExportJobController
from pipeline.render_invoker import RenderInvoker
from services.job_store import InMemoryJobStore
from services.storage_backend import LocalArtifactStore, ArtifactStore


class FakeResolver:
    """Returns prebuilt assets, or raises the configured error."""

    def __init__(self, make_assets, error=None, voiceover_durations=None):
        self.make_assets = make_assets
        self.error = error
        self.voiceover_durations = voiceover_durations
        self.calls = 0

    async def resolve(self, snapshot, asset_manager):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.make_assets(
            snapshot,
            voiceover_durations=self.voiceover_durations,
            work_dir=str(asset_manager.job_dir)
        )


class FakeRunner:
    """FFmpeg runner double that writes the stage output file."""

    def __init__(self, fail_stage=None, hold_stage=None):
        self.stages = []
        self.fail_stage = fail_stage
        self.hold_stage = hold_stage
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, stage, args):
        self.stages.append(stage)
        if stage == self.hold_stage:
            self.entered.set()
            await self.release.wait()
        if stage == self.fail_stage:
            raise StageFailure(stage, "ffmpeg exited with code 1", {"stderr_tail": "x" * 5000})
        Path(args[-1]).parent.mkdir(parents=True, exist_ok=True)
        Path(args[-1]).write_bytes(b"\x00" * 256)


class RecordingStore(InMemoryJobStore):
    """In-memory store that keeps every saved version of every job."""

    def __init__(self):
        super().__init__()
        self.history = []

    def save(self, job):
        super().save(job)
        self.history.append((job.job_id, job.status, job.progress, job.output_uri))


class SharedStore(RecordingStore):
    """Recording store that reports itself as shared between processes."""

    shared = True


class FlakyProgressStore(RecordingStore):
    """Store whose progress writes during rendering fail."""

    def __init__(self):
        super().__init__()
        self.rejected = 0

    def save(self, job):
        if job.status == JobStatus.RENDERING and job.progress > 0:
            self.rejected += 1
            raise ConnectionError("store unreachable")
        super().save(job)


class BrokenArtifactStore(ArtifactStore):
    async def persist(self, local_path, key, content_type=None):
        raise ConnectionError("bucket unreachable")


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "exports"


def _controller(test_settings, make_assets, output_dir, resolver=None, runner=None, store=None, artifacts=None):
    return ExportJobController(
        job_store=store if store is not None else RecordingStore(),
        artifact_store=artifacts if artifacts is not None else LocalArtifactStore(str(output_dir)),
        resolver=resolver or FakeResolver(make_assets),
        invoker=RenderInvoker(runner=runner or FakeRunner(), settings=test_settings),
        settings=test_settings,
    )


# ============================================================================
# Successful export
# ============================================================================

@pytest.mark.asyncio
async def test_successful_export(snapshot, make_assets, test_settings, output_dir):
    runner = FakeRunner()
    controller = _controller(test_settings, make_assets, output_dir, runner=runner)

    job = await controller.submit(snapshot)
    assert job.status == JobStatus.QUEUED

    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.DONE
    assert job.progress == 1.0
    assert job.output_uri.endswith(f"exports/scn_test/{job.job_id}/final.mp4")
    assert job.subtitle_uri.endswith(f"exports/scn_test/{job.job_id}/subtitles.srt")
    assert (output_dir / "exports" / "scn_test" / job.job_id / "final.mp4").exists()
    assert job.error_kind is None
    # No logo in the snapshot, so the overlay stage passes through
    assert runner.stages == [
        StageNames.CONCATENATE,
        StageNames.MIX_VOICEOVER,
        StageNames.MIX_MUSIC,
        StageNames.MUX_SUBTITLES,
    ]


@pytest.mark.asyncio
async def test_status_passes_through_every_phase(snapshot, make_assets, test_settings, output_dir):
    store = RecordingStore()
    controller = _controller(test_settings, make_assets, output_dir, store=store)

    job = await controller.submit(snapshot)
    await controller.wait(job.job_id)

    statuses = []
    for _, status, _, _ in store.history:
        if not statuses or statuses[-1] != status:
            statuses.append(status)
    assert statuses == [
        JobStatus.QUEUED,
        JobStatus.RESOLVING,
        JobStatus.COMPOSING,
        JobStatus.RENDERING,
        JobStatus.DONE,
    ]


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_stage_based(snapshot, make_assets, test_settings, output_dir):
    store = RecordingStore()
    controller = _controller(test_settings, make_assets, output_dir, store=store)

    job = await controller.submit(snapshot)
    await controller.wait(job.job_id)

    progress = [p for _, _, p, _ in store.history]
    assert progress == sorted(progress)
    rendering = [p for _, status, p, _ in store.history if status == JobStatus.RENDERING and p > 0]
    assert rendering == [0.2, 0.4, 0.6, 0.8, 1.0]


@pytest.mark.asyncio
async def test_output_uri_only_published_with_done(snapshot, make_assets, test_settings, output_dir):
    store = RecordingStore()
    controller = _controller(test_settings, make_assets, output_dir, store=store)

    job = await controller.submit(snapshot)
    await controller.wait(job.job_id)

    for _, status, _, output_uri in store.history:
        assert (output_uri is not None) == (status == JobStatus.DONE)


@pytest.mark.asyncio
async def test_work_directory_removed_after_success(snapshot, make_assets, test_settings, output_dir):
    controller = _controller(test_settings, make_assets, output_dir)

    job = await controller.submit(snapshot)
    await controller.wait(job.job_id)

    assert not (Path(test_settings.EXPORT_WORK_DIR) / job.job_id).exists()


@pytest.mark.asyncio
async def test_audio_overrun_recorded_as_warning(snapshot, make_assets, test_settings, output_dir):
    resolver = FakeResolver(make_assets, voiceover_durations={2: 8.0})
    controller = _controller(test_settings, make_assets, output_dir, resolver=resolver)

    job = await controller.submit(snapshot)
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.DONE
    assert len(job.warnings) == 1
    assert job.warnings[0]["warning_code"] == ErrorCode.AUDIO_OVERRUN.value
    assert job.warnings[0]["scene_index"] == 2


# ============================================================================
# Failures
# ============================================================================

@pytest.mark.asyncio
async def test_empty_scenario_fails_before_resolving(make_snapshot, make_assets, test_settings, output_dir):
    resolver = FakeResolver(make_assets)
    runner = FakeRunner()
    controller = _controller(test_settings, make_assets, output_dir, resolver=resolver, runner=runner)

    job = await controller.submit(make_snapshot(durations=()))
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.EMPTY_TIMELINE.value
    assert job.failed_stage == "composing"
    assert resolver.calls == 0
    assert runner.stages == []


@pytest.mark.asyncio
async def test_asset_failure_never_reaches_render(snapshot, make_assets, test_settings, output_dir):
    resolver = FakeResolver(make_assets, error=AssetMissing("Scene 1 has no video URI", scene_index=1))
    runner = FakeRunner()
    controller = _controller(test_settings, make_assets, output_dir, resolver=resolver, runner=runner)

    job = await controller.submit(snapshot)
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.ASSET_MISSING.value
    assert job.failed_stage == "resolving"
    assert job.output_uri is None
    assert runner.stages == []


@pytest.mark.asyncio
async def test_stage_failure_reports_stage(snapshot, make_assets, test_settings, output_dir):
    runner = FakeRunner(fail_stage=StageNames.MIX_MUSIC)
    controller = _controller(test_settings, make_assets, output_dir, runner=runner)

    job = await controller.submit(snapshot)
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.STAGE_FAILURE.value
    assert job.failed_stage == StageNames.MIX_MUSIC
    assert job.output_uri is None
    assert job.subtitle_uri is None
    assert job.progress == 0.4
    assert runner.stages == [StageNames.CONCATENATE, StageNames.MIX_VOICEOVER, StageNames.MIX_MUSIC]
    assert len(job.error_summary) <= test_settings.ERROR_SUMMARY_MAX_CHARS
    assert "xxxxx" not in job.error_summary
    assert not (Path(test_settings.EXPORT_WORK_DIR) / job.job_id).exists()


@pytest.mark.asyncio
async def test_persist_failure(snapshot, make_assets, test_settings, output_dir):
    controller = _controller(
        test_settings, make_assets, output_dir, artifacts=BrokenArtifactStore()
    )

    job = await controller.submit(snapshot)
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.PERSIST_FAILURE.value
    assert job.failed_stage == "persisting"
    assert job.output_uri is None


@pytest.mark.asyncio
async def test_unexpected_error_is_internal(snapshot, make_assets, test_settings, output_dir):
    resolver = FakeResolver(make_assets, error=RuntimeError("boom"))
    controller = _controller(test_settings, make_assets, output_dir, resolver=resolver)

    job = await controller.submit(snapshot)
    job = await controller.wait(job.job_id)

    assert job.error_kind == ErrorCode.INTERNAL_ERROR.value
    assert job.failed_stage == JobStatus.RESOLVING


@pytest.mark.asyncio
async def test_lost_progress_writes_do_not_fail_the_job(snapshot, make_assets, test_settings, output_dir):
    store = FlakyProgressStore()
    controller = _controller(test_settings, make_assets, output_dir, store=store)

    job = await controller.submit(snapshot)
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.DONE
    assert job.progress == 1.0
    assert store.rejected == 5


@pytest.mark.asyncio
async def test_lost_progress_writes_keep_the_failing_stage(snapshot, make_assets, test_settings, output_dir):
    store = FlakyProgressStore()
    runner = FakeRunner(fail_stage=StageNames.MIX_MUSIC)
    controller = _controller(test_settings, make_assets, output_dir, runner=runner, store=store)

    job = await controller.submit(snapshot)
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.STAGE_FAILURE.value
    assert job.failed_stage == StageNames.MIX_MUSIC
    assert store.rejected == 2


# ============================================================================
# Cancellation
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_mid_stage_finishes_that_stage(snapshot, make_assets, test_settings, output_dir):
    runner = FakeRunner(hold_stage=StageNames.CONCATENATE)
    controller = _controller(test_settings, make_assets, output_dir, runner=runner)

    job = await controller.submit(snapshot)
    await asyncio.wait_for(runner.entered.wait(), timeout=5)

    controller.cancel(job.job_id)
    assert controller.get_status(job.job_id)["status"] == JobStatus.RENDERING

    runner.release.set()
    job = await controller.wait(job.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.JOB_CANCELLED.value
    assert job.failed_stage == StageNames.MIX_VOICEOVER
    assert job.progress == 0.2
    assert job.output_uri is None
    assert runner.stages == [StageNames.CONCATENATE]


@pytest.mark.asyncio
async def test_cancel_before_start(snapshot, make_assets, test_settings, output_dir):
    resolver = FakeResolver(make_assets)
    controller = _controller(test_settings, make_assets, output_dir, resolver=resolver)

    job = await controller.submit(snapshot)
    controller.cancel(job.job_id)
    job = await controller.wait(job.job_id)

    assert job.error_kind == ErrorCode.JOB_CANCELLED.value
    assert job.failed_stage == JobStatus.RESOLVING
    assert resolver.calls == 0


@pytest.mark.asyncio
async def test_cancel_terminal_job_is_noop(snapshot, make_assets, test_settings, output_dir):
    controller = _controller(test_settings, make_assets, output_dir)

    job = await controller.submit(snapshot)
    await controller.wait(job.job_id)

    assert controller.cancel(job.job_id).status == JobStatus.DONE


@pytest.mark.asyncio
async def test_cancel_orphaned_job_fails_it(snapshot, make_assets, test_settings, output_dir):
    store = RecordingStore()
    orphan = ExportJob(snapshot=snapshot)
    orphan.transition(JobStatus.RESOLVING)
    store.save(orphan)
    controller = _controller(test_settings, make_assets, output_dir, store=store)

    job = controller.cancel(orphan.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.JOB_CANCELLED.value


@pytest.mark.asyncio
async def test_job_failed_by_another_controller_stays_failed(snapshot, make_assets, test_settings, output_dir):
    store = RecordingStore()
    runner = FakeRunner(hold_stage=StageNames.MIX_MUSIC)
    running = _controller(test_settings, make_assets, output_dir, runner=runner, store=store)
    other = _controller(test_settings, make_assets, output_dir, store=store)

    job = await running.submit(snapshot)
    await asyncio.wait_for(runner.entered.wait(), timeout=5)

    # The store is process-local, so the other controller fails the job itself
    assert other.cancel(job.job_id).status == JobStatus.FAILED

    runner.release.set()
    final = await running.wait(job.job_id)

    assert final.status == JobStatus.FAILED
    assert final.error_kind == ErrorCode.JOB_CANCELLED.value
    assert final.failed_stage == JobStatus.RENDERING
    assert final.output_uri is None
    assert runner.stages == [StageNames.CONCATENATE, StageNames.MIX_VOICEOVER, StageNames.MIX_MUSIC]
    statuses = [status for job_id, status, _, _ in store.history if job_id == job.job_id]
    assert statuses[statuses.index(JobStatus.FAILED):] == [JobStatus.FAILED]
    assert not (output_dir / "exports" / "scn_test" / job.job_id).exists()


@pytest.mark.asyncio
async def test_cancel_through_shared_store_stops_runner(snapshot, make_assets, test_settings, output_dir):
    store = SharedStore()
    runner = FakeRunner(hold_stage=StageNames.MIX_MUSIC)
    running = _controller(test_settings, make_assets, output_dir, runner=runner, store=store)
    other = _controller(test_settings, make_assets, output_dir, store=store)

    job = await running.submit(snapshot)
    await asyncio.wait_for(runner.entered.wait(), timeout=5)

    flagged = other.cancel(job.job_id)
    assert flagged.status == JobStatus.RENDERING
    assert flagged.cancel_requested is True
    assert other.get_status(job.job_id)["cancel_requested"] is True

    runner.release.set()
    final = await running.wait(job.job_id)

    assert final.status == JobStatus.FAILED
    assert final.error_kind == ErrorCode.JOB_CANCELLED.value
    assert final.failed_stage == StageNames.OVERLAY_LOGO
    assert final.progress == 0.6
    assert final.output_uri is None
    assert runner.stages == [StageNames.CONCATENATE, StageNames.MIX_VOICEOVER, StageNames.MIX_MUSIC]


@pytest.mark.asyncio
async def test_cancel_stale_job_in_shared_store_fails_it(snapshot, make_assets, test_settings, output_dir):
    store = SharedStore()
    stale = ExportJob(snapshot=snapshot)
    stale.transition(JobStatus.RESOLVING)
    stale.updated_at = datetime.now(timezone.utc) - timedelta(seconds=test_settings.ORPHANED_JOB_SECONDS + 60)
    store.save(stale)
    controller = _controller(test_settings, make_assets, output_dir, store=store)

    job = controller.cancel(stale.job_id)

    assert job.status == JobStatus.FAILED
    assert job.error_kind == ErrorCode.JOB_CANCELLED.value
    assert job.failed_stage == JobStatus.RESOLVING


@pytest.mark.asyncio
async def test_shutdown_stops_running_jobs(snapshot, make_assets, test_settings, output_dir):
    runner = FakeRunner(hold_stage=StageNames.CONCATENATE)
    controller = _controller(test_settings, make_assets, output_dir, runner=runner)

    job = await controller.submit(snapshot)
    await asyncio.wait_for(runner.entered.wait(), timeout=5)

    shutdown = asyncio.create_task(controller.shutdown())
    await asyncio.sleep(0)
    runner.release.set()
    await shutdown

    assert controller.running_jobs == 0
    assert controller.get_status(job.job_id)["error_kind"] == ErrorCode.JOB_CANCELLED.value


# ============================================================================
# Status, retry and concurrency
# ============================================================================

@pytest.mark.asyncio
async def test_get_status_contract(snapshot, make_assets, test_settings, output_dir):
    controller = _controller(test_settings, make_assets, output_dir)

    job = await controller.submit(snapshot)
    await controller.wait(job.job_id)
    status = controller.get_status(job.job_id)

    for key in ("job_id", "status", "progress", "output_uri", "error_kind", "failed_stage", "error_summary"):
        assert key in status
    assert status["status"] == JobStatus.DONE


def test_get_status_unknown_job(make_assets, test_settings, output_dir):
    controller = _controller(test_settings, make_assets, output_dir)

    with pytest.raises(JobNotFound):
        controller.get_status("does-not-exist")


@pytest.mark.asyncio
async def test_retry_creates_new_job(snapshot, make_assets, test_settings, output_dir):
    runner = FakeRunner(fail_stage=StageNames.OVERLAY_LOGO)
    controller = _controller(test_settings, make_assets, output_dir, runner=runner)

    failed = await controller.submit(snapshot.model_copy(update={"logo_uri": "s3://story-assets/logo.png"}))
    failed = await controller.wait(failed.job_id)
    assert failed.status == JobStatus.FAILED

    runner.fail_stage = None
    retried = await controller.retry(failed.job_id)
    assert retried.job_id != failed.job_id
    assert retried.retry_of == failed.job_id

    retried = await controller.wait(retried.job_id)
    assert retried.status == JobStatus.DONE
    # The original job stays failed
    assert controller.get_status(failed.job_id)["status"] == JobStatus.FAILED


@pytest.mark.asyncio
async def test_retry_rejects_non_failed_job(snapshot, make_assets, test_settings, output_dir):
    controller = _controller(test_settings, make_assets, output_dir)

    job = await controller.submit(snapshot)
    await controller.wait(job.job_id)

    with pytest.raises(JobNotRetryable):
        await controller.retry(job.job_id)


@pytest.mark.asyncio
async def test_concurrent_jobs_are_independent(make_snapshot, make_assets, test_settings, output_dir):
    runner = FakeRunner(fail_stage=None)
    controller = _controller(test_settings, make_assets, output_dir, runner=runner)

    jobs = [await controller.submit(make_snapshot(durations=(2.0, 3.0))) for _ in range(3)]
    results = [await controller.wait(job.job_id) for job in jobs]

    assert [job.status for job in results] == [JobStatus.DONE] * 3
    assert len({job.output_uri for job in results}) == 3
