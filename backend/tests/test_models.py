"""
Tests for the export job record and the request schemas.
"""

import pytest
from pydantic import ValidationError

from models import ExportJob, JobStatus, StageNames, InvalidTransition
from schemas import ScenarioSnapshot, SceneAsset


# ============================================================================
# ScenarioSnapshot
# ============================================================================

def test_scenes_sorted_by_index():
    snapshot = ScenarioSnapshot(
        scenario_id="scn_1",
        scenes=[
            {"index": 2, "video_uri": "/c.mp4", "duration": 1.0},
            {"index": 0, "video_uri": "/a.mp4", "duration": 1.0},
            {"index": 1, "video_uri": "/b.mp4", "duration": 1.0},
        ],
    )

    assert [scene.index for scene in snapshot.scenes] == [0, 1, 2]


def test_duplicate_scene_indices_rejected():
    with pytest.raises(ValidationError, match="unique"):
        ScenarioSnapshot(
            scenario_id="scn_1",
            scenes=[
                {"index": 0, "video_uri": "/a.mp4", "duration": 1.0},
                {"index": 0, "video_uri": "/b.mp4", "duration": 1.0},
            ],
        )


@pytest.mark.parametrize("duration", [0, -1.5])
def test_scene_duration_must_be_positive(duration):
    with pytest.raises(ValidationError):
        SceneAsset(index=0, video_uri="/a.mp4", duration=duration)


def test_unknown_transition_rejected():
    with pytest.raises(ValidationError, match="transition"):
        SceneAsset(index=0, video_uri="/a.mp4", duration=1.0, transition="wipe")


def test_transition_normalized_and_blank_uris_dropped():
    scene = SceneAsset(index=0, video_uri="  ", voiceover_uri="", duration=1.0, transition=" FADE ")

    assert scene.transition == "fade"
    assert scene.video_uri is None
    assert scene.voiceover_uri is None


@pytest.mark.parametrize("aspect_ratio,resolution", [
    ("16:9", (1920, 1080)),
    ("9:16", (1080, 1920)),
    ("1:1", (1080, 1080)),
])
def test_resolution_for_aspect_ratio(aspect_ratio, resolution):
    snapshot = ScenarioSnapshot(scenario_id="scn_1", aspect_ratio=aspect_ratio)
    assert snapshot.resolution == resolution


def test_unsupported_aspect_ratio_rejected():
    with pytest.raises(ValidationError, match="aspect_ratio"):
        ScenarioSnapshot(scenario_id="scn_1", aspect_ratio="4:3")


@pytest.mark.parametrize("scenario_id", ["../../escaped", "scn/1", "scn 1", "..", ""])
def test_scenario_id_must_be_a_single_key_segment(scenario_id):
    with pytest.raises(ValidationError, match="scenario_id"):
        ScenarioSnapshot(scenario_id=scenario_id)


def test_scenario_id_accepts_slug_characters():
    assert ScenarioSnapshot(scenario_id="scn_01HZX3-b").scenario_id == "scn_01HZX3-b"


def test_snapshot_is_immutable(snapshot):
    with pytest.raises(ValidationError):
        snapshot.music_uri = None


# ============================================================================
# ExportJob
# ============================================================================

def test_new_job_is_queued(snapshot):
    job = ExportJob(snapshot=snapshot)

    assert job.status == JobStatus.QUEUED
    assert job.progress == 0.0
    assert job.output_uri is None
    assert not job.is_terminal


def test_lifecycle_transitions(snapshot):
    job = ExportJob(snapshot=snapshot)

    job.transition(JobStatus.RESOLVING)
    job.transition(JobStatus.COMPOSING)
    job.transition(JobStatus.RENDERING)
    job.mark_done("s3://exports/final.mp4")

    assert job.status == JobStatus.DONE
    assert job.progress == 1.0
    assert job.is_terminal


def test_skipping_a_phase_is_rejected(snapshot):
    job = ExportJob(snapshot=snapshot)

    with pytest.raises(InvalidTransition):
        job.transition(JobStatus.RENDERING)


def test_terminal_states_need_mark_methods(snapshot):
    job = ExportJob(snapshot=snapshot)

    with pytest.raises(InvalidTransition):
        job.transition(JobStatus.FAILED)


def test_done_requires_output_uri(snapshot):
    job = ExportJob(snapshot=snapshot)
    for status in (JobStatus.RESOLVING, JobStatus.COMPOSING, JobStatus.RENDERING):
        job.transition(status)

    with pytest.raises(InvalidTransition):
        job.mark_done("")


def test_done_only_from_rendering(snapshot):
    job = ExportJob(snapshot=snapshot)

    with pytest.raises(InvalidTransition):
        job.mark_done("s3://exports/final.mp4")


def test_failed_job_has_no_output(snapshot):
    job = ExportJob(snapshot=snapshot)
    job.transition(JobStatus.RESOLVING)

    job.mark_failed("ASSET_MISSING", "resolving", "A scene is missing a generated asset.")

    assert job.status == JobStatus.FAILED
    assert job.output_uri is None
    assert job.failed_stage == "resolving"

    with pytest.raises(InvalidTransition):
        job.mark_failed("INTERNAL_ERROR", "resolving", "again")


def test_progress_never_decreases(snapshot):
    job = ExportJob(snapshot=snapshot)

    job.set_progress(0.4)
    job.set_progress(0.2)
    assert job.progress == 0.4

    job.set_progress(3)
    assert job.progress == 1.0


def test_round_trip_through_dict(snapshot):
    job = ExportJob(snapshot=snapshot, retry_of="job-0")
    job.transition(JobStatus.RESOLVING)
    job.add_warning({"warning_code": "AUDIO_OVERRUN", "scene_index": 1})
    job.cancel_requested = True

    restored = ExportJob.from_dict(job.to_dict())

    assert restored.job_id == job.job_id
    assert restored.status == JobStatus.RESOLVING
    assert restored.snapshot == snapshot
    assert restored.warnings == job.warnings
    assert restored.retry_of == "job-0"
    assert restored.cancel_requested is True
    assert restored.created_at == job.created_at


def test_stage_names_order():
    assert StageNames.all_stages() == [
        "concatenate", "mix_voiceover", "mix_music", "overlay_logo", "mux_subtitles"
    ]
