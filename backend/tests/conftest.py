"""
Pytest configuration and shared fixtures for the export service tests.

Adds the backend directory to the import path and provides snapshot,
settings and fake pipeline collaborators used across test modules.
"""

import sys
from pathlib import Path

import pytest

# Add backend directory to Python path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from config import Settings
from schemas import ScenarioSnapshot
from pipeline.asset_resolver import ResolvedAssets, ResolvedScene


def build_snapshot(durations=(4.0, 6.0, 5.0), music=True, logo=False, transitions=None, **overrides):
    """Scenario snapshot with one narrated scene per duration."""
    transitions = transitions or ["cut"] * len(durations)
    scenes = [
        {
            "index": i,
            "video_uri": f"s3://story-assets/scn_test/scenes/{i:03d}/video.mp4",
            "voiceover_uri": f"s3://story-assets/scn_test/scenes/{i:03d}/voiceover.mp3",
            "voiceover_text": f"Scene {i} narration.",
            "duration": duration,
            "transition": transition,
        }
        for i, (duration, transition) in enumerate(zip(durations, transitions))
    ]
    data = {
        "scenario_id": "scn_test",
        "scenes": scenes,
        "music_uri": "s3://story-assets/scn_test/music.mp3" if music else None,
        "logo_uri": "s3://story-assets/scn_test/logo.png" if logo else None,
        "aspect_ratio": "9:16",
        "language": "en",
    }
    data.update(overrides)
    return ScenarioSnapshot(**data)


def build_assets(snapshot, voiceover_durations=None, work_dir="/work"):
    """ResolvedAssets for a snapshot without touching storage."""
    voiceover_durations = voiceover_durations or {}
    scenes = []
    for scene in snapshot.scenes:
        has_voiceover = bool(scene.voiceover_uri)
        scenes.append(ResolvedScene(
            scene_index=scene.index,
            duration=scene.duration,
            transition=scene.transition,
            video_path=f"{work_dir}/scenes/scene_{scene.index:03d}_video.mp4",
            video_duration=scene.duration,
            voiceover_path=f"{work_dir}/audio/scene_{scene.index:03d}_voiceover.mp3" if has_voiceover else None,
            voiceover_duration=voiceover_durations.get(scene.index, max(scene.duration - 0.5, scene.duration / 2)) if has_voiceover else None,
            voiceover_text=scene.voiceover_text,
        ))
    return ResolvedAssets(
        scenes=tuple(scenes),
        music_path=f"{work_dir}/audio/music.mp3" if snapshot.music_uri else None,
        music_duration=30.0 if snapshot.music_uri else None,
        logo_path=f"{work_dir}/overlay/logo.png" if snapshot.logo_uri else None,
        logo_size=(400, 200) if snapshot.logo_uri else None,
    )


@pytest.fixture
def snapshot():
    return build_snapshot()


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointed at a temporary work directory with short budgets."""
    s = Settings()
    s.EXPORT_WORK_DIR = str(tmp_path / "work")
    s.STAGE_TIMEOUT_SECONDS = 5
    s.ASSET_DOWNLOAD_TIMEOUT = 5
    s.ASSET_FETCH_CONCURRENCY = 2
    return s


@pytest.fixture
def make_snapshot():
    return build_snapshot


@pytest.fixture
def make_assets():
    return build_assets
