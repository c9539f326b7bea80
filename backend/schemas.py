"""
Pydantic schemas for export requests and job status responses
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime


TRANSITION_HINTS = ("cut", "fade", "dip_to_black")

# Output frame size for each supported aspect ratio
ASPECT_RATIO_RESOLUTIONS: Dict[str, Tuple[int, int]] = {
    "16:9": (1920, 1080),
    "9:16": (1080, 1920),
    "1:1": (1080, 1080),
}


class SceneAsset(BaseModel):
    """
    One scene of a scenario snapshot.

    Immutable once generation completes; the export pipeline only reads it.
    """
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Position of the scene in the story")
    video_uri: Optional[str] = Field(None, description="s3://, http(s)://, file:// URI or local path of the scene clip")
    voiceover_uri: Optional[str] = Field(None, description="URI of the scene's narration track")
    voiceover_text: Optional[str] = Field(None, max_length=2000, description="Narration text; becomes the scene's subtitle cue")
    duration: float = Field(..., gt=0, le=600, description="Scene duration in seconds")
    transition: str = Field("cut", description="Transition into this scene: cut, fade or dip_to_black")

    @field_validator("transition")
    @classmethod
    def validate_transition(cls, v):
        """Transition hint must be one of the supported effects."""
        v = (v or "cut").strip().lower()
        if v not in TRANSITION_HINTS:
            raise ValueError(f"transition must be one of {list(TRANSITION_HINTS)}")
        return v

    @field_validator("video_uri", "voiceover_uri", "voiceover_text")
    @classmethod
    def blank_to_none(cls, v):
        """Treat empty strings as absent."""
        if v is not None and not v.strip():
            return None
        return v


class ScenarioSnapshot(BaseModel):
    """
    Immutable copy of a scenario taken when an export is requested.

    Validated once here; no later stage re-checks its shape. Scenes are
    stored ordered by index.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "scenario_id": "scn_01HZX3",
                "scenes": [
                    {
                        "index": 0,
                        "video_uri": "s3://story-assets/scn_01HZX3/scenes/000/video.mp4",
                        "voiceover_uri": "s3://story-assets/scn_01HZX3/scenes/000/voiceover.mp3",
                        "voiceover_text": "Once upon a time, a lighthouse keeper found a bottle.",
                        "duration": 4.0,
                        "transition": "cut"
                    }
                ],
                "music_uri": "s3://story-assets/scn_01HZX3/music.mp3",
                "logo_uri": None,
                "aspect_ratio": "9:16",
                "language": "en"
            }
        }
    )

    scenario_id: str = Field(
        ...,
        min_length=1,
        max_length=200,
        pattern=r"^[A-Za-z0-9_-]+$",
        description="Scenario identifier; also used as a storage key segment"
    )
    scenes: Tuple[SceneAsset, ...] = Field(default_factory=tuple)
    music_uri: Optional[str] = Field(None, description="Optional background music URI")
    logo_uri: Optional[str] = Field(None, description="Optional logo overlay image URI")
    aspect_ratio: str = Field("9:16", description="Target aspect ratio: 16:9, 9:16 or 1:1")
    language: str = Field("en", min_length=2, max_length=8, description="Subtitle language code")

    @field_validator("scenes")
    @classmethod
    def validate_scenes(cls, v):
        """Scene indices must be unique; scenes are kept in index order."""
        indices = [scene.index for scene in v]
        if len(indices) != len(set(indices)):
            raise ValueError("scene indices must be unique")
        return tuple(sorted(v, key=lambda scene: scene.index))

    @field_validator("aspect_ratio")
    @classmethod
    def validate_aspect_ratio(cls, v):
        if v not in ASPECT_RATIO_RESOLUTIONS:
            raise ValueError(f"aspect_ratio must be one of {list(ASPECT_RATIO_RESOLUTIONS)}")
        return v

    @field_validator("language")
    @classmethod
    def normalize_language(cls, v):
        return v.strip().lower()

    @field_validator("music_uri", "logo_uri")
    @classmethod
    def blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @property
    def resolution(self) -> Tuple[int, int]:
        """Output (width, height) for the target aspect ratio."""
        return ASPECT_RATIO_RESOLUTIONS[self.aspect_ratio]


class ExportCreateResponse(BaseModel):
    """Response model for export submission"""
    job_id: str = Field(..., description="Unique export job identifier")
    status: str = Field(..., description="Initial job status")
    retry_of: Optional[str] = Field(None, description="Job this export retries, if any")
    message: str = Field(..., description="Success message")

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "status": "queued",
                "retry_of": None,
                "message": "Export job created successfully"
            }
        }


class ExportStatusResponse(BaseModel):
    """Response model for export job status polling"""
    job_id: str
    scenario_id: str
    status: str = Field(..., description="queued, resolving, composing, rendering, done or failed")
    progress: float = Field(..., ge=0.0, le=1.0, description="Progress fraction")
    output_uri: Optional[str] = Field(None, description="Final video URI (only when done)")
    subtitle_uri: Optional[str] = Field(None, description="Subtitle sidecar URI (only when done)")
    error_kind: Optional[str] = Field(None, description="Error code when failed")
    failed_stage: Optional[str] = Field(None, description="Phase or render stage that failed")
    error_summary: Optional[str] = Field(None, description="Bounded error summary")
    warnings: List[Dict[str, Any]] = Field(default_factory=list, description="Non-fatal warnings")
    retry_of: Optional[str] = None
    cancel_requested: bool = Field(False, description="Cancellation requested, not yet honoured")
    created_at: datetime
    updated_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "550e8400-e29b-41d4-a716-446655440000",
                "scenario_id": "scn_01HZX3",
                "status": "rendering",
                "progress": 0.4,
                "output_uri": None,
                "subtitle_uri": None,
                "error_kind": None,
                "failed_stage": None,
                "error_summary": None,
                "warnings": [],
                "retry_of": None,
                "cancel_requested": False,
                "created_at": "2025-01-14T10:00:00",
                "updated_at": "2025-01-14T10:01:30"
            }
        }


class ErrorResponse(BaseModel):
    """Error response model"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Any] = Field(None, description="Additional error details")
