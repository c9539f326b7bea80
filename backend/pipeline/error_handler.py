"""
Error handling for the export pipeline.

Provides structured error handling with:
- Categorized error codes for every way an export can end badly
- User-friendly error messages
- A bounded summary for the job status surface
- Non-fatal warnings (audio overrun) recorded alongside the job
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """
    Enumeration of all error kinds an export job can report.

    Organized by category:
    - Input Errors: the snapshot cannot be exported as submitted
    - Asset Errors: a referenced media object is absent or broken
    - Render Errors: a media-processing stage failed or overran its budget
    - System Errors: storage and unexpected failures
    """

    # Input Errors
    INVALID_SCENARIO = "INVALID_SCENARIO"
    EMPTY_TIMELINE = "EMPTY_TIMELINE"

    # Asset Errors
    ASSET_MISSING = "ASSET_MISSING"
    ASSET_UNREADABLE = "ASSET_UNREADABLE"

    # Warnings (never fail a job)
    AUDIO_OVERRUN = "AUDIO_OVERRUN"

    # Render Errors
    STAGE_FAILURE = "STAGE_FAILURE"
    STAGE_TIMEOUT = "STAGE_TIMEOUT"

    # System Errors
    PERSIST_FAILURE = "PERSIST_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Job Management Errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_CANCELLED = "JOB_CANCELLED"
    JOB_NOT_RETRYABLE = "JOB_NOT_RETRYABLE"


class PipelineError(Exception):
    """
    Base exception for export pipeline errors.

    Provides structured error information including:
    - Error code for categorization
    - Detailed message for logging
    - Failing stage identifier (when known)
    - Context dictionary for debugging
    - User-friendly message for the job status surface

    Example:
        >>> raise PipelineError(
        ...     ErrorCode.ASSET_MISSING,
        ...     "Scene 2 has no video URI",
        ...     {"scene_index": 2},
        ...     stage="resolving"
        ... )
    """

    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        stage: Optional[str] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize pipeline error.

        Args:
            code: Error code from ErrorCode enum (defaults to the class code)
            message: Detailed error message for logging
            details: Additional context (scene index, uri, stderr tail, ...)
            stage: Identifier of the phase or render stage that failed
            user_message: Optional override for user-friendly message
        """
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        self.stage = stage
        self._user_message = user_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for logging and API responses.

        Example:
            >>> error = StageFailure("mix_music", "ffmpeg exited with 1")
            >>> error.to_dict()["error_code"]
            'STAGE_FAILURE'
        """
        return {
            "error_code": self.code.value,
            "stage": self.stage,
            "message": self.message,
            "details": self.details,
            "user_message": self.get_user_friendly_message()
        }

    def get_user_friendly_message(self) -> str:
        """
        Returns user-friendly error message.

        If a custom user message was provided, returns that.
        Otherwise, returns a predefined friendly message based on error code.
        """
        if self._user_message:
            return self._user_message

        friendly_messages = {
            ErrorCode.INVALID_SCENARIO: "The scenario could not be exported. Please check its scenes.",
            ErrorCode.EMPTY_TIMELINE: "The scenario has no scenes to export.",
            ErrorCode.ASSET_MISSING: "A scene is missing a generated asset. Regenerate it and try again.",
            ErrorCode.ASSET_UNREADABLE: "A generated asset could not be read. Regenerate it and try again.",
            ErrorCode.AUDIO_OVERRUN: "A voiceover is longer than its scene and was shortened.",
            ErrorCode.STAGE_FAILURE: "Video processing failed. Please try again or contact support.",
            ErrorCode.STAGE_TIMEOUT: "Video processing took too long. Please try again.",
            ErrorCode.PERSIST_FAILURE: "The finished video could not be saved. Please try again.",
            ErrorCode.INTERNAL_ERROR: "An error occurred. Please try again or contact support.",
            ErrorCode.JOB_NOT_FOUND: "Export job not found. It may have expired.",
            ErrorCode.JOB_CANCELLED: "Export was cancelled.",
            ErrorCode.JOB_NOT_RETRYABLE: "Only failed exports can be retried.",
        }

        return friendly_messages.get(
            self.code,
            "An error occurred. Please try again or contact support."
        )

    def log_error(self) -> None:
        """
        Log error with appropriate level and context.

        Asset and input problems are WARNING (the scenario needs fixing);
        cancellation is INFO; everything else is ERROR.
        """
        log_data = self.to_dict()

        if self.code in [
            ErrorCode.INVALID_SCENARIO,
            ErrorCode.EMPTY_TIMELINE,
            ErrorCode.ASSET_MISSING,
            ErrorCode.ASSET_UNREADABLE,
        ]:
            logger.warning(f"Export input error: {log_data}")
        elif self.code == ErrorCode.JOB_CANCELLED:
            logger.info(f"Export cancelled: {log_data}")
        else:
            logger.error(f"Export pipeline error: {log_data}")

    def __str__(self) -> str:
        if self.stage:
            return f"{self.code.value}[{self.stage}]: {self.message}"
        return f"{self.code.value}: {self.message}"


class AssetMissing(PipelineError):
    """A required asset URI is absent or points at nothing."""

    default_code = ErrorCode.ASSET_MISSING

    def __init__(self, message: str, uri: Optional[str] = None, scene_index: Optional[int] = None):
        details = {}
        if uri:
            details["uri"] = uri
        if scene_index is not None:
            details["scene_index"] = scene_index
        super().__init__(message=message, details=details, stage="resolving")


class AssetUnreadable(PipelineError):
    """The asset exists but is empty, of the wrong container, or undecodable."""

    default_code = ErrorCode.ASSET_UNREADABLE

    def __init__(self, message: str, uri: Optional[str] = None, scene_index: Optional[int] = None):
        details = {}
        if uri:
            details["uri"] = uri
        if scene_index is not None:
            details["scene_index"] = scene_index
        super().__init__(message=message, details=details, stage="resolving")


class EmptyTimeline(PipelineError):
    default_code = ErrorCode.EMPTY_TIMELINE

    def __init__(self, message: str = "Scenario has no scenes"):
        super().__init__(message=message, stage="composing")


class StageFailure(PipelineError):
    """
    A render stage exited unsuccessfully.

    The stage identifier is preserved so the job can report exactly
    which step of the render pipeline broke.
    """

    default_code = ErrorCode.STAGE_FAILURE

    def __init__(self, stage: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details, stage=stage)


class StageTimeout(PipelineError):
    default_code = ErrorCode.STAGE_TIMEOUT

    def __init__(self, stage: str, timeout_seconds: float):
        super().__init__(
            message=f"Stage '{stage}' exceeded its {timeout_seconds}s budget",
            details={"timeout_seconds": timeout_seconds},
            stage=stage
        )


class PersistFailure(PipelineError):
    default_code = ErrorCode.PERSIST_FAILURE

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details, stage="persisting")


class JobCancelled(PipelineError):
    default_code = ErrorCode.JOB_CANCELLED

    def __init__(self, stage: str):
        super().__init__(message=f"Cancelled before stage '{stage}'", stage=stage)


class JobNotFound(PipelineError):
    default_code = ErrorCode.JOB_NOT_FOUND

    def __init__(self, job_id: str):
        super().__init__(message=f"Export job '{job_id}' not found", details={"job_id": job_id})


class JobNotRetryable(PipelineError):
    default_code = ErrorCode.JOB_NOT_RETRYABLE

    def __init__(self, job_id: str, status: str):
        super().__init__(
            message=f"Export job '{job_id}' is {status}; only failed jobs can be retried",
            details={"job_id": job_id, "status": status}
        )


@dataclass(frozen=True)
class AudioOverrun:
    """
    Non-fatal warning: a voiceover ran past the end of its scene.

    The compositor clips the voiceover to the scene's video duration and
    records one of these instead of failing the job.
    """

    scene_index: int
    voiceover_duration: float
    video_duration: float

    code = ErrorCode.AUDIO_OVERRUN

    @property
    def clipped_seconds(self) -> float:
        return round(self.voiceover_duration - self.video_duration, 3)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["warning_code"] = self.code.value
        data["clipped_seconds"] = self.clipped_seconds
        return data


def categorize_error(error: Exception, stage: Optional[str] = None) -> PipelineError:
    """
    Wrap an arbitrary exception as a PipelineError.

    PipelineErrors pass through untouched (filling in the stage if the
    raiser did not know it). Built-in exceptions are mapped onto the
    closest error code.

    Example:
        >>> categorize_error(TimeoutError("slow"), stage="resolving").code
        <ErrorCode.STAGE_TIMEOUT: 'STAGE_TIMEOUT'>
    """
    if isinstance(error, PipelineError):
        if error.stage is None:
            error.stage = stage
        return error

    error_type = type(error).__name__

    mapping = {
        "TimeoutError": ErrorCode.STAGE_TIMEOUT,
        "FileNotFoundError": ErrorCode.ASSET_MISSING,
        "PermissionError": ErrorCode.INTERNAL_ERROR,
        "OSError": ErrorCode.INTERNAL_ERROR,
    }

    code = mapping.get(error_type, ErrorCode.INTERNAL_ERROR)
    return PipelineError(
        code,
        f"{error_type}: {error}",
        {"exception_type": error_type},
        stage=stage
    )


def summarize_error(error: PipelineError, max_chars: int = 300) -> str:
    """
    Build the bounded, user-visible summary for a failed job.

    The summary is the friendly message plus the detailed message, cut to
    ``max_chars``. Raw diagnostics (stderr tails, tracebacks) stay in
    ``details`` and the logs.
    """
    summary = error.get_user_friendly_message()
    if error.message:
        summary = f"{summary} ({error.message})"
    if len(summary) > max_chars:
        summary = summary[:max(max_chars - 3, 0)] + "..."
    return summary
