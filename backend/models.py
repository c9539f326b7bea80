"""
Export job domain model

Tracks the lifecycle of one export request. The record enforces its own
invariants so no caller can publish a half-finished job.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from schemas import ScenarioSnapshot


# Job status constants
class JobStatus:
    """Constants for export job status values"""
    QUEUED = "queued"
    RESOLVING = "resolving"
    COMPOSING = "composing"
    RENDERING = "rendering"
    DONE = "done"
    FAILED = "failed"

    @classmethod
    def terminal(cls):
        return (cls.DONE, cls.FAILED)


# Stage name constants for reference
class StageNames:
    """Constants for render stage names, in execution order"""
    CONCATENATE = "concatenate"
    MIX_VOICEOVER = "mix_voiceover"
    MIX_MUSIC = "mix_music"
    OVERLAY_LOGO = "overlay_logo"
    MUX_SUBTITLES = "mux_subtitles"

    @classmethod
    def all_stages(cls):
        """Get list of all render stage names in order"""
        return [
            cls.CONCATENATE,
            cls.MIX_VOICEOVER,
            cls.MIX_MUSIC,
            cls.OVERLAY_LOGO,
            cls.MUX_SUBTITLES
        ]


# Allowed forward transitions; FAILED is reachable from every non-terminal state
_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RESOLVING, JobStatus.FAILED},
    JobStatus.RESOLVING: {JobStatus.COMPOSING, JobStatus.FAILED},
    JobStatus.COMPOSING: {JobStatus.RENDERING, JobStatus.FAILED},
    JobStatus.RENDERING: {JobStatus.DONE, JobStatus.FAILED},
    JobStatus.DONE: set(),
    JobStatus.FAILED: set(),
}


class InvalidTransition(ValueError):
    """Raised when a job is moved along an edge the state machine forbids."""
    pass


class JobAlreadyTerminal(InvalidTransition):
    """Raised by a job store asked to overwrite a finished job."""

    def __init__(self, job_id: str, status: str):
        super().__init__(f"job {job_id} is already {status}")
        self.job_id = job_id
        self.status = status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExportJob:
    """
    One request to produce a final composed video from a scenario snapshot.

    Mutated only by the export controller. Terminal once done or failed;
    a retry is a brand-new job with ``retry_of`` pointing here.
    """

    snapshot: ScenarioSnapshot
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = JobStatus.QUEUED
    progress: float = 0.0
    output_uri: Optional[str] = None
    subtitle_uri: Optional[str] = None
    error_kind: Optional[str] = None
    failed_stage: Optional[str] = None
    error_summary: Optional[str] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    retry_of: Optional[str] = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __repr__(self):
        return f"<ExportJob(id={self.job_id}, status={self.status}, progress={self.progress:.2f})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.terminal()

    def transition(self, status: str) -> None:
        """
        Move to the next lifecycle state.

        Raises:
            InvalidTransition: if the edge is not part of the state machine,
                or if DONE/FAILED is requested here instead of through
                mark_done/mark_failed
        """
        if status in JobStatus.terminal():
            raise InvalidTransition(f"use mark_done/mark_failed to enter '{status}'")
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"cannot move job {self.job_id} from '{self.status}' to '{status}'")
        self.status = status
        self.updated_at = _utcnow()

    def set_progress(self, fraction: float) -> None:
        """Record progress; values are clamped to [0, 1] and never decrease."""
        fraction = min(max(float(fraction), 0.0), 1.0)
        self.progress = round(max(self.progress, fraction), 4)
        self.updated_at = _utcnow()

    def mark_done(self, output_uri: str, subtitle_uri: Optional[str] = None) -> None:
        """Publish the result. Status and URI change together."""
        if not output_uri:
            raise InvalidTransition("a done job must carry an output URI")
        if JobStatus.DONE not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"cannot move job {self.job_id} from '{self.status}' to 'done'")
        self.output_uri = output_uri
        self.subtitle_uri = subtitle_uri
        self.status = JobStatus.DONE
        self.progress = 1.0
        self.updated_at = _utcnow()

    def mark_failed(self, error_kind: str, failed_stage: Optional[str], error_summary: str) -> None:
        """Record a failure. Output URIs are never set on a failed job."""
        if self.is_terminal:
            raise InvalidTransition(f"job {self.job_id} is already {self.status}")
        self.status = JobStatus.FAILED
        self.error_kind = error_kind
        self.failed_stage = failed_stage
        self.error_summary = error_summary
        self.output_uri = None
        self.subtitle_uri = None
        self.updated_at = _utcnow()

    def add_warning(self, warning: Dict[str, Any]) -> None:
        self.warnings.append(warning)
        self.updated_at = _utcnow()

    def status_view(self) -> Dict[str, Any]:
        """The job status contract exposed to pollers."""
        return {
            "job_id": self.job_id,
            "scenario_id": self.snapshot.scenario_id,
            "status": self.status,
            "progress": self.progress,
            "output_uri": self.output_uri,
            "subtitle_uri": self.subtitle_uri,
            "error_kind": self.error_kind,
            "failed_stage": self.failed_stage,
            "error_summary": self.error_summary,
            "warnings": list(self.warnings),
            "retry_of": self.retry_of,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the full record (snapshot included) for a job store."""
        data = self.status_view()
        data["snapshot"] = self.snapshot.model_dump(mode="json")
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportJob":
        """Rebuild a record serialized by to_dict."""
        return cls(
            snapshot=ScenarioSnapshot.model_validate(data["snapshot"]),
            job_id=data["job_id"],
            status=data["status"],
            progress=float(data.get("progress") or 0.0),
            output_uri=data.get("output_uri"),
            subtitle_uri=data.get("subtitle_uri"),
            error_kind=data.get("error_kind"),
            failed_stage=data.get("failed_stage"),
            error_summary=data.get("error_summary"),
            warnings=list(data.get("warnings") or []),
            retry_of=data.get("retry_of"),
            cancel_requested=bool(data.get("cancel_requested", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
