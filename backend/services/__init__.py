"""
Services module for storage and job state
"""

from .job_store import JobStore, InMemoryJobStore, RedisJobStore, get_job_store
from .storage_backend import ArtifactStore, S3ArtifactStore, LocalArtifactStore, get_artifact_store

__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "RedisJobStore",
    "get_job_store",
    "ArtifactStore",
    "S3ArtifactStore",
    "LocalArtifactStore",
    "get_artifact_store",
]
