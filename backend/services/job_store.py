"""
Job stores for export job records.

The export controller receives a store at construction time and never
touches a module-level registry. Two implementations:

- InMemoryJobStore: process-local, used by default and in tests
- RedisJobStore: one Redis hash per job with a TTL, every save also
  published on the status channel for pollers

A stored job that is done or failed is final: saving over it raises
JobAlreadyTerminal. A cancellation request recorded with request_cancel
survives later saves of the same job.

Usage:
    >>> store = InMemoryJobStore()
    >>> store.save(job)
    >>> store.get(job.job_id).status
    'queued'
"""

import copy
import json
from abc import ABC, abstractmethod
from typing import Dict, Optional

import structlog
from redis.exceptions import RedisError, WatchError

from config import settings
from models import ExportJob, JobAlreadyTerminal, JobStatus

logger = structlog.get_logger()


class JobStore(ABC):
    """Keyed storage for ExportJob records."""

    # True when other processes read and write the same records
    shared = False

    @abstractmethod
    def save(self, job: ExportJob) -> None:
        """
        Persist the current state of a job, replacing any previous version.

        Args:
            job: Job record to store

        Raises:
            JobAlreadyTerminal: If the stored version is already done or failed
        """
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[ExportJob]:
        """
        Load a job record.

        Returns:
            A copy of the stored job, or None if unknown
        """
        pass

    @abstractmethod
    def request_cancel(self, job_id: str) -> Optional[ExportJob]:
        """
        Flag a stored job for cancellation.

        Returns:
            The stored job after flagging, or None if unknown
        """
        pass

    def cancel_requested(self, job_id: str) -> bool:
        job = self.get(job_id)
        return job is not None and job.cancel_requested


class InMemoryJobStore(JobStore):
    """
    Dictionary-backed store.

    Records are copied on the way in and out so callers never share a
    mutable job with the store.
    """

    def __init__(self):
        self._jobs: Dict[str, ExportJob] = {}

    def save(self, job: ExportJob) -> None:
        stored = self._jobs.get(job.job_id)
        record = copy.deepcopy(job)
        if stored is not None:
            if stored.is_terminal:
                raise JobAlreadyTerminal(job.job_id, stored.status)
            record.cancel_requested = record.cancel_requested or stored.cancel_requested
        self._jobs[job.job_id] = record

    def get(self, job_id: str) -> Optional[ExportJob]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    def request_cancel(self, job_id: str) -> Optional[ExportJob]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.is_terminal:
            job.cancel_requested = True
        return copy.deepcopy(job)

    def cancel_requested(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is not None and job.cancel_requested


class RedisJobStore(JobStore):
    """
    Redis-backed store shared by every API instance.

    Each job lives in the hash ``{JOB_KEY_PREFIX}:{job_id}``; the full record
    is kept as JSON under ``data`` with ``status`` and ``progress`` mirrored
    as plain fields for quick inspection from redis-cli. A cancellation
    request is the separate field ``cancel_requested``; setting it never
    rewrites the record.
    """

    shared = True

    def __init__(self, redis_client=None, ttl: Optional[int] = None):
        if redis_client is None:
            from redis_client import get_redis_client
            redis_client = get_redis_client()
        self.redis = redis_client
        self.ttl = ttl or settings.JOB_RESULT_TTL

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{settings.JOB_KEY_PREFIX}:{job_id}"

    def save(self, job: ExportJob) -> None:
        key = self._key(job.job_id)
        mapping = {
            "data": json.dumps(job.to_dict()),
            "status": job.status,
            "progress": str(job.progress),
        }
        if job.cancel_requested:
            mapping["cancel_requested"] = "1"

        try:
            with self.redis.get_client().pipeline() as pipe:
                while True:
                    try:
                        # Check-and-set; retried when another writer touches the key
                        pipe.watch(key)
                        current = pipe.hget(key, "status")
                        if current in JobStatus.terminal():
                            raise JobAlreadyTerminal(job.job_id, current)
                        pipe.multi()
                        pipe.hset(key, mapping=mapping)
                        pipe.expire(key, self.ttl)
                        pipe.execute()
                        break
                    except WatchError:
                        logger.debug("job_save_retry", job_id=job.job_id)
                        continue
        except RedisError as e:
            logger.error("job_save_failed", job_id=job.job_id, error=str(e))
            raise

        self.redis.publish_status(
            job.job_id,
            job.status,
            progress=job.progress,
            output_uri=job.output_uri,
            error_kind=job.error_kind,
            failed_stage=job.failed_stage,
        )

    def get(self, job_id: str) -> Optional[ExportJob]:
        try:
            raw, cancel_flag = self.redis.get_client().hmget(
                self._key(job_id), ["data", "cancel_requested"]
            )
        except RedisError as e:
            logger.error("job_load_failed", job_id=job_id, error=str(e))
            raise

        if not raw:
            return None
        job = ExportJob.from_dict(json.loads(raw))
        job.cancel_requested = job.cancel_requested or cancel_flag == "1"
        return job

    def request_cancel(self, job_id: str) -> Optional[ExportJob]:
        key = self._key(job_id)
        try:
            client = self.redis.get_client()
            if not client.exists(key):
                return None
            client.hset(key, "cancel_requested", "1")
        except RedisError as e:
            logger.error("job_cancel_request_failed", job_id=job_id, error=str(e))
            raise

        logger.info("job_cancel_recorded", job_id=job_id)
        return self.get(job_id)

    def cancel_requested(self, job_id: str) -> bool:
        try:
            return self.redis.get_client().hget(self._key(job_id), "cancel_requested") == "1"
        except RedisError as e:
            logger.error("job_load_failed", job_id=job_id, error=str(e))
            raise


def get_job_store() -> JobStore:
    """
    Factory for the configured job store.

    Raises:
        ValueError: If JOB_STORE_BACKEND is not "memory" or "redis"
    """
    backend = settings.JOB_STORE_BACKEND.lower()

    if backend == "memory":
        return InMemoryJobStore()
    if backend == "redis":
        return RedisJobStore()

    raise ValueError(
        f"Invalid JOB_STORE_BACKEND: {backend}. Must be 'memory' or 'redis'"
    )
