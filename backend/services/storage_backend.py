"""
Durable storage for finished export artifacts.

Provides one interface for publishing the final video and subtitle sidecar,
whether they land in S3 or in a local directory during development.

Usage:
    >>> store = get_artifact_store()
    >>> uri = await store.persist("/tmp/export_jobs/job-123/render/final.mp4",
    ...                           "exports/scn_1/job-123/final.mp4", "video/mp4")
    >>> uri
    's3://my-bucket/exports/scn_1/job-123/final.mp4'
"""

import os
import asyncio
import shutil
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class ArtifactStore(ABC):
    """
    Abstract interface for publishing export artifacts.

    Every persisted artifact is addressable by a durable URI.
    """

    @abstractmethod
    async def persist(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        """
        Copy a local file into durable storage.

        Args:
            local_path: Path to local file
            key: Destination key (e.g., "exports/scn_1/job-123/final.mp4")
            content_type: Optional MIME type

        Returns:
            Durable URI of the stored artifact

        Raises:
            FileNotFoundError: If local file doesn't exist
            Exception: If the upload or copy fails
        """
        pass


class S3ArtifactStore(ArtifactStore):
    """
    S3 implementation on top of S3StorageService.

    Example:
        >>> store = S3ArtifactStore()
        >>> await store.persist("/tmp/final.mp4", "exports/scn_1/job-1/final.mp4", "video/mp4")
        's3://my-bucket/exports/scn_1/job-1/final.mp4'
    """

    def __init__(self, storage_service=None):
        if storage_service is None:
            from services.s3_storage import get_s3_storage_service
            storage_service = get_s3_storage_service()
        self.storage = storage_service

    async def persist(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        if not os.path.exists(local_path):
            raise FileNotFoundError(f"Local file not found: {local_path}")

        logger.info(f"Uploading {local_path} to s3://{self.storage.bucket_name}/{key}")
        await self.storage.upload_file_from_path_async(local_path, key, content_type)
        return f"s3://{self.storage.bucket_name}/{key}"


class LocalArtifactStore(ArtifactStore):
    """
    Filesystem implementation for development and tests.

    Artifacts are copied under ``root`` and addressed by file:// URIs.
    Keys that resolve outside ``root`` are rejected with ValueError.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    async def persist(self, local_path: str, key: str, content_type: Optional[str] = None) -> str:
        if not os.path.exists(local_path):
            raise FileNotFoundError(f"Local file not found: {local_path}")

        root = self.root.resolve()
        destination = (root / key).resolve()
        if not destination.is_relative_to(root) or destination == root:
            raise ValueError(f"Artifact key escapes the output directory: {key}")
        destination.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Copying {local_path} to {destination}")
        await asyncio.to_thread(shutil.copyfile, local_path, destination)
        return destination.resolve().as_uri()


def get_artifact_store() -> ArtifactStore:
    """
    Factory function to get the artifact store for the configured backend.

    Returns:
        ArtifactStore instance (S3 or local)

    Raises:
        ValueError: If storage backend is invalid or required config is missing
    """
    from config import settings

    settings.validate_storage_config()
    backend_type = settings.STORAGE_BACKEND.lower()

    if backend_type == "s3":
        return S3ArtifactStore()
    return LocalArtifactStore(settings.LOCAL_OUTPUT_DIR)
