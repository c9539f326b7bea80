"""
S3 storage service for export assets and artifacts.

Handles downloads of scene assets and uploads of finished exports.
"""

import asyncio
import boto3
from botocore.exceptions import ClientError
from typing import Optional, BinaryIO, Tuple
from pathlib import Path
import structlog
from config import settings

logger = structlog.get_logger()


class S3ObjectNotFound(Exception):
    """Raised when an S3 object does not exist"""
    pass


class S3StorageService:
    """
    Service for managing S3 file operations.

    Objects are addressed by key within the configured bucket; downloads
    also accept an explicit bucket so assets can be
    read from the bucket named in their s3:// URI.
    """

    def __init__(self):
        """Initialize S3 client."""
        self.s3_client = boto3.client(
            's3',
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None
        )
        self.bucket_name = settings.STORAGE_BUCKET

        logger.info(
            "s3_storage_initialized",
            bucket=self.bucket_name,
            region=settings.AWS_REGION
        )

    def upload_file(
        self,
        file_data: BinaryIO,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """
        Upload file to S3.

        Args:
            file_data: File-like object to upload
            s3_key: S3 object key (path within bucket)
            content_type: Optional MIME type

        Returns:
            S3 key of uploaded file

        Raises:
            Exception if upload fails
        """
        try:
            extra_args = {}
            if content_type:
                extra_args['ContentType'] = content_type

            self.s3_client.upload_fileobj(
                file_data,
                self.bucket_name,
                s3_key,
                ExtraArgs=extra_args
            )

            logger.info(
                "s3_file_uploaded",
                bucket=self.bucket_name,
                s3_key=s3_key,
                content_type=content_type
            )

            return s3_key

        except ClientError as e:
            logger.error(
                "s3_upload_failed",
                s3_key=s3_key,
                error=str(e),
                exc_info=True
            )
            raise Exception(f"Failed to upload file to S3: {e}")

    def upload_file_from_path(
        self,
        file_path: str,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """
        Upload file from filesystem path to S3.

        Returns:
            S3 key of uploaded file
        """
        try:
            with open(file_path, 'rb') as f:
                return self.upload_file(f, s3_key, content_type)
        except Exception as e:
            logger.error(
                "s3_upload_from_path_failed",
                file_path=file_path,
                error=str(e),
                exc_info=True
            )
            raise

    def download_file(self, s3_key: str, local_path: str, bucket: Optional[str] = None) -> str:
        """
        Download file from S3 to local path.

        Args:
            s3_key: S3 object key
            local_path: Local filesystem path to save to
            bucket: Bucket to read from (default: configured bucket)

        Returns:
            Local path where file was saved

        Raises:
            S3ObjectNotFound: If the object does not exist
            Exception: If download fails for any other reason
        """
        bucket = bucket or self.bucket_name

        try:
            # Ensure parent directory exists
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)

            self.s3_client.download_file(bucket, s3_key, local_path)

            logger.info(
                "s3_file_downloaded",
                bucket=bucket,
                s3_key=s3_key,
                local_path=local_path
            )

            return local_path

        except ClientError as e:
            if _is_not_found(e):
                logger.warning("s3_object_not_found", bucket=bucket, s3_key=s3_key)
                raise S3ObjectNotFound(f"s3://{bucket}/{s3_key} does not exist") from e
            logger.error(
                "s3_download_failed",
                s3_key=s3_key,
                local_path=local_path,
                error=str(e),
                exc_info=True
            )
            raise Exception(f"Failed to download file from S3: {e}")

    # Async wrappers for use in async contexts (asset resolution, persistence)

    async def upload_file_from_path_async(
        self,
        file_path: str,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """
        Async wrapper for upload_file_from_path.

        Runs the sync operation in a thread pool executor.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            self.upload_file_from_path,
            file_path,
            s3_key,
            content_type
        )

    async def download_file_async(
        self,
        s3_key: str,
        local_path: str,
        bucket: Optional[str] = None
    ) -> str:
        """
        Async wrapper for download_file.

        Runs the sync operation in a thread pool executor.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None,
            self.download_file,
            s3_key,
            local_path,
            bucket
        )


def _is_not_found(error: ClientError) -> bool:
    code = error.response.get('Error', {}).get('Code')
    return code in ('404', 'NoSuchKey', 'NotFound')


def parse_s3_uri(uri: str) -> Tuple[str, str]:
    """
    Split an s3:// URI into (bucket, key).

    Examples:
        >>> parse_s3_uri("s3://story-assets/scn_1/scenes/000/video.mp4")
        ('story-assets', 'scn_1/scenes/000/video.mp4')

    Raises:
        ValueError: If the URI is not a well-formed s3:// URI
    """
    if not uri.startswith("s3://"):
        raise ValueError(f"Not an s3:// URI: {uri[:50]}")

    bucket, _, key = uri[len("s3://"):].partition("/")
    if not bucket or not key:
        raise ValueError(f"s3 URI must name a bucket and a key: {uri[:50]}")
    return bucket, key


def generate_export_s3_key(scenario_id: str, job_id: str, filename: str) -> str:
    """
    Generate standardized S3 key for export artifacts.

    Examples:
        >>> generate_export_s3_key("scn_1", "job-9", "final.mp4")
        'exports/scn_1/job-9/final.mp4'
    """
    return f"exports/{scenario_id}/{job_id}/{filename}"


# Singleton instance
_s3_storage_service: Optional[S3StorageService] = None


def get_s3_storage_service() -> S3StorageService:
    """
    Get singleton S3 storage service instance.

    Returns:
        S3StorageService instance
    """
    global _s3_storage_service
    if _s3_storage_service is None:
        _s3_storage_service = S3StorageService()
    return _s3_storage_service
