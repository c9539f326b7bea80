"""
Asset manager for export job working directories.

Manages temporary files for one export job including:
- Job directory structure creation
- Streaming downloads of remote assets
- File validation
- Cleanup of temporary resources
"""

import asyncio
import aiofiles
import aiohttp
from pathlib import Path
from typing import Optional
import shutil
import logging

logger = logging.getLogger(__name__)


class AssetManager:
    """
    Manages file operations for one export job.

    Each job gets its own isolated directory structure, exclusive to it:
    /tmp/export_jobs/{job_id}/
        scenes/     - Downloaded scene clips
        audio/      - Voiceover and music tracks
        overlay/    - Logo image
        render/     - Intermediate and final render outputs

    Example:
        >>> am = AssetManager("job-123")
        >>> await am.create_job_directory()
        >>> path = await am.download_file("https://example.com/clip.mp4", "scene_000.mp4", "scenes")
        >>> await am.cleanup()
    """

    SUBDIRS = ("scenes", "audio", "overlay", "render")

    def __init__(self, job_id: str, base_path: str = "/tmp/export_jobs"):
        """
        Initialize asset manager for a specific job.

        Args:
            job_id: Unique identifier for this export job
            base_path: Base directory for all export jobs (default: /tmp/export_jobs)
        """
        self.job_id = job_id
        self.base_path = Path(base_path)
        self.job_dir = self.base_path / job_id

        # Subdirectories for different asset types
        self.scenes_dir = self.job_dir / "scenes"
        self.audio_dir = self.job_dir / "audio"
        self.overlay_dir = self.job_dir / "overlay"
        self.render_dir = self.job_dir / "render"

    async def create_job_directory(self) -> None:
        """
        Create temporary directory structure for job.

        Example:
            >>> am = AssetManager("job-123")
            >>> await am.create_job_directory()
            >>> assert am.render_dir.exists()
        """
        try:
            self.job_dir.mkdir(parents=True, exist_ok=True)
            for subdir in self.SUBDIRS:
                (self.job_dir / subdir).mkdir(exist_ok=True)

            logger.info(f"Created job directory structure for {self.job_id}")
        except Exception as e:
            logger.error(f"Failed to create job directory for {self.job_id}: {e}")
            raise

    def _target_dir(self, subdir: Optional[str]) -> Path:
        if subdir in self.SUBDIRS:
            return self.job_dir / subdir
        return self.job_dir

    async def download_file(
        self,
        url: str,
        filename: str,
        subdir: Optional[str] = None,
        timeout: int = 300
    ) -> str:
        """
        Download file from URL to job directory.

        Args:
            url: URL to download from
            filename: Local filename to save as
            subdir: Optional subdirectory (scenes/audio/overlay/render)
            timeout: Download timeout in seconds (default: 300)

        Returns:
            Absolute path to downloaded file

        Raises:
            aiohttp.ClientResponseError: If the server answers with an error status
            aiohttp.ClientError: If download fails
            asyncio.TimeoutError: If download times out
        """
        target_dir = self._target_dir(subdir)
        target_dir.mkdir(parents=True, exist_ok=True)

        file_path = target_dir / filename

        try:
            client_timeout = aiohttp.ClientTimeout(total=timeout)
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url) as response:
                    response.raise_for_status()

                    # Download file in chunks to handle large files
                    async with aiofiles.open(file_path, 'wb') as f:
                        async for chunk in response.content.iter_chunked(8192):
                            await f.write(chunk)

            logger.info(f"Downloaded {filename} to {file_path}")
            return str(file_path)

        except aiohttp.ClientError as e:
            logger.error(f"Failed to download {url}: {e}")
            # Clean up partial download
            if file_path.exists():
                file_path.unlink()
            raise
        except asyncio.TimeoutError:
            logger.error(f"Download timeout for {url}")
            # Clean up partial download
            if file_path.exists():
                file_path.unlink()
            raise

    async def save_file(
        self,
        content: bytes,
        filename: str,
        subdir: Optional[str] = None
    ) -> str:
        """
        Save binary content to file.

        Args:
            content: Binary content to save
            filename: Local filename to save as
            subdir: Optional subdirectory

        Returns:
            Absolute path to saved file
        """
        target_dir = self._target_dir(subdir)
        target_dir.mkdir(parents=True, exist_ok=True)

        file_path = target_dir / filename

        async with aiofiles.open(file_path, 'wb') as f:
            await f.write(content)

        logger.info(f"Saved {len(content)} bytes to {file_path}")
        return str(file_path)

    def get_file_path(self, filename: str, subdir: Optional[str] = None) -> Path:
        """
        Get path to file in job directory.

        Example:
            >>> am.get_file_path("stage_1_concatenate.mp4", "render")
            PosixPath('/tmp/export_jobs/job-123/render/stage_1_concatenate.mp4')
        """
        return self._target_dir(subdir) / filename

    def validate_file(self, file_path: str, min_size: int = 1) -> bool:
        """
        Validate that file exists and meets size requirements.

        Args:
            file_path: Path of the file to validate
            min_size: Minimum file size in bytes (default: 1, i.e. non-empty)

        Returns:
            True if file is valid, False otherwise
        """
        path = Path(file_path)

        if not path.is_file():
            logger.warning(f"File does not exist: {path}")
            return False

        file_size = path.stat().st_size
        if file_size < min_size:
            logger.warning(f"File too small ({file_size} bytes): {path}")
            return False

        logger.debug(f"File validated: {path} ({file_size} bytes)")
        return True

    async def cleanup(self) -> None:
        """
        Remove all temporary files for this job.

        Recursively deletes the entire job directory and all its contents.
        Safe to call even if directory doesn't exist.
        """
        try:
            if self.job_dir.exists():
                await asyncio.to_thread(shutil.rmtree, self.job_dir)
                logger.info(f"Cleaned up job directory: {self.job_id}")
            else:
                logger.info(f"Job directory does not exist, nothing to clean: {self.job_id}")
        except Exception as e:
            logger.error(f"Failed to cleanup job directory {self.job_id}: {e}")
            raise

    def __repr__(self) -> str:
        return f"AssetManager(job_id='{self.job_id}', path='{self.job_dir}')"
