"""
Asset resolver for export jobs.

Resolves every media URI referenced by a scenario snapshot to a local file
and verifies it before anything is composed:
- the object exists and is non-empty
- its extension names an expected container
- it decodes (MoviePy for video/audio, Pillow for the logo image)

Supported URI forms:
- s3://bucket/key        downloaded with boto3
- http(s)://...          streamed with aiohttp
- file:///abs/path       used in place
- /plain/local/path      used in place

Independent assets are fetched in parallel, bounded by a semaphore, and all
fetches join before the resolver returns.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, List
from urllib.parse import urlparse
from urllib.request import url2pathname

import aiohttp
import structlog
from moviepy import VideoFileClip, AudioFileClip
from PIL import Image

from config import settings
from schemas import ScenarioSnapshot
from pipeline.asset_manager import AssetManager
from pipeline.error_handler import AssetMissing, AssetUnreadable, StageTimeout

logger = structlog.get_logger(__name__)


VIDEO_EXTENSIONS = (".mp4", ".mov", ".m4v", ".webm", ".mkv")
AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".aac", ".ogg")
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

_EXTENSIONS = {
    "video": VIDEO_EXTENSIONS,
    "audio": AUDIO_EXTENSIONS,
    "image": IMAGE_EXTENSIONS,
}

_DEFAULT_EXTENSION = {"video": ".mp4", "audio": ".mp3", "image": ".png"}


@dataclass(frozen=True)
class ResolvedScene:
    """A scene whose media is available locally and verified."""

    scene_index: int
    duration: float
    transition: str
    video_path: str
    video_duration: float
    voiceover_path: Optional[str] = None
    voiceover_duration: Optional[float] = None
    voiceover_text: Optional[str] = None


@dataclass(frozen=True)
class ResolvedAssets:
    scenes: Tuple[ResolvedScene, ...]
    music_path: Optional[str] = None
    music_duration: Optional[float] = None
    logo_path: Optional[str] = None
    logo_size: Optional[Tuple[int, int]] = None


@dataclass(frozen=True)
class _FetchRequest:
    uri: str
    kind: str
    subdir: str
    name: str
    scene_index: Optional[int] = None


@dataclass(frozen=True)
class _Fetched:
    path: str
    duration: Optional[float] = None
    size: Optional[Tuple[int, int]] = None


class AssetResolver:
    """
    Resolve and verify all assets of a scenario snapshot.

    Example:
        >>> resolver = AssetResolver()
        >>> assets = await resolver.resolve(snapshot, asset_manager)
        >>> assets.scenes[0].video_path
        '/tmp/export_jobs/job-123/scenes/scene_000_video.mp4'
    """

    def __init__(
        self,
        storage_service=None,
        concurrency: Optional[int] = None,
        download_timeout: Optional[int] = None,
        allow_local_paths: Optional[bool] = None
    ):
        """
        Args:
            storage_service: S3StorageService for s3:// URIs (created on first use)
            concurrency: Maximum parallel fetches (default: ASSET_FETCH_CONCURRENCY)
            download_timeout: Per-fetch timeout in seconds (default: ASSET_DOWNLOAD_TIMEOUT)
            allow_local_paths: Accept file:// URIs and plain paths
                (default: ALLOW_LOCAL_ASSET_PATHS)
        """
        self._storage = storage_service
        self.concurrency = max(int(concurrency or settings.ASSET_FETCH_CONCURRENCY), 1)
        self.download_timeout = download_timeout or settings.ASSET_DOWNLOAD_TIMEOUT
        if allow_local_paths is None:
            allow_local_paths = settings.ALLOW_LOCAL_ASSET_PATHS
        self.allow_local_paths = allow_local_paths

    @property
    def storage(self):
        if self._storage is None:
            from services.s3_storage import get_s3_storage_service
            self._storage = get_s3_storage_service()
        return self._storage

    async def resolve(self, snapshot: ScenarioSnapshot, asset_manager: AssetManager) -> ResolvedAssets:
        """
        Resolve every asset the snapshot references.

        Args:
            snapshot: Validated scenario snapshot
            asset_manager: Work directory of the job; remote assets land here

        Returns:
            ResolvedAssets with one ResolvedScene per scene, in scene order

        Raises:
            AssetMissing: A required URI is absent or points at nothing
            AssetUnreadable: An asset is empty, of the wrong container,
                undecodable, or cannot be fetched
            StageTimeout: A single fetch exceeded the download timeout
        """
        requests = self._plan_fetches(snapshot)

        log = logger.bind(scenario_id=snapshot.scenario_id, job_id=asset_manager.job_id)
        log.info("asset_resolution_started", assets=len(requests), concurrency=self.concurrency)

        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [
            asyncio.ensure_future(self._fetch(semaphore, request, asset_manager))
            for request in requests
        ]

        try:
            fetched = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        results = {request.name: item for request, item in zip(requests, fetched)}

        scenes = []
        for scene in snapshot.scenes:
            video = results[f"scene_{scene.index:03d}_video"]
            voiceover = results.get(f"scene_{scene.index:03d}_voiceover")
            scenes.append(ResolvedScene(
                scene_index=scene.index,
                duration=scene.duration,
                transition=scene.transition,
                video_path=video.path,
                video_duration=video.duration,
                voiceover_path=voiceover.path if voiceover else None,
                voiceover_duration=voiceover.duration if voiceover else None,
                voiceover_text=scene.voiceover_text,
            ))

        music = results.get("music")
        logo = results.get("logo")

        log.info("asset_resolution_completed", scenes=len(scenes), music=bool(music), logo=bool(logo))

        return ResolvedAssets(
            scenes=tuple(scenes),
            music_path=music.path if music else None,
            music_duration=music.duration if music else None,
            logo_path=logo.path if logo else None,
            logo_size=logo.size if logo else None,
        )

    def _plan_fetches(self, snapshot: ScenarioSnapshot) -> List[_FetchRequest]:
        """List every asset to fetch, failing fast on absent required URIs."""
        requests = []

        for scene in snapshot.scenes:
            if not scene.video_uri:
                raise AssetMissing(f"Scene {scene.index} has no video URI", scene_index=scene.index)
            requests.append(_FetchRequest(
                uri=scene.video_uri,
                kind="video",
                subdir="scenes",
                name=f"scene_{scene.index:03d}_video",
                scene_index=scene.index,
            ))

            if scene.voiceover_text and not scene.voiceover_uri:
                raise AssetMissing(
                    f"Scene {scene.index} has voiceover text but no voiceover URI",
                    scene_index=scene.index
                )
            if scene.voiceover_uri:
                requests.append(_FetchRequest(
                    uri=scene.voiceover_uri,
                    kind="audio",
                    subdir="audio",
                    name=f"scene_{scene.index:03d}_voiceover",
                    scene_index=scene.index,
                ))

        if snapshot.music_uri:
            requests.append(_FetchRequest(uri=snapshot.music_uri, kind="audio", subdir="audio", name="music"))
        if snapshot.logo_uri:
            requests.append(_FetchRequest(uri=snapshot.logo_uri, kind="image", subdir="overlay", name="logo"))

        return requests

    async def _fetch(
        self,
        semaphore: asyncio.Semaphore,
        request: _FetchRequest,
        asset_manager: AssetManager
    ) -> _Fetched:
        extension = Path(urlparse(request.uri).path).suffix.lower()
        if extension and extension not in _EXTENSIONS[request.kind]:
            raise AssetUnreadable(
                f"Expected a {request.kind} container, got '{extension}'",
                uri=request.uri,
                scene_index=request.scene_index
            )

        filename = request.name + (extension or _DEFAULT_EXTENSION[request.kind])

        async with semaphore:
            path = await self._localize(request, filename, asset_manager)

        if not Path(path).is_file():
            raise AssetMissing("Asset does not exist", uri=request.uri, scene_index=request.scene_index)
        if not asset_manager.validate_file(path):
            raise AssetUnreadable("Asset is empty", uri=request.uri, scene_index=request.scene_index)

        fetched = await asyncio.to_thread(self._probe, path, request)
        logger.debug("asset_resolved", uri=request.uri, path=path, kind=request.kind)
        return fetched

    async def _localize(self, request: _FetchRequest, filename: str, asset_manager: AssetManager) -> str:
        """Make the asset available on local disk and return its path."""
        parsed = urlparse(request.uri)
        scheme = parsed.scheme.lower()

        if scheme == "s3":
            return await self._fetch_s3(request, filename, asset_manager)
        if scheme in ("http", "https"):
            return await self._fetch_http(request, filename, asset_manager)
        if scheme in ("file", ""):
            if not self.allow_local_paths:
                raise AssetUnreadable(
                    "Local asset paths are disabled",
                    uri=request.uri,
                    scene_index=request.scene_index
                )
            return url2pathname(parsed.path) if scheme == "file" else request.uri

        raise AssetUnreadable(
            f"Unsupported URI scheme '{scheme}'",
            uri=request.uri,
            scene_index=request.scene_index
        )

    async def _fetch_s3(self, request: _FetchRequest, filename: str, asset_manager: AssetManager) -> str:
        from services.s3_storage import parse_s3_uri, S3ObjectNotFound

        try:
            bucket, key = parse_s3_uri(request.uri)
        except ValueError as e:
            raise AssetMissing(str(e), uri=request.uri, scene_index=request.scene_index)

        local_path = str(asset_manager.get_file_path(filename, request.subdir))
        try:
            return await asyncio.wait_for(
                self.storage.download_file_async(key, local_path, bucket),
                timeout=self.download_timeout
            )
        except asyncio.TimeoutError:
            raise StageTimeout("resolving", self.download_timeout)
        except S3ObjectNotFound:
            raise AssetMissing("Asset does not exist", uri=request.uri, scene_index=request.scene_index)
        except Exception as e:
            raise AssetUnreadable(
                f"Failed to fetch asset: {e}",
                uri=request.uri,
                scene_index=request.scene_index
            )

    async def _fetch_http(self, request: _FetchRequest, filename: str, asset_manager: AssetManager) -> str:
        try:
            return await asset_manager.download_file(
                request.uri,
                filename,
                request.subdir,
                timeout=self.download_timeout
            )
        except asyncio.TimeoutError:
            raise StageTimeout("resolving", self.download_timeout)
        except aiohttp.ClientResponseError as e:
            if e.status in (404, 410):
                raise AssetMissing("Asset does not exist", uri=request.uri, scene_index=request.scene_index)
            raise AssetUnreadable(
                f"Fetch failed with HTTP {e.status}",
                uri=request.uri,
                scene_index=request.scene_index
            )
        except aiohttp.ClientError as e:
            raise AssetUnreadable(
                f"Failed to fetch asset: {e}",
                uri=request.uri,
                scene_index=request.scene_index
            )

    @staticmethod
    def _probe(path: str, request: _FetchRequest) -> _Fetched:
        """Open the file with the matching decoder (runs in a worker thread)."""
        try:
            if request.kind == "image":
                with Image.open(path) as image:
                    image.verify()
                    return _Fetched(path=path, size=image.size)

            clip_class = VideoFileClip if request.kind == "video" else AudioFileClip
            with clip_class(path) as clip:
                duration = clip.duration
        except Exception as e:
            raise AssetUnreadable(
                f"Cannot decode {request.kind}: {e}",
                uri=request.uri,
                scene_index=request.scene_index
            )

        if not duration or duration <= 0:
            raise AssetUnreadable(
                f"Decoded {request.kind} has no duration",
                uri=request.uri,
                scene_index=request.scene_index
            )
        return _Fetched(path=path, duration=round(float(duration), 3))
