"""
Configuration management for the export service
"""

import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Redis
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_MAX_CONNECTIONS: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
    REDIS_SOCKET_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    REDIS_SOCKET_CONNECT_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))
    REDIS_RETRY_ON_TIMEOUT: bool = os.getenv("REDIS_RETRY_ON_TIMEOUT", "true").lower() == "true"
    REDIS_HEALTH_CHECK_INTERVAL: int = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))

    # Job store: "memory" keeps jobs in-process, "redis" shares them across API instances
    JOB_STORE_BACKEND: str = os.getenv("JOB_STORE_BACKEND", "memory")
    JOB_KEY_PREFIX: str = "export_job"
    JOB_STATUS_CHANNEL: str = "export_status_updates"
    JOB_RESULT_TTL: int = int(os.getenv("JOB_RESULT_TTL", "86400"))  # 24 hours
    # A shared-store job not updated for this long has no live runner and is failed on cancel
    ORPHANED_JOB_SECONDS: int = int(os.getenv("ORPHANED_JOB_SECONDS", "3600"))

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # Cloud Storage Configuration
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "s3")  # Options: "s3" or "local"
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "")
    LOCAL_OUTPUT_DIR: str = os.getenv("LOCAL_OUTPUT_DIR", "./outputs/exports")

    # AWS S3 Configuration
    AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")

    # FFmpeg Configuration
    FFMPEG_PATH: Optional[str] = os.getenv("FFMPEG_PATH", None)  # Optional path to ffmpeg executable

    # Export working directories (one subdirectory per job)
    EXPORT_WORK_DIR: str = os.getenv("EXPORT_WORK_DIR", "/tmp/export_jobs")

    # Asset resolution
    ASSET_FETCH_CONCURRENCY: int = int(os.getenv("ASSET_FETCH_CONCURRENCY", "4"))
    ASSET_DOWNLOAD_TIMEOUT: int = int(os.getenv("ASSET_DOWNLOAD_TIMEOUT", "300"))
    # file:// URIs and plain paths in a snapshot read the server's own disk; off unless DEBUG
    ALLOW_LOCAL_ASSET_PATHS: bool = os.getenv(
        "ALLOW_LOCAL_ASSET_PATHS", os.getenv("DEBUG", "false")
    ).lower() == "true"

    # Render stages
    STAGE_TIMEOUT_SECONDS: int = int(os.getenv("STAGE_TIMEOUT_SECONDS", "900"))  # 15 minutes per stage
    OUTPUT_FPS: int = int(os.getenv("OUTPUT_FPS", "30"))
    VIDEO_CODEC: str = os.getenv("VIDEO_CODEC", "libx264")
    AUDIO_CODEC: str = os.getenv("AUDIO_CODEC", "aac")
    VIDEO_PRESET: str = os.getenv("VIDEO_PRESET", "medium")
    AUDIO_SAMPLE_RATE: int = 48000

    # Composition constants
    TRANSITION_DURATION: float = float(os.getenv("TRANSITION_DURATION", "0.5"))
    VOICEOVER_GAIN: float = float(os.getenv("VOICEOVER_GAIN", "1.0"))
    MUSIC_GAIN: float = float(os.getenv("MUSIC_GAIN", "0.15"))
    MUSIC_FADE_SECONDS: float = float(os.getenv("MUSIC_FADE_SECONDS", "2.0"))
    LOGO_HEIGHT_RATIO: float = float(os.getenv("LOGO_HEIGHT_RATIO", "0.1"))
    LOGO_MARGIN_PX: int = int(os.getenv("LOGO_MARGIN_PX", "32"))

    # Job status surfaces at most this many characters of error text
    ERROR_SUMMARY_MAX_CHARS: int = int(os.getenv("ERROR_SUMMARY_MAX_CHARS", "300"))

    @property
    def ffmpeg_binary(self) -> str:
        """Resolve the ffmpeg executable, preferring FFMPEG_PATH."""
        return self.FFMPEG_PATH or "ffmpeg"

    def validate_storage_config(self) -> None:
        """
        Validate storage configuration at startup.
        Raises ValueError if the S3 backend lacks required settings.
        """
        backend = self.STORAGE_BACKEND.lower()
        if backend not in ("s3", "local"):
            raise ValueError(f"Invalid STORAGE_BACKEND: {backend}. Must be 's3' or 'local'")
        if backend == "s3" and not self.STORAGE_BUCKET:
            raise ValueError("STORAGE_BUCKET is required when STORAGE_BACKEND=s3")

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


# Global settings instance
settings = Settings()
