"""
Video export pipeline package.

This package contains the components that turn a scenario snapshot into
one exported video:
- Asset resolution and per-job working directories
- Timeline composition
- FFmpeg render stages
- Export job lifecycle and error handling
"""

__version__ = "0.1.0"

from .asset_manager import AssetManager
from .error_handler import PipelineError, ErrorCode

__all__ = [
    "AssetManager",
    "PipelineError",
    "ErrorCode",
]
