"""imgproxy_sidecar - reverse proxy that writes imgproxy results through to S3."""

from .capture import CaptureBuffer, CapturePipeline
from .config import ConfigError, Settings
from .keys import KeyPolicy, derive_key
from .observability import configure as configure_observability
from .proxy import BackendNotReady, ImageProxy, wait_until_ready
from .storage import BlobStore, UploadError

__all__ = [
    # Server
    "ImageProxy",
    "Settings",
    "wait_until_ready",
    # Capture and persistence
    "CapturePipeline",
    "CaptureBuffer",
    "BlobStore",
    "KeyPolicy",
    "derive_key",
    # Errors
    "ConfigError",
    "BackendNotReady",
    "UploadError",
    "configure_observability",
]
__version__ = "0.1.0"
