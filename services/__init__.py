"""Request-level workflows built on the stores and downloaders."""

from services.capture import CaptureOutcome, CaptureService, download_in_background
from services.recovery import RecoveryService

__all__ = [
    "CaptureOutcome",
    "CaptureService",
    "RecoveryService",
    "download_in_background",
]
