"""Exception hierarchy for the photo ingestion pipeline."""

from __future__ import annotations

from typing import Optional


class PhotoIngestError(Exception):
    """Base exception for all photoingest errors."""


class ConfigError(PhotoIngestError):
    """Raised for missing credentials or invalid configuration values."""


class ArchiveError(PhotoIngestError):
    """Raised when an archive cannot be opened or one of its batches fails to decode."""


class ImageLoadError(PhotoIngestError):
    """Raised when an item's bytes are not a decodable image."""

    def __init__(self, message: str, filename: Optional[str] = None) -> None:
        super().__init__(message)
        self.filename = filename


class DetectionUnavailable(PhotoIngestError):
    """Raised by detectors that cannot load or run; callers fall back."""


class UploadError(PhotoIngestError):
    """Raised when the asset store rejects or fails an upload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecordWriteError(PhotoIngestError):
    """Raised when a record write-back fails after a successful upload."""

    def __init__(self, message: str, record_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class BackgroundRemovalError(PhotoIngestError):
    """Raised when the remote background-removal capability fails."""
