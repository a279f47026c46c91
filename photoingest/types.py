"""Common dataclasses and type aliases used across the photoingest package."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Tuple

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]

DEFAULT_CONTENT_TYPE = "image/jpeg"


@dataclass
class Record:
    """A data-entry unit (e.g. one student) that may receive a photo."""

    id: str
    fields: Dict[str, str] = field(default_factory=dict)
    photo_url: Optional[str] = None
    photo_public_id: Optional[str] = None

    def field_value(self, name: str) -> str:
        value = self.fields.get(name)
        if value is None:
            return ""
        return str(value)


@dataclass
class MediaItem:
    """One extracted or selected photo; transient, never persisted."""

    filename: str
    content: bytes
    content_type: str = DEFAULT_CONTENT_TYPE

    @property
    def basename(self) -> str:
        # Archive names always use forward slashes; selected files may not.
        name = self.filename.replace("\\", "/")
        return PurePosixPath(name).name or self.filename

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class Match:
    item: MediaItem
    record_id: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.record_id is not None


@dataclass
class Detection:
    """Generic detection returned by detectors."""

    label: str
    score: float
    bbox: BBox

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]

    @property
    def center(self) -> Tuple[float, float]:
        x1, y1, x2, y2 = self.bbox
        return (x1 + x2) / 2.0, (y1 + y2) / 2.0

    def scaled(self, factor: float) -> "Detection":
        """Return a copy with the box divided by ``factor``."""
        if factor <= 0:
            raise ValueError("scale factor must be positive")
        x1, y1, x2, y2 = self.bbox
        return Detection(
            label=self.label,
            score=self.score,
            bbox=(x1 / factor, y1 / factor, x2 / factor, y2 / factor),
        )


@dataclass
class CropRegion:
    """Crop rectangle in original-image pixel space plus its output target."""

    x: float
    y: float
    width: float
    height: float
    output_width: int
    output_height: int
    profile: str
    method: str = "fallback"  # "detection" or "fallback"
    head_ratio: Optional[float] = None

    @property
    def aspect_ratio(self) -> float:
        if self.height <= 0:
            return 0.0
        return self.width / self.height

    def as_box(self) -> BBox:
        return self.x, self.y, self.x + self.width, self.y + self.height

    def within(self, image_width: float, image_height: float, eps: float = 1e-6) -> bool:
        return (
            self.x >= -eps
            and self.y >= -eps
            and self.x + self.width <= image_width + eps
            and self.y + self.height <= image_height + eps
        )


@dataclass
class AssetRef:
    """Reference returned by the asset store for an uploaded blob."""

    url: str
    public_id: str
    width: Optional[int] = None
    height: Optional[int] = None
    format: Optional[str] = None


@dataclass(frozen=True)
class TransformOptions:
    """Transformations the asset store applies remotely on upload."""

    remove_background: bool = False
    auto_crop: bool = False
    crop_width: int = 400
    crop_height: int = 400
    crop_gravity: str = "face"

    @property
    def empty(self) -> bool:
        return not (self.remove_background or self.auto_crop)


@dataclass(frozen=True)
class IngestOptions:
    """Per-run switches, passed once into the entry point."""

    fast_mode: bool = False
    remove_background: bool = False
    auto_crop: bool = False
    crop_width: int = 400
    crop_height: int = 400
    crop_gravity: str = "face"
    skip_unmatched: bool = False

    def transform_options(self) -> TransformOptions:
        return TransformOptions(
            remove_background=self.remove_background,
            auto_crop=self.auto_crop,
            crop_width=self.crop_width,
            crop_height=self.crop_height,
            crop_gravity=self.crop_gravity,
        )


@dataclass
class UploadOutcome:
    item: MediaItem
    success: bool
    record_id: Optional[str] = None
    remote_url: Optional[str] = None
    remote_public_id: Optional[str] = None
    written_back: bool = False
    error: Optional[str] = None


@dataclass
class ItemFailure:
    """Per-item failure surfaced on the final report."""

    filename: str
    kind: str  # ImageLoadError, UploadError, RecordWriteError
    message: str
    record_id: Optional[str] = None
    remote_public_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "filename": self.filename,
            "kind": self.kind,
            "message": self.message,
            "record_id": self.record_id,
            "remote_public_id": self.remote_public_id,
        }


def iter_batches(iterable: Iterable, batch_size: int) -> Iterable[List]:
    """Yield successive batches from an iterable."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    batch: List = []
    for item in iterable:
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch
