"""Face-aware crop computation and rendering."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from photoingest.cropping.profiles import PASSPORT_PROFILE, SQUARE, CropProfile
from photoingest.errors import DetectionUnavailable, ImageLoadError
from photoingest.types import CropRegion, Detection

LOGGER = logging.getLogger("photoingest.cropping")

MAX_DETECTION_DIMENSION = 1024
PERSON_LABEL = "person"
PERSON_CONFIDENCE = 0.5
_RATIO_EPS = 1e-6


class SubjectDetector(Protocol):
    def detect(self, image: np.ndarray) -> List[Detection]:
        ...


@dataclass
class CropResult:
    region: CropRegion
    image: Image.Image

    def to_bytes(self, fmt: str = "PNG") -> bytes:
        buffer = io.BytesIO()
        image = self.image
        if fmt.upper() in {"JPEG", "JPG"} and image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.save(buffer, format=fmt)
        return buffer.getvalue()


def _clamp(value: float, low: float, high: float) -> float:
    if high < low:
        return low
    return max(low, min(value, high))


def load_image(content: bytes, filename: Optional[str] = None) -> Image.Image:
    """Decode image bytes, honoring EXIF orientation."""
    try:
        image = Image.open(io.BytesIO(content))
        image.load()
        image = ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageLoadError(f"Unable to decode image {filename or '<bytes>'}: {exc}", filename=filename) from exc
    if image.width <= 0 or image.height <= 0:
        raise ImageLoadError(f"Image {filename or '<bytes>'} has no pixels", filename=filename)
    return image


def detection_input(image: Image.Image, max_dimension: int = MAX_DETECTION_DIMENSION) -> Tuple[np.ndarray, float]:
    """Return a BGR array for inference (downscaled if needed) and the scale factor."""
    rgb = np.asarray(image.convert("RGB"))
    height, width = rgb.shape[:2]
    scale = 1.0
    if width > max_dimension or height > max_dimension:
        scale = max_dimension / float(max(width, height))
        target = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
        rgb = cv2.resize(rgb, target, interpolation=cv2.INTER_AREA)
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR), scale


def select_subject(
    detections: List[Detection],
    label: str = PERSON_LABEL,
    min_confidence: float = PERSON_CONFIDENCE,
) -> Optional[Detection]:
    """Pick the highest-confidence detection of the subject class."""
    candidates = [
        det
        for det in detections
        if label in str(det.label).lower() and det.score > min_confidence
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda det: det.score)


def passport_region(
    image_width: float,
    image_height: float,
    detection: Detection,
    profile: CropProfile = PASSPORT_PROFILE,
) -> Optional[CropRegion]:
    """Fixed-aspect crop where the subject fills the target share of the height.

    Returns None when clamping to the image pushes the visible subject height
    outside the profile's acceptable band.
    """
    x1, y1, x2, y2 = detection.bbox
    box_height = y2 - y1
    if box_height <= 0 or x2 <= x1:
        return None
    aspect = profile.aspect_ratio
    crop_h = box_height / profile.head_ratio_target
    crop_w = crop_h * aspect
    shrink = min(1.0, image_width / crop_w, image_height / crop_h)
    crop_w = min(crop_w * shrink, float(image_width))
    crop_h = min(crop_h * shrink, float(image_height))

    cx, cy = detection.center
    x = _clamp(cx - crop_w / 2.0, 0.0, image_width - crop_w)
    y = _clamp(cy - crop_h / 2.0, 0.0, image_height - crop_h)

    visible = max(0.0, min(y2, y + crop_h) - max(y1, y))
    ratio = visible / crop_h
    if ratio < profile.head_ratio_min - _RATIO_EPS or ratio > profile.head_ratio_max + _RATIO_EPS:
        LOGGER.debug(
            "Rejected %s crop: head ratio %.3f outside [%.3f, %.3f]",
            profile.name,
            ratio,
            profile.head_ratio_min,
            profile.head_ratio_max,
        )
        return None
    return CropRegion(
        x=x,
        y=y,
        width=crop_w,
        height=crop_h,
        output_width=profile.output_width,
        output_height=profile.output_height,
        profile=profile.name,
        method="detection",
        head_ratio=ratio,
    )


def square_region(
    image_width: float,
    image_height: float,
    detection: Detection,
    profile: CropProfile,
) -> Optional[CropRegion]:
    """Square crop with a generous margin around the subject."""
    if detection.width <= 0 or detection.height <= 0:
        return None
    side = max(detection.width, detection.height * profile.square_height_margin)
    side = min(side, float(image_width), float(image_height))
    cx, cy = detection.center
    x = _clamp(cx - side / 2.0, 0.0, image_width - side)
    y = _clamp(cy - side / 2.0, 0.0, image_height - side)
    return CropRegion(
        x=x,
        y=y,
        width=side,
        height=side,
        output_width=profile.output_width,
        output_height=profile.output_height,
        profile=profile.name,
        method="detection",
    )


def fallback_region(image_width: float, image_height: float, profile: CropProfile) -> CropRegion:
    """Centered crop at a fixed share of the limiting dimension."""
    aspect = profile.aspect_ratio
    fraction = profile.fallback_fraction
    if image_width / image_height > aspect:
        crop_h = image_height * fraction
        crop_w = crop_h * aspect
    else:
        crop_w = image_width * fraction
        crop_h = crop_w / aspect
    return CropRegion(
        x=(image_width - crop_w) / 2.0,
        y=(image_height - crop_h) / 2.0,
        width=crop_w,
        height=crop_h,
        output_width=profile.output_width,
        output_height=profile.output_height,
        profile=profile.name,
        method="fallback",
    )


def render_region(image: Image.Image, region: CropRegion) -> Image.Image:
    """Draw the region from the full-resolution image onto the output canvas."""
    if image.mode in ("RGBA", "LA", "P", "PA") or "transparency" in image.info:
        source = image.convert("RGBA")
    elif image.mode != "RGB":
        source = image.convert("RGB")
    else:
        source = image
    return source.resize(
        (region.output_width, region.output_height),
        resample=Image.Resampling.LANCZOS,
        box=region.as_box(),
    )


class FaceAwareCropper:
    """Locates the subject with an optional detector and crops to a profile."""

    def __init__(
        self,
        detector: Optional[SubjectDetector] = None,
        max_detection_dimension: int = MAX_DETECTION_DIMENSION,
        subject_label: str = PERSON_LABEL,
        min_confidence: float = PERSON_CONFIDENCE,
    ) -> None:
        self.detector = detector
        self.max_detection_dimension = max_detection_dimension
        self.subject_label = subject_label
        self.min_confidence = min_confidence
        if detector is None:
            LOGGER.info("No subject detector configured; all crops use the centered fallback")

    def detect_subject(self, image: Image.Image) -> Optional[Detection]:
        """Return the chosen subject in original-image pixel space, if any."""
        if self.detector is None:
            return None
        array, scale = detection_input(image, self.max_detection_dimension)
        try:
            detections = self.detector.detect(array)
        except DetectionUnavailable as exc:
            LOGGER.warning("Detection unavailable (%s); using fallback crop", exc)
            return None
        except Exception as exc:
            LOGGER.warning("Detector failed (%s: %s); using fallback crop", type(exc).__name__, exc)
            LOGGER.debug("Detector failure stack trace", exc_info=True)
            return None
        subject = select_subject(detections, self.subject_label, self.min_confidence)
        if subject is None:
            LOGGER.debug("No qualifying %s detection among %d results", self.subject_label, len(detections))
            return None
        return subject.scaled(scale) if scale != 1.0 else subject

    def compute_region(
        self,
        image_size: Tuple[int, int],
        profile: CropProfile,
        subject: Optional[Detection],
    ) -> CropRegion:
        width, height = image_size
        region: Optional[CropRegion] = None
        if subject is not None:
            if profile.kind == SQUARE:
                region = square_region(width, height, subject, profile)
            else:
                region = passport_region(width, height, subject, profile)
        if region is None:
            region = fallback_region(width, height, profile)
        return region

    def crop_image(self, image: Image.Image, profile: CropProfile = PASSPORT_PROFILE) -> CropResult:
        subject = self.detect_subject(image) if profile.use_detection else None
        region = self.compute_region(image.size, profile, subject)
        LOGGER.debug(
            "Crop %s via %s: (%.1f, %.1f, %.1f, %.1f) from %dx%d",
            profile.name,
            region.method,
            region.x,
            region.y,
            region.width,
            region.height,
            image.width,
            image.height,
        )
        return CropResult(region=region, image=render_region(image, region))

    def crop(self, content: bytes, profile: CropProfile = PASSPORT_PROFILE, filename: Optional[str] = None) -> CropResult:
        """Decode, crop and render one image; raises ImageLoadError on bad bytes."""
        return self.crop_image(load_image(content, filename), profile)
