import io

import pytest
from PIL import Image

from photoingest.cropping.cropper import FaceAwareCropper, fallback_region, passport_region, select_subject
from photoingest.cropping.profiles import PASSPORT_PROFILE, SQUARE_PROFILE, profile_for_options
from photoingest.errors import ConfigError, DetectionUnavailable, ImageLoadError
from photoingest.types import Detection


class _StaticDetector:
    def __init__(self, detections):
        self.detections = detections
        self.shapes = []

    def detect(self, image):
        self.shapes.append(image.shape)
        return list(self.detections)


class _BrokenDetector:
    def detect(self, image):
        raise DetectionUnavailable("model offline")


class _UnreachableDetector:
    def detect(self, image):
        raise ConnectionError("detection service unreachable")


def _png_bytes(width, height, mode="RGB"):
    color = (200, 180, 160, 0) if mode == "RGBA" else (200, 180, 160)
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def _person(bbox, score=0.9):
    return Detection(label="person", score=score, bbox=bbox)


def test_passport_crop_centers_subject_at_target_fill():
    cropper = FaceAwareCropper(detector=_StaticDetector([_person((400, 300, 600, 700))]))

    result = cropper.crop(_png_bytes(1000, 1000), PASSPORT_PROFILE)

    region = result.region
    assert region.method == "detection"
    assert region.head_ratio == pytest.approx(0.75)
    assert region.aspect_ratio == pytest.approx(35 / 45, rel=0.01)
    assert region.within(1000, 1000)
    assert region.x == pytest.approx(500 - region.width / 2)
    assert result.image.size == (413, 531)


def test_width_limited_crop_outside_fill_band_falls_back():
    cropper = FaceAwareCropper(detector=_StaticDetector([_person((50, 500, 250, 1500))]))

    region = cropper.crop(_png_bytes(300, 2000), PASSPORT_PROFILE).region

    assert region.method == "fallback"
    assert region.width == pytest.approx(270)
    assert region.height == pytest.approx(270 * 45 / 35)
    assert region.x == pytest.approx(15)
    assert region.y == pytest.approx((2000 - region.height) / 2)


def test_clamped_subject_below_fill_band_is_rejected():
    subject = _person((400, -80, 600, 320))
    cropper = FaceAwareCropper(detector=_StaticDetector([subject]))

    region = cropper.crop(_png_bytes(1000, 1000), PASSPORT_PROFILE).region

    assert passport_region(1000, 1000, subject, PASSPORT_PROFILE) is None
    assert region.method == "fallback"
    assert region.aspect_ratio == pytest.approx(35 / 45, rel=0.01)
    assert region.within(1000, 1000)


def test_fallback_uses_ninety_percent_of_limiting_dimension():
    region = fallback_region(1000, 1000, PASSPORT_PROFILE)

    assert (region.x, region.y) == pytest.approx((150, 50))
    assert (region.width, region.height) == pytest.approx((700, 900))


def test_square_crop_keeps_margin_around_subject():
    cropper = FaceAwareCropper(detector=_StaticDetector([_person((350, 200, 450, 400))]))

    result = cropper.crop(_png_bytes(800, 600), SQUARE_PROFILE)

    region = result.region
    assert region.method == "detection"
    assert (region.x, region.y, region.width, region.height) == pytest.approx((260, 160, 280, 280))
    assert result.image.size == (400, 400)


def test_large_images_are_downscaled_for_detection_and_box_rescaled():
    detector = _StaticDetector([_person((400, 100, 600, 500))])
    cropper = FaceAwareCropper(detector=detector)

    region = cropper.crop(_png_bytes(2048, 1024), PASSPORT_PROFILE).region

    assert detector.shapes == [(512, 1024, 3)]
    assert region.method == "detection"
    assert region.height == pytest.approx(1024)
    assert region.y == pytest.approx(0)
    assert region.head_ratio == pytest.approx(800 / 1024)
    assert region.x + region.width / 2 == pytest.approx(1000)
    assert region.within(2048, 1024)


def test_low_confidence_and_non_person_detections_are_ignored():
    detections = [_person((10, 10, 50, 90), score=0.4), Detection("dog", 0.99, (0, 0, 100, 100))]

    assert select_subject(detections) is None
    assert select_subject(detections + [_person((5, 5, 20, 40), score=0.7)]).score == 0.7

    cropper = FaceAwareCropper(detector=_StaticDetector(detections))
    assert cropper.crop(_png_bytes(400, 400), PASSPORT_PROFILE).region.method == "fallback"


def test_unavailable_detector_falls_back():
    cropper = FaceAwareCropper(detector=_BrokenDetector())

    region = cropper.crop(_png_bytes(640, 480), PASSPORT_PROFILE).region

    assert region.method == "fallback"
    assert region.within(640, 480)


def test_unexpected_detector_error_falls_back():
    cropper = FaceAwareCropper(detector=_UnreachableDetector())

    result = cropper.crop(_png_bytes(640, 480), PASSPORT_PROFILE, "101.jpg")

    assert result.region.method == "fallback"
    assert result.image.size == (413, 531)


def test_center_gravity_skips_detection():
    detector = _StaticDetector([_person((100, 100, 200, 300))])
    cropper = FaceAwareCropper(detector=detector)

    result = cropper.crop(_png_bytes(600, 600), profile_for_options(300, 300, gravity="center"))

    assert detector.shapes == []
    assert result.region.method == "fallback"
    assert result.image.size == (300, 300)


def test_undecodable_bytes_raise_image_load_error():
    with pytest.raises(ImageLoadError):
        FaceAwareCropper().crop(b"not an image", PASSPORT_PROFILE, "broken.jpg")


def test_transparency_is_preserved():
    result = FaceAwareCropper().crop(_png_bytes(300, 300, mode="RGBA"), SQUARE_PROFILE)

    assert result.image.mode == "RGBA"
    decoded = Image.open(io.BytesIO(result.to_bytes("PNG")))
    assert decoded.mode == "RGBA"


def test_invalid_profile_is_rejected():
    with pytest.raises(ConfigError):
        profile_for_options(0, 400)
