"""Output profiles for face-aware cropping."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from photoingest.errors import ConfigError

PASSPORT = "passport"
SQUARE = "square"


@dataclass(frozen=True)
class CropProfile:
    """Target output size plus subject-fill constraints."""

    name: str
    output_width: int
    output_height: int
    kind: str = PASSPORT
    aspect: Optional[float] = None
    head_ratio_target: float = 0.75
    head_ratio_min: float = 0.711
    head_ratio_max: float = 0.80
    square_height_margin: float = 1.4
    fallback_fraction: float = 0.9
    use_detection: bool = True

    def __post_init__(self) -> None:
        if self.output_width <= 0 or self.output_height <= 0:
            raise ConfigError(f"Profile {self.name}: output size must be positive")
        if self.kind not in (PASSPORT, SQUARE):
            raise ConfigError(f"Profile {self.name}: unknown kind {self.kind!r}")
        if self.kind == SQUARE and self.output_width != self.output_height:
            raise ConfigError(f"Profile {self.name}: square profiles need equal output sides")
        if not 0 < self.head_ratio_min <= self.head_ratio_target <= self.head_ratio_max <= 1:
            raise ConfigError(f"Profile {self.name}: head ratio band is inconsistent")

    @property
    def aspect_ratio(self) -> float:
        if self.kind == SQUARE:
            return 1.0
        if self.aspect is not None:
            return float(self.aspect)
        return self.output_width / self.output_height


# 35mm x 45mm at 300 DPI
PASSPORT_PROFILE = CropProfile(name=PASSPORT, output_width=413, output_height=531, aspect=35 / 45)
SQUARE_PROFILE = CropProfile(name=SQUARE, output_width=400, output_height=400, kind=SQUARE)


def profile_for_options(width: int, height: int, gravity: str = "face") -> CropProfile:
    """Build a profile from upload crop options.

    Equal sides give the square, generous-margin profile; anything else is a
    fixed-aspect passport-style profile. ``center`` gravity skips detection.
    """
    use_detection = gravity != "center"
    if width == height:
        return CropProfile(
            name=SQUARE,
            output_width=width,
            output_height=height,
            kind=SQUARE,
            use_detection=use_detection,
        )
    return CropProfile(
        name=PASSPORT,
        output_width=width,
        output_height=height,
        use_detection=use_detection,
    )
