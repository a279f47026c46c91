"""Remote background removal (remove.bg API)."""

from __future__ import annotations

import io
import logging
import os
from typing import Optional

import requests
from PIL import Image, UnidentifiedImageError

from photoingest.errors import BackgroundRemovalError, ConfigError

LOGGER = logging.getLogger("photoingest.upload.background")

REMOVE_BG_URL = "https://api.remove.bg/v1.0/removebg"
DEFAULT_MAX_DIMENSION = 1024


def downscale_to_jpeg(content: bytes, max_dimension: int = DEFAULT_MAX_DIMENSION, quality: int = 90) -> bytes:
    """Re-encode as JPEG, downscaling so neither side exceeds ``max_dimension``."""
    try:
        img = Image.open(io.BytesIO(content))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise BackgroundRemovalError(f"Cannot prepare image for background removal: {exc}") from exc
    width, height = img.size
    if width > max_dimension or height > max_dimension:
        scale = min(max_dimension / width, max_dimension / height)
        img = img.resize((max(1, int(width * scale)), max(1, int(height * scale))), Image.Resampling.LANCZOS)
    if img.mode != "RGB":
        img = img.convert("RGB")
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


class RemoveBgClient:
    """Sends one image to remove.bg and returns the transparent PNG bytes."""

    def __init__(
        self,
        api_key: str,
        url: str = REMOVE_BG_URL,
        timeout: float = 60.0,
        max_dimension: Optional[int] = DEFAULT_MAX_DIMENSION,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ConfigError("REMOVE_BG_API_KEY is required for background removal")
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self.max_dimension = max_dimension
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls, **kwargs) -> Optional["RemoveBgClient"]:
        api_key = os.environ.get("REMOVE_BG_API_KEY", "")
        if not api_key:
            return None
        return cls(api_key=api_key, **kwargs)

    def remove(self, content: bytes) -> bytes:
        payload = content
        if self.max_dimension is not None:
            payload = downscale_to_jpeg(content, self.max_dimension)
        try:
            response = self.session.post(
                self.url,
                headers={"X-Api-Key": self.api_key},
                files={"image_file": ("image.jpg", payload, "image/jpeg")},
                data={"size": "auto"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise BackgroundRemovalError(f"remove.bg request failed: {exc}") from exc
        if not response.ok:
            LOGGER.debug("remove.bg error body: %s", response.text[:500])
            raise BackgroundRemovalError(f"remove.bg failed with HTTP {response.status_code}")
        return response.content
