"""Remote asset store client and Cloudinary URL helpers."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import time
from typing import Dict, List, Optional, Protocol

import requests

from photoingest.errors import ConfigError, UploadError
from photoingest.types import AssetRef, TransformOptions

LOGGER = logging.getLogger("photoingest.upload.assets")

CLOUDINARY_API = "https://api.cloudinary.com/v1_1"
CLOUDINARY_HOST = "cloudinary.com"
_UPLOAD_MARKER = "/upload/"
_VERSION_RE = re.compile(r"^v\d+/")
_TRANSFORM_SEGMENT_RE = re.compile(r"^[a-z]_")
_EXTENSION_RE = re.compile(r"\.[a-zA-Z0-9]+$")


class AssetStore(Protocol):
    def upload(
        self,
        content: bytes,
        content_type: str,
        destination: Dict[str, str],
        transform: TransformOptions,
    ) -> AssetRef:
        ...

    def delete(self, public_id: str) -> bool:
        ...


def sanitize_public_id(value: str) -> str:
    """Replace characters that break signing; collapse and trim underscores."""
    cleaned = re.sub(r"[^a-zA-Z0-9_\-/]", "_", value)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned.strip("_")


def eager_transformations(transform: TransformOptions) -> List[str]:
    steps: List[str] = []
    if transform.remove_background:
        steps.append("e_background_removal")
    if transform.auto_crop:
        width = transform.crop_width or 400
        height = transform.crop_height or 400
        gravity = transform.crop_gravity or "face"
        steps.append(f"c_thumb,g_{gravity},w_{width},h_{height}")
    return steps


def sign_params(params: Dict[str, str], api_secret: str) -> str:
    """SHA-1 over the sorted ``key=value`` pairs joined by '&' plus the secret."""
    payload = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1((payload + api_secret).encode("utf-8")).hexdigest()


def _split_upload_url(url: Optional[str]):
    if not url or CLOUDINARY_HOST not in url:
        return None
    idx = url.find(_UPLOAD_MARKER)
    if idx == -1:
        return None
    cut = idx + len(_UPLOAD_MARKER)
    return url[:cut], url[cut:]


def _with_transforms(url: str, segments: List[str]) -> str:
    parts = _split_upload_url(url)
    if parts is None or not segments:
        return url
    head, tail = parts
    return f"{head}{'/'.join(segments)}/{tail}"


def thumbnail_url(url: str, size: int = 200) -> str:
    return _with_transforms(url, [f"c_fill,w_{size},h_{size},q_auto,f_auto"])


def optimized_url(
    url: str,
    width: Optional[int] = None,
    height: Optional[int] = None,
    crop: Optional[str] = None,
) -> str:
    transforms = ["q_auto", "f_auto"]
    if width:
        transforms.append(f"w_{width}")
    if height:
        transforms.append(f"h_{height}")
    if crop:
        transforms.append(f"c_{crop}")
    return _with_transforms(url, [",".join(transforms)])


def processed_photo_url(url: str, transform: TransformOptions) -> str:
    """Delivery URL applying background removal and/or face crop on the fly."""
    return _with_transforms(url, eager_transformations(transform) + ["q_auto", "f_auto"])


def _is_transform(segment: str) -> bool:
    return all(_TRANSFORM_SEGMENT_RE.match(piece) for piece in segment.split(","))


def extract_public_id_from_url(url: Optional[str]) -> Optional[str]:
    """Recover the public id (folder path, no version/transforms/extension)."""
    parts = _split_upload_url(url)
    if parts is None:
        return None
    tail = parts[1].split("?", 1)[0]
    segments = [segment for segment in tail.split("/") if segment]
    while segments and _is_transform(segments[0]):
        segments.pop(0)
    if segments and _VERSION_RE.match(segments[0] + "/"):
        segments.pop(0)
    if not segments:
        return None
    segments[-1] = _EXTENSION_RE.sub("", segments[-1])
    path = "/".join(segment for segment in segments if segment)
    return path or None


class CloudinaryAssetStore:
    """Signed REST uploads/deletes against Cloudinary."""

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        resource_type: str = "image",
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not cloud_name or not api_key or not api_secret:
            raise ConfigError("Cloudinary not configured (cloud name, API key and secret are required)")
        self.cloud_name = cloud_name.strip()
        self.api_key = api_key.strip()
        self.api_secret = api_secret.strip()
        self.resource_type = resource_type
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls, **kwargs) -> "CloudinaryAssetStore":
        return cls(
            cloud_name=os.environ.get("CLOUDINARY_CLOUD_NAME", ""),
            api_key=os.environ.get("CLOUDINARY_API_KEY", ""),
            api_secret=os.environ.get("CLOUDINARY_API_SECRET", ""),
            **kwargs,
        )

    def _endpoint(self, action: str, resource_type: Optional[str] = None) -> str:
        return f"{CLOUDINARY_API}/{self.cloud_name}/{resource_type or self.resource_type}/{action}"

    def upload(
        self,
        content: bytes,
        content_type: str,
        destination: Dict[str, str],
        transform: TransformOptions = TransformOptions(),
    ) -> AssetRef:
        params: Dict[str, str] = {"timestamp": str(int(time.time()))}
        folder = destination.get("folder")
        if folder:
            params["folder"] = folder
        public_id = sanitize_public_id(destination.get("public_id", ""))
        if public_id:
            params["public_id"] = public_id
        eager = eager_transformations(transform)
        if eager:
            params["eager"] = "|".join(eager)
            params["eager_async"] = "true"

        data = dict(params)
        data["api_key"] = self.api_key
        data["signature"] = sign_params(params, self.api_secret)
        filename = destination.get("filename") or public_id or "upload"
        try:
            response = self.session.post(
                self._endpoint("upload"),
                data=data,
                files={"file": (filename, content, content_type)},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UploadError(f"Upload request failed: {exc}") from exc
        payload = _json_or_empty(response)
        if not response.ok:
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            raise UploadError(
                str(message or f"Upload failed with HTTP {response.status_code}"),
                status_code=response.status_code,
            )
        if not payload.get("secure_url") or not payload.get("public_id"):
            raise UploadError("Upload response missing secure_url/public_id", status_code=response.status_code)
        LOGGER.debug("Uploaded %s -> %s", filename, payload["public_id"])
        return AssetRef(
            url=payload["secure_url"],
            public_id=payload["public_id"],
            width=payload.get("width"),
            height=payload.get("height"),
            format=payload.get("format"),
        )

    def delete(self, public_id: str) -> bool:
        if not public_id:
            raise ValueError("public_id is required")
        params = {"public_id": public_id, "timestamp": str(int(time.time()))}
        data = dict(params)
        data["api_key"] = self.api_key
        data["signature"] = sign_params(params, self.api_secret)
        try:
            response = self.session.post(self._endpoint("destroy"), data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UploadError(f"Delete request failed: {exc}") from exc
        payload = _json_or_empty(response)
        if payload.get("result") != "ok":
            raise UploadError(f"Delete failed for {public_id}: {payload}", status_code=response.status_code)
        LOGGER.info("Deleted remote asset %s", public_id)
        return True


def _json_or_empty(response: requests.Response) -> Dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}
