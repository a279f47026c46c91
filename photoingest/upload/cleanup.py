"""Delete remote photos linked to records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from photoingest.types import Record
from photoingest.upload.assets import AssetStore, extract_public_id_from_url

LOGGER = logging.getLogger("photoingest.upload.cleanup")

PHOTO_URL_FIELDS = ("photo_url", "original_photo_url", "cropped_photo_url")


@dataclass
class CleanupResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def collect_public_ids(records: Iterable[Record]) -> List[str]:
    """Public ids from each record's stored id and photo URLs, de-duplicated in order."""
    seen: List[str] = []
    for record in records:
        candidates = [record.photo_public_id]
        urls = [record.photo_url] + [record.fields.get(name) for name in PHOTO_URL_FIELDS]
        candidates.extend(extract_public_id_from_url(url) for url in urls if url)
        for public_id in candidates:
            if public_id and public_id not in seen:
                seen.append(public_id)
    return seen


def delete_record_photos(asset_store: AssetStore, records: Iterable[Record]) -> CleanupResult:
    """Delete every remote asset referenced by ``records``; failures are logged, not raised."""
    result = CleanupResult()
    for public_id in collect_public_ids(records):
        try:
            asset_store.delete(public_id)
        except Exception as exc:
            LOGGER.error("Failed to delete remote asset %s: %s", public_id, exc)
            result.failed.append(public_id)
            continue
        result.deleted.append(public_id)
    LOGGER.info("Deleted %d remote assets (%d failed)", len(result.deleted), len(result.failed))
    return result
