"""Normalized-filename lookup index built from a batch of records."""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Iterator, Optional, Sequence, Tuple

from photoingest.types import Record

LOGGER = logging.getLogger("photoingest.matching.lookup")

DEFAULT_CANDIDATE_FIELDS: Tuple[str, ...] = (
    "profilePic",
    "ProfilePic",
    "profile_pic",
    "photo",
    "Photo",
    "image",
    "Image",
    "admNo",
    "AdmNo",
    "rollNo",
    "RollNo",
)

_EXTENSION_RE = re.compile(r"\.[^.]+$")


def normalize_filename(value: str) -> str:
    """Lowercase and trim; idempotent."""
    return str(value).lower().strip()


def strip_extension(token: str) -> str:
    """Drop a trailing ``.<ext>`` if present."""
    return _EXTENSION_RE.sub("", token)


def lookup_keys(value: str) -> Tuple[str, str]:
    """Return the raw normalized token and its extension-stripped form."""
    token = normalize_filename(value)
    return token, strip_extension(token)


class LookupIndex:
    """Read-only map from normalized filename token to record id."""

    def __init__(self, mapping: Optional[Dict[str, str]] = None) -> None:
        self._map: Dict[str, str] = dict(mapping or {})

    def get(self, token: str) -> Optional[str]:
        return self._map.get(token)

    def resolve(self, filename: str) -> Optional[str]:
        """Look up the raw normalized name, then the extension-stripped form."""
        raw, stripped = lookup_keys(filename)
        record_id = self._map.get(raw)
        if record_id is None and stripped:
            record_id = self._map.get(stripped)
        return record_id

    def as_dict(self) -> Dict[str, str]:
        return dict(self._map)

    def __contains__(self, token: object) -> bool:
        return token in self._map

    def __len__(self) -> int:
        return len(self._map)

    def __iter__(self) -> Iterator[str]:
        return iter(self._map)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LookupIndex):
            return NotImplemented
        return self._map == other._map


def first_identifying_value(record: Record, candidate_fields: Sequence[str]) -> Optional[str]:
    """Return the first non-empty candidate field value for a record."""
    for name in candidate_fields:
        value = record.field_value(name)
        if value.strip():
            return value
    return None


def build_lookup_index(
    records: Iterable[Record],
    candidate_fields: Sequence[str] = DEFAULT_CANDIDATE_FIELDS,
) -> LookupIndex:
    """Build the lookup index; the first record claiming a token keeps it."""
    mapping: Dict[str, str] = {}
    indexed = 0
    skipped = 0
    collisions = 0
    for record in records:
        value = first_identifying_value(record, candidate_fields)
        if value is None:
            skipped += 1
            continue
        indexed += 1
        for key in lookup_keys(value):
            if not key:
                continue
            existing = mapping.get(key)
            if existing is None:
                mapping[key] = record.id
            elif existing != record.id:
                collisions += 1
                LOGGER.debug(
                    "Lookup key %r already claimed by record %s; ignoring record %s",
                    key,
                    existing,
                    record.id,
                )
    if collisions:
        LOGGER.warning("Lookup index ignored %d duplicate key claims", collisions)
    LOGGER.info(
        "Built lookup index: %d keys from %d records (%d without identifying fields)",
        len(mapping),
        indexed,
        skipped,
    )
    return LookupIndex(mapping)
