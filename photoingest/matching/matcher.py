"""Pair media items with record ids via the lookup index."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Optional

from photoingest.matching.lookup import LookupIndex
from photoingest.types import Match, MediaItem

LOGGER = logging.getLogger("photoingest.matching.matcher")


def match_item(item: MediaItem, index: Optional[LookupIndex], fast_mode: bool = False) -> Match:
    if fast_mode or index is None:
        return Match(item=item, record_id=None)
    return Match(item=item, record_id=index.resolve(item.basename))


def match_items(
    items: Iterable[MediaItem],
    index: Optional[LookupIndex],
    fast_mode: bool = False,
) -> Iterator[Match]:
    """Yield exactly one match per item; fast mode assigns no records."""
    for item in items:
        yield match_item(item, index, fast_mode=fast_mode)


def match_batch(
    batch: List[MediaItem],
    index: Optional[LookupIndex],
    fast_mode: bool = False,
) -> List[Match]:
    matches = [match_item(item, index, fast_mode=fast_mode) for item in batch]
    LOGGER.debug(
        "Matched batch of %d (%d matched)",
        len(matches),
        sum(1 for m in matches if m.matched),
    )
    return matches
