"""ZIP archive extraction and direct file selection."""

from __future__ import annotations

import io
import logging
import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Union

from photoingest.errors import ArchiveError
from photoingest.io_utils import content_type_for, is_supported_image, iter_existing
from photoingest.types import MediaItem, iter_batches

LOGGER = logging.getLogger("photoingest.extract")

DEFAULT_EXTRACT_BATCH_SIZE = 500
DEFAULT_SYSTEM_PREFIXES = ("__MACOSX",)

ArchiveSource = Union[str, Path, bytes, bytearray, BinaryIO]


def _is_system_entry(name: str, prefixes: Sequence[str]) -> bool:
    normalized = name.replace("\\", "/").lstrip("/")
    return any(normalized == prefix or normalized.startswith(prefix + "/") for prefix in prefixes)


class ZipPhotoArchive:
    """Lazily extracts supported images from a ZIP container in fixed-size batches.

    The container is opened and its directory listing validated on construction,
    so a corrupt archive fails with :class:`ArchiveError` before any item is
    produced. Each call to :meth:`iter_batches` restarts from the first entry.
    """

    def __init__(
        self,
        source: ArchiveSource,
        batch_size: int = DEFAULT_EXTRACT_BATCH_SIZE,
        system_prefixes: Sequence[str] = DEFAULT_SYSTEM_PREFIXES,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.system_prefixes = tuple(system_prefixes)
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(bytes(source))
        self._label = str(source) if isinstance(source, (str, Path)) else "<stream>"
        try:
            self._zip = zipfile.ZipFile(source, "r")
            infos = self._zip.infolist()
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as exc:
            raise ArchiveError(f"Unable to open archive {self._label}: {exc}") from exc
        self._entries: List[zipfile.ZipInfo] = [info for info in infos if self._accept(info)]
        skipped = len(infos) - len(self._entries)
        LOGGER.info(
            "Opened archive %s: %d image entries (%d skipped)",
            self._label,
            len(self._entries),
            skipped,
        )

    def _accept(self, info: zipfile.ZipInfo) -> bool:
        if info.is_dir():
            return False
        if _is_system_entry(info.filename, self.system_prefixes):
            return False
        return is_supported_image(info.filename)

    @property
    def entry_names(self) -> List[str]:
        return [info.filename for info in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def _read(self, info: zipfile.ZipInfo) -> MediaItem:
        content = self._zip.read(info)
        return MediaItem(
            filename=info.filename,
            content=content,
            content_type=content_type_for(info.filename),
        )

    def iter_batches(self) -> Iterator[List[MediaItem]]:
        """Yield fully decoded batches; a decode failure aborts the whole iteration."""
        for batch_idx, infos in enumerate(iter_batches(self._entries, self.batch_size)):
            try:
                items = [self._read(info) for info in infos]
            except (zipfile.BadZipFile, zlib.error, OSError, EOFError, NotImplementedError, RuntimeError) as exc:
                raise ArchiveError(
                    f"Failed to decode batch {batch_idx} of archive {self._label}: {exc}"
                ) from exc
            LOGGER.debug("Extracted batch %d (%d items)", batch_idx, len(items))
            yield items

    def __iter__(self) -> Iterator[MediaItem]:
        for batch in self.iter_batches():
            yield from batch

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "ZipPhotoArchive":
        return self

    def __exit__(self, *_exc) -> None:
        self.close()


def extract_archive(
    source: ArchiveSource,
    batch_size: int = DEFAULT_EXTRACT_BATCH_SIZE,
    system_prefixes: Sequence[str] = DEFAULT_SYSTEM_PREFIXES,
) -> List[MediaItem]:
    """Eagerly extract every supported image from an archive."""
    with ZipPhotoArchive(source, batch_size=batch_size, system_prefixes=system_prefixes) as archive:
        return list(archive)


def iter_selected_files(paths: Iterable[Union[str, Path]]) -> Iterator[MediaItem]:
    """Yield media items straight from selected files; no batching needed."""
    for path in iter_existing(Path(p) for p in paths):
        yield MediaItem(
            filename=path.name,
            content=path.read_bytes(),
            content_type=content_type_for(path.name),
        )


def media_from_handles(handles: Iterable[BinaryIO], names: Optional[Sequence[str]] = None) -> Iterator[MediaItem]:
    """Yield media items from already-open binary handles."""
    for idx, handle in enumerate(handles):
        if names is not None:
            name = names[idx]
        else:
            name = Path(getattr(handle, "name", f"upload_{idx}")).name
        yield MediaItem(filename=name, content=handle.read(), content_type=content_type_for(name))
