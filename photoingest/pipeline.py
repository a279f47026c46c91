"""Ingest pipeline orchestration: extract, match, crop, upload, write back."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from photoingest.cropping.cropper import MAX_DETECTION_DIMENSION, PERSON_CONFIDENCE, FaceAwareCropper
from photoingest.detectors.person_yolo import DEFAULT_WEIGHTS, load_person_detector
from photoingest.errors import ConfigError
from photoingest.extract.archive import (
    DEFAULT_EXTRACT_BATCH_SIZE,
    DEFAULT_SYSTEM_PREFIXES,
    ArchiveSource,
    ZipPhotoArchive,
    iter_selected_files,
)
from photoingest.io_utils import list_images
from photoingest.matching.lookup import DEFAULT_CANDIDATE_FIELDS, LookupIndex, build_lookup_index
from photoingest.matching.matcher import match_batch
from photoingest.reporting import IngestReport, ProgressObserver, ProgressReporter
from photoingest.types import IngestOptions, Match, MediaItem, Record
from photoingest.upload.assets import AssetStore
from photoingest.upload.coordinator import DEFAULT_FOLDER, DEFAULT_UPLOAD_BATCH_SIZE, UploadCoordinator
from photoingest.upload.records import RecordStore

LOGGER = logging.getLogger("photoingest.pipeline")

IngestSource = Union[ArchiveSource, Sequence[Union[str, Path]]]


@dataclass
class IngestConfig:
    extract_batch_size: int = DEFAULT_EXTRACT_BATCH_SIZE
    yield_every_batches: int = 2
    upload_batch_size: int = DEFAULT_UPLOAD_BATCH_SIZE
    candidate_fields: Tuple[str, ...] = DEFAULT_CANDIDATE_FIELDS
    system_prefixes: Tuple[str, ...] = DEFAULT_SYSTEM_PREFIXES
    destination_folder: str = DEFAULT_FOLDER
    project_id: Optional[str] = None
    detection_max_dimension: int = MAX_DETECTION_DIMENSION
    person_confidence: float = PERSON_CONFIDENCE
    detector_weights: Optional[str] = DEFAULT_WEIGHTS
    detector_device: Optional[str] = None
    local_crop: bool = True

    def __post_init__(self) -> None:
        for name in ("extract_batch_size", "yield_every_batches", "upload_batch_size"):
            if int(getattr(self, name)) < 1:
                raise ConfigError(f"{name} must be >= 1")
        self.candidate_fields = tuple(self.candidate_fields)
        self.system_prefixes = tuple(self.system_prefixes)

    @property
    def folder(self) -> str:
        if self.project_id:
            return f"{self.destination_folder}/{self.project_id}"
        return self.destination_folder

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "IngestConfig":
        """Build from a YAML mapping; unknown keys are ignored with a warning."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known:
                LOGGER.warning("Ignoring unknown ingest config key %r", key)
                continue
            kwargs[key] = value
        return cls(**kwargs)


@dataclass
class MatchResult:
    matches: List[Match] = field(default_factory=list)
    cancelled: bool = False


def _is_file_selection(source: IngestSource) -> bool:
    return isinstance(source, (list, tuple))


def _resolve_source(source: IngestSource) -> IngestSource:
    if isinstance(source, (str, Path)) and Path(source).is_dir():
        return list_images(Path(source))
    return source


def build_cropper(config: IngestConfig) -> FaceAwareCropper:
    detector = load_person_detector(config.detector_weights, device=config.detector_device)
    return FaceAwareCropper(
        detector=detector,
        max_detection_dimension=config.detection_max_dimension,
        min_confidence=config.person_confidence,
    )


async def collect_matches_async(
    source: IngestSource,
    index: Optional[LookupIndex],
    options: IngestOptions,
    config: IngestConfig,
    reporter: ProgressReporter,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> MatchResult:
    """Extract and match every item, yielding to the event loop between batches."""
    result = MatchResult()
    source = _resolve_source(source)
    if _is_file_selection(source):
        items: List[MediaItem] = list(iter_selected_files(source))  # type: ignore[arg-type]
        reporter.reset(len(items))
        batch = match_batch(items, index, fast_mode=options.fast_mode)
        result.matches.extend(batch)
        matched = sum(1 for m in batch if m.matched)
        reporter.record_batch(matched, len(batch) - matched)
        return result

    with ZipPhotoArchive(
        source,  # type: ignore[arg-type]
        batch_size=config.extract_batch_size,
        system_prefixes=config.system_prefixes,
    ) as archive:
        reporter.reset(len(archive))
        for batch_idx, items in enumerate(archive.iter_batches()):
            batch = match_batch(items, index, fast_mode=options.fast_mode)
            result.matches.extend(batch)
            matched = sum(1 for m in batch if m.matched)
            reporter.record_batch(matched, len(batch) - matched)
            if (batch_idx + 1) % config.yield_every_batches == 0:
                await asyncio.sleep(0)
            if should_cancel is not None and should_cancel():
                LOGGER.info("Ingest cancelled after extraction batch %d", batch_idx)
                result.cancelled = True
                break
    return result


async def ingest_async(
    source: IngestSource,
    records: Iterable[Record],
    options: IngestOptions = IngestOptions(),
    *,
    asset_store: AssetStore,
    record_store: Optional[RecordStore],
    config: Optional[IngestConfig] = None,
    cropper: Optional[FaceAwareCropper] = None,
    background_remover: Optional[Any] = None,
    observers: Sequence[ProgressObserver] = (),
    should_cancel: Optional[Callable[[], bool]] = None,
) -> IngestReport:
    """Run one ingest; raises ArchiveError before any upload if the archive is unreadable."""
    config = config or IngestConfig()
    reporter = ProgressReporter(observers)
    index = None if options.fast_mode else build_lookup_index(records, config.candidate_fields)

    collected = await collect_matches_async(source, index, options, config, reporter, should_cancel)
    snap = reporter.snapshot
    LOGGER.info(
        "Processed %d photos in %.1fs (matched=%d, unmatched=%d, fast_mode=%s)",
        snap.processed,
        snap.elapsed_seconds,
        snap.matched,
        snap.unmatched,
        options.fast_mode,
    )
    if collected.cancelled:
        return IngestReport.from_snapshot(reporter.finish(), reporter, cancelled=True)

    to_upload = collected.matches
    skipped = 0
    if options.skip_unmatched and not options.fast_mode:
        to_upload = [m for m in collected.matches if m.matched]
        skipped = len(collected.matches) - len(to_upload)
        if skipped:
            LOGGER.info("Skipping %d unmatched photos", skipped)

    if cropper is None and options.auto_crop and config.local_crop:
        cropper = build_cropper(config)

    coordinator = UploadCoordinator(
        asset_store=asset_store,
        record_store=record_store,
        batch_size=config.upload_batch_size,
        cropper=cropper,
        background_remover=background_remover,
        reporter=reporter,
        folder=config.folder,
    )
    summary = await coordinator.run(to_upload, options, should_cancel=should_cancel)
    return IngestReport.from_snapshot(
        reporter.finish(),
        reporter,
        skipped=skipped,
        cancelled=summary.cancelled,
        failures=summary.failures,
        outcomes=summary.outcomes,
    )


def ingest(
    source: IngestSource,
    records: Iterable[Record],
    options: IngestOptions = IngestOptions(),
    **kwargs: Any,
) -> IngestReport:
    """Synchronous wrapper around :func:`ingest_async`."""
    return asyncio.run(ingest_async(source, records, options, **kwargs))
