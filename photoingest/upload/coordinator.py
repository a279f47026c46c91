"""Bounded-concurrency batch uploads with per-item record write-back."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from photoingest.cropping.cropper import FaceAwareCropper
from photoingest.cropping.profiles import profile_for_options
from photoingest.errors import BackgroundRemovalError, ImageLoadError, RecordWriteError, UploadError
from photoingest.io_utils import content_type_for
from photoingest.matching.lookup import strip_extension
from photoingest.reporting import ProgressReporter
from photoingest.types import (
    AssetRef,
    IngestOptions,
    ItemFailure,
    Match,
    TransformOptions,
    UploadOutcome,
    iter_batches,
)
from photoingest.upload.assets import AssetStore
from photoingest.upload.records import RecordStore

LOGGER = logging.getLogger("photoingest.upload")

DEFAULT_UPLOAD_BATCH_SIZE = 10
DEFAULT_FOLDER = "project-photos"


@dataclass
class UploadSummary:
    uploaded: int = 0
    failed: int = 0
    write_failed: int = 0
    elapsed_seconds: float = 0.0
    cancelled: bool = False
    outcomes: List[UploadOutcome] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)

    @property
    def throughput(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.uploaded / self.elapsed_seconds


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    """Await async collaborators directly; run blocking ones in a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    return await asyncio.to_thread(fn, *args)


class UploadCoordinator:
    """Uploads matched and unmatched items in sequential fixed-size batches.

    Every upload inside a batch is issued concurrently and the batch is joined
    before the next one starts, so at most ``batch_size`` uploads are in flight.
    Failures are recorded per item and never retried.
    """

    def __init__(
        self,
        asset_store: AssetStore,
        record_store: Optional[RecordStore],
        batch_size: int = DEFAULT_UPLOAD_BATCH_SIZE,
        cropper: Optional[FaceAwareCropper] = None,
        background_remover: Optional[Any] = None,
        reporter: Optional[ProgressReporter] = None,
        folder: str = DEFAULT_FOLDER,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.asset_store = asset_store
        self.record_store = record_store
        self.batch_size = batch_size
        self.cropper = cropper
        self.background_remover = background_remover
        self.reporter = reporter or ProgressReporter()
        self.folder = folder

    def destination_for(self, match: Match) -> Dict[str, str]:
        basename = match.item.basename
        return {
            "folder": self.folder,
            "public_id": strip_extension(basename),
            "filename": basename,
        }

    async def _prepare(
        self,
        match: Match,
        options: IngestOptions,
    ) -> Tuple[bytes, str, TransformOptions]:
        item = match.item
        content = item.content
        content_type = content_type_for(item.filename)
        transform = options.transform_options()

        if options.auto_crop and self.cropper is not None:
            profile = profile_for_options(options.crop_width, options.crop_height, options.crop_gravity)
            result = await asyncio.to_thread(self.cropper.crop, content, profile, item.filename)
            content = result.to_bytes("PNG")
            content_type = "image/png"
            transform = replace(transform, auto_crop=False)

        # Crop runs on the original bytes; the remover may downscale its output.
        if options.remove_background and self.background_remover is not None:
            try:
                content = await _call(self.background_remover.remove, content)
                content_type = "image/png"
                transform = replace(transform, remove_background=False)
            except BackgroundRemovalError as exc:
                LOGGER.warning(
                    "Background removal failed for %s (%s); uploading without it",
                    item.filename,
                    exc,
                )
        return content, content_type, transform

    async def _process(self, match: Match, options: IngestOptions) -> Tuple[UploadOutcome, Optional[ItemFailure]]:
        item = match.item
        outcome = UploadOutcome(item=item, success=False, record_id=match.record_id)
        try:
            content, content_type, transform = await self._prepare(match, options)
        except ImageLoadError as exc:
            outcome.error = str(exc)
            self.reporter.record_upload(success=False)
            return outcome, ItemFailure(item.filename, "ImageLoadError", str(exc), record_id=match.record_id)
        except Exception as exc:
            LOGGER.warning("Preparing %s failed: %s: %s", item.filename, type(exc).__name__, exc)
            LOGGER.debug("Preparation failure stack trace", exc_info=True)
            outcome.error = str(exc)
            self.reporter.record_upload(success=False)
            return outcome, ItemFailure(item.filename, type(exc).__name__, str(exc), record_id=match.record_id)

        try:
            ref: AssetRef = await _call(
                self.asset_store.upload,
                content,
                content_type,
                self.destination_for(match),
                transform,
            )
        except Exception as exc:
            LOGGER.warning("Upload failed for %s: %s", item.filename, exc)
            LOGGER.debug("Upload failure stack trace", exc_info=True)
            outcome.error = str(exc)
            self.reporter.record_upload(success=False)
            return outcome, ItemFailure(item.filename, UploadError.__name__, str(exc), record_id=match.record_id)

        outcome.success = True
        outcome.remote_url = ref.url
        outcome.remote_public_id = ref.public_id
        failure: Optional[ItemFailure] = None
        if match.record_id is not None and self.record_store is not None:
            try:
                await _call(self.record_store.update_photo_reference, match.record_id, ref.url, ref.public_id)
                outcome.written_back = True
            except Exception as exc:
                LOGGER.warning(
                    "Uploaded %s as %s but record %s write-back failed: %s",
                    item.filename,
                    ref.public_id,
                    match.record_id,
                    exc,
                )
                outcome.error = str(exc)
                failure = ItemFailure(
                    item.filename,
                    RecordWriteError.__name__,
                    str(exc),
                    record_id=match.record_id,
                    remote_public_id=ref.public_id,
                )
        self.reporter.record_upload(success=True, write_failed=failure is not None)
        return outcome, failure

    async def run(
        self,
        matches: Sequence[Match],
        options: IngestOptions = IngestOptions(),
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> UploadSummary:
        summary = UploadSummary()
        started = time.perf_counter()
        self.reporter.start_upload(len(matches))
        LOGGER.info(
            "Uploading %d items in batches of %d (remove_background=%s, auto_crop=%s)",
            len(matches),
            self.batch_size,
            options.remove_background,
            options.auto_crop,
        )
        for batch_idx, batch in enumerate(iter_batches(matches, self.batch_size)):
            if should_cancel is not None and should_cancel():
                LOGGER.info("Upload cancelled before batch %d", batch_idx)
                summary.cancelled = True
                break
            results = await asyncio.gather(*(self._process(match, options) for match in batch))
            for outcome, failure in results:
                summary.outcomes.append(outcome)
                if outcome.success:
                    summary.uploaded += 1
                else:
                    summary.failed += 1
                if failure is not None:
                    summary.failures.append(failure)
                    if failure.kind == RecordWriteError.__name__:
                        summary.write_failed += 1
        summary.elapsed_seconds = time.perf_counter() - started
        LOGGER.info(
            "Uploaded %d items in %.1fs (%.1f items/sec), %d failed, %d write-backs failed",
            summary.uploaded,
            summary.elapsed_seconds,
            summary.throughput,
            summary.failed,
            summary.write_failed,
        )
        return summary
