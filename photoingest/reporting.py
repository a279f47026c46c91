"""Running counters, observer notifications and the final ingest report."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from photoingest.types import ItemFailure, UploadOutcome

LOGGER = logging.getLogger("photoingest.reporting")

PHASE_IDLE = "idle"
PHASE_MATCHING = "matching"
PHASE_UPLOADING = "uploading"
PHASE_DONE = "done"


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of the counters pushed to observers."""

    phase: str = PHASE_IDLE
    total: int = 0
    processed: int = 0
    matched: int = 0
    unmatched: int = 0
    upload_total: int = 0
    uploaded: int = 0
    failed: int = 0
    write_failed: int = 0
    elapsed_seconds: float = 0.0

    @property
    def attempted(self) -> int:
        return self.uploaded + self.failed

    @property
    def percent_complete(self) -> float:
        if self.phase == PHASE_UPLOADING:
            if self.upload_total <= 0:
                return 100.0
            return 100.0 * self.attempted / self.upload_total
        if self.total <= 0:
            return 100.0 if self.phase == PHASE_DONE else 0.0
        return 100.0 * self.processed / self.total


ProgressObserver = Callable[[ProgressSnapshot], None]


class ProgressReporter:
    """Aggregates monotonically increasing counters for one run."""

    def __init__(self, observers: Sequence[ProgressObserver] = (), log_step_pct: float = 5.0) -> None:
        self._observers: List[ProgressObserver] = list(observers)
        self.log_step_pct = log_step_pct
        self._snapshot = ProgressSnapshot()
        self._started: Optional[float] = None
        self._upload_started: Optional[float] = None
        self._upload_elapsed = 0.0
        self._next_log_pct = log_step_pct

    def subscribe(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    @property
    def snapshot(self) -> ProgressSnapshot:
        return replace(self._snapshot, elapsed_seconds=self.elapsed_seconds)

    @property
    def elapsed_seconds(self) -> float:
        if self._started is None:
            return 0.0
        return time.perf_counter() - self._started

    @property
    def upload_elapsed_seconds(self) -> float:
        if self._upload_started is not None:
            return time.perf_counter() - self._upload_started
        return self._upload_elapsed

    @property
    def throughput(self) -> float:
        """Uploads per second over the upload phase."""
        elapsed = self.upload_elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self._snapshot.uploaded / elapsed

    def reset(self, total: int = 0) -> None:
        """Start a new run; all counters return to zero."""
        self._snapshot = ProgressSnapshot(phase=PHASE_MATCHING, total=total)
        self._started = time.perf_counter()
        self._upload_started = None
        self._upload_elapsed = 0.0
        self._next_log_pct = self.log_step_pct
        self._emit()

    def record_batch(self, matched: int, unmatched: int) -> None:
        snap = self._snapshot
        self._snapshot = replace(
            snap,
            processed=snap.processed + matched + unmatched,
            matched=snap.matched + matched,
            unmatched=snap.unmatched + unmatched,
        )
        self._emit()

    def start_upload(self, upload_total: int) -> None:
        self._snapshot = replace(self._snapshot, phase=PHASE_UPLOADING, upload_total=upload_total)
        self._upload_started = time.perf_counter()
        self._next_log_pct = self.log_step_pct
        self._emit()

    def record_upload(self, success: bool, write_failed: bool = False) -> None:
        snap = self._snapshot
        self._snapshot = replace(
            snap,
            uploaded=snap.uploaded + (1 if success else 0),
            failed=snap.failed + (0 if success else 1),
            write_failed=snap.write_failed + (1 if write_failed else 0),
        )
        self._emit()

    def finish(self) -> ProgressSnapshot:
        if self._upload_started is not None:
            self._upload_elapsed = time.perf_counter() - self._upload_started
            self._upload_started = None
        self._snapshot = replace(self._snapshot, phase=PHASE_DONE)
        self._emit()
        return self.snapshot

    def _emit(self) -> None:
        snap = self.snapshot
        self._log_progress(snap)
        for observer in self._observers:
            try:
                observer(snap)
            except Exception:  # pragma: no cover - observers must not break a run
                LOGGER.warning("Progress observer %r raised", observer, exc_info=True)

    def _log_progress(self, snap: ProgressSnapshot) -> None:
        if snap.phase not in (PHASE_MATCHING, PHASE_UPLOADING):
            return
        pct = snap.percent_complete
        if pct < self._next_log_pct:
            return
        if snap.phase == PHASE_MATCHING:
            LOGGER.info(
                "Matching progress %.1f%% (%d/%d processed, matched=%d, unmatched=%d)",
                pct,
                snap.processed,
                snap.total,
                snap.matched,
                snap.unmatched,
            )
        else:
            LOGGER.info(
                "Upload progress %.1f%% (%d/%d attempted, uploaded=%d, failed=%d)",
                pct,
                snap.attempted,
                snap.upload_total,
                snap.uploaded,
                snap.failed,
            )
        while self._next_log_pct <= pct:
            self._next_log_pct += self.log_step_pct


@dataclass
class IngestReport:
    """Final counters and per-item results of one run."""

    total: int = 0
    processed: int = 0
    matched: int = 0
    unmatched: int = 0
    uploaded: int = 0
    failed: int = 0
    write_failed: int = 0
    skipped: int = 0
    elapsed_seconds: float = 0.0
    upload_seconds: float = 0.0
    throughput: float = 0.0
    cancelled: bool = False
    failures: List[ItemFailure] = field(default_factory=list)
    outcomes: List[UploadOutcome] = field(default_factory=list)

    @property
    def percent_complete(self) -> float:
        if self.total <= 0:
            return 100.0
        return 100.0 * self.processed / self.total

    def failures_of(self, kind: str) -> List[ItemFailure]:
        return [failure for failure in self.failures if failure.kind == kind]

    @classmethod
    def from_snapshot(cls, snap: ProgressSnapshot, reporter: ProgressReporter, **kwargs) -> "IngestReport":
        return cls(
            total=snap.total,
            processed=snap.processed,
            matched=snap.matched,
            unmatched=snap.unmatched,
            uploaded=snap.uploaded,
            failed=snap.failed,
            write_failed=snap.write_failed,
            elapsed_seconds=snap.elapsed_seconds,
            upload_seconds=reporter.upload_elapsed_seconds,
            throughput=reporter.throughput,
            **kwargs,
        )

    def to_dict(self) -> Dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "uploaded": self.uploaded,
            "failed": self.failed,
            "write_failed": self.write_failed,
            "skipped": self.skipped,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "upload_seconds": round(self.upload_seconds, 3),
            "throughput": round(self.throughput, 3),
            "cancelled": self.cancelled,
            "failures": [failure.to_dict() for failure in self.failures],
        }
