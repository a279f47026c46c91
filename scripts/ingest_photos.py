#!/usr/bin/env python3
"""CLI for bulk photo ingestion: extract, match, crop, upload and write back."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tqdm import tqdm

from photoingest.errors import ArchiveError, ConfigError
from photoingest.io_utils import dump_json, load_yaml, setup_logging
from photoingest.pipeline import IngestConfig, ingest
from photoingest.reporting import PHASE_DONE, PHASE_UPLOADING, ProgressSnapshot
from photoingest.types import IngestOptions
from photoingest.upload.assets import CloudinaryAssetStore
from photoingest.upload.background import RemoveBgClient
from photoingest.upload.records import RestRecordStore, TableRecordStore


LOGGER = logging.getLogger("scripts.ingest_photos")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Match photos to records and upload them to the asset store")
    parser.add_argument(
        "source",
        type=Path,
        nargs="+",
        help="ZIP archive, a directory of images, or individual image files",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/ingest.yaml"),
        help="Ingest configuration YAML",
    )
    parser.add_argument("--project-id", type=str, default=None, help="Project id (records filter and folder)")
    parser.add_argument(
        "--records-file",
        type=Path,
        default=None,
        help="CSV/XLSX/JSON record table used instead of the remote record store",
    )
    parser.add_argument("--id-column", type=str, default="id", help="Record id column in --records-file")
    parser.add_argument(
        "--records-output",
        type=Path,
        default=None,
        help="Where to write the updated record table (defaults to --records-file)",
    )
    parser.add_argument("--fast", action="store_true", help="Skip filename matching entirely")
    parser.add_argument("--skip-unmatched", action="store_true", help="Do not upload photos without a record")
    parser.add_argument("--remove-background", action="store_true", help="Remove photo backgrounds")
    parser.add_argument("--auto-crop", action="store_true", help="Crop photos around the detected subject")
    parser.add_argument("--crop-width", type=int, default=None)
    parser.add_argument("--crop-height", type=int, default=None)
    parser.add_argument("--crop-gravity", choices=("face", "auto", "center"), default=None)
    parser.add_argument(
        "--remote-crop",
        action="store_true",
        help="Let the asset store crop instead of cropping locally",
    )
    parser.add_argument("--upload-batch-size", type=int, default=None)
    parser.add_argument("--extract-batch-size", type=int, default=None)
    parser.add_argument("--detector-weights", type=str, default=None, help="YOLO weights for subject detection")
    parser.add_argument("--report", type=Path, default=None, help="Write the final report JSON here")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    return parser.parse_args(argv)


def _resolve_options(args: argparse.Namespace, cfg: Dict[str, Any]) -> IngestOptions:
    """CLI flags override the ``options`` section of the config file."""
    section = cfg.get("options") or {}
    return IngestOptions(
        fast_mode=bool(args.fast or section.get("fast_mode", False)),
        remove_background=bool(args.remove_background or section.get("remove_background", False)),
        auto_crop=bool(args.auto_crop or section.get("auto_crop", False)),
        crop_width=int(args.crop_width if args.crop_width is not None else section.get("crop_width", 400)),
        crop_height=int(args.crop_height if args.crop_height is not None else section.get("crop_height", 400)),
        crop_gravity=str(args.crop_gravity or section.get("crop_gravity", "face")),
        skip_unmatched=bool(args.skip_unmatched or section.get("skip_unmatched", False)),
    )


def _resolve_config(args: argparse.Namespace, cfg: Dict[str, Any]) -> IngestConfig:
    values = {key: value for key, value in cfg.items() if key != "options"}
    overrides = {
        "project_id": args.project_id,
        "upload_batch_size": args.upload_batch_size,
        "extract_batch_size": args.extract_batch_size,
        "detector_weights": args.detector_weights,
    }
    for key, value in overrides.items():
        if value is not None:
            values[key] = value
    if args.remote_crop:
        values["local_crop"] = False
    return IngestConfig.from_mapping(values)


def _source_arg(paths: List[Path]):
    if len(paths) == 1 and paths[0].suffix.lower() == ".zip":
        return paths[0]
    if len(paths) == 1 and paths[0].is_dir():
        return paths[0]
    return list(paths)


class TqdmProgress:
    """Progress observer rendering one tqdm bar per phase."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._bar: Optional[tqdm] = None
        self._phase: Optional[str] = None

    def __call__(self, snap: ProgressSnapshot) -> None:
        if not self.enabled:
            return
        if snap.phase == PHASE_DONE:
            self.close()
            return
        if snap.phase != self._phase:
            self.close()
            total = snap.upload_total if snap.phase == PHASE_UPLOADING else snap.total
            self._bar = tqdm(total=total, desc=snap.phase, unit="photo")
            self._phase = snap.phase
        if self._bar is None:
            return
        done = snap.attempted if snap.phase == PHASE_UPLOADING else snap.processed
        self._bar.update(done - self._bar.n)
        if snap.phase == PHASE_UPLOADING:
            self._bar.set_postfix(uploaded=snap.uploaded, failed=snap.failed)
        else:
            self._bar.set_postfix(matched=snap.matched, unmatched=snap.unmatched)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
        self._bar = None
        self._phase = None


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging()

    cfg = load_yaml(args.config) if args.config.exists() else {}
    if not cfg:
        LOGGER.warning("Config %s not found or empty; using defaults", args.config)
    options = _resolve_options(args, cfg)
    config = _resolve_config(args, cfg)

    table_store: Optional[TableRecordStore] = None
    if args.records_file is not None:
        table_store = TableRecordStore(args.records_file, id_column=args.id_column, output_path=args.records_output)
        record_store = table_store
        records = table_store.list_records()
    else:
        record_store = RestRecordStore.from_env()
        filters = {"project_id": args.project_id} if args.project_id else None
        records = record_store.list_records(filters)

    try:
        asset_store = CloudinaryAssetStore.from_env()
    except ConfigError as exc:
        raise SystemExit(str(exc))
    background_remover = RemoveBgClient.from_env() if options.remove_background else None

    progress = TqdmProgress(enabled=not args.no_progress)
    try:
        report = ingest(
            _source_arg(args.source),
            records,
            options,
            asset_store=asset_store,
            record_store=record_store,
            config=config,
            background_remover=background_remover,
            observers=[progress],
        )
    except ArchiveError as exc:
        raise SystemExit(f"Unable to read archive: {exc}")
    finally:
        progress.close()

    if table_store is not None:
        table_store.save()

    LOGGER.info(
        "Uploaded %d photos in %.1fs (%.1f photos/sec), %d failed, %d unlinked",
        report.uploaded,
        report.upload_seconds,
        report.throughput,
        report.failed,
        report.write_failed,
    )
    if args.report is not None:
        dump_json(args.report, report.to_dict())
        LOGGER.info("Report written to %s", args.report)
    else:
        print(json.dumps(report.to_dict(), indent=2))


if __name__ == "__main__":
    main()
