#!/usr/bin/env python3
"""CLI for deleting remote photos linked to records."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from photoingest.errors import ConfigError
from photoingest.io_utils import load_records_table, setup_logging
from photoingest.upload.assets import CloudinaryAssetStore
from photoingest.upload.cleanup import collect_public_ids, delete_record_photos
from photoingest.upload.records import RestRecordStore


LOGGER = logging.getLogger("scripts.delete_photos")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete remote photos referenced by records")
    parser.add_argument("--project-id", type=str, default=None, help="Limit to one project's records")
    parser.add_argument("--records-file", type=Path, default=None, help="CSV/XLSX/JSON record table")
    parser.add_argument("--id-column", type=str, default="id")
    parser.add_argument("--record-id", dest="record_ids", action="append", default=None, help="Record id (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="List public ids without deleting")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging()

    if args.records_file is not None:
        records = load_records_table(args.records_file, id_column=args.id_column)
    else:
        filters = {"project_id": args.project_id} if args.project_id else None
        records = RestRecordStore.from_env().list_records(filters)
    if args.record_ids:
        wanted = set(args.record_ids)
        records = [record for record in records if record.id in wanted]

    if args.dry_run:
        for public_id in collect_public_ids(records):
            print(public_id)
        return

    try:
        asset_store = CloudinaryAssetStore.from_env()
    except ConfigError as exc:
        raise SystemExit(str(exc))
    result = delete_record_photos(asset_store, records)
    if result.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
