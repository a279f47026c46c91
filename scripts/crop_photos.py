#!/usr/bin/env python3
"""CLI for cropping a folder or archive of photos to passport/square outputs."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

from tqdm import tqdm

from photoingest.cropping.cropper import FaceAwareCropper
from photoingest.cropping.profiles import PASSPORT_PROFILE, SQUARE_PROFILE, CropProfile, profile_for_options
from photoingest.detectors.person_yolo import DEFAULT_WEIGHTS, load_person_detector
from photoingest.errors import ArchiveError, ImageLoadError
from photoingest.extract.archive import ZipPhotoArchive, iter_selected_files
from photoingest.io_utils import dump_json, ensure_dir, list_images, setup_logging
from photoingest.matching.lookup import strip_extension
from photoingest.types import MediaItem


LOGGER = logging.getLogger("scripts.crop_photos")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Crop photos around the detected subject")
    parser.add_argument("source", type=Path, help="ZIP archive or directory of images")
    parser.add_argument("--output-dir", type=Path, default=Path("data/crops"), help="Output directory")
    parser.add_argument("--profile", choices=("passport", "square"), default="passport")
    parser.add_argument(
        "--size",
        type=int,
        nargs=2,
        default=None,
        metavar=("WIDTH", "HEIGHT"),
        help="Custom output size (overrides --profile)",
    )
    parser.add_argument("--weights", type=str, default=DEFAULT_WEIGHTS, help="YOLO weights ('' disables detection)")
    parser.add_argument("--device", type=str, default=None)
    parser.add_argument("--manifest", action="store_true", help="Write crops.json with every crop region")
    return parser.parse_args(argv)


def _resolve_profile(args: argparse.Namespace) -> CropProfile:
    if args.size is not None:
        width, height = args.size
        return profile_for_options(width, height)
    return SQUARE_PROFILE if args.profile == "square" else PASSPORT_PROFILE


def _iter_source(source: Path) -> Iterable[MediaItem]:
    if source.is_dir():
        return iter_selected_files(list_images(source))
    return ZipPhotoArchive(source)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging()
    profile = _resolve_profile(args)
    output_dir = ensure_dir(args.output_dir)
    cropper = FaceAwareCropper(detector=load_person_detector(args.weights or None, device=args.device))

    try:
        items = _iter_source(args.source)
    except ArchiveError as exc:
        raise SystemExit(f"Unable to read archive: {exc}")

    manifest = []
    failed = 0
    for item in tqdm(items, desc="crop", unit="photo"):
        try:
            result = cropper.crop(item.content, profile, item.filename)
        except ImageLoadError as exc:
            LOGGER.warning("%s", exc)
            failed += 1
            continue
        out_path = output_dir / f"{strip_extension(item.basename)}.png"
        result.image.save(out_path, format="PNG")
        manifest.append({"source": item.filename, "output": out_path, "region": result.region})

    if args.manifest:
        dump_json(output_dir / "crops.json", manifest)
    LOGGER.info("Wrote %d crops to %s (%d unreadable)", len(manifest), output_dir, failed)


if __name__ == "__main__":
    main()
