"""I/O helpers shared across CLI entrypoints and pipeline modules."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import yaml

from photoingest.types import DEFAULT_CONTENT_TYPE, Record

LOGGER = logging.getLogger("photoingest.io")

IMAGE_CONTENT_TYPES: Dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}
SUPPORTED_IMAGE_EXTENSIONS = frozenset(IMAGE_CONTENT_TYPES)


def ensure_dir(path: Path) -> Path:
    """Create directory (and parents) if it does not exist."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return a dictionary."""
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    LOGGER.debug("Loaded YAML config %s -> keys=%s", path, list(data.keys()))
    return data


def dump_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON to disk (with dataclass support)."""
    def _default(obj: Any) -> Any:
        if is_dataclass(obj):
            return asdict(obj)
        if isinstance(obj, Path):
            return str(obj)
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

    with path.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=indent, default=_default)
    LOGGER.debug("Wrote JSON file %s", path)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure application logging if not already configured."""
    if logging.getLogger().handlers:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def file_extension(filename: str) -> str:
    """Return the lowercase extension without the dot ('' when absent)."""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def is_supported_image(filename: str) -> bool:
    return file_extension(filename) in SUPPORTED_IMAGE_EXTENSIONS


def content_type_for(filename: str) -> str:
    """Classify a filename by extension, defaulting to JPEG."""
    return IMAGE_CONTENT_TYPES.get(file_extension(filename), DEFAULT_CONTENT_TYPE)


def list_images(directory: Path) -> List[Path]:
    """Return supported image paths sorted in lexicographic order."""
    if not directory.exists():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and is_supported_image(p.name))


def cell_to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet roll numbers arrive as 101.0
        return str(int(value))
    return str(value)


def read_table(path: Path) -> pd.DataFrame:
    """Read a CSV, Excel or JSON table into a DataFrame."""
    suffix = path.suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        return pd.read_excel(path, dtype=object)
    if suffix == ".json":
        return pd.read_json(path, dtype=False)
    return pd.read_csv(path, dtype=str, keep_default_na=False)


def records_from_frame(df: pd.DataFrame, id_column: str = "id") -> List[Record]:
    """Convert table rows into records; every non-id column becomes a field."""
    if id_column not in df.columns:
        raise KeyError(f"Record table has no '{id_column}' column (columns={list(df.columns)})")
    records: List[Record] = []
    for row in df.to_dict(orient="records"):
        record_id = cell_to_str(row.get(id_column))
        if not record_id:
            LOGGER.debug("Skipping table row without id: %s", row)
            continue
        fields: Dict[str, str] = {}
        for key, value in row.items():
            if key == id_column:
                continue
            text = cell_to_str(value)
            if text is not None:
                fields[str(key)] = text
        records.append(
            Record(
                id=record_id,
                fields=fields,
                photo_url=fields.get("photo_url") or None,
                photo_public_id=fields.get("cloudinary_public_id") or None,
            )
        )
    return records


def load_records_table(path: Path, id_column: str = "id") -> List[Record]:
    """Load records from a CSV/XLSX/JSON table."""
    df = read_table(path)
    records = records_from_frame(df, id_column=id_column)
    LOGGER.info("Loaded %d records from %s", len(records), path)
    return records


def iter_existing(paths: Iterable[Path]) -> Iterable[Path]:
    for path in paths:
        if path.is_file():
            yield path
        else:
            LOGGER.warning("Skipping missing file %s", path)
