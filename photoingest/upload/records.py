"""Record store collaborators: remote PostgREST table and local table file."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import requests

from photoingest.errors import ConfigError, RecordWriteError
from photoingest.io_utils import cell_to_str, read_table, records_from_frame
from photoingest.types import Record

LOGGER = logging.getLogger("photoingest.upload.records")

PHOTO_URL_FIELD = "photo_url"
PHOTO_PUBLIC_ID_FIELD = "cloudinary_public_id"


class RecordStore(Protocol):
    def list_records(self, filters: Optional[Dict[str, str]] = None) -> List[Record]:
        ...

    def update_photo_reference(self, record_id: str, url: str, public_id: Optional[str]) -> None:
        ...


def _stringify_fields(data: Any) -> Dict[str, str]:
    if not isinstance(data, dict):
        return {}
    return {str(key): str(value) for key, value in data.items() if value is not None}


class RestRecordStore:
    """PostgREST-style table access (``/rest/v1/<table>``) over requests."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "data_records",
        fields_column: str = "data_json",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url or not api_key:
            raise ConfigError("Record store URL and key are required")
        self.base_url = base_url.rstrip("/")
        self.table = table
        self.fields_column = fields_column
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_env(cls, **kwargs) -> "RestRecordStore":
        return cls(
            base_url=os.environ.get("RECORD_STORE_URL", ""),
            api_key=os.environ.get("RECORD_STORE_KEY", ""),
            **kwargs,
        )

    @property
    def _table_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def list_records(self, filters: Optional[Dict[str, str]] = None) -> List[Record]:
        params = {"select": f"id,{self.fields_column},{PHOTO_URL_FIELD},{PHOTO_PUBLIC_ID_FIELD}"}
        for key, value in (filters or {}).items():
            params[key] = f"eq.{value}"
        response = self.session.get(self._table_url, params=params, timeout=self.timeout)
        response.raise_for_status()
        rows = response.json() or []
        records = [
            Record(
                id=str(row["id"]),
                fields=_stringify_fields(row.get(self.fields_column)),
                photo_url=row.get(PHOTO_URL_FIELD),
                photo_public_id=row.get(PHOTO_PUBLIC_ID_FIELD),
            )
            for row in rows
        ]
        LOGGER.info("Fetched %d records from %s (filters=%s)", len(records), self.table, filters)
        return records

    def update_photo_reference(self, record_id: str, url: str, public_id: Optional[str]) -> None:
        body = {PHOTO_URL_FIELD: url, PHOTO_PUBLIC_ID_FIELD: public_id}
        try:
            response = self.session.patch(
                self._table_url,
                params={"id": f"eq.{record_id}"},
                json=body,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RecordWriteError(f"Failed to update record {record_id}: {exc}", record_id=record_id) from exc


class TableRecordStore:
    """Records held in a CSV/XLSX/JSON table, written back on :meth:`save`."""

    def __init__(self, path: Path, id_column: str = "id", output_path: Optional[Path] = None) -> None:
        self.path = Path(path)
        self.id_column = id_column
        self.output_path = Path(output_path) if output_path else self.path
        self._df = read_table(self.path)
        if id_column not in self._df.columns:
            raise ConfigError(f"Record table {self.path} has no '{id_column}' column")
        self._df[id_column] = self._df[id_column].map(lambda value: cell_to_str(value) or "")
        for column in (PHOTO_URL_FIELD, PHOTO_PUBLIC_ID_FIELD):
            if column not in self._df.columns:
                self._df[column] = ""
        self._lock = threading.Lock()
        self.updates = 0

    def list_records(self, filters: Optional[Dict[str, str]] = None) -> List[Record]:
        df = self._df
        for key, value in (filters or {}).items():
            if key in df.columns:
                df = df[df[key].astype(str) == str(value)]
        return records_from_frame(df, id_column=self.id_column)

    def update_photo_reference(self, record_id: str, url: str, public_id: Optional[str]) -> None:
        with self._lock:
            mask = self._df[self.id_column] == str(record_id)
            if not mask.any():
                raise RecordWriteError(f"Record {record_id} not found in {self.path}", record_id=record_id)
            self._df.loc[mask, PHOTO_URL_FIELD] = url
            self._df.loc[mask, PHOTO_PUBLIC_ID_FIELD] = public_id or ""
            self.updates += 1

    def save(self) -> Path:
        suffix = self.output_path.suffix.lower()
        with self._lock:
            if suffix == ".xlsx":
                self._df.to_excel(self.output_path, index=False)
            elif suffix == ".json":
                self._df.to_json(self.output_path, orient="records", indent=2)
            else:
                self._df.to_csv(self.output_path, index=False)
        LOGGER.info("Wrote %d photo references to %s", self.updates, self.output_path)
        return self.output_path
