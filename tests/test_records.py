import io

import pandas as pd
import pytest
import requests
from PIL import Image

from photoingest.errors import BackgroundRemovalError, ConfigError, RecordWriteError
from photoingest.io_utils import content_type_for, load_records_table, records_from_frame
from photoingest.upload.background import RemoveBgClient, downscale_to_jpeg
from photoingest.upload.records import RestRecordStore, TableRecordStore


def _write_csv(path):
    path.write_text("id,name,rollNo\n1,Ann,101\n2,Bob,102\n", encoding="utf-8")
    return path


def test_table_store_lists_and_updates_records(tmp_path):
    source = _write_csv(tmp_path / "students.csv")
    output = tmp_path / "students_out.csv"
    store = TableRecordStore(source, output_path=output)

    records = store.list_records()
    store.update_photo_reference("2", "https://cdn/102.jpg", "project-photos/102")
    store.save()

    assert [r.id for r in records] == ["1", "2"]
    assert records[0].fields["rollNo"] == "101"
    assert records[0].photo_url is None
    saved = pd.read_csv(output, dtype=str, keep_default_na=False)
    row = saved[saved["id"] == "2"].iloc[0]
    assert (row["photo_url"], row["cloudinary_public_id"]) == ("https://cdn/102.jpg", "project-photos/102")
    assert store.updates == 1


def test_table_store_filters_and_rejects_unknown_ids(tmp_path):
    store = TableRecordStore(_write_csv(tmp_path / "students.csv"))

    assert [r.id for r in store.list_records({"name": "Ann"})] == ["1"]
    with pytest.raises(RecordWriteError):
        store.update_photo_reference("99", "https://cdn/x.jpg", None)


def test_table_store_requires_id_column(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("name\nAnn\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        TableRecordStore(path)


def test_records_from_frame_normalizes_spreadsheet_cells():
    df = pd.DataFrame({"id": [1.0, 2.0, None], "rollNo": [101.0, float("nan"), 5.0]})

    records = records_from_frame(df)

    assert [r.id for r in records] == ["1", "2"]
    assert records[0].fields == {"rollNo": "101"}
    assert records[1].fields == {}


def test_load_records_table_from_json(tmp_path):
    path = tmp_path / "records.json"
    path.write_text('[{"id": "a", "photo": "A.JPG", "photo_url": "https://cdn/a.jpg"}]', encoding="utf-8")

    records = load_records_table(path)

    assert records[0].fields["photo"] == "A.JPG"
    assert records[0].photo_url == "https://cdn/a.jpg"


def test_content_type_defaults_to_jpeg():
    assert content_type_for("a.PNG") == "image/png"
    assert content_type_for("dir/b.webp") == "image/webp"
    assert content_type_for("c.heic") == "image/jpeg"
    assert content_type_for("noext") == "image/jpeg"


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.text = content.decode("utf-8", "ignore")

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class _FakeSession:
    def __init__(self, response):
        self.response = response
        self.headers = {}
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.response

    def patch(self, url, **kwargs):
        self.calls.append(("PATCH", url, kwargs))
        return self.response

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self.response


def test_rest_store_lists_records_with_filters():
    rows = [{"id": 7, "data_json": {"rollNo": 101, "name": None}, "photo_url": None, "cloudinary_public_id": None}]
    session = _FakeSession(_FakeResponse(payload=rows))
    store = RestRecordStore("https://db.example.com/", "anon", session=session)

    records = store.list_records({"project_id": "p1"})

    method, url, kwargs = session.calls[0]
    assert url == "https://db.example.com/rest/v1/data_records"
    assert kwargs["params"]["project_id"] == "eq.p1"
    assert session.headers["apikey"] == "anon"
    assert records[0].id == "7"
    assert records[0].fields == {"rollNo": "101"}


def test_rest_store_write_back_failure_raises_record_write_error():
    session = _FakeSession(_FakeResponse(status_code=409))
    store = RestRecordStore("https://db.example.com", "anon", session=session)

    with pytest.raises(RecordWriteError) as excinfo:
        store.update_photo_reference("7", "https://cdn/a.jpg", "p/a")

    assert excinfo.value.record_id == "7"
    assert session.calls[0][2]["params"] == {"id": "eq.7"}
    assert session.calls[0][2]["json"] == {"photo_url": "https://cdn/a.jpg", "cloudinary_public_id": "p/a"}


def _png_bytes(width, height):
    buffer = io.BytesIO()
    Image.new("RGBA", (width, height), (1, 2, 3, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_downscale_to_jpeg_caps_longest_side():
    data = downscale_to_jpeg(_png_bytes(2000, 1000), max_dimension=1024)

    image = Image.open(io.BytesIO(data))
    assert image.format == "JPEG"
    assert image.size == (1024, 512)


def test_remove_bg_client_posts_image_and_returns_png():
    session = _FakeSession(_FakeResponse(content=b"png-bytes"))
    client = RemoveBgClient("bg-key", session=session)

    assert client.remove(_png_bytes(50, 50)) == b"png-bytes"

    _, _, kwargs = session.calls[0]
    assert kwargs["headers"] == {"X-Api-Key": "bg-key"}
    assert kwargs["data"] == {"size": "auto"}
    assert kwargs["files"]["image_file"][2] == "image/jpeg"


def test_remove_bg_client_failures(monkeypatch):
    client = RemoveBgClient("bg-key", session=_FakeSession(_FakeResponse(status_code=402, content=b"quota")))

    with pytest.raises(BackgroundRemovalError):
        client.remove(_png_bytes(10, 10))
    with pytest.raises(BackgroundRemovalError):
        client.remove(b"not an image")

    monkeypatch.delenv("REMOVE_BG_API_KEY", raising=False)
    assert RemoveBgClient.from_env() is None
