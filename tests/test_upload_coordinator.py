import asyncio
import io

from PIL import Image

from photoingest.cropping.cropper import FaceAwareCropper
from photoingest.errors import BackgroundRemovalError, RecordWriteError, UploadError
from photoingest.types import AssetRef, IngestOptions, Match, MediaItem
from photoingest.upload.coordinator import UploadCoordinator


class _FakeAssetStore:
    """Async store that fails every ``fail_every``-th call and tracks concurrency."""

    def __init__(self, fail_every=0, delay=0.0, fail_names=()):
        self.fail_every = fail_every
        self.delay = delay
        self.fail_names = set(fail_names)
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.uploads = []

    async def upload(self, content, content_type, destination, transform):
        self.calls += 1
        call = self.calls
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_every and call % self.fail_every == 0:
                raise UploadError("remote rejected upload", status_code=500)
            if destination["filename"] in self.fail_names:
                raise UploadError("remote rejected upload", status_code=400)
            self.uploads.append((content, content_type, destination, transform))
            public_id = f"{destination['folder']}/{destination['public_id']}"
            return AssetRef(url=f"https://res.cloudinary.com/demo/image/upload/v1/{public_id}.png", public_id=public_id)
        finally:
            self.in_flight -= 1

    def delete(self, public_id):
        return True


class _FakeRecordStore:
    def __init__(self, broken_ids=()):
        self.broken_ids = set(broken_ids)
        self.updates = []

    def list_records(self, filters=None):
        return []

    def update_photo_reference(self, record_id, url, public_id):
        if record_id in self.broken_ids:
            raise RecordWriteError(f"record {record_id} is locked", record_id=record_id)
        self.updates.append((record_id, url, public_id))


class _FakeRemover:
    def __init__(self, fail=False):
        self.fail = fail

    def remove(self, content):
        if self.fail:
            raise BackgroundRemovalError("quota exceeded")
        return b"transparent"


class _RecordingRemover:
    """Returns a marker and remembers what it was sent; crashes on ``b"boom"``."""

    def __init__(self):
        self.received = []

    def remove(self, content):
        if content == b"boom":
            raise RuntimeError("remover crashed")
        self.received.append(content)
        return b"transparent"


class _RecordingCropper(FaceAwareCropper):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.received = []
        self.produced = []

    def crop(self, content, profile, filename=None):
        self.received.append(content)
        result = super().crop(content, profile, filename)
        self.produced.append(result.to_bytes("PNG"))
        return result


class _UnreachableDetector:
    def detect(self, image):
        raise ConnectionError("detection service unreachable")


def _matches(count, matched=True):
    return [
        Match(MediaItem(f"{idx}.jpg", b"x"), record_id=f"r{idx}" if matched else None)
        for idx in range(count)
    ]


def _png_bytes(width=200, height=200):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (10, 20, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_failures_are_isolated_and_counted():
    store = _FakeAssetStore(fail_every=3)
    records = _FakeRecordStore()
    coordinator = UploadCoordinator(store, records, batch_size=3)

    summary = asyncio.run(coordinator.run(_matches(9)))

    assert (summary.uploaded, summary.failed) == (6, 3)
    assert len(records.updates) == 6
    assert [f.kind for f in summary.failures] == ["UploadError"] * 3
    snap = coordinator.reporter.snapshot
    assert (snap.uploaded, snap.failed) == (6, 3)


def test_in_flight_uploads_never_exceed_batch_size():
    store = _FakeAssetStore(delay=0.01)
    coordinator = UploadCoordinator(store, _FakeRecordStore(), batch_size=4)

    summary = asyncio.run(coordinator.run(_matches(25)))

    assert summary.uploaded == 25
    assert store.max_in_flight == 4


def test_failed_item_does_not_block_the_next_one():
    matches = [Match(MediaItem(name, b"x"), record_id=name) for name in ("a.jpg", "bad.jpg", "c.jpg")]
    store = _FakeAssetStore(fail_names=["bad.jpg"])
    coordinator = UploadCoordinator(store, _FakeRecordStore(), batch_size=2)

    summary = asyncio.run(coordinator.run(matches))

    assert [o.success for o in summary.outcomes] == [True, False, True]
    assert summary.failures[0].filename == "bad.jpg"


def test_write_back_failure_keeps_upload_and_reports_record_error():
    records = _FakeRecordStore(broken_ids=["r1"])
    coordinator = UploadCoordinator(_FakeAssetStore(), records, batch_size=10)

    summary = asyncio.run(coordinator.run(_matches(3)))

    assert (summary.uploaded, summary.failed, summary.write_failed) == (3, 0, 1)
    failure = summary.failures[0]
    assert failure.kind == "RecordWriteError"
    assert failure.record_id == "r1"
    assert failure.remote_public_id == "project-photos/1"
    assert [update[0] for update in records.updates] == ["r0", "r2"]


def test_unmatched_items_upload_without_write_back():
    records = _FakeRecordStore()
    summary = asyncio.run(UploadCoordinator(_FakeAssetStore(), records).run(_matches(2, matched=False)))

    assert summary.uploaded == 2
    assert records.updates == []
    assert not any(o.written_back for o in summary.outcomes)


def test_content_type_and_destination_follow_filename():
    matches = [Match(MediaItem(name, b"x")) for name in ("class/101.PNG", "b.webp", "c.JPG", "d.gif")]
    store = _FakeAssetStore()

    asyncio.run(UploadCoordinator(store, None, folder="project-photos/p1").run(matches))

    assert [u[1] for u in store.uploads] == ["image/png", "image/webp", "image/jpeg", "image/jpeg"]
    assert store.uploads[0][2] == {"folder": "project-photos/p1", "public_id": "101", "filename": "101.PNG"}


def test_cancellation_stops_before_next_batch():
    checks = []

    def should_cancel():
        checks.append(1)
        return len(checks) > 1

    store = _FakeAssetStore()
    summary = asyncio.run(UploadCoordinator(store, None, batch_size=3).run(_matches(6), should_cancel=should_cancel))

    assert summary.cancelled
    assert summary.uploaded == 3
    assert store.calls == 3


def test_remote_transforms_requested_without_local_processing():
    store = _FakeAssetStore()
    options = IngestOptions(remove_background=True, auto_crop=True, crop_width=300, crop_height=300)

    asyncio.run(UploadCoordinator(store, None).run(_matches(1), options))

    transform = store.uploads[0][3]
    assert transform.remove_background and transform.auto_crop
    assert (transform.crop_width, transform.crop_height) == (300, 300)


def test_local_crop_and_background_removal_replace_remote_transforms():
    match = Match(MediaItem("101.jpg", _png_bytes()), record_id="r1")
    store = _FakeAssetStore()
    coordinator = UploadCoordinator(store, None, cropper=FaceAwareCropper(), background_remover=_FakeRemover(fail=True))
    options = IngestOptions(remove_background=True, auto_crop=True, crop_width=120, crop_height=120)

    summary = asyncio.run(coordinator.run([match], options))

    content, content_type, _, transform = store.uploads[0]
    assert summary.uploaded == 1
    assert content_type == "image/png"
    assert Image.open(io.BytesIO(content)).size == (120, 120)
    assert transform.remove_background and not transform.auto_crop


def test_local_background_removal_result_is_uploaded():
    store = _FakeAssetStore()
    coordinator = UploadCoordinator(store, None, background_remover=_FakeRemover())

    asyncio.run(coordinator.run(_matches(1), IngestOptions(remove_background=True)))

    content, content_type, _, transform = store.uploads[0]
    assert (content, content_type) == (b"transparent", "image/png")
    assert not transform.remove_background


def test_undecodable_item_is_reported_when_cropping_locally():
    store = _FakeAssetStore()
    coordinator = UploadCoordinator(store, None, cropper=FaceAwareCropper())

    summary = asyncio.run(coordinator.run(_matches(1), IngestOptions(auto_crop=True)))

    assert summary.failed == 1
    assert summary.failures[0].kind == "ImageLoadError"
    assert store.calls == 0


def test_detector_errors_fall_back_to_centered_crop():
    matches = [Match(MediaItem(f"{idx}.jpg", _png_bytes()), record_id=f"r{idx}") for idx in range(3)]
    store = _FakeAssetStore()
    cropper = FaceAwareCropper(detector=_UnreachableDetector())
    coordinator = UploadCoordinator(store, _FakeRecordStore(), cropper=cropper)
    options = IngestOptions(auto_crop=True, crop_width=100, crop_height=100)

    summary = asyncio.run(coordinator.run(matches, options))

    assert (summary.uploaded, summary.failed) == (3, 0)
    assert all(Image.open(io.BytesIO(u[0])).size == (100, 100) for u in store.uploads)


def test_unexpected_preparation_error_fails_only_that_item():
    matches = [Match(MediaItem(f"{name}.jpg", name.encode()), record_id=name) for name in ("a", "boom", "c")]
    store = _FakeAssetStore()
    coordinator = UploadCoordinator(store, _FakeRecordStore(), background_remover=_RecordingRemover(), batch_size=3)

    summary = asyncio.run(coordinator.run(matches, IngestOptions(remove_background=True)))

    assert (summary.uploaded, summary.failed) == (2, 1)
    assert [o.success for o in summary.outcomes] == [True, False, True]
    failure = summary.failures[0]
    assert (failure.filename, failure.kind, failure.record_id) == ("boom.jpg", "RuntimeError", "boom")
    assert coordinator.reporter.snapshot.failed == 1


def test_crop_uses_original_bytes_before_background_removal():
    original = _png_bytes(400, 300)
    store = _FakeAssetStore()
    cropper = _RecordingCropper()
    remover = _RecordingRemover()
    coordinator = UploadCoordinator(store, None, cropper=cropper, background_remover=remover)
    options = IngestOptions(remove_background=True, auto_crop=True, crop_width=120, crop_height=120)

    asyncio.run(coordinator.run([Match(MediaItem("101.jpg", original))], options))

    assert cropper.received == [original]
    assert remover.received == cropper.produced
    content, content_type, _, transform = store.uploads[0]
    assert (content, content_type) == (b"transparent", "image/png")
    assert not (transform.remove_background or transform.auto_crop)
