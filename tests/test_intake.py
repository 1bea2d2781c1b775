import asyncio
import re

import pytest

from filedrop.errors import IndexWriteError, StorageError, UnsupportedType
from filedrop.index import JsonFileIndex
from filedrop.intake import UploadIntake, generate_stored_key, sanitize_filename
from filedrop.notify import FILE_UPLOADED
from filedrop.query import FileQuery
from filedrop.storage import LocalBlobStore

from conftest import (
    BrokenBlobStore, BrokenIndex, ExplodingNotifier, MemoryBlobStore, RecordingNotifier,
    SlowBlobStore, payload,
)


@pytest.mark.parametrize("name, expected", [
    ("report.pdf", "report.pdf"),
    ("../../etc/passwd.csv", "etcpasswd.csv"),
    ("..\\..\\boot.ini.doc", "boot.ini.doc"),
    ("quarterly..results.xlsx", "quarterly.results.xlsx"),
    ("bad\x00name\n.pdf", "badname.pdf"),
    ('what?<is>:this*|"file".docx', "whatisthisfile.docx"),
    ("  .hidden.csv  ", "hidden.csv"),
])
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected


def test_sanitize_keeps_extension_when_truncating():
    sanitized = sanitize_filename("x" * 400 + ".pdf")
    assert sanitized.endswith(".pdf")
    assert len(sanitized.encode("utf-8")) <= 200


def test_stored_key_format():
    key = generate_stored_key("report.pdf")
    match = re.fullmatch(r"(\d+)-(\d+)-report\.pdf", key)
    assert match
    assert 0 <= int(match.group(2)) <= 10**9


@pytest.fixture
def index(tmp_path):
    return JsonFileIndex(tmp_path / "metadata.json")


@pytest.mark.asyncio
async def test_intake_stores_indexes_and_notifies(tmp_path, index):
    await index.load()
    store = LocalBlobStore(tmp_path / "blobs", max_bytes=1024)
    store.initialize()
    notifier = RecordingNotifier()
    intake = UploadIntake(store, index, notifier)

    record = await intake.intake(payload(b"a,b\n1,2\n"), "data.csv", "text/csv")

    assert record.original_name == "data.csv"
    assert record.stored_key.endswith("-data.csv")
    assert record.size == 8
    assert record.content_type == "text/csv"
    assert (tmp_path / "blobs" / record.stored_key).read_bytes() == b"a,b\n1,2\n"
    assert await index.list() == [record]
    assert notifier.events == [(FILE_UPLOADED, record.event_payload())]


@pytest.mark.asyncio
async def test_unsupported_type_has_no_side_effects(index):
    await index.load()
    store = MemoryBlobStore()
    notifier = RecordingNotifier()
    intake = UploadIntake(store, index, notifier)

    with pytest.raises(UnsupportedType):
        await intake.intake(payload(b"MZ"), "setup.exe", "application/octet-stream")

    assert store.blobs == {}
    assert await index.list() == []
    assert notifier.events == []


@pytest.mark.asyncio
@pytest.mark.parametrize("name", [None, "", "noextension", "archive.tar.gz", "..pdf"])
async def test_rejects_bad_names(index, name):
    await index.load()
    store = MemoryBlobStore()
    with pytest.raises(UnsupportedType):
        await UploadIntake(store, index).intake(payload(), name)
    assert store.blobs == {}


@pytest.mark.asyncio
async def test_extension_check_is_case_insensitive(index):
    await index.load()
    record = await UploadIntake(MemoryBlobStore(), index).intake(payload(), "SCAN.PDF")
    assert record.stored_key.endswith("-SCAN.PDF")


@pytest.mark.asyncio
async def test_storage_failure_appends_nothing(index):
    await index.load()
    notifier = RecordingNotifier()
    intake = UploadIntake(BrokenBlobStore(), index, notifier)

    with pytest.raises(StorageError):
        await intake.intake(payload(), "report.pdf")

    assert await index.list() == []
    assert notifier.events == []


@pytest.mark.asyncio
async def test_stalled_write_times_out(index):
    await index.load()
    intake = UploadIntake(SlowBlobStore(), index, write_timeout=0.05)

    with pytest.raises(StorageError):
        await intake.intake(payload(), "report.pdf")

    assert await index.list() == []


@pytest.mark.asyncio
async def test_index_failure_surfaces_and_leaves_orphan(tmp_path):
    index = BrokenIndex(tmp_path / "metadata.json")
    await index.load()
    store = MemoryBlobStore()
    notifier = RecordingNotifier()
    intake = UploadIntake(store, index, notifier)

    with pytest.raises(IndexWriteError):
        await intake.intake(payload(), "report.pdf")

    assert len(store.blobs) == 1
    assert await index.list() == []
    assert notifier.events == []


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_intake(index):
    await index.load()
    intake = UploadIntake(MemoryBlobStore(), index, ExplodingNotifier())

    record = await intake.intake(payload(), "report.pdf")

    assert await index.list() == [record]


@pytest.mark.asyncio
async def test_sequential_intakes_are_listed_newest_first(index):
    await index.load()
    intake = UploadIntake(MemoryBlobStore(), index)

    accepted = [await intake.intake(payload(), f"doc-{n}.docx") for n in range(10)]

    listed = await index.list()
    assert len(listed) == 10
    assert [r.stored_key for r in listed] == [r.stored_key for r in reversed(accepted)]
    assert all(a.received_at >= b.received_at for a, b in zip(listed, listed[1:]))


@pytest.mark.asyncio
async def test_fifty_concurrent_intakes(tmp_path, index):
    await index.load()
    store = LocalBlobStore(tmp_path / "blobs", max_bytes=1024)
    store.initialize()
    intake = UploadIntake(store, index)

    records = await asyncio.gather(
        *(intake.intake(payload(f"row,{n}\n".encode()), f"sheet-{n}.csv") for n in range(50))
    )

    listed = await index.list()
    assert len(listed) == 50
    assert len({r.stored_key for r in listed}) == 50
    assert {r.stored_key for r in records} == {r.stored_key for r in listed}

    reopened = JsonFileIndex(index.path)
    await reopened.load()
    assert len(await reopened.list()) == 50


@pytest.mark.asyncio
async def test_intake_then_resolve(index):
    await index.load()
    record = await UploadIntake(MemoryBlobStore(), index).intake(payload(), "report.pdf")

    location = await FileQuery(index).resolve(record.stored_key)

    assert location == f"mem://{record.stored_key}"


@pytest.mark.asyncio
async def test_key_collision_keeps_the_indexed_blob(tmp_path, index, monkeypatch):
    await index.load()
    store = LocalBlobStore(tmp_path / "blobs", max_bytes=1024)
    store.initialize()
    intake = UploadIntake(store, index)
    monkeypatch.setattr("filedrop.intake.generate_stored_key", lambda name: "1-1-a.pdf")

    first = await intake.intake(payload(b"first"), "a.pdf")
    with pytest.raises(StorageError):
        await intake.intake(payload(b"second"), "a.pdf")

    assert (tmp_path / "blobs" / "1-1-a.pdf").read_bytes() == b"first"
    assert await index.list() == [first]
    assert await FileQuery(index).resolve("1-1-a.pdf") == "1-1-a.pdf"


@pytest.mark.asyncio
async def test_longest_name_fits_on_disk(tmp_path, index):
    await index.load()
    store = LocalBlobStore(tmp_path / "blobs", max_bytes=1024)
    store.initialize()

    record = await UploadIntake(store, index).intake(payload(b"%PDF"), "r" * 400 + ".pdf", "application/pdf")

    assert len(record.stored_key.encode("utf-8")) <= 255
    assert record.stored_key.endswith(".pdf")
    assert (tmp_path / "blobs" / record.stored_key).read_bytes() == b"%PDF"
