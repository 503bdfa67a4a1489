import os
import threading
import time

import pyarrow as pa
import pyarrow.ipc as ipc
import pytest

from rrdb.errors import SnapshotError
from rrdb.snapshot import FileSnapshotSink, LayerRecord, decode_snapshot, encode_snapshot


RECORDS = [
    LayerRecord(15, 2, bytes(range(32))),
    LayerRecord(60, 3, b"\x01" * 48),
]


def test_encode_decode_preserves_order_and_bytes():
    decoded = decode_snapshot(encode_snapshot(RECORDS))
    assert decoded == RECORDS


def test_encoded_snapshot_is_arrow_stream():
    table = ipc.open_stream(pa.py_buffer(encode_snapshot(RECORDS))).read_all()
    assert table.num_rows == 2
    assert table.schema.metadata[b"format"] == b"rrdb-snapshot"


@pytest.mark.parametrize("data", [b"", b"garbage", encode_snapshot(RECORDS)[:-20]])
def test_unreadable_snapshot(data):
    with pytest.raises(SnapshotError):
        decode_snapshot(data)


def _stream(table: pa.Table) -> bytes:
    sink = pa.BufferOutputStream()
    with ipc.new_stream(sink, table.schema) as writer:
        writer.write_table(table)
    return sink.getvalue().to_pybytes()


def test_foreign_arrow_stream_rejected():
    data = _stream(pa.table({"precision_seconds": [15], "capacity_points": [4]}))
    with pytest.raises(SnapshotError, match="format marker"):
        decode_snapshot(data)


def test_unknown_version_rejected():
    table = pa.table({"precision_seconds": [15]}).replace_schema_metadata(
        {b"format": b"rrdb-snapshot", b"version": b"99"}
    )
    with pytest.raises(SnapshotError, match="version"):
        decode_snapshot(_stream(table))


def test_empty_snapshot_rejected():
    with pytest.raises(SnapshotError, match="no layers"):
        decode_snapshot(encode_snapshot([]))


def test_file_sink_load_missing(tmp_path):
    assert FileSnapshotSink(tmp_path / "missing.rrdb").load() is None


def test_file_sink_replaces_snapshot(tmp_path):
    path = tmp_path / "nested" / "store.rrdb"
    sink = FileSnapshotSink(path)
    sink.save(b"first")
    sink.save(b"second")

    assert sink.load() == b"second"
    assert list((tmp_path / "nested").glob("*.tmp")) == []
    assert sink.describe() == str(path)


def test_file_sink_concurrent_saves(tmp_path, monkeypatch):
    real_fsync = os.fsync

    def slow_fsync(fd):
        time.sleep(0.05)
        real_fsync(fd)

    monkeypatch.setattr(os, "fsync", slow_fsync)
    sink = FileSnapshotSink(tmp_path / "store.rrdb")
    errors = []

    def save(payload):
        try:
            sink.save(payload)
        except OSError as e:
            errors.append(e)

    threads = [threading.Thread(target=save, args=(f"snapshot-{i}".encode(),)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sink.load().startswith(b"snapshot-")
    assert list(tmp_path.glob("*.tmp")) == []


def test_file_sink_removes_staging_file_on_failure(tmp_path, monkeypatch):
    def failing_fsync(fd):
        raise OSError("I/O error")

    monkeypatch.setattr(os, "fsync", failing_fsync)
    sink = FileSnapshotSink(tmp_path / "store.rrdb")
    with pytest.raises(OSError):
        sink.save(b"data")
    assert list(tmp_path.iterdir()) == []
