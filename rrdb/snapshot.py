"""
Snapshot codec and file sink using Arrow IPC streams.

A snapshot is one record batch with one row per layer, finest first:
precision, capacity and the layer's raw slot bytes.
"""

import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import pyarrow as pa
import pyarrow.ipc as ipc

from .errors import SnapshotError
from .interfaces import SnapshotSink
from .logger import get_logger


SNAPSHOT_FORMAT = b"rrdb-snapshot"
SNAPSHOT_VERSION = b"1"

SNAPSHOT_SCHEMA = pa.schema(
    [
        ('precision_seconds', pa.int64()),
        ('capacity_points', pa.int64()),
        ('buffer', pa.large_binary()),
    ],
    metadata={b"format": SNAPSHOT_FORMAT, b"version": SNAPSHOT_VERSION},
)


@dataclass(frozen=True)
class LayerRecord:
    """Everything needed to rebuild one layer."""
    precision_seconds: int
    capacity_points: int
    buffer: bytes


def encode_snapshot(records: Sequence[LayerRecord]) -> bytes:
    """Serialize layer records into a single Arrow IPC stream."""
    batch = pa.RecordBatch.from_arrays(
        [
            pa.array([r.precision_seconds for r in records], type=pa.int64()),
            pa.array([r.capacity_points for r in records], type=pa.int64()),
            pa.array([r.buffer for r in records], type=pa.large_binary()),
        ],
        schema=SNAPSHOT_SCHEMA,
    )

    sink = pa.BufferOutputStream()
    with ipc.new_stream(sink, SNAPSHOT_SCHEMA) as writer:
        writer.write_batch(batch)
    return sink.getvalue().to_pybytes()


def decode_snapshot(data: bytes) -> List[LayerRecord]:
    """
    Parse an encoded snapshot.
    Raises SnapshotError for anything that is not a complete rrdb snapshot.
    """
    try:
        reader = ipc.open_stream(pa.py_buffer(data))
        table = reader.read_all()
    except (pa.ArrowException, ValueError) as e:
        raise SnapshotError(f"Unreadable snapshot stream: {e}") from e

    metadata = table.schema.metadata or {}
    if metadata.get(b"format") != SNAPSHOT_FORMAT:
        raise SnapshotError("Not an rrdb snapshot (missing format marker)")
    if metadata.get(b"version") != SNAPSHOT_VERSION:
        raise SnapshotError(f"Unsupported snapshot version: {metadata.get(b'version')!r}")

    expected = [f.name for f in SNAPSHOT_SCHEMA]
    if table.schema.names != expected:
        raise SnapshotError(f"Unexpected snapshot columns: {table.schema.names}")
    if table.num_rows == 0:
        raise SnapshotError("Snapshot contains no layers")

    precisions = table.column('precision_seconds').to_pylist()
    capacities = table.column('capacity_points').to_pylist()
    buffers = table.column('buffer').to_pylist()

    records = []
    for precision, capacity, raw in zip(precisions, capacities, buffers):
        if precision is None or capacity is None or raw is None:
            raise SnapshotError("Snapshot row has null fields")
        records.append(LayerRecord(int(precision), int(capacity), raw))
    return records


class FileSnapshotSink(SnapshotSink):
    """Stores the snapshot in a single file, replaced atomically on save."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.logger = get_logger("FileSnapshotSink")

    def load(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        return self.path.read_bytes()

    def save(self, data: bytes) -> None:
        """Write to a unique staging file, fsync, then move it over the snapshot."""
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, staging_name = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name + ".", suffix=".tmp")
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                    # Force sync to disk before the rename makes it visible
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(staging_name, self.path)
            except Exception:
                if os.path.exists(staging_name):
                    os.unlink(staging_name)
                raise
        self.logger.debug(f"Wrote snapshot {self.path} ({len(data):,} bytes)")

    def describe(self) -> str:
        return str(self.path)
