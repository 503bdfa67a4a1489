"""
One precision tier of the round-robin store.

Each layer is a circular array of fixed-width slots living inside a slice of
the store's backing buffer. A slot records the bucket it belongs to next to
the bucket's mean, so stale and never-written slots read back as gaps.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from .errors import LayerChainError, SnapshotError
from .logger import get_logger
from .snapshot import LayerRecord


# Bucket tags are stored as bucket_time + 1 so that zeroed memory means "no data"
SLOT_DTYPE = np.dtype([('bucket', '<i8'), ('value', '<f8')])
SLOT_WIDTH = SLOT_DTYPE.itemsize
EMPTY_TAG = 0

Point = Tuple[int, Optional[float]]


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
        raise LayerChainError(f"{name} must be a positive integer, got {value!r}")
    return int(value)


class TimeLayer:
    """Circular array of per-bucket means for a single precision."""

    def __init__(self, precision_seconds: int, capacity_points: int):
        self.precision_seconds = _positive_int(precision_seconds, "precision_seconds")
        self.capacity_points = _positive_int(capacity_points, "capacity_points")
        self.next: Optional['TimeLayer'] = None
        self.logger = get_logger("TimeLayer")

        self._slots: Optional[np.ndarray] = None

        # Open bucket accumulator, reset on reload
        self.open_bucket: Optional[int] = None
        self.accumulated_value = 0.0
        self.accumulated_count = 0

        self.late_samples = 0

    def __repr__(self) -> str:
        return f"TimeLayer(precision_seconds={self.precision_seconds}, capacity_points={self.capacity_points})"

    @property
    def span_seconds(self) -> int:
        return self.precision_seconds * self.capacity_points

    @property
    def byte_size(self) -> int:
        return self.capacity_points * SLOT_WIDTH

    @property
    def is_bound(self) -> bool:
        return self._slots is not None

    def bind(self, view: memoryview):
        """Attach the slice of the backing buffer this layer reads and writes."""
        if len(view) != self.byte_size:
            raise ValueError(f"{self!r} needs {self.byte_size} bytes, got a {len(view)} byte slice")
        if view.readonly:
            raise ValueError(f"{self!r} needs a writable buffer slice")
        self._slots = np.frombuffer(view, dtype=SLOT_DTYPE)

    def _require_slots(self) -> np.ndarray:
        if self._slots is None:
            raise RuntimeError(f"{self!r} has no buffer slice; it must belong to a LayeredStore")
        return self._slots

    def bucket_of(self, timestamp) -> int:
        return int(timestamp // self.precision_seconds)

    def index_of(self, bucket: int) -> int:
        return bucket % self.capacity_points

    def write(self, timestamp, value: float):
        """
        Add a sample to this layer.
        Sealed buckets are pushed up the chain one layer at a time.

        A sample whose bucket is older than the open bucket is dropped and
        counted in late_samples. Negative timestamps raise ValueError.
        """
        layer, ts, val = self, timestamp, value
        while layer is not None:
            sealed = layer._accumulate(ts, val)
            if sealed is None:
                break
            ts, val = sealed
            layer = layer.next

    def _accumulate(self, timestamp, value: float) -> Optional[Tuple[int, float]]:
        """Fold one sample into the open bucket; returns the sealed bucket's sample, if any."""
        slots = self._require_slots()
        if timestamp < 0:
            raise ValueError(f"Timestamps must not be negative, got {timestamp}")
        bucket = self.bucket_of(timestamp)

        sealed = None
        if self.open_bucket is None:
            self._open(bucket)
        elif bucket < self.open_bucket:
            self.late_samples += 1
            self.logger.debug(f"Dropping late sample at {timestamp}: bucket {bucket} is older than open bucket {self.open_bucket}")
            return None
        elif bucket != self.open_bucket:
            sealed = (self.open_bucket * self.precision_seconds, self.accumulated_value)
            self._clear_buckets(self.open_bucket + 1, bucket)
            self._open(bucket)

        self.accumulated_value += (value - self.accumulated_value) / (self.accumulated_count + 1)
        self.accumulated_count += 1

        # Write through so reads see the open bucket's running mean
        slot = self.index_of(bucket)
        slots['bucket'][slot] = bucket + 1
        slots['value'][slot] = self.accumulated_value
        return sealed

    def _open(self, bucket: int):
        self.open_bucket = bucket
        self.accumulated_value = 0.0
        self.accumulated_count = 0

    def _clear_buckets(self, first: int, stop: int):
        """Mark buckets in [first, stop) as having no data."""
        skipped = stop - first
        if skipped <= 0:
            return
        slots = self._slots
        if skipped >= self.capacity_points:
            slots['bucket'][:] = EMPTY_TAG
            slots['value'][:] = np.nan
        else:
            indices = np.arange(first, stop, dtype=np.int64) % self.capacity_points
            slots['bucket'][indices] = EMPTY_TAG
            slots['value'][indices] = np.nan
        self.logger.debug(f"{self!r}: marked {skipped} skipped buckets as missing")

    def covered(self, distance_seconds) -> bool:
        """True if this layer retains a span at least distance_seconds long."""
        return self.span_seconds >= distance_seconds

    def read_range(self, start, end) -> List[Point]:
        """
        Read buckets covering [start, end) as (bucket_start, mean) pairs.

        The result holds at most capacity_points entries, the most recent
        buckets of the range. Buckets without data are reported with None.
        """
        slots = self._require_slots()
        first = self.bucket_of(start)
        last = int(-(-end // self.precision_seconds)) - 1
        if last < first:
            return []
        first = max(first, last - self.capacity_points + 1)

        buckets = np.arange(first, last + 1, dtype=np.int64)
        # Modulo indexing wraps past the array end back to index 0
        window = slots[buckets % self.capacity_points]
        present = (window['bucket'] == buckets + 1) & (buckets >= 0)

        return [
            (int(b) * self.precision_seconds, float(v) if ok else None)
            for b, v, ok in zip(buckets.tolist(), window['value'].tolist(), present.tolist())
        ]

    def to_snapshot(self) -> LayerRecord:
        slots = self._require_slots()
        return LayerRecord(self.precision_seconds, self.capacity_points, slots.tobytes())

    @classmethod
    def from_snapshot(cls, record: LayerRecord) -> 'TimeLayer':
        """Build an unbound layer shaped like record; restore() fills it once bound."""
        try:
            layer = cls(record.precision_seconds, record.capacity_points)
        except LayerChainError as e:
            raise SnapshotError(f"Invalid layer shape in snapshot: {e}") from e
        if len(record.buffer) != layer.byte_size:
            raise SnapshotError(
                f"{layer!r} expects {layer.byte_size} bytes, snapshot holds {len(record.buffer)}"
            )
        return layer

    def restore(self, raw: bytes):
        """Copy persisted slot bytes into the bound slice. No bucket is open afterwards."""
        slots = self._require_slots()
        if len(raw) != self.byte_size:
            raise SnapshotError(f"{self!r} expects {self.byte_size} bytes, got {len(raw)}")
        slots[:] = np.frombuffer(raw, dtype=SLOT_DTYPE)
        self._open(None)

    def get_stats(self) -> dict:
        """Get layer statistics."""
        filled = 0
        if self._slots is not None:
            filled = int(np.count_nonzero(self._slots['bucket'] != EMPTY_TAG))
        return {
            "precision_seconds": self.precision_seconds,
            "capacity_points": self.capacity_points,
            "span_seconds": self.span_seconds,
            "byte_size": self.byte_size,
            "filled_buckets": filled,
            "open_bucket": self.open_bucket,
            "late_samples": self.late_samples,
        }


def validate_chain(layers: Sequence[TimeLayer]):
    """
    Check that layers can cascade: each precision divides the next one
    and spans grow strictly from finest to coarsest.
    """
    if not layers:
        raise LayerChainError("A store needs at least one layer")

    for position in range(1, len(layers)):
        finer, coarser = layers[position - 1], layers[position]
        if coarser.precision_seconds % finer.precision_seconds != 0:
            raise LayerChainError(
                f"precision {coarser.precision_seconds}s is not a multiple of {finer.precision_seconds}s",
                position,
            )
        if coarser.span_seconds <= finer.span_seconds:
            raise LayerChainError(
                f"span {coarser.span_seconds}s does not exceed previous span {finer.span_seconds}s",
                position,
            )
