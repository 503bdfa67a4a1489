"""
LayeredStore coordinator: a finest-to-coarsest chain of TimeLayers sharing
one backing buffer, with debounced snapshot persistence.
"""

import asyncio
import dataclasses
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pyarrow as pa

from .config import LayerConfig, RRDBConfig, StoreConfig, get_config
from .errors import RRDBError
from .interfaces import SnapshotSink
from .logger import get_logger
from .snapshot import FileSnapshotSink, LayerRecord, decode_snapshot, encode_snapshot
from .time_layer import Point, TimeLayer, validate_chain


class FlushState(Enum):
    DISARMED = "disarmed"
    ARMED = "armed"
    FIRED = "fired"


class FlushScheduler:
    """
    Debounces snapshot writes onto the running event loop.

    At most one flush is outstanding. The snapshot is encoded when the delay
    elapses, so it reflects every write made while the flush was armed. The
    handle is only cleared by the task's completion callback.
    """

    def __init__(self, encode: Callable[[], Tuple[int, bytes]], save: Callable[[int, bytes], bool],
                 destination: str, delay: float):
        self._encode = encode
        self._save = save
        self.destination = destination
        self.delay = delay
        self.state = FlushState.DISARMED
        self.task: Optional[asyncio.Task] = None
        self.failure: Optional[BaseException] = None
        self.flush_count = 0
        self._reported_no_loop = False
        self.logger = get_logger("FlushScheduler")

    @property
    def pending(self) -> bool:
        return self.task is not None

    def arm(self) -> bool:
        """Schedule a flush unless one is already outstanding. Returns True if armed."""
        if self.task is not None:
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if not self._reported_no_loop:
                self.logger.debug("No running event loop - snapshots are only written by flush()")
                self._reported_no_loop = True
            return False

        self.state = FlushState.ARMED
        self.task = loop.create_task(self._fire())
        self.task.add_done_callback(self._on_done)
        return True

    async def _fire(self):
        await asyncio.sleep(self.delay)
        self.state = FlushState.FIRED
        generation, data = self._encode()
        loop = asyncio.get_running_loop()
        if not await loop.run_in_executor(None, self._save, generation, data):
            return
        self.flush_count += 1
        self.logger.debug(f"Scheduled flush #{self.flush_count} wrote {len(data):,} bytes to {self.destination}")

    def _on_done(self, task: asyncio.Task):
        self.task = None
        self.state = FlushState.DISARMED
        if task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            self.failure = exc
            self.logger.error(f"Snapshot flush to {self.destination} failed: {exc}")
            task.get_loop().call_exception_handler({
                "message": "rrdb snapshot flush failed",
                "exception": exc,
                "task": task,
            })

    async def wait(self):
        """Wait for the outstanding flush and re-raise its failure, if any."""
        task = self.task
        if task is not None:
            await asyncio.wait([task])
        if self.failure is not None:
            exc, self.failure = self.failure, None
            raise exc


class LayeredStore:
    """
    Fixed-memory round-robin time-series store.

    Writes enter the finest layer and cascade into coarser ones as buckets
    seal. Reads are served by the finest layer whose span covers the
    requested range.
    """

    def __init__(self, layers: List[LayerConfig] = None, xff: float = None, persist_path: str = None,
                 initial_buffer: bytearray = None, flush_delay: float = None,
                 config: StoreConfig = None, config_path: str = None, sink: SnapshotSink = None):
        """
        Initialize the store.

        Args:
            layers: Override the layer chain, finest first (uses config if None)
            xff: Override the X-Files Factor (uses config if None)
            persist_path: Override the snapshot file location (uses config if None)
            initial_buffer: Writable buffer of exactly size() bytes to adopt instead of a zeroed one
            flush_delay: Override the debounce window in seconds (uses config if None)
            config: Pre-built store config (takes precedence over config_path)
            config_path: Path to custom config file
            sink: Snapshot destination (takes precedence over persist_path)
        """
        self.logger = get_logger("LayeredStore")
        self.config = self._resolve_config(config, config_path, layers=layers, xff=xff,
                                           persist_path=persist_path, initial_buffer=initial_buffer,
                                           flush_delay=flush_delay)
        self.xff = self.config.xff
        self.persist_path = Path(self.config.persist_path) if self.config.persist_path else None

        if sink is not None:
            self._sink: Optional[SnapshotSink] = sink
        elif self.persist_path is not None:
            self._sink = FileSnapshotSink(self.persist_path)
        else:
            self._sink = None

        restored = self._load_snapshot()
        if restored is not None:
            self.layers, records = restored
            if self.config.initial_buffer is not None:
                self.logger.info("Ignoring initial_buffer: layers were restored from snapshot")
            self._buffer = bytearray(self.size())
        else:
            records = None
            self.layers = [TimeLayer(l.precision_seconds, l.capacity_points) for l in self.config.layers]
            validate_chain(self.layers)
            self._buffer = self._adopt_buffer(self.config.initial_buffer)

        self._view = memoryview(self._buffer).cast('B')
        self._delegate_layers()

        if records is not None:
            for layer, record in zip(self.layers, records):
                layer.restore(record.buffer)

        # Scheduled and explicit saves may overlap; an older snapshot never replaces a newer one
        self._save_lock = threading.Lock()
        self._snapshot_generation = 0
        self._saved_generation = 0

        self._flush_scheduler: Optional[FlushScheduler] = None
        if self._sink is not None:
            self._flush_scheduler = FlushScheduler(self._encode_snapshot, self._save_snapshot,
                                                   self._sink.describe(), self.config.flush_delay)

        shape = ", ".join(f"{l.precision_seconds}s x {l.capacity_points}" for l in self.layers)
        self.logger.info(f"Initialized store with {len(self.layers)} layers ({shape}), {self.size():,} bytes")

    @staticmethod
    def _resolve_config(config: Optional[StoreConfig], config_path: Optional[str], **overrides) -> StoreConfig:
        if config is not None:
            base = config
        elif config_path is not None:
            # An explicit file never goes through the shared cached config
            base = RRDBConfig(config_path).store_config()
        else:
            base = get_config().store_config()
        changes = {key: value for key, value in overrides.items() if value is not None}
        return dataclasses.replace(base, **changes).validate()

    def _load_snapshot(self) -> Optional[Tuple[List[TimeLayer], List[LayerRecord]]]:
        """Rebuild layer shapes from the persisted snapshot; None means start fresh."""
        if self._sink is None:
            return None

        destination = self._sink.describe()
        try:
            data = self._sink.load()
            if data is None:
                self.logger.info(f"No snapshot at {destination} - starting with configured layers")
                return None
            records = decode_snapshot(data)
            layers = [TimeLayer.from_snapshot(record) for record in records]
            validate_chain(layers)
        except (OSError, RRDBError) as e:
            self.logger.warning(f"Snapshot at {destination} is unusable ({e}) - falling back to configured layers")
            return None

        self.logger.info(f"Restored {len(layers)} layers from snapshot {destination}")
        return layers, records

    def _adopt_buffer(self, initial_buffer) -> bytearray:
        size = self.size()
        if initial_buffer is None:
            return bytearray(size)

        view = memoryview(initial_buffer)
        if view.readonly:
            raise ValueError("initial_buffer must be writable")
        if view.nbytes != size:
            raise ValueError(f"initial_buffer holds {view.nbytes} bytes, store needs {size}")
        self.logger.info(f"Adopted caller-supplied buffer of {size:,} bytes")
        return initial_buffer

    def _delegate_layers(self):
        """Hand each layer its slice of the backing buffer and link the cascade chain."""
        pos = 0
        for i, layer in enumerate(self.layers):
            layer.next = self.layers[i + 1] if i + 1 < len(self.layers) else None
            size = layer.byte_size
            layer.bind(self._view[pos:pos + size])
            pos += size

    @property
    def buffer(self) -> memoryview:
        """Read-only view of the whole backing buffer."""
        return self._view.toreadonly()

    def size(self) -> int:
        """Store size in bytes, the sum of every layer's size."""
        return sum(layer.byte_size for layer in self.layers)

    def write(self, timestamp, value: float):
        """
        Write a single sample; may seal buckets all the way up the chain.

        Timestamps are in seconds and must not be negative (ValueError).
        Samples older than the finest layer's open bucket are dropped.

        A snapshot flush is only scheduled while an asyncio event loop is
        running. Synchronous callers with a persist_path must call flush()
        themselves.
        """
        self.layers[0].write(timestamp, value)
        self.schedule_flush()

    def read(self, start, end) -> List[Point]:
        """
        Read [start, end) from the finest layer whose span covers it.
        Returns an empty list when even the coarsest layer is too short.
        """
        distance = end - start
        for layer in self.layers:
            if layer.covered(distance):
                return layer.read_range(start, end)

        self.logger.debug(f"No layer covers {distance}s (longest span {self.layers[-1].span_seconds}s)")
        return []

    def read_table(self, start, end) -> pa.Table:
        """Same as read(), as an Arrow table with a nullable value column."""
        points = self.read(start, end)
        return pa.table({
            "timestamp": pa.array([p[0] for p in points], type=pa.int64()),
            "value": pa.array([p[1] for p in points], type=pa.float64()),
        })

    def schedule_flush(self):
        """Arm the debounced flush; a no-op without a snapshot destination."""
        if self._flush_scheduler is not None:
            self._flush_scheduler.arm()

    @property
    def flush_pending(self) -> bool:
        return self._flush_scheduler is not None and self._flush_scheduler.pending

    def _encode_snapshot(self) -> Tuple[int, bytes]:
        self._snapshot_generation += 1
        return self._snapshot_generation, encode_snapshot([layer.to_snapshot() for layer in self.layers])

    def _save_snapshot(self, generation: int, data: bytes) -> bool:
        """Hand data to the sink unless a newer snapshot was already saved."""
        with self._save_lock:
            if generation < self._saved_generation:
                self.logger.debug(f"Skipping snapshot #{generation}: #{self._saved_generation} is newer")
                return False
            self._sink.save(data)
            self._saved_generation = generation
            return True

    def flush(self):
        """Write the full snapshot now. I/O errors propagate to the caller."""
        if self._sink is None:
            return
        generation, data = self._encode_snapshot()
        self._save_snapshot(generation, data)
        self.logger.debug(f"Flushed {len(data):,} byte snapshot to {self._sink.describe()}")

    async def drain(self):
        """Wait for a scheduled flush to finish, re-raising its failure."""
        if self._flush_scheduler is not None:
            await self._flush_scheduler.wait()

    def get_stats(self) -> dict:
        """Get store statistics including every layer."""
        scheduler = self._flush_scheduler
        return {
            "size_bytes": self.size(),
            "xff": self.xff,
            "persist_path": str(self.persist_path) if self.persist_path else None,
            "flush_state": scheduler.state.value if scheduler else None,
            "scheduled_flushes": scheduler.flush_count if scheduler else 0,
            "layers": [layer.get_stats() for layer in self.layers],
        }

    async def cleanup(self):
        """Finish any scheduled flush, then write a final snapshot."""
        await self.drain()
        self.flush()
        self.logger.info("Cleanup complete")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()
