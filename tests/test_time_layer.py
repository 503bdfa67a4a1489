import math

import pytest

from rrdb.errors import LayerChainError, SnapshotError
from rrdb.snapshot import LayerRecord
from rrdb.time_layer import SLOT_WIDTH, TimeLayer, validate_chain


def _bound(precision: int, capacity: int) -> TimeLayer:
    layer = TimeLayer(precision, capacity)
    layer.bind(memoryview(bytearray(layer.byte_size)))
    return layer


def _chain(*shapes) -> list:
    layers = [_bound(p, c) for p, c in shapes]
    for finer, coarser in zip(layers, layers[1:]):
        finer.next = coarser
    return layers


def test_byte_size_and_span():
    layer = TimeLayer(15, 4)
    assert layer.byte_size == 4 * SLOT_WIDTH
    assert layer.span_seconds == 60


def test_unbound_layer_refuses_writes():
    layer = TimeLayer(15, 4)
    with pytest.raises(RuntimeError):
        layer.write(0, 1.0)


def test_bind_rejects_wrong_slice_size():
    layer = TimeLayer(15, 4)
    with pytest.raises(ValueError):
        layer.bind(memoryview(bytearray(layer.byte_size - 1)))


def test_same_bucket_updates_one_slot():
    layer = _bound(15, 4)
    layer.write(16, 10.0)
    layer.write(29, 20.0)

    assert layer.open_bucket == 1
    assert layer.accumulated_count == 2
    assert layer.read_range(15, 30) == [(15, 15.0)]
    assert layer.get_stats()["filled_buckets"] == 1


def test_incremental_mean_handles_uneven_counts():
    layer = _bound(60, 4)
    for value in [1.0, 2.0, 3.0, 4.0, 10.0]:
        layer.write(5, value)
    assert layer.read_range(0, 60) == [(0, pytest.approx(4.0))]


def test_wraparound_keeps_most_recent_buckets():
    layer = _bound(15, 4)
    for i in range(6):
        layer.write(i * 15, float(i))

    assert layer.read_range(30, 90) == [(30, 2.0), (45, 3.0), (60, 4.0), (75, 5.0)]
    # Buckets 0 and 1 were overwritten by 4 and 5
    assert layer.read_range(0, 60) == [(0, None), (15, None), (30, 2.0), (45, 3.0)]


def test_read_wrapping_past_array_end():
    layer = _bound(15, 4)
    for i in range(2, 6):
        layer.write(i * 15, float(i))

    # Bucket 2 sits at index 2, bucket 5 at index 1
    points = layer.read_range(30, 90)
    assert [v for _, v in points] == [2.0, 3.0, 4.0, 5.0]


def test_read_is_clipped_to_capacity():
    layer = _bound(15, 4)
    points = layer.read_range(0, 300)
    assert len(points) == 4
    assert points[0][0] == 240


def test_empty_and_reversed_ranges():
    layer = _bound(15, 4)
    layer.write(0, 1.0)
    assert layer.read_range(30, 30) == []
    assert layer.read_range(45, 15) == []


def test_never_written_buckets_are_gaps_not_zero():
    layer = _bound(15, 4)
    assert layer.read_range(0, 60) == [(0, None), (15, None), (30, None), (45, None)]


def test_negative_read_start_reports_gaps():
    layer = _bound(15, 4)
    layer.write(0, 1.0)
    assert layer.read_range(-15, 15) == [(-15, None), (0, 1.0)]


def test_skipped_buckets_are_reported_missing():
    layer = _bound(15, 20)
    layer.write(0, 5.0)
    layer.write(150, 7.0)

    points = layer.read_range(0, 165)
    assert points[0] == (0, 5.0)
    assert points[-1] == (150, 7.0)
    assert [v for _, v in points[1:-1]] == [None] * 9


def test_skipped_buckets_do_not_expose_stale_values():
    layer = _bound(15, 4)
    for i in range(4):
        layer.write(i * 15, float(i + 1))
    # Jump from bucket 3 to bucket 6: buckets 4 and 5 reuse indices 0 and 1
    layer.write(90, 9.0)

    assert layer.read_range(45, 105) == [(45, 4.0), (60, None), (75, None), (90, 9.0)]


def test_long_gap_clears_every_slot():
    layer = _bound(15, 4)
    for i in range(4):
        layer.write(i * 15, 1.0)
    layer.write(15 * 100, 2.0)

    assert layer.get_stats()["filled_buckets"] == 1
    assert layer.read_range(15 * 97, 15 * 101) == [(1455, None), (1470, None), (1485, None), (1500, 2.0)]


def test_late_samples_are_dropped():
    layer = _bound(15, 4)
    layer.write(30, 1.0)
    layer.write(0, 9.0)

    assert layer.late_samples == 1
    assert layer.read_range(0, 45) == [(0, None), (15, None), (30, 1.0)]


def test_negative_timestamp_rejected():
    layer = _bound(15, 4)
    with pytest.raises(ValueError):
        layer.write(-1, 1.0)


def test_cascade_produces_mean_of_fine_buckets():
    fine, coarse = _chain((15, 8), (60, 4))
    for i, value in enumerate([1.0, 2.0, 3.0, 6.0]):
        fine.write(i * 15, value)
    # Open fine bucket 4, then 8 to seal coarse bucket 0
    fine.write(60, 100.0)
    fine.write(120, 0.0)

    assert coarse.read_range(0, 60) == [(0, pytest.approx(3.0))]
    assert coarse.open_bucket == 1
    assert coarse.read_range(60, 120) == [(60, pytest.approx(100.0))]


def test_cascade_skips_empty_fine_buckets():
    fine, coarse = _chain((15, 8), (60, 4))
    fine.write(0, 4.0)
    fine.write(45, 8.0)
    fine.write(60, 0.0)

    # Only the two populated fine buckets contribute
    assert coarse.read_range(0, 60) == [(0, pytest.approx(6.0))]


def test_cascade_reaches_every_layer():
    fine, medium, coarse = _chain((1, 4), (2, 4), (4, 4))
    for t in range(9):
        fine.write(t, float(t))

    # Coarse bucket 0 saw medium buckets 0 and 1; medium bucket 3 is still open
    assert coarse.read_range(0, 4) == [(0, pytest.approx(1.5))]
    assert coarse.read_range(4, 8) == [(4, pytest.approx(4.5))]


def test_covered():
    layer = TimeLayer(15, 4)
    assert layer.covered(60)
    assert layer.covered(1)
    assert not layer.covered(61)


def test_snapshot_restore_discards_open_bucket():
    layer = _bound(15, 4)
    layer.write(0, 1.0)
    layer.write(15, 3.0)
    record = layer.to_snapshot()

    restored = TimeLayer.from_snapshot(record)
    restored.bind(memoryview(bytearray(restored.byte_size)))
    restored.restore(record.buffer)

    assert restored.read_range(0, 60) == layer.read_range(0, 60)
    assert restored.open_bucket is None

    # The persisted mean of bucket 1 restarts from the next sample
    restored.write(20, 5.0)
    assert restored.read_range(15, 30) == [(15, 5.0)]


def test_from_snapshot_checks_buffer_length():
    with pytest.raises(SnapshotError):
        TimeLayer.from_snapshot(LayerRecord(15, 4, b"\x00" * 10))
    with pytest.raises(SnapshotError):
        TimeLayer.from_snapshot(LayerRecord(0, 4, b""))


@pytest.mark.parametrize("precision, capacity", [(0, 4), (15, 0), (-15, 4), (1.5, 4), (True, 4)])
def test_invalid_layer_shapes(precision, capacity):
    with pytest.raises(LayerChainError):
        TimeLayer(precision, capacity)


def test_validate_chain_accepts_default_shape():
    validate_chain([TimeLayer(15, 40320), TimeLayer(60, 30240), TimeLayer(3600, 43800)])


def test_validate_chain_rejects_misaligned_precision():
    with pytest.raises(LayerChainError) as info:
        validate_chain([TimeLayer(15, 4), TimeLayer(40, 10)])
    assert info.value.position == 1


def test_validate_chain_rejects_shrinking_span():
    with pytest.raises(LayerChainError):
        validate_chain([TimeLayer(15, 8), TimeLayer(30, 4)])


def test_validate_chain_rejects_empty():
    with pytest.raises(LayerChainError):
        validate_chain([])


def test_gap_slots_hold_nan():
    layer = _bound(15, 4)
    layer.write(0, 1.0)
    layer.write(45, 1.0)
    assert math.isnan(layer._slots['value'][1])
