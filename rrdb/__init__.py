"""
rrdb: a fixed-memory, multi-resolution round-robin time-series store.

Samples are kept at several precisions at once, each in a constant-size
circular buffer carved out of one shared backing buffer:
- Fine layer: every 15s for one week
- Medium layer: every minute for three weeks
- Coarse layer: every hour for five years

Data flows: finest -> coarsest, each sealed bucket's mean cascading upward.
"""

from .store import LayeredStore, FlushScheduler, FlushState
from .time_layer import TimeLayer, validate_chain, SLOT_WIDTH
from .config import LayerConfig, StoreConfig, RRDBConfig, get_config, parse_duration
from .interfaces import SnapshotSink
from .snapshot import FileSnapshotSink, LayerRecord
from .errors import RRDBError, ConfigError, LayerChainError, SnapshotError

__all__ = [
    'LayeredStore',
    'FlushScheduler',
    'FlushState',
    'TimeLayer',
    'validate_chain',
    'SLOT_WIDTH',
    'LayerConfig',
    'StoreConfig',
    'RRDBConfig',
    'get_config',
    'parse_duration',
    'SnapshotSink',
    'FileSnapshotSink',
    'LayerRecord',
    'RRDBError',
    'ConfigError',
    'LayerChainError',
    'SnapshotError'
]
