import pytest

from rrdb.config import LayerConfig, reset_config
from rrdb.store import LayeredStore


RRDB_ENV_VARS = [
    "RRDB_PERSIST_PATH",
    "RRDB_XFF",
    "RRDB_FLUSH_DELAY_MS",
    "RRDB_LOG_LEVEL",
    "RRDB_LOG_DIR",
]


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    for name in RRDB_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def two_layer_store():
    """15s x 8 buckets cascading into 60s x 4 buckets."""
    return LayeredStore(layers=[LayerConfig(15, 8), LayerConfig(60, 4)])
