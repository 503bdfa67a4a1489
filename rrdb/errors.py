"""
Exceptions raised by the round-robin store.

Load-time snapshot problems are raised as SnapshotError internally and
recovered by LayeredStore; they never reach the caller. Configuration and
layer-chain problems are raised at construction.
"""


class RRDBError(Exception):
    """Base class for all rrdb errors."""


class ConfigError(RRDBError, ValueError):
    """Raised when a configuration value is missing, unknown or out of range."""


class LayerChainError(RRDBError, ValueError):
    """Raised when a layer chain cannot cascade cleanly.

    Attributes:
        position: Index of the offending layer in the chain, if known
    """

    def __init__(self, message: str, position: int = None):
        self.position = position
        if position is not None:
            message = f"layer {position}: {message}"
        super().__init__(message)


class SnapshotError(RRDBError):
    """Raised when a persisted snapshot cannot be decoded or restored."""
