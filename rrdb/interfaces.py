"""
Interfaces for the collaborators a LayeredStore talks to.
"""

from abc import ABC, abstractmethod
from typing import Optional


class SnapshotSink(ABC):
    """Durable home for a whole-store snapshot."""

    @abstractmethod
    def load(self) -> Optional[bytes]:
        """
        Read the complete snapshot into memory.
        Returns None when no snapshot has been written yet.
        """
        pass

    @abstractmethod
    def save(self, data: bytes) -> None:
        """
        Replace the stored snapshot with data.
        Errors propagate to the caller; sinks must not retry.
        """
        pass

    def describe(self) -> str:
        """Human-readable destination for log messages."""
        return type(self).__name__
