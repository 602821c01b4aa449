"""Exceptions raised by the memory engine.

Not-found is never an exception here: lookups return ``None`` and callers
treat the memory as absent.
"""

from pathlib import Path
from typing import Optional


class BrainMemoryError(RuntimeError):
    """Base class for memory engine problems."""


class ConfigError(BrainMemoryError, ValueError):
    """Raised when an EngineConfig value is rejected at load time."""


class MemoryCorruptionError(BrainMemoryError):
    """A persisted record or state file failed structural validation."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path
