"""Exception taxonomy for the knowledge engine.

Input errors (``ValidationError``, ``NotFoundError``) are raised straight to
the caller. Persistence and resource errors are raised by the storage code
and absorbed by :mod:`graphrag_local.resilience`, which turns them into
status signals.
"""

from __future__ import annotations


class GraphRAGError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(GraphRAGError):
    """Bad input. The operation was rejected and no state changed."""


class NotFoundError(GraphRAGError):
    """Reference to a document or chunk that does not exist."""


class CorruptionError(GraphRAGError):
    """Persisted bytes exist but fail structural validation or checksum."""


class UnsupportedVersionError(GraphRAGError):
    def __init__(self, found: int, supported: int) -> None:
        super().__init__(f"Snapshot schema version {found} is not supported (this build reads 1..{supported})")
        self.found = found
        self.supported = supported


class QuotaExceededError(GraphRAGError):
    """Raised by a storage backend when a write does not fit."""


class StorageExhausted(GraphRAGError):
    """Persistence is disabled after a save could not be recovered."""


class QuerySuperseded(GraphRAGError):
    """A newer query for the same chat turn replaced this one."""
