"""
Exception taxonomy shared by the API clients and the sync engine.

- TransientError / RateLimitedError: retried with exponential backoff.
- StaleReferenceError: a mapped id no longer resolves on its side. Never
  retried; callers clear the mapping and re-derive it.
- ConfigurationError: missing credentials or identifiers. Fails at startup.
- PersistenceError: the mapping file could not be read or written.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync errors."""


class TransientError(SyncError):
    """Network failure or 5xx response that is worth retrying."""


class RateLimitedError(TransientError):
    """The remote API asked us to slow down."""

    def __init__(self, service: str, retry_after: Optional[float] = None):
        self.service = service
        self.retry_after = retry_after
        message = f"{service} rate limit hit"
        if retry_after is not None:
            message += f" (retry after {retry_after:.2f}s)"
        super().__init__(message)


class StaleReferenceError(SyncError):
    """A referenced entity no longer exists on its target side."""

    def __init__(self, service: str, entity_id: str):
        self.service = service
        self.entity_id = entity_id
        super().__init__(f"{service} entity {entity_id} no longer exists")


class ConfigurationError(SyncError):
    """Required configuration is missing or rejected by the remote side."""


class PersistenceError(SyncError):
    """Durable mapping storage failed."""


class QueueStoppedError(SyncError):
    """The rate limited queue was stopped before the item was launched."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue '{queue_name}' stopped before the request ran")
