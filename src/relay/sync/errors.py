"""Error kinds raised and handled by the sync engine.

- ValidationError: a mapped entity lacks a required field (e.g. no email).
  Terminal, never retried.
- UpstreamError: a BigCommerce or HubSpot call failed. Retried by the
  BackoffExecutor, then surfaced as a failed SyncAttempt.
- AuditError: the audit store is unavailable. Always contained by SyncAuditLog.
- ConfigurationError: the stage mapping store is corrupt or unreadable.
  Reads fall back to defaults; only explicit admin writes propagate it.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync engine errors."""


class ValidationError(SyncError):
    """A mapped entity is missing a mandatory field."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class UpstreamError(SyncError):
    """A vendor API call failed.

    Carries enough structured detail for the audit log and operator
    diagnosis without holding on to the raw HTTP response object.
    """

    def __init__(
        self,
        message: str,
        *,
        service: str,
        operation: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.operation = operation
        self.status_code = status_code
        self.response_text = response_text

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class AuditError(SyncError):
    """The sync audit store could not be read or written."""


class ConfigurationError(SyncError):
    """Persisted configuration is unreadable or could not be written."""
