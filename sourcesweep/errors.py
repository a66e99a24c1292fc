from __future__ import annotations

from typing import Optional


class SweepError(Exception):
    """Base class for SourceSweep errors."""


class TransientNetworkError(SweepError):
    """A reachability probe failed; callers map this to unreachable."""


class RemoteOperationError(SweepError):
    """The inventory answered a fetch/write/delete with a failure."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(SweepError):
    """Trigger input was rejected before any job was created."""


class EntityNotFoundError(SweepError):
    """Unknown job or rollback id."""


class IntegrityError(SweepError):
    """A persisted rollback record failed checksum verification."""
