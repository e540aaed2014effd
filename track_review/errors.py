"""Error taxonomy shared by the store, the persistence boundary and bulk transfer."""

from __future__ import annotations

from typing import Sequence


class TrackReviewError(Exception):
    """Base class for all errors raised by track_review."""


class ValidationError(TrackReviewError, ValueError):
    """Malformed input (e.g. non-numeric coordinates).

    Attributes:
        field: Name of the offending draft field, if known. UIs show the message next to it.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class TransportError(TrackReviewError):
    """Network or persistence failure. Retryable; never corrupts in-memory state."""


class ConflictError(TrackReviewError):
    """An operation blocked by the current state of other records."""

    def __init__(self, message: str, child_ids: Sequence[int] = ()) -> None:
        super().__init__(message)
        self.child_ids = tuple(child_ids)


class AnnotationBusyError(ConflictError):
    """A mutation for the same annotation is still waiting for its acknowledgment."""
