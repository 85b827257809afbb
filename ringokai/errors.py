"""Exceptions reported by the core operations."""

from __future__ import annotations


class RingokaiError(Exception):
    """Base exception for all core errors."""


class NotFoundError(RingokaiError):
    """Raised when an entity is absent or not visible to the requester."""


class ForbiddenError(RingokaiError):
    """Raised when an entity exists but belongs to someone else."""


class InvalidStateError(RingokaiError):
    """Raised when an operation is not legal from the current status."""


class ConflictError(RingokaiError):
    """Raised internally when a concurrent writer won a race.

    Callers of the public operations never see this; it is resolved into the
    documented fallback behaviour.
    """


class InternalError(RingokaiError):
    """Raised when the persistent store fails."""


__all__ = [
    "RingokaiError",
    "NotFoundError",
    "ForbiddenError",
    "InvalidStateError",
    "ConflictError",
    "InternalError",
]
