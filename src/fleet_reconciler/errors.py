"""Error taxonomy for reconciliation and handoff.

Every error can carry the key of the object it concerns so callers can
log it and retry from their outer reconcile loop. Cancellation is
signalled by asyncio.CancelledError and is never wrapped.
"""

from __future__ import annotations

from .models import ObjectKey


class ReconcileError(Exception):
    """Base class for all reconciliation errors."""

    def __init__(self, message: str, key: ObjectKey | None = None):
        self.key = key
        if key is not None:
            message = f"{message}: {key}"
        super().__init__(message)


class NotFoundError(ReconcileError):
    """Raised when the target object does not exist."""

    pass


class ConflictError(ReconcileError):
    """Raised when the stored object changed since it was read."""

    pass


class AlreadyExistsError(ConflictError):
    """Raised when a create races with another writer."""

    pass


class ConflictExceededError(ReconcileError):
    """Raised when conflicts persist after the bounded number of attempts."""

    def __init__(self, key: ObjectKey, attempts: int):
        self.attempts = attempts
        super().__init__(f"Update still conflicting after {attempts} attempts", key)


class UnknownRoleError(ReconcileError):
    """Raised when no type set is registered for a cluster role."""

    pass


class UnsupportedKindError(ReconcileError):
    """Raised when a kind is outside the type set of a cluster role."""

    pass


class EncodingError(ReconcileError):
    """Raised when objects cannot be serialized into a bundle."""

    pass


class MissingSecretError(ReconcileError):
    """Raised when a secret owned by the secrets manager is absent."""

    pass


class MissingCAError(MissingSecretError):
    """Raised when the cluster CA secret is absent."""

    pass


class ApiError(ReconcileError):
    """Raised for any other cluster API failure."""

    def __init__(self, message: str, status: int | None = None, key: ObjectKey | None = None):
        self.status = status
        super().__init__(message, key)


class DeadlineExceededError(ReconcileError, TimeoutError):
    """Raised when a call does not finish before its deadline."""

    pass
