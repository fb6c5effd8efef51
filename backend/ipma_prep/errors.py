"""Error taxonomy shared by the sync engine and the exam flow."""

from __future__ import annotations

from typing import Optional


class ValidationError(ValueError):
    """Bad caller input. Raised before any state changes or remote calls."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class RemoteOperationError(RuntimeError):
    """A RemoteStore call failed (network, auth or server side)."""

    def __init__(self, collection: str, operation: str, detail: str) -> None:
        super().__init__(f"Remote {operation} on '{collection}' failed: {detail}")
        self.collection = collection
        self.operation = operation
        self.detail = detail


class CacheCorruptionError(ValueError):
    """Local cache payload could not be decoded. Never propagated past the cache."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Cached value for '{key}' is unusable: {reason}")
        self.key = key
        self.reason = reason


class CascadeConsistencyWarning(UserWarning):
    """A dependent cleanup step failed after its parent change was applied."""

    def __init__(self, parent: str, step: str, detail: str) -> None:
        super().__init__(f"Cascade step '{step}' for {parent} failed: {detail}")
        self.parent = parent
        self.step = step
        self.detail = detail


class AttemptStateError(RuntimeError):
    """An attempt (or one of its items) was mutated after reaching a terminal state."""


__all__ = [
    "AttemptStateError",
    "CacheCorruptionError",
    "CascadeConsistencyWarning",
    "RemoteOperationError",
    "ValidationError",
]
