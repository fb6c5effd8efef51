"""Envelope-wrapped collection cache on top of a local key-value store.

Collections are written as ``{"data": [...], "timestamp": ..., "count": n}``.
Older writers stored the bare array, so readers accept both shapes. Neither
``save`` nor ``load`` ever raises to the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Literal, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaValidationError

from ..errors import CacheCorruptionError
from ..models import DomainModel, utcnow
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _EnvelopePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    data: List[Any]
    timestamp: Optional[str] = None
    count: Optional[int] = None


@dataclass(frozen=True)
class Envelope:
    data: List[Any]
    timestamp: Optional[str]
    count: int


@dataclass(frozen=True)
class LegacyArray:
    data: List[Any]


@dataclass(frozen=True)
class DecodeFailure:
    error: CacheCorruptionError


DecodeResult = Union[Envelope, LegacyArray, DecodeFailure]


def legacy_array_to_envelope(items: Sequence[Any], timestamp: Optional[str] = None) -> Envelope:
    data = list(items)
    return Envelope(data=data, timestamp=timestamp, count=len(data))


def decode_envelope(key: str, raw: str) -> DecodeResult:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return DecodeFailure(CacheCorruptionError(key, f"invalid JSON ({exc})"))

    if isinstance(parsed, list):
        return LegacyArray(parsed)
    if isinstance(parsed, dict):
        try:
            payload = _EnvelopePayload.model_validate(parsed)
        except SchemaValidationError as exc:
            return DecodeFailure(CacheCorruptionError(key, f"envelope without a data array ({exc.error_count()} errors)"))
        return Envelope(data=payload.data, timestamp=payload.timestamp, count=len(payload.data))
    return DecodeFailure(CacheCorruptionError(key, f"unexpected JSON {type(parsed).__name__}"))


@dataclass(frozen=True)
class CacheKeyStatus:
    key: str
    status: Literal["ok", "missing", "error"]
    count: int = 0
    timestamp: Optional[str] = None
    format: Optional[Literal["envelope", "legacy"]] = None
    error: Optional[str] = None


class KeyValueCache:
    """Mirror of whole collections into the local key-value store."""

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> KeyValueStore:
        return self._store

    def save(self, key: str, items: Sequence[Any]) -> bool:
        data = [item.to_cache() if isinstance(item, DomainModel) else item for item in items]
        envelope = {
            "data": data,
            "timestamp": self._clock().isoformat(),
            "count": len(data),
        }
        try:
            self._store.set(key, json.dumps(envelope))
            logger.debug("Saved %d items to %s", len(data), key)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to save %s to local cache: %s", key, exc)

        try:
            self._store.set(key, json.dumps(data))
            logger.info("Fallback bare-array save succeeded for %s", key)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error("Fallback save also failed for %s: %s", key, exc)
        return False

    def load(self, key: str, fallback: List[Any]) -> List[Any]:
        try:
            raw = self._store.get(key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to read %s from local cache: %s", key, exc)
            return fallback
        if raw is None:
            return fallback

        result = decode_envelope(key, raw)
        if isinstance(result, DecodeFailure):
            logger.warning("%s; using fallback", result.error)
            return fallback
        if isinstance(result, LegacyArray):
            result = legacy_array_to_envelope(result.data)
        else:
            logger.debug("Loaded %d items from %s (timestamp: %s)", result.count, key, result.timestamp)
        return result.data

    def load_models(self, key: str, model: Type[ModelT], fallback: List[ModelT]) -> List[ModelT]:
        """Load ``key`` and validate each record, dropping records that no longer parse."""
        records = self.load(key, fallback)
        if records is fallback:
            return fallback
        parsed: List[ModelT] = []
        for record in records:
            try:
                parsed.append(model.model_validate(record))
            except SchemaValidationError as exc:
                logger.warning("Dropping unreadable %s record from %s: %s", model.__name__, key, exc)
        return parsed

    def remove(self, key: str) -> None:
        try:
            self._store.remove(key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to remove %s from local cache: %s", key, exc)

    def inspect(self, key: str) -> CacheKeyStatus:
        try:
            raw = self._store.get(key)
        except Exception as exc:  # noqa: BLE001
            return CacheKeyStatus(key=key, status="error", error=str(exc))
        if raw is None:
            return CacheKeyStatus(key=key, status="missing")
        result = decode_envelope(key, raw)
        if isinstance(result, DecodeFailure):
            return CacheKeyStatus(key=key, status="error", error=result.error.reason)
        if isinstance(result, LegacyArray):
            return CacheKeyStatus(key=key, status="ok", count=len(result.data), format="legacy")
        return CacheKeyStatus(
            key=key,
            status="ok",
            count=result.count,
            timestamp=result.timestamp,
            format="envelope",
        )


__all__ = [
    "CacheKeyStatus",
    "DecodeFailure",
    "DecodeResult",
    "Envelope",
    "KeyValueCache",
    "LegacyArray",
    "decode_envelope",
    "legacy_array_to_envelope",
]
