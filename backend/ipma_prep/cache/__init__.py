"""Local key-value caching of synced collections."""

from .collection_cache import KeyValueCache, decode_envelope, legacy_array_to_envelope
from .kv_store import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore, build_store

__all__ = [
    "JsonFileKeyValueStore",
    "KeyValueCache",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "build_store",
    "decode_envelope",
    "legacy_array_to_envelope",
]
