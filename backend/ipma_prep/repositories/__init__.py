"""Repository helpers for the relational remote store."""

from .remote_store import RemoteStore
from .row_mapping import MAPPINGS, SYNCED_COLLECTIONS, EntityMapping, mapping_for

__all__ = ["EntityMapping", "MAPPINGS", "RemoteStore", "SYNCED_COLLECTIONS", "mapping_for"]
