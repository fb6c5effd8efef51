"""Full and per-user backups, restore, and a local cache integrity report."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .cache.collection_cache import CacheKeyStatus, KeyValueCache
from .cache.keys import COLLECTION_KEYS, SESSIONS_KEY, attempt_items_key, attempts_key
from .models import Attempt, AttemptItem, UserProfile, utcnow
from .reconciliation import SNAPSHOT_VERSION, DataSnapshot, ReconciliationEngine

logger = logging.getLogger(__name__)

BACKUP_SAFETY_KEY = "ipma_backup_safety"


class UserBackup(BaseModel):
    version: str = SNAPSHOT_VERSION
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: str
    user_profile: Optional[UserProfile] = None
    attempts: List[Attempt] = Field(default_factory=list)
    attempt_items: List[AttemptItem] = Field(default_factory=list)


def create_backup(engine: ReconciliationEngine) -> DataSnapshot:
    snapshot = engine.export_snapshot()
    logger.info(
        "Created backup with %d records (%d attempts)",
        snapshot.metadata.record_count,
        len(snapshot.attempts),
    )
    return snapshot


def create_user_backup(engine: ReconciliationEngine, user_id: str) -> UserBackup:
    cache = engine.cache
    attempts = cache.load_models(attempts_key(user_id), Attempt, [])
    attempt_ids = {attempt.id for attempt in attempts}
    items = [
        item
        for item in cache.load_models(attempt_items_key(user_id), AttemptItem, [])
        if item.attempt_id in attempt_ids
    ]
    return UserBackup(
        timestamp=engine.clock(),
        user_id=user_id,
        user_profile=engine.get_user(user_id),
        attempts=attempts,
        attempt_items=items,
    )


def restore_backup(engine: ReconciliationEngine, snapshot: DataSnapshot, *, keep_safety_copy: bool = True) -> None:
    """Replace local state with ``snapshot``; the previous state is kept under a safety key."""
    if snapshot.metadata.version != SNAPSHOT_VERSION:
        logger.warning(
            "Backup version mismatch (backup %s, current %s)", snapshot.metadata.version, SNAPSHOT_VERSION
        )
    if keep_safety_copy:
        _store_safety_copy(engine, "restore")
    engine.import_snapshot(snapshot)
    logger.info("Restored backup from %s", snapshot.metadata.timestamp.isoformat())


def clear_all_data(engine: ReconciliationEngine, *, keep_safety_copy: bool = True) -> None:
    """Empty every local collection. The remote store is left as it is."""
    if keep_safety_copy:
        _store_safety_copy(engine, "clear")
    engine.clear_all()
    logger.info("Cleared all local collections")


def _store_safety_copy(engine: ReconciliationEngine, action: str) -> None:
    safety = engine.export_snapshot()
    try:
        engine.cache.store.set(BACKUP_SAFETY_KEY, safety.model_dump_json())
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not store safety backup before %s: %s", action, exc)


def restore_user_backup(engine: ReconciliationEngine, backup: UserBackup) -> None:
    cache = engine.cache
    restored_ids = {attempt.id for attempt in backup.attempts}
    existing_items = [
        item
        for item in cache.load_models(attempt_items_key(backup.user_id), AttemptItem, [])
        if item.attempt_id not in restored_ids
    ]
    cache.save(attempts_key(backup.user_id), backup.attempts)
    cache.save(attempt_items_key(backup.user_id), [*existing_items, *backup.attempt_items])
    if backup.user_profile is not None:
        engine.restore_record("users", backup.user_profile)
    logger.info("Restored %d attempts for %s", len(backup.attempts), backup.user_id)


def write_backup_file(snapshot: DataSnapshot, path: Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
    return target


def read_backup_file(path: Path) -> DataSnapshot:
    return DataSnapshot.model_validate_json(Path(path).read_text(encoding="utf-8"))


def default_backup_name(snapshot: DataSnapshot) -> str:
    return f"ipma-backup-{snapshot.metadata.timestamp.date().isoformat()}.json"


def validate_data_integrity(cache: KeyValueCache, user_ids: Iterable[str] = ()) -> Dict[str, CacheKeyStatus]:
    """Report ``ok``/``missing``/``error`` for every collection key and the given users' attempt keys."""
    keys = [*COLLECTION_KEYS.values(), SESSIONS_KEY]
    for user_id in user_ids:
        keys.extend((attempts_key(user_id), attempt_items_key(user_id)))
    report = {key: cache.inspect(key) for key in keys}
    broken = [key for key, status in report.items() if status.status == "error"]
    if broken:
        logger.warning("Local cache keys with unreadable data: %s", json.dumps(broken))
    return report


__all__ = [
    "BACKUP_SAFETY_KEY",
    "UserBackup",
    "clear_all_data",
    "create_backup",
    "create_user_backup",
    "default_backup_name",
    "read_backup_file",
    "restore_backup",
    "restore_user_backup",
    "validate_data_integrity",
    "write_backup_file",
]
