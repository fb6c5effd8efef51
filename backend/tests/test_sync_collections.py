from __future__ import annotations

from pathlib import Path

from ipma_prep.cache.keys import COLLECTION_KEYS
from ipma_prep.errors import RemoteOperationError
from ipma_prep.reconciliation import ReconciliationEngine
from scripts import sync_collections as tool


def test_backup_then_restore_with_push(
    loaded_engine: ReconciliationEngine, remote, tmp_path: Path, capsys
) -> None:
    assert tool.run(tool.parse_args(["backup", "--output-dir", str(tmp_path)]), loaded_engine) == 0
    (backup_file,) = tmp_path.glob("ipma-backup-*.json")
    assert "Wrote" in capsys.readouterr().out

    remote.delete("topics", "topic_seed_risk")

    code = tool.run(tool.parse_args(["restore", str(backup_file), "--push"]), loaded_engine)

    assert code == 0
    assert any(topic.id == "topic_seed_risk" for topic in remote.list_all("topics"))
    assert "topics" in capsys.readouterr().out


def test_integrity_exit_code(loaded_engine: ReconciliationEngine, kv_store, capsys) -> None:
    assert tool.run(tool.parse_args(["integrity"]), loaded_engine) == 0

    kv_store.set(COLLECTION_KEYS["questions"], "[broken")

    assert tool.run(tool.parse_args(["integrity"]), loaded_engine) == 2
    assert '"ipma_questions": "error"' in capsys.readouterr().out


def test_main_returns_one_when_remote_is_down(monkeypatch) -> None:
    def unavailable(args, engine) -> int:
        raise RemoteOperationError("topics", "list", "connection refused")

    monkeypatch.setattr(tool, "run", unavailable)
    monkeypatch.setattr(tool.ReconciliationEngine, "from_settings", classmethod(lambda cls, settings=None: None))

    assert tool.main(["pull"]) == 1
