"""Retry-with-backoff delivery of queued remote writes."""

from __future__ import annotations

from typing import List, Tuple

from ipma_prep.errors import RemoteOperationError
from ipma_prep.models import DomainModel, Topic
from ipma_prep.outbox import RemoteOutbox
from ipma_prep.telemetry import recent_events


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _RecordingRemote:
    def __init__(self) -> None:
        self.failures_left = 0
        self.calls: List[Tuple[str, str, str]] = []

    def upsert(self, collection: str, entity: DomainModel) -> None:
        self._maybe_fail(collection, "upsert")
        self.calls.append(("upsert", collection, entity.id))  # type: ignore[attr-defined]

    def delete(self, collection: str, entity_id: str) -> None:
        self._maybe_fail(collection, "delete")
        self.calls.append(("delete", collection, entity_id))

    def _maybe_fail(self, collection: str, operation: str) -> None:
        if self.failures_left:
            self.failures_left -= 1
            raise RemoteOperationError(collection, operation, "timeout")


def test_backoff_doubles_and_caps() -> None:
    outbox = RemoteOutbox(_RecordingRemote(), base_delay=1.0, max_delay=5.0)

    assert [outbox.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_failed_write_waits_for_backoff_then_delivers() -> None:
    remote = _RecordingRemote()
    remote.failures_left = 1
    clock = _Clock()
    outbox = RemoteOutbox(remote, base_delay=2.0, clock=clock)
    outbox.enqueue_upsert("topics", Topic(id="t1", title="Risk"))

    first = outbox.drain()
    assert first.failed == 1
    assert first.pending == 1
    assert outbox.pending()[0].last_error is not None

    clock.now += 1.0
    assert outbox.drain().delivered == 0

    clock.now += 1.5
    assert outbox.drain().delivered == 1
    assert remote.calls == [("upsert", "topics", "t1")]
    assert outbox.pending() == []


def test_operations_for_one_entity_stay_in_order() -> None:
    remote = _RecordingRemote()
    remote.failures_left = 1
    outbox = RemoteOutbox(remote, base_delay=10.0, clock=_Clock())
    outbox.enqueue_upsert("topics", Topic(id="t1", title="Risk"))
    outbox.enqueue_delete("topics", "t1")
    outbox.enqueue_upsert("topics", Topic(id="t2", title="Scope"))

    report = outbox.drain()

    # The delete for t1 must not overtake the failed upsert; t2 is independent.
    assert report.delivered == 1
    assert remote.calls == [("upsert", "topics", "t2")]

    outbox.drain(force=True)
    assert remote.calls[1:] == [("upsert", "topics", "t1"), ("delete", "topics", "t1")]


def test_dead_letter_after_max_attempts_and_retry() -> None:
    remote = _RecordingRemote()
    remote.failures_left = 3
    outbox = RemoteOutbox(remote, max_attempts=3, clock=_Clock())
    outbox.enqueue_delete("kpis", "k1")

    for _ in range(3):
        outbox.drain(force=True)

    assert outbox.pending() == []
    (dead,) = outbox.dead_letters()
    assert dead.attempts == 3
    assert recent_events("remote_write_dead_lettered")[-1].payload["entity_id"] == "k1"
    assert len(recent_events("remote_write_failed")) == 2

    assert outbox.retry_dead_letters() == 1
    assert outbox.drain().delivered == 1
    assert remote.calls == [("delete", "kpis", "k1")]


def test_worker_thread_delivers_and_stop_flushes() -> None:
    remote = _RecordingRemote()
    outbox = RemoteOutbox(remote, poll_interval=0.01)
    outbox.start()
    outbox.enqueue_upsert("topics", Topic(id="t1", title="Risk"))
    outbox.stop(flush=True)

    assert remote.calls == [("upsert", "topics", "t1")]
    assert outbox.pending() == []
