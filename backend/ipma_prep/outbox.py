"""Queue of pending remote writes, delivered with retry-with-backoff.

Content mutations never wait on the network: the engine enqueues the remote
upsert/delete here and a worker (or an explicit ``drain``) delivers it later.
Operations for the same entity are delivered in enqueue order; an entity whose
earliest pending operation is waiting on a retry blocks its later operations.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Literal, Optional, Protocol, Set, Tuple

from .errors import RemoteOperationError
from .models import DomainModel, new_id
from .telemetry import emit_event

logger = logging.getLogger(__name__)

OutboxAction = Literal["upsert", "delete"]


class RemoteWriter(Protocol):
    def upsert(self, collection: str, entity: DomainModel) -> None:  # pragma: no cover - protocol definition
        ...

    def delete(self, collection: str, entity_id: str) -> None:  # pragma: no cover - protocol definition
        ...


@dataclass
class OutboxOperation:
    collection: str
    action: OutboxAction
    entity_id: str
    entity: Optional[DomainModel] = None
    id: str = field(default_factory=lambda: new_id("op"))
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None

    @property
    def target(self) -> Tuple[str, str]:
        return (self.collection, self.entity_id)


@dataclass(frozen=True)
class OutboxDrainReport:
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0
    pending: int = 0


class RemoteOutbox:
    def __init__(
        self,
        remote: RemoteWriter,
        *,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._remote = remote
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._poll_interval = poll_interval
        self._clock = clock
        self._queue: Deque[OutboxOperation] = deque()
        self._dead_letters: List[OutboxOperation] = []
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def enqueue_upsert(self, collection: str, entity: DomainModel) -> OutboxOperation:
        entity_id = getattr(entity, "id")
        operation = OutboxOperation(collection=collection, action="upsert", entity_id=entity_id, entity=entity)
        return self._enqueue(operation)

    def enqueue_delete(self, collection: str, entity_id: str) -> OutboxOperation:
        return self._enqueue(OutboxOperation(collection=collection, action="delete", entity_id=entity_id))

    def _enqueue(self, operation: OutboxOperation) -> OutboxOperation:
        with self._lock:
            operation.next_attempt_at = self._clock()
            self._queue.append(operation)
        logger.debug("Queued remote %s for %s/%s", operation.action, operation.collection, operation.entity_id)
        return operation

    def pending(self) -> List[OutboxOperation]:
        with self._lock:
            return list(self._queue)

    def dead_letters(self) -> List[OutboxOperation]:
        with self._lock:
            return list(self._dead_letters)

    def retry_dead_letters(self) -> int:
        """Move every dead-lettered operation back onto the queue with its attempt count reset."""
        with self._lock:
            revived = list(self._dead_letters)
            self._dead_letters.clear()
            now = self._clock()
            for operation in revived:
                operation.attempts = 0
                operation.next_attempt_at = now
                self._queue.append(operation)
        return len(revived)

    def backoff_delay(self, attempts: int) -> float:
        return min(self._max_delay, self._base_delay * (2 ** max(0, attempts - 1)))

    def drain(self, *, force: bool = False) -> OutboxDrainReport:
        """Deliver every due operation once. ``force`` ignores backoff schedules."""
        with self._drain_lock:
            with self._lock:
                batch = list(self._queue)
            now = self._clock()
            blocked: Set[Tuple[str, str]] = set()
            delivered = failed = dead_lettered = 0

            for operation in batch:
                if operation.target in blocked:
                    continue
                if not force and operation.next_attempt_at > now:
                    blocked.add(operation.target)
                    continue
                try:
                    self._deliver(operation)
                except RemoteOperationError as exc:
                    blocked.add(operation.target)
                    if self._record_failure(operation, str(exc)):
                        dead_lettered += 1
                    else:
                        failed += 1
                    continue
                with self._lock:
                    self._queue.remove(operation)
                delivered += 1

            with self._lock:
                remaining = len(self._queue)

        report = OutboxDrainReport(
            delivered=delivered, failed=failed, dead_lettered=dead_lettered, pending=remaining
        )
        if delivered or failed or dead_lettered:
            emit_event(
                "outbox_drained",
                delivered=delivered,
                failed=failed,
                dead_lettered=dead_lettered,
                pending=remaining,
            )
        return report

    def _deliver(self, operation: OutboxOperation) -> None:
        if operation.action == "upsert":
            assert operation.entity is not None
            self._remote.upsert(operation.collection, operation.entity)
        else:
            self._remote.delete(operation.collection, operation.entity_id)

    def _record_failure(self, operation: OutboxOperation, error: str) -> bool:
        """Returns True when the operation ran out of attempts and was dead-lettered."""
        with self._lock:
            operation.attempts += 1
            operation.last_error = error
            if operation.attempts >= self._max_attempts:
                self._queue.remove(operation)
                self._dead_letters.append(operation)
                exhausted = True
            else:
                operation.next_attempt_at = self._clock() + self.backoff_delay(operation.attempts)
                exhausted = False

        if exhausted:
            logger.error(
                "Giving up on remote %s for %s/%s after %d attempts: %s",
                operation.action,
                operation.collection,
                operation.entity_id,
                operation.attempts,
                error,
            )
            emit_event(
                "remote_write_dead_lettered",
                collection=operation.collection,
                action=operation.action,
                entity_id=operation.entity_id,
                attempts=operation.attempts,
                error=error,
            )
        else:
            logger.warning(
                "Remote %s for %s/%s failed (attempt %d), retrying: %s",
                operation.action,
                operation.collection,
                operation.entity_id,
                operation.attempts,
                error,
            )
            emit_event(
                "remote_write_failed",
                collection=operation.collection,
                action=operation.action,
                entity_id=operation.entity_id,
                attempts=operation.attempts,
                error=error,
            )
        return exhausted

    def start(self) -> None:
        """Run ``drain`` on a daemon thread every poll interval until ``stop``."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="ipma-outbox", daemon=True)
        self._worker.start()

    def stop(self, *, flush: bool = True, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        if flush:
            self.drain(force=True)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.drain()
            except Exception:  # noqa: BLE001
                logger.exception("Outbox worker iteration failed")
            self._stop_event.wait(self._poll_interval)


__all__ = ["OutboxDrainReport", "OutboxOperation", "RemoteOutbox", "RemoteWriter"]
