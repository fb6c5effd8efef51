"""Single owner of the in-memory content, account and subscription collections.

The engine loads every collection once at startup (remote, then the local
cache, then bundled seed data), applies mutations to memory first, mirrors the
whole collection to the local cache and hands the remote write to the outbox.
Remote failures never roll back a local change.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaValidationError

from .cache.collection_cache import KeyValueCache
from .cache.keys import SESSIONS_KEY, attempt_items_key, attempts_key, collection_key
from .cache.kv_store import build_store
from .config import Settings, get_settings
from .db.session import build_session_factory, create_engine_for_url
from .errors import CascadeConsistencyWarning, ValidationError
from .models import (
    KPI,
    Attempt,
    AttemptItem,
    CompanyCode,
    DomainModel,
    Question,
    SampleAnswer,
    Subscription,
    Subtopic,
    Topic,
    TrainingExample,
    UserProfile,
    UserSession,
    utcnow,
)
from .outbox import RemoteOutbox
from .repositories.remote_store import RemoteStore
from .repositories.row_mapping import SYNCED_COLLECTIONS, mapping_for
from .seed_data import seed_collections
from .telemetry import emit_event
from .validation import (
    require_reference,
    sanitize_input,
    validate_answer,
    validate_company_code,
    validate_email,
    validate_kpi_name,
    validate_quality_rating,
    validate_question_prompt,
    validate_subtopic_title,
    validate_topic_title,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"
_READ_ONLY_FIELDS = frozenset({"id", "created_at", "updated_at"})

EntityT = TypeVar("EntityT", bound=DomainModel)
DataSource = Literal["remote", "cache"]


@dataclass(frozen=True)
class LoadReport:
    source: DataSource
    counts: Dict[str, int]
    seeded: Tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass
class CollectionSyncStats:
    pulled: int = 0
    pushed: int = 0
    unchanged: int = 0


@dataclass
class SyncReport:
    direction: Literal["pull", "push"]
    collections: Dict[str, CollectionSyncStats] = field(default_factory=dict)

    @property
    def pulled(self) -> int:
        return sum(stats.pulled for stats in self.collections.values())

    @property
    def pushed(self) -> int:
        return sum(stats.pushed for stats in self.collections.values())

    @property
    def unchanged(self) -> int:
        return sum(stats.unchanged for stats in self.collections.values())


class SnapshotMetadata(BaseModel):
    version: str = SNAPSHOT_VERSION
    timestamp: datetime = Field(default_factory=utcnow)
    record_count: int = 0


class DataSnapshot(BaseModel):
    """Every collection plus per-user attempts, as exported for backup and restore."""

    topics: List[Topic] = Field(default_factory=list)
    subtopics: List[Subtopic] = Field(default_factory=list)
    questions: List[Question] = Field(default_factory=list)
    kpis: List[KPI] = Field(default_factory=list)
    company_codes: List[CompanyCode] = Field(default_factory=list)
    sample_answers: List[SampleAnswer] = Field(default_factory=list)
    training_examples: List[TrainingExample] = Field(default_factory=list)
    users: List[UserProfile] = Field(default_factory=list)
    subscriptions: List[Subscription] = Field(default_factory=list)
    sessions: List[UserSession] = Field(default_factory=list)
    attempts: List[Attempt] = Field(default_factory=list)
    attempt_items: List[AttemptItem] = Field(default_factory=list)
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)

    def collection(self, name: str) -> List[DomainModel]:
        return list(getattr(self, name))


class ReconciliationEngine:
    def __init__(
        self,
        remote: RemoteStore,
        cache: KeyValueCache,
        *,
        outbox: Optional[RemoteOutbox] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        seed: Callable[[], Dict[str, List[DomainModel]]] = seed_collections,
    ) -> None:
        self._settings = settings or get_settings()
        self._remote = remote
        self._cache = cache
        self._outbox = outbox or RemoteOutbox(
            remote,
            max_attempts=self._settings.outbox_max_attempts,
            base_delay=self._settings.outbox_base_delay_seconds,
            max_delay=self._settings.outbox_max_delay_seconds,
            poll_interval=self._settings.outbox_poll_interval_seconds,
        )
        self._clock = clock
        self._seed = seed
        self._lock = threading.RLock()
        self._collections: Dict[str, List[DomainModel]] = {name: [] for name in SYNCED_COLLECTIONS}
        self._sessions: List[UserSession] = []
        self._cascade_warnings: List[CascadeConsistencyWarning] = []
        self._loaded = threading.Event()
        self.source: Optional[DataSource] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReconciliationEngine":
        resolved = settings or get_settings()
        cache = KeyValueCache(build_store(resolved.cache_path))
        session_factory = None
        if resolved.database_url:
            session_factory = build_session_factory(
                create_engine_for_url(
                    resolved.database_url,
                    echo=resolved.database_echo,
                    pool_size=resolved.database_pool_size,
                    max_overflow=resolved.database_max_overflow,
                )
            )
        return cls(RemoteStore(session_factory), cache, settings=resolved)

    @property
    def remote(self) -> RemoteStore:
        return self._remote

    @property
    def cache(self) -> KeyValueCache:
        return self._cache

    @property
    def outbox(self) -> RemoteOutbox:
        return self._outbox

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    @property
    def cascade_warnings(self) -> List[CascadeConsistencyWarning]:
        with self._lock:
            return list(self._cascade_warnings)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def load(self, *, prefer: DataSource = "remote") -> LoadReport:
        """Populate every collection. Remote first, then cache, then seed data.

        ``prefer="cache"`` skips the remote fetch, e.g. before pushing local
        state with ``sync_to_remote``.
        """
        seed = self._seed() if self._settings.seed_on_empty else {}
        seeded: List[str] = []
        error: Optional[str] = None
        source: DataSource = "cache"
        loaded: Dict[str, List[DomainModel]] = {}

        fetched: Optional[Dict[str, Tuple[List[DomainModel], bool]]] = None
        if prefer == "remote":
            try:
                with ThreadPoolExecutor(
                    max_workers=len(SYNCED_COLLECTIONS), thread_name_prefix="ipma-load"
                ) as pool:
                    futures = {name: pool.submit(self._fetch_remote, name) for name in SYNCED_COLLECTIONS}
                    fetched = {name: future.result() for name, future in futures.items()}
            except Exception as exc:  # noqa: BLE001
                error = str(exc)
                logger.warning("Remote load failed, falling back to local cache: %s", exc)

        if fetched is None:
            for name in SYNCED_COLLECTIONS:
                fallback = list(seed.get(name, []))
                model = mapping_for(name).model
                records = self._cache.load_models(collection_key(name), model, fallback)
                if records is fallback and fallback:
                    seeded.append(name)
                loaded[name] = records
        else:
            source = "remote"
            for name in SYNCED_COLLECTIONS:
                records, initialized = fetched[name]
                if not records and not initialized and seed.get(name):
                    records = list(seed[name])
                    seeded.append(name)
                loaded[name] = records

        sessions = self._cache.load_models(SESSIONS_KEY, UserSession, [])

        with self._lock:
            self._collections = loaded
            self._sessions = list(sessions)
            self._rederive_subtopic_ids()
            for name in SYNCED_COLLECTIONS:
                self._mirror(name)
            self.source = source
        self._loaded.set()

        counts = {name: len(loaded[name]) for name in SYNCED_COLLECTIONS}
        emit_event("data_load_completed", source=source, counts=counts, seeded=seeded, error=error)
        logger.info("Loaded collections from %s (seeded: %s)", source, ", ".join(seeded) or "none")
        return LoadReport(source=source, counts=counts, seeded=tuple(seeded), error=error)

    def wait_until_loaded(self, timeout: Optional[float] = None) -> bool:
        return self._loaded.wait(timeout)

    def _fetch_remote(self, name: str) -> Tuple[List[DomainModel], bool]:
        records = self._remote.list_all(name)
        initialized = bool(records) or self._remote.is_initialized(name)
        return records, initialized

    def _rederive_subtopic_ids(self) -> None:
        owned: Dict[str, List[str]] = {}
        for subtopic in self._collections["subtopics"]:
            owned.setdefault(subtopic.topic_id, []).append(subtopic.id)  # type: ignore[attr-defined]
        self._collections["topics"] = [
            topic.model_copy(update={"subtopic_ids": owned.get(topic.id, [])})  # type: ignore[attr-defined]
            for topic in self._collections["topics"]
        ]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def records(self, collection: str) -> List[DomainModel]:
        with self._lock:
            return list(self._collections[collection])

    def find(self, collection: str, entity_id: str) -> Optional[DomainModel]:
        with self._lock:
            for entity in self._collections[collection]:
                if entity.id == entity_id:  # type: ignore[attr-defined]
                    return entity
        return None

    @property
    def topics(self) -> List[Topic]:
        return self.records("topics")  # type: ignore[return-value]

    @property
    def subtopics(self) -> List[Subtopic]:
        return self.records("subtopics")  # type: ignore[return-value]

    @property
    def questions(self) -> List[Question]:
        return self.records("questions")  # type: ignore[return-value]

    @property
    def kpis(self) -> List[KPI]:
        return self.records("kpis")  # type: ignore[return-value]

    @property
    def company_codes(self) -> List[CompanyCode]:
        return self.records("company_codes")  # type: ignore[return-value]

    @property
    def sample_answers(self) -> List[SampleAnswer]:
        return self.records("sample_answers")  # type: ignore[return-value]

    @property
    def training_examples(self) -> List[TrainingExample]:
        return self.records("training_examples")  # type: ignore[return-value]

    @property
    def users(self) -> List[UserProfile]:
        return self.records("users")  # type: ignore[return-value]

    @property
    def subscriptions(self) -> List[Subscription]:
        return self.records("subscriptions")  # type: ignore[return-value]

    @property
    def sessions(self) -> List[UserSession]:
        with self._lock:
            return list(self._sessions)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self.find("users", user_id)  # type: ignore[return-value]

    def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        normalized = (email or "").strip().lower()
        for user in self.users:
            if user.email.lower() == normalized:
                return user
        return None

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        for subscription in self.subscriptions:
            if subscription.user_id == user_id:
                return subscription
        return None

    def get_company_code(self, code: str) -> Optional[CompanyCode]:
        normalized = (code or "").strip().upper()
        for company in self.company_codes:
            if company.code.upper() == normalized:
                return company
        return None

    # ------------------------------------------------------------------
    # Internal write helpers (callers hold the lock)
    # ------------------------------------------------------------------
    def _require(self, collection: str, entity_id: str) -> DomainModel:
        entity = self.find(collection, entity_id)
        if entity is None:
            raise LookupError(f"No {collection} record with id '{entity_id}'.")
        return entity

    def _merge(self, entity: EntityT, changes: Mapping[str, Any]) -> EntityT:
        model = type(entity)
        unknown = sorted(set(changes) - set(model.model_fields))
        if unknown:
            raise ValidationError(f"Unknown field(s) for {model.__name__}: {', '.join(unknown)}", field=unknown[0])
        read_only = sorted(set(changes) & _READ_ONLY_FIELDS)
        if read_only:
            raise ValidationError(f"Field(s) cannot be changed: {', '.join(read_only)}", field=read_only[0])
        payload = entity.model_dump()
        payload.update(changes)
        payload["updated_at"] = self._clock()
        return self._build(model, payload)

    def _build(self, model: Type[EntityT], payload: Mapping[str, Any]) -> EntityT:
        try:
            return model.model_validate(payload)
        except SchemaValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ())) or None
            raise ValidationError(f"Invalid {model.__name__}: {first.get('msg')}", field=location) from exc

    def _new(self, model: Type[EntityT], fields: Mapping[str, Any]) -> EntityT:
        now = self._clock()
        return self._build(model, {**fields, "created_at": now, "updated_at": now})

    def _insert(self, collection: str, entity: DomainModel) -> None:
        self._collections[collection] = [*self._collections[collection], entity]
        self._mirror(collection)
        self._outbox.enqueue_upsert(collection, entity)

    def _replace(self, collection: str, entity: DomainModel, *, remote: bool = True) -> None:
        entity_id = entity.id  # type: ignore[attr-defined]
        self._collections[collection] = [
            entity if existing.id == entity_id else existing  # type: ignore[attr-defined]
            for existing in self._collections[collection]
        ]
        self._mirror(collection)
        if remote:
            self._outbox.enqueue_upsert(collection, entity)

    def _remove(self, collection: str, entity_ids: Iterable[str]) -> List[DomainModel]:
        doomed = set(entity_ids)
        removed = [entity for entity in self._collections[collection] if entity.id in doomed]  # type: ignore[attr-defined]
        if not removed:
            return []
        self._collections[collection] = [
            entity for entity in self._collections[collection] if entity.id not in doomed  # type: ignore[attr-defined]
        ]
        self._mirror(collection)
        for entity in removed:
            self._outbox.enqueue_delete(collection, entity.id)  # type: ignore[attr-defined]
        return removed

    def _mirror(self, collection: str) -> None:
        self._cache.save(collection_key(collection), self._collections[collection])

    def _cascade(self, parent: str, step: str, action: Callable[[], Any]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            warning = CascadeConsistencyWarning(parent, step, str(exc))
            self._cascade_warnings.append(warning)
            logger.warning("%s", warning)
            emit_event("cascade_warning", parent=parent, step=step, detail=str(exc))

    def _exists(self, collection: str, entity_id: Optional[str]) -> bool:
        return bool(entity_id) and self.find(collection, entity_id) is not None  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------
    def _check_topic(self, topic: Topic) -> Topic:
        title = validate_topic_title(topic.title)
        for existing in self._collections["topics"]:
            if existing.id != topic.id and existing.title.lower() == title.lower():  # type: ignore[attr-defined]
                raise ValidationError("A topic with this title already exists", field="title")
        return topic.model_copy(update={"title": title, "description": sanitize_input(topic.description)})

    def add_topic(self, title: str, description: str = "", *, is_active: bool = True) -> Topic:
        with self._lock:
            topic = self._check_topic(
                self._new(Topic, {"title": title, "description": description, "is_active": is_active})
            )
            self._insert("topics", topic)
            return topic

    def update_topic(self, topic_id: str, **changes: Any) -> Topic:
        changes.pop("subtopic_ids", None)
        with self._lock:
            topic = self._check_topic(self._merge(self._require("topics", topic_id), changes))  # type: ignore[arg-type]
            self._replace("topics", topic)
            return topic

    def delete_topic(self, topic_id: str) -> Topic:
        """Remove the topic and its subtopics, questions and KPIs."""
        with self._lock:
            topic = self._require("topics", topic_id)
            self._remove("topics", [topic_id])
            parent = f"topic {topic_id}"

            question_ids = [q.id for q in self._collections["questions"] if q.topic_id == topic_id]  # type: ignore[attr-defined]
            kpi_ids = [k.id for k in self._collections["kpis"] if k.topic_id == topic_id]  # type: ignore[attr-defined]
            subtopic_ids = [s.id for s in self._collections["subtopics"] if s.topic_id == topic_id]  # type: ignore[attr-defined]

            self._cascade(parent, "questions", lambda: self._remove("questions", question_ids))
            self._cascade(parent, "kpis", lambda: self._remove("kpis", kpi_ids))
            self._cascade(parent, "subtopics", lambda: self._remove("subtopics", subtopic_ids))

            def _unlink() -> None:
                # Links held by content under other topics.
                self._strip_references("kpis", "connected_questions", question_ids)
                self._strip_references("questions", "connected_kpis", kpi_ids)

            self._cascade(parent, "links", _unlink)
            return topic  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Subtopics
    # ------------------------------------------------------------------
    def _check_subtopic(self, subtopic: Subtopic) -> Subtopic:
        title = validate_subtopic_title(subtopic.title)
        require_reference(
            self._exists("topics", subtopic.topic_id), label="Topic", value=subtopic.topic_id, field="topic_id"
        )
        return subtopic.model_copy(update={"title": title, "description": sanitize_input(subtopic.description)})

    def add_subtopic(self, topic_id: str, title: str, description: str = "", *, is_active: bool = True) -> Subtopic:
        with self._lock:
            subtopic = self._check_subtopic(
                self._new(
                    Subtopic,
                    {"topic_id": topic_id, "title": title, "description": description, "is_active": is_active},
                )
            )
            self._insert("subtopics", subtopic)
            self._attach_subtopic(subtopic)
            return subtopic

    def update_subtopic(self, subtopic_id: str, **changes: Any) -> Subtopic:
        with self._lock:
            current: Subtopic = self._require("subtopics", subtopic_id)  # type: ignore[assignment]
            subtopic = self._check_subtopic(self._merge(current, changes))
            self._replace("subtopics", subtopic)
            if subtopic.topic_id != current.topic_id:
                self._detach_subtopic(current)
                self._attach_subtopic(subtopic)
            return subtopic

    def delete_subtopic(self, subtopic_id: str) -> Subtopic:
        with self._lock:
            subtopic: Subtopic = self._require("subtopics", subtopic_id)  # type: ignore[assignment]
            self._remove("subtopics", [subtopic_id])
            self._cascade(f"subtopic {subtopic_id}", "topic", lambda: self._detach_subtopic(subtopic))
            return subtopic

    def _attach_subtopic(self, subtopic: Subtopic) -> None:
        topic = self.find("topics", subtopic.topic_id)
        if topic is None or subtopic.id in topic.subtopic_ids:  # type: ignore[attr-defined]
            return
        updated = topic.model_copy(
            update={"subtopic_ids": [*topic.subtopic_ids, subtopic.id], "updated_at": self._clock()}  # type: ignore[attr-defined]
        )
        # subtopic_ids is derived on load, so only the cache needs the new list.
        self._replace("topics", updated, remote=False)

    def _detach_subtopic(self, subtopic: Subtopic) -> None:
        topic = self.find("topics", subtopic.topic_id)
        if topic is None or subtopic.id not in topic.subtopic_ids:  # type: ignore[attr-defined]
            return
        remaining = [sid for sid in topic.subtopic_ids if sid != subtopic.id]  # type: ignore[attr-defined]
        updated = topic.model_copy(update={"subtopic_ids": remaining, "updated_at": self._clock()})
        self._replace("topics", updated, remote=False)

    # ------------------------------------------------------------------
    # Questions, KPIs and their links
    # ------------------------------------------------------------------
    def _check_subtopic_owner(self, subtopic_id: str, topic_id: str) -> None:
        subtopic = self.find("subtopics", subtopic_id)
        if subtopic is None:
            raise ValidationError(f"Subtopic '{subtopic_id}' does not exist", field="subtopic_id")
        if subtopic.topic_id != topic_id:  # type: ignore[attr-defined]
            raise ValidationError(
                f"Subtopic '{subtopic_id}' belongs to another topic", field="subtopic_id"
            )

    def _check_question(self, question: Question) -> Question:
        prompt = validate_question_prompt(question.prompt)
        require_reference(
            self._exists("topics", question.topic_id), label="Topic", value=question.topic_id, field="topic_id"
        )
        if question.subtopic_id:
            self._check_subtopic_owner(question.subtopic_id, question.topic_id)
        kpi_ids = list(dict.fromkeys(question.connected_kpis))
        for kpi_id in kpi_ids:
            if not self._exists("kpis", kpi_id):
                raise ValidationError(f"KPI '{kpi_id}' does not exist", field="connected_kpis")
        return question.model_copy(update={"prompt": prompt, "connected_kpis": kpi_ids})

    def _check_kpi(self, kpi: KPI) -> KPI:
        name = validate_kpi_name(kpi.name)
        if not kpi.subtopic_id:
            raise ValidationError("KPIs must belong to a specific subtopic", field="subtopic_id")
        require_reference(self._exists("topics", kpi.topic_id), label="Topic", value=kpi.topic_id, field="topic_id")
        self._check_subtopic_owner(kpi.subtopic_id, kpi.topic_id)
        question_ids = list(dict.fromkeys(kpi.connected_questions))
        for question_id in question_ids:
            if not self._exists("questions", question_id):
                raise ValidationError(f"Question '{question_id}' does not exist", field="connected_questions")
        return kpi.model_copy(update={"name": name, "connected_questions": question_ids})

    def add_question(
        self,
        topic_id: str,
        prompt: str,
        *,
        subtopic_id: Optional[str] = None,
        is_active: bool = True,
        connected_kpis: Sequence[str] = (),
    ) -> Question:
        with self._lock:
            question = self._check_question(
                self._new(
                    Question,
                    {
                        "topic_id": topic_id,
                        "subtopic_id": subtopic_id,
                        "prompt": prompt,
                        "is_active": is_active,
                        "connected_kpis": list(connected_kpis),
                    },
                )
            )
            self._insert("questions", question)
            self._propagate_links("questions", question.id, [], question.connected_kpis)
            return question

    def update_question(self, question_id: str, **changes: Any) -> Question:
        with self._lock:
            current: Question = self._require("questions", question_id)  # type: ignore[assignment]
            question = self._check_question(self._merge(current, changes))
            self._replace("questions", question)
            self._propagate_links("questions", question_id, current.connected_kpis, question.connected_kpis)
            return question

    def delete_question(self, question_id: str) -> Question:
        with self._lock:
            question = self._require("questions", question_id)
            self._remove("questions", [question_id])
            self._cascade(
                f"question {question_id}",
                "kpi links",
                lambda: self._strip_references("kpis", "connected_questions", [question_id]),
            )
            return question  # type: ignore[return-value]

    def add_kpi(
        self,
        topic_id: str,
        subtopic_id: str,
        name: str,
        *,
        is_essential: bool = False,
        connected_questions: Sequence[str] = (),
    ) -> KPI:
        with self._lock:
            kpi = self._check_kpi(
                self._new(
                    KPI,
                    {
                        "topic_id": topic_id,
                        "subtopic_id": subtopic_id,
                        "name": name,
                        "is_essential": is_essential,
                        "connected_questions": list(connected_questions),
                    },
                )
            )
            self._insert("kpis", kpi)
            self._propagate_links("kpis", kpi.id, [], kpi.connected_questions)
            return kpi

    def update_kpi(self, kpi_id: str, **changes: Any) -> KPI:
        with self._lock:
            current: KPI = self._require("kpis", kpi_id)  # type: ignore[assignment]
            kpi = self._check_kpi(self._merge(current, changes))
            self._replace("kpis", kpi)
            self._propagate_links("kpis", kpi_id, current.connected_questions, kpi.connected_questions)
            return kpi

    def delete_kpi(self, kpi_id: str) -> KPI:
        with self._lock:
            kpi = self._require("kpis", kpi_id)
            self._remove("kpis", [kpi_id])
            self._cascade(
                f"kpi {kpi_id}",
                "question links",
                lambda: self._strip_references("questions", "connected_kpis", [kpi_id]),
            )
            return kpi  # type: ignore[return-value]

    def connect_kpi_to_question(self, kpi_id: str, question_id: str) -> Tuple[KPI, Question]:
        return self._set_link(kpi_id, question_id, connected=True)

    def disconnect_kpi_from_question(self, kpi_id: str, question_id: str) -> Tuple[KPI, Question]:
        return self._set_link(kpi_id, question_id, connected=False)

    def _set_link(self, kpi_id: str, question_id: str, *, connected: bool) -> Tuple[KPI, Question]:
        with self._lock:
            kpi: KPI = self._require("kpis", kpi_id)  # type: ignore[assignment]
            question: Question = self._require("questions", question_id)  # type: ignore[assignment]
            now = self._clock()
            if connected:
                kpi_links = kpi.connected_questions + ([] if question_id in kpi.connected_questions else [question_id])
                question_links = question.connected_kpis + ([] if kpi_id in question.connected_kpis else [kpi_id])
            else:
                kpi_links = [qid for qid in kpi.connected_questions if qid != question_id]
                question_links = [kid for kid in question.connected_kpis if kid != kpi_id]
            kpi = kpi.model_copy(update={"connected_questions": kpi_links, "updated_at": now})
            question = question.model_copy(update={"connected_kpis": question_links, "updated_at": now})
            self._replace("kpis", kpi)
            self._replace("questions", question)
            return kpi, question

    def _propagate_links(self, owner: str, owner_id: str, before: Sequence[str], after: Sequence[str]) -> None:
        target, target_field = ("kpis", "connected_questions") if owner == "questions" else ("questions", "connected_kpis")
        added = set(after) - set(before)
        removed = set(before) - set(after)
        if not added and not removed:
            return
        now = self._clock()
        for entity in list(self._collections[target]):
            links: List[str] = list(getattr(entity, target_field))
            if entity.id in added and owner_id not in links:  # type: ignore[attr-defined]
                links.append(owner_id)
            elif entity.id in removed and owner_id in links:  # type: ignore[attr-defined]
                links = [link for link in links if link != owner_id]
            else:
                continue
            self._replace(target, entity.model_copy(update={target_field: links, "updated_at": now}))

    def _strip_references(self, collection: str, link_field: str, removed_ids: Sequence[str]) -> None:
        doomed = set(removed_ids)
        if not doomed:
            return
        now = self._clock()
        for entity in list(self._collections[collection]):
            links: List[str] = getattr(entity, link_field)
            if doomed.intersection(links):
                kept = [link for link in links if link not in doomed]
                self._replace(collection, entity.model_copy(update={link_field: kept, "updated_at": now}))

    # ------------------------------------------------------------------
    # Company codes
    # ------------------------------------------------------------------
    def _check_company_code(self, company: CompanyCode) -> CompanyCode:
        code = validate_company_code(company.code)
        for existing in self._collections["company_codes"]:
            if existing.id != company.id and existing.code.upper() == code:  # type: ignore[attr-defined]
                raise ValidationError(f"Company code '{code}' already exists", field="code")
        company_name = sanitize_input(company.company_name)
        if not company_name:
            raise ValidationError("Company name is required", field="company_name")
        admin_email = validate_email(company.admin_email, field="admin_email") if company.admin_email else ""
        emails = [validate_email(email, field="authorized_emails") for email in company.authorized_emails]
        return company.model_copy(
            update={
                "code": code,
                "company_name": company_name,
                "admin_email": admin_email,
                "authorized_emails": list(dict.fromkeys(emails)),
            }
        )

    def add_company_code(
        self,
        code: str,
        company_name: str,
        *,
        admin_email: str = "",
        authorized_emails: Sequence[str] = (),
        max_users: int = 0,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
    ) -> CompanyCode:
        with self._lock:
            company = self._check_company_code(
                self._new(
                    CompanyCode,
                    {
                        "code": code,
                        "company_name": company_name,
                        "admin_email": admin_email,
                        "authorized_emails": list(authorized_emails),
                        "max_users": max_users,
                        "expires_at": expires_at,
                        "is_active": is_active,
                    },
                )
            )
            self._insert("company_codes", company)
            return company

    def update_company_code(self, company_id: str, **changes: Any) -> CompanyCode:
        """Update a company code. Emails dropped from the access list lose their user account."""
        with self._lock:
            current: CompanyCode = self._require("company_codes", company_id)  # type: ignore[assignment]
            company = self._check_company_code(self._merge(current, changes))
            self._replace("company_codes", company)
            revoked = [email for email in current.authorized_emails if email not in company.authorized_emails]
            for email in revoked:
                self._cascade(f"company code {company.code}", f"revoke {email}", lambda e=email: self._revoke_user(e))
            return company

    def delete_company_code(self, company_id: str) -> CompanyCode:
        with self._lock:
            company = self._require("company_codes", company_id)
            self._remove("company_codes", [company_id])
            return company  # type: ignore[return-value]

    def _revoke_user(self, email: str) -> None:
        user = self.get_user_by_email(email)
        if user is not None:
            self.delete_user(user.id)

    # ------------------------------------------------------------------
    # Sample answers and training examples
    # ------------------------------------------------------------------
    def _check_sample(self, sample: EntityT) -> EntityT:
        require_reference(
            self._exists("questions", sample.question_id),  # type: ignore[attr-defined]
            label="Question",
            value=sample.question_id,  # type: ignore[attr-defined]
            field="question_id",
        )
        validate_quality_rating(sample.quality_rating)  # type: ignore[attr-defined]
        return sample.model_copy(
            update={
                "answer_text": validate_answer(sample.answer_text),  # type: ignore[attr-defined]
                "feedback": sanitize_input(sample.feedback),  # type: ignore[attr-defined]
            }
        )

    def add_sample_answer(
        self,
        question_id: str,
        answer_text: str,
        *,
        quality_rating: int = 0,
        detected_kpis: Sequence[str] = (),
        feedback: str = "",
    ) -> SampleAnswer:
        with self._lock:
            sample = self._check_sample(
                self._new(
                    SampleAnswer,
                    {
                        "question_id": question_id,
                        "answer_text": answer_text,
                        "quality_rating": quality_rating,
                        "detected_kpis": list(detected_kpis),
                        "feedback": feedback,
                    },
                )
            )
            self._insert("sample_answers", sample)
            return sample

    def update_sample_answer(self, sample_id: str, **changes: Any) -> SampleAnswer:
        with self._lock:
            sample = self._check_sample(self._merge(self._require("sample_answers", sample_id), changes))
            self._replace("sample_answers", sample)
            return sample  # type: ignore[return-value]

    def delete_sample_answer(self, sample_id: str) -> SampleAnswer:
        with self._lock:
            sample = self._require("sample_answers", sample_id)
            self._remove("sample_answers", [sample_id])
            return sample  # type: ignore[return-value]

    def add_training_example(
        self,
        question_id: str,
        answer_text: str,
        *,
        example_type: str = "training",
        quality_rating: int = 0,
        detected_kpis: Sequence[str] = (),
        feedback: str = "",
    ) -> TrainingExample:
        with self._lock:
            example = self._check_sample(
                self._new(
                    TrainingExample,
                    {
                        "question_id": question_id,
                        "answer_text": answer_text,
                        "example_type": example_type,
                        "quality_rating": quality_rating,
                        "detected_kpis": list(detected_kpis),
                        "feedback": feedback,
                    },
                )
            )
            self._insert("training_examples", example)
            return example

    def update_training_example(self, example_id: str, **changes: Any) -> TrainingExample:
        with self._lock:
            example = self._check_sample(self._merge(self._require("training_examples", example_id), changes))
            self._replace("training_examples", example)
            return example  # type: ignore[return-value]

    def delete_training_example(self, example_id: str) -> TrainingExample:
        with self._lock:
            example = self._require("training_examples", example_id)
            self._remove("training_examples", [example_id])
            return example  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Users and subscriptions
    # ------------------------------------------------------------------
    def _check_user(self, user: UserProfile) -> UserProfile:
        email = validate_email(user.email)
        for existing in self._collections["users"]:
            if existing.id != user.id and existing.email.lower() == email:  # type: ignore[attr-defined]
                raise ValidationError(f"A user with email '{email}' already exists", field="email")
        return user.model_copy(update={"email": email, "name": sanitize_input(user.name)})

    def add_user(
        self,
        email: str,
        name: str = "",
        *,
        role: str = "user",
        company_code: Optional[str] = None,
        company_name: Optional[str] = None,
    ) -> UserProfile:
        with self._lock:
            user = self._check_user(
                self._new(
                    UserProfile,
                    {
                        "email": email,
                        "name": name,
                        "role": role,
                        "company_code": company_code,
                        "company_name": company_name,
                    },
                )
            )
            self._insert("users", user)
            return user

    def update_user(self, user_id: str, **changes: Any) -> UserProfile:
        with self._lock:
            user = self._check_user(self._merge(self._require("users", user_id), changes))  # type: ignore[arg-type]
            self._replace("users", user)
            return user

    def delete_user(self, user_id: str) -> UserProfile:
        """Remove the user and their subscription."""
        with self._lock:
            user = self._require("users", user_id)
            self._remove("users", [user_id])
            subscription_ids = [
                sub.id for sub in self._collections["subscriptions"] if sub.user_id == user_id  # type: ignore[attr-defined]
            ]
            self._cascade(f"user {user_id}", "subscription", lambda: self._remove("subscriptions", subscription_ids))
            return user  # type: ignore[return-value]

    def _check_subscription(self, subscription: Subscription) -> Subscription:
        require_reference(
            self._exists("users", subscription.user_id), label="User", value=subscription.user_id, field="user_id"
        )
        if subscription.end_date < subscription.start_date:
            raise ValidationError("Subscription cannot end before it starts", field="end_date")
        for existing in self._collections["subscriptions"]:
            if existing.id != subscription.id and existing.user_id == subscription.user_id:  # type: ignore[attr-defined]
                raise ValidationError(
                    f"User '{subscription.user_id}' already has a subscription", field="user_id"
                )
        return subscription

    def add_subscription(
        self,
        user_id: str,
        start_date: datetime,
        end_date: datetime,
        *,
        plan_type: str = "trial",
        auto_renew: bool = False,
        is_active: bool = True,
    ) -> Subscription:
        with self._lock:
            subscription = self._check_subscription(
                self._new(
                    Subscription,
                    {
                        "user_id": user_id,
                        "start_date": start_date,
                        "end_date": end_date,
                        "plan_type": plan_type,
                        "auto_renew": auto_renew,
                        "is_active": is_active,
                    },
                )
            )
            self._insert("subscriptions", subscription)
            return subscription

    def update_subscription(self, subscription_id: str, **changes: Any) -> Subscription:
        with self._lock:
            subscription = self._check_subscription(
                self._merge(self._require("subscriptions", subscription_id), changes)  # type: ignore[arg-type]
            )
            self._replace("subscriptions", subscription)
            return subscription

    def delete_subscription(self, subscription_id: str) -> Subscription:
        with self._lock:
            subscription = self._require("subscriptions", subscription_id)
            self._remove("subscriptions", [subscription_id])
            return subscription  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Sessions (local cache only)
    # ------------------------------------------------------------------
    def record_session(self, session: UserSession) -> UserSession:
        with self._lock:
            self._sessions = [existing for existing in self._sessions if existing.id != session.id] + [session]
            self._cache.save(SESSIONS_KEY, self._sessions)
            return session

    def end_session(self, session_id: str) -> bool:
        with self._lock:
            remaining = [existing for existing in self._sessions if existing.id != session_id]
            if len(remaining) == len(self._sessions):
                return False
            self._sessions = remaining
            self._cache.save(SESSIONS_KEY, self._sessions)
            return True

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def export_snapshot(self) -> DataSnapshot:
        with self._lock:
            collections = {name: list(self._collections[name]) for name in SYNCED_COLLECTIONS}
            sessions = list(self._sessions)

        attempts: List[Attempt] = []
        items: List[AttemptItem] = []
        for user_id in self._cached_attempt_owners(collections["users"]):
            attempts.extend(self._cache.load_models(attempts_key(user_id), Attempt, []))
            items.extend(self._cache.load_models(attempt_items_key(user_id), AttemptItem, []))

        record_count = sum(len(records) for records in collections.values()) + len(attempts) + len(items)
        return DataSnapshot(
            **collections,
            sessions=sessions,
            attempts=attempts,
            attempt_items=items,
            metadata=SnapshotMetadata(timestamp=self._clock(), record_count=record_count),
        )

    def _cached_attempt_owners(self, users: Sequence[DomainModel]) -> List[str]:
        owners = [user.id for user in users]  # type: ignore[attr-defined]
        prefix = attempts_key("")
        try:
            keys = self._cache.store.keys()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not list local cache keys: %s", exc)
            keys = []
        for key in keys:
            if key.startswith(prefix):
                owner = key[len(prefix):]
                if owner and owner not in owners:
                    owners.append(owner)
        return owners

    def import_snapshot(self, snapshot: DataSnapshot) -> None:
        """Replace local state with ``snapshot``. Pushing it to the remote store is a separate sync."""
        with self._lock:
            self._collections = {name: snapshot.collection(name) for name in SYNCED_COLLECTIONS}
            self._sessions = list(snapshot.sessions)
            self._rederive_subtopic_ids()
            for name in SYNCED_COLLECTIONS:
                self._mirror(name)
            self._cache.save(SESSIONS_KEY, self._sessions)

        owners: Dict[str, List[Attempt]] = {}
        for attempt in snapshot.attempts:
            owners.setdefault(attempt.user_id, []).append(attempt)
        for user_id, attempts in owners.items():
            attempt_ids = {attempt.id for attempt in attempts}
            self._cache.save(attempts_key(user_id), attempts)
            self._cache.save(
                attempt_items_key(user_id),
                [item for item in snapshot.attempt_items if item.attempt_id in attempt_ids],
            )
        logger.info("Imported snapshot with %d records", snapshot.metadata.record_count)

    def restore_record(self, collection: str, entity: DomainModel) -> DomainModel:
        """Insert or replace ``entity`` as-is, keeping its id and timestamps."""
        with self._lock:
            if self.find(collection, entity.id) is None:  # type: ignore[attr-defined]
                self._insert(collection, entity)
            else:
                self._replace(collection, entity)
            if collection == "subtopics":
                self._attach_subtopic(entity)  # type: ignore[arg-type]
            return entity

    def clear_all(self) -> None:
        with self._lock:
            self._collections = {name: [] for name in SYNCED_COLLECTIONS}
            for name in SYNCED_COLLECTIONS:
                self._mirror(name)

    # ------------------------------------------------------------------
    # Merge sync
    # ------------------------------------------------------------------
    def sync_from_remote(self) -> SyncReport:
        """Pull remote records that are newer than (or missing from) local state."""
        report = SyncReport(direction="pull")
        for name in SYNCED_COLLECTIONS:
            remote_records = self._remote.list_all(name)
            stats = CollectionSyncStats()
            with self._lock:
                merged = {entity.id: entity for entity in self._collections[name]}  # type: ignore[attr-defined]
                for record in remote_records:
                    local = merged.get(record.id)  # type: ignore[attr-defined]
                    if local is None or record.updated_at > local.updated_at:  # type: ignore[attr-defined]
                        merged[record.id] = record  # type: ignore[attr-defined]
                        stats.pulled += 1
                    else:
                        stats.unchanged += 1
                if stats.pulled:
                    self._collections[name] = list(merged.values())
                    if name in ("topics", "subtopics"):
                        self._rederive_subtopic_ids()
                        self._mirror("topics")
                    self._mirror(name)
            report.collections[name] = stats
        logger.info("Pulled %d records from remote (%d unchanged)", report.pulled, report.unchanged)
        return report

    def sync_to_remote(self) -> SyncReport:
        """Push local records that are newer than (or missing from) the remote store."""
        report = SyncReport(direction="push")
        for name in SYNCED_COLLECTIONS:
            remote_records = {record.id: record for record in self._remote.list_all(name)}  # type: ignore[attr-defined]
            stats = CollectionSyncStats()
            for entity in self.records(name):
                remote_record = remote_records.get(entity.id)  # type: ignore[attr-defined]
                if remote_record is None or entity.updated_at > remote_record.updated_at:  # type: ignore[attr-defined]
                    self._remote.upsert(name, entity)
                    stats.pushed += 1
                else:
                    stats.unchanged += 1
            report.collections[name] = stats
        logger.info("Pushed %d records to remote (%d unchanged)", report.pushed, report.unchanged)
        return report

    def flush(self) -> None:
        """Deliver queued remote writes now, ignoring backoff."""
        self._outbox.drain(force=True)


__all__ = [
    "CollectionSyncStats",
    "DataSnapshot",
    "LoadReport",
    "ReconciliationEngine",
    "SnapshotMetadata",
    "SyncReport",
]
