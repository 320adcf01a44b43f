import functools
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from models import (
    CharacterArcEntity,
    CharacterProfileEntity,
    CharacterState,
    ConflictArcEntity,
    EntityType,
    EventEntity,
    ForeshadowEntity,
    GraphEdge,
    GraphEntity,
    HistorySnapshot,
    LedgerKind,
    MutationResult,
    NarrativeBeatEntity,
    OpenQuest,
    PerspectiveUsageEntity,
    PlotlineEntity,
    QuestStatus,
    RelationshipState,
    WorldRuleEntity,
    split_names,
)
from memory import ranking

logger = logging.getLogger("novelist.graph")

RELATIONSHIP = "RELATIONSHIP"
CONTAINS_EVENT = "CONTAINS_EVENT"
PARTICIPATES_IN = "PARTICIPATES_IN"
INCLUDES = "INCLUDES"
CAUSES = "CAUSES"

RELEVANCE_EDGE_TYPES = {"CAUSES", "TRIGGERS", "TRIGGERED_BY", "RELATES_TO", PARTICIPATES_IN}
CAUSAL_EDGE_TYPES = {"CAUSES", "TRIGGERED_BY"}
RELEVANCE_RADIUS = 3
CONFLICT_TONES = {"conflict", "tense", "confrontation"}

CHAPTER_SCOPED_TYPES = (
    EntityType.EVENT.value,
    EntityType.NARRATIVE_BEAT.value,
    EntityType.PERSPECTIVE_USAGE.value,
)

# camelCase keys accepted by upsert_character_state_complete
CHARACTER_STATE_KEYS = {
    "location": "location",
    "realm": "realm",
    "alive": "alive",
    "affiliation": "affiliation",
    "socialStatus": "social_status",
    "backers": "backers",
    "tags": "tags",
    "secrets": "secrets",
    "keyItems": "key_items",
    "knownBy": "known_by",
    "inventory": "inventory",
    "characterInfo": "character_info",
}
_LIST_STATE_FIELDS = {"backers", "tags", "secrets", "key_items", "known_by", "inventory"}
_RELATION_TYPE_CLEANER = re.compile(r"[^A-Z0-9_]")


def chapter_node(chapter_number: Optional[int]) -> str:
    return f"Chapter:{chapter_number}"


def character_node(name: str) -> str:
    return f"Character:{name}"


def canonical_pair(character_a: str, character_b: str) -> Tuple[str, str]:
    if character_a <= character_b:
        return character_a, character_b
    return character_b, character_a


def pair_key(character_a: str, character_b: str) -> str:
    a, b = canonical_pair(character_a, character_b)
    return f"{a}::{b}"


def sanitize_relationship_type(raw: Optional[str]) -> str:
    if raw is None or not str(raw).strip():
        return "RELATED_TO"
    cleaned = _RELATION_TYPE_CLEANER.sub("", str(raw).strip().upper())
    return cleaned or "RELATED_TO"


class MutationStats:
    """Thread-safe counters over every store mutation outcome."""

    def __init__(self):
        self._lock = threading.Lock()
        self._totals: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._last_error: Optional[str] = None

    def record(self, result: MutationResult):
        with self._lock:
            self._totals[result.operation] += 1
            if not result.ok:
                self._failures[result.operation] += 1
                self._last_error = result.error

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._totals.values())

    @property
    def failed(self) -> int:
        with self._lock:
            return sum(self._failures.values())

    @property
    def error_rate(self) -> float:
        with self._lock:
            total = sum(self._totals.values())
            if total == 0:
                return 0.0
            return sum(self._failures.values()) / total

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            total = sum(self._totals.values())
            failed = sum(self._failures.values())
            return {
                "total": total,
                "failed": failed,
                "errorRate": (failed / total) if total else 0.0,
                "lastError": self._last_error,
                "operations": {
                    name: {"total": count, "failed": self._failures.get(name, 0)}
                    for name, count in sorted(self._totals.items())
                },
            }

    def reset(self):
        with self._lock:
            self._totals.clear()
            self._failures.clear()
            self._last_error = None


def graph_query(default_factory: Callable[[], Any]):
    """Reads degrade to ``default_factory()`` instead of raising."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except Exception as exc:
                logger.warning(
                    "graph query failed query=%s backend=%s error=%s",
                    fn.__name__,
                    self.backend_name,
                    exc,
                )
                return default_factory()

        return wrapper

    return decorator


def graph_mutation(fn):
    """Writes never raise; the outcome is returned and counted in ``store.stats``."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            result = fn(self, *args, **kwargs)
            if not isinstance(result, MutationResult):
                result = MutationResult.success(fn.__name__, _target_of(args))
        except Exception as exc:
            logger.warning(
                "graph write failed op=%s backend=%s target=%s error=%s",
                fn.__name__,
                self.backend_name,
                _target_of(args),
                exc,
            )
            result = MutationResult.failure(fn.__name__, _target_of(args), exc)
        self.stats.record(result)
        return result

    return wrapper


def _target_of(args: Tuple[Any, ...]) -> str:
    return ":".join(str(arg) for arg in args[:2] if not isinstance(arg, (dict, list, GraphEntity)))


class NarrativeGraphStore(ABC):
    """
    Versioned narrative memory for one or more novels.

    Subclasses provide storage primitives for entities, edges, ledger records,
    ledger history and summary signals. Everything else lives here: ranking,
    the monotonic-chapter guard, history snapshots and chapter rollback, so
    both backends behave identically.

    Reads never raise (they return an empty/default value and log). Writes
    never raise either; they return a ``MutationResult`` and feed
    ``self.stats`` so the caller can decide whether a failure matters.
    """

    backend_name = "abstract"
    _LOCK_STRIPES = 64

    def __init__(self):
        self.stats = MutationStats()
        self._locks = [threading.RLock() for _ in range(self._LOCK_STRIPES)]

    # ------------------------------------------------------------------
    # storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def probe(self) -> None:
        """Raise if the backend cannot serve requests."""

    @abstractmethod
    def _put_entity(self, novel_id: int, entity: GraphEntity) -> None: ...

    @abstractmethod
    def _find_entity(self, novel_id: int, entity_id: str) -> Optional[GraphEntity]: ...

    @abstractmethod
    def _list_entities(self, novel_id: int, entity_type: Optional[str] = None) -> List[GraphEntity]: ...

    @abstractmethod
    def _delete_entity(self, novel_id: int, entity_type: str, entity_id: str) -> bool: ...

    @abstractmethod
    def _put_edge(self, novel_id: int, edge: GraphEdge) -> None: ...

    @abstractmethod
    def _list_edges(self, novel_id: int) -> List[GraphEdge]: ...

    @abstractmethod
    def _delete_edges_for(self, novel_id: int, node_ids: Iterable[str]) -> int: ...

    @abstractmethod
    def _get_record(self, novel_id: int, kind: LedgerKind, key: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def _put_record(self, novel_id: int, kind: LedgerKind, key: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    def _delete_record(self, novel_id: int, kind: LedgerKind, key: str) -> bool: ...

    @abstractmethod
    def _list_records(self, novel_id: int, kind: LedgerKind) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def _push_history(self, novel_id: int, snapshot: HistorySnapshot) -> None: ...

    @abstractmethod
    def _list_history(self, novel_id: int, kind: LedgerKind, key: str) -> List[HistorySnapshot]: ...

    @abstractmethod
    def _delete_history(
        self,
        novel_id: int,
        kind: LedgerKind,
        key: str,
        from_chapter: Optional[int] = None,
    ) -> int: ...

    @abstractmethod
    def _put_signal(self, novel_id: int, chapter_number: int, key: str, value: str) -> None: ...

    @abstractmethod
    def _list_signals(self, novel_id: int, chapter_number: Optional[int] = None) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def _delete_signals(self, novel_id: int, chapter_numbers: Iterable[int]) -> int: ...

    @abstractmethod
    def _clear(self, novel_id: int) -> None: ...

    # ------------------------------------------------------------------
    # availability
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        try:
            self.probe()
            return True
        except Exception as exc:
            logger.warning("graph backend unavailable backend=%s error=%s", self.backend_name, exc)
            return False

    def _record_lock(self, novel_id: int, kind: LedgerKind, key: str) -> threading.RLock:
        return self._locks[hash((novel_id, kind.value, key)) % self._LOCK_STRIPES]

    # ------------------------------------------------------------------
    # entity and edge writes
    # ------------------------------------------------------------------

    @graph_mutation
    def add_entity(self, novel_id: int, entity: GraphEntity) -> MutationResult:
        if isinstance(entity, NarrativeBeatEntity) and entity.chapter_number is not None:
            # one beat per chapter
            for existing in self._list_entities(novel_id, EntityType.NARRATIVE_BEAT.value):
                if existing.chapter_number == entity.chapter_number and existing.id != entity.id:
                    self._delete_entity(novel_id, existing.type, existing.id)
        self._put_entity(novel_id, entity)
        if isinstance(entity, EventEntity):
            self._link_event(novel_id, entity)
        return MutationResult.success("add_entity", f"{entity.type}:{entity.id}")

    def add_entities(self, novel_id: int, entities: Iterable[GraphEntity]) -> List[MutationResult]:
        return [self.add_entity(novel_id, entity) for entity in entities]

    def _link_event(self, novel_id: int, event: EventEntity):
        if event.chapter_number is not None:
            self._put_edge(novel_id, GraphEdge(from_id=chapter_node(event.chapter_number), type=CONTAINS_EVENT, to_id=event.id))
        names: List[str] = []
        for name in list(event.participants) + list(event.on_scene_participants):
            if name not in names:
                names.append(name)
        for name in names:
            self._put_edge(novel_id, GraphEdge(from_id=character_node(name), type=PARTICIPATES_IN, to_id=event.id))
        if event.plotline_id:
            self._put_edge(novel_id, GraphEdge(from_id=event.plotline_id, type=INCLUDES, to_id=event.id))

        if event.chapter_number is None:
            return
        location = (event.location or "").strip() or None
        realm = (event.realm or "").strip() or None
        for name in event.scene_characters():
            result = self.upsert_character_state(
                novel_id,
                name,
                location=location,
                realm=realm,
                alive=True,
                chapter_number=event.chapter_number,
            )
            if not result.ok:
                logger.warning(
                    "graph scene presence failed novel_id=%s event=%s character=%s error=%s",
                    novel_id,
                    event.id,
                    name,
                    result.error,
                )

    @graph_mutation
    def add_relationship(
        self,
        novel_id: int,
        from_id: str,
        relationship_type: Optional[str],
        to_id: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> MutationResult:
        rel_type = sanitize_relationship_type(relationship_type)
        target = f"{from_id}-{rel_type}->{to_id}"
        if rel_type == RELATIONSHIP:
            source_node, target_node = character_node(from_id), character_node(to_id)
        else:
            if self._find_entity(novel_id, from_id) is None or self._find_entity(novel_id, to_id) is None:
                logger.info(
                    "graph relationship skipped novel_id=%s type=%s from=%s to=%s reason=missing_endpoint",
                    novel_id,
                    rel_type,
                    from_id,
                    to_id,
                )
                return MutationResult.success("add_relationship", target, applied=False)
            source_node, target_node = from_id, to_id
        self._put_edge(
            novel_id,
            GraphEdge(from_id=source_node, type=rel_type, to_id=target_node, properties=dict(properties or {})),
        )
        return MutationResult.success("add_relationship", target)

    # ------------------------------------------------------------------
    # ledger writes
    # ------------------------------------------------------------------

    def _guarded_update(
        self,
        novel_id: int,
        kind: LedgerKind,
        key: str,
        chapter_number: int,
        operation: str,
        create: Callable[[], Dict[str, Any]],
        apply: Callable[[Dict[str, Any]], Dict[str, Any]],
        require_existing: bool = False,
    ) -> MutationResult:
        with self._record_lock(novel_id, kind, key):
            current = self._get_record(novel_id, kind, key)
            if current is None:
                if require_existing:
                    return MutationResult.success(operation, key, applied=False, reason="missing")
                base = create()
            else:
                last = current.get("last_updated_chapter")
                if last is not None and chapter_number < last:
                    logger.info(
                        "graph upsert skipped kind=%s key=%s chapter=%s last_updated=%s",
                        kind.value,
                        key,
                        chapter_number,
                        last,
                    )
                    return MutationResult.success(operation, key, applied=False, reason="stale_chapter")
                if last is not None:
                    self._push_history(
                        novel_id,
                        HistorySnapshot(kind=kind, key=key, chapter_number=last, snapshot=dict(current)),
                    )
                base = dict(current)
            updated = apply(base)
            updated["last_updated_chapter"] = chapter_number
            self._put_record(novel_id, kind, key, updated)
        return MutationResult.success(operation, key)

    @graph_mutation
    def upsert_character_state(
        self,
        novel_id: int,
        character_name: str,
        location: Optional[str] = None,
        realm: Optional[str] = None,
        alive: Optional[bool] = None,
        chapter_number: int = 0,
        character_info: Optional[str] = None,
    ) -> MutationResult:
        changes = {
            "location": location,
            "realm": realm,
            "alive": alive,
            "character_info": character_info or None,
        }
        return self._upsert_character(novel_id, character_name, changes, chapter_number, "upsert_character_state")

    @graph_mutation
    def upsert_character_state_complete(
        self,
        novel_id: int,
        character_name: str,
        state_data: Dict[str, Any],
        chapter_number: int,
    ) -> MutationResult:
        changes: Dict[str, Any] = {}
        for key, value in (state_data or {}).items():
            field = CHARACTER_STATE_KEYS.get(key) or (key if key in CHARACTER_STATE_KEYS.values() else None)
            if field is None:
                continue
            if field in _LIST_STATE_FIELDS and value is not None:
                value = split_names(value)
            changes[field] = value
        return self._upsert_character(
            novel_id,
            character_name,
            changes,
            chapter_number,
            "upsert_character_state_complete",
            default_alive=True,
        )

    @graph_mutation
    def update_character_inventory(
        self,
        novel_id: int,
        character_name: str,
        items: List[str],
        chapter_number: int,
    ) -> MutationResult:
        def apply(base: Dict[str, Any]) -> Dict[str, Any]:
            base["inventory"] = list(items or [])
            return base

        return self._guarded_update(
            novel_id,
            LedgerKind.CHARACTER,
            character_name,
            chapter_number,
            "update_character_inventory",
            create=lambda: CharacterState(character_name=character_name).model_dump(mode="json"),
            apply=apply,
        )

    def _upsert_character(
        self,
        novel_id: int,
        character_name: str,
        changes: Dict[str, Any],
        chapter_number: int,
        operation: str,
        default_alive: bool = False,
    ) -> MutationResult:
        name = (character_name or "").strip()
        if not name:
            raise ValueError("character name is required")

        def apply(base: Dict[str, Any]) -> Dict[str, Any]:
            for field, value in changes.items():
                if value is not None:
                    base[field] = value
            if default_alive and base.get("alive") is None:
                base["alive"] = True
            return CharacterState.model_validate(base).model_dump(mode="json")

        return self._guarded_update(
            novel_id,
            LedgerKind.CHARACTER,
            name,
            chapter_number,
            operation,
            create=lambda: CharacterState(character_name=name).model_dump(mode="json"),
            apply=apply,
        )

    @graph_mutation
    def upsert_relationship_state(
        self,
        novel_id: int,
        character_a: str,
        character_b: str,
        relation_type: Optional[str] = None,
        strength: Optional[float] = None,
        chapter_number: int = 0,
        description: Optional[str] = None,
        public_status: Optional[str] = None,
    ) -> MutationResult:
        a, b = canonical_pair(character_a.strip(), character_b.strip())
        if not a or not b or a == b:
            raise ValueError(f"invalid relationship pair a={character_a!r} b={character_b!r}")
        changes = {
            "type": relation_type,
            "strength": strength,
            "description": description,
            "public_status": public_status,
        }

        def apply(base: Dict[str, Any]) -> Dict[str, Any]:
            for field, value in changes.items():
                if value is not None:
                    base[field] = value
            return RelationshipState.model_validate(base).model_dump(mode="json")

        return self._guarded_update(
            novel_id,
            LedgerKind.RELATIONSHIP,
            pair_key(a, b),
            chapter_number,
            "upsert_relationship_state",
            create=lambda: RelationshipState(a=a, b=b).model_dump(mode="json"),
            apply=apply,
        )

    @graph_mutation
    def upsert_open_quest(
        self,
        novel_id: int,
        quest_id: str,
        description: Optional[str] = None,
        status: Optional[str] = None,
        introduced_chapter: Optional[int] = None,
        due_by_chapter: Optional[int] = None,
        last_updated_chapter: int = 0,
    ) -> MutationResult:
        quest_key = (quest_id or "").strip()
        if not quest_key:
            raise ValueError("quest id is required")

        def apply(base: Dict[str, Any]) -> Dict[str, Any]:
            if description is not None:
                base["description"] = description
            if status:
                base["status"] = str(status).strip().upper()
            if base.get("introduced_chapter") is None:
                base["introduced_chapter"] = introduced_chapter if introduced_chapter is not None else last_updated_chapter
            if due_by_chapter is not None:
                base["due_by_chapter"] = due_by_chapter
            return OpenQuest.model_validate(base).model_dump(mode="json")

        return self._guarded_update(
            novel_id,
            LedgerKind.QUEST,
            quest_key,
            last_updated_chapter,
            "upsert_open_quest",
            create=lambda: OpenQuest(id=quest_key).model_dump(mode="json"),
            apply=apply,
        )

    @graph_mutation
    def resolve_open_quest(self, novel_id: int, quest_id: str, resolved_chapter: int) -> MutationResult:
        def apply(base: Dict[str, Any]) -> Dict[str, Any]:
            base["status"] = QuestStatus.RESOLVED.value
            base["resolved_chapter"] = resolved_chapter
            return OpenQuest.model_validate(base).model_dump(mode="json")

        return self._guarded_update(
            novel_id,
            LedgerKind.QUEST,
            quest_id,
            resolved_chapter,
            "resolve_open_quest",
            create=dict,
            apply=apply,
            require_existing=True,
        )

    @graph_mutation
    def add_summary_signals(self, novel_id: int, chapter_number: int, signals: Dict[str, str]) -> MutationResult:
        if not signals:
            return MutationResult.success("add_summary_signals", str(chapter_number), applied=False)
        for key, value in signals.items():
            self._put_signal(novel_id, chapter_number, str(key), "" if value is None else str(value))
        return MutationResult.success("add_summary_signals", str(chapter_number), count=len(signals))

    def _delete_ledger(self, novel_id: int, kind: LedgerKind, key: str, operation: str) -> MutationResult:
        with self._record_lock(novel_id, kind, key):
            removed = self._delete_record(novel_id, kind, key)
            self._delete_history(novel_id, kind, key)
        return MutationResult.success(operation, key, applied=removed)

    @graph_mutation
    def delete_character_state(self, novel_id: int, character_name: str) -> MutationResult:
        return self._delete_ledger(novel_id, LedgerKind.CHARACTER, character_name, "delete_character_state")

    @graph_mutation
    def delete_relationship_state(self, novel_id: int, character_a: str, character_b: str) -> MutationResult:
        return self._delete_ledger(
            novel_id,
            LedgerKind.RELATIONSHIP,
            pair_key(character_a, character_b),
            "delete_relationship_state",
        )

    @graph_mutation
    def delete_open_quest(self, novel_id: int, quest_id: str) -> MutationResult:
        return self._delete_ledger(novel_id, LedgerKind.QUEST, quest_id, "delete_open_quest")

    # ------------------------------------------------------------------
    # chapter rewrite / delete
    # ------------------------------------------------------------------

    def _max_ledger_chapter(self, novel_id: int) -> Optional[int]:
        chapters = [
            record.get("last_updated_chapter")
            for kind in LedgerKind
            for record in self._list_records(novel_id, kind)
        ]
        chapters = [value for value in chapters if value is not None]
        return max(chapters) if chapters else None

    @graph_mutation
    def delete_chapter_entities(self, novel_id: int, chapter_number: int) -> MutationResult:
        """
        Roll the ledgers back past ``chapter_number`` and drop its chapter-scoped facts.

        Rewriting a historical chapter (one with newer ledger data) is a no-op:
        later chapters stay consistent and the rewritten chapter keeps stale
        entries. For the latest chapter every ledger record touched there is
        restored from its newest earlier snapshot, or deleted when it has none.
        """
        max_chapter = self._max_ledger_chapter(novel_id)
        if max_chapter is not None and chapter_number < max_chapter:
            logger.warning(
                "graph chapter cleanup skipped novel_id=%s chapter=%s latest_chapter=%s reason=historical_rewrite",
                novel_id,
                chapter_number,
                max_chapter,
            )
            return MutationResult.success(
                "delete_chapter_entities",
                f"{novel_id}:{chapter_number}",
                applied=False,
                skipped=True,
                maxChapter=max_chapter,
            )

        restored = 0
        deleted = 0
        for kind in LedgerKind:
            for record in self._list_records(novel_id, kind):
                if record.get("last_updated_chapter") != chapter_number:
                    continue
                key = self._record_key(kind, record)
                with self._record_lock(novel_id, kind, key):
                    earlier = [
                        snap
                        for snap in self._list_history(novel_id, kind, key)
                        if snap.chapter_number < chapter_number
                    ]
                    if earlier:
                        # history is listed oldest first; position breaks created_at ties
                        _, latest = max(
                            enumerate(earlier),
                            key=lambda item: (item[1].chapter_number, item[0]),
                        )
                        data = dict(latest.snapshot)
                        data["last_updated_chapter"] = latest.chapter_number
                        self._put_record(novel_id, kind, key, data)
                        self._delete_history(novel_id, kind, key, from_chapter=latest.chapter_number)
                        restored += 1
                    else:
                        self._delete_record(novel_id, kind, key)
                        self._delete_history(novel_id, kind, key)
                        deleted += 1

        for record in self._list_records(novel_id, LedgerKind.QUEST):
            if record.get("introduced_chapter") == chapter_number:
                key = self._record_key(LedgerKind.QUEST, record)
                with self._record_lock(novel_id, LedgerKind.QUEST, key):
                    self._delete_record(novel_id, LedgerKind.QUEST, key)
                    self._delete_history(novel_id, LedgerKind.QUEST, key)
                deleted += 1

        removed_entities = self._delete_chapter_scoped(novel_id, {chapter_number})
        self._delete_signals(novel_id, [chapter_number])
        logger.info(
            "graph chapter cleanup novel_id=%s chapter=%s restored=%d deleted=%d entities_deleted=%d",
            novel_id,
            chapter_number,
            restored,
            deleted,
            removed_entities,
        )
        return MutationResult.success(
            "delete_chapter_entities",
            f"{novel_id}:{chapter_number}",
            restored=restored,
            deleted=deleted,
            entitiesDeleted=removed_entities,
        )

    @graph_mutation
    def force_delete_chapter_range(self, novel_id: int, chapter_numbers: Iterable[int]) -> MutationResult:
        """Drop everything touched in ``chapter_numbers`` without the historical-rewrite guard."""
        chapters = set(chapter_numbers or [])
        if not chapters:
            return MutationResult.success("force_delete_chapter_range", str(novel_id), applied=False)
        deleted = 0
        for kind in LedgerKind:
            for record in self._list_records(novel_id, kind):
                touched = record.get("last_updated_chapter") in chapters
                if kind == LedgerKind.QUEST and record.get("introduced_chapter") in chapters:
                    touched = True
                if not touched:
                    continue
                key = self._record_key(kind, record)
                with self._record_lock(novel_id, kind, key):
                    self._delete_record(novel_id, kind, key)
                    self._delete_history(novel_id, kind, key)
                deleted += 1

        removed_entities = self._delete_chapter_scoped(novel_id, chapters)
        for entity_type in (EntityType.CONFLICT_ARC.value, EntityType.CHARACTER_ARC.value):
            for arc in self._list_entities(novel_id, entity_type):
                if arc.chapter_number in chapters:
                    self._delete_entity(novel_id, arc.type, arc.id)
                    self._delete_edges_for(novel_id, [arc.id])
                    removed_entities += 1
        self._delete_signals(novel_id, chapters)
        logger.warning(
            "graph chapter range force-deleted novel_id=%s chapters=%s ledger_deleted=%d entities_deleted=%d",
            novel_id,
            sorted(chapters),
            deleted,
            removed_entities,
        )
        return MutationResult.success(
            "force_delete_chapter_range",
            str(novel_id),
            deleted=deleted,
            entitiesDeleted=removed_entities,
        )

    def _delete_chapter_scoped(self, novel_id: int, chapters: Set[int]) -> int:
        removed: List[str] = []
        for entity_type in CHAPTER_SCOPED_TYPES:
            for entity in self._list_entities(novel_id, entity_type):
                if entity.chapter_number in chapters:
                    self._delete_entity(novel_id, entity.type, entity.id)
                    removed.append(entity.id)
        for foreshadow in self._list_entities(novel_id, EntityType.FORESHADOW.value):
            if not isinstance(foreshadow, ForeshadowEntity):
                continue
            if foreshadow.chapter_number in chapters or foreshadow.resolved_chapter in chapters:
                self._delete_entity(novel_id, foreshadow.type, foreshadow.id)
                removed.append(foreshadow.id)
        if removed:
            self._delete_edges_for(novel_id, removed)
        self._delete_edges_for(novel_id, [chapter_node(chapter) for chapter in chapters])
        return len(removed)

    @staticmethod
    def _record_key(kind: LedgerKind, record: Dict[str, Any]) -> str:
        if kind == LedgerKind.CHARACTER:
            return record["character_name"]
        if kind == LedgerKind.RELATIONSHIP:
            return pair_key(record["a"], record["b"])
        return record["id"]

    @graph_mutation
    def clear_graph(self, novel_id: int) -> MutationResult:
        logger.warning("graph clear novel_id=%s backend=%s", novel_id, self.backend_name)
        self._clear(novel_id)
        return MutationResult.success("clear_graph", str(novel_id))

    # ------------------------------------------------------------------
    # ranked queries
    # ------------------------------------------------------------------

    def _events(self, novel_id: int) -> List[EventEntity]:
        return [e for e in self._list_entities(novel_id, EntityType.EVENT.value) if isinstance(e, EventEntity)]

    def _adjacency(self, novel_id: int, edge_types: Set[str]) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = defaultdict(list)
        for edge in self._list_edges(novel_id):
            if edge.type not in edge_types:
                continue
            adjacency[edge.from_id].append(edge.to_id)
            adjacency[edge.to_id].append(edge.from_id)
        return adjacency

    @staticmethod
    def _count_paths(adjacency: Dict[str, List[str]], start: str, max_depth: int) -> Dict[str, int]:
        """Number of simple paths of length 1..max_depth from ``start`` to each node."""
        counts: Dict[str, int] = defaultdict(int)
        stack: List[Tuple[str, int, Tuple[str, ...]]] = [(start, 0, (start,))]
        while stack:
            node, depth, path = stack.pop()
            if depth >= max_depth:
                continue
            for neighbor in adjacency.get(node, ()):
                if neighbor in path:
                    continue
                counts[neighbor] += 1
                stack.append((neighbor, depth + 1, path + (neighbor,)))
        return counts

    @graph_query(list)
    def get_relevant_events(self, novel_id: int, chapter_number: int, limit: int = 10) -> List[EventEntity]:
        events = {event.id: event for event in self._events(novel_id)}
        anchors = [event for event in events.values() if event.chapter_number == chapter_number]
        scores: Dict[str, float] = {}
        if anchors:
            adjacency = self._adjacency(novel_id, RELEVANCE_EDGE_TYPES)
            for anchor in anchors:
                for node_id, path_count in self._count_paths(adjacency, anchor.id, RELEVANCE_RADIUS).items():
                    candidate = events.get(node_id)
                    if candidate is None or candidate.chapter_number is None:
                        continue
                    if candidate.chapter_number >= chapter_number:
                        continue
                    importance = candidate.importance_score if candidate.importance_score is not None else 0.5
                    score = (
                        1.0 / (chapter_number - candidate.chapter_number + 1)
                        + path_count * 10.0
                        + importance * 20.0
                    )
                    scores[node_id] = max(scores.get(node_id, 0.0), score)

        if scores:
            ranked_ids = sorted(scores, key=lambda event_id: scores[event_id], reverse=True)[: max(limit, 0)]
        else:
            logger.info(
                "graph relevant events fallback novel_id=%s chapter=%s reason=no_anchor",
                novel_id,
                chapter_number,
            )
            earlier = [
                event
                for event in events.values()
                if event.chapter_number is not None and event.chapter_number < chapter_number
            ]
            earlier.sort(key=lambda event: event.chapter_number or 0, reverse=True)
            ranked_ids = [event.id for event in earlier[: max(limit, 0)]]
            scores = {event_id: 0.0 for event_id in ranked_ids}

        causal_in: Dict[str, List[str]] = defaultdict(list)
        causal_out: Dict[str, List[str]] = defaultdict(list)
        for edge in self._list_edges(novel_id):
            if edge.type == CAUSES:
                causal_in[edge.to_id].append(edge.from_id)
                causal_out[edge.from_id].append(edge.to_id)

        results: List[EventEntity] = []
        for event_id in ranked_ids:
            event = events[event_id]
            results.append(
                event.model_copy(
                    update={
                        "relevance_score": scores[event_id],
                        "source": f"第{event.chapter_number}章",
                        "description": event.summary or event.description,
                        "importance_score": event.importance_score if event.importance_score is not None else 0.6,
                        "causal_from": causal_in.get(event_id, [])[:2],
                        "causal_to": causal_out.get(event_id, [])[:2],
                    }
                )
            )
        return results

    @graph_query(list)
    def get_unresolved_foreshadows(self, novel_id: int, chapter_number: int, limit: int = 10) -> List[ForeshadowEntity]:
        foreshadows = [
            item
            for item in self._list_entities(novel_id, EntityType.FORESHADOW.value)
            if isinstance(item, ForeshadowEntity)
        ]
        return ranking.rank_unresolved_foreshadows(foreshadows, chapter_number, limit)

    @graph_query(list)
    def get_plotline_status(self, novel_id: int, chapter_number: int, limit: int = 5) -> List[PlotlineEntity]:
        events = {event.id: event for event in self._events(novel_id)}
        included: Dict[str, Set[str]] = defaultdict(set)
        for edge in self._list_edges(novel_id):
            if edge.type == INCLUDES and edge.to_id in events:
                included[edge.from_id].add(edge.to_id)

        stale: List[PlotlineEntity] = []
        for plotline in self._list_entities(novel_id, EntityType.PLOTLINE.value):
            if not isinstance(plotline, PlotlineEntity):
                continue
            chapters = [events[event_id].chapter_number for event_id in included.get(plotline.id, ())]
            chapters = [chapter for chapter in chapters if chapter is not None]
            last_touched = max(chapters) if chapters else (plotline.chapter_number or 0)
            event_count = len(chapters)
            idle = chapter_number - last_touched
            if not ranking.is_stale_plotline(idle, event_count):
                continue
            priority = plotline.priority if plotline.priority is not None else 0.5
            stale.append(
                plotline.model_copy(
                    update={
                        "name": plotline.name or "未命名情节线",
                        "status": ranking.plotline_status_label(idle, event_count),
                        "last_update": f"第{last_touched}章",
                        "idle_duration": idle,
                        "event_count": event_count,
                        "priority": priority,
                        "chapter_number": last_touched,
                        "relevance_score": 1.0 - (idle / 50.0),
                        "source": "系统",
                    }
                )
            )
        stale.sort(key=lambda p: (-(p.priority or 0.0), -(p.idle_duration or 0)))
        return stale[: max(limit, 0)]

    @graph_query(list)
    def get_world_rules(self, novel_id: int, chapter_number: int, limit: int = 10) -> List[WorldRuleEntity]:
        rules = [r for r in self._list_entities(novel_id, EntityType.WORLD_RULE.value) if isinstance(r, WorldRuleEntity)]
        return ranking.rank_world_rules(rules, chapter_number, limit)

    @graph_query(ranking.empty_rhythm_report)
    def get_narrative_rhythm(self, novel_id: int, chapter_number: int, window: int = 6) -> Dict[str, Any]:
        beats = [
            beat
            for beat in self._list_entities(novel_id, EntityType.NARRATIVE_BEAT.value)
            if isinstance(beat, NarrativeBeatEntity)
            and beat.chapter_number is not None
            and beat.chapter_number < chapter_number
        ]
        beats.sort(key=lambda beat: beat.chapter_number or 0, reverse=True)
        return ranking.build_rhythm_report(beats[: max(window, 0)])

    @graph_query(list)
    def get_active_conflict_arcs(self, novel_id: int, chapter_number: int, limit: int = 5) -> List[ConflictArcEntity]:
        arcs = [a for a in self._list_entities(novel_id, EntityType.CONFLICT_ARC.value) if isinstance(a, ConflictArcEntity)]
        return ranking.rank_conflict_arcs(arcs, limit)

    @graph_query(list)
    def get_character_arc_status(self, novel_id: int, chapter_number: int, limit: int = 5) -> List[CharacterArcEntity]:
        arcs = [a for a in self._list_entities(novel_id, EntityType.CHARACTER_ARC.value) if isinstance(a, CharacterArcEntity)]
        return ranking.rank_character_arcs(arcs, limit)

    @graph_query(list)
    def get_perspective_history(self, novel_id: int, chapter_number: int, window: int = 5) -> List[GraphEntity]:
        usages = [
            usage
            for usage in self._list_entities(novel_id, EntityType.PERSPECTIVE_USAGE.value)
            if isinstance(usage, PerspectiveUsageEntity)
            and usage.chapter_number is not None
            and usage.chapter_number < chapter_number
        ]
        usages.sort(key=lambda usage: usage.chapter_number or 0, reverse=True)
        return ranking.perspective_window(usages[: max(window, 0)])

    @graph_query(list)
    def get_character_relationships(self, novel_id: int, character_name: str, limit: int = 10) -> List[GraphEntity]:
        node = character_node(character_name)
        prefix = len(character_node(""))
        rows: List[Dict[str, Any]] = []
        for edge in self._list_edges(novel_id):
            if edge.type != RELATIONSHIP:
                continue
            if edge.from_id == node:
                other = edge.to_id
            elif edge.to_id == node:
                other = edge.from_id
            else:
                continue
            relation_type = str(edge.properties.get("type") or RELATIONSHIP)
            strength = edge.properties.get("strength")
            rows.append(
                {
                    "from": character_name,
                    "to": other[prefix:],
                    "relationType": relation_type,
                    "strength": float(strength) if isinstance(strength, (int, float)) else 0.5,
                    "description": edge.properties.get("description") or "",
                }
            )
        rows.sort(key=lambda row: (-ranking.relation_type_weight(row["relationType"]), -row["strength"]))
        return [
            GraphEntity.from_properties(
                f"{row['from']}_{row['to']}_{row['relationType']}",
                None,
                row,
                type="CharacterRelationship",
                relevance_score=row["strength"],
                source="关系网",
            )
            for row in rows[: max(limit, 0)]
        ]

    @graph_query(list)
    def get_events_by_character(
        self,
        novel_id: int,
        character_name: str,
        chapter_number: int,
        limit: int = 8,
    ) -> List[EventEntity]:
        matches: List[Tuple[float, EventEntity]] = []
        for event in self._events(novel_id):
            if event.chapter_number is None or event.chapter_number >= chapter_number:
                continue
            if character_name not in event.participants and character_name not in event.on_scene_participants:
                continue
            importance = event.importance_score if event.importance_score is not None else 0.5
            score = importance * 10 + 1.0 / (chapter_number - event.chapter_number + 1)
            matches.append((score, event))
        matches.sort(key=lambda item: item[0], reverse=True)
        return [
            event.model_copy(
                update={
                    "relevance_score": 0.8,
                    "description": event.summary or event.description,
                    "source": f"第{event.chapter_number}章",
                    "extras": {**event.extras, "character": character_name},
                }
            )
            for _, event in matches[: max(limit, 0)]
        ]

    @graph_query(list)
    def get_events_by_causality(self, novel_id: int, event_id: str, depth: int = 3) -> List[EventEntity]:
        events = {event.id: event for event in self._events(novel_id)}
        if event_id not in events:
            return []
        adjacency = self._adjacency(novel_id, CAUSAL_EDGE_TYPES)
        distances: Dict[str, int] = {event_id: 0}
        queue = deque([event_id])
        while queue:
            node = queue.popleft()
            if distances[node] >= depth:
                continue
            for neighbor in adjacency.get(node, ()):
                if neighbor in distances:
                    continue
                distances[neighbor] = distances[node] + 1
                queue.append(neighbor)

        related = [
            (distance, events[node])
            for node, distance in distances.items()
            if node != event_id and node in events
        ]
        related.sort(key=lambda item: (item[0], item[1].chapter_number or 0))
        return [
            event.model_copy(
                update={
                    "relevance_score": 1.0 / (distance + 1),
                    "description": event.summary or event.description,
                    "source": "因果链",
                    "extras": {**event.extras, "causalDistance": distance},
                }
            )
            for distance, event in related
        ]

    @graph_query(list)
    def get_conflict_history(
        self,
        novel_id: int,
        protagonist: str,
        antagonist: str,
        limit: int = 10,
    ) -> List[EventEntity]:
        matches: List[EventEntity] = []
        for event in self._events(novel_id):
            names = set(event.participants) | set(event.on_scene_participants)
            if protagonist not in names or antagonist not in names:
                continue
            tone = (event.emotional_tone or "").strip().lower()
            if tone not in CONFLICT_TONES and "conflict" not in event.tags:
                continue
            matches.append(event)
        matches.sort(key=lambda event: event.chapter_number or 0)
        return [
            event.model_copy(
                update={
                    "relevance_score": 1.0,
                    "description": event.summary or event.description,
                    "source": f"第{event.chapter_number}章",
                    "extras": {**event.extras, "conflictType": "protagonist_antagonist"},
                }
            )
            for event in matches[: max(limit, 0)]
        ]

    @graph_query(list)
    def get_character_profiles(self, novel_id: int, limit: int = 10) -> List[CharacterProfileEntity]:
        profiles = [
            p for p in self._list_entities(novel_id, EntityType.CHARACTER_PROFILE.value)
            if isinstance(p, CharacterProfileEntity)
        ]
        profiles.sort(key=lambda p: p.chapter_number or 0, reverse=True)
        return profiles[: max(limit, 0)]

    # ------------------------------------------------------------------
    # ledger reads
    # ------------------------------------------------------------------

    @graph_query(list)
    def get_character_states(self, novel_id: int, limit: int = 5) -> List[CharacterState]:
        states = [CharacterState.model_validate(r) for r in self._list_records(novel_id, LedgerKind.CHARACTER)]
        states.sort(key=lambda s: s.last_updated_chapter or 0, reverse=True)
        return states[: max(limit, 0)]

    def get_character_state(self, novel_id: int, character_name: str) -> Optional[CharacterState]:
        try:
            record = self._get_record(novel_id, LedgerKind.CHARACTER, character_name)
        except Exception as exc:
            logger.warning("graph query failed query=get_character_state backend=%s error=%s", self.backend_name, exc)
            return None
        return CharacterState.model_validate(record) if record else None

    def get_relationship_state(self, novel_id: int, character_a: str, character_b: str) -> Optional[RelationshipState]:
        try:
            record = self._get_record(novel_id, LedgerKind.RELATIONSHIP, pair_key(character_a, character_b))
        except Exception as exc:
            logger.warning("graph query failed query=get_relationship_state backend=%s error=%s", self.backend_name, exc)
            return None
        return RelationshipState.model_validate(record) if record else None

    def get_open_quest(self, novel_id: int, quest_id: str) -> Optional[OpenQuest]:
        try:
            record = self._get_record(novel_id, LedgerKind.QUEST, quest_id)
        except Exception as exc:
            logger.warning("graph query failed query=get_open_quest backend=%s error=%s", self.backend_name, exc)
            return None
        return OpenQuest.model_validate(record) if record else None

    @graph_query(list)
    def get_history(self, novel_id: int, kind: LedgerKind, key: str) -> List[HistorySnapshot]:
        history = self._list_history(novel_id, kind, key)
        history.sort(key=lambda snap: snap.chapter_number)
        return history

    @graph_query(list)
    def get_top_relationships(self, novel_id: int, limit: int = 5) -> List[RelationshipState]:
        states = [RelationshipState.model_validate(r) for r in self._list_records(novel_id, LedgerKind.RELATIONSHIP)]
        states.sort(key=lambda s: (-s.strength, -(s.last_updated_chapter or 0)))
        return states[: max(limit, 0)]

    @graph_query(list)
    def get_open_quests(self, novel_id: int, current_chapter: Optional[int] = None) -> List[OpenQuest]:
        quests = [
            quest
            for quest in (OpenQuest.model_validate(r) for r in self._list_records(novel_id, LedgerKind.QUEST))
            if quest.status == QuestStatus.OPEN
            and (
                current_chapter is None
                or quest.due_by_chapter is None
                or quest.due_by_chapter >= current_chapter
            )
        ]
        quests.sort(
            key=lambda q: (
                q.due_by_chapter is None,
                q.due_by_chapter or 0,
                -(q.last_updated_chapter or 0),
            )
        )
        return quests[:10]

    @graph_query(list)
    def get_summary_signals(self, novel_id: int, chapter_number: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._list_signals(novel_id, chapter_number)

    # ------------------------------------------------------------------
    # diagnostics
    # ------------------------------------------------------------------

    @graph_query(dict)
    def get_graph_statistics(self, novel_id: int) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        total = 0
        for entity in self._list_entities(novel_id):
            key = f"{entity.type}Count"
            stats[key] = stats.get(key, 0) + 1
            total += 1
        stats["totalEntities"] = total
        stats["relationshipCount"] = len(self._list_edges(novel_id))
        stats["characterStateCount"] = len(self._list_records(novel_id, LedgerKind.CHARACTER))
        stats["relationshipStateCount"] = len(self._list_records(novel_id, LedgerKind.RELATIONSHIP))
        stats["openQuestCount"] = len(self._list_records(novel_id, LedgerKind.QUEST))
        stats["mutationErrorRate"] = self.stats.error_rate
        stats["backend"] = self.backend_name
        return stats

    @graph_query(dict)
    def get_all_graph_data(self, novel_id: int) -> Dict[str, Any]:
        return {
            "backend": self.backend_name,
            "nodes": [entity.to_payload() for entity in self._list_entities(novel_id)],
            "edges": [edge.model_dump(mode="json") for edge in self._list_edges(novel_id)],
            "characterStates": self._list_records(novel_id, LedgerKind.CHARACTER),
            "relationshipStates": self._list_records(novel_id, LedgerKind.RELATIONSHIP),
            "openQuests": self._list_records(novel_id, LedgerKind.QUEST),
            "summarySignals": self._list_signals(novel_id),
        }
