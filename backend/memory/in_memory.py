import copy
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from models import GraphEdge, GraphEntity, HistorySnapshot, LedgerKind
from memory.base import NarrativeGraphStore


class _NovelGraph:
    def __init__(self):
        self.entities: Dict[Tuple[str, str], GraphEntity] = {}
        self.edges: Dict[Tuple[str, str, str], GraphEdge] = {}
        self.records: Dict[LedgerKind, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.history: Dict[Tuple[LedgerKind, str], List[HistorySnapshot]] = defaultdict(list)
        self.signals: Dict[Tuple[int, str], str] = {}


class InMemoryGraphStore(NarrativeGraphStore):
    """Process-local store; used when no database is configured and throughout the tests."""

    backend_name = "memory"

    def __init__(self):
        super().__init__()
        self._graphs: Dict[int, _NovelGraph] = defaultdict(_NovelGraph)
        self._data_lock = threading.RLock()

    def probe(self) -> None:
        return None

    def _graph(self, novel_id: int) -> _NovelGraph:
        return self._graphs[novel_id]

    def _put_entity(self, novel_id: int, entity: GraphEntity) -> None:
        with self._data_lock:
            self._graph(novel_id).entities[(entity.type, entity.id)] = entity.model_copy(deep=True)

    def _find_entity(self, novel_id: int, entity_id: str) -> Optional[GraphEntity]:
        with self._data_lock:
            for (_, candidate_id), entity in self._graph(novel_id).entities.items():
                if candidate_id == entity_id:
                    return entity.model_copy(deep=True)
        return None

    def _list_entities(self, novel_id: int, entity_type: Optional[str] = None) -> List[GraphEntity]:
        with self._data_lock:
            return [
                entity.model_copy(deep=True)
                for (kind, _), entity in self._graph(novel_id).entities.items()
                if entity_type is None or kind == entity_type
            ]

    def _delete_entity(self, novel_id: int, entity_type: str, entity_id: str) -> bool:
        with self._data_lock:
            return self._graph(novel_id).entities.pop((entity_type, entity_id), None) is not None

    def _put_edge(self, novel_id: int, edge: GraphEdge) -> None:
        key = (edge.from_id, edge.type, edge.to_id)
        with self._data_lock:
            edges = self._graph(novel_id).edges
            existing = edges.get(key)
            if existing is None:
                edges[key] = edge.model_copy(deep=True)
            else:
                existing.properties.update(copy.deepcopy(edge.properties))

    def _list_edges(self, novel_id: int) -> List[GraphEdge]:
        with self._data_lock:
            return [edge.model_copy(deep=True) for edge in self._graph(novel_id).edges.values()]

    def _delete_edges_for(self, novel_id: int, node_ids: Iterable[str]) -> int:
        doomed = set(node_ids)
        with self._data_lock:
            edges = self._graph(novel_id).edges
            keys = [key for key in edges if key[0] in doomed or key[2] in doomed]
            for key in keys:
                del edges[key]
        return len(keys)

    def _get_record(self, novel_id: int, kind: LedgerKind, key: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            record = self._graph(novel_id).records[kind].get(key)
            return copy.deepcopy(record) if record is not None else None

    def _put_record(self, novel_id: int, kind: LedgerKind, key: str, data: Dict[str, Any]) -> None:
        with self._data_lock:
            self._graph(novel_id).records[kind][key] = copy.deepcopy(data)

    def _delete_record(self, novel_id: int, kind: LedgerKind, key: str) -> bool:
        with self._data_lock:
            return self._graph(novel_id).records[kind].pop(key, None) is not None

    def _list_records(self, novel_id: int, kind: LedgerKind) -> List[Dict[str, Any]]:
        with self._data_lock:
            return [copy.deepcopy(record) for record in self._graph(novel_id).records[kind].values()]

    def _push_history(self, novel_id: int, snapshot: HistorySnapshot) -> None:
        with self._data_lock:
            self._graph(novel_id).history[(snapshot.kind, snapshot.key)].append(snapshot.model_copy(deep=True))

    def _list_history(self, novel_id: int, kind: LedgerKind, key: str) -> List[HistorySnapshot]:
        with self._data_lock:
            return [snap.model_copy(deep=True) for snap in self._graph(novel_id).history.get((kind, key), [])]

    def _delete_history(
        self,
        novel_id: int,
        kind: LedgerKind,
        key: str,
        from_chapter: Optional[int] = None,
    ) -> int:
        with self._data_lock:
            history = self._graph(novel_id).history
            entries = history.get((kind, key), [])
            if from_chapter is None:
                history.pop((kind, key), None)
                return len(entries)
            kept = [snap for snap in entries if snap.chapter_number < from_chapter]
            history[(kind, key)] = kept
            return len(entries) - len(kept)

    def _put_signal(self, novel_id: int, chapter_number: int, key: str, value: str) -> None:
        with self._data_lock:
            self._graph(novel_id).signals[(chapter_number, key)] = value

    def _list_signals(self, novel_id: int, chapter_number: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._data_lock:
            rows = [
                {"chapterNumber": chapter, "key": key, "value": value}
                for (chapter, key), value in self._graph(novel_id).signals.items()
                if chapter_number is None or chapter == chapter_number
            ]
        rows.sort(key=lambda row: (row["chapterNumber"], row["key"]))
        return rows

    def _delete_signals(self, novel_id: int, chapter_numbers: Iterable[int]) -> int:
        chapters = set(chapter_numbers)
        with self._data_lock:
            signals = self._graph(novel_id).signals
            keys = [key for key in signals if key[0] in chapters]
            for key in keys:
                del signals[key]
        return len(keys)

    def _clear(self, novel_id: int) -> None:
        with self._data_lock:
            self._graphs.pop(novel_id, None)
