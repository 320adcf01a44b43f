import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from models import GraphEdge, GraphEntity, HistorySnapshot, LedgerKind, entity_from_dict
from memory.base import NarrativeGraphStore


class SQLiteGraphStore(NarrativeGraphStore):
    """Persistent backend: one SQLite file holding every novel's graph and ledgers."""

    backend_name = "sqlite"

    def __init__(self, db_path: str):
        super().__init__()
        self.db_path = Path(db_path)
        # edge property merge is read-modify-write
        self._edge_lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
        except sqlite3.OperationalError as exc:
            raise sqlite3.OperationalError(f"{exc} (db_path={self.db_path})") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    @contextmanager
    def _connection(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS graph_entities (
                    novel_id INTEGER NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    chapter_number INTEGER,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (novel_id, entity_type, entity_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS graph_edges (
                    novel_id INTEGER NOT NULL,
                    from_id TEXT NOT NULL,
                    rel_type TEXT NOT NULL,
                    to_id TEXT NOT NULL,
                    properties TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (novel_id, from_id, rel_type, to_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_records (
                    novel_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    record_key TEXT NOT NULL,
                    last_updated_chapter INTEGER,
                    data TEXT NOT NULL,
                    PRIMARY KEY (novel_id, kind, record_key)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_history (
                    history_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    novel_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    record_key TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    snapshot TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS summary_signals (
                    novel_id INTEGER NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    signal_key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (novel_id, chapter_number, signal_key)
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_entities_chapter ON graph_entities(novel_id, chapter_number)"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_edges_to ON graph_edges(novel_id, to_id)")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_key ON ledger_history(novel_id, kind, record_key)"
            )
            conn.commit()

    def probe(self) -> None:
        with self._connection() as conn:
            conn.execute("SELECT 1").fetchone()

    # entities

    def _put_entity(self, novel_id: int, entity: GraphEntity) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO graph_entities
                (novel_id, entity_type, entity_id, chapter_number, data, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    novel_id,
                    entity.type,
                    entity.id,
                    entity.chapter_number,
                    json.dumps(entity.model_dump(mode="json", by_alias=True), ensure_ascii=False),
                    datetime.now().isoformat(),
                ),
            )
            conn.commit()

    def _find_entity(self, novel_id: int, entity_id: str) -> Optional[GraphEntity]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT data FROM graph_entities WHERE novel_id = ? AND entity_id = ? LIMIT 1",
                (novel_id, entity_id),
            ).fetchone()
        return entity_from_dict(json.loads(row["data"])) if row else None

    def _list_entities(self, novel_id: int, entity_type: Optional[str] = None) -> List[GraphEntity]:
        with self._connection() as conn:
            if entity_type:
                rows = conn.execute(
                    "SELECT data FROM graph_entities WHERE novel_id = ? AND entity_type = ?",
                    (novel_id, entity_type),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT data FROM graph_entities WHERE novel_id = ?",
                    (novel_id,),
                ).fetchall()
        return [entity_from_dict(json.loads(row["data"])) for row in rows]

    def _delete_entity(self, novel_id: int, entity_type: str, entity_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM graph_entities WHERE novel_id = ? AND entity_type = ? AND entity_id = ?",
                (novel_id, entity_type, entity_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    # edges

    def _put_edge(self, novel_id: int, edge: GraphEdge) -> None:
        with self._edge_lock, self._connection() as conn:
            row = conn.execute(
                """
                SELECT properties, created_at FROM graph_edges
                WHERE novel_id = ? AND from_id = ? AND rel_type = ? AND to_id = ?
                """,
                (novel_id, edge.from_id, edge.type, edge.to_id),
            ).fetchone()
            properties = dict(edge.properties)
            created_at = edge.created_at.isoformat()
            if row:
                merged = json.loads(row["properties"] or "{}")
                merged.update(properties)
                properties = merged
                created_at = row["created_at"]
            conn.execute(
                """
                INSERT OR REPLACE INTO graph_edges
                (novel_id, from_id, rel_type, to_id, properties, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    novel_id,
                    edge.from_id,
                    edge.type,
                    edge.to_id,
                    json.dumps(properties, ensure_ascii=False, default=str),
                    created_at,
                ),
            )
            conn.commit()

    def _list_edges(self, novel_id: int) -> List[GraphEdge]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT from_id, rel_type, to_id, properties, created_at FROM graph_edges WHERE novel_id = ?",
                (novel_id,),
            ).fetchall()
        return [
            GraphEdge(
                from_id=row["from_id"],
                type=row["rel_type"],
                to_id=row["to_id"],
                properties=json.loads(row["properties"] or "{}"),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def _delete_edges_for(self, novel_id: int, node_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return 0
        removed = 0
        with self._connection() as conn:
            for node_id in ids:
                cursor = conn.execute(
                    "DELETE FROM graph_edges WHERE novel_id = ? AND (from_id = ? OR to_id = ?)",
                    (novel_id, node_id, node_id),
                )
                removed += cursor.rowcount
            conn.commit()
        return removed

    # ledgers

    def _get_record(self, novel_id: int, kind: LedgerKind, key: str) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT data FROM ledger_records WHERE novel_id = ? AND kind = ? AND record_key = ?",
                (novel_id, kind.value, key),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def _put_record(self, novel_id: int, kind: LedgerKind, key: str, data: Dict[str, Any]) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO ledger_records
                (novel_id, kind, record_key, last_updated_chapter, data)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    novel_id,
                    kind.value,
                    key,
                    data.get("last_updated_chapter"),
                    json.dumps(data, ensure_ascii=False, default=str),
                ),
            )
            conn.commit()

    def _delete_record(self, novel_id: int, kind: LedgerKind, key: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM ledger_records WHERE novel_id = ? AND kind = ? AND record_key = ?",
                (novel_id, kind.value, key),
            )
            conn.commit()
            return cursor.rowcount > 0

    def _list_records(self, novel_id: int, kind: LedgerKind) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT data FROM ledger_records WHERE novel_id = ? AND kind = ?",
                (novel_id, kind.value),
            ).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def _push_history(self, novel_id: int, snapshot: HistorySnapshot) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO ledger_history
                (novel_id, kind, record_key, chapter_number, snapshot, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    novel_id,
                    snapshot.kind.value,
                    snapshot.key,
                    snapshot.chapter_number,
                    json.dumps(snapshot.snapshot, ensure_ascii=False, default=str),
                    snapshot.created_at.isoformat(),
                ),
            )
            conn.commit()

    def _list_history(self, novel_id: int, kind: LedgerKind, key: str) -> List[HistorySnapshot]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT chapter_number, snapshot, created_at FROM ledger_history
                WHERE novel_id = ? AND kind = ? AND record_key = ?
                ORDER BY history_id ASC
                """,
                (novel_id, kind.value, key),
            ).fetchall()
        return [
            HistorySnapshot(
                kind=kind,
                key=key,
                chapter_number=row["chapter_number"],
                snapshot=json.loads(row["snapshot"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def _delete_history(
        self,
        novel_id: int,
        kind: LedgerKind,
        key: str,
        from_chapter: Optional[int] = None,
    ) -> int:
        sql = "DELETE FROM ledger_history WHERE novel_id = ? AND kind = ? AND record_key = ?"
        params: List[Any] = [novel_id, kind.value, key]
        if from_chapter is not None:
            sql += " AND chapter_number >= ?"
            params.append(from_chapter)
        with self._connection() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    # summary signals

    def _put_signal(self, novel_id: int, chapter_number: int, key: str, value: str) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO summary_signals (novel_id, chapter_number, signal_key, value)
                VALUES (?, ?, ?, ?)
                """,
                (novel_id, chapter_number, key, value),
            )
            conn.commit()

    def _list_signals(self, novel_id: int, chapter_number: Optional[int] = None) -> List[Dict[str, Any]]:
        query = "SELECT chapter_number, signal_key, value FROM summary_signals WHERE novel_id = ?"
        params: List[Any] = [novel_id]
        if chapter_number is not None:
            query += " AND chapter_number = ?"
            params.append(chapter_number)
        query += " ORDER BY chapter_number ASC, signal_key ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {"chapterNumber": row["chapter_number"], "key": row["signal_key"], "value": row["value"]}
            for row in rows
        ]

    def _delete_signals(self, novel_id: int, chapter_numbers: Iterable[int]) -> int:
        removed = 0
        with self._connection() as conn:
            for chapter in set(chapter_numbers):
                cursor = conn.execute(
                    "DELETE FROM summary_signals WHERE novel_id = ? AND chapter_number = ?",
                    (novel_id, chapter),
                )
                removed += cursor.rowcount
            conn.commit()
        return removed

    def _clear(self, novel_id: int) -> None:
        with self._connection() as conn:
            for table in ("graph_entities", "graph_edges", "ledger_records", "ledger_history", "summary_signals"):
                conn.execute(f"DELETE FROM {table} WHERE novel_id = ?", (novel_id,))
            conn.commit()
