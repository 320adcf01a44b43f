import logging
from typing import Optional

from core.settings import Settings, get_settings
from models import ConfigValidationError
from memory.base import NarrativeGraphStore
from memory.in_memory import InMemoryGraphStore
from memory.sqlite_store import SQLiteGraphStore

logger = logging.getLogger("novelist.graph")

BACKENDS = ("auto", "sqlite", "memory")


class StoreFactory:
    """
    Chooses the graph backend once, at process start.

    ``memory`` always returns the in-memory store. ``sqlite`` opens the
    configured file and fails with ``ConfigValidationError`` when the probe
    fails. ``auto`` tries SQLite and falls back to memory, logging why.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def create(self) -> NarrativeGraphStore:
        mode = (self.settings.graph_backend or "auto").strip().lower()
        if mode not in BACKENDS:
            raise ConfigValidationError(f"unknown graph backend: {self.settings.graph_backend}")

        if mode == "memory":
            logger.info("graph backend selected backend=memory reason=configured")
            return InMemoryGraphStore()

        db_path = self.settings.resolved_graph_db_path()
        try:
            store = SQLiteGraphStore(str(db_path))
            store.probe()
        except Exception as exc:
            if mode == "sqlite":
                raise ConfigValidationError(f"sqlite graph store unavailable path={db_path}: {exc}") from exc
            logger.warning(
                "graph backend probe failed backend=sqlite path=%s error=%s fallback=memory",
                db_path,
                exc,
            )
            return InMemoryGraphStore()

        logger.info("graph backend selected backend=sqlite path=%s", db_path)
        return store


def create_graph_store(settings: Optional[Settings] = None) -> NarrativeGraphStore:
    return StoreFactory(settings).create()
