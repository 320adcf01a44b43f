from memory.base import MutationStats, NarrativeGraphStore, canonical_pair, pair_key
from memory.in_memory import InMemoryGraphStore
from memory.sqlite_store import SQLiteGraphStore
from memory.factory import StoreFactory, create_graph_store

__all__ = [
    "MutationStats",
    "NarrativeGraphStore",
    "InMemoryGraphStore",
    "SQLiteGraphStore",
    "StoreFactory",
    "create_graph_store",
    "canonical_pair",
    "pair_key",
]
