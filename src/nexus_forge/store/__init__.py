from nexus_forge.store.engine import get_engine
from nexus_forge.store.helpers import (
    INDEX_DB_NAME,
    INDEX_DIR_NAME,
    index_db_path,
    index_dir,
)
from nexus_forge.store.lock import IndexLock
from nexus_forge.store.memory import InMemoryEntry, InMemoryIndexStore
from nexus_forge.store.sqlite import SqliteIndexStore

__all__ = [
    "INDEX_DB_NAME",
    "INDEX_DIR_NAME",
    "InMemoryEntry",
    "InMemoryIndexStore",
    "IndexLock",
    "SqliteIndexStore",
    "get_engine",
    "index_db_path",
    "index_dir",
]
