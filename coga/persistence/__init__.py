"""Persistence: SQLite key/value state store and its migrations."""

from coga.persistence.migrations import run_migrations
from coga.persistence.state_store import InMemoryStateStore, SQLiteStateStore

__all__ = [
    "InMemoryStateStore",
    "SQLiteStateStore",
    "run_migrations",
]
