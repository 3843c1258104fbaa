"""
Entity store: keyed meta properties per content entity.

Stands in for the host CMS's post-meta table. Every effective write or
delete is followed by a synchronous change notification to subscribed
handlers; the notification carries no information about who wrote the
value, which is why the sync engine needs a loop guard.

Two implementations:
- MemoryEntityStore: dict-backed, for tests and embedding
- SQLiteEntityStore: single SQLite file at ~/.tutorsync/entities.db
  (or $TUTORSYNC_DB), values stored as JSON text

Usage:
    store = SQLiteEntityStore("/tmp/entities.db")
    course_id = store.create_entity("course")
    store.subscribe(lambda event: print(event.key, event.value))
    store.set(course_id, "_tutor_course_level", "expert")
"""

import copy
import json
import os
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from tutorsync.errors import StoreError, UnknownEntity
from tutorsync.legacy import MISSING, same_value


# Default database path
DEFAULT_DB_PATH = os.path.expanduser("~/.tutorsync/entities.db")

# Schema version for migrations
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class ChangeEvent:
    """A single property change on an entity."""
    entity_id: int
    key: str
    value: Any
    previous: Any = MISSING
    deleted: bool = False


ChangeHandler = Callable[[ChangeEvent], None]


class EntityStore(ABC):
    """Keyed property storage with change notifications.

    Subclasses implement the raw _read/_write/_remove primitives; this
    base class owns the no-op-on-equal-value rule and notification
    dispatch so both stores behave identically.
    """

    def __init__(self):
        self._handlers: List[ChangeHandler] = []

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, handler: ChangeHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: ChangeHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def _notify(self, event: ChangeEvent) -> None:
        for handler in list(self._handlers):
            handler(event)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @abstractmethod
    def create_entity(self, entity_type: str, entity_id: Optional[int] = None) -> int:
        """Create an entity and return its id."""
        ...

    @abstractmethod
    def entity_type(self, entity_id: int) -> Optional[str]:
        """Type tag of an entity, or None if it does not exist."""
        ...

    @abstractmethod
    def delete_entity(self, entity_id: int) -> bool:
        """Delete an entity and all of its properties."""
        ...

    @abstractmethod
    def keys(self, entity_id: int) -> List[str]:
        """Property keys currently stored for an entity."""
        ...

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @abstractmethod
    def _read(self, entity_id: int, key: str) -> Any:
        ...

    @abstractmethod
    def _write(self, entity_id: int, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def _remove(self, entity_id: int, key: str) -> None:
        ...

    def get(self, entity_id: int, key: str, default: Any = MISSING) -> Any:
        """Read a property; returns default (MISSING) when absent."""
        value = self._read(entity_id, key)
        return default if value is MISSING else value

    def set(self, entity_id: int, key: str, value: Any) -> bool:
        """Write a property and notify subscribers.

        Writing the value already stored is a no-op that still reports
        success and fires no notification.

        Raises:
            UnknownEntity: If the entity does not exist
            StoreError: If the backend write fails
        """
        if self.entity_type(entity_id) is None:
            raise UnknownEntity(entity_id)

        previous = self._read(entity_id, key)
        if same_value(previous, value):
            return True

        self._write(entity_id, key, value)
        self._notify(ChangeEvent(entity_id, key, copy.deepcopy(value), previous))
        return True

    def delete(self, entity_id: int, key: str) -> bool:
        """Delete a property. Returns False if it was not present."""
        previous = self._read(entity_id, key)
        if previous is MISSING:
            return False

        self._remove(entity_id, key)
        self._notify(ChangeEvent(entity_id, key, MISSING, previous, deleted=True))
        return True


class MemoryEntityStore(EntityStore):
    """Dict-backed store."""

    def __init__(self):
        super().__init__()
        self._types: Dict[int, str] = {}
        self._meta: Dict[int, Dict[str, Any]] = {}
        self._next_id = 1

    def create_entity(self, entity_type: str, entity_id: Optional[int] = None) -> int:
        if entity_id is None:
            entity_id = self._next_id
        if entity_id in self._types:
            raise StoreError(f"Entity {entity_id} already exists")

        self._types[entity_id] = entity_type
        self._meta[entity_id] = {}
        self._next_id = max(self._next_id, entity_id + 1)
        return entity_id

    def entity_type(self, entity_id: int) -> Optional[str]:
        return self._types.get(entity_id)

    def delete_entity(self, entity_id: int) -> bool:
        if entity_id not in self._types:
            return False
        del self._types[entity_id]
        del self._meta[entity_id]
        return True

    def keys(self, entity_id: int) -> List[str]:
        return sorted(self._meta.get(entity_id, {}))

    def _read(self, entity_id: int, key: str) -> Any:
        meta = self._meta.get(entity_id, {})
        if key not in meta:
            return MISSING
        return copy.deepcopy(meta[key])

    def _write(self, entity_id: int, key: str, value: Any) -> None:
        self._meta[entity_id][key] = copy.deepcopy(value)

    def _remove(self, entity_id: int, key: str) -> None:
        self._meta.get(entity_id, {}).pop(key, None)


def get_db_path() -> str:
    """Get the database path, respecting TUTORSYNC_DB env var."""
    return os.environ.get("TUTORSYNC_DB", DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Get a database connection with proper settings.

    Uses WAL mode so the CLI and the API server can share one file.
    """
    path = db_path or get_db_path()
    Path(path).parent.mkdir(parents=True, exist_ok=True)

    try:
        conn = sqlite3.connect(path)
    except sqlite3.Error as e:
        raise StoreError(f"Cannot open {path}: {e}") from e

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    try:
        yield conn
    except sqlite3.Error as e:
        raise StoreError(str(e)) from e
    finally:
        conn.close()


def init_db(db_path: Optional[str] = None) -> None:
    """Initialize the database schema.

    Creates tables and indexes if they don't exist.
    Safe to call multiple times.
    """
    with get_connection(db_path) as conn:
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            -- Content entities (course, lesson, assignment, bundle)
            CREATE TABLE IF NOT EXISTS entities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            -- Meta properties, JSON-encoded
            CREATE TABLE IF NOT EXISTS meta (
                entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
                meta_key TEXT NOT NULL,
                meta_value TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (entity_id, meta_key)
            );

            CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(entity_type);
            CREATE INDEX IF NOT EXISTS idx_meta_key ON meta(meta_key);
        """)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()


class SQLiteEntityStore(EntityStore):
    """SQLite-backed store.

    Each operation opens its own connection, matching the single-request
    execution model; the file path must be a real file, not ":memory:".
    """

    def __init__(self, db_path: Optional[str] = None):
        super().__init__()
        self.db_path = db_path or get_db_path()
        init_db(self.db_path)

    def create_entity(self, entity_type: str, entity_id: Optional[int] = None) -> int:
        now = datetime.now().isoformat()
        with get_connection(self.db_path) as conn:
            try:
                if entity_id is None:
                    cursor = conn.execute(
                        "INSERT INTO entities (entity_type, created_at) VALUES (?, ?)",
                        (entity_type, now),
                    )
                    entity_id = cursor.lastrowid
                else:
                    conn.execute(
                        "INSERT INTO entities (id, entity_type, created_at) VALUES (?, ?, ?)",
                        (entity_id, entity_type, now),
                    )
            except sqlite3.IntegrityError as e:
                raise StoreError(f"Entity {entity_id} already exists") from e
            conn.commit()
        return entity_id

    def entity_type(self, entity_id: int) -> Optional[str]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT entity_type FROM entities WHERE id = ?", (entity_id,)
            ).fetchone()
        return row["entity_type"] if row else None

    def delete_entity(self, entity_id: int) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))
            conn.commit()
        return cursor.rowcount > 0

    def keys(self, entity_id: int) -> List[str]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT meta_key FROM meta WHERE entity_id = ? ORDER BY meta_key",
                (entity_id,),
            ).fetchall()
        return [row["meta_key"] for row in rows]

    def list_entities(self, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """List entities, optionally filtered by type."""
        query = "SELECT id, entity_type, created_at FROM entities"
        params: tuple = ()
        if entity_type:
            query += " WHERE entity_type = ?"
            params = (entity_type,)
        query += " ORDER BY id"

        with get_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def _read(self, entity_id: int, key: str) -> Any:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT meta_value FROM meta WHERE entity_id = ? AND meta_key = ?",
                (entity_id, key),
            ).fetchone()
        if row is None:
            return MISSING
        try:
            return json.loads(row["meta_value"])
        except json.JSONDecodeError:
            # Hand-edited rows are surfaced as raw text for the codecs to reject
            return row["meta_value"]

    def _write(self, entity_id: int, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Cannot store {key}: {e}") from e

        with get_connection(self.db_path) as conn:
            conn.execute(
                """INSERT OR REPLACE INTO meta (entity_id, meta_key, meta_value, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (entity_id, key, encoded, datetime.now().isoformat()),
            )
            conn.commit()

    def _remove(self, entity_id: int, key: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "DELETE FROM meta WHERE entity_id = ? AND meta_key = ?",
                (entity_id, key),
            )
            conn.commit()
