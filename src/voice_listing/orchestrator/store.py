"""Entry persistence: CRUD contract plus SQLite and in-memory backends."""

from __future__ import annotations

import copy
import json
import os
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from ..domain.errors import DuplicateEntry, EntryNotFound, PersistenceFailed
from ..domain.models import Entry
from ..logging import get_logger
from ..paths import find_project_root, var_dir

LOG = get_logger("orchestrator-store")

DEFAULT_DB_FOLDER = "entries"
DEFAULT_DB_FILENAME = "entries.sqlite3"
TABLE_NAME = "entries"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
  id                   TEXT PRIMARY KEY,
  transcribed_text     TEXT NOT NULL,
  creation_date        TEXT NOT NULL,   -- ISO-8601 UTC with microseconds
  email_sent           INTEGER NOT NULL DEFAULT 0,
  last_email_sent_date TEXT,
  audio_recording_path TEXT,
  title                TEXT NOT NULL DEFAULT '',
  brand                TEXT NOT NULL DEFAULT '',
  color                TEXT NOT NULL DEFAULT '',
  item_description     TEXT NOT NULL DEFAULT '',
  is_unisex            INTEGER NOT NULL DEFAULT 0,
  measurement_length   REAL NOT NULL DEFAULT 0 CHECK(measurement_length >= 0),
  measurement_width    REAL NOT NULL DEFAULT 0 CHECK(measurement_width >= 0),
  price                REAL NOT NULL DEFAULT 0 CHECK(price >= 0),
  size                 TEXT NOT NULL DEFAULT '',
  status               TEXT NOT NULL DEFAULT '',
  images               TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_creation_date ON {TABLE_NAME}(creation_date);
"""

# Columns rewritten by update(); id and creation_date are immutable.
_MUTABLE_COLUMNS = (
    "transcribed_text",
    "email_sent",
    "last_email_sent_date",
    "audio_recording_path",
    "title",
    "brand",
    "color",
    "item_description",
    "is_unisex",
    "measurement_length",
    "measurement_width",
    "price",
    "size",
    "status",
    "images",
)
_ALL_COLUMNS = ("id", "creation_date") + _MUTABLE_COLUMNS


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _entry_id(entry_or_id: Union[Entry, str]) -> str:
    return entry_or_id.id if isinstance(entry_or_id, Entry) else str(entry_or_id)


class EntryStore:
    """CRUD contract over Entry records.

    Write failures propagate as PersistenceFailed; nothing is retried here.
    Writes to the same id are serialized; different ids do not block each other.
    A per-id lock lives only while some writer holds it.
    """

    def __init__(self) -> None:
        self._locks_guard = threading.Lock()
        self._id_locks: "weakref.WeakValueDictionary[str, Any]" = weakref.WeakValueDictionary()

    @contextmanager
    def _writer(self, entry_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._id_locks.get(entry_id)
            if lock is None:
                lock = threading.Lock()
                self._id_locks[entry_id] = lock
        with lock:
            yield

    # ---- public API ----------------------------------------------------------
    def save(self, entry: Entry) -> None:
        with self._writer(entry.id):
            self._insert(entry)
        LOG.info(f"Saved entry {entry.id}")

    def update(self, entry: Entry) -> None:
        with self._writer(entry.id):
            self._replace(entry)
        LOG.info(f"Updated entry {entry.id}")

    def mutate(self, entry_id: str, change: Callable[[Entry], None]) -> Entry:
        """Read, change and write back one entry as a single step.

        ``change`` receives the current stored record; no other write to the
        same id can interleave between the read and the write.
        """
        with self._writer(entry_id):
            entry = self.fetch_by_id(entry_id)
            if entry is None:
                raise EntryNotFound(f"id {entry_id!r}")
            change(entry)
            self._replace(entry)
        LOG.info(f"Updated entry {entry_id}")
        return entry

    def delete(self, entry_or_id: Union[Entry, str]) -> None:
        entry_id = _entry_id(entry_or_id)
        with self._writer(entry_id):
            self._remove(entry_id)
        LOG.info(f"Deleted entry {entry_id}")

    def fetch_all(self) -> List[Entry]:
        raise NotImplementedError

    def fetch_by_id(self, entry_id: str) -> Optional[Entry]:
        raise NotImplementedError

    def count(self) -> int:
        return len(self.fetch_all())

    # ---- backend hooks -------------------------------------------------------
    def _insert(self, entry: Entry) -> None:
        raise NotImplementedError

    def _replace(self, entry: Entry) -> None:
        raise NotImplementedError

    def _remove(self, entry_id: str) -> None:
        raise NotImplementedError


class InMemoryEntryStore(EntryStore):
    """Process-local store; keeps deep copies so callers never share state."""

    def __init__(self) -> None:
        super().__init__()
        self._rows: Dict[str, Entry] = {}

    def fetch_all(self) -> List[Entry]:
        rows = [copy.deepcopy(e) for e in list(self._rows.values())]
        return sorted(rows, key=lambda e: e.creation_date, reverse=True)

    def fetch_by_id(self, entry_id: str) -> Optional[Entry]:
        found = self._rows.get(entry_id)
        return copy.deepcopy(found) if found else None

    def count(self) -> int:
        return len(self._rows)

    def _insert(self, entry: Entry) -> None:
        if entry.id in self._rows:
            raise DuplicateEntry(f"id {entry.id!r} already stored")
        self._rows[entry.id] = copy.deepcopy(entry)

    def _replace(self, entry: Entry) -> None:
        current = self._rows.get(entry.id)
        if current is None:
            raise EntryNotFound(f"id {entry.id!r}")
        updated = copy.deepcopy(entry)
        updated.creation_date = current.creation_date
        self._rows[entry.id] = updated

    def _remove(self, entry_id: str) -> None:
        if self._rows.pop(entry_id, None) is None:
            raise EntryNotFound(f"id {entry_id!r}")


class SqliteEntryStore(EntryStore):
    """SQLite-backed entry store.

    - Places the DB under `<project-root>/var/entries/entries.sqlite3` unless
      an explicit ``db_path`` is given.
    - Ensures schema on construction; one connection per operation.
    """

    def __init__(self, db_path: Optional[str] = None, *, root_dir: Optional[str] = None) -> None:
        super().__init__()
        if db_path is None:
            folder = os.path.join(var_dir(find_project_root(root_dir)), DEFAULT_DB_FOLDER)
            db_path = os.path.join(folder, DEFAULT_DB_FILENAME)
        folder = os.path.dirname(os.path.abspath(db_path))
        try:
            os.makedirs(folder, exist_ok=True)
        except OSError as exc:
            raise PersistenceFailed(f"cannot create {folder}: {exc}") from exc
        self.db_path = os.path.abspath(db_path)
        LOG.info(f"Entry DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        try:
            with self.connect() as conn:
                cur = conn.cursor()
                try:
                    cur.execute("PRAGMA journal_mode=WAL;")
                    cur.execute("PRAGMA synchronous=NORMAL;")
                except sqlite3.DatabaseError as exc:
                    LOG.debug(f"WAL not enabled: {exc}")
                cur.executescript(SCHEMA_SQL)
                conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailed(f"schema setup failed: {exc}") from exc
        LOG.debug("Entry DB schema ensured.")

    # ---- row mapping ---------------------------------------------------------
    @staticmethod
    def _to_row(entry: Entry) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "transcribed_text": entry.transcribed_text,
            "creation_date": _ts(entry.creation_date),
            "email_sent": 1 if entry.email_sent else 0,
            "last_email_sent_date": _ts(entry.last_email_sent_date),
            "audio_recording_path": entry.audio_recording_path,
            "title": entry.title,
            "brand": entry.brand,
            "color": entry.color,
            "item_description": entry.item_description,
            "is_unisex": 1 if entry.is_unisex else 0,
            "measurement_length": float(entry.measurement_length),
            "measurement_width": float(entry.measurement_width),
            "price": float(entry.price),
            "size": entry.size,
            "status": entry.status,
            "images": json.dumps(list(entry.images), ensure_ascii=False),
        }

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Entry:
        try:
            images = json.loads(row["images"] or "[]")
        except ValueError:
            LOG.warning(f"Entry {row['id']}: unreadable images column; treating as empty")
            images = []
        return Entry(
            id=row["id"],
            transcribed_text=row["transcribed_text"],
            creation_date=_parse_ts(row["creation_date"]),
            email_sent=bool(row["email_sent"]),
            last_email_sent_date=_parse_ts(row["last_email_sent_date"]),
            audio_recording_path=row["audio_recording_path"],
            title=row["title"],
            brand=row["brand"],
            color=row["color"],
            item_description=row["item_description"],
            is_unisex=bool(row["is_unisex"]),
            measurement_length=float(row["measurement_length"]),
            measurement_width=float(row["measurement_width"]),
            price=float(row["price"]),
            size=row["size"],
            status=row["status"],
            images=[str(i) for i in images],
        )

    # ---- reads ---------------------------------------------------------------
    def fetch_all(self) -> List[Entry]:
        try:
            with self.connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM {TABLE_NAME} ORDER BY creation_date DESC, rowid DESC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceFailed(f"fetch failed: {exc}") from exc
        return [self._from_row(r) for r in rows]

    def fetch_by_id(self, entry_id: str) -> Optional[Entry]:
        try:
            with self.connect() as conn:
                row = conn.execute(f"SELECT * FROM {TABLE_NAME} WHERE id=?", (entry_id,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailed(f"fetch failed: {exc}") from exc
        return self._from_row(row) if row else None

    def count(self) -> int:
        try:
            with self.connect() as conn:
                row = conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()
        except sqlite3.Error as exc:
            raise PersistenceFailed(f"count failed: {exc}") from exc
        return int(row[0]) if row else 0

    # ---- writes --------------------------------------------------------------
    def _insert(self, entry: Entry) -> None:
        row = self._to_row(entry)
        cols = ", ".join(_ALL_COLUMNS)
        marks = ", ".join(f":{c}" for c in _ALL_COLUMNS)
        try:
            with self.connect() as conn:
                conn.execute(f"INSERT INTO {TABLE_NAME} ({cols}) VALUES ({marks})", row)
                conn.commit()
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc).upper():
                raise DuplicateEntry(f"id {entry.id!r} already stored") from exc
            raise PersistenceFailed(f"insert rejected: {exc}") from exc
        except sqlite3.Error as exc:
            raise PersistenceFailed(f"insert failed: {exc}") from exc

    def _replace(self, entry: Entry) -> None:
        row = self._to_row(entry)
        assignments = ", ".join(f"{c}=:{c}" for c in _MUTABLE_COLUMNS)
        try:
            with self.connect() as conn:
                cur = conn.execute(f"UPDATE {TABLE_NAME} SET {assignments} WHERE id=:id", row)
                conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailed(f"update failed: {exc}") from exc
        if cur.rowcount == 0:
            raise EntryNotFound(f"id {entry.id!r}")

    def _remove(self, entry_id: str) -> None:
        try:
            with self.connect() as conn:
                cur = conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id=?", (entry_id,))
                conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailed(f"delete failed: {exc}") from exc
        if cur.rowcount == 0:
            raise EntryNotFound(f"id {entry_id!r}")
