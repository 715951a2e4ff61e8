import gc
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from voice_listing.domain.errors import DuplicateEntry, EntryNotFound
from voice_listing.domain.models import Entry
from voice_listing.orchestrator.store import InMemoryEntryStore, SqliteEntryStore

BASE = datetime(2025, 3, 1, 9, 30, 15, 123456, tzinfo=timezone.utc)


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path: Path):
    if request.param == "sqlite":
        return SqliteEntryStore(str(tmp_path / "entries.sqlite3"))
    return InMemoryEntryStore()


def _entry(n: int, **extra) -> Entry:
    fields = {"id": f"SKU-{n}", "brand": "Levi's", "price": 45.5, "is_unisex": True}
    fields.update(extra)
    entry = Entry.create(f"note {n}", fields, creation_date=BASE + timedelta(minutes=n))
    entry.images.append(f"img_{n}.jpg")
    return entry


def test_save_then_fetch_returns_equal_entry(store):
    entry = _entry(1, audio_recording_path="/tmp/recording_1.m4a")
    store.save(entry)
    assert store.fetch_by_id("SKU-1") == entry
    assert store.fetch_by_id("missing") is None


def test_fetch_all_newest_first(store):
    for n in (2, 0, 3, 1):
        store.save(_entry(n))
    assert [e.id for e in store.fetch_all()] == ["SKU-3", "SKU-2", "SKU-1", "SKU-0"]
    assert store.count() == 4


def test_duplicate_id_rejected(store):
    store.save(_entry(1))
    with pytest.raises(DuplicateEntry):
        store.save(_entry(1, brand="Zara"))
    assert store.fetch_by_id("SKU-1").brand == "Levi's"


def test_update_keeps_id_and_creation_date(store):
    entry = _entry(1)
    store.save(entry)
    entry.brand = "Zara"
    entry.creation_date = BASE + timedelta(days=30)
    entry.email_sent = True
    entry.last_email_sent_date = BASE + timedelta(hours=1)
    store.update(entry)

    stored = store.fetch_by_id("SKU-1")
    assert stored.brand == "Zara"
    assert stored.creation_date == BASE + timedelta(minutes=1)
    assert stored.email_sent is True
    assert stored.last_email_sent_date == BASE + timedelta(hours=1)


def test_update_and_delete_missing_raise(store):
    with pytest.raises(EntryNotFound):
        store.update(_entry(9))
    with pytest.raises(EntryNotFound):
        store.delete("SKU-9")


def test_delete_by_entry_or_id(store):
    a, b = _entry(1), _entry(2)
    store.save(a)
    store.save(b)
    store.delete(a)
    store.delete("SKU-2")
    assert store.fetch_all() == []
    assert store.count() == 0


def test_memory_store_returns_copies():
    store = InMemoryEntryStore()
    entry = _entry(1)
    store.save(entry)
    entry.brand = "changed"
    fetched = store.fetch_by_id("SKU-1")
    fetched.images.append("x.jpg")
    assert store.fetch_by_id("SKU-1").brand == "Levi's"
    assert store.fetch_by_id("SKU-1").images == ["img_1.jpg"]


def test_sqlite_default_location_under_var(tmp_path: Path):
    (tmp_path / "README.md").write_text("marker", encoding="utf-8")
    store = SqliteEntryStore(root_dir=str(tmp_path))
    assert store.db_path == str(tmp_path / "var" / "entries" / "entries.sqlite3")
    assert os.path.isfile(store.db_path)


def test_concurrent_saves_of_distinct_ids(tmp_path: Path):
    store = SqliteEntryStore(str(tmp_path / "entries.sqlite3"))
    errors = []

    def worker(n):
        try:
            store.save(_entry(n))
        except Exception as exc:  # pragma: no cover - surfaced through the assert
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert store.count() == 8


def test_mutate_changes_stored_record(store):
    store.save(_entry(1))
    updated = store.mutate("SKU-1", lambda e: setattr(e, "brand", "Zara"))
    assert updated.brand == "Zara"
    assert store.fetch_by_id("SKU-1").brand == "Zara"
    with pytest.raises(EntryNotFound):
        store.mutate("SKU-9", lambda e: None)


def test_concurrent_mutations_of_same_id_are_all_kept(store):
    store.save(_entry(1))
    errors = []

    def worker(n):
        try:
            store.mutate("SKU-1", lambda e: e.images.append(f"extra_{n}.jpg"))
        except Exception as exc:  # pragma: no cover - surfaced through the assert
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    images = store.fetch_by_id("SKU-1").images
    assert images[0] == "img_1.jpg"
    assert sorted(images[1:]) == sorted(f"extra_{n}.jpg" for n in range(10))


def test_writer_locks_released_after_use(store):
    for n in range(5):
        store.save(_entry(n))
        store.mutate(f"SKU-{n}", lambda e: setattr(e, "color", "blue"))
        store.delete(f"SKU-{n}")
    gc.collect()
    assert len(store._id_locks) == 0
