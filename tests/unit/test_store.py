"""
Unit tests for the file-per-entry Entry Store.

Tests cover:
- Appending and identifier ordering
- Header-only listing and body loading
- Missing and corrupt records
- Retention by count and by age
- Recovery of the index from a directory scan
"""

import json
import os
import threading
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from logtrains.errors import EntryCorruptError, EntryNotFoundError, StoreIOError
from logtrains.schema import Entry, RetentionPolicy
from logtrains.store import EntryStore, encode_record, entry_filename
from logtrains.store.entries import STALE_TEMP_SECONDS


# =============================================================================
# Record Format Tests
# =============================================================================


class TestRecordFormat:
    """Tests for the on-disk record layout."""

    def test_filename_sorts_numerically(self) -> None:
        """Zero-padded names sort the same way as identifiers."""
        names = [entry_filename(i) for i in (5, 40, 300)]
        assert names == sorted(names)
        assert entry_filename(5) == "00000000000000000005.entry"

    def test_header_line_then_body(self) -> None:
        entry = Entry(
            identifier=9,
            captured_at=datetime(2024, 1, 1, tzinfo=UTC),
            command_text="make",
            exit_code=2,
            body="line 1\nline 2",
        )
        raw = encode_record(entry)
        header_line, body = raw.split(b"\n", 1)
        header = json.loads(header_line)
        assert header["identifier"] == 9
        assert header["command_text"] == "make"
        assert header["exit_code"] == 2
        assert header["byte_length"] == len(body)
        assert body == b"line 1\nline 2"


# =============================================================================
# Append Tests
# =============================================================================


class TestAppend:
    """Tests for appending entries."""

    def test_directory_created_lazily(self, store: EntryStore) -> None:
        assert not store.root.exists()
        assert store.identifiers() == []
        store.add("hello")
        assert store.root.is_dir()

    def test_identifiers_strictly_increase(self, store: EntryStore) -> None:
        ids = [store.add(f"entry {i}").identifier for i in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5
        assert store.identifiers() == ids

    def test_add_returns_persisted_entry(self, store: EntryStore) -> None:
        entry = store.add("boom\n", command_text="make", exit_code=2)
        loaded = store.load(entry.identifier)
        assert loaded == entry

    def test_append_explicit_identifier(self, store: EntryStore) -> None:
        store.append(Entry(identifier=10, body="x"))
        assert store.identifiers() == [10]

    def test_append_duplicate_identifier_rejected(self, store: EntryStore) -> None:
        store.append(Entry(identifier=10, body="x"))
        with pytest.raises(StoreIOError):
            store.append(Entry(identifier=10, body="y"))
        assert store.load_body(10) == "x"

    def test_add_skips_taken_identifier(self, store: EntryStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """A collision moves on to the next identifier instead of overwriting."""
        store.append(Entry(identifier=100, body="first"))
        monkeypatch.setattr(store, "next_identifier", lambda: 100)
        entry = store.add("second")
        assert entry.identifier == 101
        assert store.load_body(100) == "first"

    def test_next_identifier_after_last(self, store: EntryStore) -> None:
        far_future = time.time_ns() * 2
        store.append(Entry(identifier=far_future, body="x"))
        assert store.next_identifier() == far_future + 1

    def test_no_temp_files_left(self, store: EntryStore) -> None:
        store.add("x")
        assert [p.name for p in store.root.iterdir()] == [entry_filename(store.identifiers()[0])]

    def test_concurrent_adds(self, store: EntryStore) -> None:
        """Threads sharing a handle never lose or overwrite entries."""

        def worker(n: int) -> None:
            for i in range(10):
                store.add(f"{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.count() == 40


# =============================================================================
# Listing and Loading Tests
# =============================================================================


class TestListing:
    """Tests for listing and loading."""

    def test_list_ordered_oldest_first(self, populated_store: EntryStore) -> None:
        refs = list(populated_store.list_ordered())
        assert [r.command_text for r in refs] == ["make", "make test", "cargo build"]
        assert [r.byte_length for r in refs] == [1, 2, 3]

    def test_get_reads_header_only(self, store: EntryStore) -> None:
        entry = store.add("x" * 10_000, command_text="yes")
        ref = store.get(entry.identifier)
        assert ref.byte_length == 10_000
        assert ref.command_text == "yes"

    def test_load_body(self, populated_store: EntryStore) -> None:
        last = populated_store.identifiers()[-1]
        assert populated_store.load_body(last) == "CCC"

    def test_unicode_body(self, store: EntryStore) -> None:
        entry = store.add("✗ échec ✓\n")
        assert store.load_body(entry.ref()) == "✗ échec ✓\n"

    def test_ignores_foreign_files(self, populated_store: EntryStore) -> None:
        (populated_store.root / "notes.txt").write_text("hi")
        (populated_store.root / "abc.entry").write_text("hi")
        assert populated_store.count() == 3

    def test_rebuilds_from_directory_scan(self, populated_store: EntryStore) -> None:
        """A fresh handle sees exactly what an old one wrote."""
        reopened = EntryStore(populated_store.root)
        assert reopened.identifiers() == populated_store.identifiers()
        assert [reopened.load_body(i) for i in reopened.identifiers()] == ["A", "BB", "CCC"]


class TestMissingAndCorrupt:
    """Tests for records that vanished or were damaged."""

    def test_get_missing(self, store: EntryStore) -> None:
        with pytest.raises(EntryNotFoundError):
            store.get(12345)

    def test_load_body_after_removal(self, populated_store: EntryStore) -> None:
        ref = populated_store.get(populated_store.identifiers()[0])
        populated_store.path_for(ref.identifier).unlink()
        with pytest.raises(EntryNotFoundError):
            populated_store.load_body(ref)

    def test_list_skips_removed(self, populated_store: EntryStore, monkeypatch: pytest.MonkeyPatch) -> None:
        """An entry removed between scan and read is skipped."""
        ids = populated_store.identifiers()
        monkeypatch.setattr(populated_store, "identifiers", lambda: ids + [ids[-1] + 1])
        assert len(list(populated_store.list_ordered())) == 3

    def test_truncated_body_is_corrupt(self, populated_store: EntryStore) -> None:
        identifier = populated_store.identifiers()[-1]
        path = populated_store.path_for(identifier)
        path.write_bytes(path.read_bytes()[:-1])
        with pytest.raises(EntryCorruptError) as exc_info:
            populated_store.load_body(identifier)
        assert "expected 3 bytes" in exc_info.value.reason

    def test_invalid_utf8_is_corrupt(self, store: EntryStore) -> None:
        entry = store.add("ab")
        path = store.path_for(entry.identifier)
        path.write_bytes(path.read_bytes()[:-2] + b"\xff\xfe")
        with pytest.raises(EntryCorruptError):
            store.load_body(entry.identifier)

    def test_garbage_header_is_corrupt(self, store: EntryStore) -> None:
        store.root.mkdir(parents=True)
        store.path_for(7).write_bytes(b"not json\nbody")
        with pytest.raises(EntryCorruptError):
            store.get(7)

    def test_mismatched_identifier_is_corrupt(self, store: EntryStore) -> None:
        entry = store.add("x")
        os.rename(store.path_for(entry.identifier), store.path_for(entry.identifier + 1))
        with pytest.raises(EntryCorruptError):
            store.get(entry.identifier + 1)

    def test_list_skips_corrupt(self, populated_store: EntryStore) -> None:
        populated_store.path_for(1).write_bytes(b"{broken")
        refs = list(populated_store.list_ordered())
        assert len(refs) == 3


# =============================================================================
# Retention Tests
# =============================================================================


class TestRetention:
    """Tests for retention cleanup."""

    def test_keeps_newest_by_count(self, store: EntryStore) -> None:
        ids = [store.add(f"entry {i}").identifier for i in range(10)]
        removed = store.apply_retention(RetentionPolicy(max_entries=4, max_age_days=None))
        assert removed == 6
        assert store.identifiers() == ids[-4:]

    def test_removes_by_age(self, store: EntryStore) -> None:
        now = datetime(2024, 6, 1, tzinfo=UTC)
        store.add("old", captured_at=now - timedelta(days=40))
        store.add("recent", captured_at=now - timedelta(days=2))
        removed = store.apply_retention(RetentionPolicy(max_entries=None, max_age_days=30), now=now)
        assert removed == 1
        assert [store.load_body(i) for i in store.identifiers()] == ["recent"]

    def test_age_then_count(self, store: EntryStore) -> None:
        now = datetime(2024, 6, 1, tzinfo=UTC)
        store.add("ancient", captured_at=now - timedelta(days=100))
        for i in range(3):
            store.add(f"new {i}", captured_at=now - timedelta(hours=3 - i))
        removed = store.apply_retention(RetentionPolicy(max_entries=2, max_age_days=30), now=now)
        assert removed == 2
        assert [store.load_body(i) for i in store.identifiers()] == ["new 1", "new 2"]

    def test_noop_within_limits(self, populated_store: EntryStore) -> None:
        assert populated_store.apply_retention(RetentionPolicy(max_entries=10, max_age_days=None)) == 0
        assert populated_store.count() == 3

    def test_empty_store(self, store: EntryStore) -> None:
        assert store.apply_retention(RetentionPolicy()) == 0

    def test_sweeps_stale_temp_files(self, populated_store: EntryStore) -> None:
        stale = populated_store.root / ".123.1.1.tmp"
        fresh = populated_store.root / ".456.1.1.tmp"
        stale.write_bytes(b"partial")
        fresh.write_bytes(b"partial")
        old = time.time() - STALE_TEMP_SECONDS - 10
        os.utime(stale, (old, old))
        populated_store.apply_retention(RetentionPolicy(max_entries=None, max_age_days=None))
        assert not stale.exists()
        assert fresh.exists()

    def test_unreadable_newest_counts_toward_limit(self, store: EntryStore) -> None:
        """A record with a garbage header is removed like any other."""
        older = store.add("older").identifier
        newest = store.add("newest").identifier
        store.path_for(newest).write_bytes(b"garbage-no-header")
        removed = store.apply_retention(RetentionPolicy(max_entries=0, max_age_days=None))
        assert removed == 2
        assert store.identifiers() == []
        assert not store.path_for(older).exists()

    def test_unreadable_record_keeps_its_slot(self, store: EntryStore) -> None:
        ids = [store.add(f"entry {i}").identifier for i in range(3)]
        store.path_for(ids[0]).write_bytes(b"{broken")
        removed = store.apply_retention(RetentionPolicy(max_entries=2, max_age_days=None))
        assert removed == 1
        assert store.identifiers() == ids[1:]

    def test_unreadable_record_aged_by_mtime(self, store: EntryStore) -> None:
        now = datetime.now(UTC)
        kept = store.add("recent", captured_at=now).identifier
        store.root.mkdir(parents=True, exist_ok=True)
        stale = store.path_for(kept - 1)
        stale.write_bytes(b"not json\nbody")
        old = time.time() - 40 * 86400
        os.utime(stale, (old, old))
        removed = store.apply_retention(RetentionPolicy(max_entries=None, max_age_days=30), now=now)
        assert removed == 1
        assert store.identifiers() == [kept]

    def test_clear(self, populated_store: EntryStore) -> None:
        assert populated_store.clear() == 3
        assert populated_store.identifiers() == []


class TestStoreErrors:
    """Tests for I/O failures."""

    def test_unwritable_root(self, temp_dir: Path) -> None:
        blocker = temp_dir / "file"
        blocker.write_text("not a directory")
        store = EntryStore(blocker / "history")
        with pytest.raises(StoreIOError):
            store.add("x")
