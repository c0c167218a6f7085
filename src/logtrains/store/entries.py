"""
File-per-entry storage for captured command output.

This module persists every capture as its own file inside a history
directory, so the store can always be rebuilt by scanning the directory.

Record Layout:
    <identifier:020d>.entry
        line 1:  JSON header (identifier, captured_at, command_text,
                 exit_code, byte_length)
        rest:    the UTF-8 body, byte for byte

Design Principles:
    - Append-only: a record is never edited in place
    - Atomic: records are written to a temp file and hard-linked into place
    - Cheap listing: only the header line is read when enumerating
    - Serialised writers: append and retention share one lock per instance
"""

import json
import logging
import os
import threading
import time
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from logtrains.errors import EntryCorruptError, EntryNotFoundError, StoreIOError
from logtrains.schema import Entry, EntryRef, RetentionPolicy

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".entry"
TEMP_SUFFIX = ".tmp"

# Temp files older than this are leftovers from crashed writers
STALE_TEMP_SECONDS = 3600

# Attempts to find a free identifier when another process races us
MAX_APPEND_ATTEMPTS = 16


def now_utc() -> datetime:
    """Get the current UTC time."""
    return datetime.now(UTC)


def entry_filename(identifier: int) -> str:
    """File name of the record with ``identifier``."""
    return f"{identifier:020d}{ENTRY_SUFFIX}"


def encode_record(entry: Entry) -> bytes:
    """Serialise an entry into its on-disk representation."""
    header = entry.ref().model_dump(mode="json")
    return json.dumps(header, sort_keys=True).encode("utf-8") + b"\n" + entry.body.encode("utf-8")


class EntryStore:
    """
    Directory-backed store of immutable command-output entries.

    The store is an explicit handle: every component that needs history
    receives one. The directory is created lazily on first append.

    Usage:
        store = EntryStore("~/.local/share/logtrains/history")
        entry = store.add("make: *** [all] Error 2", command_text="make")
        for ref in store.list_ordered():
            print(ref.identifier, ref.byte_length)
        body = store.load_body(ref)
        store.apply_retention(RetentionPolicy(max_entries=100))
    """

    def __init__(self, root: str | Path) -> None:
        """
        Initialize the store.

        Args:
            root: History directory. Created on first append if missing.
        """
        self.root = Path(root).expanduser()
        self._lock = threading.Lock()

    def __enter__(self) -> "EntryStore":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""

    def path_for(self, identifier: int) -> Path:
        """Path of the record with ``identifier``."""
        return self.root / entry_filename(identifier)

    # =========================================================================
    # Listing
    # =========================================================================

    def identifiers(self) -> list[int]:
        """
        Identifiers of all persisted entries, ascending.

        Only the directory is scanned; no record is opened.
        """
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreIOError(
                operation="list",
                path=str(self.root),
                underlying_error=str(e),
            ) from e

        ids = []
        for name in names:
            if not name.endswith(ENTRY_SUFFIX):
                continue
            stem = name[: -len(ENTRY_SUFFIX)]
            if stem.isdigit():
                ids.append(int(stem))
        ids.sort()
        return ids

    def count(self) -> int:
        """Number of persisted entries."""
        return len(self.identifiers())

    def get(self, identifier: int) -> EntryRef:
        """
        Read the metadata of one entry.

        Raises:
            EntryNotFoundError: The record does not exist (anymore)
            EntryCorruptError: The header cannot be decoded
            StoreIOError: The record cannot be read
        """
        path = self.path_for(identifier)
        try:
            with path.open("rb") as f:
                header_line = f.readline()
        except FileNotFoundError as e:
            raise EntryNotFoundError(
                operation="get",
                identifier=identifier,
                path=str(path),
            ) from e
        except OSError as e:
            raise StoreIOError(
                operation="get",
                identifier=identifier,
                path=str(path),
                underlying_error=str(e),
            ) from e

        return self._parse_header(header_line, identifier, path)

    def list_ordered(self) -> Iterator[EntryRef]:
        """
        Yield entry metadata ordered by identifier, oldest first.

        Headers are read lazily as the iterator advances. Records removed
        by a concurrent retention run are skipped, and records with an
        unreadable header are skipped with a warning.
        """
        for identifier in self.identifiers():
            try:
                yield self.get(identifier)
            except EntryNotFoundError:
                continue
            except EntryCorruptError as e:
                logger.warning("Skipping unreadable entry %s: %s", identifier, e.reason)

    def _parse_header(self, line: bytes, identifier: int, path: Path) -> EntryRef:
        if not line.endswith(b"\n"):
            raise EntryCorruptError(
                operation="get",
                identifier=identifier,
                path=str(path),
                reason="missing header line",
            )
        try:
            ref = EntryRef.model_validate(json.loads(line))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            raise EntryCorruptError(
                operation="get",
                identifier=identifier,
                path=str(path),
                reason=f"invalid header: {e}",
            ) from e

        if ref.identifier != identifier:
            raise EntryCorruptError(
                operation="get",
                identifier=identifier,
                path=str(path),
                reason=f"header identifier {ref.identifier} does not match file name",
            )
        return ref

    # =========================================================================
    # Body Loading
    # =========================================================================

    def load_body(self, ref: EntryRef | int) -> str:
        """
        Load the captured text of an entry.

        Args:
            ref: The entry metadata or its identifier

        Raises:
            EntryNotFoundError: The record was removed after listing
            EntryCorruptError: The stored bytes are not valid text
            StoreIOError: The record cannot be read
        """
        identifier = ref if isinstance(ref, int) else ref.identifier
        path = self.path_for(identifier)
        try:
            with path.open("rb") as f:
                header_line = f.readline()
                raw = f.read()
        except FileNotFoundError as e:
            raise EntryNotFoundError(
                operation="load_body",
                identifier=identifier,
                path=str(path),
            ) from e
        except OSError as e:
            raise StoreIOError(
                operation="load_body",
                identifier=identifier,
                path=str(path),
                underlying_error=str(e),
            ) from e

        header = self._parse_header(header_line, identifier, path)
        if len(raw) != header.byte_length:
            raise EntryCorruptError(
                operation="load_body",
                identifier=identifier,
                path=str(path),
                reason=f"expected {header.byte_length} bytes, found {len(raw)}",
            )
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EntryCorruptError(
                operation="load_body",
                identifier=identifier,
                path=str(path),
                reason=f"body is not valid UTF-8: {e}",
            ) from e

    def load(self, ref: EntryRef | int) -> Entry:
        """Load a complete entry (metadata and body)."""
        if isinstance(ref, int):
            ref = self.get(ref)
        return Entry(
            identifier=ref.identifier,
            captured_at=ref.captured_at,
            command_text=ref.command_text,
            exit_code=ref.exit_code,
            body=self.load_body(ref),
        )

    # =========================================================================
    # Appending
    # =========================================================================

    def next_identifier(self) -> int:
        """A fresh identifier greater than every persisted one."""
        ids = self.identifiers()
        last = ids[-1] if ids else -1
        return max(time.time_ns(), last + 1)

    def append(self, entry: Entry) -> Entry:
        """
        Persist a new immutable entry.

        Args:
            entry: The entry to write; its identifier must be unused

        Returns:
            The entry as written

        Raises:
            StoreIOError: The record could not be written, or the
                identifier is already taken
        """
        with self._lock:
            if not self._write(entry):
                raise StoreIOError(
                    operation="append",
                    identifier=entry.identifier,
                    path=str(self.path_for(entry.identifier)),
                    underlying_error="an entry with this identifier already exists",
                )
        return entry

    def add(
        self,
        body: str,
        command_text: str | None = None,
        exit_code: int | None = None,
        captured_at: datetime | None = None,
    ) -> Entry:
        """
        Persist captured output under a freshly assigned identifier.

        Returns:
            The persisted Entry
        """
        with self._lock:
            identifier = self.next_identifier()
            for _ in range(MAX_APPEND_ATTEMPTS):
                entry = Entry(
                    identifier=identifier,
                    captured_at=captured_at or now_utc(),
                    command_text=command_text,
                    exit_code=exit_code,
                    body=body,
                )
                if self._write(entry):
                    logger.debug(
                        "Recorded entry %s (%d bytes)", identifier, entry.byte_length
                    )
                    return entry
                identifier += 1

        raise StoreIOError(
            operation="append",
            path=str(self.root),
            underlying_error=f"no free identifier after {MAX_APPEND_ATTEMPTS} attempts",
        )

    def _write(self, entry: Entry) -> bool:
        """Write one record atomically. Returns False if the name is taken."""
        final_path = self.path_for(entry.identifier)
        temp_path = self.root / f".{entry.identifier}.{os.getpid()}.{threading.get_ident()}{TEMP_SUFFIX}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with temp_path.open("wb") as f:
                f.write(encode_record(entry))
                f.flush()
                os.fsync(f.fileno())
            try:
                os.link(temp_path, final_path)
            except FileExistsError:
                return False
            return True
        except OSError as e:
            raise StoreIOError(
                operation="append",
                identifier=entry.identifier,
                path=str(final_path),
                underlying_error=str(e),
            ) from e
        finally:
            if temp_path.exists():
                temp_path.unlink()

    # =========================================================================
    # Retention
    # =========================================================================

    def apply_retention(
        self,
        policy: RetentionPolicy,
        now: datetime | None = None,
    ) -> int:
        """
        Remove entries beyond the policy's age or count ceiling, oldest first.

        Args:
            policy: Retention limits
            now: Reference time for the age limit (defaults to current time)

        Returns:
            Number of entries removed
        """
        now = now or now_utc()
        with self._lock:
            records = self._retention_candidates()
            doomed: list[int] = []

            if policy.max_age_days is not None:
                cutoff = now - timedelta(days=policy.max_age_days)
                doomed.extend(i for i, captured_at in records if captured_at < cutoff)
                records = [(i, c) for i, c in records if c >= cutoff]

            if policy.max_entries is not None and len(records) > policy.max_entries:
                excess = len(records) - policy.max_entries
                doomed.extend(i for i, _ in records[:excess])

            removed = 0
            for identifier in doomed:
                if self._unlink(self.path_for(identifier)):
                    logger.debug("Retention removed entry %s", identifier)
                    removed += 1

            self._sweep_temp_files()

        if removed:
            logger.info("Retention removed %d entries from %s", removed, self.root)
        return removed

    def _retention_candidates(self) -> list[tuple[int, datetime]]:
        """
        (identifier, capture time) of every record, oldest first.

        Unreadable records take part too, aged by their file's modification
        time, so retention can clear them out of the history.
        """
        records = []
        for identifier in self.identifiers():
            try:
                records.append((identifier, self.get(identifier).captured_at))
            except EntryNotFoundError:
                continue
            except EntryCorruptError as e:
                path = self.path_for(identifier)
                try:
                    mtime = path.stat().st_mtime
                except FileNotFoundError:
                    continue
                logger.warning("Entry %s is unreadable (%s); subject to retention", identifier, e.reason)
                records.append((identifier, datetime.fromtimestamp(mtime, UTC)))
        return records

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with self._lock:
            removed = 0
            for identifier in self.identifiers():
                if self._unlink(self.path_for(identifier)):
                    removed += 1
        return removed

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreIOError(
                operation="retention",
                path=str(path),
                underlying_error=str(e),
            ) from e

    def _sweep_temp_files(self) -> None:
        if not self.root.exists():
            return
        cutoff = time.time() - STALE_TEMP_SECONDS
        for path in self.root.glob(f".*{TEMP_SUFFIX}"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
            except FileNotFoundError:
                continue
