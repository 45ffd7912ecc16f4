"""
core/digest/store.py — DigestStore: lock-protected per-recipient digest records.

Storage backends persist the codec tree (core/digest/codec.py), one document
per recipient id:
    MemoryBackend  — dict in process memory (tests, DIGEST_STORE_BACKEND=memory)
    FileBackend    — <DIGEST_STORE_PATH>/<quoted id>.json, atomic tmp + os.replace

Each backend supplies its lock table (core/digest/locking.py): MemoryBackend an
in-process one, FileBackend <quoted id>.lock files, so two stores (or two
processes) on the same directory exclude each other.

Edit protocol:
    edit = store.create(id) | store.edit(id)     # takes the per-id lock
    ... mutate edit ...
    store.commit(edit) | store.cancel(edit) | store.remove(edit)   # releases it

DigestEdit is a context manager: leaving the `with` block while the edit is
still active cancels it, on every exit path.

    with store.edit("alice") as edit:
        edit.add(message)
        store.commit(edit)

Logging marker: [DigestStore]
"""
from __future__ import annotations

import os
import tempfile
import threading
import uuid
from typing import Dict, List, Optional
from urllib.parse import quote, unquote

from core.digest import codec
from core.digest.errors import (
    DigestError,
    DigestExistsError,
    DigestInUseError,
    DigestNotFoundError,
    DigestPersistenceError,
)
from core.digest.events import EVENT_DIGEST_ADD, EVENT_DIGEST_EDIT, DigestEventLogger
from core.digest.locking import FileLockTable, RecordLockTable
from core.digest.models import DigestMessage, DigestRecord
from core.digest.periods import SystemClock, period_of
from utils.logger import log_info, log_warn

_SUFFIX = ".json"


def _resolve_store_path(store_path: str) -> str:
    """Resolve relative store path against project root (parent of core/)."""
    if os.path.isabs(store_path):
        return store_path
    base = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.path.join(base, store_path)


# ── Backends ──────────────────────────────────────────────────────────────────

class MemoryBackend:
    """Encoded documents held in a dict."""

    def __init__(self) -> None:
        self._docs: Dict[str, str] = {}
        self._mutex = threading.Lock()

    def check(self, digest_id: str) -> bool:
        with self._mutex:
            return digest_id in self._docs

    def load(self, digest_id: str) -> Optional[str]:
        with self._mutex:
            return self._docs.get(digest_id)

    def save(self, digest_id: str, document: str) -> None:
        with self._mutex:
            self._docs[digest_id] = document

    def delete(self, digest_id: str) -> None:
        with self._mutex:
            self._docs.pop(digest_id, None)

    def list_ids(self) -> List[str]:
        with self._mutex:
            return sorted(self._docs)

    def lock_table(self) -> RecordLockTable:
        return RecordLockTable()


class FileBackend:
    """One JSON document per digest id under `directory`."""

    def __init__(self, directory: Optional[str] = None) -> None:
        if directory is None:
            try:
                from config import get_digest_store_path
                directory = get_digest_store_path()
            except Exception:
                directory = "digest_data/records"
        self._dir = _resolve_store_path(directory)

    @property
    def directory(self) -> str:
        return self._dir

    def _path(self, digest_id: str) -> str:
        return os.path.join(self._dir, quote(digest_id, safe="") + _SUFFIX)

    def check(self, digest_id: str) -> bool:
        return os.path.exists(self._path(digest_id))

    def load(self, digest_id: str) -> Optional[str]:
        path = self._path(digest_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise DigestPersistenceError(digest_id, f"read failed for {path}: {exc}") from exc

    def save(self, digest_id: str, document: str) -> None:
        path = self._path(digest_id)
        try:
            os.makedirs(self._dir, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(document)
                os.replace(tmp, path)
            except Exception:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise DigestPersistenceError(digest_id, f"write failed for {path}: {exc}") from exc

    def delete(self, digest_id: str) -> None:
        path = self._path(digest_id)
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise DigestPersistenceError(digest_id, f"delete failed for {path}: {exc}") from exc

    def list_ids(self) -> List[str]:
        try:
            names = os.listdir(self._dir)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise DigestPersistenceError("", f"listing {self._dir} failed: {exc}") from exc
        return sorted(unquote(n[: -len(_SUFFIX)]) for n in names if n.endswith(_SUFFIX))

    def lock_table(self) -> FileLockTable:
        """Lock files sit beside the records; every process on this directory shares them."""
        return FileLockTable(self._dir)


def backend_from_config():
    try:
        from config import get_digest_store_backend
        kind = get_digest_store_backend()
    except Exception:
        kind = "file"
    if kind == "memory":
        return MemoryBackend()
    return FileBackend()


# ── Edit handle ───────────────────────────────────────────────────────────────

class DigestEdit:
    """
    Exclusive write access to one digest record.

    Created by DigestStore.create/edit, resolved by exactly one of
    commit/cancel/remove. Mutations act on a private working copy; nothing
    reaches storage before commit.
    """

    def __init__(self, store: "DigestStore", record: DigestRecord, owner: str, event: str) -> None:
        self._store = store
        self._record = record
        self._owner = owner
        self._event = event
        self._active = True

    # ── Identity ──────────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self._record.id

    @property
    def reference(self) -> str:
        return self._record.reference

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def event(self) -> str:
        return self._event

    def is_active(self) -> bool:
        return self._active

    def _close(self) -> None:
        self._active = False

    def _check_active(self) -> None:
        if not self._active:
            raise DigestError(self.id, f"edit for {self.id!r} is already resolved")

    # ── Read ──────────────────────────────────────────────────────────────

    @property
    def properties(self) -> Dict[str, str]:
        return self._record.properties

    def periods(self) -> List[str]:
        return self._record.periods()

    def messages(self, period: str) -> List[DigestMessage]:
        return self._record.messages(period)

    def snapshot(self) -> DigestRecord:
        return self._record.copy()

    # ── Mutate ────────────────────────────────────────────────────────────

    def add(self, message: DigestMessage, period: Optional[str] = None) -> str:
        """Append to the bucket of `period` (default: current period). Returns the key."""
        self._check_active()
        if period is None:
            period = period_of(self._store.clock.now())
        self._record.buckets.setdefault(period, []).append(message)
        return period

    def add_message(self, subject: str, body: str, period: Optional[str] = None) -> str:
        return self.add(DigestMessage(self.id, subject, body), period)

    def clear(self, period: str) -> None:
        """Drop the bucket of `period` entirely."""
        self._check_active()
        self._record.buckets.pop(period, None)

    # ── Scoped acquisition ────────────────────────────────────────────────

    def __enter__(self) -> "DigestEdit":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._active:
            return
        if exc_type is None:
            log_warn(f"[DigestStore] edit id={self.id} left unresolved — cancelling")
        self._store.cancel(self)

    def __repr__(self) -> str:
        state = "active" if self._active else "closed"
        return f"<DigestEdit id={self.id!r} owner={self._owner} {state}>"


# ── Store ─────────────────────────────────────────────────────────────────────

class DigestStore:
    """
    Keyed, lock-protected storage of DigestRecords.

    Args:
        backend: MemoryBackend | FileBackend (default from DIGEST_STORE_BACKEND).
        clock:   object with now() -> datetime, used for DigestEdit.add defaults.
        events:  DigestEventLogger for digest.edit / digest.remove events.
    """

    def __init__(self, backend=None, clock=None, events: Optional[DigestEventLogger] = None) -> None:
        self._backend = backend if backend is not None else backend_from_config()
        self.clock = clock if clock is not None else SystemClock()
        self._events = events if events is not None else DigestEventLogger()
        self._locks = self._backend.lock_table()

    @property
    def backend(self):
        return self._backend

    # ── Read path (no locks) ──────────────────────────────────────────────

    def exists(self, digest_id: str) -> bool:
        return self._backend.check(digest_id)

    def get(self, digest_id: str) -> DigestRecord:
        """Read-only snapshot. Raises DigestNotFoundError if absent."""
        document = self._backend.load(digest_id)
        if document is None:
            raise DigestNotFoundError(digest_id)
        return self._decode(digest_id, document)

    def get_all(self) -> List[DigestRecord]:
        """Snapshot of every record, sorted by id. Ignores edit locks."""
        records: List[DigestRecord] = []
        for digest_id in self._backend.list_ids():
            try:
                document = self._backend.load(digest_id)
                if document is None:
                    continue
                records.append(self._decode(digest_id, document))
            except DigestPersistenceError as exc:
                log_warn(f"[DigestStore] get_all: skipping id={digest_id}: {exc}")
        return records

    def list_ids(self) -> List[str]:
        return self._backend.list_ids()

    # ── Write path ────────────────────────────────────────────────────────

    def create(self, digest_id: str, owner: Optional[str] = None) -> DigestEdit:
        """New record, locked. Raises DigestExistsError if present or reserved."""
        owner = owner or self._new_owner()
        # lock first: existence is only decided while holding the id
        if not self._locks.try_acquire(digest_id, owner):
            raise DigestExistsError(digest_id)
        if self._backend.check(digest_id):
            self._locks.release(digest_id, owner)
            raise DigestExistsError(digest_id)
        return DigestEdit(self, DigestRecord(id=digest_id), owner, EVENT_DIGEST_ADD)

    def edit(self, digest_id: str, owner: Optional[str] = None) -> DigestEdit:
        """
        Lock an existing record.
        Raises DigestNotFoundError (absent), DigestInUseError (locked elsewhere),
        DigestPersistenceError (unreadable).
        """
        owner = owner or self._new_owner()
        if not self._backend.check(digest_id):
            raise DigestNotFoundError(digest_id)
        if not self._locks.try_acquire(digest_id, owner):
            raise DigestInUseError(digest_id)
        try:
            document = self._backend.load(digest_id)
            if document is None:
                raise DigestNotFoundError(digest_id)
            record = self._decode(digest_id, document)
        except Exception:
            self._locks.release(digest_id, owner)
            raise
        return DigestEdit(self, record, owner, EVENT_DIGEST_EDIT)

    def create_or_edit(self, digest_id: str, owner: Optional[str] = None) -> DigestEdit:
        """edit() with auto-create. Lost create races surface as DigestInUseError."""
        try:
            return self.edit(digest_id, owner)
        except DigestNotFoundError:
            pass
        try:
            return self.create(digest_id, owner)
        except DigestExistsError:
            # someone else created (or is creating) it in between
            raise DigestInUseError(digest_id)

    def commit(self, edit: DigestEdit) -> None:
        """Persist the edit and release its lock. No-op (logged) on a resolved edit."""
        if not edit.is_active():
            log_warn(f"[DigestStore] commit(): closed edit id={edit.id}")
            return
        record = edit.snapshot()
        try:
            self._backend.save(edit.id, codec.encode(record))
        finally:
            self._release(edit)
        log_info(
            f"[DigestStore] commit id={edit.id} periods={len(record.buckets)} "
            f"messages={record.message_count()}"
        )
        self._events.record_edit(
            record.reference, len(record.buckets), record.message_count(), event_type=edit.event
        )

    def cancel(self, edit: DigestEdit) -> None:
        """Discard the edit and release its lock. Storage stays unchanged."""
        if not edit.is_active():
            log_warn(f"[DigestStore] cancel(): closed edit id={edit.id}")
            return
        self._release(edit)

    def remove(self, edit: DigestEdit) -> None:
        """Delete the record and release its lock."""
        if not edit.is_active():
            log_warn(f"[DigestStore] remove(): closed edit id={edit.id}")
            return
        try:
            self._backend.delete(edit.id)
        finally:
            self._release(edit)
        log_info(f"[DigestStore] remove id={edit.id}")
        self._events.record_remove(edit.reference)

    # ── Lock introspection ────────────────────────────────────────────────

    def is_locked(self, digest_id: str) -> bool:
        return self._locks.is_locked(digest_id)

    def locked_ids(self) -> List[str]:
        return self._locks.locked_ids()

    def lock_status(self, digest_id: str) -> dict:
        return self._locks.get_lock_status(digest_id)

    # ── Internals ─────────────────────────────────────────────────────────

    def _release(self, edit: DigestEdit) -> None:
        edit._close()
        self._locks.release(edit.id, edit.owner)

    @staticmethod
    def _new_owner() -> str:
        return f"{threading.current_thread().name}-{uuid.uuid4().hex[:8]}"

    @staticmethod
    def _decode(digest_id: str, document: str) -> DigestRecord:
        try:
            return codec.decode(document)
        except ValueError as exc:
            raise DigestPersistenceError(digest_id, f"corrupt record {digest_id!r}: {exc}") from exc
