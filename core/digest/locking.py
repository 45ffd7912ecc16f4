"""
core/digest/locking.py — Per-record edit locks for the digest store.

Two lock tables with the same interface (try_acquire / release / is_locked /
locked_ids / get_lock_info / get_lock_status):

RecordLockTable   in-process mutex map; pairs with MemoryBackend.
FileLockTable     one lock file per id next to the records; pairs with
                  FileBackend, so every process sharing the directory sees
                  the same locks.

Lock entry: { "owner": str, "acquired_at": ISO, "pid": int, "thread": str }

FileLockTable race-safety:
  Fresh lock:   O_CREAT|O_EXCL on <quoted id>.lock, atomic at the OS level.
  Stale lock:   older than DIGEST_LOCK_TIMEOUT_S (crashed holder) → taken over.
                A second O_EXCL sentinel (<quoted id>.lock.takeover) serialises
                concurrent takeovers; the winner re-checks freshness before
                overwriting. Sentinels older than 30s are cleaned up.

Logging marker: [DigestLock]
"""
from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote, unquote

from utils.logger import log_debug, log_info, log_warn

_LOCK_SUFFIX = ".lock"
_TAKEOVER_SUFFIX = ".takeover"
_SENTINEL_MAX_AGE_S = 30


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _age_s(since: Optional[str]) -> Optional[float]:
    if not since:
        return None
    try:
        dt = datetime.fromisoformat(since.rstrip("Z"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return round((datetime.now(tz=timezone.utc) - dt).total_seconds(), 3)
    except ValueError:
        return None


def _timeout_s() -> int:
    try:
        from config import get_digest_lock_timeout_s
        return get_digest_lock_timeout_s()
    except Exception:
        return 300


def _entry(owner: str) -> dict:
    return {
        "owner":       owner,
        "acquired_at": _now_iso(),
        "pid":         os.getpid(),
        "thread":      threading.current_thread().name,
    }


def _status(info: Optional[dict], timeout_s: Optional[int]) -> dict:
    """
    Structured lock status, as shown by the admin API.

    Returns:
        {
          "status":    "FREE" | "LOCKED",
          "owner":     str | None,
          "since":     ISO str | None,
          "age_s":     float | None,
          "timeout_s": int | None,    # None for in-process locks (no takeover)
          "stale":     bool | None,   # None when FREE
        }
    """
    if info is None:
        return {
            "status":    "FREE",
            "owner":     None,
            "since":     None,
            "age_s":     None,
            "timeout_s": timeout_s,
            "stale":     None,
        }
    since = info.get("acquired_at")
    age_s = _age_s(since)
    stale = bool(timeout_s is not None and age_s is not None and age_s > timeout_s)
    return {
        "status":    "LOCKED",
        "owner":     info.get("owner"),
        "since":     since,
        "age_s":     age_s,
        "timeout_s": timeout_s,
        "stale":     stale,
    }


# ── In-process ────────────────────────────────────────────────────────────────

class RecordLockTable:
    """Mutex map keyed by digest id. No stale takeover; DigestEdit cleanup releases."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._held: Dict[str, dict] = {}

    def try_acquire(self, digest_id: str, owner: str) -> bool:
        """
        Take the lock for `digest_id`. Never blocks.
        Returns False if any owner (including `owner` itself) already holds it.
        """
        with self._mutex:
            if digest_id in self._held:
                holder = self._held[digest_id].get("owner")
                log_debug(f"[DigestLock] id={digest_id} held by owner={holder} — BLOCK owner={owner}")
                return False
            self._held[digest_id] = _entry(owner)
            log_debug(f"[DigestLock] id={digest_id} acquired by owner={owner}")
            return True

    def release(self, digest_id: str, owner: str) -> bool:
        """Release the lock if held by `owner`. Returns True if released."""
        with self._mutex:
            info = self._held.get(digest_id)
            if info is None:
                log_warn(f"[DigestLock] id={digest_id} release by owner={owner}: not locked")
                return False
            if info.get("owner") != owner:
                log_warn(
                    f"[DigestLock] Cannot release id={digest_id}: held by "
                    f"{info.get('owner')}, not by {owner}"
                )
                return False
            del self._held[digest_id]
            log_debug(f"[DigestLock] id={digest_id} released by owner={owner}")
            return True

    def is_locked(self, digest_id: str) -> bool:
        with self._mutex:
            return digest_id in self._held

    def locked_ids(self) -> List[str]:
        with self._mutex:
            return sorted(self._held)

    def get_lock_info(self, digest_id: str) -> Optional[dict]:
        """Copy of the lock entry for `digest_id`, or None if unlocked."""
        with self._mutex:
            info = self._held.get(digest_id)
            return dict(info) if info is not None else None

    def get_lock_status(self, digest_id: str) -> dict:
        return _status(self.get_lock_info(digest_id), None)


# ── Cross-process ─────────────────────────────────────────────────────────────

class FileLockTable:
    """
    Lock files under `directory`, shared by every process using it.

    Args:
        directory: where <quoted id>.lock files live (the FileBackend directory).
        timeout_s: lock age after which a holder is presumed dead;
                   default from DIGEST_LOCK_TIMEOUT_S.
    """

    def __init__(self, directory: str, timeout_s: Optional[int] = None) -> None:
        self._dir = directory
        self._timeout_s = timeout_s

    @property
    def timeout_s(self) -> int:
        return self._timeout_s if self._timeout_s is not None else _timeout_s()

    def _path(self, digest_id: str) -> str:
        return os.path.join(self._dir, quote(digest_id, safe="") + _LOCK_SUFFIX)

    @staticmethod
    def _file_age(path: str) -> Optional[float]:
        try:
            return time.time() - os.stat(path).st_mtime
        except OSError:
            return None

    @staticmethod
    def _read(path: str) -> Optional[dict]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        return data if isinstance(data, dict) else {}

    # ── Core operations ───────────────────────────────────────────────────

    def try_acquire(self, digest_id: str, owner: str) -> bool:
        """
        Take the lock for `digest_id`. Never blocks.
        Returns False while a fresh lock is held by anyone; stale locks are taken over.
        """
        path = self._path(digest_id)
        payload = json.dumps(_entry(owner))
        try:
            os.makedirs(self._dir, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL)
        except FileExistsError:
            pass
        except OSError as exc:
            log_warn(f"[DigestLock] id={digest_id} O_EXCL create failed: {exc}")
            return False
        else:
            try:
                os.write(fd, payload.encode("utf-8"))
            finally:
                os.close(fd)
            log_debug(f"[DigestLock] id={digest_id} acquired by owner={owner}")
            return True

        timeout_s = self.timeout_s
        try:
            existing = self._read(path)
        except (OSError, ValueError) as exc:
            log_warn(f"[DigestLock] id={digest_id} unreadable lock entry: {exc}")
            existing = {}
        if existing is None:
            # released between our create and read; next attempt may win
            return False
        age = _age_s(existing.get("acquired_at"))
        if age is None:
            # holder may not have written its entry yet
            age = self._file_age(path)
            if age is None:
                return False
        if age < timeout_s:
            log_debug(
                f"[DigestLock] id={digest_id} held by owner={existing.get('owner')} "
                f"age={age:.0f}s — BLOCK owner={owner}"
            )
            return False
        log_warn(
            f"[DigestLock] id={digest_id} stale lock (age={age}s) by "
            f"owner={existing.get('owner')} — force-taking"
        )
        return self._take_over(digest_id, path, owner, payload, timeout_s)

    def _take_over(self, digest_id: str, path: str, owner: str, payload: str, timeout_s: int) -> bool:
        takeover_path = path + _TAKEOVER_SUFFIX
        try:
            st = os.stat(takeover_path)
            if (time.time() - st.st_mtime) > _SENTINEL_MAX_AGE_S:
                os.unlink(takeover_path)
        except OSError:
            pass

        try:
            tfd = os.open(takeover_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL)
            os.close(tfd)
        except FileExistsError:
            log_warn(f"[DigestLock] id={digest_id} takeover in progress elsewhere — BLOCK owner={owner}")
            return False
        except OSError as exc:
            log_warn(f"[DigestLock] id={digest_id} takeover sentinel failed: {exc}")
            return False

        try:
            try:
                current = self._read(path)
            except (OSError, ValueError):
                current = {}
            age = _age_s(current.get("acquired_at")) if current else None
            if age is None:
                age = self._file_age(path)
            if age is not None and age < timeout_s:
                owner_now = current.get("owner") if current else None
                log_warn(
                    f"[DigestLock] id={digest_id} takeover re-check: lock refreshed by "
                    f"owner={owner_now} — BLOCK"
                )
                return False
            fd, tmp = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, path)
            log_info(f"[DigestLock] id={digest_id} acquired (stale-takeover) by owner={owner}")
            return True
        except OSError as exc:
            log_warn(f"[DigestLock] id={digest_id} failed to write lock: {exc}")
            return False
        finally:
            try:
                os.unlink(takeover_path)
            except OSError:
                pass

    def release(self, digest_id: str, owner: str) -> bool:
        """Remove the lock file if held by `owner`. Returns True if released."""
        path = self._path(digest_id)
        try:
            info = self._read(path)
        except (OSError, ValueError) as exc:
            log_warn(f"[DigestLock] id={digest_id} release by owner={owner}: unreadable lock: {exc}")
            return False
        if info is None:
            log_warn(f"[DigestLock] id={digest_id} release by owner={owner}: not locked")
            return False
        if info.get("owner") != owner:
            log_warn(
                f"[DigestLock] Cannot release id={digest_id}: held by "
                f"{info.get('owner')}, not by {owner}"
            )
            return False
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log_warn(f"[DigestLock] id={digest_id} failed to release: {exc}")
            return False
        log_debug(f"[DigestLock] id={digest_id} released by owner={owner}")
        return True

    # ── Introspection ─────────────────────────────────────────────────────

    def is_locked(self, digest_id: str) -> bool:
        return os.path.exists(self._path(digest_id))

    def locked_ids(self) -> List[str]:
        try:
            names = os.listdir(self._dir)
        except FileNotFoundError:
            return []
        return sorted(unquote(n[: -len(_LOCK_SUFFIX)]) for n in names if n.endswith(_LOCK_SUFFIX))

    def get_lock_info(self, digest_id: str) -> Optional[dict]:
        try:
            return self._read(self._path(digest_id))
        except (OSError, ValueError):
            return {}

    def get_lock_status(self, digest_id: str) -> dict:
        return _status(self.get_lock_info(digest_id), self.timeout_s)
