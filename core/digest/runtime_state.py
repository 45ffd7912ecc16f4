"""
core/digest/runtime_state.py — Persistent run-state for the digest worker.

State file: JSON at DIGEST_STATE_PATH (default: digest_data/digest_state.json).
All writes are atomic (write to .tmp then os.replace).

Logging marker: [DigestRuntime]

Schema (schema_version=1):
{
  "schema_version": 1,
  "drain":    { "last_run", "status", "duration_s", "drained", "appended",
                "retried", "dead_lettered", "period", "reason" },
  "dispatch": { "last_run", "status", "duration_s", "period", "candidates",
                "sent", "failed", "skipped", "removed", "committed", "reason" }
}

Missing or unreadable files read as the empty state; unknown cycle fields are kept.
"""
from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict

from utils.logger import log_debug, log_warn

_SCHEMA_VERSION = 1
_CYCLES = ("drain", "dispatch")

_EMPTY_CYCLE: Dict[str, Any] = {
    "last_run":   None,
    "status":     "never",
    "duration_s": None,
    "reason":     None,
}


def _empty_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {"schema_version": _SCHEMA_VERSION}
    for cycle in _CYCLES:
        state[cycle] = dict(_EMPTY_CYCLE)
    return state


def _normalize(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Fill missing cycle blocks; safe to call on complete states."""
    for cycle in _CYCLES:
        block = raw.get(cycle)
        if not isinstance(block, dict):
            raw[cycle] = dict(_EMPTY_CYCLE)
            continue
        for key, value in _EMPTY_CYCLE.items():
            block.setdefault(key, value)
    raw["schema_version"] = _SCHEMA_VERSION
    return raw


# ── Path helpers ──────────────────────────────────────────────────────────────

def _resolve(path: str) -> str:
    if os.path.isabs(path):
        return path
    base = os.path.dirname(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    )
    return os.path.join(base, path)


def _state_path() -> str:
    try:
        from config import get_digest_state_path
        return _resolve(get_digest_state_path())
    except Exception:
        return _resolve("digest_data/digest_state.json")


# ── Read / write ──────────────────────────────────────────────────────────────

def _read_state() -> Dict[str, Any]:
    path = _state_path()
    if not os.path.exists(path):
        return _empty_state()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            return _empty_state()
        return _normalize(data)
    except Exception as exc:
        log_warn(f"[DigestRuntime] Failed to read state from {path}: {exc}")
        return _empty_state()


def _write_state(state: Dict[str, Any]) -> bool:
    path = _state_path()
    try:
        dir_ = os.path.dirname(path)
        os.makedirs(dir_, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=dir_, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
            os.replace(tmp, path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        return True
    except Exception as exc:
        log_warn(f"[DigestRuntime] Failed to write state to {path}: {exc}")
        return False


# ── Public API ────────────────────────────────────────────────────────────────

def get_state() -> Dict[str, Any]:
    """Return current runtime state (read from disk). Read-only."""
    return _read_state()


def update_cycle(cycle: str, *, status: str, duration_s: float = None, reason: str = None, **fields: Any) -> bool:
    """
    Record the result of one drain or dispatch pass.
    Extra keyword fields (counts, period) are stored as-is.
    """
    if cycle not in _CYCLES:
        raise ValueError(f"unknown cycle {cycle!r}")
    now_iso = datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z")
    state = _read_state()
    state[cycle].update(fields)
    state[cycle].update({
        "last_run":   now_iso,
        "status":     status,
        "duration_s": duration_s,
        "reason":     reason,
    })
    ok = _write_state(state)
    log_debug(f"[DigestRuntime] cycle={cycle} status={status} duration_s={duration_s} reason={reason}")
    return ok
