"""
Settings Manager
Runtime configuration overrides for the digest service.

Operators edit the overrides file by hand; config.py getters consult it before
the environment. The file is re-read whenever its mtime changes, so a flipped
DIGEST_ENABLE or DIGEST_TZ applies on the next getter call without a restart.
"""
import os
import json
from pathlib import Path
from typing import Dict, Any, Optional

from utils.logger import log_warn


def _candidate_settings_files() -> list[Path]:
    """
    Resolve candidate locations for persisted overrides.
    Order matters:
    1) Explicit env override
    2) Writable runtime volume in containers
    3) Repo-local fallback for dev runs
    """
    raw_candidates = []
    env_file = os.getenv("DIGEST_SETTINGS_FILE") or os.getenv("SETTINGS_FILE")
    if env_file:
        raw_candidates.append(env_file)
    raw_candidates.extend([
        "/app/data/digest_settings.json",
        "digest_data/settings.json",
    ])

    unique: list[Path] = []
    seen = set()
    for raw in raw_candidates:
        p = Path(raw).expanduser()
        key = str(p)
        if key in seen:
            continue
        seen.add(key)
        unique.append(p)
    return unique


class SettingsManager:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(SettingsManager, cls).__new__(cls)
            cls._instance.settings = {}
            cls._instance._settings_path = None
            cls._instance._mtime = None
            cls._instance._refresh()
        return cls._instance

    def _refresh(self) -> None:
        """Load the first existing candidate if it is new or changed on disk."""
        for candidate in _candidate_settings_files():
            try:
                mtime = candidate.stat().st_mtime
            except OSError:
                continue
            if candidate == self._settings_path and mtime == self._mtime:
                return
            try:
                data = json.loads(candidate.read_text())
            except (OSError, ValueError) as e:
                log_warn(f"[Settings] Failed to load settings from {candidate}: {e}")
                continue
            if not isinstance(data, dict):
                log_warn(f"[Settings] Ignoring {candidate}: top level is not an object")
                continue
            self.settings = data
            self._settings_path = candidate
            self._mtime = mtime
            return
        # no readable file (any more): overrides no longer apply
        self.settings = {}
        self._settings_path = None
        self._mtime = None

    def get(self, key: str, default: Any = None) -> Any:
        """Override for `key`, or `default` when the file does not set it."""
        self._refresh()
        return self.settings.get(key, default)

    def source(self) -> Dict[str, Any]:
        """Where overrides come from and which keys they set (admin state view)."""
        self._refresh()
        path: Optional[Path] = self._settings_path
        return {
            "file": str(path) if path is not None else None,
            "keys": sorted(self.settings),
        }

# Global accessor
settings = SettingsManager()
