# tests/conftest.py
"""
Pytest Fixtures - shared test setup for the digest pipeline.
"""

import sys
from pathlib import Path

import pytest

# Add parent dir to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture(autouse=True)
def _isolated_digest_state(tmp_path, monkeypatch):
    """Keep runtime state and file records of every test inside tmp_path."""
    monkeypatch.setenv("DIGEST_STATE_PATH", str(tmp_path / "digest_state.json"))
    monkeypatch.setenv("DIGEST_STORE_PATH", str(tmp_path / "records"))
    monkeypatch.setenv("DIGEST_STORE_BACKEND", "memory")
    yield
    from core.digest import service
    service.reset_service()
