"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for chat documents during tests."""
    d = tmp_path / "chats"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "VAULT_SERVER_CONFIG" or var.startswith("VAULT_SERVER__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def scenario_store() -> dict:
    """Vault from the branch scenario: memory "b" reaches message 9."""
    return {
        "memories": [
            {"id": "a", "summary": "Alice meets Bob", "message_ids": [0, 1]},
            {"id": "b", "summary": "Bob reveals the map", "message_ids": [2, 9]},
        ],
        "character_states": {"Alice": {"known_events": ["a", "b"]}},
        "relationships": {"Alice-Bob": {"last_updated_message_id": 9}},
        "last_processed_message_id": 9,
    }
