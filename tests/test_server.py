from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from vault_server.memory import ChatDocuments
from vault_server.server import create_app


def _client(tmp_path: Path) -> tuple[TestClient, ChatDocuments]:
    docs = ChatDocuments(str(tmp_path / "chats"))
    app = create_app(config_path=str(tmp_path / "missing.yaml"), documents=docs)
    return TestClient(app), docs


def _post_messages(client: TestClient, chat_id: str, n: int) -> None:
    for i in range(n):
        r = client.post(f"/chats/{chat_id}/messages", json={"mes": f"m{i}", "name": "Alice"})
        assert r.status_code == 200


def test_branch_endpoint_prunes_vault(tmp_path: Path, clean_env, scenario_store: dict):
    client, _ = _client(tmp_path)
    _post_messages(client, "c1", 10)
    assert client.post("/chats/c1/open").json() == {"chat_id": "c1", "transcript_length": 10}
    assert client.put("/chats/c1/vault", json=scenario_store).json() == {"saved": True}

    r = client.post("/chats/c1/branch", json={"length": 3})
    assert r.status_code == 200
    body = r.json()
    assert body["prunedMemories"] == 1
    assert body["prunedCharacterEvents"] == 1
    assert body["prunedRelationships"] == 1
    assert body["transcript_length"] == 3
    assert body["saved"] is True

    vault = client.get("/chats/c1/vault").json()
    assert [m["id"] for m in vault["memories"]] == ["a"]
    assert vault["character_states"]["Alice"]["known_events"] == ["a"]
    assert vault["relationships"]["Alice-Bob"]["last_updated_message_id"] == 2
    assert vault["last_processed_message_id"] == 2


def test_reconcile_with_explicit_length_and_idempotence(tmp_path: Path, clean_env, scenario_store: dict):
    client, _ = _client(tmp_path)
    _post_messages(client, "c1", 10)
    client.put("/chats/c1/vault", json=scenario_store)

    first = client.post("/chats/c1/reconcile", json={"transcript_length": 3}).json()
    assert first["changed"] is True
    second = client.post("/chats/c1/reconcile", json={"transcript_length": 3}).json()
    assert second["changed"] is False
    assert second["prunedMemories"] == 0


def test_reconcile_without_body_uses_transcript(tmp_path: Path, clean_env):
    client, _ = _client(tmp_path)
    _post_messages(client, "c1", 2)
    r = client.post("/chats/c1/reconcile")
    assert r.status_code == 200
    assert r.json()["transcript_length"] == 2


def test_memories_endpoint(tmp_path: Path, clean_env):
    client, _ = _client(tmp_path)
    _post_messages(client, "c1", 2)

    r = client.post("/chats/c1/memories", json={"summary": "hello", "message_ids": [0, 1]})
    assert r.status_code == 200
    assert r.json()["message_ids"] == [0, 1]

    r = client.post("/chats/c1/memories", json={"summary": "late", "message_ids": [5]})
    assert r.status_code == 400


def test_unknown_chat_and_bad_input(tmp_path: Path, clean_env):
    client, _ = _client(tmp_path)
    assert client.get("/chats/ghost/vault").status_code == 404
    assert client.post("/chats/ghost/reconcile").status_code == 404
    assert client.post("/chats/x/messages", json={"mes": ""}).status_code == 422
    _post_messages(client, "c1", 1)
    assert client.post("/chats/c1/branch", json={"length": -1}).status_code == 422


def test_health_chats_and_delete(tmp_path: Path, clean_env):
    client, _ = _client(tmp_path)
    _post_messages(client, "c1", 1)
    assert client.get("/health").json()["ok"] is True
    assert client.get("/chats").json()["chats"] == ["c1"]
    assert client.delete("/chats/c1").json() == {"deleted": True}
    assert client.get("/chats").json()["chats"] == []
    assert client.get("/notices").json() == {"notices": []}
