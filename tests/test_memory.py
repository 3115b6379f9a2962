from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from utils.ids import generate_id
from vault.records import METADATA_KEY, Store
from vault.reconcile import BranchReconciler
from vault_server.memory import ChatDocuments
from vault_server.notify import LogNotifier
from vault_server.service import VaultService


def _seed_chat(docs: ChatDocuments, chat_id: str, n: int) -> None:
    for i in range(n):
        docs.append_message(chat_id, {"mes": f"m{i}", "is_user": i % 2 == 0})


def test_documents_roundtrip(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    assert docs.append_message("chat1", {"mes": "hi"}) == 1
    doc = docs.load("chat1")
    assert doc.chat == [{"mes": "hi"}]
    assert docs.list_chats() == ["chat1"]


def test_load_missing_chat_is_empty(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    doc = docs.load("nope")
    assert doc.chat == [] and doc.chat_metadata == {}


def test_append_rejects_bad_messages(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    with pytest.raises(TypeError):
        docs.append_message("c", "hello")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        docs.append_message("c", {"text": "hello"})


def test_corrupt_document_is_moved_aside(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    (tmp_data_dir / "broken.json").write_text("{not json", encoding="utf-8")
    doc = docs.load("broken")
    assert doc.chat == []
    assert (tmp_data_dir / "broken.corrupt.json").exists()
    assert docs.list_chats() == []


def test_truncate_and_delete(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    _seed_chat(docs, "c", 5)
    assert len(docs.truncate("c", 2).chat) == 2
    assert len(docs.load("c").chat) == 2
    with pytest.raises(ValueError):
        docs.truncate("c", -1)
    assert docs.delete("c") is True
    assert docs.delete("c") is False


def test_get_store_seeds_default(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    _seed_chat(docs, "c", 1)
    handle = docs.handle("c")
    store = handle.get_store()
    assert store.to_dict()["last_processed_message_id"] == -1
    assert METADATA_KEY in handle.document.chat_metadata
    assert handle.persist(store) is True
    assert docs.load("c").chat_metadata[METADATA_KEY] == store.to_dict()


def test_persist_refuses_when_chat_switched(tmp_data_dir: Path):
    notifier = LogNotifier()
    docs = ChatDocuments(str(tmp_data_dir), notifier=notifier)
    _seed_chat(docs, "a", 1)
    docs.open("b")
    handle = docs.handle("a")
    assert handle.persist(Store(), expected_chat_id="a") is False
    assert notifier.recent()[0]["level"] == "warning"
    assert "aborting save" in notifier.recent()[0]["message"]


def test_persist_failure_is_reported(tmp_data_dir: Path, monkeypatch: pytest.MonkeyPatch):
    notifier = LogNotifier()
    docs = ChatDocuments(str(tmp_data_dir), notifier=notifier)
    _seed_chat(docs, "a", 1)

    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("vault_server.memory.atomic_write_json", boom)
    assert docs.handle("a").persist(Store()) is False
    assert notifier.recent() == [{"level": "error", "message": "Failed to save data: disk full"}]


def test_service_branch_prunes_and_saves(tmp_data_dir: Path, scenario_store: dict):
    docs = ChatDocuments(str(tmp_data_dir))
    _seed_chat(docs, "c", 10)
    handle = docs.handle("c")
    handle.persist(Store.from_dict(scenario_store))

    outcome = VaultService(docs).branch_chat("c", 3)

    assert outcome.transcript_length == 3
    assert outcome.report.to_dict() == {
        "prunedMemories": 1,
        "prunedCharacterEvents": 1,
        "prunedRelationships": 1,
    }
    assert outcome.changed and outcome.saved
    saved = docs.load("c").chat_metadata[METADATA_KEY]
    assert [m["id"] for m in saved["memories"]] == ["a"]
    assert saved["last_processed_message_id"] == 2


def test_service_reconcile_without_changes_does_not_write(tmp_data_dir: Path, scenario_store: dict):
    docs = ChatDocuments(str(tmp_data_dir))
    _seed_chat(docs, "c", 10)
    docs.handle("c").persist(Store.from_dict(scenario_store))
    path = tmp_data_dir / "c.json"
    before = path.read_text(encoding="utf-8")

    outcome = VaultService(docs).reconcile_chat("c")
    assert outcome.report.total == 0
    assert not outcome.changed
    assert path.read_text(encoding="utf-8") == before


def test_service_add_memory_uses_generated_id(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    _seed_chat(docs, "c", 3)
    service = VaultService(docs)
    memory = service.add_memory("c", "Alice waves", [0, 2])
    assert re.fullmatch(r"\d+-[0-9a-z]{9}", memory.id)
    with pytest.raises(ValueError):
        service.add_memory("c", "too far", [3])
    stored = docs.load("c").chat_metadata[METADATA_KEY]["memories"]
    assert stored == [{"id": memory.id, "summary": "Alice waves", "message_ids": [0, 2]}]


def test_generate_id_format_and_uniqueness():
    ids = {generate_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(re.fullmatch(r"\d+-[0-9a-z]{9}", i) for i in ids)


def test_reconcile_keeps_messages_appended_while_it_runs(tmp_data_dir: Path, scenario_store: dict):
    docs = ChatDocuments(str(tmp_data_dir))
    _seed_chat(docs, "c", 10)
    docs.handle("c").persist(Store.from_dict(scenario_store))

    class AppendingReconciler(BranchReconciler):
        def reconcile(self, store, transcript_length):
            docs.append_message("c", {"mes": "written by another request"})
            return super().reconcile(store, transcript_length)

    outcome = VaultService(docs, AppendingReconciler()).reconcile_chat("c", 3)

    assert outcome.saved
    doc = docs.load("c")
    assert len(doc.chat) == 11
    assert doc.chat[-1] == {"mes": "written by another request"}
    assert [m["id"] for m in doc.chat_metadata[METADATA_KEY]["memories"]] == ["a"]


def test_concurrent_add_memory_keeps_every_memory(tmp_data_dir: Path):
    docs = ChatDocuments(str(tmp_data_dir))
    _seed_chat(docs, "c", 3)
    service = VaultService(docs)

    with ThreadPoolExecutor(max_workers=8) as pool:
        added = list(pool.map(lambda i: service.add_memory("c", f"event {i}", [i % 3]), range(16)))

    stored = docs.load("c").chat_metadata[METADATA_KEY]["memories"]
    assert sorted(m["id"] for m in stored) == sorted(m.id for m in added)
    assert len(stored) == 16
