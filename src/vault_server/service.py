"""Reconcile-and-save flows tying the vault to stored chats."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from utils.ids import generate_id
from vault.records import Memory, PruneReport
from vault.reconcile import BranchReconciler

from .memory import ChatDocuments

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    report: PruneReport
    transcript_length: int
    changed: bool
    saved: bool


class VaultService:
    def __init__(self, documents: ChatDocuments, reconciler: Optional[BranchReconciler] = None) -> None:
        self.documents = documents
        self.reconciler = reconciler or BranchReconciler()

    def reconcile_chat(self, chat_id: str, transcript_length: Optional[int] = None) -> ReconcileOutcome:
        """Prune the chat's vault against its transcript and save if anything moved.

        ``transcript_length`` overrides the stored transcript's length. The
        save is skipped (``saved`` False) when the active chat changed while
        reconciling; the in-memory result is not rolled back.
        """
        if transcript_length is not None and transcript_length < 0:
            raise ValueError("transcript_length must be >= 0")

        expected = self.documents.active_chat_id
        with self.documents.locked():
            handle = self.documents.handle(chat_id)
            length = handle.get_current_transcript_length() if transcript_length is None else transcript_length

            store = handle.get_store()
            before = store.to_dict()
            report = self.reconciler.reconcile(store, length)
            changed = store.to_dict() != before

            saved = True
            if changed:
                saved = handle.persist(store, expected_chat_id=expected)
        if changed:
            logger.info(
                "Reconciled chat %s at length %d: %s (saved=%s)",
                chat_id, length, report.to_dict(), saved,
            )
        return ReconcileOutcome(report=report, transcript_length=length, changed=changed, saved=saved)

    def branch_chat(self, chat_id: str, length: int) -> ReconcileOutcome:
        """Rewind the transcript to ``length`` messages, then reconcile."""
        with self.documents.locked():
            self.documents.truncate(chat_id, length)
            return self.reconcile_chat(chat_id)

    def add_memory(self, chat_id: str, summary: str, message_ids: Iterable[int]) -> Memory:
        """Record a new memory with a fresh id.

        Raises ValueError if a message id is negative or past the transcript.
        """
        ids = list(message_ids)
        with self.documents.locked():
            handle = self.documents.handle(chat_id)
            length = handle.get_current_transcript_length()
            bad = [i for i in ids if i < 0 or i >= length]
            if bad:
                raise ValueError(f"message ids out of range for chat of length {length}: {bad}")

            store = handle.get_store()
            memory = Memory(id=generate_id(), summary=summary, message_ids=ids)
            if store.memories is None:
                store.memories = []
            store.memories.append(memory)
            if not handle.persist(store):
                raise OSError(f"Failed to save memory for chat {chat_id}")
        return memory
