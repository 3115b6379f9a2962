"""Disk-based chat documents keyed by chat id (thread-safe, atomic)."""
from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from utils.io import atomic_write_json, ensure_dir, read_json
from vault.records import METADATA_KEY, Store, default_store

from .notify import Notifier

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def _safe_chat_id(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]  # avoid absurdly long filenames


@dataclass
class ChatDocument:
    """One chat as the host persists it: transcript plus free-form metadata."""
    chat_id: str
    chat: List[Dict[str, Any]] = field(default_factory=list)
    chat_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, chat_id: str, raw: Any) -> "ChatDocument":
        if not isinstance(raw, dict):
            return cls(chat_id=chat_id)
        chat = raw.get("chat")
        meta = raw.get("chat_metadata")
        return cls(
            chat_id=chat_id,
            chat=[m for m in chat if isinstance(m, dict)] if isinstance(chat, list) else [],
            chat_metadata=meta if isinstance(meta, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"chat_id": self.chat_id, "chat": self.chat, "chat_metadata": self.chat_metadata}


# -----------------------------
# ChatDocuments
# -----------------------------
class ChatDocuments:
    """JSON-based per-chat document store.

    Layout:
        data_dir/
          <chat id>.json        # {"chat_id", "chat": [...], "chat_metadata": {...}}

    The store also remembers which chat is currently open, so a save that
    was started for one chat can be refused once the user switched away.
    """

    def __init__(self, data_dir: str, *, notifier: Optional[Notifier] = None) -> None:
        self.root = ensure_dir(data_dir)
        self.notifier = notifier
        self._active: Optional[str] = None
        self._lock = threading.RLock()

    # --------- paths ----------
    def _json_path(self, chat_id: str) -> Path:
        return self.root / f"{_safe_chat_id(chat_id)}.json"

    # --------- active chat ----------
    @property
    def active_chat_id(self) -> Optional[str]:
        return self._active

    def open(self, chat_id: str) -> ChatDocument:
        """Make ``chat_id`` the current chat and return its document."""
        with self._lock:
            self._active = chat_id
            return self.load(chat_id)

    # --------- core API ----------
    def exists(self, chat_id: str) -> bool:
        return self._json_path(chat_id).exists()

    def load(self, chat_id: str) -> ChatDocument:
        """Load the document for ``chat_id`` (empty if it does not exist yet)."""
        path = self._json_path(chat_id)
        if not path.exists():
            return ChatDocument(chat_id=chat_id)
        try:
            return ChatDocument.from_dict(chat_id, read_json(path))
        except (OSError, ValueError) as e:
            # Corruption fallback: keep a backup and start fresh.
            logger.warning("Unreadable chat document %s, moving it aside: %s", path, e)
            with self._lock:
                bad = path.with_suffix(".corrupt.json")
                try:
                    path.replace(bad)
                except OSError:
                    logger.exception("Could not move corrupt document %s", path)
            return ChatDocument(chat_id=chat_id)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store lock across a read-modify-write of one or more chats."""
        with self._lock:
            yield

    def persist_metadata(
        self,
        chat_id: str,
        key: str,
        value: Any,
        *,
        expected_chat_id: Optional[str] = None,
    ) -> bool:
        """Set ``chat_metadata[key]`` on disk. Returns False instead of raising.

        The document is re-read under the lock and only ``key`` is replaced,
        so transcript messages appended since the caller loaded it are kept.
        If ``expected_chat_id`` is given and the active chat is a different
        one, nothing is written.
        """
        with self._lock:
            if expected_chat_id is not None and self._active != expected_chat_id:
                msg = (
                    f"Chat changed during operation (expected: {expected_chat_id}, "
                    f"current: {self._active}), aborting save"
                )
                logger.warning(msg)
                if self.notifier is not None:
                    self.notifier.warn(msg)
                return False

            try:
                doc = self.load(chat_id)
                doc.chat_metadata[key] = value
                atomic_write_json(self._json_path(chat_id), doc.to_dict())
            except (OSError, ValueError) as e:
                logger.error("Failed to save chat %s: %s", chat_id, e)
                if self.notifier is not None:
                    self.notifier.error(f"Failed to save data: {e}")
                return False
        logger.debug("Chat %s saved", chat_id)
        return True

    def append_message(self, chat_id: str, message: Dict[str, Any]) -> int:
        """Append a transcript message; returns the new transcript length."""
        if not isinstance(message, dict):
            raise TypeError("message must be a dict")
        if not isinstance(message.get("mes"), str):
            raise ValueError("message must contain a 'mes' string")

        with self._lock:
            doc = self.load(chat_id)
            doc.chat.append(message)
            atomic_write_json(self._json_path(chat_id), doc.to_dict())
            return len(doc.chat)

    def truncate(self, chat_id: str, length: int) -> ChatDocument:
        """Cut the transcript back to its first ``length`` messages (a branch)."""
        if length < 0:
            raise ValueError("length must be >= 0")
        with self._lock:
            doc = self.load(chat_id)
            del doc.chat[length:]
            atomic_write_json(self._json_path(chat_id), doc.to_dict())
            return doc

    def delete(self, chat_id: str) -> bool:
        """Remove a chat; True if something was deleted."""
        with self._lock:
            path = self._json_path(chat_id)
            if not path.exists():
                return False
            path.unlink()
            if self._active == chat_id:
                self._active = None
            return True

    def list_chats(self) -> List[str]:
        """Return all chat ids with a stored document."""
        return sorted(p.stem for p in self.root.glob("*.json") if not p.stem.endswith(".corrupt"))

    def handle(self, chat_id: str) -> "ChatHandle":
        return ChatHandle(self, chat_id)


# -----------------------------
# ChatHandle
# -----------------------------
class ChatHandle:
    """Vault-facing view of one chat: transcript length, store, persist.

    The document is a snapshot taken when the handle is created; callers
    that must not race other writers wrap their work in
    ``ChatDocuments.locked()``.
    """

    def __init__(self, documents: ChatDocuments, chat_id: str) -> None:
        self.documents = documents
        self.chat_id = chat_id
        with documents.locked():
            self.document = documents.load(chat_id)

    def get_current_transcript_length(self) -> int:
        return len(self.document.chat)

    def get_store(self) -> Store:
        """Parse the vault out of the chat metadata, seeding a default one."""
        raw = self.document.chat_metadata.get(METADATA_KEY)
        if not isinstance(raw, dict):
            store = default_store()
            self.document.chat_metadata[METADATA_KEY] = store.to_dict()
            return store
        return Store.from_dict(raw)

    def persist(self, store: Store, *, expected_chat_id: Optional[str] = None) -> bool:
        """Write ``store`` back as this chat's vault; the transcript on disk is left alone."""
        data = store.to_dict()
        self.document.chat_metadata[METADATA_KEY] = data
        return self.documents.persist_metadata(
            self.chat_id, METADATA_KEY, data, expected_chat_id=expected_chat_id
        )
