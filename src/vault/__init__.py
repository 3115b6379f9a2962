"""Per-chat vault of memories, character states and relationships.

Typical usage
-------------
from vault import Store, reconcile
store = Store.from_dict(chat_metadata["openvault"])
report = reconcile(store, len(chat))
chat_metadata["openvault"] = store.to_dict()
"""

from __future__ import annotations

from .records import (
    METADATA_KEY,
    CharacterState,
    EmotionRange,
    HistoryEntry,
    Memory,
    PruneReport,
    Relationship,
    Store,
    default_store,
)
from .reconcile import BranchReconciler, reconcile

__all__ = [
    "METADATA_KEY",
    "BranchReconciler",
    "CharacterState",
    "EmotionRange",
    "HistoryEntry",
    "Memory",
    "PruneReport",
    "Relationship",
    "Store",
    "default_store",
    "reconcile",
]
