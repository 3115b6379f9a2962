"""Branch-consistency reconciliation for the chat vault.

When a user rewinds a chat and continues from an earlier message, the vault
may still hold memories, emotion windows and relationship cursors that point
at messages which no longer exist. :class:`BranchReconciler` walks the store
once, drops or clamps everything that references an index >= the current
transcript length, and reports what it did.

The four passes are plain functions so they can be exercised on their own:

    prune_memories -> prune_character_states -> prune_relationships -> clamp_cursor

Each later pass depends on the invalid memory ids found by the first one.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set, Tuple

from .records import (
    NOTHING_PROCESSED,
    CharacterState,
    Index,
    Memory,
    PruneReport,
    Relationship,
    Store,
)

logger = logging.getLogger(__name__)

_SUMMARY_PREVIEW_CHARS = 50


def last_valid_index(transcript_length: int) -> int:
    """Index of the last message, or -1 for an empty transcript."""
    return transcript_length - 1 if transcript_length > 0 else NOTHING_PROCESSED


# -----------------------------
# Passes
# -----------------------------
def prune_memories(memories: List[Memory], transcript_length: int) -> Tuple[List[Memory], Set[str]]:
    """Split memories into the ones still valid and the ids of the dropped ones.

    A memory is dropped as a whole as soon as one of its message ids is out
    of range. Relative order of the survivors is preserved.
    """
    valid: List[Memory] = []
    invalid_ids: Set[str] = set()
    for memory in memories:
        if memory.references_beyond(transcript_length):
            if memory.id is not None:
                invalid_ids.add(memory.id)
        else:
            valid.append(memory)
    return valid, invalid_ids


def prune_character_states(
    states: Dict[str, CharacterState],
    invalid_ids: Set[str],
    transcript_length: int,
) -> Dict[str, int]:
    """Drop dangling known_events and clamp emotion windows in place.

    Returns the number of known_events removed per character (only
    characters that lost something are listed).
    """
    removed: Dict[str, int] = {}
    for name, state in states.items():
        if state.known_events is not None:
            before = len(state.known_events)
            state.known_events = [
                e for e in state.known_events if not (isinstance(e, str) and e in invalid_ids)
            ]
            if before != len(state.known_events):
                removed[name] = before - len(state.known_events)

        window = state.emotion_from_messages
        if window is None or window.max is None or window.max < transcript_length:
            continue
        if window.min is not None and window.min >= transcript_length:
            state.emotion_from_messages = None
        else:
            window.max = transcript_length - 1
    return removed


def prune_relationships(relationships: Dict[str, Relationship], transcript_length: int) -> List[str]:
    """Reset stale cursors and filter history entries in place.

    Returns the keys whose ``last_updated_message_id`` was reset. History
    filtering does not count toward that list.
    """
    reset: List[str] = []
    for key, rel in relationships.items():
        cursor = rel.last_updated_message_id
        if cursor is not None and cursor >= transcript_length:
            rel.last_updated_message_id = last_valid_index(transcript_length)
            reset.append(key)

        if rel.history is not None:
            rel.history = [
                h for h in rel.history if h.message_id is None or h.message_id < transcript_length
            ]
    return reset


def clamp_cursor(cursor: Optional[Index], transcript_length: int) -> Optional[Index]:
    """Pull a last-processed cursor back inside the transcript."""
    if cursor is not None and cursor >= transcript_length:
        return last_valid_index(transcript_length)
    return cursor


# -----------------------------
# Orchestration
# -----------------------------
class BranchReconciler:
    """Bring a vault store back in line with the active branch.

    ``verbose`` comes from the caller's configuration (``vault.debug_mode``);
    it only raises the log level of per-item decisions.
    """

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def _log(self, msg: str, *args: object) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    def reconcile(self, store: Store, transcript_length: int) -> PruneReport:
        """Mutate ``store`` in place and return what was pruned.

        Running it twice with the same length changes nothing the second time.
        """
        report = PruneReport()
        memories = store.memories or []
        if transcript_length <= 0 or not memories:
            return report

        valid, invalid_ids = prune_memories(memories, transcript_length)
        report.pruned_memories = len(memories) - len(valid)
        if report.pruned_memories > 0:
            for memory in memories:
                if memory.references_beyond(transcript_length):
                    self._log(
                        'Pruning memory "%s..." - references message(s) beyond chat length %d',
                        (memory.summary or "")[:_SUMMARY_PREVIEW_CHARS],
                        transcript_length,
                    )
            store.memories = valid

        removed = prune_character_states(store.character_states or {}, invalid_ids, transcript_length)
        for name, count in removed.items():
            self._log('Removed %d known_events from character "%s"', count, name)
        report.pruned_character_events = sum(removed.values())

        reset = prune_relationships(store.relationships or {}, transcript_length)
        for key in reset:
            self._log('Reset last_updated_message_id for relationship "%s"', key)
        report.pruned_relationships = len(reset)

        cursor = clamp_cursor(store.last_processed_message_id, transcript_length)
        if cursor != store.last_processed_message_id:
            store.last_processed_message_id = cursor
            self._log("Reset last_processed_message_id to %d", cursor)

        return report


def reconcile(store: Store, transcript_length: int, *, verbose: bool = False) -> PruneReport:
    """Shortcut for ``BranchReconciler(verbose=verbose).reconcile(...)``."""
    return BranchReconciler(verbose=verbose).reconcile(store, transcript_length)
