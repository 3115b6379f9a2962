"""Typed records for the per-chat vault (memories, characters, relationships).

The persisted shape is a loosely structured JSON object living in the chat
metadata. Records parse it permissively: fields that are missing or of the
wrong type become ``None`` and are treated as not applicable. Anything a
record does not model is kept in ``extra`` so that an untouched store
serializes back to the same dict it was loaded from. Collection entries
that are not objects at all are kept verbatim in place and never pruned.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# -----------------------------
# Persisted keys
# -----------------------------
METADATA_KEY = "openvault"
MEMORIES_KEY = "memories"
CHARACTERS_KEY = "character_states"
RELATIONSHIPS_KEY = "relationships"
LAST_PROCESSED_KEY = "last_processed_message_id"

NOTHING_PROCESSED = -1

# Message positions are compared as stored; 9.5 is out of range for length 3.
Index = Union[int, float]


class _Parsed:
    def __repr__(self) -> str:
        return "PARSED"


# default of `verbatim`: the record came from a JSON object
PARSED: Any = _Parsed()


def as_index(value: Any) -> Optional[Index]:
    """Return ``value`` if it is a number usable as a message index, else None."""
    # bool is an int subclass; JSON true/false are never message positions
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and not math.isnan(value):
        return value
    return None


def _split(raw: Dict[str, Any], known: tuple) -> Dict[str, Any]:
    return {k: v for k, v in raw.items() if k not in known}


def _index_field(raw: Dict[str, Any], key: str, extra: Dict[str, Any]) -> Optional[Index]:
    # Non-numeric values stay in `extra` so they survive a round-trip.
    if key not in raw:
        return None
    idx = as_index(raw[key])
    if idx is None:
        extra[key] = raw[key]
    return idx


def _typed_field(raw: Dict[str, Any], key: str, kind: type, extra: Dict[str, Any]) -> Any:
    value = raw.get(key)
    if value is None or isinstance(value, kind):
        return value
    extra[key] = value
    return None


# -----------------------------
# Memories
# -----------------------------
@dataclass
class Memory:
    """A summarized span of the conversation anchored to message positions."""
    id: Optional[str] = None
    summary: Optional[str] = None
    message_ids: Optional[List[Index]] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    verbatim: Any = field(default=PARSED, repr=False)

    @classmethod
    def parse(cls, raw: Any) -> "Memory":
        return cls.from_dict(raw) if isinstance(raw, dict) else cls(verbatim=raw)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Memory":
        extra = _split(raw, ("id", "summary", "message_ids"))
        raw_ids = _typed_field(raw, "message_ids", list, extra)
        ids: Optional[List[Index]] = None
        if raw_ids is not None:
            ids = [i for i in (as_index(v) for v in raw_ids) if i is not None]
            if len(ids) != len(raw_ids):
                # Mixed list: keep it verbatim, only numeric entries count for validity.
                extra["message_ids"] = raw_ids
        return cls(
            id=_typed_field(raw, "id", str, extra),
            summary=_typed_field(raw, "summary", str, extra),
            message_ids=ids,
            extra=extra,
        )

    def references_beyond(self, transcript_length: int) -> bool:
        """True if any anchored message is past the end of the transcript."""
        return any(i >= transcript_length for i in self.message_ids or [])

    def to_dict(self) -> Any:
        if self.verbatim is not PARSED:
            return self.verbatim
        d: Dict[str, Any] = dict(self.extra)
        if self.id is not None:
            d["id"] = self.id
        if self.summary is not None:
            d["summary"] = self.summary
        if self.message_ids is not None and "message_ids" not in self.extra:
            d["message_ids"] = list(self.message_ids)
        return d


# -----------------------------
# Character states
# -----------------------------
@dataclass
class EmotionRange:
    """Message window an emotion reading was inferred from."""
    min: Optional[Index] = None
    max: Optional[Index] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EmotionRange":
        extra = _split(raw, ("min", "max"))
        lo = _index_field(raw, "min", extra)
        hi = _index_field(raw, "max", extra)
        return cls(min=lo, max=hi, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        if self.min is not None:
            d["min"] = self.min
        if self.max is not None:
            d["max"] = self.max
        return d


@dataclass
class CharacterState:
    """What one character knows about (memory ids) and how they feel."""
    known_events: Optional[List[str]] = None
    emotion_from_messages: Optional[EmotionRange] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    verbatim: Any = field(default=PARSED, repr=False)

    @classmethod
    def parse(cls, raw: Any) -> "CharacterState":
        return cls.from_dict(raw) if isinstance(raw, dict) else cls(verbatim=raw)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CharacterState":
        extra = _split(raw, ("known_events", "emotion_from_messages"))
        events = _typed_field(raw, "known_events", list, extra)
        emotion = _typed_field(raw, "emotion_from_messages", dict, extra)
        return cls(
            known_events=list(events) if events is not None else None,
            emotion_from_messages=EmotionRange.from_dict(emotion) if emotion is not None else None,
            extra=extra,
        )

    def to_dict(self) -> Any:
        if self.verbatim is not PARSED:
            return self.verbatim
        d: Dict[str, Any] = dict(self.extra)
        if self.known_events is not None:
            d["known_events"] = list(self.known_events)
        if self.emotion_from_messages is not None:
            d["emotion_from_messages"] = self.emotion_from_messages.to_dict()
        return d


# -----------------------------
# Relationships
# -----------------------------
@dataclass
class HistoryEntry:
    message_id: Optional[Index] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    verbatim: Any = field(default=PARSED, repr=False)

    @classmethod
    def parse(cls, raw: Any) -> "HistoryEntry":
        return cls.from_dict(raw) if isinstance(raw, dict) else cls(verbatim=raw)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "HistoryEntry":
        extra = _split(raw, ("message_id",))
        return cls(message_id=_index_field(raw, "message_id", extra), extra=extra)

    def to_dict(self) -> Any:
        if self.verbatim is not PARSED:
            return self.verbatim
        d: Dict[str, Any] = dict(self.extra)
        if self.message_id is not None:
            d["message_id"] = self.message_id
        return d


@dataclass
class Relationship:
    """Pairwise state between two characters with its update log."""
    last_updated_message_id: Optional[Index] = None
    history: Optional[List[HistoryEntry]] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    verbatim: Any = field(default=PARSED, repr=False)

    @classmethod
    def parse(cls, raw: Any) -> "Relationship":
        return cls.from_dict(raw) if isinstance(raw, dict) else cls(verbatim=raw)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Relationship":
        extra = _split(raw, ("last_updated_message_id", "history"))
        cursor = _index_field(raw, "last_updated_message_id", extra)
        history = _typed_field(raw, "history", list, extra)
        return cls(
            last_updated_message_id=cursor,
            history=[HistoryEntry.parse(h) for h in history] if history is not None else None,
            extra=extra,
        )

    def to_dict(self) -> Any:
        if self.verbatim is not PARSED:
            return self.verbatim
        d: Dict[str, Any] = dict(self.extra)
        if self.last_updated_message_id is not None:
            d["last_updated_message_id"] = self.last_updated_message_id
        if self.history is not None:
            d["history"] = [h.to_dict() for h in self.history]
        return d


# -----------------------------
# Store
# -----------------------------
@dataclass
class Store:
    """Everything the vault keeps for one chat.

    Collections are None only when the persisted document lacks them (or
    holds something other than a list/object there); a freshly created
    store has all of them.
    """
    memories: Optional[List[Memory]] = field(default_factory=list)
    character_states: Optional[Dict[str, CharacterState]] = field(default_factory=dict)
    relationships: Optional[Dict[str, Relationship]] = field(default_factory=dict)
    last_processed_message_id: Optional[Index] = NOTHING_PROCESSED
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "Store":
        if not isinstance(raw, dict):
            return default_store()
        extra = _split(raw, (MEMORIES_KEY, CHARACTERS_KEY, RELATIONSHIPS_KEY, LAST_PROCESSED_KEY))
        memories = _typed_field(raw, MEMORIES_KEY, list, extra)
        chars = _typed_field(raw, CHARACTERS_KEY, dict, extra)
        rels = _typed_field(raw, RELATIONSHIPS_KEY, dict, extra)
        return cls(
            memories=[Memory.parse(m) for m in memories] if memories is not None else None,
            character_states={n: CharacterState.parse(s) for n, s in chars.items()} if chars is not None else None,
            relationships={k: Relationship.parse(r) for k, r in rels.items()} if rels is not None else None,
            last_processed_message_id=_index_field(raw, LAST_PROCESSED_KEY, extra),
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = dict(self.extra)
        if self.memories is not None:
            d[MEMORIES_KEY] = [m.to_dict() for m in self.memories]
        if self.character_states is not None:
            d[CHARACTERS_KEY] = {n: s.to_dict() for n, s in self.character_states.items()}
        if self.relationships is not None:
            d[RELATIONSHIPS_KEY] = {k: r.to_dict() for k, r in self.relationships.items()}
        if self.last_processed_message_id is not None:
            d[LAST_PROCESSED_KEY] = self.last_processed_message_id
        return d


def default_store() -> Store:
    """Fresh store for a chat that has never been processed."""
    return Store()


# -----------------------------
# Report
# -----------------------------
@dataclass
class PruneReport:
    """Counts of what one reconciliation pass removed or reset."""
    pruned_memories: int = 0
    pruned_character_events: int = 0
    pruned_relationships: int = 0

    @property
    def total(self) -> int:
        return self.pruned_memories + self.pruned_character_events + self.pruned_relationships

    def to_dict(self) -> Dict[str, int]:
        return {
            "prunedMemories": self.pruned_memories,
            "prunedCharacterEvents": self.pruned_character_events,
            "prunedRelationships": self.pruned_relationships,
        }
