"""User-facing notices (the host's toast replacement)."""
from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def warn(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LogNotifier:
    """Log notices and keep the most recent ones for clients to poll."""

    def __init__(self, max_items: int = 50) -> None:
        self._items: Deque[Dict[str, str]] = deque(maxlen=max(1, max_items))

    def warn(self, message: str) -> None:
        logger.warning(message)
        self._items.append({"level": "warning", "message": message})

    def error(self, message: str) -> None:
        logger.error(message)
        self._items.append({"level": "error", "message": message})

    def recent(self) -> List[Dict[str, str]]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()
