from __future__ import annotations

import random
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase


def generate_id() -> str:
    """Return a unique-enough id: ``<epoch millis>-<9 base36 chars>``."""
    suffix = "".join(random.choice(_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"
