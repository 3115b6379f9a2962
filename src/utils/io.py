from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union

PathLike = Union[str, Path]


def ensure_dir(p: PathLike) -> Path:
    """Ensure that a directory exists, returning it as a Path."""
    p = Path(p)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create directory {p}: {e}") from e
    return p


def read_json(path: PathLike) -> Any:
    """Load a JSON file. Raises ValueError on malformed content."""
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt JSON in {p}: {e}") from e


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Safely write a JSON file atomically to avoid corruption.

    Parameters
    ----------
    path : str | Path
        Destination file; its parent directory is created if needed.
    data : Any
        JSON-serializable payload.
    """
    p = Path(path)
    try:
        text = json.dumps(data, ensure_ascii=False, indent=2)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize data for {p}: {e}") from e

    ensure_dir(p.parent)
    try:
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(p.parent)) as tmp:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp_name = tmp.name
        os.replace(tmp_name, p)
    except OSError as e:
        raise OSError(f"Atomic write failed for {p}: {e}") from e
