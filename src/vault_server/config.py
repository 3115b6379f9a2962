"""Configuration for the vault server.

Sources, lowest to highest precedence:
1. Built-in defaults (:func:`default_config`)
2. A YAML file: explicit path, else ``$VAULT_SERVER_CONFIG``, else
   ``config/default.yaml``. Sections in the file are merged over the
   defaults key by key, so a file may set only what it changes.
3. Environment variables ``VAULT_SERVER__<SECTION>__<KEY>``, e.g.
   ``VAULT_SERVER__VAULT__DEBUG_MODE=true``. Comma-separated values for
   list-valued keys (``cors_origins``) become lists.

:func:`load_settings` turns the merged dict into a validated
:class:`VaultSettings`.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "VAULT_SERVER__"
ENV_CONFIG_PATH = "VAULT_SERVER_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"

_DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "storage": {"data_dir": "data/chats"},
    "vault": {"debug_mode": False},
    "notices": {"max_items": 50},
}


def default_config() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


@dataclass
class VaultSettings:
    """Typed view of the settings the server actually reads."""
    data_dir: str = "data/chats"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    debug_mode: bool = False
    notice_max_items: int = 50

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "VaultSettings":
        origins = cfg.get("server", {}).get("cors_origins") or ["*"]
        if isinstance(origins, str):
            origins = [origins]
        max_items = int(cfg.get("notices", {}).get("max_items", 50))
        if max_items < 1:
            raise RuntimeError(f"notices.max_items must be >= 1, got {max_items}")
        return cls(
            data_dir=str(cfg.get("storage", {}).get("data_dir") or "data/chats"),
            cors_origins=[str(o) for o in origins],
            debug_mode=bool(cfg.get("vault", {}).get("debug_mode", False)),
            notice_max_items=max_items,
        )


def _merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in over.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(value: str, current: Any) -> Any:
    if isinstance(current, list):
        return [v.strip() for v in value.split(",") if v.strip()]
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ``VAULT_SERVER__A__B=value`` overrides in place."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if not isinstance(sub.get(p), dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value, sub.get(parts[-1]))
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Return the merged configuration dict.

    Raises RuntimeError if the file exists but is not a YAML mapping.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, DEFAULT_CONFIG_PATH)

    cfg = default_config()
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(cfg, loaded))


def load_settings(path: Optional[str] = None) -> VaultSettings:
    return VaultSettings.from_config(load_config(path))
