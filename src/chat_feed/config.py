"""Layered YAML configuration for the chat feed server.

Values are resolved in this order, later layers winning:

* built-in defaults from :func:`default_config`
* the YAML file: explicit ``path``, else ``$CHAT_FEED_CONFIG``, else
  ``config/default.yaml``
* ``CHAT_FEED__SECTION__KEY`` environment variables
  (e.g. ``CHAT_FEED__STORE__MAX_EVENTS=50``)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_FEED__"


def default_config() -> Dict[str, Any]:
    """Built-in defaults; every key the server reads is present here."""
    return {
        "server": {"cors_origins": ["*"], "stream_poll_seconds": 15.0},
        "store": {"data_dir": "data", "max_events": 1000, "use_jsonl": False},
    }


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if value is None:
            # An empty YAML section keeps the defaults.
            continue
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _env_overrides() -> Dict[str, Any]:
    """Collect CHAT_FEED__* variables into a nested dict."""
    out: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        *sections, leaf = key[len(ENV_PREFIX):].lower().split("__")
        sub = out
        for section in sections:
            sub = sub.setdefault(section, {})
        sub[leaf] = _coerce(value)
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load the chat feed configuration.

    A missing file is not an error: the defaults are used and a warning is
    logged. A file that fails to parse, or whose top level is not a mapping,
    raises ``RuntimeError``.
    """
    if path is None:
        path = os.environ.get("CHAT_FEED_CONFIG", "config/default.yaml")

    cfg = default_config()
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
    else:
        with path_obj.open("r", encoding="utf-8") as f:
            try:
                loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e
        if not isinstance(loaded, dict):
            raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")
        _merge(cfg, loaded)

    return _merge(cfg, _env_overrides())
