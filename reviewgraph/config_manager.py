"""Configuration manager for reviewgraph using TOML files."""

from __future__ import annotations

import copy
import logging
import os
from typing import Any, Dict

import toml

from . import config

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "embeddings": {
        "provider": "voyage",
        "model": config.VOYAGE_MODEL,
        "dimension": config.VOYAGE_DIMENSION,
        "endpoint": config.VOYAGE_ENDPOINT,
        "api_key": "",
        "token_budget": config.EMBED_TOKEN_BUDGET,
        "max_items": config.EMBED_MAX_ITEMS,
        "concurrency": config.EMBED_CONCURRENCY,
        "max_retries": config.EMBED_MAX_RETRIES,
        "timeout": 60,
    },
    "index": {
        "max_file_size": config.MAX_FILE_SIZE,
        "clone_timeout": config.CLONE_TIMEOUT,
        "include_embeddings": True,
        # repo_id -> indexing strategy ("default" or "artifact")
        "strategies": {},
    },
    "worker": {
        "concurrency": 2,
        "rate_limit_jobs": 5,
        "rate_limit_period": 60,
        "attempts": 3,
        "backoff_base": 5.0,
    },
    "breakers": {},
}


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config file (all sections), or ``{}``."""
    path = config.CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config() -> Dict[str, Any]:
    """Return defaults merged with the TOML file and environment overrides."""
    merged = _merge(DEFAULT_CONFIG, load_full_config())
    api_key = os.environ.get("VOYAGE_API_KEY")
    if api_key:
        merged["embeddings"]["api_key"] = api_key
    return merged


def load_section(name: str) -> Dict[str, Any]:
    """Load one section (``embeddings``, ``index``, ``worker``, ``breakers``)."""
    return load_config().get(name, {})


def save_config(payload: Dict[str, Any]) -> bool:
    """Write *payload* to the TOML file, preserving sections it does not mention.

    Returns:
        True if saved successfully, False otherwise.
    """
    current = load_full_config()
    updated = _merge(current, payload)
    config.BASE_DIR.mkdir(parents=True, exist_ok=True)
    try:
        with open(config.CONFIG_FILE, "w", encoding="utf-8") as f:
            toml.dump(updated, f)
        return True
    except OSError as exc:
        logger.warning("Could not write config file %s: %s", config.CONFIG_FILE, exc)
        return False


def set_value(section: str, key: str, value: Any) -> bool:
    """Set a single ``section.key`` in the config file."""
    return save_config({section: {key: value}})
