"""Disk cache for model extraction replies, for development runs.

Enabled by pointing LLM_CACHE_DIR at a directory; unset in production. Keys
are hashed, so any change in the inputs is a miss. Cache trouble of any kind
(unreadable file, unserializable value) is treated as a miss.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger("shopscout.llm_cache")

_CACHE_DIR: str | None = os.environ.get("LLM_CACHE_DIR")


def _cache_path(namespace: str, key_parts: list[str]) -> Path | None:
    if not _CACHE_DIR:
        return None
    digest = hashlib.sha256("|".join(key_parts).encode()).hexdigest()[:20]
    cache_dir = Path(_CACHE_DIR) / namespace
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir / f"{digest}.json"


def get_cached(namespace: str, key_parts: list[str]) -> Any | None:
    path = _cache_path(namespace, key_parts)
    if path is None or not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        return None
    logger.debug("llm_cache_hit", namespace=namespace)
    return data


def set_cached(namespace: str, key_parts: list[str], value: Any) -> None:
    path = _cache_path(namespace, key_parts)
    if path is None:
        return
    try:
        path.write_text(json.dumps(value))
    except (OSError, TypeError):
        return
    logger.debug("llm_cache_saved", namespace=namespace)
