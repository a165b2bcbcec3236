"""
Read-only access to the local session statistics cache.

The cache is written by the session scanner as a JSON document mapping each
session file path to its precomputed statistics::

    {"sessionFileCache": {"<path>": {"tokens": 360, "interactions": 3,
                                     "modelUsage": {"gpt-4o": {...}},
                                     "mtime": 1768521600000}}}

``mtime`` is in milliseconds. An entry is a hit only when it was computed
for the file's current modification time.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ai_usage_sync.core.errors import ConfigError
from ai_usage_sync.observability.logging import get_logger

logger = get_logger(__name__)

CACHE_ROOT_KEY = "sessionFileCache"

# Cached mtimes are compared at millisecond resolution
MTIME_TOLERANCE_MS = 1.0


def stat_mtime(path: str) -> float:
    """Modification time of a file in seconds."""
    return os.stat(path).st_mtime


class SessionCacheReader:
    """Loads the cache once and answers ``(path, mtime)`` lookups."""

    def __init__(self, cache_path: str):
        self.cache_path = cache_path
        self._entries: Optional[Dict[str, Mapping[str, Any]]] = None

    def _load(self) -> Dict[str, Mapping[str, Any]]:
        if self._entries is not None:
            return self._entries

        path = Path(self.cache_path).expanduser()
        if not path.exists():
            logger.info("Session cache not found; nothing to aggregate")
            self._entries = {}
            return self._entries
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as exc:
            raise ConfigError(f"Session cache could not be read: {type(exc).__name__}") from exc

        if isinstance(document, Mapping) and isinstance(document.get(CACHE_ROOT_KEY), Mapping):
            document = document[CACHE_ROOT_KEY]
        if not isinstance(document, Mapping):
            raise ConfigError("Session cache must be a JSON object")

        self._entries = {str(k): v for k, v in document.items() if isinstance(v, Mapping)}
        return self._entries

    def reload(self) -> None:
        self._entries = None

    def paths(self) -> List[str]:
        """Session files known to the cache, sorted."""
        return sorted(self._load())

    def lookup(self, path: str, mtime: float) -> Optional[Mapping[str, Any]]:
        """Return the cached entry for the file at this mtime, or None on miss."""
        entry = self._load().get(path)
        if entry is None:
            return None
        cached_mtime = entry.get("mtime")
        if not isinstance(cached_mtime, (int, float)):
            return None
        if abs(float(cached_mtime) - mtime * 1000.0) > MTIME_TOLERANCE_MS:
            return None
        return entry

    __call__ = lookup
