"""
Persistent response cache for external services.

One JSON file per pipeline stage maps a normalized request key to the exact
response payload. Every ``put`` is written to disk immediately, so a crash
mid-run loses at most the request in flight, and a rerun with unchanged
inputs performs no network calls at all.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

from ..utils.logging_config import get_logger

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_key(key: str) -> str:
    """Collapse whitespace and case-fold a request key."""
    return _WHITESPACE.sub(" ", key).strip().casefold()


class ResponseCache:
    """Read-through store of request key -> response payload."""

    def __init__(self, path: Path | str | None):
        self.path = Path(path) if path is not None else None
        self._entries: dict[str, Any] = {}
        self.hits = 0
        self.misses = 0
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Cache file {self.path} does not hold a JSON object")
        self._entries = data
        logger.debug(f"Loaded {len(data)} cache entries from {self.path}")

    def __contains__(self, key: str) -> bool:
        return normalize_key(key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(normalize_key(key))
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, key: str, payload: Any) -> None:
        self._entries[normalize_key(key)] = payload
        self._flush()

    def _flush(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._entries, f, ensure_ascii=False, indent=1, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
