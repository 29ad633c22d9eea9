# core/response_cache.py

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from cachetools import TTLCache

# Number of trailing history turns folded into the key when enabled
HISTORY_KEY_TURNS = 3


@dataclass(frozen=True)
class CacheEntry:
    payload: Dict[str, Any]
    created_at: float = field(default=0.0)


class ResponseCache:
    """
    Time-windowed memo of chat replies keyed by normalized message text.

    Entries older than `ttl` seconds are treated as absent. `maxsize`
    bounds memory; beyond it the oldest entries are dropped first.
    """

    def __init__(
        self,
        ttl: float = 120.0,
        maxsize: int = 10000,
        include_history: bool = False,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.include_history = include_history
        self._timer = timer
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    @property
    def size(self) -> int:
        return len(self._entries)

    def make_key(self, message: str, history: Optional[List[Dict[str, Any]]] = None) -> str:
        key = message.strip().lower()
        if self.include_history and history:
            tail = history[-HISTORY_KEY_TURNS:]
            turns = [f"{turn['role']}:{_turn_text(turn).strip().lower()}" for turn in tail]
            key = "\n".join(turns + [key])
        return key

    def lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        # TTLCache expires lazily on access; double-check against our own stamp
        if self._timer() - entry.created_at >= self.ttl:
            return None
        return entry

    def store(self, key: str, payload: Dict[str, Any]) -> CacheEntry:
        entry = CacheEntry(payload=dict(payload), created_at=self._timer())
        self._entries[key] = entry
        return entry

    def clear(self) -> None:
        self._entries.clear()


def _turn_text(turn: Dict[str, Any]) -> str:
    """Plain text of a Gemini-shaped history turn ({role, parts:[{text}]})."""
    return "".join(part.get("text", "") for part in turn.get("parts", []))
