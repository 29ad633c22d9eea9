# core/key_rotator.py
"""
Round-robin rotation over the configured Gemini API keys.

The pool is fixed at startup but can be edited at runtime through the
/api/licenses endpoints (nothing is persisted). The cursor is plain
instance state: next() never awaits, so on a single event loop no two
callers can interleave inside it.
"""

import logging
from typing import Iterable, List

from core.exceptions import ChatValidationError, NoCredentialsError

logger = logging.getLogger(__name__)


def mask(key: str) -> str:
    """Display form of a key: first and last four characters only."""
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}…{key[-4:]}"


class KeyRotator:
    """Hands out one API key per call, cycling through the pool."""

    def __init__(self, keys: Iterable[str]):
        self._keys: List[str] = []
        for key in keys:
            key = key.strip()
            if key and key not in self._keys:
                self._keys.append(key)
        if not self._keys:
            raise NoCredentialsError()
        self._cursor = 0
        logger.info("Key rotator ready", extra={"api_keys_count": len(self._keys)})

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> List[str]:
        return list(self._keys)

    def next(self) -> str:
        key = self._keys[self._cursor]
        self._cursor = (self._cursor + 1) % len(self._keys)
        return key

    def add(self, key: str) -> bool:
        """Append a key to the pool. Returns False if it was already present."""
        key = key.strip()
        if not key:
            raise ChatValidationError("key must be a non-empty string", code="INVALID_KEY")
        if key in self._keys:
            return False
        self._keys.append(key)
        logger.info("API key added", extra={"key": mask(key), "api_keys_count": len(self._keys)})
        return True

    def remove(self, key: str) -> bool:
        """
        Drop a key from the pool. Returns False if the key is unknown.

        The last key cannot be removed: an empty pool would fail every
        request, which the service only allows to happen at startup.
        """
        if key not in self._keys:
            return False
        if len(self._keys) == 1:
            raise ChatValidationError("Cannot remove the last API key", code="LAST_API_KEY")

        index = self._keys.index(key)
        self._keys.pop(index)
        if index < self._cursor:
            self._cursor -= 1
        self._cursor %= len(self._keys)
        logger.info("API key removed", extra={"key": mask(key), "api_keys_count": len(self._keys)})
        return True
