from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryKeyValueStore:
    """Process-local key-value store with optional per-key TTL.

    Expired keys are dropped lazily on read and in bulk by ``purge_expired``.
    Any object exposing the same methods can stand in for it (e.g. a Redis
    backed store), the services only rely on this surface.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._rows: dict[str, Any] = {}
        self._expires_at: dict[str, float] = {}

    def _now(self) -> float:
        return self._clock().timestamp()

    def _is_expired(self, key: str, now: float) -> bool:
        deadline = self._expires_at.get(key)
        return deadline is not None and now >= deadline

    def _drop(self, key: str) -> None:
        self._rows.pop(key, None)
        self._expires_at.pop(key, None)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._rows:
                return default
            if self._is_expired(key, self._now()):
                self._drop(key)
                return default
            return self._rows[key]

    def set(self, key: str, value: Any, ttl_sec: float | None = None) -> None:
        with self._lock:
            self._rows[key] = value
            if ttl_sec is None:
                self._expires_at.pop(key, None)
            else:
                self._expires_at[key] = self._now() + float(ttl_sec)

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = key in self._rows
            self._drop(key)
            return existed

    def ttl(self, key: str) -> float | None:
        """Remaining lifetime in seconds, None for missing or non-expiring keys."""
        with self._lock:
            if self.get(key) is None:
                return None
            deadline = self._expires_at.get(key)
            if deadline is None:
                return None
            return max(deadline - self._now(), 0.0)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def keys(self) -> list[str]:
        with self._lock:
            now = self._now()
            return [k for k in self._rows if not self._is_expired(k, now)]

    def items(self) -> list[tuple[str, Any]]:
        with self._lock:
            now = self._now()
            return [(k, v) for k, v in self._rows.items() if not self._is_expired(k, now)]

    def purge_expired(self) -> list[str]:
        with self._lock:
            now = self._now()
            expired = [k for k in self._rows if self._is_expired(k, now)]
            for key in expired:
                self._drop(key)
            return expired

    def __len__(self) -> int:
        return len(self.keys())
