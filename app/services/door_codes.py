from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from collections import OrderedDict

from app.errors import GenerationDegraded
from app.services.kv_store import Clock, InMemoryKeyValueStore, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CODE_LENGTH = 4
DEFAULT_MAX_ATTEMPTS = 100
DEFAULT_HISTORY_CAP = 1000
DEFAULT_RETENTION_HOURS = 24
FALLBACK_CANDIDATES = 16


def default_blacklist(length: int = DEFAULT_CODE_LENGTH) -> set[str]:
    return {str(d) * length for d in range(10)}


def is_constant_step_run(code: str) -> bool:
    """True for digit strings whose neighbours all differ by the same step.

    Covers ascending runs (1234), descending runs (4321), repeated digits
    (7777) and wider strides (1357).
    """
    if len(code) < 2:
        return False
    step = int(code[1]) - int(code[0])
    return all(int(code[i]) - int(code[i - 1]) == step for i in range(2, len(code)))


def mask_code(code: str) -> str:
    return code[:2] + "*" * max(len(code) - 2, 0)


class DoorCodeGenerator:
    """Per-reservation numeric door codes with weak-pattern screening."""

    def __init__(
        self,
        *,
        code_length: int = DEFAULT_CODE_LENGTH,
        blacklist: set[str] | list[str] | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        history_cap: int = DEFAULT_HISTORY_CAP,
        retention_hours: float = DEFAULT_RETENTION_HOURS,
        store: InMemoryKeyValueStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        if code_length < 1:
            raise ValueError("code_length must be positive")
        self.code_length = code_length
        self.extra_blacklist = set(blacklist or ())
        self.max_attempts = max_attempts
        self.history_cap = history_cap
        self.retention_sec = retention_hours * 3600
        self._clock = clock or utc_now
        self._history = store if store is not None else InMemoryKeyValueStore(clock=self._clock)
        self._lock = threading.Lock()
        self._recent: OrderedDict[str, None] = OrderedDict()
        self.fallback_count = 0

    def _blacklist_for(self, length: int, blacklist: set[str] | list[str] | None) -> set[str]:
        if blacklist is not None:
            return set(blacklist)
        return default_blacklist(length) | self.extra_blacklist

    @staticmethod
    def _random_digits(length: int) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(length))

    def _is_acceptable(self, code: str, blacklist: set[str]) -> bool:
        if code in blacklist:
            return False
        if code in self._recent:
            return False
        return not is_constant_step_run(code)

    def _draw(self, length: int, blacklist: set[str], max_attempts: int) -> tuple[str, int]:
        for attempt in range(1, max_attempts + 1):
            code = self._random_digits(length)
            if self._is_acceptable(code, blacklist):
                return code, attempt
        raise GenerationDegraded(f"no acceptable code after {max_attempts} attempts")

    def _fallback(self, reservation_id: str, length: int, blacklist: set[str]) -> str:
        seed = f"{reservation_id}-{self._clock().timestamp()}"
        floor = 10 ** (length - 1)
        span = 9 * floor

        offset = 0
        for i in range(FALLBACK_CANDIDATES):
            digest = hashlib.sha256(f"{seed}-{i}".encode("utf-8")).hexdigest()
            value = int(digest[:16], 16) % span
            if i == 0:
                offset = value
            code = str(value + floor)
            if self._is_acceptable(code, blacklist):
                return code

        # walk the code space from the first hash offset
        for step in range(span):
            code = str((offset + step) % span + floor)
            if self._is_acceptable(code, blacklist):
                return code

        code = str(offset + floor)
        logger.error("[CODE][fallback_exhausted] reservation_id=%s length=%s", reservation_id, length)
        return code

    def _remember(self, reservation_id: str, code: str) -> None:
        self._history.set(
            reservation_id,
            {"code": code, "issued_at": self._clock(), "reservation_id": reservation_id},
            ttl_sec=self.retention_sec,
        )
        self._recent[code] = None
        self._recent.move_to_end(code)
        self._trim_recent()

    def _trim_recent(self) -> None:
        if len(self._recent) <= self.history_cap:
            return
        evict = len(self._recent) // 2
        for _ in range(evict):
            self._recent.popitem(last=False)
        logger.info("[CODE][recent_trimmed] evicted=%s kept=%s", evict, len(self._recent))

    def generate(
        self,
        reservation_id: str,
        *,
        length: int | None = None,
        blacklist: set[str] | list[str] | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Return a fresh code for ``reservation_id``. Never raises."""
        size = length or self.code_length
        banned = self._blacklist_for(size, blacklist)
        attempts = self.max_attempts if max_attempts is None else max_attempts

        with self._lock:
            try:
                code, used_attempts = self._draw(size, banned, attempts)
            except GenerationDegraded as exc:
                self.fallback_count += 1
                code = self._fallback(reservation_id, size, banned)
                logger.warning(
                    "[CODE][fallback] reservation_id=%s reason=%s code=%s",
                    reservation_id,
                    exc,
                    mask_code(code),
                )
            else:
                logger.info(
                    "[CODE][generated] reservation_id=%s length=%s attempts=%s",
                    reservation_id,
                    size,
                    used_attempts,
                )
            self._remember(reservation_id, code)
        return code

    def validate(self, code: str, reservation_id: str) -> bool:
        entry = self._history.get(reservation_id)
        return entry is not None and entry["code"] == code

    def lookup(self, reservation_id: str) -> dict | None:
        entry = self._history.get(reservation_id)
        return dict(entry) if entry is not None else None

    def release(self, code: str) -> None:
        with self._lock:
            self._recent.pop(code, None)

    def cleanup(self) -> int:
        removed = self._history.purge_expired()
        with self._lock:
            self._trim_recent()
        if removed:
            logger.info("[CODE][history_pruned] removed=%s", len(removed))
        return len(removed)

    def stats(self) -> dict:
        with self._lock:
            recent = len(self._recent)
        entries = [value for _, value in self._history.items()]
        oldest = min((e["issued_at"] for e in entries), default=None)
        return {
            "total_codes_generated": len(entries),
            "recent_codes_tracked": recent,
            "code_length": self.code_length,
            "oldest_code_at": oldest.isoformat() if oldest else None,
            "fallback_count": self.fallback_count,
        }
