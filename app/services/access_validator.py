from __future__ import annotations

import logging
import secrets
import threading
from datetime import timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from app.errors import (
    CredentialAlreadyUsedError,
    CredentialConflictError,
    CredentialExpiredError,
    CredentialNotFoundError,
    CredentialTooEarlyError,
    CredentialValidationError,
)
from app.schemas.access import AccessCredential, AccessDecision
from app.schemas.reservation import Reservation
from app.services.door_codes import mask_code
from app.services.kv_store import Clock, InMemoryKeyValueStore, utc_now
from app.services.task_registry import ScheduledTaskRegistry

logger = logging.getLogger(__name__)


def mask_credential(credential_id: str) -> str:
    if credential_id.isdigit():
        return mask_code(credential_id)
    return credential_id[:8] + "..."


class AccessValidator:
    """Single-use, time-boxed credentials.

    A credential is either Issued or Used. Expiry is never stored: every
    ``present`` re-derives it from the validity window, and expired entries
    are swept later (``sweep_grace`` after ``valid_until``).
    """

    def __init__(
        self,
        *,
        lead_minutes: float = 15,
        trail_minutes: float = 30,
        sweep_grace_minutes: float = 60,
        display_tz: str = "UTC",
        store: InMemoryKeyValueStore | None = None,
        registry: ScheduledTaskRegistry | None = None,
        clock: Clock | None = None,
        on_removed: Callable[[AccessCredential], None] | None = None,
    ) -> None:
        self.lead = timedelta(minutes=lead_minutes)
        self.trail = timedelta(minutes=trail_minutes)
        self.sweep_grace = timedelta(minutes=sweep_grace_minutes)
        self.display_tz = ZoneInfo(display_tz)
        self._clock = clock or utc_now
        self._store = store if store is not None else InMemoryKeyValueStore(clock=self._clock)
        self._registry = registry or ScheduledTaskRegistry(name="credential-sweep", clock=self._clock)
        self._on_removed = on_removed
        self._lock = threading.Lock()
        self._counters = {"issued": 0, "granted": 0, "denied": 0, "swept": 0}
        self._denials: dict[str, int] = {}

    def issue(self, reservation: Reservation, credential_id: str | None = None) -> AccessCredential:
        kind = "code" if credential_id else "token"
        cid = credential_id or secrets.token_hex(32)
        now = self._clock()
        credential = AccessCredential(
            credential_id=cid,
            kind=kind,
            reservation_id=reservation.id,
            contact_address=reservation.contact_address,
            issued_at=now,
            valid_from=reservation.start_time - self.lead,
            valid_until=reservation.end_time + self.trail,
            reservation=reservation,
        )
        with self._lock:
            if self._store.get(cid) is not None:
                raise CredentialConflictError(f"credential {mask_credential(cid)} is already live")
            self._store.set(cid, credential)
            self._counters["issued"] += 1

        self._registry.schedule(
            cid,
            credential.valid_until + self.sweep_grace,
            lambda: self._sweep_one(cid),
        )
        logger.info(
            "[ACCESS][issued] credential=%s kind=%s reservation_id=%s valid_from=%s valid_until=%s",
            mask_credential(cid),
            kind,
            reservation.id,
            credential.valid_from.isoformat(),
            credential.valid_until.isoformat(),
        )
        return credential.model_copy(deep=True)

    def _check(self, credential: AccessCredential | None, credential_id: str) -> AccessCredential:
        if credential is None:
            if credential_id.isdigit():
                raise CredentialNotFoundError("Invalid code")
            raise CredentialNotFoundError("Token not found")
        if credential.used:
            raise CredentialAlreadyUsedError("Token already used")

        now = self._clock()
        if now < credential.valid_from:
            starts = credential.valid_from.astimezone(self.display_tz).strftime("%H:%M")
            raise CredentialTooEarlyError(f"Too early - access starts at {starts}")
        if now > credential.valid_until:
            raise CredentialExpiredError("Token expired")
        return credential

    def present(self, credential_id: str) -> AccessDecision:
        with self._lock:
            credential = self._store.get(credential_id)
            try:
                self._check(credential, credential_id)
            except CredentialValidationError as exc:
                self._counters["denied"] += 1
                self._denials[exc.reason] = self._denials.get(exc.reason, 0) + 1
                logger.warning(
                    "[ACCESS][denied] credential=%s reason=%s",
                    mask_credential(credential_id),
                    exc.reason,
                )
                return AccessDecision(granted=False, reason=exc.reason, message=exc.message)

            credential.used = True
            credential.used_at = self._clock()
            self._store.set(credential_id, credential)
            self._counters["granted"] += 1

        logger.info(
            "[ACCESS][granted] credential=%s reservation_id=%s",
            mask_credential(credential_id),
            credential.reservation_id,
        )
        return AccessDecision(
            granted=True,
            reason="GRANTED",
            message="Access granted",
            reservation=credential.reservation.summary(),
        )

    def get(self, credential_id: str) -> AccessCredential | None:
        with self._lock:
            credential = self._store.get(credential_id)
            return credential.model_copy(deep=True) if credential is not None else None

    def revoke(self, credential_id: str) -> bool:
        with self._lock:
            credential = self._store.get(credential_id)
            if credential is not None:
                self._store.delete(credential_id)
        self._registry.cancel(credential_id)
        if credential is None:
            return False
        logger.info("[ACCESS][revoked] credential=%s", mask_credential(credential_id))
        if self._on_removed is not None:
            self._on_removed(credential)
        return True

    def _sweep_one(self, credential_id: str) -> None:
        with self._lock:
            credential = self._store.get(credential_id)
            if credential is None:
                return
            self._store.delete(credential_id)
            self._counters["swept"] += 1
        logger.info("[ACCESS][swept] credential=%s", mask_credential(credential_id))
        if self._on_removed is not None:
            self._on_removed(credential)

    def sweep_expired(self) -> list[AccessCredential]:
        cutoff = self._clock() - self.sweep_grace
        with self._lock:
            expired = [c for _, c in self._store.items() if c.valid_until < cutoff]
            for credential in expired:
                self._store.delete(credential.credential_id)
            self._counters["swept"] += len(expired)
        for credential in expired:
            self._registry.cancel(credential.credential_id)
            if self._on_removed is not None:
                self._on_removed(credential)
        return expired

    def list_active(self) -> list[dict]:
        with self._lock:
            rows = [c for _, c in self._store.items()]
        return [
            {
                "credential": mask_credential(c.credential_id),
                "kind": c.kind,
                "reservation_id": c.reservation_id,
                "contact_address": c.contact_address,
                "service_name": c.reservation.service_name,
                "valid_from": c.valid_from.isoformat(),
                "valid_until": c.valid_until.isoformat(),
                "issued_at": c.issued_at.isoformat(),
                "used": c.used,
                "used_at": c.used_at.isoformat() if c.used_at else None,
            }
            for c in sorted(rows, key=lambda c: c.valid_from)
        ]

    def close(self) -> list[str]:
        return [task.key for task in self._registry.cancel_all()]

    def stats(self) -> dict:
        with self._lock:
            rows = [c for _, c in self._store.items()]
            return {
                **self._counters,
                "active": len(rows),
                "used": sum(1 for c in rows if c.used),
                "denied_by_reason": dict(self._denials),
                "pending_sweeps": len(self._registry),
            }
