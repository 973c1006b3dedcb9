from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from app.errors import CredentialConflictError
from app.schemas.access import AccessCredential, AccessDecision
from app.schemas.health import HealthReport, ServiceHealth
from app.schemas.reservation import Reservation, ReservationEvent
from app.services.access_validator import AccessValidator, mask_credential
from app.services.door_codes import DoorCodeGenerator
from app.services.kv_store import Clock, InMemoryKeyValueStore, utc_now
from app.services.task_registry import RecurringJob, ScheduledTaskRegistry, TimerFactory

logger = logging.getLogger(__name__)

NOT_SEEN = "NOT_SEEN"
PROCESSING = "PROCESSING"
LOCKED = "LOCKED"
ARCHIVED = "ARCHIVED"

_ISSUE_ATTEMPTS = 3
_PAST_START_GRACE = timedelta(minutes=1)
_PUSH_WAIT_SEC = 5.0
_UNLOCK_FAILED_MESSAGE = "Access granted but the door could not be unlocked. Please contact support."
DEFAULT_INSTRUCTIONS = (
    "Enter your code on the door keypad. It works once, between {valid_from} and {valid_until}."
)


def dedup_key(reservation: Reservation) -> str:
    return f"{reservation.id}:{int(reservation.start_time.timestamp())}"


class AccessOrchestrator:
    """Polls the booking source and drives credential issue and door re-lock.

    Collaborators are duck-typed:

    - booking_source: ``starting_soon(minutes)``, ``annotate(id, text)``, ``ping()``
    - lock: ``unlock()``, ``lock()``, ``status()``
    - notifier: ``send(contact, message)``, ``ping()``
    """

    def __init__(
        self,
        *,
        booking_source,
        lock,
        notifier,
        generator: DoorCodeGenerator | None = None,
        validator: AccessValidator | None = None,
        dedup_store: InMemoryKeyValueStore | None = None,
        relock_registry: ScheduledTaskRegistry | None = None,
        clock: Clock | None = None,
        lookahead_minutes: float = 5,
        relock_buffer_minutes: float = 5,
        poll_interval_sec: float = 60,
        cleanup_interval_sec: float = 3600,
        health_check_interval_sec: float = 300,
        retention_hours: float = 24,
        admin_contact: str | None = None,
        instructions: str = DEFAULT_INSTRUCTIONS,
    ) -> None:
        self.booking_source = booking_source
        self.lock = lock
        self.notifier = notifier
        self._clock = clock or utc_now
        self.generator = generator or DoorCodeGenerator(clock=self._clock)
        self.validator = validator or AccessValidator(clock=self._clock, on_removed=self._release_code)
        self._dedup = dedup_store if dedup_store is not None else InMemoryKeyValueStore(clock=self._clock)
        self.relocks = relock_registry or ScheduledTaskRegistry(name="relock", clock=self._clock)
        self.lookahead_minutes = lookahead_minutes
        self.relock_buffer = timedelta(minutes=relock_buffer_minutes)
        self.retention_sec = retention_hours * 3600
        self.admin_contact = admin_contact
        self.instructions = instructions

        self._poll_guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._lifecycle: dict[str, dict] = {}
        self._credentials: dict[str, str] = {}
        self._relock_failures: dict[str, dict] = {}
        self._unsecured: dict[str, dict] = {}
        self._jobs = [
            RecurringJob("poll", poll_interval_sec, self.poll_once),
            RecurringJob("cleanup", cleanup_interval_sec, self.cleanup_once),
            RecurringJob("health-check", health_check_interval_sec, self.health_check_once),
        ]
        self.running = False
        self.started_at: datetime | None = None
        self.last_poll_at: datetime | None = None
        self.last_poll_error: str | None = None
        self.last_health_check: HealthReport | None = None
        self._counters = {
            "polls": 0,
            "reservations_seen": 0,
            "processed": 0,
            "deduplicated": 0,
            "skipped_cancelled": 0,
            "failed": 0,
            "notify_failures": 0,
            "overlapping_ticks_skipped": 0,
            "relocks_fired": 0,
            "relock_failures": 0,
            "unlock_failures": 0,
        }

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        booking_source,
        lock,
        notifier,
        clock: Clock | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> "AccessOrchestrator":
        clock = clock or utc_now
        generator = DoorCodeGenerator(
            code_length=settings.DOOR_CODE_LENGTH,
            blacklist=settings.WEAK_CODE_BLACKLIST,
            history_cap=settings.CODE_HISTORY_CAP,
            retention_hours=settings.HISTORY_RETENTION_HOURS,
            clock=clock,
        )
        validator = AccessValidator(
            lead_minutes=settings.ACCESS_LEAD_MINUTES,
            trail_minutes=settings.ACCESS_TRAIL_MINUTES,
            display_tz=settings.DISPLAY_TIMEZONE,
            registry=ScheduledTaskRegistry(name="credential-sweep", clock=clock, timer_factory=timer_factory),
            clock=clock,
            on_removed=lambda credential: generator.release(credential.credential_id),
        )
        return cls(
            booking_source=booking_source,
            lock=lock,
            notifier=notifier,
            generator=generator,
            validator=validator,
            relock_registry=ScheduledTaskRegistry(name="relock", clock=clock, timer_factory=timer_factory),
            clock=clock,
            lookahead_minutes=settings.LOOKAHEAD_MINUTES,
            relock_buffer_minutes=settings.RELOCK_BUFFER_MINUTES,
            poll_interval_sec=settings.POLL_INTERVAL_SEC,
            cleanup_interval_sec=settings.CLEANUP_INTERVAL_SEC,
            health_check_interval_sec=settings.HEALTH_CHECK_INTERVAL_SEC,
            retention_hours=settings.HISTORY_RETENTION_HOURS,
            admin_contact=settings.ADMIN_CONTACT,
        )

    def _inc(self, key: str, value: int = 1) -> None:
        self._counters[key] = self._counters.get(key, 0) + value

    def _set_state(self, reservation_id: str, state: str) -> None:
        with self._state_lock:
            self._lifecycle[reservation_id] = {"state": state, "updated_at": self._clock()}

    def _release_code(self, credential: AccessCredential) -> None:
        if credential.kind == "code":
            self.generator.release(credential.credential_id)

    def _fmt_local(self, ts: datetime) -> str:
        return ts.astimezone(self.validator.display_tz).strftime("%Y-%m-%d %H:%M")

    def _notify_admin(self, exc: Exception, context: str, **extra) -> None:
        if not self.admin_contact:
            return
        message = {
            "subject": f"Door access error - {context}",
            "error": str(exc),
            "context": {"context": context, **extra},
            "timestamp": self._clock().isoformat(),
        }
        try:
            self.notifier.send(self.admin_contact, message)
        except Exception as notify_exc:
            logger.error(
                "[ADMIN][notify_failed] context=%s original_error=%s error=%s",
                context,
                exc,
                notify_exc,
            )

    # polling

    def poll_once(self) -> dict:
        if not self._poll_guard.acquire(blocking=False):
            self._inc("overlapping_ticks_skipped")
            logger.warning("[POLL][tick_skipped] reason=cycle_in_progress")
            return {"skipped": True, "reason": "POLL_IN_PROGRESS"}
        try:
            return self._poll_cycle()
        finally:
            self._poll_guard.release()

    def _poll_cycle(self) -> dict:
        self._inc("polls")
        self.last_poll_at = self._clock()
        result = {
            "skipped": False,
            "seen": 0,
            "processed": 0,
            "deduplicated": 0,
            "skipped_cancelled": 0,
            "failed": 0,
            "error": None,
        }

        try:
            reservations = self.booking_source.starting_soon(self.lookahead_minutes)
        except Exception as exc:
            self.last_poll_error = str(exc)
            result["error"] = str(exc)
            logger.error("[POLL][source_error] error=%s", exc)
            self._notify_admin(exc, "Polling booking source")
            return result

        self.last_poll_error = None
        for reservation in reservations:
            result["seen"] += 1
            outcome = self._handle(reservation)
            result[outcome] += 1

        self._inc("reservations_seen", result["seen"])
        logger.info(
            "[POLL][cycle_done] seen=%s processed=%s deduplicated=%s skipped_cancelled=%s failed=%s",
            result["seen"],
            result["processed"],
            result["deduplicated"],
            result["skipped_cancelled"],
            result["failed"],
        )
        return result

    def _handle(self, reservation: Reservation) -> str:
        if reservation.status == "cancelled":
            self._inc("skipped_cancelled")
            logger.info("[POLL][skip_cancelled] reservation_id=%s", reservation.id)
            return "skipped_cancelled"

        if dedup_key(reservation) in self._dedup:
            self._inc("deduplicated")
            return "deduplicated"

        try:
            self.process_reservation(reservation)
        except Exception as exc:
            self._inc("failed")
            logger.exception("[POLL][reservation_error] reservation_id=%s error=%s", reservation.id, exc)
            self._notify_admin(
                exc,
                "Handling reservation",
                reservation_id=reservation.id,
                contact_address=reservation.contact_address,
                start_time=reservation.start_time.isoformat(),
            )
            return "failed"
        return "processed"

    def process_reservation(self, reservation: Reservation) -> AccessCredential:
        """Issue, deliver and arm the re-lock for one reservation occurrence.

        The dedup key is claimed first so a failure half way through is not
        retried on the next cycle (no credential is ever issued twice).
        """
        self._dedup.set(
            dedup_key(reservation),
            {"reservation_id": reservation.id, "claimed_at": self._clock().isoformat()},
            ttl_sec=self.retention_sec,
        )

        self._revoke_previous(reservation.id)
        credential = self._issue_credential(reservation)
        with self._state_lock:
            self._credentials[reservation.id] = credential.credential_id
        self._deliver(reservation, credential)
        self._annotate(reservation, credential)
        self._arm_relock(reservation)
        self._set_state(reservation.id, PROCESSING)
        self._inc("processed")
        logger.info(
            "[POLL][reservation_processed] reservation_id=%s credential=%s relock_at=%s",
            reservation.id,
            mask_credential(credential.credential_id),
            (reservation.end_time + self.relock_buffer).isoformat(),
        )
        return credential

    def _revoke_previous(self, reservation_id: str) -> None:
        # a rescheduled reservation keeps its id; only the newest occurrence holds a credential
        with self._state_lock:
            previous = self._credentials.pop(reservation_id, None)
        if previous is not None and self.validator.revoke(previous):
            logger.warning(
                "[POLL][credential_superseded] reservation_id=%s credential=%s",
                reservation_id,
                mask_credential(previous),
            )

    def _issue_credential(self, reservation: Reservation) -> AccessCredential:
        for attempt in range(1, _ISSUE_ATTEMPTS + 1):
            code = self.generator.generate(reservation.id)
            try:
                return self.validator.issue(reservation, credential_id=code)
            except CredentialConflictError:
                logger.warning(
                    "[POLL][code_conflict] reservation_id=%s attempt=%s",
                    reservation.id,
                    attempt,
                )
        # codes kept colliding with live ones; fall back to an opaque token
        return self.validator.issue(reservation)

    def _deliver(self, reservation: Reservation, credential: AccessCredential) -> None:
        message = {
            "credential": credential.credential_id,
            "reservation": reservation.summary(),
            "instructions": self.instructions.format(
                valid_from=self._fmt_local(credential.valid_from),
                valid_until=self._fmt_local(credential.valid_until),
            ),
        }
        try:
            self.notifier.send(reservation.contact_address, message)
        except Exception as exc:
            # the credential stays valid; staff can resend it from the admin view
            self._inc("notify_failures")
            logger.error(
                "[NOTIFY][send_failed] reservation_id=%s contact=%s error=%s",
                reservation.id,
                reservation.contact_address,
                exc,
            )
            self._notify_admin(
                exc,
                "Sending access credential",
                reservation_id=reservation.id,
                contact_address=reservation.contact_address,
            )

    def _annotate(self, reservation: Reservation, credential: AccessCredential) -> None:
        text = (
            f"Door code {mask_credential(credential.credential_id)} issued, "
            f"valid {self._fmt_local(credential.valid_from)} - {self._fmt_local(credential.valid_until)}"
        )
        try:
            self.booking_source.annotate(reservation.id, text)
        except Exception as exc:
            logger.warning("[POLL][annotate_failed] reservation_id=%s error=%s", reservation.id, exc)

    # re-lock timers

    def _arm_relock(self, reservation: Reservation) -> None:
        fire_at = reservation.end_time + self.relock_buffer
        self._schedule_relock(reservation.id, fire_at)

    def _schedule_relock(self, reservation_id: str, fire_at: datetime) -> None:
        if reservation_id in self.relocks:
            logger.warning("[RELOCK][replaced] reservation_id=%s", reservation_id)
        self.relocks.schedule(reservation_id, fire_at, lambda: self._relock(reservation_id, fire_at))

    def _relock(self, reservation_id: str, fire_at: datetime) -> None:
        try:
            self.lock.lock()
        except Exception as exc:
            # not retried: the failure stays visible in the health report
            self._inc("relock_failures")
            self._relock_failures[reservation_id] = {
                "reservation_id": reservation_id,
                "scheduled_for": fire_at.isoformat(),
                "failed_at": self._clock().isoformat(),
                "error": str(exc),
            }
            logger.error("[RELOCK][failed] reservation_id=%s error=%s", reservation_id, exc)
            self._notify_admin(
                exc,
                "Auto-lock execution",
                reservation_id=reservation_id,
                scheduled_lock_time=fire_at.isoformat(),
            )
            return

        self._inc("relocks_fired")
        self._relock_failures.pop(reservation_id, None)
        self._set_state(reservation_id, LOCKED)
        logger.info("[RELOCK][done] reservation_id=%s", reservation_id)

    # presentment and push events

    def present(self, credential_id: str) -> AccessDecision:
        decision = self.validator.present(credential_id)
        if not decision.granted:
            return decision

        try:
            self.lock.unlock()
        except Exception as exc:
            self._inc("unlock_failures")
            logger.error("[ACCESS][unlock_failed] credential=%s error=%s", mask_credential(credential_id), exc)
            self._notify_admin(exc, "Unlocking door", reservation=decision.reservation)
            decision.door_unlocked = False
            decision.message = _UNLOCK_FAILED_MESSAGE
            return decision

        decision.door_unlocked = True
        return decision

    def ingest_event(self, event: ReservationEvent) -> dict:
        reservation = event.reservation
        if event.type.endswith("cancelled") or event.type.endswith("canceled") or reservation.status == "cancelled":
            # an armed re-lock still fires for cancelled reservations
            logger.info("[PUSH][cancelled] reservation_id=%s", reservation.id)
            return {"reservation_id": reservation.id, "action": "ignored_cancelled"}

        now = self._clock()
        if reservation.start_time < now - _PAST_START_GRACE:
            logger.info(
                "[PUSH][ignored_past] reservation_id=%s start_time=%s",
                reservation.id,
                reservation.start_time.isoformat(),
            )
            return {"reservation_id": reservation.id, "action": "ignored_past"}

        starts_in = reservation.start_time - now
        if starts_in > timedelta(minutes=self.lookahead_minutes):
            return {"reservation_id": reservation.id, "action": "deferred_to_poll"}

        if not self._poll_guard.acquire(timeout=_PUSH_WAIT_SEC):
            return {"reservation_id": reservation.id, "action": "deferred_to_poll"}
        try:
            outcome = self._handle(reservation)
        finally:
            self._poll_guard.release()
        return {"reservation_id": reservation.id, "action": outcome}

    # housekeeping

    def cleanup_once(self) -> dict:
        expired_keys = self._dedup.purge_expired()
        now = self._clock()
        with self._state_lock:
            for key in expired_keys:
                reservation_id = key.rsplit(":", 1)[0]
                if reservation_id in self._lifecycle:
                    self._lifecycle[reservation_id] = {"state": ARCHIVED, "updated_at": now}
            cutoff = now - timedelta(seconds=self.retention_sec)
            stale = [
                rid
                for rid, row in self._lifecycle.items()
                if row["state"] == ARCHIVED and row["updated_at"] < cutoff
            ]
            for rid in stale:
                del self._lifecycle[rid]

        for rid, row in list(self._relock_failures.items()):
            if datetime.fromisoformat(row["failed_at"]) < cutoff:
                self._relock_failures.pop(rid, None)

        history_pruned = self.generator.cleanup()
        swept = self.validator.sweep_expired()
        with self._state_lock:
            for credential in swept:
                if self._credentials.get(credential.reservation_id) == credential.credential_id:
                    del self._credentials[credential.reservation_id]
        result = {
            "dedup_pruned": len(expired_keys),
            "history_pruned": history_pruned,
            "credentials_swept": len(swept),
            "archived_dropped": len(stale),
            "active_relock_timers": len(self.relocks),
        }
        logger.info(
            "[CLEANUP][done] dedup_pruned=%s history_pruned=%s credentials_swept=%s active_relock_timers=%s",
            result["dedup_pruned"],
            result["history_pruned"],
            result["credentials_swept"],
            result["active_relock_timers"],
        )
        return result

    @staticmethod
    def _probe(collaborator) -> ServiceHealth:
        probe = getattr(collaborator, "ping", None)
        if probe is None:
            return ServiceHealth(status="unknown")
        try:
            ok = bool(probe())
        except Exception as exc:
            return ServiceHealth(status="error", error=str(exc))
        return ServiceHealth(status="healthy" if ok else "unhealthy")

    def health_check_once(self) -> HealthReport:
        services: dict[str, ServiceHealth] = {}
        try:
            door = self.lock.status()
            services["lock"] = ServiceHealth(
                status="healthy" if door.get("available") else "unhealthy",
                details=dict(door),
            )
        except Exception as exc:
            services["lock"] = ServiceHealth(status="error", error=str(exc))

        services["notifier"] = self._probe(self.notifier)
        services["booking_source"] = self._probe(self.booking_source)

        relock_failures = list(self._relock_failures.values())
        unsecured = list(self._unsecured.values())
        healthy = all(s.status in ("healthy", "unknown") for s in services.values())
        overall = "healthy" if healthy and not relock_failures and not unsecured else "degraded"

        report = HealthReport(
            timestamp=self._clock().isoformat(),
            running=self.running,
            overall=overall,
            services=services,
            active_relock_timers=len(self.relocks),
            relock_failures=relock_failures,
            unsecured_reservations=unsecured,
        )
        self.last_health_check = report
        log = logger.info if overall == "healthy" else logger.warning
        log(
            "[HEALTH][done] overall=%s lock=%s notifier=%s booking_source=%s relock_failures=%s",
            overall,
            services["lock"].status,
            services["notifier"].status,
            services["booking_source"].status,
            len(relock_failures),
        )
        return report

    # lifecycle

    def start(self) -> None:
        if self.running:
            logger.warning("[ORCH][start_ignored] reason=already_running")
            return

        for reservation_id, row in list(self._unsecured.items()):
            fire_at = datetime.fromisoformat(row["scheduled_for"])
            logger.warning(
                "[RELOCK][rearmed] reservation_id=%s scheduled_for=%s",
                reservation_id,
                row["scheduled_for"],
            )
            self._schedule_relock(reservation_id, fire_at)
        self._unsecured.clear()

        for job in self._jobs:
            job.start()
        self.running = True
        self.started_at = self._clock()
        logger.info("[ORCH][started] jobs=%s", ",".join(job.name for job in self._jobs))

    def stop(self) -> list[str]:
        for job in self._jobs:
            job.stop()

        cancelled = self.relocks.cancel_all()
        for task in cancelled:
            self._unsecured[task.key] = {
                "reservation_id": task.key,
                "scheduled_for": task.fire_at.isoformat(),
                "cancelled_at": self._clock().isoformat(),
            }
            logger.warning(
                "[RELOCK][unsecured] reservation_id=%s scheduled_for=%s door_not_guaranteed_locked=1",
                task.key,
                task.fire_at.isoformat(),
            )
        self.validator.close()

        was_running = self.running
        self.running = False
        logger.info("[ORCH][stopped] was_running=%s cancelled_relocks=%s", was_running, len(cancelled))
        return [task.key for task in cancelled]

    # observability

    def reservation_state(self, reservation_id: str) -> str:
        with self._state_lock:
            row = self._lifecycle.get(reservation_id)
        return row["state"] if row else NOT_SEEN

    def list_active_credentials(self) -> list[dict]:
        return self.validator.list_active()

    def relock_timers(self) -> list[dict]:
        return [
            {"reservation_id": task.key, "fire_at": task.fire_at.isoformat()}
            for task in self.relocks.pending()
        ]

    def stats(self) -> dict:
        return {
            **self._counters,
            "dedup_keys": len(self._dedup),
            "active_relock_timers": len(self.relocks),
            "generator": self.generator.stats(),
            "validator": self.validator.stats(),
        }

    def status(self) -> dict:
        return {
            "running": self.running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "last_poll_error": self.last_poll_error,
            "relock_timers": self.relock_timers(),
            "relock_failures": list(self._relock_failures.values()),
            "unsecured_reservations": list(self._unsecured.values()),
            "jobs": {
                job.name: {"running": job.running, "runs": job.runs, "errors": job.errors}
                for job in self._jobs
            },
            "last_health_check": self.last_health_check.model_dump() if self.last_health_check else None,
        }
