import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from app.errors import CredentialConflictError
from app.schemas.reservation import Reservation
from app.services.access_validator import AccessValidator
from app.services.task_registry import ScheduledTaskRegistry


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class _FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.cancelled = False

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function()


T0 = datetime(2026, 1, 2, 10, 0, tzinfo=timezone.utc)


def _reservation(rid="r-1", start=T0 + timedelta(minutes=3), minutes=60) -> Reservation:
    return Reservation(
        id=rid,
        service_name="Studio A",
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        contact_address="guest@example.com",
    )


class TestAccessValidator(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock(T0)
        self.timers = []

        def factory(interval, function):
            timer = _FakeTimer(interval, function)
            self.timers.append(timer)
            return timer

        self.on_removed = Mock()
        self.validator = AccessValidator(
            lead_minutes=5,
            trail_minutes=30,
            sweep_grace_minutes=60,
            registry=ScheduledTaskRegistry(clock=self.clock, timer_factory=factory),
            clock=self.clock,
            on_removed=self.on_removed,
        )

    def test_issue_computes_validity_window(self):
        reservation = _reservation()
        credential = self.validator.issue(reservation, credential_id="7342")

        self.assertEqual(credential.kind, "code")
        self.assertEqual(credential.valid_from, reservation.start_time - timedelta(minutes=5))
        self.assertEqual(credential.valid_until, reservation.end_time + timedelta(minutes=30))
        self.assertFalse(credential.used)
        self.assertEqual(credential.issued_at, T0)

    def test_code_grants_once_then_already_used(self):
        reservation = _reservation()
        self.validator.issue(reservation, credential_id="7342")
        self.clock.now = reservation.start_time

        first = self.validator.present("7342")
        second = self.validator.present("7342")

        self.assertTrue(first.granted)
        self.assertEqual(first.reason, "GRANTED")
        self.assertEqual(first.reservation["id"], "r-1")
        self.assertFalse(second.granted)
        self.assertEqual(second.reason, "ALREADY_USED")
        self.assertEqual(second.message, "Token already used")

    def test_used_is_terminal_even_after_window_closes(self):
        reservation = _reservation()
        self.validator.issue(reservation, credential_id="7342")
        self.clock.now = reservation.start_time
        self.validator.present("7342")

        self.clock.now = reservation.end_time + timedelta(minutes=45)
        decision = self.validator.present("7342")

        self.assertEqual(decision.reason, "ALREADY_USED")

    def test_unknown_code_is_invalid(self):
        decision = self.validator.present("9999")

        self.assertFalse(decision.granted)
        self.assertEqual(decision.reason, "NOT_FOUND")
        self.assertEqual(decision.message, "Invalid code")

    def test_too_early_keeps_credential_unused(self):
        reservation = _reservation(start=T0 + timedelta(minutes=30))
        self.validator.issue(reservation, credential_id="7342")

        decision = self.validator.present("7342")

        self.assertEqual(decision.reason, "TOO_EARLY")
        self.assertEqual(decision.message, "Too early - access starts at 10:25")
        self.assertFalse(self.validator.get("7342").used)

    def test_too_early_message_uses_display_timezone(self):
        validator = AccessValidator(lead_minutes=5, display_tz="Asia/Seoul", clock=self.clock)
        validator.issue(_reservation(start=T0 + timedelta(minutes=30)), credential_id="7342")

        decision = validator.present("7342")

        self.assertEqual(decision.message, "Too early - access starts at 19:25")
        validator.close()

    def test_expired_keeps_credential_unused(self):
        reservation = _reservation()
        self.validator.issue(reservation, credential_id="7342")
        self.clock.now = reservation.end_time + timedelta(minutes=31)

        decision = self.validator.present("7342")

        self.assertEqual(decision.reason, "EXPIRED")
        self.assertEqual(decision.message, "Token expired")
        self.assertFalse(self.validator.get("7342").used)

    def test_window_bounds_are_inclusive(self):
        reservation = _reservation()
        self.validator.issue(reservation, credential_id="7342")
        self.validator.issue(_reservation(rid="r-2"), credential_id="8150")

        self.clock.now = reservation.start_time - timedelta(minutes=5)
        self.assertTrue(self.validator.present("7342").granted)

        self.clock.now = reservation.end_time + timedelta(minutes=30)
        self.assertTrue(self.validator.present("8150").granted)

    def test_token_issue_and_unknown_token(self):
        credential = self.validator.issue(_reservation())

        self.assertEqual(credential.kind, "token")
        self.assertEqual(len(credential.credential_id), 64)
        self.assertEqual(self.validator.present("ab" * 32).message, "Token not found")

    def test_reissuing_live_id_conflicts(self):
        self.validator.issue(_reservation(), credential_id="7342")

        with self.assertRaises(CredentialConflictError):
            self.validator.issue(_reservation(rid="r-2"), credential_id="7342")

    def test_concurrent_presentments_grant_exactly_once(self):
        reservation = _reservation()
        self.validator.issue(reservation, credential_id="7342")
        self.clock.now = reservation.start_time

        barrier = threading.Barrier(16)
        results = []

        def worker():
            barrier.wait()
            results.append(self.validator.present("7342").granted)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count(True), 1)
        self.assertEqual(results.count(False), 15)

    def test_expiry_sweep_timer_removes_entry(self):
        reservation = _reservation()
        self.validator.issue(reservation, credential_id="7342")

        self.assertEqual(len(self.timers), 1)
        expected_delay = (reservation.end_time + timedelta(minutes=90) - T0).total_seconds()
        self.assertEqual(self.timers[0].interval, expected_delay)

        self.timers[0].fire()

        self.assertIsNone(self.validator.get("7342"))
        self.on_removed.assert_called_once()
        self.assertEqual(self.on_removed.call_args[0][0].credential_id, "7342")

    def test_sweep_expired_only_drops_entries_past_grace(self):
        old = _reservation(rid="r-old")
        fresh = _reservation(rid="r-new", start=T0 + timedelta(hours=3))
        self.validator.issue(old, credential_id="7342")
        self.validator.issue(fresh, credential_id="8150")

        self.clock.now = old.end_time + timedelta(minutes=91)
        swept = self.validator.sweep_expired()

        self.assertEqual([c.credential_id for c in swept], ["7342"])
        self.assertIsNotNone(self.validator.get("8150"))
        self.assertTrue(self.timers[0].cancelled)

    def test_list_active_masks_credentials(self):
        self.validator.issue(_reservation(), credential_id="7342")
        token = self.validator.issue(_reservation(rid="r-2")).credential_id

        rows = self.validator.list_active()

        self.assertEqual({r["credential"] for r in rows}, {"73**", token[:8] + "..."})

    def test_revoke_removes_credential_and_reports_removal(self):
        self.validator.issue(_reservation(), credential_id="7342")

        self.assertTrue(self.validator.revoke("7342"))
        self.assertFalse(self.validator.revoke("7342"))

        self.assertEqual(self.validator.present("7342").reason, "NOT_FOUND")
        self.assertTrue(self.timers[0].cancelled)
        self.on_removed.assert_called_once()
        self.assertEqual(self.on_removed.call_args[0][0].credential_id, "7342")

    def test_close_cancels_pending_sweeps(self):
        self.validator.issue(_reservation(), credential_id="7342")

        self.assertEqual(self.validator.close(), ["7342"])
        self.assertTrue(self.timers[0].cancelled)
        self.assertEqual(self.validator.stats()["pending_sweeps"], 0)


if __name__ == "__main__":
    unittest.main()
