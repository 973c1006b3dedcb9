import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import requests

from app.errors import TransientIOError
from app.integrations.booking_rest import RestBookingSource, parse_reservation
from app.integrations.lock_http import HttpLockActuator
from app.integrations.notifier_webhook import WebhookNotifier

NOW = datetime(2026, 1, 2, 10, 0, tzinfo=timezone.utc)


def _response(payload=None, status_code=200):
    response = MagicMock()
    response.json.return_value = payload
    response.status_code = status_code
    response.raise_for_status.return_value = None
    return response


class TestParseReservation(unittest.TestCase):
    def test_accepts_backend_field_aliases(self):
        reservation = parse_reservation(
            {
                "appointmentId": 42,
                "service": "Studio A",
                "bookingStart": "2026-01-02 10:00:00",
                "bookingEnd": "2026-01-02T11:00:00Z",
                "status": "Approved",
                "customer": {"email": "guest@example.com", "firstName": "Dana", "lastName": "Lee"},
            }
        )

        self.assertEqual(reservation.id, "42")
        self.assertEqual(reservation.contact_address, "guest@example.com")
        self.assertEqual(reservation.customer_name, "Dana Lee")
        self.assertEqual(reservation.start_time, NOW)
        self.assertEqual(reservation.status, "approved")

    def test_canceled_spelling_is_normalized(self):
        reservation = parse_reservation(
            {
                "id": "r-1",
                "email": "guest@example.com",
                "start_time": "2026-01-02T10:00:00+00:00",
                "end_time": "2026-01-02T11:00:00+00:00",
                "status": "canceled",
            }
        )

        self.assertEqual(reservation.status, "cancelled")

    def test_rejects_missing_contact_and_inverted_window(self):
        base = {"id": "r-1", "start_time": "2026-01-02T11:00:00Z", "end_time": "2026-01-02T10:00:00Z"}

        with self.assertRaises(ValueError):
            parse_reservation(base)
        with self.assertRaises(ValueError):
            parse_reservation({**base, "email": "guest@example.com"})


class TestRestBookingSource(unittest.TestCase):
    def test_starting_soon_uses_appointments_contract(self):
        session = MagicMock()
        session.get.return_value = _response(
            {
                "data": [
                    {
                        "id": "r-1",
                        "email": "guest@example.com",
                        "startTime": "2026-01-02T10:03:00Z",
                        "endTime": "2026-01-02T11:03:00Z",
                    },
                    {"id": "broken"},
                ]
            }
        )
        client = RestBookingSource(
            base_url="https://booking.example.test/",
            api_key="key-1",
            session=session,
            clock=lambda: NOW,
        )

        rows = client.starting_soon(5)

        self.assertEqual([r.id for r in rows], ["r-1"])
        session.get.assert_called_once_with(
            "https://booking.example.test/api/v1/appointments",
            headers={
                "content-type": "application/json; charset=utf-8",
                "authorization": "Bearer key-1",
            },
            params={
                "starts_from": "2026-01-02T09:59:00Z",
                "starts_to": "2026-01-02T10:05:00Z",
                "status": "approved,pending",
            },
            timeout=5,
        )

    def test_request_errors_become_transient_io_errors(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        client = RestBookingSource(base_url="https://booking.example.test", session=session)

        with self.assertRaises(TransientIOError) as ctx:
            client.starting_soon(5)

        self.assertEqual(ctx.exception.service, "booking_source")

    def test_annotate_posts_note(self):
        session = MagicMock()
        session.post.return_value = _response({})
        client = RestBookingSource(base_url="https://booking.example.test", session=session)

        client.annotate("r-1", "Door code 73** issued")

        session.post.assert_called_once_with(
            "https://booking.example.test/api/v1/appointments/r-1/notes",
            headers={"content-type": "application/json; charset=utf-8"},
            json={"note": "Door code 73** issued"},
            timeout=5,
        )


class TestHttpCollaborators(unittest.TestCase):
    def test_webhook_notifier_posts_message(self):
        session = MagicMock()
        session.post.return_value = _response({"message_id": "m-1"})
        notifier = WebhookNotifier(url="https://relay.example.test/send", session=session)

        result = notifier.send("guest@example.com", {"credential": "7342"})

        self.assertEqual(result, {"ok": True, "to": "guest@example.com", "message_id": "m-1"})
        session.post.assert_called_once_with(
            "https://relay.example.test/send",
            headers={"content-type": "application/json; charset=utf-8"},
            json={"to": "guest@example.com", "message": {"credential": "7342"}},
            timeout=5,
        )

    def test_webhook_notifier_ping_reports_server_errors(self):
        session = MagicMock()
        session.head.return_value = _response(status_code=503)
        notifier = WebhookNotifier(url="https://relay.example.test/send", session=session)

        self.assertFalse(notifier.ping())

    def test_lock_actuator_commands_and_status(self):
        session = MagicMock()
        session.post.return_value = _response({})
        session.get.return_value = _response({"isLocked": True, "batteryLevel": "87"})
        lock = HttpLockActuator(base_url="https://lock.example.test/", session=session)

        self.assertEqual(lock.unlock(), {"ok": True, "action": "unlock"})
        session.post.assert_called_once_with("https://lock.example.test/lock/unlock", timeout=10)
        self.assertEqual(lock.status(), {"locked": True, "battery": 87, "available": True})

    def test_lock_failure_becomes_transient_io_error(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")
        lock = HttpLockActuator(base_url="https://lock.example.test", session=session)

        with self.assertRaises(TransientIOError) as ctx:
            lock.lock()

        self.assertEqual(ctx.exception.service, "lock")


if __name__ == "__main__":
    unittest.main()
