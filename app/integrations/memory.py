from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.schemas.reservation import Reservation


class InMemoryBookingSource:
    """Booking source backed by a list; used in demo mode and tests."""

    def __init__(self, reservations: list[Reservation] | None = None, clock=None) -> None:
        self.reservations: list[Reservation] = list(reservations or [])
        self.notes: dict[str, list[str]] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def add(self, reservation: Reservation) -> None:
        self.reservations = [r for r in self.reservations if r.id != reservation.id]
        self.reservations.append(reservation)

    def _live(self) -> list[Reservation]:
        return [r for r in self.reservations if r.status != "cancelled"]

    def upcoming(self, window_minutes: float) -> list[Reservation]:
        now = self._clock()
        until = now + timedelta(minutes=window_minutes)
        return [r for r in self._live() if now <= r.start_time <= until]

    def starting_soon(self, lead_minutes: float) -> list[Reservation]:
        now = self._clock()
        since = now - timedelta(minutes=1)
        until = now + timedelta(minutes=lead_minutes)
        return [r for r in self._live() if since <= r.start_time <= until]

    def active(self) -> list[Reservation]:
        now = self._clock()
        return [r for r in self._live() if r.start_time <= now <= r.end_time]

    def annotate(self, reservation_id: str, text: str) -> None:
        self.notes.setdefault(reservation_id, []).append(text)

    def ping(self) -> bool:
        return True


class InMemoryLockActuator:
    def __init__(self, battery: int = 100) -> None:
        self.locked = True
        self.battery = battery
        self.calls: list[str] = []

    def unlock(self) -> dict:
        self.calls.append("unlock")
        self.locked = False
        return {"ok": True, "action": "unlock"}

    def lock(self) -> dict:
        self.calls.append("lock")
        self.locked = True
        return {"ok": True, "action": "lock"}

    def status(self) -> dict:
        return {"locked": self.locked, "battery": self.battery, "available": True}


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []

    def send(self, contact_address: str, message: dict) -> dict:
        self.sent.append((contact_address, message))
        return {"ok": True, "to": contact_address, "message_id": f"mem-{len(self.sent)}"}

    def ping(self) -> bool:
        return True
