from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from app.errors import TransientIOError
from app.schemas.reservation import Reservation

logger = logging.getLogger(__name__)


def _parse_time(value: Any, *, field_name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        if " " in text and "T" not in text:
            text = text.replace(" ", "T", 1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"invalid datetime for {field_name}: {value!r}") from exc
    else:
        raise ValueError(f"missing value for {field_name}")

    # booking backends store naive timestamps in UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_reservation(payload: dict) -> Reservation:
    """Normalize a booking backend row (or push payload) into a Reservation."""
    if not isinstance(payload, dict):
        raise ValueError("reservation payload must be an object")

    customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}
    rid = payload.get("id") or payload.get("appointment_id") or payload.get("appointmentId")
    if rid is None:
        raise ValueError("missing reservation id")

    contact = (
        payload.get("contact")
        or payload.get("contact_address")
        or payload.get("email")
        or customer.get("email")
    )
    if not contact:
        raise ValueError("missing contact address")

    name_parts = [customer.get("firstName"), customer.get("lastName")]
    customer_name = " ".join(p for p in name_parts if p) or payload.get("customer_name")

    try:
        return Reservation(
            id=str(rid),
            service_name=str(payload.get("service") or payload.get("service_name") or ""),
            start_time=_parse_time(
                payload.get("startTime") or payload.get("start_time") or payload.get("bookingStart"),
                field_name="start_time",
            ),
            end_time=_parse_time(
                payload.get("endTime") or payload.get("end_time") or payload.get("bookingEnd"),
                field_name="end_time",
            ),
            contact_address=str(contact),
            status=str(payload.get("status") or "approved"),
            customer_name=customer_name,
        )
    except ValidationError as exc:
        raise ValueError(f"invalid reservation payload: {exc.errors()[0]['msg']}") from exc


class RestBookingSource:
    """Booking backend REST client (appointments API)."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        session: Optional[Any] = None,
        timeout: float = 5,
        clock=None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json; charset=utf-8"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_reservations(self, params: Dict[str, str]) -> List[Reservation]:
        try:
            response = self.session.get(
                f"{self.base_url}/api/v1/appointments",
                headers=self._headers(),
                params=params,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise TransientIOError("booking_source", str(exc)) from exc

        rows = payload.get("data", payload) if isinstance(payload, dict) else payload
        out: List[Reservation] = []
        for row in rows or []:
            try:
                out.append(parse_reservation(row))
            except ValueError as exc:
                logger.warning("[BOOKING][row_skip] reason=%s", exc)
        return out

    @staticmethod
    def _fmt(ts: datetime) -> str:
        return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def upcoming(self, window_minutes: float) -> List[Reservation]:
        now = self._clock()
        return self._get_reservations(
            {
                "dates": f"{self._fmt(now)},{self._fmt(now + timedelta(minutes=window_minutes))}",
                "status": "approved,pending",
            }
        )

    def starting_soon(self, lead_minutes: float) -> List[Reservation]:
        # include reservations that started within the last minute
        now = self._clock()
        return self._get_reservations(
            {
                "starts_from": self._fmt(now - timedelta(minutes=1)),
                "starts_to": self._fmt(now + timedelta(minutes=lead_minutes)),
                "status": "approved,pending",
            }
        )

    def active(self) -> List[Reservation]:
        now = self._fmt(self._clock())
        return self._get_reservations({"starts_to": now, "ends_from": now, "status": "approved,pending"})

    def annotate(self, reservation_id: str, text: str) -> None:
        try:
            response = self.session.post(
                f"{self.base_url}/api/v1/appointments/{reservation_id}/notes",
                headers=self._headers(),
                json={"note": text},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransientIOError("booking_source", str(exc)) from exc

    def ping(self) -> bool:
        try:
            response = self.session.get(
                f"{self.base_url}/api/v1/health",
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransientIOError("booking_source", str(exc)) from exc
        return True
