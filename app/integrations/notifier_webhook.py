from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from app.errors import TransientIOError


class WebhookNotifier:
    """Delivers guest and admin messages by POSTing JSON to a mail/SMS relay."""

    def __init__(self, url: str, session: Optional[Any] = None, timeout: float = 5) -> None:
        self.url = url
        self.session = session or requests
        self.timeout = timeout

    def send(self, contact_address: str, message: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                self.url,
                headers={"content-type": "application/json; charset=utf-8"},
                json={"to": contact_address, "message": message},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransientIOError("notifier", str(exc)) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        return {"ok": True, "to": contact_address, "message_id": body.get("message_id")}

    def ping(self) -> bool:
        try:
            response = self.session.head(self.url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransientIOError("notifier", str(exc)) from exc
        return response.status_code < 500
