from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from app.errors import TransientIOError


class HttpLockActuator:
    """Smart-lock bridge exposing lock/unlock/status over HTTP."""

    def __init__(self, base_url: str, session: Optional[Any] = None, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests
        self.timeout = timeout

    def _command(self, action: str) -> Dict[str, Any]:
        try:
            response = self.session.post(f"{self.base_url}/lock/{action}", timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransientIOError("lock", f"{action} failed: {exc}") from exc
        return {"ok": True, "action": action}

    def unlock(self) -> Dict[str, Any]:
        return self._command("unlock")

    def lock(self) -> Dict[str, Any]:
        return self._command("lock")

    def status(self) -> Dict[str, Any]:
        try:
            response = self.session.get(f"{self.base_url}/lock/status", timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise TransientIOError("lock", f"status failed: {exc}") from exc

        return {
            "locked": bool(payload.get("locked", payload.get("isLocked", False))),
            "battery": int(payload.get("battery", payload.get("batteryLevel", 0)) or 0),
            "available": bool(payload.get("available", True)),
        }
