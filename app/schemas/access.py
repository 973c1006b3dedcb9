from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from app.schemas.reservation import Reservation


class AccessCredential(BaseModel):
    credential_id: str
    kind: Literal["code", "token"]
    reservation_id: str
    contact_address: str
    issued_at: datetime
    valid_from: datetime
    valid_until: datetime
    used: bool = False
    used_at: datetime | None = None
    reservation: Reservation


class AccessDecision(BaseModel):
    granted: bool
    reason: str
    message: str
    reservation: dict | None = None
    door_unlocked: bool | None = None


class PresentRequest(BaseModel):
    credential: str
