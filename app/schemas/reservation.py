from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ReservationStatus = Literal["approved", "pending", "cancelled"]


class Reservation(BaseModel):
    id: str
    service_name: str = ""
    start_time: datetime
    end_time: datetime
    contact_address: str
    status: ReservationStatus = "approved"
    customer_name: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, value) -> str:
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        normalized = str(value).lower()
        if normalized == "canceled":
            return "cancelled"
        return normalized

    @model_validator(mode="after")
    def check_window(self) -> "Reservation":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    def summary(self) -> dict:
        return {
            "id": self.id,
            "service_name": self.service_name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }


class ReservationEvent(BaseModel):
    type: str
    reservation: Reservation = Field(...)
