from pydantic import BaseModel


class ServiceHealth(BaseModel):
    status: str
    details: dict | None = None
    error: str | None = None


class HealthReport(BaseModel):
    timestamp: str
    running: bool
    overall: str
    services: dict[str, ServiceHealth]
    active_relock_timers: int
    relock_failures: list[dict]
    unsecured_reservations: list[dict]
