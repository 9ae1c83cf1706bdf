from datetime import datetime, time
from typing import Literal

from pydantic import BaseModel, Field

from therapy_scheduler.services.domain import Client, DayWindow, Location, Session, Therapist, TimeSlot

SessionTypeField = Literal["one_to_one", "supervision", "parent_consult"]


class LocationSchema(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    def to_domain(self) -> Location:
        return Location(latitude=self.latitude, longitude=self.longitude)


class DayWindowSchema(BaseModel):
    start: time
    end: time

    def to_domain(self) -> DayWindow:
        return DayWindow(start=self.start, end=self.end)


def _availability(windows: dict[str, DayWindowSchema | None]) -> dict[str, DayWindow | None]:
    return {day: window.to_domain() if window else None for day, window in windows.items()}


class TherapistSchema(BaseModel):
    id: str
    specialties: list[str] = Field(default_factory=list)
    service_types: list[str] = Field(default_factory=list)
    weekly_hours_min: float = Field(default=0.0, ge=0)
    weekly_hours_max: float = Field(default=40.0, gt=0)
    location: LocationSchema | None = None
    service_radius_km: float | None = Field(default=None, ge=0)
    current_caseload: int = Field(default=0, ge=0)
    max_caseload: int = Field(default=10, ge=0)
    availability: dict[str, DayWindowSchema | None] = Field(default_factory=dict)

    def to_domain(self) -> Therapist:
        return Therapist(
            id=self.id,
            specialties=frozenset(self.specialties),
            service_types=frozenset(self.service_types),
            weekly_hours_min=self.weekly_hours_min,
            weekly_hours_max=self.weekly_hours_max,
            location=self.location.to_domain() if self.location else None,
            service_radius_km=self.service_radius_km,
            current_caseload=self.current_caseload,
            max_caseload=self.max_caseload,
            availability=_availability(self.availability),
        )


class ClientSchema(BaseModel):
    id: str
    service_preferences: list[str] = Field(default_factory=list)
    location: LocationSchema | None = None
    max_travel_km: float | None = Field(default=None, ge=0)
    authorized_units: dict[SessionTypeField, int] = Field(default_factory=dict)
    used_units: dict[SessionTypeField, int] = Field(default_factory=dict)
    preferred_time_bands: list[DayWindowSchema] = Field(default_factory=list)
    availability: dict[str, DayWindowSchema | None] = Field(default_factory=dict)

    def to_domain(self) -> Client:
        return Client(
            id=self.id,
            service_preferences=frozenset(self.service_preferences),
            location=self.location.to_domain() if self.location else None,
            max_travel_km=self.max_travel_km,
            authorized_units=dict(self.authorized_units),
            used_units=dict(self.used_units),
            preferred_time_bands=tuple(band.to_domain() for band in self.preferred_time_bands),
            availability=_availability(self.availability),
        )


class SessionSchema(BaseModel):
    therapist_id: str
    client_id: str
    start: datetime
    duration_minutes: int = Field(gt=0)
    session_type: SessionTypeField = "one_to_one"
    status: Literal["proposed", "committed", "rejected", "completed", "cancelled"] = "committed"

    def to_domain(self) -> Session:
        return Session(
            therapist_id=self.therapist_id,
            client_id=self.client_id,
            slot=TimeSlot(start=self.start.replace(tzinfo=None), duration_minutes=self.duration_minutes),
            session_type=self.session_type,
            status=self.status,
        )
