"""Scheduling views of therapists, clients and sessions.

These are narrow snapshots projected from the persisted records: the engine
only ever sees the fields it needs and never writes back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Literal, Optional

SessionType = Literal["one_to_one", "supervision", "parent_consult"]
SessionStatus = Literal["proposed", "committed", "rejected", "completed", "cancelled"]

SESSION_TYPES: tuple[str, ...] = ("one_to_one", "supervision", "parent_consult")
INACTIVE_STATUSES: frozenset[str] = frozenset({"rejected", "cancelled"})

GRID_EPOCH = datetime(1970, 1, 1)

WEEKDAYS: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


@dataclass(frozen=True, order=True)
class TimeSlot:
    """Half-open interval ``[start, start + duration)`` on the scheduling grid."""

    start: datetime
    duration_minutes: int

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def day(self) -> date:
        return self.start.date()

    @property
    def minutes_since_epoch(self) -> int:
        return int((self.start - GRID_EPOCH).total_seconds() // 60)

    def overlaps(self, other: "TimeSlot") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeSlot") -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class DayWindow:
    """One weekday's ``(earliest, latest)`` bound."""

    start: time
    end: time


@dataclass(frozen=True)
class Therapist:
    id: str
    specialties: frozenset[str] = frozenset()
    service_types: frozenset[str] = frozenset()
    weekly_hours_min: float = 0.0
    weekly_hours_max: float = 40.0
    location: Optional[Location] = None
    service_radius_km: Optional[float] = None
    current_caseload: int = 0
    max_caseload: int = 10
    availability: dict[str, Optional[DayWindow]] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class Client:
    id: str
    service_preferences: frozenset[str] = frozenset()
    location: Optional[Location] = None
    max_travel_km: Optional[float] = None
    authorized_units: dict[str, int] = field(default_factory=dict, compare=False, hash=False)
    used_units: dict[str, int] = field(default_factory=dict, compare=False, hash=False)
    preferred_time_bands: tuple[DayWindow, ...] = ()
    availability: dict[str, Optional[DayWindow]] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class Session:
    therapist_id: str
    client_id: str
    slot: TimeSlot
    session_type: SessionType = "one_to_one"
    status: SessionStatus = "proposed"
    score: float | None = None

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES


@dataclass(frozen=True)
class Candidate:
    """A (therapist, client, slot) triple considered for assignment."""

    therapist: Therapist
    client: Client
    slot: TimeSlot
    session_type: SessionType = "one_to_one"
    score: float = 0.0

    def rank_key(self) -> tuple[float, datetime, str, str]:
        # Score descending, then earliest slot, then therapist id, then client id.
        return (-self.score, self.slot.start, self.therapist.id, self.client.id)

    def to_session(self) -> Session:
        return Session(
            therapist_id=self.therapist.id,
            client_id=self.client.id,
            slot=self.slot,
            session_type=self.session_type,
            status="proposed",
            score=self.score,
        )


@dataclass(frozen=True)
class ConflictReport:
    """Why a candidate was rejected. Lives for one run only."""

    constraint: str
    reason: str


@dataclass(frozen=True)
class DiscardedCandidate:
    therapist_id: str
    client_id: str
    slot: Optional[TimeSlot]
    report: ConflictReport
    score: float | None = None
    stage: Literal["generation", "assembly"] = "generation"
