"""
Conflict Detector.

Hard feasibility checks for a candidate against the in-memory usage ledger.
The ledger is seeded once from committed state and then only touched by the
assembler, so every check here is a pure read.
"""

from __future__ import annotations

import copy
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Optional

from therapy_scheduler.services.domain import Candidate, Client, ConflictReport, Session, TimeSlot
from therapy_scheduler.services.rules import ConstraintConfig

logger = logging.getLogger(__name__)

DOUBLE_BOOKING = "resource double-booking"
HOUR_BOUNDS = "daily/weekly hour bounds"
MINIMUM_BREAK = "minimum break requirement"
MAX_CONSECUTIVE = "max consecutive sessions"
UNIT_EXHAUSTION = "authorization/unit exhaustion"
INTERNAL_ERROR = "internal error"

CHECK_ORDER: tuple[str, ...] = (
    DOUBLE_BOOKING,
    HOUR_BOUNDS,
    MINIMUM_BREAK,
    MAX_CONSECUTIVE,
    UNIT_EXHAUSTION,
)


def units_for(duration_minutes: int, unit_minutes: int) -> int:
    return math.ceil(duration_minutes / unit_minutes)


def _iso_week(day: date) -> tuple[int, int]:
    iso_year, iso_week, _ = day.isocalendar()
    return iso_year, iso_week


@dataclass
class UsageLedger:
    """Running totals of booked slots, therapist minutes and consumed units."""

    therapist_slots: dict[tuple[str, date], list[TimeSlot]] = field(default_factory=lambda: defaultdict(list))
    client_slots: dict[tuple[str, date], list[TimeSlot]] = field(default_factory=lambda: defaultdict(list))
    therapist_day_minutes: dict[tuple[str, date], int] = field(default_factory=lambda: defaultdict(int))
    therapist_week_minutes: dict[tuple[str, int, int], int] = field(default_factory=lambda: defaultdict(int))
    client_units: dict[tuple[str, str], int] = field(default_factory=lambda: defaultdict(int))
    session_count: int = 0

    @classmethod
    def seed(cls, sessions: Iterable[Session], clients: Iterable[Client] = ()) -> "UsageLedger":
        """
        Build a ledger from already-committed sessions.

        Unit usage comes from each client's period-to-date ``used_units``,
        which the persistence layer already reports inclusive of existing
        sessions; seeding sessions therefore only books time.
        """

        ledger = cls()
        for client in clients:
            for category, used in client.used_units.items():
                ledger.client_units[(client.id, category)] += used
        for session in sessions:
            if session.is_active:
                ledger.book(session)
        return ledger

    def book(self, session: Session) -> None:
        slot = session.slot
        self.therapist_slots[(session.therapist_id, slot.day)].append(slot)
        self.client_slots[(session.client_id, slot.day)].append(slot)
        self.therapist_day_minutes[(session.therapist_id, slot.day)] += slot.duration_minutes
        iso_year, iso_week = _iso_week(slot.day)
        self.therapist_week_minutes[(session.therapist_id, iso_year, iso_week)] += slot.duration_minutes
        self.session_count += 1

    def record(self, session: Session, unit_minutes: int) -> None:
        """Book a newly committed session and charge its authorization units."""

        self.book(session)
        self.client_units[(session.client_id, session.session_type)] += units_for(
            session.slot.duration_minutes, unit_minutes
        )

    def release_units(self, session: Session, unit_minutes: int) -> None:
        """Credit back the units of a booked session that is being moved."""

        key = (session.client_id, session.session_type)
        released = units_for(session.slot.duration_minutes, unit_minutes)
        self.client_units[key] = max(0, self.client_units[key] - released)

    def snapshot(self) -> "UsageLedger":
        return copy.deepcopy(self)

    def therapist_nearby(self, therapist_id: str, slot: TimeSlot) -> list[TimeSlot]:
        return _nearby(self.therapist_slots, therapist_id, slot)

    def client_nearby(self, client_id: str, slot: TimeSlot) -> list[TimeSlot]:
        return _nearby(self.client_slots, client_id, slot)

    def used_units(self, client_id: str, category: str) -> int:
        return self.client_units.get((client_id, category), 0)

    def day_minutes(self, therapist_id: str, day: date) -> int:
        return self.therapist_day_minutes.get((therapist_id, day), 0)

    def week_minutes(self, therapist_id: str, day: date) -> int:
        iso_year, iso_week = _iso_week(day)
        return self.therapist_week_minutes.get((therapist_id, iso_year, iso_week), 0)


def _nearby(index: dict[tuple[str, date], list[TimeSlot]], resource_id: str, slot: TimeSlot) -> list[TimeSlot]:
    days = {slot.day - timedelta(days=1), slot.day, slot.end.date()}
    found: list[TimeSlot] = []
    for day in sorted(days):
        found.extend(index.get((resource_id, day), ()))
    return sorted(found)


class ConflictDetector:
    def __init__(self, config: ConstraintConfig) -> None:
        self.config = config

    def check(self, candidate: Candidate, ledger: UsageLedger) -> Optional[ConflictReport]:
        """Return the first violated constraint, or ``None`` when the candidate is feasible."""

        return (
            self._check_double_booking(candidate, ledger)
            or self._check_hour_bounds(candidate, ledger)
            or self._check_minimum_break(candidate, ledger)
            or self._check_consecutive(candidate, ledger)
            or self._check_units(candidate, ledger)
        )

    def _check_double_booking(self, candidate: Candidate, ledger: UsageLedger) -> Optional[ConflictReport]:
        slot = candidate.slot
        for booked in ledger.therapist_nearby(candidate.therapist.id, slot):
            if booked.overlaps(slot):
                return ConflictReport(
                    DOUBLE_BOOKING,
                    f"Therapist {candidate.therapist.id} is already booked "
                    f"{booked.start:%Y-%m-%d %H:%M}-{booked.end:%H:%M}.",
                )
        for booked in ledger.client_nearby(candidate.client.id, slot):
            if booked.overlaps(slot):
                return ConflictReport(
                    DOUBLE_BOOKING,
                    f"Client {candidate.client.id} is already booked "
                    f"{booked.start:%Y-%m-%d %H:%M}-{booked.end:%H:%M}.",
                )
        return None

    def _check_hour_bounds(self, candidate: Candidate, ledger: UsageLedger) -> Optional[ConflictReport]:
        therapist = candidate.therapist
        duration = candidate.slot.duration_minutes
        day = candidate.slot.day

        daily_limit = self.config.max_daily_hours * 60
        next_daily = ledger.day_minutes(therapist.id, day) + duration
        if next_daily > daily_limit:
            return ConflictReport(
                HOUR_BOUNDS,
                f"Therapist {therapist.id} would work {next_daily / 60:.2f}h on {day}, "
                f"exceeding {self.config.max_daily_hours}h.",
            )

        weekly_hours = therapist.weekly_hours_max
        if self.config.max_weekly_hours is not None:
            weekly_hours = min(weekly_hours, self.config.max_weekly_hours)
        next_weekly = ledger.week_minutes(therapist.id, day) + duration
        if next_weekly > weekly_hours * 60:
            iso_year, iso_week = _iso_week(day)
            return ConflictReport(
                HOUR_BOUNDS,
                f"Therapist {therapist.id} would work {next_weekly / 60:.2f}h in ISO week "
                f"{iso_week}/{iso_year}, exceeding {weekly_hours}h.",
            )
        return None

    def _check_minimum_break(self, candidate: Candidate, ledger: UsageLedger) -> Optional[ConflictReport]:
        min_break = timedelta(minutes=self.config.min_break_minutes)
        if not min_break:
            return None
        slot = candidate.slot
        for booked in ledger.therapist_nearby(candidate.therapist.id, slot):
            if booked.end <= slot.start:
                gap = slot.start - booked.end
            elif slot.end <= booked.start:
                gap = booked.start - slot.end
            else:
                continue
            # Back-to-back sessions form a consecutive run; only short, non-zero gaps break the rule.
            if timedelta(0) < gap < min_break:
                return ConflictReport(
                    MINIMUM_BREAK,
                    f"Only {int(gap.total_seconds() // 60)} minutes between sessions for therapist "
                    f"{candidate.therapist.id}; at least {self.config.min_break_minutes} required.",
                )
        return None

    def _check_consecutive(self, candidate: Candidate, ledger: UsageLedger) -> Optional[ConflictReport]:
        booked = ledger.therapist_nearby(candidate.therapist.id, candidate.slot)
        by_start = {slot.start: slot for slot in booked}
        by_end = {slot.end: slot for slot in booked}

        run = 1
        cursor = candidate.slot
        while cursor.start in by_end:
            cursor = by_end[cursor.start]
            run += 1
        cursor = candidate.slot
        while cursor.end in by_start:
            cursor = by_start[cursor.end]
            run += 1

        if run > self.config.max_consecutive_sessions:
            return ConflictReport(
                MAX_CONSECUTIVE,
                f"Therapist {candidate.therapist.id} would have {run} back-to-back sessions; "
                f"limit is {self.config.max_consecutive_sessions}.",
            )
        return None

    def _check_units(self, candidate: Candidate, ledger: UsageLedger) -> Optional[ConflictReport]:
        client = candidate.client
        category = candidate.session_type
        cap = client.authorized_units.get(category, self.config.default_unit_caps.for_category(category))
        used = ledger.used_units(client.id, category)
        needed = units_for(candidate.slot.duration_minutes, self.config.unit_minutes)
        if used + needed > cap:
            return ConflictReport(
                UNIT_EXHAUSTION,
                f"Client {client.id} has {max(cap - used, 0)} {category} units remaining; "
                f"session needs {needed}.",
            )
        return None
