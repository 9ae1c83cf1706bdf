from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from time import perf_counter
from typing import Iterable, Literal, Optional, Sequence

from therapy_scheduler.services.cache import CacheStats, CompatibilityCache
from therapy_scheduler.services.candidates import CandidateGenerator
from therapy_scheduler.services.conflicts import INTERNAL_ERROR, ConflictDetector, UsageLedger
from therapy_scheduler.services.domain import (
    Candidate,
    Client,
    ConflictReport,
    DiscardedCandidate,
    Session,
    SessionType,
    SESSION_TYPES,
    Therapist,
)
from therapy_scheduler.services.rules import RuleSet
from therapy_scheduler.services.scoring import CompatibilityScorer
from therapy_scheduler.services.timegrid import DEFAULT_RESOLUTION_MINUTES, validate_resolution

logger = logging.getLogger(__name__)


class SchedulingInputError(ValueError):
    """Raised when a scheduling request is malformed."""


class RunState(str, Enum):
    PENDING = "pending"
    ASSIGNING = "assigning"
    DONE = "done"


@dataclass
class SchedulingContext:
    therapists: list[Therapist]
    clients: list[Client]
    horizon_start: date
    horizon_end: date
    rules: RuleSet
    existing_sessions: list[Session] = field(default_factory=list)
    resolution_minutes: int = DEFAULT_RESOLUTION_MINUTES
    session_minutes: int = 60
    session_type: SessionType = "one_to_one"
    max_sessions: Optional[int] = None


@dataclass
class SchedulingViolation:
    code: str
    message: str
    severity: Literal["info", "warning", "critical"] = "warning"
    meta: dict[str, str | int | float] = field(default_factory=dict)
    scope: Literal["schedule", "day", "resource", "week"] = "schedule"
    day: date | None = None
    resource_id: str | None = None
    iso_week: str | None = None


@dataclass
class SchedulingResult:
    sessions: list[Session]
    discards: list[DiscardedCandidate] = field(default_factory=list)
    violations: list[SchedulingViolation] = field(default_factory=list)
    state: RunState = RunState.DONE
    cancelled: bool = False
    duration_ms: int = 0
    cache_stats: Optional[CacheStats] = None


@dataclass
class AlternativesResult:
    session: Session
    alternatives: list[Candidate]
    discards: list[DiscardedCandidate] = field(default_factory=list)


def validate_context(context: SchedulingContext) -> None:
    if context.horizon_end <= context.horizon_start:
        raise SchedulingInputError(
            f"horizon end {context.horizon_end} must be after horizon start {context.horizon_start}"
        )
    try:
        validate_resolution(context.resolution_minutes)
    except ValueError as exc:
        raise SchedulingInputError(str(exc)) from exc
    if context.session_minutes <= 0 or context.session_minutes % context.resolution_minutes:
        raise SchedulingInputError(
            f"session length {context.session_minutes} must be a positive multiple of "
            f"the {context.resolution_minutes}-minute grid"
        )
    if context.session_type not in SESSION_TYPES:
        raise SchedulingInputError(f"unknown session type {context.session_type!r}")
    if context.max_sessions is not None and context.max_sessions < 0:
        raise SchedulingInputError("max_sessions cannot be negative")
    for label, ids in (
        ("therapist", [therapist.id for therapist in context.therapists]),
        ("client", [client.id for client in context.clients]),
    ):
        if len(ids) != len(set(ids)):
            raise SchedulingInputError(f"duplicate {label} ids in roster")


class ScheduleAssembler:
    """
    Greedy commit loop over the ranked candidate stream.

    Runs ``Pending -> Assigning -> Done``. Every candidate is re-checked
    against the live ledger before it is committed, because an earlier commit
    may have made it infeasible. The loop is the single place the ledger is
    mutated and is never shared across threads.
    """

    def __init__(self, generator: CandidateGenerator) -> None:
        self.generator = generator
        self.detector = generator.detector
        self.state = RunState.PENDING

    def run(
        self,
        context: SchedulingContext,
        *,
        cancel_event: threading.Event | None = None,
        deadline_seconds: float | None = None,
    ) -> SchedulingResult:
        validate_context(context)
        self.state = RunState.PENDING
        started = perf_counter()
        constraints = context.rules.constraints

        ledger = UsageLedger.seed(context.existing_sessions, context.clients)
        discards: list[DiscardedCandidate] = []
        sessions: list[Session] = []
        cancelled = False

        stream = self.generator.generate(
            context.therapists,
            context.clients,
            context.horizon_start,
            context.horizon_end,
            ledger.snapshot(),
            session_minutes=context.session_minutes,
            session_type=context.session_type,
            on_discard=discards.append,
        )

        self.state = RunState.ASSIGNING
        logger.info(
            "Scheduling %d therapists x %d clients over %s..%s",
            len(context.therapists),
            len(context.clients),
            context.horizon_start,
            context.horizon_end,
        )
        while context.max_sessions is None or len(sessions) < context.max_sessions:
            if _should_stop(cancel_event, started, deadline_seconds):
                cancelled = True
                logger.warning("Scheduling run cancelled after %d sessions", len(sessions))
                break
            candidate = next(stream, None)
            if candidate is None:
                break

            try:
                report = self.detector.check(candidate, ledger)
            except Exception as exc:
                logger.exception(
                    "Re-check failed for therapist %s / client %s", candidate.therapist.id, candidate.client.id
                )
                report = ConflictReport(INTERNAL_ERROR, f"Conflict check failed: {exc}")

            if report is not None:
                discards.append(
                    DiscardedCandidate(
                        candidate.therapist.id,
                        candidate.client.id,
                        candidate.slot,
                        report,
                        score=candidate.score,
                        stage="assembly",
                    )
                )
                continue

            session = candidate.to_session()
            ledger.record(session, constraints.unit_minutes)
            sessions.append(session)
            logger.debug(
                "Committed therapist %s / client %s at %s (score %.3f)",
                session.therapist_id,
                session.client_id,
                session.slot.start,
                candidate.score,
            )

        self.state = RunState.DONE
        duration_ms = int((perf_counter() - started) * 1000)
        violations = evaluate_schedule_violations(context, sessions)
        logger.info(
            "Scheduling finished: %d proposed, %d discarded, %d violations in %dms",
            len(sessions),
            len(discards),
            len(violations),
            duration_ms,
        )
        return SchedulingResult(
            sessions=sessions,
            discards=discards,
            violations=violations,
            state=self.state,
            cancelled=cancelled,
            duration_ms=duration_ms,
            cache_stats=self.generator.scorer.cache.stats(),
        )


def _should_stop(cancel_event: threading.Event | None, started: float, deadline_seconds: float | None) -> bool:
    if cancel_event is not None and cancel_event.is_set():
        return True
    return deadline_seconds is not None and perf_counter() - started >= deadline_seconds


def build_generator(
    cache: CompatibilityCache,
    rules: RuleSet,
    *,
    resolution: int = DEFAULT_RESOLUTION_MINUTES,
    score_ttl: float | None = None,
    workers: int = 1,
) -> CandidateGenerator:
    constraints = rules.constraints
    scorer = CompatibilityScorer(cache, ttl=cache.default_ttl if score_ttl is None else score_ttl)
    return CandidateGenerator(
        scorer,
        ConflictDetector(constraints),
        resolution=resolution,
        alignment=constraints.alignment,
        min_score=constraints.min_score,
        workers=workers,
    )


def build_assembler(
    cache: CompatibilityCache,
    rules: RuleSet,
    *,
    resolution: int = DEFAULT_RESOLUTION_MINUTES,
    score_ttl: float | None = None,
    workers: int = 1,
) -> ScheduleAssembler:
    return ScheduleAssembler(
        build_generator(cache, rules, resolution=resolution, score_ttl=score_ttl, workers=workers)
    )


def generate_schedule(
    context: SchedulingContext,
    cache: CompatibilityCache | None = None,
    *,
    workers: int = 1,
    cancel_event: threading.Event | None = None,
    deadline_seconds: float | None = None,
) -> SchedulingResult:
    """Propose sessions for ``context``; a fresh cache is scoped to the run when none is given."""

    assembler = build_assembler(
        cache if cache is not None else CompatibilityCache(),
        context.rules,
        resolution=context.resolution_minutes,
        workers=workers,
    )
    return assembler.run(context, cancel_event=cancel_event, deadline_seconds=deadline_seconds)


def _same_booking(session: Session, other: Session) -> bool:
    return (
        session.therapist_id == other.therapist_id
        and session.client_id == other.client_id
        and session.session_type == other.session_type
        and session.slot == other.slot
    )


def suggest_alternatives(
    context: SchedulingContext,
    session: Session,
    cache: CompatibilityCache | None = None,
    *,
    limit: int = 5,
    score_ttl: float | None = None,
) -> AlternativesResult:
    """
    Rank other feasible times for ``session`` between its own therapist and client.

    The session being moved is left out of the ledger, so it neither blocks
    nearby slots nor has its units charged twice. Its current slot is never
    suggested back.
    """

    validate_context(context)
    if limit < 1:
        raise SchedulingInputError("limit must be at least 1")
    duration = session.slot.duration_minutes
    if duration <= 0 or duration % context.resolution_minutes:
        raise SchedulingInputError(
            f"session length {duration} must be a positive multiple of the {context.resolution_minutes}-minute grid"
        )
    therapist = next((item for item in context.therapists if item.id == session.therapist_id), None)
    client = next((item for item in context.clients if item.id == session.client_id), None)
    if therapist is None or client is None:
        raise SchedulingInputError(
            f"session references therapist {session.therapist_id} / client {session.client_id} missing from the roster"
        )

    constraints = context.rules.constraints
    remaining = [other for other in context.existing_sessions if not _same_booking(other, session)]
    ledger = UsageLedger.seed(remaining, context.clients)
    if session.is_active and len(remaining) < len(context.existing_sessions):
        ledger.release_units(session, constraints.unit_minutes)

    generator = build_generator(
        cache if cache is not None else CompatibilityCache(),
        context.rules,
        resolution=context.resolution_minutes,
        score_ttl=score_ttl,
    )
    discards: list[DiscardedCandidate] = []
    alternatives = generator.alternatives(
        therapist,
        client,
        context.horizon_start,
        context.horizon_end,
        ledger,
        session_minutes=duration,
        session_type=session.session_type,
        limit=limit,
        exclude=frozenset({session.slot}),
        on_discard=discards.append,
    )
    logger.info(
        "Found %d alternatives for therapist %s / client %s at %s",
        len(alternatives),
        therapist.id,
        client.id,
        session.slot.start,
    )
    return AlternativesResult(session=session, alternatives=alternatives, discards=discards)


def evaluate_schedule_violations(
    context: SchedulingContext, sessions: Sequence[Session]
) -> list[SchedulingViolation]:
    """Audit a proposal together with the existing bookings it was built on."""

    violations: list[SchedulingViolation] = []
    existing = [session for session in context.existing_sessions if session.is_active]
    _apply_overlap_rules(existing, sessions, violations)
    _apply_working_time_rules(context, [*existing, *sessions], violations)
    return violations


def _apply_overlap_rules(
    existing: Sequence[Session],
    proposed: Sequence[Session],
    violations: list[SchedulingViolation],
) -> None:
    for label, attribute in (("therapist", "therapist_id"), ("client", "client_id")):
        booked: dict[str, list[Session]] = defaultdict(list)
        for session in existing:
            booked[getattr(session, attribute)].append(session)
        for session in proposed:
            resource_id = getattr(session, attribute)
            clash = next((other for other in booked[resource_id] if other.slot.overlaps(session.slot)), None)
            booked[resource_id].append(session)
            if clash is None:
                continue
            violations.append(
                SchedulingViolation(
                    code="double-booking",
                    message=(
                        f"{label.capitalize()} {resource_id} is booked twice: "
                        f"{clash.slot.start:%Y-%m-%d %H:%M} and {session.slot.start:%Y-%m-%d %H:%M}."
                    ),
                    severity="critical",
                    scope="resource",
                    day=session.slot.day,
                    resource_id=resource_id,
                    meta={"resource_type": label, "start": session.slot.start.isoformat()},
                )
            )


def _apply_working_time_rules(
    context: SchedulingContext,
    sessions: Iterable[Session],
    violations: list[SchedulingViolation],
) -> None:
    constraints = context.rules.constraints
    weekly_caps = {therapist.id: therapist.weekly_hours_max for therapist in context.therapists}
    if constraints.max_weekly_hours is not None:
        weekly_caps = {key: min(value, constraints.max_weekly_hours) for key, value in weekly_caps.items()}

    per_day_minutes: dict[tuple[str, date], int] = defaultdict(int)
    per_week_minutes: dict[tuple[str, int, int], int] = defaultdict(int)
    for session in sessions:
        per_day_minutes[(session.therapist_id, session.slot.day)] += session.slot.duration_minutes
        iso_year, iso_week, _ = session.slot.day.isocalendar()
        per_week_minutes[(session.therapist_id, iso_year, iso_week)] += session.slot.duration_minutes

    for (therapist_id, day), minutes in sorted(per_day_minutes.items()):
        hours = minutes / 60
        if hours > constraints.max_daily_hours:
            violations.append(
                SchedulingViolation(
                    code="hours-per-day-exceeded",
                    message=(
                        f"Therapist {therapist_id} scheduled {hours:.1f}h on {day}, "
                        f"exceeding {constraints.max_daily_hours}h."
                    ),
                    severity="critical",
                    scope="day",
                    day=day,
                    resource_id=therapist_id,
                    meta={"resource_id": therapist_id, "date": day.isoformat(), "hours": round(hours, 2)},
                )
            )

    for (therapist_id, iso_year, iso_week), minutes in sorted(per_week_minutes.items()):
        cap = weekly_caps.get(therapist_id)
        hours = minutes / 60
        if cap is None or hours <= cap:
            continue
        violations.append(
            SchedulingViolation(
                code="hours-per-week-exceeded",
                message=(
                    f"Therapist {therapist_id} scheduled {hours:.1f}h "
                    f"in ISO week {iso_week}/{iso_year}, exceeding {cap}h."
                ),
                severity="critical",
                scope="week",
                resource_id=therapist_id,
                iso_week=f"{iso_year}-W{iso_week:02d}",
                meta={"resource_id": therapist_id, "hours": round(hours, 2), "limit": cap},
            )
        )
