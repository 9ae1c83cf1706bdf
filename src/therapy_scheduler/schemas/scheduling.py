from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from therapy_scheduler.schemas.roster import ClientSchema, SessionSchema, SessionTypeField, TherapistSchema
from therapy_scheduler.services.cache import CacheStats
from therapy_scheduler.services.domain import Candidate, DiscardedCandidate, Session
from therapy_scheduler.services.scheduler import AlternativesResult, SchedulingResult, SchedulingViolation


class UnitCapsOverride(BaseModel):
    one_to_one: int | None = Field(default=None, ge=0)
    supervision: int | None = Field(default=None, ge=0)
    parent_consult: int | None = Field(default=None, ge=0)


class ConstraintOverrides(BaseModel):
    """Per-request relaxations or tightenings of the default constraints."""

    min_break_minutes: int | None = None
    max_consecutive_sessions: int | None = None
    max_daily_hours: float | None = None
    max_weekly_hours: float | None = None
    unit_minutes: int | None = None
    default_unit_caps: UnitCapsOverride | None = None
    alignment: Literal["reject", "round"] | None = None
    min_score: float | None = None

    def as_update(self, base_caps: dict[str, int]) -> dict[str, Any]:
        update = self.model_dump(exclude_none=True, exclude={"default_unit_caps"})
        if self.default_unit_caps is not None:
            update["default_unit_caps"] = {**base_caps, **self.default_unit_caps.model_dump(exclude_none=True)}
        return update


class RosterRequest(BaseModel):
    therapists: list[TherapistSchema]
    clients: list[ClientSchema]
    existing_sessions: list[SessionSchema] = Field(default_factory=list)
    horizon_start: date
    horizon_end: date
    resolution_minutes: int | None = Field(default=None, gt=0)
    constraints: ConstraintOverrides | None = None

    @model_validator(mode="after")
    def validate_horizon(self) -> "RosterRequest":
        if self.horizon_end <= self.horizon_start:
            raise ValueError("horizon_end must be after horizon_start")
        return self


class ScheduleRequest(RosterRequest):
    session_minutes: int = Field(default=60, gt=0)
    session_type: SessionTypeField = "one_to_one"
    max_sessions: int | None = Field(default=None, ge=0)


class AlternativesRequest(RosterRequest):
    """Find other times for ``session``; it may or may not be listed in ``existing_sessions``."""

    session: SessionSchema
    limit: int = Field(default=5, ge=1, le=100)


class ProposedSessionRead(BaseModel):
    therapist_id: str
    client_id: str
    start: datetime
    end: datetime
    duration_minutes: int
    session_type: SessionTypeField
    status: str
    score: float | None = None

    @classmethod
    def from_session(cls, session: Session) -> "ProposedSessionRead":
        return cls(
            therapist_id=session.therapist_id,
            client_id=session.client_id,
            start=session.slot.start,
            end=session.slot.end,
            duration_minutes=session.slot.duration_minutes,
            session_type=session.session_type,
            status=session.status,
            score=session.score,
        )


class DiscardRead(BaseModel):
    therapist_id: str
    client_id: str
    start: datetime | None = None
    end: datetime | None = None
    constraint: str
    reason: str
    score: float | None = None
    stage: Literal["generation", "assembly"]

    @classmethod
    def from_discard(cls, discard: DiscardedCandidate) -> "DiscardRead":
        return cls(
            therapist_id=discard.therapist_id,
            client_id=discard.client_id,
            start=discard.slot.start if discard.slot else None,
            end=discard.slot.end if discard.slot else None,
            constraint=discard.report.constraint,
            reason=discard.report.reason,
            score=discard.score,
            stage=discard.stage,
        )


class ScheduleViolation(BaseModel):
    code: str
    message: str
    severity: Literal["info", "warning", "critical"] = "warning"
    meta: dict[str, Any] = Field(default_factory=dict)
    scope: Literal["schedule", "day", "resource", "week"] = "schedule"
    day: str | None = None
    resource_id: str | None = None
    iso_week: str | None = None

    @classmethod
    def from_violation(cls, violation: SchedulingViolation) -> "ScheduleViolation":
        return cls(
            code=violation.code,
            message=violation.message,
            severity=violation.severity,
            meta=dict(violation.meta),
            scope=violation.scope,
            day=violation.day.isoformat() if violation.day else None,
            resource_id=violation.resource_id,
            iso_week=violation.iso_week,
        )


class CacheStatsRead(BaseModel):
    total: int
    live: int
    expired: int
    hit_rate: float
    hits: int = 0
    misses: int = 0

    @classmethod
    def from_stats(cls, stats: CacheStats) -> "CacheStatsRead":
        return cls(**stats.to_dict())


class CacheSweepResponse(BaseModel):
    removed: int
    stats: CacheStatsRead


class AlternativeRead(BaseModel):
    start: datetime
    end: datetime
    duration_minutes: int
    score: float

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "AlternativeRead":
        return cls(
            start=candidate.slot.start,
            end=candidate.slot.end,
            duration_minutes=candidate.slot.duration_minutes,
            score=candidate.score,
        )


class AlternativesResponse(BaseModel):
    therapist_id: str
    client_id: str
    alternatives: list[AlternativeRead]
    discards: list[DiscardRead]

    @classmethod
    def from_result(cls, result: AlternativesResult) -> "AlternativesResponse":
        return cls(
            therapist_id=result.session.therapist_id,
            client_id=result.session.client_id,
            alternatives=[AlternativeRead.from_candidate(candidate) for candidate in result.alternatives],
            discards=[DiscardRead.from_discard(discard) for discard in result.discards],
        )


class ScheduleResponse(BaseModel):
    sessions: list[ProposedSessionRead]
    discards: list[DiscardRead]
    violations: list[ScheduleViolation]
    state: str
    cancelled: bool = False
    duration_ms: int = 0
    cache_stats: CacheStatsRead | None = None

    @classmethod
    def from_result(cls, result: SchedulingResult) -> "ScheduleResponse":
        return cls(
            sessions=[ProposedSessionRead.from_session(session) for session in result.sessions],
            discards=[DiscardRead.from_discard(discard) for discard in result.discards],
            violations=[ScheduleViolation.from_violation(violation) for violation in result.violations],
            state=result.state.value,
            cancelled=result.cancelled,
            duration_ms=result.duration_ms,
            cache_stats=CacheStatsRead.from_stats(result.cache_stats) if result.cache_stats else None,
        )
