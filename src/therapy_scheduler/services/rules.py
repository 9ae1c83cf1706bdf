"""Constraint configuration for scheduling runs and its bundled defaults."""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from therapy_scheduler.services.domain import SESSION_TYPES


class UnitCaps(BaseModel):
    one_to_one: int = Field(default=0, ge=0)
    supervision: int = Field(default=0, ge=0)
    parent_consult: int = Field(default=0, ge=0)

    def for_category(self, category: str) -> int:
        return getattr(self, category)


class ConstraintConfig(BaseModel):
    min_break_minutes: int = Field(default=15, ge=0)
    max_consecutive_sessions: int = Field(default=4, ge=1)
    max_daily_hours: float = Field(default=8.0, gt=0)
    max_weekly_hours: float | None = Field(default=None, gt=0)
    unit_minutes: int = Field(default=15, gt=0)
    default_unit_caps: UnitCaps = Field(default_factory=UnitCaps)
    alignment: Literal["reject", "round"] = "reject"
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_daily_against_weekly(self) -> "ConstraintConfig":
        if self.max_weekly_hours is not None and self.max_daily_hours > self.max_weekly_hours:
            raise ValueError("max_daily_hours cannot exceed max_weekly_hours")
        return self

    def with_overrides(self, overrides: dict[str, Any] | None) -> "ConstraintConfig":
        if not overrides:
            return self
        return ConstraintConfig.model_validate({**self.model_dump(), **overrides})


@dataclass(frozen=True)
class RuleSet:
    """Wrapper used by the scheduler to access typed constraints."""

    constraints: ConstraintConfig


def _load_constraints_from_json() -> ConstraintConfig:
    with resources.files("therapy_scheduler.services.data").joinpath("default_constraints.json").open(
        "r", encoding="utf-8"
    ) as handle:
        payload = json.load(handle)
    caps = payload["constraints"].get("default_unit_caps", {})
    unknown = set(caps) - set(SESSION_TYPES)
    if unknown:
        raise ValueError(f"unknown unit categories in bundled defaults: {sorted(unknown)}")
    return ConstraintConfig.model_validate(payload["constraints"])


@lru_cache(maxsize=1)
def load_default_rules() -> RuleSet:
    """Return the default constraint set bundled with the application."""

    return RuleSet(constraints=_load_constraints_from_json())
