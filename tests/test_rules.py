import pytest
from pydantic import ValidationError

from therapy_scheduler.services.rules import ConstraintConfig, load_default_rules


def test_load_default_rules() -> None:
    constraints = load_default_rules().constraints

    assert constraints.min_break_minutes == 15
    assert constraints.max_consecutive_sessions == 4
    assert constraints.max_daily_hours == 8
    assert constraints.max_weekly_hours is None
    assert constraints.unit_minutes == 15
    assert constraints.alignment == "reject"
    assert constraints.default_unit_caps.for_category("supervision") == 0


def test_overrides_are_validated_on_top_of_defaults() -> None:
    base = load_default_rules().constraints

    adjusted = base.with_overrides({"min_break_minutes": 30, "default_unit_caps": {"parent_consult": 4}})

    assert adjusted.min_break_minutes == 30
    assert adjusted.max_consecutive_sessions == base.max_consecutive_sessions
    assert adjusted.default_unit_caps.parent_consult == 4
    assert base.min_break_minutes == 15
    assert base.with_overrides(None) is base


def test_daily_hours_cannot_exceed_weekly_hours() -> None:
    with pytest.raises(ValidationError):
        ConstraintConfig(max_daily_hours=10, max_weekly_hours=6)


def test_negative_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        ConstraintConfig(min_break_minutes=-5)
    with pytest.raises(ValidationError):
        ConstraintConfig(default_unit_caps={"one_to_one": -1})
