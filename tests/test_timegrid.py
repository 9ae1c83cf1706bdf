from datetime import time, timedelta

import pytest

from therapy_scheduler.services.domain import DayWindow, TimeSlot
from therapy_scheduler.services.timegrid import (
    AvailabilityError,
    covered_by,
    iter_horizon_days,
    normalize_availability,
    normalize_window,
    validate_resolution,
    within_bands,
)

from .factories import MONDAY, TUESDAY, at, weekday_hours


def test_weekday_window_expands_into_grid_cells() -> None:
    cells = normalize_availability(weekday_hours(), MONDAY, TUESDAY, resolution=15)

    assert len(cells) == 32
    assert min(cells).start == at(MONDAY, 9)
    assert max(cells).end == at(MONDAY, 17)
    assert all(cell.minutes_since_epoch % 15 == 0 for cell in cells)
    assert all(cell.duration_minutes == 15 for cell in cells)


def test_horizon_is_half_open_and_skips_missing_days() -> None:
    availability = {"monday": DayWindow(time(9), time(10)), "tuesday": None}
    sunday = MONDAY + timedelta(days=6)

    cells = normalize_availability(availability, MONDAY, sunday + timedelta(days=1), resolution=30)

    assert {cell.day for cell in cells} == {MONDAY}
    assert len(cells) == 2
    assert list(iter_horizon_days(MONDAY, TUESDAY)) == [MONDAY]


def test_window_starting_after_its_end_is_rejected() -> None:
    availability = {"monday": DayWindow(time(17), time(9))}

    with pytest.raises(AvailabilityError) as excinfo:
        normalize_availability(availability, MONDAY, TUESDAY, entity_id="therapist-a")

    assert excinfo.value.entity_id == "therapist-a"
    assert excinfo.value.weekday == "monday"


def test_misaligned_window_is_rejected_by_default() -> None:
    with pytest.raises(AvailabilityError):
        normalize_window(DayWindow(time(9, 7), time(17)), resolution=15)


def test_misaligned_window_is_rounded_inward_when_configured() -> None:
    start, end = normalize_window(DayWindow(time(9, 7), time(16, 50)), resolution=15, alignment="round")

    assert (start, end) == (9 * 60 + 15, 16 * 60 + 45)


def test_rounding_that_collapses_a_window_is_an_error() -> None:
    with pytest.raises(AvailabilityError):
        normalize_window(DayWindow(time(9, 1), time(9, 14)), resolution=15, alignment="round")


def test_windows_outside_the_horizon_are_still_validated() -> None:
    availability = {"monday": DayWindow(time(9), time(17)), "sunday": DayWindow(time(12), time(11))}

    with pytest.raises(AvailabilityError) as excinfo:
        normalize_availability(availability, MONDAY, TUESDAY, entity_id="client-x")

    assert excinfo.value.weekday == "sunday"


def test_unknown_weekday_is_rejected() -> None:
    with pytest.raises(AvailabilityError):
        normalize_availability({"funday": DayWindow(time(9), time(10))}, MONDAY, TUESDAY)


def test_end_of_day_window_reaches_midnight() -> None:
    cells = normalize_availability({"monday": DayWindow(time(23), time.max)}, MONDAY, TUESDAY, resolution=30)

    assert max(cells).end == at(TUESDAY, 0)


@pytest.mark.parametrize("resolution", [0, -15, 7, 25])
def test_resolution_must_divide_the_day(resolution: int) -> None:
    with pytest.raises(ValueError):
        validate_resolution(resolution)


def test_covered_by_requires_every_cell() -> None:
    cells = normalize_availability({"monday": DayWindow(time(9), time(10))}, MONDAY, TUESDAY)

    assert covered_by(TimeSlot(at(MONDAY, 9), 60), cells, 15)
    assert not covered_by(TimeSlot(at(MONDAY, 9, 15), 60), cells, 15)


def test_within_bands() -> None:
    bands = (DayWindow(time(8), time(12)),)

    assert within_bands(TimeSlot(at(MONDAY, 9), 60), ())
    assert within_bands(TimeSlot(at(MONDAY, 11), 60), bands)
    assert not within_bands(TimeSlot(at(MONDAY, 11, 30), 60), bands)
