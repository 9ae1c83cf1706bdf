"""Expand weekly availability windows into grid-aligned time slots."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, Literal, Mapping, Optional

from therapy_scheduler.services.domain import GRID_EPOCH, WEEKDAYS, DayWindow, TimeSlot

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION_MINUTES = 15
MINUTES_PER_DAY = 24 * 60


class AvailabilityError(ValueError):
    """Raised when an availability window cannot be placed on the grid."""

    def __init__(self, message: str, *, entity_id: str | None = None, weekday: str | None = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.weekday = weekday


def validate_resolution(resolution: int) -> None:
    if resolution <= 0 or MINUTES_PER_DAY % resolution != 0:
        raise ValueError(f"grid resolution must be a positive divisor of {MINUTES_PER_DAY} minutes, got {resolution}")


def _minutes_of(value: time) -> int:
    return value.hour * 60 + value.minute


def _time_from_minutes(minutes: int) -> time:
    if minutes >= MINUTES_PER_DAY:
        return time.max
    return time(minutes // 60, minutes % 60)


def _window_minutes(window: DayWindow) -> tuple[int, int]:
    start = _minutes_of(window.start) + window.start.second / 60
    # time.max stands in for end-of-day (24:00)
    end = MINUTES_PER_DAY if window.end == time.max else _minutes_of(window.end) + window.end.second / 60
    return start, end


def normalize_window(
    window: DayWindow,
    *,
    resolution: int = DEFAULT_RESOLUTION_MINUTES,
    alignment: Literal["reject", "round"] = "reject",
    entity_id: str | None = None,
    weekday: str | None = None,
) -> tuple[int, int]:
    """Return the window as aligned ``(start, end)`` minutes since midnight."""

    start, end = _window_minutes(window)
    if start >= end:
        raise AvailabilityError(
            f"availability for {entity_id or 'entity'} on {weekday or 'day'} starts at {window.start} "
            f"which is not before its end {window.end}",
            entity_id=entity_id,
            weekday=weekday,
        )

    misaligned = start % resolution != 0 or end % resolution != 0
    if misaligned and alignment == "reject":
        raise AvailabilityError(
            f"availability for {entity_id or 'entity'} on {weekday or 'day'} "
            f"({window.start}-{window.end}) is not aligned to the {resolution}-minute grid",
            entity_id=entity_id,
            weekday=weekday,
        )

    # Rounding shrinks the window inward so no slot falls outside the declared bounds.
    aligned_start = int(-(-start // resolution) * resolution)
    aligned_end = int((end // resolution) * resolution)
    if aligned_start >= aligned_end:
        raise AvailabilityError(
            f"availability for {entity_id or 'entity'} on {weekday or 'day'} "
            f"({window.start}-{window.end}) is shorter than one {resolution}-minute slot once aligned",
            entity_id=entity_id,
            weekday=weekday,
        )
    if misaligned:
        logger.debug(
            "Rounded availability for %s on %s to %s-%s",
            entity_id,
            weekday,
            _time_from_minutes(aligned_start),
            _time_from_minutes(aligned_end),
        )
    return aligned_start, aligned_end


def iter_horizon_days(start: date, end: date) -> Iterator[date]:
    """Yield each day of the half-open horizon ``[start, end)``."""

    current = start
    while current < end:
        yield current
        current += timedelta(days=1)


def normalize_availability(
    availability: Mapping[str, Optional[DayWindow]],
    horizon_start: date,
    horizon_end: date,
    *,
    resolution: int = DEFAULT_RESOLUTION_MINUTES,
    alignment: Literal["reject", "round"] = "reject",
    entity_id: str | None = None,
) -> frozenset[TimeSlot]:
    """
    Expand a weekday -> window mapping into the set of ``resolution``-wide
    slots covered within ``[horizon_start, horizon_end)``.

    Every window is validated up front, even for weekdays that do not occur
    inside the horizon, so malformed data is reported before any scheduling.
    """

    validate_resolution(resolution)

    bounds: dict[str, tuple[int, int]] = {}
    for weekday, window in availability.items():
        key = weekday.lower()
        if key not in WEEKDAYS:
            raise AvailabilityError(
                f"unknown weekday {weekday!r} in availability for {entity_id or 'entity'}",
                entity_id=entity_id,
                weekday=weekday,
            )
        if window is None:
            continue
        bounds[key] = normalize_window(
            window,
            resolution=resolution,
            alignment=alignment,
            entity_id=entity_id,
            weekday=key,
        )

    slots: set[TimeSlot] = set()
    for day in iter_horizon_days(horizon_start, horizon_end):
        day_bounds = bounds.get(WEEKDAYS[day.weekday()])
        if day_bounds is None:
            continue
        midnight = datetime.combine(day, time.min)
        start, end = day_bounds
        for offset in range(start, end, resolution):
            slots.add(TimeSlot(start=midnight + timedelta(minutes=offset), duration_minutes=resolution))
    return frozenset(slots)


def covered_by(slot: TimeSlot, cells: frozenset[TimeSlot] | set[TimeSlot], resolution: int) -> bool:
    """True when every grid cell of ``slot`` is present in ``cells``."""

    for offset in range(0, slot.duration_minutes, resolution):
        cell = TimeSlot(start=slot.start + timedelta(minutes=offset), duration_minutes=resolution)
        if cell not in cells:
            return False
    return True


def within_bands(slot: TimeSlot, bands: Iterable[DayWindow]) -> bool:
    """True when ``slot`` lies inside one of the time-of-day ``bands``, or no bands are set."""

    bands = tuple(bands)
    if not bands:
        return True
    if slot.end.date() != slot.start.date() and slot.end.time() != time.min:
        return False
    start = _minutes_of(slot.start.time())
    end = start + slot.duration_minutes
    for band in bands:
        band_start, band_end = _window_minutes(band)
        if band_start <= start and end <= band_end:
            return True
    return False
