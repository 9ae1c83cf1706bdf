"""
Compatibility Scorer.

Scores a (therapist, client) pair in ``[0, 1]`` from specialty overlap,
proximity and caseload headroom. Scores are memoized in a
:class:`CompatibilityCache` keyed by the pair plus a fingerprint of the
attributes the score depends on.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from math import atan2, cos, radians, sin, sqrt
from typing import Optional

from therapy_scheduler.services.cache import DEFAULT_TTL_SECONDS, CompatibilityCache
from therapy_scheduler.services.domain import Client, Location, Therapist

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class ScoreWeights:
    specialty: float = 0.4
    proximity: float = 0.3
    caseload: float = 0.3

    def __post_init__(self) -> None:
        if min(self.specialty, self.proximity, self.caseload) < 0:
            raise ValueError("score weights must be non-negative")
        if abs(self.specialty + self.proximity + self.caseload - 1.0) > 1e-9:
            raise ValueError("score weights must sum to 1")


@dataclass(frozen=True)
class ScoreBreakdown:
    specialty: float
    proximity: float
    caseload: float
    total: float


def haversine_km(origin: Location, destination: Location) -> float:
    """Great-circle distance in kilometres."""

    lat1, lon1, lat2, lon2 = map(
        radians, [origin.latitude, origin.longitude, destination.latitude, destination.longitude]
    )
    dlat, dlon = lat2 - lat1, lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * atan2(sqrt(a), sqrt(1 - a))


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def specialty_overlap(therapist: Therapist, client: Client) -> float:
    offered = therapist.specialties | therapist.service_types
    matched = offered & client.service_preferences
    return _clamp(len(matched) / max(1, len(client.service_preferences)))


def proximity_score(therapist: Therapist, client: Client) -> float:
    if therapist.location is None or client.location is None:
        return 1.0
    radius = _travel_radius(therapist, client)
    if radius is None:
        return 1.0
    if radius <= 0:
        return 0.0
    distance = haversine_km(therapist.location, client.location)
    return _clamp(1 - distance / radius)


def _travel_radius(therapist: Therapist, client: Client) -> Optional[float]:
    limits = [limit for limit in (therapist.service_radius_km, client.max_travel_km) if limit is not None]
    return min(limits) if limits else None


def caseload_headroom(therapist: Therapist) -> float:
    if therapist.max_caseload <= 0:
        return 0.0
    return _clamp(1 - therapist.current_caseload / therapist.max_caseload)


def pair_fingerprint(therapist: Therapist, client: Client) -> str:
    """Hash of every attribute the score reads, so edited entities never hit a stale score."""

    parts = (
        sorted(therapist.specialties | therapist.service_types),
        therapist.location,
        therapist.service_radius_km,
        therapist.current_caseload,
        therapist.max_caseload,
        sorted(client.service_preferences),
        client.location,
        client.max_travel_km,
    )
    return hashlib.sha256(repr(parts).encode("utf-8")).hexdigest()[:16]


class CompatibilityScorer:
    def __init__(
        self,
        cache: CompatibilityCache,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        weights: ScoreWeights | None = None,
    ) -> None:
        self.cache = cache
        self.ttl = ttl
        self.weights = weights or ScoreWeights()

    def breakdown(self, therapist: Therapist, client: Client) -> ScoreBreakdown:
        specialty = specialty_overlap(therapist, client)
        proximity = proximity_score(therapist, client)
        caseload = caseload_headroom(therapist)
        if specialty == 0:
            # Clinically mismatched pairs never score, however convenient.
            total = 0.0
        else:
            total = _clamp(
                specialty * self.weights.specialty
                + proximity * self.weights.proximity
                + caseload * self.weights.caseload
            )
        return ScoreBreakdown(specialty=specialty, proximity=proximity, caseload=caseload, total=total)

    def score(self, therapist: Therapist, client: Client) -> float:
        key = ("compatibility", therapist.id, client.id, pair_fingerprint(therapist, client))
        return self.cache.get_or_compute(key, self.ttl, lambda: self._compute(therapist, client))

    def _compute(self, therapist: Therapist, client: Client) -> float:
        result = self.breakdown(therapist, client)
        logger.debug(
            "Scored therapist %s / client %s: specialty=%.2f proximity=%.2f caseload=%.2f total=%.3f",
            therapist.id,
            client.id,
            result.specialty,
            result.proximity,
            result.caseload,
            result.total,
        )
        return result.total
