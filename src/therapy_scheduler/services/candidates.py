"""
Candidate Generator and Ranker.

Enumerates (therapist, client, slot) triples inside the intersection of both
parties' normalized availability, drops the infeasible ones and yields the
rest in a deterministic total order: score descending, then earliest slot,
then therapist id, then client id.

Each pair produces its own lazy, already-ordered stream (the score is fixed
per pair, so slots come out chronologically); ``heapq.merge`` interleaves
them, so the full cross product is never materialized.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from itertools import islice
from typing import Callable, Iterator, Literal, Sequence

from therapy_scheduler.services.conflicts import INTERNAL_ERROR, ConflictDetector, UsageLedger
from therapy_scheduler.services.domain import (
    Candidate,
    Client,
    ConflictReport,
    DiscardedCandidate,
    SessionType,
    Therapist,
    TimeSlot,
)
from therapy_scheduler.services.scoring import CompatibilityScorer
from therapy_scheduler.services.timegrid import (
    DEFAULT_RESOLUTION_MINUTES,
    covered_by,
    iter_horizon_days,
    normalize_availability,
    within_bands,
)

logger = logging.getLogger(__name__)

LOW_COMPATIBILITY = "insufficient compatibility"

DiscardSink = Callable[[DiscardedCandidate], None]


@dataclass(frozen=True)
class PairScore:
    therapist: Therapist
    client: Client
    score: float | None
    error: str | None = None


def _index_by_day(cells: frozenset[TimeSlot]) -> dict[date, frozenset[TimeSlot]]:
    grouped: dict[date, set[TimeSlot]] = defaultdict(set)
    for cell in cells:
        grouped[cell.day].add(cell)
    return {day: frozenset(day_cells) for day, day_cells in grouped.items()}


class CandidateGenerator:
    def __init__(
        self,
        scorer: CompatibilityScorer,
        detector: ConflictDetector,
        *,
        resolution: int = DEFAULT_RESOLUTION_MINUTES,
        alignment: Literal["reject", "round"] = "reject",
        min_score: float = 0.0,
        workers: int = 1,
    ) -> None:
        self.scorer = scorer
        self.detector = detector
        self.resolution = resolution
        self.alignment = alignment
        self.min_score = min_score
        self.workers = max(1, workers)

    def normalize(
        self,
        therapists: Sequence[Therapist],
        clients: Sequence[Client],
        horizon_start: date,
        horizon_end: date,
    ) -> tuple[dict[str, dict[date, frozenset[TimeSlot]]], dict[str, dict[date, frozenset[TimeSlot]]]]:
        """Normalize every roster entry; raises ``AvailabilityError`` on the first bad window."""

        def _normalize(entity_id: str, availability) -> dict[date, frozenset[TimeSlot]]:
            cells = normalize_availability(
                availability,
                horizon_start,
                horizon_end,
                resolution=self.resolution,
                alignment=self.alignment,
                entity_id=entity_id,
            )
            return _index_by_day(cells)

        therapist_cells = {therapist.id: _normalize(therapist.id, therapist.availability) for therapist in therapists}
        client_cells = {client.id: _normalize(client.id, client.availability) for client in clients}
        return therapist_cells, client_cells

    def score_pairs(self, therapists: Sequence[Therapist], clients: Sequence[Client]) -> list[PairScore]:
        """Score every pair, in parallel when ``workers > 1``. Failures are returned, not raised."""

        pairs = [
            (therapist, client)
            for therapist in sorted(therapists, key=lambda item: item.id)
            for client in sorted(clients, key=lambda item: item.id)
        ]

        def _score(pair: tuple[Therapist, Client]) -> PairScore:
            therapist, client = pair
            try:
                return PairScore(therapist, client, self.scorer.score(therapist, client))
            except Exception as exc:
                logger.exception("Scoring failed for therapist %s / client %s", therapist.id, client.id)
                return PairScore(therapist, client, None, error=str(exc) or exc.__class__.__name__)

        if self.workers == 1 or len(pairs) < 2:
            return [_score(pair) for pair in pairs]
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            return list(executor.map(_score, pairs))

    def generate(
        self,
        therapists: Sequence[Therapist],
        clients: Sequence[Client],
        horizon_start: date,
        horizon_end: date,
        ledger: UsageLedger,
        *,
        session_minutes: int,
        session_type: SessionType = "one_to_one",
        on_discard: DiscardSink | None = None,
    ) -> Iterator[Candidate]:
        """
        Yield feasible candidates in rank order.

        ``ledger`` must not change while the iterator is consumed; pass a
        snapshot when the caller commits as it goes.
        """

        sink: DiscardSink = on_discard or (lambda _discard: None)
        therapist_cells, client_cells = self.normalize(therapists, clients, horizon_start, horizon_end)
        days = list(iter_horizon_days(horizon_start, horizon_end))

        streams: list[Iterator[Candidate]] = []
        for pair in self.score_pairs(therapists, clients):
            therapist, client = pair.therapist, pair.client
            if not self._admit(pair, sink):
                continue
            streams.append(
                self._pair_stream(
                    therapist,
                    client,
                    pair.score,
                    days,
                    therapist_cells[therapist.id],
                    client_cells[client.id],
                    ledger,
                    session_minutes=session_minutes,
                    session_type=session_type,
                    sink=sink,
                )
            )
        return heapq.merge(*streams, key=Candidate.rank_key)

    def alternatives(
        self,
        therapist: Therapist,
        client: Client,
        horizon_start: date,
        horizon_end: date,
        ledger: UsageLedger,
        *,
        session_minutes: int,
        session_type: SessionType = "one_to_one",
        limit: int = 5,
        exclude: frozenset[TimeSlot] = frozenset(),
        on_discard: DiscardSink | None = None,
    ) -> list[Candidate]:
        """
        Rank feasible slots for a single pair, best first, skipping ``exclude``.

        The score is fixed for the pair, so rank order is chronological.
        """

        sink: DiscardSink = on_discard or (lambda _discard: None)
        therapist_cells, client_cells = self.normalize([therapist], [client], horizon_start, horizon_end)
        [pair] = self.score_pairs([therapist], [client])
        if not self._admit(pair, sink):
            return []
        stream = self._pair_stream(
            therapist,
            client,
            pair.score,
            list(iter_horizon_days(horizon_start, horizon_end)),
            therapist_cells[therapist.id],
            client_cells[client.id],
            ledger,
            session_minutes=session_minutes,
            session_type=session_type,
            sink=sink,
            skip=exclude,
        )
        return list(islice(stream, limit))

    def _admit(self, pair: PairScore, sink: DiscardSink) -> bool:
        """Gate a scored pair; failed or low-scoring pairs are discarded without a slot."""

        if pair.score is None:
            report = ConflictReport(INTERNAL_ERROR, f"Scoring failed: {pair.error}")
        elif pair.score <= self.min_score:
            report = ConflictReport(
                LOW_COMPATIBILITY,
                f"Compatibility {pair.score:.2f} does not exceed the minimum of {self.min_score:.2f}.",
            )
        else:
            return True
        sink(DiscardedCandidate(pair.therapist.id, pair.client.id, None, report, score=pair.score))
        return False

    def _pair_stream(
        self,
        therapist: Therapist,
        client: Client,
        score: float,
        days: Sequence[date],
        therapist_days: dict[date, frozenset[TimeSlot]],
        client_days: dict[date, frozenset[TimeSlot]],
        ledger: UsageLedger,
        *,
        session_minutes: int,
        session_type: SessionType,
        sink: DiscardSink,
        skip: frozenset[TimeSlot] = frozenset(),
    ) -> Iterator[Candidate]:
        for day in days:
            shared = therapist_days.get(day, frozenset()) & client_days.get(day, frozenset())
            if not shared:
                continue
            for cell in sorted(shared):
                start = cell.start
                slot = TimeSlot(start=start, duration_minutes=session_minutes)
                if slot in skip or not covered_by(slot, shared, self.resolution):
                    continue
                if not within_bands(slot, client.preferred_time_bands):
                    continue
                candidate = Candidate(therapist, client, slot, session_type, score)
                try:
                    report = self.detector.check(candidate, ledger)
                except Exception as exc:
                    logger.exception(
                        "Conflict check failed for therapist %s / client %s at %s", therapist.id, client.id, start
                    )
                    report = ConflictReport(INTERNAL_ERROR, f"Conflict check failed: {exc}")
                if report is not None:
                    sink(DiscardedCandidate(therapist.id, client.id, slot, report, score=score))
                    continue
                yield candidate
