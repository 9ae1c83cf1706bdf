import threading
from datetime import time, timedelta
from itertools import combinations

import pytest

from therapy_scheduler.services.cache import CompatibilityCache
from therapy_scheduler.services.conflicts import DOUBLE_BOOKING, UNIT_EXHAUSTION, units_for
from therapy_scheduler.services.domain import DayWindow, TimeSlot
from therapy_scheduler.services.scheduler import (
    RunState,
    SchedulingInputError,
    evaluate_schedule_violations,
    generate_schedule,
    suggest_alternatives,
)
from therapy_scheduler.services.timegrid import AvailabilityError

from .factories import (
    MONDAY,
    TUESDAY,
    at,
    build_client,
    build_context,
    build_rules,
    build_session,
    build_therapist,
)

ONE_HOUR = {"monday": DayWindow(time(9), time(10))}


def test_single_pair_single_hour_proposes_one_session() -> None:
    context = build_context(
        [build_therapist()],
        [build_client(authorized_units={"one_to_one": 8}, availability=ONE_HOUR)],
    )

    result = generate_schedule(context)

    assert result.state is RunState.DONE
    assert result.cancelled is False
    assert len(result.sessions) == 1
    session = result.sessions[0]
    assert (session.therapist_id, session.client_id) == ("therapist-a", "client-x")
    assert session.slot == TimeSlot(at(MONDAY, 9), 60)
    assert session.status == "proposed"
    assert session.score == pytest.approx(0.94)
    assert result.violations == []


def test_full_day_stops_at_authorized_units() -> None:
    context = build_context([build_therapist()], [build_client(authorized_units={"one_to_one": 8})])

    result = generate_schedule(context)

    assert [session.slot.start for session in result.sessions] == [at(MONDAY, 9), at(MONDAY, 10)]
    assert any(discard.report.constraint == UNIT_EXHAUSTION for discard in result.discards)


def test_competing_clients_tie_break_on_client_id() -> None:
    therapist = build_therapist(availability=ONE_HOUR)
    clients = [
        build_client(id="client-y", availability=ONE_HOUR),
        build_client(id="client-x", availability=ONE_HOUR),
    ]

    result = generate_schedule(build_context([therapist], clients))

    assert [session.client_id for session in result.sessions] == ["client-x"]
    losing = [discard for discard in result.discards if discard.client_id == "client-y"]
    assert losing
    assert losing[0].report.constraint == DOUBLE_BOOKING
    assert losing[0].stage == "assembly"


def test_exhausted_authorization_proposes_nothing() -> None:
    client = build_client(id="client-z", authorized_units={"one_to_one": 8}, used_units={"one_to_one": 8})

    result = generate_schedule(build_context([build_therapist()], [client]))

    assert result.sessions == []
    assert result.discards
    assert {discard.report.constraint for discard in result.discards} == {UNIT_EXHAUSTION}


def test_week_long_roster_has_no_conflicts() -> None:
    therapists = [
        build_therapist(id="therapist-a", weekly_hours_max=20),
        build_therapist(id="therapist-b", current_caseload=5, specialties=frozenset({"ABA", "speech"})),
    ]
    clients = [
        build_client(id="client-x", authorized_units={"one_to_one": 24}),
        build_client(id="client-y", service_preferences=frozenset({"speech"}), authorized_units={"one_to_one": 16}),
        build_client(id="client-z", authorized_units={"one_to_one": 40}, used_units={"one_to_one": 20}),
    ]
    context = build_context(therapists, clients, horizon_end=MONDAY + timedelta(days=7))
    constraints = context.rules.constraints

    result = generate_schedule(context, workers=3)

    assert result.sessions
    for attribute in ("therapist_id", "client_id"):
        for first, second in combinations(result.sessions, 2):
            if getattr(first, attribute) == getattr(second, attribute):
                assert not first.slot.overlaps(second.slot)
    for client in clients:
        booked = sum(
            units_for(session.slot.duration_minutes, constraints.unit_minutes)
            for session in result.sessions
            if session.client_id == client.id
        )
        assert client.used_units.get("one_to_one", 0) + booked <= client.authorized_units["one_to_one"]
    assert sum(1 for session in result.sessions if session.therapist_id == "therapist-a") <= 20
    assert result.violations == []
    assert all(session.slot.day.weekday() < 5 for session in result.sessions)


def test_runs_are_reproducible() -> None:
    context = build_context(
        [build_therapist(id="therapist-b"), build_therapist(id="therapist-a")],
        [build_client(id="client-y"), build_client(id="client-x")],
    )

    first = generate_schedule(context)
    second = generate_schedule(context, CompatibilityCache(), workers=4)

    assert [(s.therapist_id, s.client_id, s.slot) for s in first.sessions] == [
        (s.therapist_id, s.client_id, s.slot) for s in second.sessions
    ]


def test_existing_sessions_block_their_slots() -> None:
    context = build_context(
        [build_therapist()],
        [build_client(availability=ONE_HOUR)],
        existing_sessions=[build_session(client_id="client-y")],
    )

    result = generate_schedule(context)

    assert result.sessions == []
    assert all(discard.report.constraint == DOUBLE_BOOKING for discard in result.discards)


def test_max_sessions_limits_the_proposal() -> None:
    context = build_context([build_therapist()], [build_client()], max_sessions=1)

    result = generate_schedule(context)

    assert len(result.sessions) == 1
    assert result.cancelled is False


def test_cancelled_run_returns_partial_result() -> None:
    cancel_event = threading.Event()
    cancel_event.set()

    result = generate_schedule(build_context([build_therapist()], [build_client()]), cancel_event=cancel_event)

    assert result.cancelled is True
    assert result.sessions == []
    assert result.state is RunState.DONE


def test_expired_deadline_cancels_the_run() -> None:
    result = generate_schedule(build_context([build_therapist()], [build_client()]), deadline_seconds=0)

    assert result.cancelled is True


def test_bad_availability_fails_before_scheduling() -> None:
    client = build_client(availability={"monday": DayWindow(time(9, 10), time(10))})

    with pytest.raises(AvailabilityError) as excinfo:
        generate_schedule(build_context([build_therapist()], [client]))

    assert excinfo.value.entity_id == "client-x"


def test_rounding_alignment_accepts_misaligned_windows() -> None:
    client = build_client(availability={"monday": DayWindow(time(8, 50), time(10, 5))})
    context = build_context([build_therapist()], [client], rules=build_rules(alignment="round"))

    result = generate_schedule(context)

    assert [session.slot.start for session in result.sessions] == [at(MONDAY, 9)]


@pytest.mark.parametrize(
    "overrides",
    [
        {"horizon_end": MONDAY},
        {"resolution_minutes": 7},
        {"session_minutes": 50},
        {"max_sessions": -1},
    ],
)
def test_invalid_requests_are_rejected(overrides: dict) -> None:
    with pytest.raises(SchedulingInputError):
        generate_schedule(build_context([build_therapist()], [build_client()], **overrides))


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(SchedulingInputError):
        generate_schedule(build_context([build_therapist(), build_therapist()], [build_client()]))


def test_shared_cache_is_reused_across_runs() -> None:
    cache = CompatibilityCache()
    context = build_context([build_therapist()], [build_client()])

    generate_schedule(context, cache)
    result = generate_schedule(context, cache)

    assert result.cache_stats is not None
    assert result.cache_stats.total == 1
    assert result.cache_stats.hits == 1


def test_violation_audit_flags_overlaps_and_hour_overruns() -> None:
    context = build_context([build_therapist(weekly_hours_max=3)], [build_client()], horizon_end=TUESDAY)
    sessions = [
        build_session(slot=TimeSlot(at(MONDAY, 9), 120), status="proposed"),
        build_session(client_id="client-y", slot=TimeSlot(at(MONDAY, 10), 120), status="proposed"),
    ]

    codes = [violation.code for violation in evaluate_schedule_violations(context, sessions)]

    assert codes == ["double-booking", "hours-per-week-exceeded"]


def test_alternatives_rank_other_slots_for_the_same_pair() -> None:
    moved = build_session()
    client = build_client(availability={"monday": DayWindow(time(9), time(12))})
    context = build_context([build_therapist()], [client], existing_sessions=[moved])

    result = suggest_alternatives(context, moved, limit=3)

    assert [candidate.slot.start for candidate in result.alternatives] == [
        at(MONDAY, 9, 15),
        at(MONDAY, 9, 30),
        at(MONDAY, 9, 45),
    ]
    assert all(candidate.score == pytest.approx(0.94) for candidate in result.alternatives)
    assert result.alternatives == sorted(result.alternatives, key=lambda candidate: candidate.rank_key())


def test_alternatives_do_not_charge_the_moved_session_twice() -> None:
    moved = build_session()
    client = build_client(authorized_units={"one_to_one": 4}, used_units={"one_to_one": 4})
    context = build_context([build_therapist()], [client], existing_sessions=[moved])

    result = suggest_alternatives(context, moved, limit=1)

    assert [candidate.slot.start for candidate in result.alternatives] == [at(MONDAY, 9, 15)]


def test_alternatives_are_empty_when_every_other_slot_conflicts() -> None:
    moved = build_session()
    blocking = build_session(client_id="client-y", slot=TimeSlot(at(MONDAY, 10), 60))
    client = build_client(availability={"monday": DayWindow(time(9), time(11))})
    context = build_context([build_therapist()], [client], existing_sessions=[moved, blocking])

    result = suggest_alternatives(context, moved)

    assert result.alternatives == []
    assert result.discards
    assert {discard.report.constraint for discard in result.discards} == {DOUBLE_BOOKING}
    assert all(discard.slot != moved.slot for discard in result.discards)


def test_alternatives_require_the_session_pair_in_the_roster() -> None:
    context = build_context([build_therapist()], [build_client()])

    with pytest.raises(SchedulingInputError):
        suggest_alternatives(context, build_session(therapist_id="therapist-missing"))
    with pytest.raises(SchedulingInputError):
        suggest_alternatives(context, build_session(), limit=0)
