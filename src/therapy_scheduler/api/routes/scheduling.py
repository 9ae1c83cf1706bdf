import logging
from typing import Annotated, Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from therapy_scheduler.core.config import Settings, get_settings
from therapy_scheduler.schemas.scheduling import (
    AlternativesRequest,
    AlternativesResponse,
    CacheStatsRead,
    CacheSweepResponse,
    RosterRequest,
    ScheduleRequest,
    ScheduleResponse,
)
from therapy_scheduler.services.cache import CompatibilityCache
from therapy_scheduler.services.rules import RuleSet, load_default_rules
from therapy_scheduler.services.scheduler import (
    SchedulingContext,
    SchedulingInputError,
    build_assembler,
    suggest_alternatives,
)
from therapy_scheduler.services.timegrid import AvailabilityError

logger = logging.getLogger(__name__)

router = APIRouter()

UNPROCESSABLE = 422


def get_score_cache(request: Request) -> CompatibilityCache:
    """Return the process-wide score cache, sweeping expired entries first."""

    cache: CompatibilityCache = request.app.state.score_cache
    cache.invalidate_expired()
    return cache


def _build_rules(payload: RosterRequest) -> RuleSet:
    defaults = load_default_rules().constraints
    if payload.constraints is None:
        return RuleSet(constraints=defaults)
    update = payload.constraints.as_update(defaults.default_unit_caps.model_dump())
    try:
        return RuleSet(constraints=defaults.with_overrides(update))
    except ValidationError as exc:
        raise HTTPException(
            status_code=UNPROCESSABLE,
            detail={
                "message": "Invalid constraint overrides",
                "errors": exc.errors(include_url=False, include_context=False),
            },
        ) from exc


def _build_context(payload: RosterRequest, settings: Settings, **fields: Any) -> SchedulingContext:
    return SchedulingContext(
        therapists=[therapist.to_domain() for therapist in payload.therapists],
        clients=[client.to_domain() for client in payload.clients],
        horizon_start=payload.horizon_start,
        horizon_end=payload.horizon_end,
        rules=_build_rules(payload),
        existing_sessions=[session.to_domain() for session in payload.existing_sessions],
        resolution_minutes=payload.resolution_minutes or settings.grid_resolution_minutes,
        **fields,
    )


async def _run_engine(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except AvailabilityError as exc:
        raise HTTPException(
            status_code=UNPROCESSABLE,
            detail={"message": str(exc), "entity_id": exc.entity_id, "weekday": exc.weekday},
        ) from exc
    except SchedulingInputError as exc:
        raise HTTPException(status_code=UNPROCESSABLE, detail=str(exc)) from exc


@router.post("/proposals", response_model=ScheduleResponse)
async def propose_schedule(
    payload: ScheduleRequest,
    cache: Annotated[CompatibilityCache, Depends(get_score_cache)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ScheduleResponse:
    """Run one scheduling pass and return proposals plus discard diagnostics for review."""

    context = _build_context(
        payload,
        settings,
        session_minutes=payload.session_minutes,
        session_type=payload.session_type,
        max_sessions=payload.max_sessions,
    )
    assembler = build_assembler(
        cache,
        context.rules,
        resolution=context.resolution_minutes,
        score_ttl=settings.score_cache_ttl_seconds,
        workers=settings.scoring_workers,
    )
    result = await _run_engine(assembler.run, context, deadline_seconds=settings.run_deadline_seconds)
    return ScheduleResponse.from_result(result)


@router.post("/alternatives", response_model=AlternativesResponse)
async def propose_alternatives(
    payload: AlternativesRequest,
    cache: Annotated[CompatibilityCache, Depends(get_score_cache)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AlternativesResponse:
    """Rank other feasible times for one session, e.g. after it was found to conflict."""

    session = payload.session.to_domain()
    context = _build_context(
        payload,
        settings,
        session_minutes=session.slot.duration_minutes,
        session_type=session.session_type,
    )
    result = await _run_engine(
        suggest_alternatives,
        context,
        session,
        cache,
        limit=payload.limit,
        score_ttl=settings.score_cache_ttl_seconds,
    )
    return AlternativesResponse.from_result(result)


@router.get("/cache/stats", response_model=CacheStatsRead)
async def read_cache_stats(request: Request) -> CacheStatsRead:
    return CacheStatsRead.from_stats(request.app.state.score_cache.stats())


@router.post("/cache/sweep", response_model=CacheSweepResponse)
async def sweep_cache(request: Request) -> CacheSweepResponse:
    """Remove expired entries on demand; scheduling calls also sweep before they run."""

    cache: CompatibilityCache = request.app.state.score_cache
    removed = cache.invalidate_expired()
    return CacheSweepResponse(removed=removed, stats=CacheStatsRead.from_stats(cache.stats()))
