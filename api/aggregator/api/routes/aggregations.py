from fastapi import APIRouter, Depends, HTTPException, status

from aggregator.core.auth import RequestContext
from aggregator.core.security import get_human_principal
from aggregator.schemas.aggregation import FeedRequest, PollResultOut, SearchRequest, ServiceResultOut
from aggregator.services.aggregation import AggregationJobNotFoundError, PollResult, get_coordinator
from aggregator.services.repository import RecordStoreUnavailableError

router = APIRouter()


@router.post("/search", response_model=PollResultOut)
async def start_search(
    payload: SearchRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> PollResultOut:
    try:
        principal.require_scopes({"aggregation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="query must not be blank")

    try:
        result = await coordinator.start_search(RequestContext.for_principal(principal), principal.subject, query)
    except RecordStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _to_out(result)


@router.post("/feed", response_model=PollResultOut)
async def start_feed(
    payload: FeedRequest,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> PollResultOut:
    try:
        principal.require_scopes({"aggregation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await coordinator.start_feed(RequestContext.for_principal(principal), principal.subject, payload.since)
    except RecordStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _to_out(result)


@router.get("/jobs/{job_id}", response_model=PollResultOut)
async def poll_job(
    job_id: str,
    principal=Depends(get_human_principal),
    coordinator=Depends(get_coordinator),
) -> PollResultOut:
    try:
        principal.require_scopes({"aggregation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await coordinator.poll(RequestContext.for_principal(principal), job_id, user_id=principal.subject)
    except RecordStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except AggregationJobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return _to_out(result)


def _to_out(result: PollResult) -> PollResultOut:
    return PollResultOut(
        job_id=result.job_id,
        kind=result.kind.value,
        state=result.state.value,
        service_results=[
            ServiceResultOut(
                provider_id=entry.provider_id,
                service_id=entry.service_id,
                account_id=entry.account_id,
                pending=entry.pending,
                error_message=entry.error_message,
                items=entry.items,
            )
            for entry in result.service_results
        ],
        items=result.items,
    )
