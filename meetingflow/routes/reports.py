"""
Reporting API routes.

Postmortems for finished requests and aggregate performance over a date
range.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from meetingflow.dependencies.auth import TokenPayload, get_current_user
from meetingflow.dependencies.services import get_scheduling_service
from meetingflow.errors import SchedulerError
from meetingflow.models.postmortem import Postmortem
from meetingflow.routes.errors import http_error
from meetingflow.services.scheduling_service import SchedulingService


router = APIRouter(prefix="/api/reports", tags=["reports"])


class PostmortemResponse(BaseModel):
    """Response model for a request postmortem."""
    request_id: str
    outcome: str
    total_actions: int
    inbound_count: int
    outbound_count: int
    follow_up_count: int
    exchanges_by_channel: dict
    channels_used: list[str]
    fallback_used: bool
    time_to_outcome_seconds: float | None = None
    mean_gap_seconds: float | None = None
    max_gap_seconds: float | None = None
    efficiency_score: int
    key_insight: str | None = None
    timeline: list[dict]


def postmortem_to_response(postmortem: Postmortem) -> PostmortemResponse:
    return PostmortemResponse(
        request_id=postmortem.request_id,
        outcome=postmortem.outcome,
        total_actions=postmortem.total_actions,
        inbound_count=postmortem.inbound_count,
        outbound_count=postmortem.outbound_count,
        follow_up_count=postmortem.follow_up_count,
        exchanges_by_channel=postmortem.exchanges_by_channel,
        channels_used=postmortem.channels_used,
        fallback_used=postmortem.fallback_used,
        time_to_outcome_seconds=postmortem.time_to_outcome_seconds,
        mean_gap_seconds=postmortem.mean_gap_seconds,
        max_gap_seconds=postmortem.max_gap_seconds,
        efficiency_score=postmortem.efficiency_score,
        key_insight=postmortem.key_insight,
        timeline=postmortem.timeline,
    )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@router.post("/postmortems/{request_id}", response_model=PostmortemResponse)
async def create_postmortem(
    request_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """
    Build (or rebuild) the postmortem of a finished request.

    Returns 409 while the request is still live.
    """
    try:
        postmortem = await service.create_postmortem(request_id)
    except SchedulerError as e:
        raise http_error(e)
    return postmortem_to_response(postmortem)


@router.get("/performance", response_model=dict)
async def performance_report(
    start: datetime = Query(...),
    end: datetime = Query(...),
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Aggregate postmortems of requests closed in [start, end). Naive times are UTC."""
    start, end = _aware(start), _aware(end)
    if end <= start:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end must be after start"
        )
    try:
        return await service.performance_report(start, end)
    except SchedulerError as e:
        raise http_error(e)
