"""
Scheduling API routes.

Command surface for scheduling requests: creation, drafts, sending and
operator transitions. All state changes go through SchedulingService.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from meetingflow.dependencies.auth import TokenPayload, get_current_user, require_admin
from meetingflow.dependencies.services import get_scheduling_service, get_task_queue
from meetingflow.errors import SchedulerError
from meetingflow.models.scheduling import (
    Action,
    Actor,
    Attendee,
    AttendeeSide,
    Channel,
    Draft,
    SchedulingRequest,
    SchedulingStatus,
)
from meetingflow.routes.errors import http_error
from meetingflow.services.scheduling_service import AttendeeSpec, SchedulingService


router = APIRouter(prefix="/api/scheduling", tags=["scheduling"])


# Pydantic models for request/response
class AttendeeBody(BaseModel):
    """Request model for an attendee."""
    side: AttendeeSide
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    user_id: str | None = None
    calendar_identity: str | None = None
    is_primary_contact: bool = False

    def to_spec(self) -> AttendeeSpec:
        return AttendeeSpec(**self.model_dump())


class CreateRequestBody(BaseModel):
    """Request model for creating a scheduling request."""
    title: str = Field(min_length=1, max_length=255)
    attendees: list[AttendeeBody] = []
    thread_key: str | None = None
    source_message_id: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0, le=480)
    timezone: str | None = None
    preferred_channel: Channel = Channel.EMAIL
    auto_propose: bool = False


class GenerateDraftBody(BaseModel):
    subject: str | None = None
    body: str | None = None
    seed: int | None = None


class UpdateDraftBody(BaseModel):
    """Text-only edit; the proposed slots are fixed."""
    model_config = ConfigDict(extra="forbid")

    subject: str | None = None
    body: str | None = None


class InvitationBody(BaseModel):
    subject: str
    body: str
    channel: Channel | None = None


class SendBody(BaseModel):
    channel: Channel | None = None


class ConfirmBody(BaseModel):
    slot_start: datetime | None = None
    reason: str | None = None


class CancelBody(BaseModel):
    reason: str | None = None


class AttendeeResponse(BaseModel):
    id: str
    side: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    user_id: str | None = None
    calendar_identity: str | None = None
    is_primary_contact: bool


class RequestResponse(BaseModel):
    """Response model for a scheduling request."""
    id: str
    title: str
    status: str
    owner_id: str
    thread_key: str
    source_message_id: str | None = None
    duration_minutes: int
    timezone: str
    preferred_channel: str
    next_action_type: str | None = None
    next_action_at: str | None = None
    confirmed_slot_start: str | None = None
    confirmed_slot_end: str | None = None
    outcome_reason: str | None = None
    action_count: int
    created_at: str | None = None
    closed_at: str | None = None
    attendees: list[AttendeeResponse] | None = None


class DraftResponse(BaseModel):
    id: str
    request_id: str
    version: int
    subject: str
    body: str
    slots: list[dict]
    is_live: bool
    generated_at: str
    edited_at: str | None = None


class ActionResponse(BaseModel):
    sequence: int
    action_type: str
    actor: str
    content: str | None = None
    channel: str | None = None
    external_message_id: str | None = None
    provider_message_id: str | None = None
    draft_id: str | None = None
    details: dict
    created_at: str


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def attendee_to_response(attendee: Attendee) -> AttendeeResponse:
    return AttendeeResponse(
        id=attendee.id,
        side=attendee.side.value,
        name=attendee.name,
        email=attendee.email,
        phone=attendee.phone,
        user_id=attendee.user_id,
        calendar_identity=attendee.calendar_identity,
        is_primary_contact=attendee.is_primary_contact,
    )


def request_to_response(request: SchedulingRequest, attendees: list[Attendee] | None = None) -> RequestResponse:
    """Convert SchedulingRequest model to RequestResponse."""
    return RequestResponse(
        id=request.id,
        title=request.title,
        status=request.status.value,
        owner_id=request.owner_id,
        thread_key=request.thread_key,
        source_message_id=request.source_message_id,
        duration_minutes=request.duration_minutes,
        timezone=request.timezone,
        preferred_channel=request.preferred_channel.value,
        next_action_type=request.next_action_type.value if request.next_action_type else None,
        next_action_at=_iso(request.next_action_at),
        confirmed_slot_start=_iso(request.confirmed_slot_start),
        confirmed_slot_end=_iso(request.confirmed_slot_end),
        outcome_reason=request.outcome_reason,
        action_count=request.action_count,
        created_at=_iso(request.created_at),
        closed_at=_iso(request.closed_at),
        attendees=[attendee_to_response(a) for a in attendees] if attendees is not None else None,
    )


def draft_to_response(draft: Draft) -> DraftResponse:
    return DraftResponse(
        id=draft.id,
        request_id=draft.request_id,
        version=draft.version,
        subject=draft.subject,
        body=draft.body,
        slots=draft.slots,
        is_live=draft.is_live,
        generated_at=draft.generated_at.isoformat(),
        edited_at=_iso(draft.edited_at),
    )


def action_to_response(action: Action) -> ActionResponse:
    return ActionResponse(
        sequence=action.sequence,
        action_type=action.action_type.value,
        actor=action.actor.value,
        content=action.content,
        channel=action.channel.value if action.channel else None,
        external_message_id=action.external_message_id,
        provider_message_id=action.provider_message_id,
        draft_id=action.draft_id,
        details=action.details,
        created_at=action.created_at.isoformat(),
    )


# ============================================
# Requests
# ============================================

@router.post("/requests", response_model=RequestResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    body: CreateRequestBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """
    Create a scheduling request in draft.

    With auto_propose the background driver computes availability and sends
    the first proposal on its next run.
    """
    try:
        request = await service.create_request(
            owner_id=current_user.sub,
            title=body.title,
            attendees=[attendee.to_spec() for attendee in body.attendees],
            thread_key=body.thread_key,
            source_message_id=body.source_message_id,
            duration_minutes=body.duration_minutes,
            timezone=body.timezone,
            preferred_channel=body.preferred_channel,
            auto_propose=body.auto_propose,
        )
        attendees = await service.list_attendees(request.id)
    except SchedulerError as e:
        raise http_error(e)
    return request_to_response(request, attendees)


@router.get("/requests", response_model=list[RequestResponse])
async def list_requests(
    status_filter: SchedulingStatus | None = Query(default=None, alias="status"),
    owner_id: str | None = None,
    limit: int = 100,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """List requests, newest first."""
    requests = await service.list_requests(status=status_filter, owner_id=owner_id, limit=min(limit, 500))
    return [request_to_response(request) for request in requests]


@router.get("/requests/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        request = await service.get_request(request_id)
        attendees = await service.list_attendees(request_id)
    except SchedulerError as e:
        raise http_error(e)
    return request_to_response(request, attendees)


@router.post("/requests/{request_id}/attendees", response_model=AttendeeResponse, status_code=status.HTTP_201_CREATED)
async def add_attendee(
    request_id: str,
    body: AttendeeBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        attendee = await service.add_attendee(request_id, body.to_spec())
    except SchedulerError as e:
        raise http_error(e)
    return attendee_to_response(attendee)


@router.get("/requests/{request_id}/actions", response_model=list[ActionResponse])
async def list_actions(
    request_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """The request's action log in sequence order."""
    try:
        actions = await service.list_actions(request_id)
    except SchedulerError as e:
        raise http_error(e)
    return [action_to_response(action) for action in actions]


@router.delete("/requests/{request_id}", response_model=dict)
async def delete_request(
    request_id: str,
    admin: TokenPayload = Depends(require_admin),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Remove a request and its history (admin only)."""
    try:
        await service.delete_request(request_id)
    except SchedulerError as e:
        raise http_error(e)
    return {"message": "Scheduling request deleted", "id": request_id}


# ============================================
# Drafts
# ============================================

@router.get("/requests/{request_id}/draft", response_model=DraftResponse)
async def get_draft(
    request_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        draft = await service.get_draft(request_id)
    except SchedulerError as e:
        raise http_error(e)
    return draft_to_response(draft)


@router.post("/requests/{request_id}/draft", response_model=DraftResponse, status_code=status.HTTP_201_CREATED)
async def generate_draft(
    request_id: str,
    body: GenerateDraftBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """
    Compute availability and create the first draft.

    Returns 409 if a live draft exists; use /draft/regenerate instead.
    """
    try:
        draft = await service.generate_draft(request_id, subject=body.subject, body=body.body, seed=body.seed)
    except SchedulerError as e:
        raise http_error(e)
    return draft_to_response(draft)


@router.post("/requests/{request_id}/draft/regenerate", response_model=DraftResponse)
async def regenerate_draft(
    request_id: str,
    body: GenerateDraftBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        draft = await service.regenerate_draft(request_id, subject=body.subject, body=body.body, seed=body.seed)
    except SchedulerError as e:
        raise http_error(e)
    return draft_to_response(draft)


@router.put("/requests/{request_id}/draft", response_model=DraftResponse)
async def update_draft(
    request_id: str,
    body: UpdateDraftBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Edit draft text. Proposed slots cannot be edited."""
    try:
        draft = await service.update_draft(request_id, subject=body.subject, body=body.body)
    except SchedulerError as e:
        raise http_error(e)
    return draft_to_response(draft)


# ============================================
# Sending and transitions
# ============================================

@router.post("/requests/{request_id}/invitation", response_model=RequestResponse)
async def send_invitation(
    request_id: str,
    body: InvitationBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Ask the external party for their availability."""
    try:
        request = await service.send_invitation(request_id, body.subject, body.body, channel=body.channel)
    except SchedulerError as e:
        raise http_error(e)
    return request_to_response(request)


@router.post("/requests/{request_id}/send", response_model=dict)
async def send_draft(
    request_id: str,
    body: SendBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Send the live draft now."""
    try:
        result = await service.send_draft(request_id, channel=body.channel)
        request = await service.get_request(request_id)
    except SchedulerError as e:
        raise http_error(e)

    if result is None:
        # Every channel failed: either the request failed or a retry is queued
        failed = request.status == SchedulingStatus.FAILED
        return {
            "sent": False,
            "outcome": "failed" if failed else "retry_scheduled",
            "status": request.status.value,
            "reason": request.outcome_reason,
            "next_action_at": None if failed else request.next_action_at,
        }
    return {
        "sent": result.sent,
        "outcome": result.outcome.value,
        "channel": result.channel.value,
        "provider_message_id": result.provider_message_id,
        "status": request.status.value,
    }


@router.post("/requests/{request_id}/confirm", response_model=RequestResponse)
async def confirm_request(
    request_id: str,
    body: ConfirmBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
    enqueue=Depends(get_task_queue),
):
    """Confirm a slot. The confirmation message is sent by the worker."""
    if body.slot_start is not None and body.slot_start.tzinfo is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="slot_start must include a UTC offset"
        )
    try:
        request = await service.confirm(request_id, slot_start=body.slot_start, reason=body.reason, actor=Actor.HUMAN)
    except SchedulerError as e:
        raise http_error(e)
    await enqueue("drive_request", request.id)
    return request_to_response(request)


@router.post("/requests/{request_id}/cancel", response_model=RequestResponse)
async def cancel_request(
    request_id: str,
    body: CancelBody,
    current_user: TokenPayload = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        request = await service.cancel(request_id, reason=body.reason)
    except SchedulerError as e:
        raise http_error(e)
    return request_to_response(request)
