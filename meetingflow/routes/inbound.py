"""
Inbound provider callbacks.

Replies from the email/SMS gateways and Twilio delivery status callbacks.
Both are idempotent: providers retry, and a repeated callback is a no-op.
Replies authenticate with X-Inbound-Token; Twilio callbacks carry
X-Twilio-Signature instead, since Twilio cannot send custom headers.
"""
import base64
import hashlib
import hmac
from datetime import datetime

from fastapi import APIRouter, Depends, Form, Header, HTTPException, Request, Response, status
from pydantic import BaseModel

from meetingflow.config import settings
from meetingflow.dependencies.services import get_scheduling_service, get_task_queue
from meetingflow.errors import CorrelationFailure, SchedulerError
from meetingflow.logging_config import get_logger
from meetingflow.models.scheduling import Channel
from meetingflow.routes.errors import http_error
from meetingflow.services.scheduling_service import InboundSignal, SchedulingService, SignalIntent, SignalOutcome

log = get_logger(component="inbound")

router = APIRouter(prefix="/api/inbound", tags=["inbound"])


class InboundReplyBody(BaseModel):
    """A reply as normalised by the inbound gateway."""
    provider: str
    conversation_id: str
    message_id: str
    body: str = ""
    channel: Channel = Channel.EMAIL
    intent: SignalIntent = SignalIntent.REPLY
    request_id: str | None = None
    selected_slot_start: datetime | None = None
    sender: str | None = None


async def verify_inbound_token(x_inbound_token: str | None = Header(default=None)):
    """Require the shared inbound secret when one is configured."""
    expected = settings.INBOUND_API_TOKEN
    if not expected:
        return
    if not x_inbound_token or not hmac.compare_digest(x_inbound_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid inbound token"
        )


def twilio_signature(auth_token: str, url: str, params: dict[str, str]) -> str:
    """Twilio request signature: HMAC-SHA1 over the URL followed by the sorted form params."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


async def verify_twilio_signature(request: Request, x_twilio_signature: str | None = Header(default=None)):
    """Check X-Twilio-Signature when a Twilio auth token is configured."""
    auth_token = settings.TWILIO_AUTH_TOKEN
    if not auth_token:
        return
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    url = settings.TWILIO_STATUS_CALLBACK_URL or str(request.url)
    expected = twilio_signature(auth_token, url, params)
    if not x_twilio_signature or not hmac.compare_digest(x_twilio_signature, expected):
        log.warning("twilio_signature_rejected", url=url)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Twilio signature"
        )


@router.post("/replies", response_model=dict, dependencies=[Depends(verify_inbound_token)])
async def receive_reply(
    body: InboundReplyBody,
    response: Response,
    service: SchedulingService = Depends(get_scheduling_service),
    enqueue=Depends(get_task_queue),
):
    """
    Apply an inbound reply to its scheduling request.

    A reply that matches no request is accepted with 202 so the gateway does
    not retry it forever; the failure is logged.
    """
    signal = InboundSignal(**body.model_dump())
    try:
        result = await service.handle_inbound_signal(signal)
    except CorrelationFailure as e:
        response.status_code = status.HTTP_202_ACCEPTED
        return {"outcome": SignalOutcome.CORRELATION_FAILED.value, "detail": str(e)}
    except SchedulerError as e:
        raise http_error(e)

    if result.outcome == SignalOutcome.PROCESSED and result.request_id:
        await enqueue("drive_request", result.request_id)

    return {
        "outcome": result.outcome.value,
        "request_id": result.request_id,
        "status": result.status.value if result.status else None,
    }


@router.post("/sms-status", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(verify_twilio_signature)])
async def sms_status_callback(
    MessageSid: str = Form(...),
    MessageStatus: str = Form(...),
    ErrorCode: str | None = Form(default=None),
    ErrorMessage: str | None = Form(default=None),
    service: SchedulingService = Depends(get_scheduling_service),
    enqueue=Depends(get_task_queue),
):
    """
    Twilio StatusCallback.

    undelivered/failed statuses schedule the email fallback for the request
    that sent the message; everything else is acknowledged and ignored.
    """
    error = ErrorMessage or (f"Twilio error {ErrorCode}" if ErrorCode else None)
    try:
        request_id = await service.handle_delivery_status(MessageSid, MessageStatus, error)
    except SchedulerError as e:
        raise http_error(e)

    log.info("sms_status_received", message_sid=MessageSid, status=MessageStatus, recorded=request_id is not None)
    if request_id:
        await enqueue("drive_request", request_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
