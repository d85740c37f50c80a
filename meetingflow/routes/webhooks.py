"""
Webhook API routes.

Provides endpoints for registering and managing external event listeners.
Admin only.
"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from meetingflow.dependencies.auth import TokenPayload, require_admin
from meetingflow.dependencies.services import get_webhook_service
from meetingflow.errors import SchedulerError
from meetingflow.models.webhook import (
    BackoffPolicy,
    Webhook,
    WebhookAuthType,
    WebhookDelivery,
    WebhookDeliveryAttempt,
)
from meetingflow.routes.errors import http_error
from meetingflow.services.webhook_service import WebhookService


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class CreateWebhookRequest(BaseModel):
    """Request model for registering a webhook."""
    name: str = Field(min_length=1, max_length=100)
    url: str
    events: list[str]
    description: str | None = None
    auth_type: WebhookAuthType = WebhookAuthType.HMAC
    secret_key: str | None = None
    auth_value: str | None = None
    custom_headers: dict[str, str] = {}
    max_retries: int | None = Field(default=None, ge=1, le=10)
    retry_delay_seconds: int | None = Field(default=None, ge=0)
    backoff: BackoffPolicy | None = None
    timeout_seconds: int | None = Field(default=None, ge=1, le=120)
    auto_disable_after_failures: int | None = Field(default=None, ge=1)


class UpdateWebhookRequest(BaseModel):
    """Request model for updating a webhook. Omitted fields are unchanged."""
    name: str | None = None
    url: str | None = None
    events: list[str] | None = None
    description: str | None = None
    auth_type: WebhookAuthType | None = None
    secret_key: str | None = None
    auth_value: str | None = None
    custom_headers: dict[str, str] | None = None
    max_retries: int | None = Field(default=None, ge=1, le=10)
    retry_delay_seconds: int | None = Field(default=None, ge=0)
    backoff: BackoffPolicy | None = None
    timeout_seconds: int | None = Field(default=None, ge=1, le=120)
    auto_disable_after_failures: int | None = Field(default=None, ge=1)
    is_active: bool | None = None


class WebhookResponse(BaseModel):
    """Response model for a webhook. The signing secret is only returned on creation."""
    id: str
    name: str
    description: str | None = None
    url: str
    auth_type: str
    events: list[str]
    custom_headers: dict
    max_retries: int
    retry_delay_seconds: int
    backoff: str
    timeout_seconds: int
    is_active: bool
    is_verified: bool
    consecutive_failures: int
    auto_disable_after_failures: int
    disabled_reason: str | None = None
    last_triggered_at: str | None = None
    last_success_at: str | None = None
    last_failure_at: str | None = None
    created_at: str | None = None
    secret_key: str | None = None


class DeliveryResponse(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    event_id: str
    status: str
    attempt_count: int
    response_status: int | None = None
    error_message: str | None = None
    created_at: str | None = None
    completed_at: str | None = None
    attempts: list[dict] | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def webhook_to_response(webhook: Webhook, include_secret: bool = False) -> WebhookResponse:
    """Convert Webhook model to WebhookResponse."""
    return WebhookResponse(
        id=webhook.id,
        name=webhook.name,
        description=webhook.description,
        url=webhook.url,
        auth_type=webhook.auth_type.value,
        events=webhook.events,
        custom_headers=webhook.custom_headers or {},
        max_retries=webhook.max_retries,
        retry_delay_seconds=webhook.retry_delay_seconds,
        backoff=webhook.backoff.value,
        timeout_seconds=webhook.timeout_seconds,
        is_active=webhook.is_active,
        is_verified=webhook.is_verified,
        consecutive_failures=webhook.consecutive_failures,
        auto_disable_after_failures=webhook.auto_disable_after_failures,
        disabled_reason=webhook.disabled_reason,
        last_triggered_at=_iso(webhook.last_triggered_at),
        last_success_at=_iso(webhook.last_success_at),
        last_failure_at=_iso(webhook.last_failure_at),
        created_at=_iso(webhook.created_at),
        secret_key=webhook.secret_key if include_secret else None,
    )


def attempt_to_dict(attempt: WebhookDeliveryAttempt) -> dict:
    return {
        "attempt_number": attempt.attempt_number,
        "succeeded": attempt.succeeded,
        "response_status": attempt.response_status,
        "response_time_ms": attempt.response_time_ms,
        "error_message": attempt.error_message,
        "created_at": attempt.created_at.isoformat(),
    }


def delivery_to_response(delivery: WebhookDelivery, attempts: list[WebhookDeliveryAttempt] | None = None) -> DeliveryResponse:
    return DeliveryResponse(
        id=delivery.id,
        webhook_id=delivery.webhook_id,
        event_type=delivery.event_type,
        event_id=delivery.event_id,
        status=delivery.status.value,
        attempt_count=delivery.attempt_count,
        response_status=delivery.response_status,
        error_message=delivery.error_message,
        created_at=_iso(delivery.created_at),
        completed_at=_iso(delivery.completed_at),
        attempts=[attempt_to_dict(a) for a in attempts] if attempts is not None else None,
    )


@router.post("", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Register a webhook.

    HMAC webhooks get a generated signing secret unless one is supplied;
    it is returned once in this response.
    """
    try:
        webhook = await service.register(**request.model_dump(), created_by=admin.sub)
    except SchedulerError as e:
        raise http_error(e)
    return webhook_to_response(webhook, include_secret=True)


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(
    active_only: bool = False,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    webhooks = await service.list_webhooks(active_only=active_only)
    return [webhook_to_response(webhook) for webhook in webhooks]


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(
    webhook_id: str,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    try:
        webhook = await service.get(webhook_id)
    except SchedulerError as e:
        raise http_error(e)
    return webhook_to_response(webhook)


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    request: UpdateWebhookRequest,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    try:
        webhook = await service.update(webhook_id, **request.model_dump(exclude_unset=True))
    except SchedulerError as e:
        raise http_error(e)
    return webhook_to_response(webhook)


@router.delete("/{webhook_id}", response_model=dict)
async def delete_webhook(
    webhook_id: str,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    """Remove a webhook and its delivery history."""
    try:
        await service.delete(webhook_id)
    except SchedulerError as e:
        raise http_error(e)
    return {"message": "Webhook removed successfully", "id": webhook_id}


@router.post("/{webhook_id}/test", response_model=dict)
async def test_webhook(
    webhook_id: str,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    """Send a synthetic event; success marks the webhook verified."""
    try:
        return await service.test(webhook_id)
    except SchedulerError as e:
        raise http_error(e)


@router.post("/{webhook_id}/enable", response_model=WebhookResponse)
async def enable_webhook(
    webhook_id: str,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    """Re-enable an auto-disabled webhook and reset its failure counter."""
    try:
        webhook = await service.reenable(webhook_id)
    except SchedulerError as e:
        raise http_error(e)
    return webhook_to_response(webhook)


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryResponse])
async def list_deliveries(
    webhook_id: str,
    limit: int = 50,
    include_attempts: bool = False,
    admin: TokenPayload = Depends(require_admin),
    service: WebhookService = Depends(get_webhook_service),
):
    try:
        deliveries = await service.list_deliveries(webhook_id, limit=min(limit, 200))
        responses = []
        for delivery in deliveries:
            attempts = await service.get_delivery_attempts(delivery.id) if include_attempts else None
            responses.append(delivery_to_response(delivery, attempts))
    except SchedulerError as e:
        raise http_error(e)
    return responses
