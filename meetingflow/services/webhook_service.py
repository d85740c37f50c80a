"""
Webhook Service

Registers external listeners and delivers signed event payloads to them
with per-webhook retry policy and auto-disable after repeated failures.
Delivery runs after the state change that triggered it has committed, in
sessions of its own, so a failing listener never affects scheduling state.
"""
import asyncio
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import timedelta

import httpx
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meetingflow.config import settings
from meetingflow.database import AsyncSessionLocal
from meetingflow.errors import DeliveryExhausted, InvalidRequest, NotFound
from meetingflow.logging_config import get_logger
from meetingflow.models.base import utcnow
from meetingflow.models.webhook import (
    BackoffPolicy,
    DeliveryStatus,
    Webhook,
    WebhookAuthType,
    WebhookDelivery,
    WebhookDeliveryAttempt,
    WebhookEventType,
)
from meetingflow.routes.metrics import track_webhook_auto_disabled, track_webhook_delivery
from meetingflow.sentry_config import capture_message

log = get_logger(component="webhooks")

SIGNATURE_PREFIX = "sha256="
TEST_EVENT_TYPE = "webhook.test"

# Fields an operator may change after registration
UPDATABLE_FIELDS = frozenset({
    "name", "description", "url", "auth_type", "secret_key", "auth_value", "events",
    "custom_headers", "max_retries", "retry_delay_seconds", "backoff", "timeout_seconds",
    "auto_disable_after_failures", "is_active",
})


def sign_payload(payload: str, secret: str) -> str:
    """HMAC-SHA256 signature header value for a serialized payload."""
    digest = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: str, secret: str, signature: str) -> bool:
    """Constant-time check of a received signature header."""
    return hmac.compare_digest(sign_payload(payload, secret), signature)


def build_event(event_type: str, data: dict, event_id: str | None = None) -> dict:
    return {
        "event_type": event_type,
        "event_id": event_id or str(uuid.uuid4()),
        "timestamp": utcnow().isoformat(),
        "data": data,
    }


def serialize(payload: dict) -> str:
    return json.dumps(payload, default=str, separators=(",", ":"), sort_keys=True)


def retry_delay(webhook: Webhook, attempt_number: int) -> int:
    """Seconds to wait after a failed attempt."""
    if webhook.backoff == BackoffPolicy.EXPONENTIAL:
        return webhook.retry_delay_seconds * (2 ** (attempt_number - 1))
    return webhook.retry_delay_seconds


class WebhookService:
    """Service for webhook registration and delivery."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.sleep = sleep

    # ============================================
    # Registration
    # ============================================

    async def register(
        self,
        name: str,
        url: str,
        events: list[str],
        auth_type: WebhookAuthType = WebhookAuthType.HMAC,
        secret_key: str | None = None,
        auth_value: str | None = None,
        description: str | None = None,
        custom_headers: dict | None = None,
        max_retries: int | None = None,
        retry_delay_seconds: int | None = None,
        backoff: BackoffPolicy | None = None,
        timeout_seconds: int | None = None,
        auto_disable_after_failures: int | None = None,
        created_by: str | None = None,
    ) -> Webhook:
        """
        Register a listener. HMAC webhooks get a generated secret when none
        is supplied.

        Raises:
            InvalidRequest: bad URL, unknown event type or missing bearer token
        """
        self._validate(url, events, auth_type, auth_value)
        if auth_type == WebhookAuthType.HMAC and not secret_key:
            secret_key = secrets.token_hex(32)

        webhook = Webhook(
            name=name,
            description=description,
            url=url,
            auth_type=auth_type,
            secret_key=secret_key,
            auth_value=auth_value,
            events=list(events),
            custom_headers=custom_headers or {},
            max_retries=max_retries or settings.WEBHOOK_MAX_RETRIES,
            retry_delay_seconds=retry_delay_seconds if retry_delay_seconds is not None else settings.WEBHOOK_RETRY_DELAY_SECONDS,
            backoff=backoff or BackoffPolicy(settings.WEBHOOK_BACKOFF),
            timeout_seconds=timeout_seconds or settings.WEBHOOK_TIMEOUT_SECONDS,
            auto_disable_after_failures=auto_disable_after_failures or settings.WEBHOOK_AUTO_DISABLE_AFTER_FAILURES,
            created_by=created_by,
        )
        async with self.session_factory() as db:
            db.add(webhook)
            await db.commit()

        log.info("webhook_registered", webhook_id=webhook.id, url=url, events=events)
        return webhook

    async def list_webhooks(self, active_only: bool = False) -> list[Webhook]:
        stmt = select(Webhook).order_by(Webhook.created_at)
        if active_only:
            stmt = stmt.where(Webhook.is_active.is_(True))
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get(self, webhook_id: str) -> Webhook:
        async with self.session_factory() as db:
            return await self._get(db, webhook_id)

    async def update(self, webhook_id: str, **fields) -> Webhook:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequest(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with self.session_factory() as db:
            webhook = await self._get(db, webhook_id)
            was_active = webhook.is_active
            for key, value in fields.items():
                setattr(webhook, key, value)
            self._validate(webhook.url, webhook.events, webhook.auth_type, webhook.auth_value)
            if fields.get("is_active") and not was_active:
                # Same as reenable(): a reactivated webhook starts a fresh failure count
                webhook.consecutive_failures = 0
                webhook.disabled_reason = None
            await db.commit()

        log.info("webhook_updated", webhook_id=webhook_id, fields=sorted(fields))
        return webhook

    async def reenable(self, webhook_id: str) -> Webhook:
        """Manually re-activate a webhook and reset its failure counter."""
        async with self.session_factory() as db:
            webhook = await self._get(db, webhook_id)
            webhook.is_active = True
            webhook.consecutive_failures = 0
            webhook.disabled_reason = None
            await db.commit()

        log.info("webhook_reenabled", webhook_id=webhook_id)
        return webhook

    async def delete(self, webhook_id: str):
        async with self.session_factory() as db:
            webhook = await self._get(db, webhook_id)
            deliveries = select(WebhookDelivery.id).where(WebhookDelivery.webhook_id == webhook_id)
            await db.execute(delete(WebhookDeliveryAttempt).where(WebhookDeliveryAttempt.delivery_id.in_(deliveries)))
            await db.execute(delete(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id))
            await db.delete(webhook)
            await db.commit()
        log.info("webhook_deleted", webhook_id=webhook_id)

    async def list_deliveries(self, webhook_id: str, limit: int = 50) -> list[WebhookDelivery]:
        async with self.session_factory() as db:
            await self._get(db, webhook_id)
            stmt = (
                select(WebhookDelivery)
                .where(WebhookDelivery.webhook_id == webhook_id)
                .order_by(WebhookDelivery.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_delivery_attempts(self, delivery_id: str) -> list[WebhookDeliveryAttempt]:
        async with self.session_factory() as db:
            if await db.get(WebhookDelivery, delivery_id) is None:
                raise NotFound("webhook delivery", delivery_id)
            stmt = (
                select(WebhookDeliveryAttempt)
                .where(WebhookDeliveryAttempt.delivery_id == delivery_id)
                .order_by(WebhookDeliveryAttempt.attempt_number)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # ============================================
    # Delivery
    # ============================================

    async def emit(self, event_type: str, data: dict, event_id: str | None = None) -> list[WebhookDelivery]:
        """
        Fan an event out to every active webhook subscribed to it.

        One WebhookDelivery is created per webhook and event_id. Emitting an
        event_id again creates nothing for webhooks that already have a
        finished delivery of it and resumes the unfinished ones. Deliveries
        run concurrently and this returns once each has reached a final status.
        """
        payload = build_event(event_type, data, event_id)

        async with self.session_factory() as db:
            stmt = select(Webhook).where(Webhook.is_active.is_(True))
            webhooks = [webhook for webhook in (await db.execute(stmt)).scalars() if webhook.subscribes_to(event_type)]

            stmt = select(WebhookDelivery).where(WebhookDelivery.event_id == payload["event_id"])
            existing = {delivery.webhook_id: delivery for delivery in (await db.execute(stmt)).scalars()}
            active_ids = {webhook.id for webhook in webhooks}
            resumed = [
                delivery for delivery in existing.values()
                if delivery.webhook_id in active_ids
                and delivery.status in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)
            ]

            created = [
                WebhookDelivery(
                    webhook_id=webhook.id,
                    event_type=event_type,
                    event_id=payload["event_id"],
                    payload=payload,
                    status=DeliveryStatus.PENDING,
                )
                for webhook in webhooks
                if webhook.id not in existing
            ]
            db.add_all(created)
            try:
                await db.commit()
            except IntegrityError:
                log.info("webhook_event_already_claimed", event_type=event_type, event_id=payload["event_id"])
                return []

        deliveries = created + resumed
        if existing:
            log.info("webhook_event_redelivered", event_id=payload["event_id"], skipped=len(existing) - len(resumed))
        if not deliveries:
            log.debug("webhook_event_nothing_to_deliver", event_type=event_type)
            return []

        log.info("webhook_event_emitted", event_type=event_type, event_id=payload["event_id"], deliveries=len(deliveries))
        return list(await asyncio.gather(*[self.deliver(delivery.id) for delivery in deliveries]))

    async def deliver(self, delivery_id: str) -> WebhookDelivery:
        """
        Run the attempt series for one delivery.

        Stops on the first 2xx, after max_retries attempts, or when the
        webhook was deactivated while waiting to retry.
        """
        while True:
            async with self.session_factory() as db:
                delivery = await db.get(WebhookDelivery, delivery_id)
                if delivery is None:
                    raise NotFound("webhook delivery", delivery_id)
                webhook = await db.get(Webhook, delivery.webhook_id)

                if delivery.attempt_count > 0 and not webhook.is_active:
                    delivery.status = DeliveryStatus.FAILED
                    delivery.error_message = "Webhook deactivated before retry"
                    delivery.completed_at = utcnow()
                    delivery.next_retry_at = None
                    await db.commit()
                    track_webhook_delivery("cancelled")
                    log.info("webhook_retry_cancelled", delivery_id=delivery_id, webhook_id=webhook.id)
                    return delivery

                attempt_number = delivery.attempt_count + 1
                payload_str = serialize(delivery.payload)
                headers = self._headers(webhook, payload_str, delivery)
                url = webhook.url
                timeout = webhook.timeout_seconds

            status_code, error, elapsed_ms = await self._post(url, payload_str, headers, timeout)
            succeeded = error is None

            async with self.session_factory() as db:
                delivery = await db.get(WebhookDelivery, delivery_id)
                stmt = select(Webhook).where(Webhook.id == delivery.webhook_id).with_for_update()
                webhook = (await db.execute(stmt)).scalar_one()

                db.add(WebhookDeliveryAttempt(
                    delivery_id=delivery_id,
                    attempt_number=attempt_number,
                    succeeded=succeeded,
                    response_status=status_code,
                    response_time_ms=elapsed_ms,
                    error_message=error,
                ))
                delivery.attempt_count = attempt_number
                delivery.response_status = status_code
                delivery.error_message = error
                webhook.last_triggered_at = utcnow()

                if succeeded:
                    delivery.status = DeliveryStatus.SUCCESS
                    delivery.completed_at = utcnow()
                    delivery.next_retry_at = None
                    webhook.consecutive_failures = 0
                    webhook.last_success_at = utcnow()
                    await db.commit()
                    track_webhook_delivery("success")
                    log.info("webhook_delivered", delivery_id=delivery_id, webhook_id=webhook.id, attempt=attempt_number)
                    return delivery

                if attempt_number >= webhook.max_retries:
                    self._exhaust(delivery, webhook)
                    await db.commit()
                    return delivery

                delay = retry_delay(webhook, attempt_number)
                delivery.status = DeliveryStatus.RETRYING
                delivery.next_retry_at = utcnow() + timedelta(seconds=delay)
                await db.commit()

            log.info(
                "webhook_attempt_failed",
                delivery_id=delivery_id,
                attempt=attempt_number,
                error=error,
                retry_in_seconds=delay,
            )
            await self.sleep(delay)

    async def test(self, webhook_id: str) -> dict:
        """
        Send one synthetic event. Success marks the webhook verified; the
        failure counter and auto-disable threshold are left alone.
        """
        async with self.session_factory() as db:
            webhook = await self._get(db, webhook_id)
            payload = build_event(TEST_EVENT_TYPE, {"webhook_id": webhook.id, "message": "Test delivery"})
            payload_str = serialize(payload)
            headers = self._headers(webhook, payload_str)
            url = webhook.url
            timeout = webhook.timeout_seconds

        status_code, error, elapsed_ms = await self._post(url, payload_str, headers, timeout)

        async with self.session_factory() as db:
            webhook = await self._get(db, webhook_id)
            webhook.last_triggered_at = utcnow()
            if error is None:
                webhook.is_verified = True
            await db.commit()

        log.info("webhook_tested", webhook_id=webhook_id, success=error is None, status_code=status_code)
        return {
            "success": error is None,
            "status_code": status_code,
            "response_time_ms": elapsed_ms,
            "error": error,
        }

    def _exhaust(self, delivery: WebhookDelivery, webhook: Webhook):
        delivery.status = DeliveryStatus.FAILED
        delivery.completed_at = utcnow()
        delivery.next_retry_at = None
        webhook.consecutive_failures += 1
        webhook.last_failure_at = utcnow()

        error = DeliveryExhausted(delivery.id, delivery.attempt_count, delivery.error_message)
        track_webhook_delivery("failed")
        log.warning(
            "webhook_delivery_exhausted",
            delivery_id=delivery.id,
            webhook_id=webhook.id,
            consecutive_failures=webhook.consecutive_failures,
            error=str(error),
        )

        if webhook.is_active and webhook.consecutive_failures >= webhook.auto_disable_after_failures:
            webhook.is_active = False
            webhook.disabled_reason = f"Auto-disabled after {webhook.consecutive_failures} consecutive failed deliveries"
            track_webhook_auto_disabled()
            log.warning("webhook_auto_disabled", webhook_id=webhook.id, url=webhook.url)
            capture_message(f"Webhook {webhook.id} auto-disabled", level="warning")

    def _headers(self, webhook: Webhook, payload_str: str, delivery: WebhookDelivery | None = None) -> dict:
        payload = json.loads(payload_str)
        headers = {
            **(webhook.custom_headers or {}),
            "Content-Type": "application/json",
            "User-Agent": settings.WEBHOOK_USER_AGENT,
            "X-Webhook-Event": payload["event_type"],
            "X-Webhook-Delivery": delivery.id if delivery else payload["event_id"],
            "X-Webhook-Timestamp": payload["timestamp"],
        }
        if webhook.auth_type == WebhookAuthType.HMAC and webhook.secret_key:
            headers["X-Webhook-Signature"] = sign_payload(payload_str, webhook.secret_key)
        elif webhook.auth_type == WebhookAuthType.BEARER and webhook.auth_value:
            headers["Authorization"] = f"Bearer {webhook.auth_value}"
        return headers

    async def _post(self, url: str, payload_str: str, headers: dict, timeout: float) -> tuple[int | None, str | None, int]:
        """POST once. Returns (status_code, error, elapsed_ms); error is None on 2xx."""
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                response = await client.post(url, content=payload_str, headers=headers)
        except httpx.TimeoutException:
            return None, f"Timed out after {timeout}s", int((time.monotonic() - started) * 1000)
        except httpx.HTTPError as e:
            return None, str(e) or e.__class__.__name__, int((time.monotonic() - started) * 1000)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if 200 <= response.status_code < 300:
            return response.status_code, None, elapsed_ms
        return response.status_code, f"HTTP {response.status_code}", elapsed_ms

    async def _get(self, db: AsyncSession, webhook_id: str) -> Webhook:
        webhook = await db.get(Webhook, webhook_id)
        if webhook is None:
            raise NotFound("webhook", webhook_id)
        return webhook

    @staticmethod
    def _validate(url: str, events: list[str], auth_type: WebhookAuthType, auth_value: str | None):
        if not url.startswith(("http://", "https://")):
            raise InvalidRequest("Webhook URL must start with http:// or https://")
        if not events:
            raise InvalidRequest("Webhook must subscribe to at least one event")
        known = {event.value for event in WebhookEventType}
        unknown = [event for event in events if event not in known]
        if unknown:
            raise InvalidRequest(f"Unknown event types: {', '.join(unknown)}")
        if auth_type == WebhookAuthType.BEARER and not auth_value:
            raise InvalidRequest("Bearer webhooks need an auth_value")
