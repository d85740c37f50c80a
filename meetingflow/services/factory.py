"""
Wiring for the API process and the worker.

Both build the same SchedulingService from settings; they differ only in
how committed events reach webhook listeners.
"""
import asyncio
from typing import Awaitable, Callable

from meetingflow.logging_config import get_logger
from meetingflow.services.availability import AvailabilityResolver
from meetingflow.services.providers import (
    HttpCalendarProvider,
    HttpEmailSender,
    StaticContactDirectory,
    TwilioSmsSender,
)
from meetingflow.services.scheduling_service import EventSink, SchedulingService
from meetingflow.services.webhook_service import WebhookService

log = get_logger(component="factory")


class BackgroundEventSink:
    """
    Delivers events to webhooks in background tasks so the caller never
    waits on listener retries. drain() bounds how long shutdown waits.
    """

    def __init__(self, webhooks: WebhookService):
        self.webhooks = webhooks
        self.pending: set[asyncio.Task] = set()

    async def __call__(self, event_type: str, data: dict, event_id: str | None = None):
        task = asyncio.create_task(self.webhooks.emit(event_type, data, event_id))
        self.pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task):
        self.pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("event_delivery_crashed", error=str(task.exception()))

    async def drain(self, timeout: float) -> int:
        """Wait for in-flight deliveries; cancel what is left. Returns the number cancelled."""
        if not self.pending:
            return 0
        done, still_running = await asyncio.wait(set(self.pending), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            log.warning("event_drain_timeout", cancelled=len(still_running), completed=len(done))
        return len(still_running)


class QueuedEventSink:
    """Hands events to the worker queue; delivers in-process when the queue is down."""

    def __init__(self, enqueue: Callable[..., Awaitable[bool]], fallback: BackgroundEventSink):
        self.enqueue = enqueue
        self.fallback = fallback

    async def __call__(self, event_type: str, data: dict, event_id: str | None = None):
        if await self.enqueue("deliver_webhook_event", event_type, data, event_id):
            return
        log.warning("event_enqueue_failed", event_type=event_type, event_id=event_id, request_id=data.get("request_id"))
        await self.fallback(event_type, data, event_id)


def build_webhook_service() -> WebhookService:
    return WebhookService()


def build_scheduling_service(event_sink: EventSink | None = None) -> SchedulingService:
    """SchedulingService backed by the HTTP calendar gateway, email relay and Twilio."""
    resolver = AvailabilityResolver(HttpCalendarProvider(), StaticContactDirectory())
    return SchedulingService(
        resolver=resolver,
        email_sender=HttpEmailSender(),
        sms_sender=TwilioSmsSender(),
        event_sink=event_sink,
    )
