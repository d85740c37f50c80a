"""
Service dependencies for FastAPI.

One SchedulingService per process so its request locks are shared by every
API call. Tests override these with app.dependency_overrides.
"""
from functools import lru_cache

from meetingflow.services.factory import (
    BackgroundEventSink,
    QueuedEventSink,
    build_scheduling_service,
    build_webhook_service,
)
from meetingflow.services.scheduling_service import SchedulingService
from meetingflow.services.webhook_service import WebhookService
from meetingflow.worker import enqueue_task


@lru_cache
def get_webhook_service() -> WebhookService:
    return build_webhook_service()


@lru_cache
def get_event_fallback() -> BackgroundEventSink:
    return BackgroundEventSink(get_webhook_service())


@lru_cache
def get_scheduling_service() -> SchedulingService:
    return build_scheduling_service(QueuedEventSink(enqueue_task, get_event_fallback()))


def get_task_queue():
    """Callable that hands a job to the worker: enqueue(function_name, *args) -> bool."""
    return enqueue_task
