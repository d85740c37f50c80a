"""
ARQ Background Worker for MeetingFlow.

Drives due scheduling requests on a cron, applies queued inbound replies
and delivers webhook events handed over by the API process.

Run with: arq meetingflow.worker.WorkerSettings
"""
from arq import cron, create_pool
from arq.connections import RedisSettings

from meetingflow.config import settings
from meetingflow.logging_config import get_logger
from meetingflow.sentry_config import configure_sentry
from meetingflow.services.factory import BackgroundEventSink, build_scheduling_service, build_webhook_service
from meetingflow.services.scheduling_service import InboundSignal, SignalOutcome

log = get_logger(component="worker")


async def startup(ctx: dict):
    """Build the services once per worker process."""
    configure_sentry()
    webhooks = build_webhook_service()
    event_sink = BackgroundEventSink(webhooks)
    ctx["webhooks"] = webhooks
    ctx["event_sink"] = event_sink
    ctx["scheduling"] = build_scheduling_service(event_sink)
    log.info("worker_started", redis=settings.REDIS_URL)


async def shutdown(ctx: dict):
    """Give in-flight webhook deliveries a bounded window to finish."""
    event_sink = ctx.get("event_sink")
    if event_sink is None:
        return
    cancelled = await event_sink.drain(settings.SHUTDOWN_DRAIN_SECONDS)
    log.info("worker_stopped", cancelled_deliveries=cancelled)


async def drive_due_requests(ctx: dict) -> int:
    """Cron: run the next action of every due request."""
    return await ctx["scheduling"].process_due_requests()


async def drive_request(ctx: dict, request_id: str) -> dict:
    """Run the next action of one request if it is due."""
    status = await ctx["scheduling"].process_request(request_id)
    return {"request_id": request_id, "status": status.value}


async def process_inbound_signal(ctx: dict, signal: dict) -> dict:
    """
    Apply a queued inbound reply, then drive the request so the
    regenerated proposal goes out without waiting for the cron.
    """
    scheduling = ctx["scheduling"]
    result = await scheduling.handle_inbound_signal(InboundSignal.from_dict(signal))
    if result.outcome == SignalOutcome.PROCESSED and result.request_id:
        await scheduling.process_request(result.request_id)
    return {"outcome": result.outcome.value, "request_id": result.request_id}


async def deliver_webhook_event(ctx: dict, event_type: str, data: dict, event_id: str | None = None) -> dict:
    """
    Fan one committed event out to subscribed webhooks. A retried job
    carries the same event_id, so listeners are not notified twice.
    """
    deliveries = await ctx["webhooks"].emit(event_type, data, event_id)
    return {
        "event_type": event_type,
        "event_id": event_id,
        "deliveries": {delivery.id: delivery.status.value for delivery in deliveries},
    }


# Register functions for ARQ
ARQ_FUNCTIONS = [
    drive_request,
    process_inbound_signal,
    deliver_webhook_event,
]


async def enqueue_task(function: str, *args) -> bool:
    """Enqueue a worker function by name. Returns False if Redis is unavailable."""
    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
    except Exception as e:
        log.warning("enqueue_failed", function=function, error=str(e))
        return False

    try:
        await redis.enqueue_job(function, *args)
        log.debug("task_enqueued", function=function)
        return True
    except Exception as e:
        log.warning("enqueue_failed", function=function, error=str(e))
        return False
    finally:
        await redis.close()


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq meetingflow.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 300
    max_tries = 3
    functions = ARQ_FUNCTIONS
    cron_jobs = [
        cron(drive_due_requests, second={0, 30}, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
