"""
Shared fixtures: a throwaway SQLite database per test, in-memory providers
and a controllable clock.
"""
import asyncio
import os
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from meetingflow.models.base import Base, utcnow
from meetingflow.models import postmortem, scheduling, webhook  # noqa: F401
from meetingflow.models.scheduling import AttendeeSide, Channel
from meetingflow.services.availability import AvailabilityResolver
from meetingflow.services.providers import SendResult, StaticContactDirectory
from meetingflow.services.scheduling_service import AttendeeSpec, SchedulingService


class FakeClock:
    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeCalendar:
    """Free/busy provider returning canned intervals per identity."""

    def __init__(self, busy=None, error=None, delay=0.0):
        self.busy = busy or {}
        self.error = error
        self.delay = delay
        self.calls = []

    async def get_busy(self, identity, start, end):
        self.calls.append(identity)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.busy.get(identity, []))


class FakeSender:
    """
    Records messages; email replies thread on the thread key, SMS on the number.

    fail rejects every message outright; outages makes the next N sends
    raise a connection timeout.
    """

    def __init__(self, channel: Channel, fail: bool = False, outages: int = 0):
        self.channel = channel
        self.fail = fail
        self.outages = outages
        self.calls = 0
        self.sent = []

    async def send(self, to, content):
        self.calls += 1
        if self.outages:
            self.outages -= 1
            raise httpx.ConnectTimeout("relay unreachable")
        if self.fail:
            return SendResult(error=f"{self.channel.value} provider rejected the message", permanent=True)
        self.sent.append((to, content))
        message_id = f"{self.channel.value}-msg-{len(self.sent)}"
        if self.channel == Channel.EMAIL:
            return SendResult(id=message_id, conversation_id=f"conv-{content.thread_key}")
        return SendResult(id=message_id, conversation_id=to)


class EventRecorder:
    def __init__(self):
        self.events = []
        self.event_ids = []

    async def __call__(self, event_type, data, event_id=None):
        self.events.append((event_type, data))
        self.event_ids.append(event_id)

    def types(self):
        return [event_type for event_type, _ in self.events]


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'meetingflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def email_sender():
    return FakeSender(Channel.EMAIL)


@pytest.fixture
def sms_sender():
    return FakeSender(Channel.SMS)


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def scheduling(session_factory, calendar, email_sender, sms_sender, events, clock):
    resolver = AvailabilityResolver(calendar, StaticContactDirectory(), timeout=1.0)
    return SchedulingService(
        resolver=resolver,
        email_sender=email_sender,
        sms_sender=sms_sender,
        session_factory=session_factory,
        event_sink=events,
        clock=clock,
    )


def default_attendees():
    return [
        AttendeeSpec(
            side=AttendeeSide.INTERNAL,
            name="Host",
            email="host@example.com",
            user_id="user-1",
            calendar_identity="host@example.com",
        ),
        AttendeeSpec(
            side=AttendeeSide.EXTERNAL,
            name="Dana",
            email="dana@client.com",
            phone="+15555550100",
            is_primary_contact=True,
        ),
    ]


async def make_request(service: SchedulingService, **kwargs):
    kwargs.setdefault("owner_id", "user-1")
    kwargs.setdefault("title", "Intro call")
    kwargs.setdefault("attendees", default_attendees())
    return await service.create_request(**kwargs)
