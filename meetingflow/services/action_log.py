"""
Helpers shared by every service that mutates a scheduling request.

append_action is the only way Actions are written: it assigns the next
sequence number from request.action_count so the log stays gap-free.
RequestLocks serialises the read-decide-write cycle per request id inside
one process; the row lock taken by the caller covers other processes.
"""
import asyncio
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meetingflow.models.scheduling import Action, ActionType, Actor, Channel, SchedulingRequest


def append_action(
    db: AsyncSession,
    request: SchedulingRequest,
    action_type: ActionType,
    actor: Actor,
    content: str | None = None,
    channel: Channel | None = None,
    external_message_id: str | None = None,
    provider_message_id: str | None = None,
    draft_id: str | None = None,
    details: dict | None = None,
) -> Action:
    """Add the next Action to the session. The caller commits."""
    request.action_count += 1
    action = Action(
        request_id=request.id,
        sequence=request.action_count,
        action_type=action_type,
        actor=actor,
        content=content,
        channel=channel,
        external_message_id=external_message_id,
        provider_message_id=provider_message_id,
        draft_id=draft_id,
        details=details or {},
    )
    db.add(action)
    return action


async def list_actions(db: AsyncSession, request_id: str) -> list[Action]:
    stmt = select(Action).where(Action.request_id == request_id).order_by(Action.sequence)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def lock_request(db: AsyncSession, request_id: str) -> SchedulingRequest | None:
    """Load a request with SELECT ... FOR UPDATE."""
    stmt = (
        select(SchedulingRequest)
        .where(SchedulingRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


class RequestLocks:
    """
    In-process asyncio.Lock per key. Not reentrant.

    A key's lock is dropped as soon as nobody holds or waits on it, so the
    map only ever contains keys that are in use.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def __call__(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
