"""
Conversation correlation.

Providers identify replies by their own conversation ids (email thread
ids, phone numbers), which never match our internal thread keys. Every id
a provider hands back at send or ingestion time is registered here, and
inbound replies are resolved through this single mapping table.
"""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from meetingflow.logging_config import get_logger
from meetingflow.models.scheduling import ConversationMapping, SchedulingRequest

log = get_logger(component="correlation")


class CorrelationService:
    """Service owning the provider conversation id -> thread key mapping."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(self, provider: str, conversation_id: str, thread_key: str) -> ConversationMapping:
        """Map a provider conversation to a thread key. Re-registering updates the mapping."""
        stmt = select(ConversationMapping).where(
            ConversationMapping.provider == provider,
            ConversationMapping.conversation_id == conversation_id,
        )
        mapping = (await self.db.execute(stmt)).scalar_one_or_none()

        if mapping is None:
            mapping = ConversationMapping(provider=provider, conversation_id=conversation_id, thread_key=thread_key)
            try:
                async with self.db.begin_nested():
                    self.db.add(mapping)
            except IntegrityError:
                # Registered concurrently by another session
                mapping = (await self.db.execute(stmt)).scalar_one()
                mapping.thread_key = thread_key
        elif mapping.thread_key != thread_key:
            log.info(
                "conversation_remapped",
                provider=provider,
                conversation_id=conversation_id,
                old_thread_key=mapping.thread_key,
                thread_key=thread_key,
            )
            mapping.thread_key = thread_key

        await self.db.flush()
        return mapping

    async def resolve(self, provider: str, conversation_id: str) -> str | None:
        """
        Thread key for a provider conversation, or None.

        A conversation id that is itself a known thread key resolves to
        itself, for providers that echo our key back.
        """
        stmt = select(ConversationMapping.thread_key).where(
            ConversationMapping.provider == provider,
            ConversationMapping.conversation_id == conversation_id,
        )
        thread_key = (await self.db.execute(stmt)).scalar_one_or_none()
        if thread_key is not None:
            return thread_key

        stmt = select(SchedulingRequest.thread_key).where(SchedulingRequest.thread_key == conversation_id).limit(1)
        return (await self.db.execute(stmt)).scalar_one_or_none()
