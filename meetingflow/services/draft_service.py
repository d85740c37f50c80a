"""
Draft Manager.

Owns the proposal text and the locked slot set for a scheduling request.
Methods add rows and Actions to the session; the caller commits, so a draft
change and the state transition around it land in one transaction.
"""
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from meetingflow.errors import DraftConflict, InvalidRequest, NotFound
from meetingflow.models.base import utcnow
from meetingflow.models.scheduling import ActionType, Actor, Draft, SchedulingRequest
from meetingflow.services.action_log import append_action
from meetingflow.services.availability import AvailabilitySlot


def draft_slots(draft: Draft) -> list[AvailabilitySlot]:
    return [AvailabilitySlot.from_dict(slot) for slot in draft.slots]


class DraftService:
    """Service for generating, regenerating and editing drafts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_live(self, request_id: str) -> Draft | None:
        stmt = select(Draft).where(Draft.request_id == request_id, Draft.is_live.is_(True))
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, request_id: str) -> Draft:
        """Get the live draft or raise NotFound."""
        draft = await self.get_live(request_id)
        if draft is None:
            raise NotFound("draft", request_id)
        return draft

    async def list_versions(self, request_id: str) -> list[Draft]:
        stmt = select(Draft).where(Draft.request_id == request_id).order_by(Draft.version)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def generate(
        self,
        request: SchedulingRequest,
        slots: list[AvailabilitySlot],
        subject: str,
        body: str,
        actor: Actor = Actor.AUTOMATION,
    ) -> Draft:
        """
        Create the first live draft for a request.

        Raises:
            DraftConflict: a live draft already exists (use regenerate)
        """
        if await self.get_live(request.id) is not None:
            raise DraftConflict(f"Request {request.id} already has a live draft; regenerate it instead")
        return await self._create(request, slots, subject, body, actor, ActionType.DRAFT_GENERATED)

    async def regenerate(
        self,
        request: SchedulingRequest,
        slots: list[AvailabilitySlot],
        subject: str,
        body: str,
        actor: Actor = Actor.AUTOMATION,
    ) -> Draft:
        """
        Replace the live draft and its slot set.

        The previous draft keeps its row but stops being live, so any send
        still carrying its id is rejected by the dispatcher. Without a live
        draft this behaves like generate.
        """
        previous = await self.get_live(request.id)
        if previous is None:
            return await self._create(request, slots, subject, body, actor, ActionType.DRAFT_GENERATED)

        previous.is_live = False
        previous.superseded_at = utcnow()
        await self.db.flush()
        return await self._create(
            request, slots, subject, body, actor, ActionType.DRAFT_REGENERATED,
            details={"superseded_draft_id": previous.id},
        )

    async def update(
        self,
        request: SchedulingRequest,
        subject: str | None = None,
        body: str | None = None,
        actor: Actor = Actor.HUMAN,
    ) -> Draft:
        """
        Edit the text of the live draft. The slot set is never touched.

        Raises:
            NotFound: no draft has been generated yet
        """
        if subject is None and body is None:
            raise InvalidRequest("Nothing to update: provide subject and/or body")

        draft = await self.get(request.id)
        changed = []
        if subject is not None:
            draft.subject = subject
            changed.append("subject")
        if body is not None:
            draft.body = body
            changed.append("body")
        draft.edited_at = utcnow()

        append_action(
            self.db, request, ActionType.DRAFT_UPDATED, actor,
            draft_id=draft.id,
            details={"fields": changed, "version": draft.version},
        )
        await self.db.flush()
        return draft

    async def _create(
        self,
        request: SchedulingRequest,
        slots: list[AvailabilitySlot],
        subject: str,
        body: str,
        actor: Actor,
        action_type: ActionType,
        details: dict | None = None,
    ) -> Draft:
        stmt = select(func.max(Draft.version)).where(Draft.request_id == request.id)
        latest = (await self.db.execute(stmt)).scalar()

        draft = Draft(
            request_id=request.id,
            version=(latest or 0) + 1,
            subject=subject,
            body=body,
            slots=[slot.to_dict() for slot in slots],
            is_live=True,
            generated_at=utcnow(),
        )
        self.db.add(draft)
        await self.db.flush()

        append_action(
            self.db, request, action_type, actor,
            draft_id=draft.id,
            details={"version": draft.version, "slot_count": len(slots), **(details or {})},
        )
        await self.db.flush()
        return draft
