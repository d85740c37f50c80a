"""
Scheduling state machine.

Every mutation of a SchedulingRequest goes through this service. Each
operation runs a read-decide-write cycle under an in-process lock for the
request id and a row lock in the database, commits, and only then hands
the resulting events to the event sink. The background driver and the
inbound-signal path both end up in process_request / the same transition
helpers, so they cannot disagree about what a state allows.
"""
import asyncio
import enum
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meetingflow.config import settings
from meetingflow.database import AsyncSessionLocal
from meetingflow.errors import (
    ChannelUnavailable,
    CorrelationFailure,
    DraftConflict,
    InvalidRequest,
    InvalidTransition,
    NotFound,
)
from meetingflow.logging_config import get_logger
from meetingflow.models.base import utcnow
from meetingflow.models.postmortem import Postmortem
from meetingflow.models.scheduling import (
    Action,
    ActionType,
    Actor,
    Attendee,
    AttendeeSide,
    Channel,
    ConversationMapping,
    Draft,
    NextActionType,
    OUTBOUND_ACTION_TYPES,
    POST_TERMINAL_ACTIONS,
    SchedulingRequest,
    SchedulingStatus,
    TERMINAL_STATUSES,
)
from meetingflow.routes.metrics import track_inbound_signal, track_state_transition, update_driver_batch_size
from meetingflow.sentry_config import capture_exception
from meetingflow.services.action_log import RequestLocks, append_action, list_actions, lock_request
from meetingflow.services.availability import (
    AvailabilityConstraints,
    AvailabilityResolver,
    AvailabilitySlot,
    format_slot_label,
)
from meetingflow.services.channel_dispatcher import (
    ChannelDispatcher,
    DeliveryOutcome,
    DeliveryResult,
    FAILED_DELIVERY_STATUSES,
    OutboundMessage,
)
from meetingflow.services.composer import Composer, TemplateComposer
from meetingflow.services.correlation_service import CorrelationService
from meetingflow.services.draft_service import DraftService, draft_slots
from meetingflow.services.postmortem_service import PostmortemService
from meetingflow.services.providers import EmailSender, SmsSender, parse_timestamp

log = get_logger(component="scheduling")

# (event_type, data, event_id); event_id is stable across redeliveries of one event
EventSink = Callable[[str, dict, str], Awaitable[None]]

# Exhaustive transition table; terminal states allow nothing
TRANSITIONS: dict[SchedulingStatus, frozenset[SchedulingStatus]] = {
    SchedulingStatus.DRAFT: frozenset({
        SchedulingStatus.AWAITING_RESPONSE,
        SchedulingStatus.PROPOSED,
        SchedulingStatus.FAILED,
    }),
    SchedulingStatus.AWAITING_RESPONSE: frozenset({
        SchedulingStatus.PROPOSED,
        SchedulingStatus.CONFIRMED,
        SchedulingStatus.CANCELLED,
        SchedulingStatus.EXPIRED,
        SchedulingStatus.FAILED,
    }),
    SchedulingStatus.PROPOSED: frozenset({
        SchedulingStatus.PROPOSED,
        SchedulingStatus.CONFIRMED,
        SchedulingStatus.CANCELLED,
        SchedulingStatus.EXPIRED,
        SchedulingStatus.FAILED,
    }),
    SchedulingStatus.CONFIRMED: frozenset(),
    SchedulingStatus.CANCELLED: frozenset(),
    SchedulingStatus.EXPIRED: frozenset(),
    SchedulingStatus.FAILED: frozenset(),
}

# Action recorded and event emitted when a request enters a terminal state
TERMINAL_ACTIONS = {
    SchedulingStatus.CONFIRMED: (ActionType.CONFIRMED, "meeting.scheduled"),
    SchedulingStatus.CANCELLED: (ActionType.CANCELLED, "meeting.cancelled"),
    SchedulingStatus.EXPIRED: (ActionType.EXPIRED, "request.expired"),
    SchedulingStatus.FAILED: (ActionType.FAILED, "request.failed"),
}

# Steps process_request may chain in one call (prepare -> send)
MAX_CHAINED_STEPS = 3


def can_transition(current: SchedulingStatus, target: SchedulingStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: SchedulingStatus, target: SchedulingStatus):
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move a {current.value} request to {target.value}",
            current_status=current.value,
        )


def request_payload(request: SchedulingRequest) -> dict:
    """Event data describing a request."""
    return {
        "request_id": request.id,
        "title": request.title,
        "status": request.status.value,
        "owner_id": request.owner_id,
        "thread_key": request.thread_key,
        "next_action_type": request.next_action_type.value if request.next_action_type else None,
        "next_action_at": request.next_action_at.isoformat() if request.next_action_at else None,
        "confirmed_slot_start": request.confirmed_slot_start.isoformat() if request.confirmed_slot_start else None,
        "confirmed_slot_end": request.confirmed_slot_end.isoformat() if request.confirmed_slot_end else None,
    }


class SignalIntent(str, enum.Enum):
    """Interpretation of an inbound reply, supplied by the signal source."""
    REPLY = "reply"
    CONFIRM = "confirm"
    DECLINE = "decline"


class SignalOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED_TERMINAL = "ignored_terminal"
    CORRELATION_FAILED = "correlation_failed"


@dataclass
class InboundSignal:
    """A reply delivered by an inbound provider."""
    provider: str
    conversation_id: str
    message_id: str
    body: str = ""
    channel: Channel = Channel.EMAIL
    intent: SignalIntent = SignalIntent.REPLY
    request_id: str | None = None
    selected_slot_start: datetime | None = None
    sender: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "InboundSignal":
        """Rebuild a signal from its queued JSON form."""
        slot = data.get("selected_slot_start")
        return cls(
            provider=data["provider"],
            conversation_id=data["conversation_id"],
            message_id=data["message_id"],
            body=data.get("body", ""),
            channel=Channel(data.get("channel", Channel.EMAIL.value)),
            intent=SignalIntent(data.get("intent", SignalIntent.REPLY.value)),
            request_id=data.get("request_id"),
            selected_slot_start=parse_timestamp(slot) if slot else None,
            sender=data.get("sender"),
        )

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "body": self.body,
            "channel": self.channel.value,
            "intent": self.intent.value,
            "request_id": self.request_id,
            "selected_slot_start": self.selected_slot_start.isoformat() if self.selected_slot_start else None,
            "sender": self.sender,
        }


@dataclass
class SignalResult:
    outcome: SignalOutcome
    request_id: str | None = None
    status: SchedulingStatus | None = None


@dataclass
class AttendeeSpec:
    side: AttendeeSide
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    user_id: str | None = None
    calendar_identity: str | None = None
    is_primary_contact: bool = False


@dataclass
class Mutation:
    """State of one locked read-decide-write cycle."""
    db: AsyncSession
    request: SchedulingRequest
    events: list[tuple[str, dict, str]] = field(default_factory=list)
    transitions: list[tuple[str, str]] = field(default_factory=list)

    def emit(self, event_type: str, data: dict | None = None):
        payload = {**request_payload(self.request), **(data or {})}
        self.events.append((event_type, payload, str(uuid.uuid4())))


class SchedulingService:
    """Command surface and background driver for scheduling requests."""

    def __init__(
        self,
        resolver: AvailabilityResolver,
        email_sender: EmailSender | None = None,
        sms_sender: SmsSender | None = None,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        event_sink: EventSink | None = None,
        composer: Composer | None = None,
        locks: RequestLocks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = resolver
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.session_factory = session_factory
        self.event_sink = event_sink
        self.composer = composer or TemplateComposer()
        self.locks = locks or RequestLocks()
        self.clock = clock

    # ============================================
    # Plumbing
    # ============================================

    @asynccontextmanager
    async def _mutate(self, request_id: str):
        """Lock a request, yield a Mutation, commit, then publish its events."""
        async with self.locks(request_id):
            async with self.session_factory() as db:
                request = await lock_request(db, request_id)
                if request is None:
                    raise NotFound("scheduling request", request_id)
                unit = Mutation(db, request)
                yield unit
                await db.commit()
        await self._publish(unit)

    async def _publish(self, unit: Mutation):
        for from_status, to_status in unit.transitions:
            track_state_transition(from_status, to_status)
        if self.event_sink is None:
            return
        for event_type, data, event_id in unit.events:
            try:
                await self.event_sink(event_type, data, event_id)
            except Exception:
                log.exception("event_publish_failed", event_type=event_type, event_id=event_id, request_id=data.get("request_id"))
                capture_exception(request_id=data.get("request_id"), event_type=event_type)

    def _dispatcher(self, db: AsyncSession) -> ChannelDispatcher:
        return ChannelDispatcher(db, self.email_sender, self.sms_sender)

    def _transition(
        self,
        unit: Mutation,
        target: SchedulingStatus,
        actor: Actor,
        reason: str | None = None,
        details: dict | None = None,
    ):
        request = unit.request
        current = request.status
        ensure_transition(current, target)
        request.status = target

        if target in TERMINAL_STATUSES:
            action_type, event_type = TERMINAL_ACTIONS[target]
            request.closed_at = self.clock()
            request.next_action_type = None
            request.next_action_at = None
            request.outcome_reason = reason
            append_action(unit.db, request, action_type, actor, content=reason, details=details)
        else:
            event_type = None

        if current != target:
            unit.transitions.append((current.value, target.value))
            unit.emit("request.status_changed", {"from_status": current.value, "to_status": target.value})
        if event_type:
            unit.emit(event_type, {"reason": reason})

        log.info(
            "request_transitioned",
            request_id=request.id,
            from_status=current.value,
            to_status=target.value,
            actor=actor.value,
        )

    def _schedule(self, request: SchedulingRequest, action_type: NextActionType | None, delay: timedelta = timedelta(0)):
        request.next_action_type = action_type
        request.next_action_at = self.clock() + delay if action_type else None

    @staticmethod
    def _ensure_live(request: SchedulingRequest):
        if request.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Request {request.id} is {request.status.value} and can no longer change",
                current_status=request.status.value,
            )

    # ============================================
    # Requests and attendees
    # ============================================

    async def create_request(
        self,
        owner_id: str,
        title: str,
        attendees: list[AttendeeSpec] | None = None,
        thread_key: str | None = None,
        source_message_id: str | None = None,
        duration_minutes: int | None = None,
        timezone: str | None = None,
        preferred_channel: Channel = Channel.EMAIL,
        auto_propose: bool = False,
        actor: Actor = Actor.HUMAN,
    ) -> SchedulingRequest:
        """
        Create a request in draft.

        Raises:
            InvalidTransition: the thread already has a live request
            InvalidRequest: bad timezone, duration or attendee data
        """
        timezone = timezone or settings.DEFAULT_TIMEZONE
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise InvalidRequest(f"Unknown timezone: {timezone}")
        duration_minutes = duration_minutes or settings.DEFAULT_DURATION_MINUTES
        if duration_minutes <= 0:
            raise InvalidRequest("duration_minutes must be positive")
        for entry in attendees or []:
            self._validate_attendee(entry)

        thread_key = thread_key or f"thread-{uuid.uuid4()}"

        async with self.locks(f"thread:{thread_key}"):
            async with self.session_factory() as db:
                stmt = select(SchedulingRequest.id).where(
                    SchedulingRequest.thread_key == thread_key,
                    SchedulingRequest.status.notin_(TERMINAL_STATUSES),
                )
                existing = (await db.execute(stmt)).scalar_one_or_none()
                if existing is not None:
                    raise InvalidTransition(f"Thread {thread_key} already has a live request: {existing}")

                request = SchedulingRequest(
                    title=title,
                    owner_id=owner_id,
                    thread_key=thread_key,
                    source_message_id=source_message_id,
                    duration_minutes=duration_minutes,
                    timezone=timezone,
                    preferred_channel=preferred_channel,
                    status=SchedulingStatus.DRAFT,
                    action_count=0,
                )
                db.add(request)
                await db.flush()

                unit = Mutation(db, request)
                append_action(db, request, ActionType.REQUEST_CREATED, actor, content=title)
                for entry in attendees or []:
                    self._add_attendee(unit, entry, actor)
                if auto_propose:
                    self._schedule(request, NextActionType.PREPARE_PROPOSAL)
                unit.emit("request.created")

                try:
                    await db.commit()
                except IntegrityError:
                    raise InvalidTransition(f"Thread {thread_key} already has a live request")

        log.info("request_created", request_id=request.id, thread_key=thread_key, owner_id=owner_id)
        await self._publish(unit)
        return request

    async def add_attendee(self, request_id: str, entry: AttendeeSpec, actor: Actor = Actor.HUMAN) -> Attendee:
        self._validate_attendee(entry)
        async with self._mutate(request_id) as unit:
            self._ensure_live(unit.request)
            attendee = self._add_attendee(unit, entry, actor)
            await unit.db.flush()
        return attendee

    async def get_request(self, request_id: str) -> SchedulingRequest:
        async with self.session_factory() as db:
            request = await db.get(SchedulingRequest, request_id)
            if request is None:
                raise NotFound("scheduling request", request_id)
            return request

    async def list_requests(
        self,
        status: SchedulingStatus | None = None,
        owner_id: str | None = None,
        limit: int = 100,
    ) -> list[SchedulingRequest]:
        stmt = select(SchedulingRequest).order_by(SchedulingRequest.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(SchedulingRequest.status == status)
        if owner_id is not None:
            stmt = stmt.where(SchedulingRequest.owner_id == owner_id)
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def list_attendees(self, request_id: str) -> list[Attendee]:
        async with self.session_factory() as db:
            return await self._attendees(db, request_id)

    async def list_actions(self, request_id: str) -> list[Action]:
        async with self.session_factory() as db:
            if await db.get(SchedulingRequest, request_id) is None:
                raise NotFound("scheduling request", request_id)
            return await list_actions(db, request_id)

    def _add_attendee(self, unit: Mutation, entry: AttendeeSpec, actor: Actor) -> Attendee:
        attendee = Attendee(
            request_id=unit.request.id,
            side=entry.side,
            name=entry.name,
            email=entry.email,
            phone=entry.phone,
            user_id=entry.user_id,
            calendar_identity=entry.calendar_identity,
            is_primary_contact=entry.is_primary_contact,
        )
        unit.db.add(attendee)
        append_action(
            unit.db, unit.request, ActionType.ATTENDEE_ADDED, actor,
            content=entry.name or entry.email or entry.phone,
            details={"side": entry.side.value, "email": entry.email, "phone": entry.phone},
        )
        return attendee

    @staticmethod
    def _validate_attendee(entry: AttendeeSpec):
        if entry.side == AttendeeSide.EXTERNAL and not (entry.email or entry.phone):
            raise InvalidRequest("External attendees need an email address or phone number")
        if entry.side == AttendeeSide.INTERNAL and not (entry.user_id or entry.email or entry.calendar_identity):
            raise InvalidRequest("Internal attendees need a user id, email or calendar identity")

    async def _attendees(self, db: AsyncSession, request_id: str) -> list[Attendee]:
        stmt = select(Attendee).where(Attendee.request_id == request_id).order_by(Attendee.created_at)
        return list((await db.execute(stmt)).scalars().all())

    # ============================================
    # Drafts
    # ============================================

    async def generate_draft(
        self,
        request_id: str,
        subject: str | None = None,
        body: str | None = None,
        seed: int | None = None,
        actor: Actor = Actor.HUMAN,
    ) -> Draft:
        """
        Compute availability and create the first draft; the request moves
        to proposed.

        Raises:
            DraftConflict: a live draft exists already
        """
        async with self._mutate(request_id) as unit:
            self._ensure_live(unit.request)
            draft = await self._prepare_draft(unit, subject, body, seed, actor, regenerate=False)
        return draft

    async def regenerate_draft(
        self,
        request_id: str,
        subject: str | None = None,
        body: str | None = None,
        seed: int | None = None,
        actor: Actor = Actor.HUMAN,
    ) -> Draft:
        """Recompute availability and replace the live draft and its slots."""
        async with self._mutate(request_id) as unit:
            self._ensure_live(unit.request)
            draft = await self._prepare_draft(unit, subject, body, seed, actor, regenerate=True)
        return draft

    async def update_draft(
        self,
        request_id: str,
        subject: str | None = None,
        body: str | None = None,
        actor: Actor = Actor.HUMAN,
    ) -> Draft:
        """Edit draft text. Raises NotFound when no draft was generated."""
        async with self._mutate(request_id) as unit:
            self._ensure_live(unit.request)
            draft = await DraftService(unit.db).update(unit.request, subject=subject, body=body, actor=actor)
        return draft

    async def get_draft(self, request_id: str) -> Draft:
        async with self.session_factory() as db:
            if await db.get(SchedulingRequest, request_id) is None:
                raise NotFound("scheduling request", request_id)
            return await DraftService(db).get(request_id)

    async def _prepare_draft(
        self,
        unit: Mutation,
        subject: str | None,
        body: str | None,
        seed: int | None,
        actor: Actor,
        regenerate: bool,
    ) -> Draft:
        request = unit.request
        drafts = DraftService(unit.db)
        if not regenerate and await drafts.get_live(request.id) is not None:
            raise DraftConflict(f"Request {request.id} already has a live draft; regenerate it instead")

        attendees = await self._attendees(unit.db, request.id)
        slots = await self._compute_availability(unit, attendees, seed)

        if subject is None or body is None:
            recipient = next((a for a in attendees if a.side == AttendeeSide.EXTERNAL and a.is_primary_contact), None)
            recipient = recipient or next((a for a in attendees if a.side == AttendeeSide.EXTERNAL), None)
            default_subject, default_body = self.composer.proposal(
                request.title,
                [slot.label for slot in slots],
                recipient.name if recipient else None,
            )
            subject = subject if subject is not None else default_subject
            body = body if body is not None else default_body

        if regenerate:
            draft = await drafts.regenerate(request, slots, subject, body, actor)
        else:
            draft = await drafts.generate(request, slots, subject, body, actor)

        if request.status != SchedulingStatus.PROPOSED:
            self._transition(unit, SchedulingStatus.PROPOSED, actor)
        unit.emit("draft.generated", {"draft_id": draft.id, "version": draft.version, "slots": draft.slots})
        return draft

    async def _compute_availability(self, unit: Mutation, attendees: list[Attendee], seed: int | None) -> list[AvailabilitySlot]:
        internal = [a for a in attendees if a.side == AttendeeSide.INTERNAL]
        external = [a for a in attendees if a.side == AttendeeSide.EXTERNAL]
        if not internal or not external:
            raise InvalidRequest("A request needs at least one internal and one external attendee")

        constraints = AvailabilityConstraints(
            duration_minutes=unit.request.duration_minutes,
            timezone=unit.request.timezone,
            seed=seed,
        )
        slots = await self.resolver.resolve(attendees, constraints, now=self.clock())
        provenance = sorted({slot.provenance.value for slot in slots})
        append_action(
            unit.db, unit.request, ActionType.AVAILABILITY_COMPUTED, Actor.AUTOMATION,
            content=", ".join(slot.label for slot in slots) or "No open slots",
            details={"slot_count": len(slots), "provenance": provenance, "slots": [slot.to_dict() for slot in slots]},
        )
        return slots

    # ============================================
    # Sending
    # ============================================

    async def send_invitation(
        self,
        request_id: str,
        subject: str,
        body: str,
        channel: Channel | None = None,
        actor: Actor = Actor.HUMAN,
    ) -> SchedulingRequest:
        """
        Ask the external party for availability; draft -> awaiting_response.

        If no channel can deliver the request ends up failed instead.
        """
        async with self._mutate(request_id) as unit:
            await self._send_invitation(unit, subject, body, channel, actor)
            request = unit.request
        return request

    async def send_draft(self, request_id: str, channel: Channel | None = None) -> DeliveryResult | None:
        """
        Send the live draft now. Returns None when nothing went out: either
        a retry is scheduled or, with no channel left, the request failed.
        """
        async with self._mutate(request_id) as unit:
            self._ensure_live(unit.request)
            if unit.request.status != SchedulingStatus.PROPOSED:
                raise InvalidTransition(
                    f"Only proposed requests have a draft to send; request is {unit.request.status.value}",
                    current_status=unit.request.status.value,
                )
            result = await self._send_proposal(unit, channel)
        return result

    async def _send(
        self,
        unit: Mutation,
        message: OutboundMessage,
        channel: Channel | None,
        retry_action: NextActionType,
    ) -> DeliveryResult | None:
        """
        Send with fallback. Returns None when nothing went out.

        A transient outage schedules retry_action again with backoff, up to
        MAX_SEND_RETRIES times since the last message that got through. After
        that, or when every channel is ruled out for good, a live request
        fails; a confirmed one only logs the undelivered confirmation.
        """
        request = unit.request
        dispatcher = self._dispatcher(unit.db)
        try:
            result = await dispatcher.send_with_fallback(request, message, channel)
        except ChannelUnavailable as e:
            unit.emit("attempt.failed", {"kind": message.kind.value, "errors": e.errors})
            retries = await dispatcher.retries_since_last_send(request.id)
            if e.retryable and retries < settings.MAX_SEND_RETRIES:
                self._schedule_retry(unit, message, channel, retry_action, retries + 1, e)
            elif request.status in TERMINAL_STATUSES:
                log.error("message_undeliverable", request_id=request.id, kind=message.kind.value, errors=e.errors)
            else:
                self._transition(unit, SchedulingStatus.FAILED, Actor.SYSTEM, reason=str(e), details={"errors": e.errors})
            return None

        if result.sent:
            unit.emit("attempt.sent", {
                "kind": message.kind.value,
                "channel": result.channel.value,
                "provider_message_id": result.provider_message_id,
            })
        return result

    async def _send_proposal(self, unit: Mutation, channel: Channel | None = None) -> DeliveryResult | None:
        request = unit.request
        draft = await DraftService(unit.db).get_live(request.id)
        if draft is None:
            self._schedule(request, NextActionType.PREPARE_PROPOSAL)
            return None

        message = OutboundMessage(
            kind=ActionType.PROPOSAL_SENT,
            body=draft.body,
            subject=draft.subject,
            draft_id=draft.id,
        )
        result = await self._send(unit, message, channel, NextActionType.SEND_PROPOSAL)
        if result is None:
            return None
        if result.outcome in (DeliveryOutcome.SENT, DeliveryOutcome.DUPLICATE):
            self._schedule(request, NextActionType.FOLLOW_UP, timedelta(hours=settings.FOLLOW_UP_HOURS))
        elif result.outcome == DeliveryOutcome.STALE_DRAFT:
            self._schedule(request, NextActionType.SEND_PROPOSAL)
        return result

    async def _send_invitation(
        self,
        unit: Mutation,
        subject: str,
        body: str,
        channel: Channel | None,
        actor: Actor,
    ):
        ensure_transition(unit.request.status, SchedulingStatus.AWAITING_RESPONSE)
        message = OutboundMessage(kind=ActionType.INVITATION_SENT, body=body, subject=subject)
        result = await self._send(unit, message, channel, NextActionType.SEND_INVITATION)
        if result is not None:
            self._transition(unit, SchedulingStatus.AWAITING_RESPONSE, actor)
            self._schedule(unit.request, NextActionType.FOLLOW_UP, timedelta(hours=settings.FOLLOW_UP_HOURS))

    async def _send_confirmation(self, unit: Mutation):
        """Tell the external party which time was booked. Sent at most once."""
        request = unit.request
        attendees = await self._attendees(unit.db, request.id)
        recipient = next((a for a in attendees if a.side == AttendeeSide.EXTERNAL and a.is_primary_contact), None)
        recipient = recipient or next((a for a in attendees if a.side == AttendeeSide.EXTERNAL), None)
        slot_label = (
            format_slot_label(request.confirmed_slot_start, ZoneInfo(request.timezone))
            if request.confirmed_slot_start else None
        )
        subject, body = self.composer.confirmation(request.title, slot_label, recipient.name if recipient else None)
        message = OutboundMessage(kind=ActionType.CONFIRMATION_SENT, body=body, subject=subject)
        await self._send(unit, message, None, NextActionType.SEND_CONFIRMATION)

    def _schedule_retry(
        self,
        unit: Mutation,
        message: OutboundMessage,
        channel: Channel | None,
        retry_action: NextActionType,
        attempt: int,
        error: ChannelUnavailable,
    ):
        delay = timedelta(minutes=settings.SEND_RETRY_DELAY_MINUTES * 2 ** (attempt - 1))
        append_action(
            unit.db, unit.request, ActionType.SEND_RETRY_SCHEDULED, Actor.SYSTEM,
            content=str(error),
            channel=channel,
            draft_id=message.draft_id,
            details={
                "kind": message.kind.value,
                "attempt": attempt,
                "next_action_type": retry_action.value,
                "delay_seconds": int(delay.total_seconds()),
                "subject": message.subject,
                "body": message.body,
                "errors": error.errors,
            },
        )
        self._schedule(unit.request, retry_action, delay)
        log.warning(
            "send_retry_scheduled",
            request_id=unit.request.id,
            kind=message.kind.value,
            attempt=attempt,
            retry_in_seconds=int(delay.total_seconds()),
        )

    async def _retry_invitation(self, unit: Mutation):
        """Replay the invitation recorded with the last scheduled retry."""
        stmt = (
            select(Action)
            .where(
                Action.request_id == unit.request.id,
                Action.action_type == ActionType.SEND_RETRY_SCHEDULED,
            )
            .order_by(Action.sequence.desc())
            .limit(1)
        )
        retry = (await unit.db.execute(stmt)).scalar_one_or_none()
        details = (retry.details or {}) if retry else {}
        if unit.request.status != SchedulingStatus.DRAFT or details.get("kind") != ActionType.INVITATION_SENT.value:
            log.info("invitation_retry_skipped", request_id=unit.request.id, status=unit.request.status.value)
            return
        await self._send_invitation(unit, details.get("subject") or "", details.get("body") or "", retry.channel, Actor.AUTOMATION)

    # ============================================
    # Operator transitions
    # ============================================

    async def confirm(
        self,
        request_id: str,
        slot_start: datetime | None = None,
        reason: str | None = None,
        actor: Actor = Actor.HUMAN,
    ) -> SchedulingRequest:
        """
        Confirm a proposed or awaiting request. The confirmation message to
        the external party goes out on the next process_request.

        Raises:
            InvalidTransition: the request is in draft or already terminal
        """
        async with self._mutate(request_id) as unit:
            await self._confirm(unit, slot_start, reason, actor)
            request = unit.request
        return request

    async def cancel(self, request_id: str, reason: str | None = None, actor: Actor = Actor.HUMAN) -> SchedulingRequest:
        async with self._mutate(request_id) as unit:
            self._transition(unit, SchedulingStatus.CANCELLED, actor, reason=reason)
            request = unit.request
        return request

    async def _confirm(self, unit: Mutation, slot_start: datetime | None, reason: str | None, actor: Actor):
        request = unit.request
        ensure_transition(request.status, SchedulingStatus.CONFIRMED)

        if slot_start is not None:
            if slot_start.tzinfo is None:
                raise InvalidRequest("slot_start must be timezone-aware")
            slot_end = slot_start + timedelta(minutes=request.duration_minutes)
            draft = await DraftService(unit.db).get_live(request.id)
            for slot in draft_slots(draft) if draft else []:
                if slot.start == slot_start:
                    slot_end = slot.end
                    break
            request.confirmed_slot_start = slot_start
            request.confirmed_slot_end = slot_end

        self._transition(
            unit, SchedulingStatus.CONFIRMED, actor,
            reason=reason,
            details={"slot_start": slot_start.isoformat() if slot_start else None},
        )
        self._schedule(request, NextActionType.SEND_CONFIRMATION)

    # ============================================
    # Inbound signals and delivery callbacks
    # ============================================

    async def handle_inbound_signal(self, signal: InboundSignal) -> SignalResult:
        """
        Apply an inbound reply.

        Replies are deduplicated by provider message id. A reply that cannot
        be correlated fails the hinted request, or raises CorrelationFailure
        when there is nothing to fail.
        """
        signal_log = log.bind(provider=signal.provider, conversation_id=signal.conversation_id, message_id=signal.message_id)

        async with self.session_factory() as db:
            thread_key = await CorrelationService(db).resolve(signal.provider, signal.conversation_id)
            request_id = None
            if thread_key is not None:
                stmt = (
                    select(SchedulingRequest.id)
                    .where(SchedulingRequest.thread_key == thread_key)
                    .order_by(SchedulingRequest.status.in_(TERMINAL_STATUSES), SchedulingRequest.created_at.desc())
                    .limit(1)
                )
                request_id = (await db.execute(stmt)).scalar_one_or_none()

        if request_id is None:
            return await self._correlation_failed(signal, signal_log)

        try:
            async with self._mutate(request_id) as unit:
                result = await self._apply_signal(unit, signal, signal_log)
        except IntegrityError:
            # Same message id recorded concurrently by another worker
            result = SignalResult(SignalOutcome.DUPLICATE, request_id)

        track_inbound_signal(result.outcome.value)
        return result

    async def _apply_signal(self, unit: Mutation, signal: InboundSignal, signal_log) -> SignalResult:
        request = unit.request
        stmt = select(Action.id).where(
            Action.request_id == request.id,
            Action.external_message_id == signal.message_id,
        )
        if (await unit.db.execute(stmt)).first() is not None:
            signal_log.info("inbound_duplicate", request_id=request.id)
            return SignalResult(SignalOutcome.DUPLICATE, request.id, request.status)

        if request.status in TERMINAL_STATUSES:
            signal_log.info("inbound_ignored_terminal", request_id=request.id, status=request.status.value)
            return SignalResult(SignalOutcome.IGNORED_TERMINAL, request.id, request.status)

        append_action(
            unit.db, request, ActionType.INBOUND_MESSAGE_RECEIVED, Actor.HUMAN,
            content=signal.body,
            channel=signal.channel,
            external_message_id=signal.message_id,
            details={"provider": signal.provider, "intent": signal.intent.value, "sender": signal.sender},
        )
        await unit.db.flush()
        unit.emit("response.received", {"message_id": signal.message_id, "intent": signal.intent.value})

        if signal.intent == SignalIntent.CONFIRM and can_transition(request.status, SchedulingStatus.CONFIRMED):
            await self._confirm(unit, signal.selected_slot_start, "Confirmed by reply", Actor.HUMAN)
        elif signal.intent == SignalIntent.DECLINE and can_transition(request.status, SchedulingStatus.CANCELLED):
            self._transition(unit, SchedulingStatus.CANCELLED, Actor.HUMAN, reason="Declined by reply")
        else:
            regenerate = await DraftService(unit.db).get_live(request.id) is not None
            try:
                await self._prepare_draft(unit, None, None, None, Actor.AUTOMATION, regenerate=regenerate)
            except InvalidRequest as e:
                self._transition(unit, SchedulingStatus.FAILED, Actor.SYSTEM, reason=str(e))
            else:
                self._schedule(request, NextActionType.SEND_PROPOSAL)

        signal_log.info("inbound_processed", request_id=request.id, status=request.status.value)
        return SignalResult(SignalOutcome.PROCESSED, request.id, request.status)

    async def _correlation_failed(self, signal: InboundSignal, signal_log) -> SignalResult:
        error = CorrelationFailure(signal.provider, signal.conversation_id, signal.message_id)
        signal_log.error("correlation_failed", request_hint=signal.request_id, error=str(error))
        track_inbound_signal(SignalOutcome.CORRELATION_FAILED.value)

        if signal.request_id is None:
            raise error

        async with self._mutate(signal.request_id) as unit:
            request = unit.request
            if request.status in TERMINAL_STATUSES:
                return SignalResult(SignalOutcome.IGNORED_TERMINAL, request.id, request.status)
            append_action(
                unit.db, request, ActionType.CORRELATION_FAILED, Actor.SYSTEM,
                content=str(error),
                channel=signal.channel,
                details={"provider": signal.provider, "conversation_id": signal.conversation_id, "message_id": signal.message_id},
            )
            self._transition(unit, SchedulingStatus.FAILED, Actor.SYSTEM, reason=str(error))
        return SignalResult(SignalOutcome.CORRELATION_FAILED, request.id, request.status)

    async def handle_delivery_status(self, provider_message_id: str, status: str, error: str | None = None) -> str | None:
        """
        Apply a provider delivery callback. Returns the request id when a
        delivery failure was recorded and the fallback channel scheduled.
        """
        if status.lower() not in FAILED_DELIVERY_STATUSES:
            log.debug("delivery_status_ignored", provider_message_id=provider_message_id, status=status)
            return None

        async with self.session_factory() as db:
            stmt = select(Action).where(
                Action.provider_message_id == provider_message_id,
                Action.action_type.in_(OUTBOUND_ACTION_TYPES),
            )
            original = (await db.execute(stmt)).scalars().first()
        if original is None:
            log.warning("delivery_status_unknown_message", provider_message_id=provider_message_id, status=status)
            return None

        async with self._mutate(original.request_id) as unit:
            if unit.request.status in TERMINAL_STATUSES:
                log.info("delivery_status_ignored_terminal", request_id=unit.request.id, status=status)
                return None
            recorded = await self._dispatcher(unit.db).record_delivery_failure(unit.request, original, status.lower(), error)
            if recorded:
                self._schedule(unit.request, NextActionType.FALLBACK_CHANNEL)
                unit.emit("attempt.failed", {
                    "channel": original.channel.value if original.channel else None,
                    "provider_message_id": provider_message_id,
                    "status": status.lower(),
                })
        return original.request_id if recorded else None

    # ============================================
    # Background driver
    # ============================================

    async def process_request(self, request_id: str) -> SchedulingStatus:
        """
        Run the request's next action if it is due.

        Shared by the periodic driver and the event-driven path. Safe to call
        for requests that are not due (no-op).
        """
        async with self._mutate(request_id) as unit:
            request = unit.request
            for _ in range(MAX_CHAINED_STEPS):
                if request.next_action_type is None:
                    break
                if request.status in TERMINAL_STATUSES and request.next_action_type not in POST_TERMINAL_ACTIONS:
                    break
                if request.next_action_at is None or request.next_action_at > self.clock():
                    break
                action_type = request.next_action_type
                self._schedule(request, None)
                log.info("next_action_running", request_id=request.id, next_action_type=action_type.value)
                await self._run_next_action(unit, action_type)
            status = request.status
        return status

    async def _run_next_action(self, unit: Mutation, action_type: NextActionType):
        request = unit.request
        if action_type == NextActionType.PREPARE_PROPOSAL:
            regenerate = await DraftService(unit.db).get_live(request.id) is not None
            try:
                await self._prepare_draft(unit, None, None, None, Actor.AUTOMATION, regenerate=regenerate)
            except InvalidRequest as e:
                self._transition(unit, SchedulingStatus.FAILED, Actor.SYSTEM, reason=str(e))
                return
            self._schedule(request, NextActionType.SEND_PROPOSAL)

        elif action_type == NextActionType.SEND_INVITATION:
            await self._retry_invitation(unit)

        elif action_type == NextActionType.SEND_PROPOSAL:
            await self._send_proposal(unit)

        elif action_type == NextActionType.FOLLOW_UP:
            await self._follow_up(unit)

        elif action_type == NextActionType.FALLBACK_CHANNEL:
            await self._fallback(unit)

        elif action_type == NextActionType.SEND_CONFIRMATION:
            await self._send_confirmation(unit)

    async def _follow_up(self, unit: Mutation):
        request = unit.request
        actions = await list_actions(unit.db, request.id)
        follow_ups = sum(1 for action in actions if action.action_type == ActionType.FOLLOW_UP_SENT)
        if follow_ups >= settings.MAX_FOLLOW_UPS:
            self._transition(
                unit, SchedulingStatus.EXPIRED, Actor.SYSTEM,
                reason=f"No response after {follow_ups} follow-ups",
            )
            return

        draft = await DraftService(unit.db).get_live(request.id)
        labels = [slot.label for slot in draft_slots(draft)] if draft else []
        message = OutboundMessage(
            kind=ActionType.FOLLOW_UP_SENT,
            body=self.composer.follow_up(request.title, labels, follow_ups + 1),
            subject=f"Re: {draft.subject}" if draft else f"Re: {request.title}",
            draft_id=draft.id if draft else None,
        )
        result = await self._send(unit, message, None, NextActionType.FOLLOW_UP)
        if result is not None:
            self._schedule(request, NextActionType.FOLLOW_UP, timedelta(hours=settings.FOLLOW_UP_HOURS))

    async def _fallback(self, unit: Mutation):
        """Resend the last message on a channel that has not failed."""
        request = unit.request
        dispatcher = self._dispatcher(unit.db)
        last = await dispatcher.last_sent(request.id)
        if last is None:
            self._schedule(request, NextActionType.PREPARE_PROPOSAL)
            return

        failed = await dispatcher.failed_channels(request.id)
        preferred = next((channel for channel in Channel if channel not in failed), None)

        if last.action_type == ActionType.PROPOSAL_SENT:
            draft = await DraftService(unit.db).get_live(request.id)
            if draft is None:
                self._schedule(request, NextActionType.PREPARE_PROPOSAL)
                return
            message = OutboundMessage(ActionType.PROPOSAL_SENT, draft.body, draft.subject, draft.id)
        else:
            message = OutboundMessage(last.action_type, last.content or "", (last.details or {}).get("subject"))

        result = await self._send(unit, message, preferred, NextActionType.FALLBACK_CHANNEL)
        if result is None:
            return
        if result.sent:
            unit.emit("channel.escalated", {
                "from_channel": last.channel.value if last.channel else None,
                "to_channel": result.channel.value,
            })
        self._schedule(request, NextActionType.FOLLOW_UP, timedelta(hours=settings.FOLLOW_UP_HOURS))

    async def due_request_ids(self, limit: int | None = None) -> list[str]:
        stmt = (
            select(SchedulingRequest.id)
            .where(
                SchedulingRequest.next_action_at.is_not(None),
                SchedulingRequest.next_action_at <= self.clock(),
                or_(
                    SchedulingRequest.status.notin_(TERMINAL_STATUSES),
                    SchedulingRequest.next_action_type.in_(POST_TERMINAL_ACTIONS),
                ),
            )
            .order_by(SchedulingRequest.next_action_at)
            .limit(limit or settings.DRIVER_BATCH_SIZE)
        )
        async with self.session_factory() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def process_due_requests(self, limit: int | None = None, concurrency: int | None = None) -> int:
        """
        Drive every due request once with bounded concurrency.

        A failure on one request is logged and reported; it never stops the
        rest of the batch. Returns the number of requests picked up.
        """
        request_ids = await self.due_request_ids(limit)
        update_driver_batch_size(len(request_ids))
        if not request_ids:
            return 0

        semaphore = asyncio.Semaphore(concurrency or settings.DRIVER_CONCURRENCY)

        async def drive(request_id: str):
            async with semaphore:
                try:
                    await self.process_request(request_id)
                except Exception:
                    log.exception("driver_request_failed", request_id=request_id)
                    capture_exception(request_id=request_id)

        await asyncio.gather(*[drive(request_id) for request_id in request_ids])
        log.info("driver_batch_processed", count=len(request_ids))
        return len(request_ids)

    # ============================================
    # Postmortems and cleanup
    # ============================================

    async def create_postmortem(self, request_id: str) -> Postmortem:
        """Raises InvalidTransition unless the request is terminal."""
        async with self._mutate(request_id) as unit:
            postmortem = await PostmortemService(unit.db).create(unit.request)
        return postmortem

    async def performance_report(self, start: datetime, end: datetime) -> dict:
        if end <= start:
            raise InvalidRequest("end must be after start")
        async with self.session_factory() as db:
            return await PostmortemService(db).performance_report(start, end)

    async def delete_request(self, request_id: str):
        """Operator cleanup: remove a request and everything hanging off it."""
        async with self._mutate(request_id) as unit:
            db = unit.db
            thread_key = unit.request.thread_key
            for model in (Action, Attendee, Draft, Postmortem):
                await db.execute(delete(model).where(model.request_id == request_id))
            remaining = select(SchedulingRequest.id).where(
                SchedulingRequest.thread_key == thread_key,
                SchedulingRequest.id != request_id,
            )
            if (await db.execute(remaining)).first() is None:
                await db.execute(delete(ConversationMapping).where(ConversationMapping.thread_key == thread_key))
            await db.delete(unit.request)
        log.warning("request_deleted", request_id=request_id, thread_key=thread_key)
