"""
Scheduling request models.

A SchedulingRequest is one negotiation with an external party. Its
Attendees and append-only Action log hang off it by request_id; the Action
log is the source of truth for idempotency checks and postmortems.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, Boolean, JSON, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column
from meetingflow.models.base import Base, IdMixin, TimestampMixin, UTCDateTime, enum_column, utcnow


class SchedulingStatus(str, enum.Enum):
    """Negotiation state."""
    DRAFT = "draft"
    AWAITING_RESPONSE = "awaiting_response"
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SchedulingStatus.CONFIRMED,
    SchedulingStatus.CANCELLED,
    SchedulingStatus.EXPIRED,
    SchedulingStatus.FAILED,
})


# Row filter for the one-live-request-per-thread index
LIVE_STATUS_SQL = "status NOT IN ('confirmed', 'cancelled', 'expired', 'failed')"


class NextActionType(str, enum.Enum):
    """What the background driver should do when next_action_at elapses."""
    PREPARE_PROPOSAL = "prepare_proposal"
    SEND_INVITATION = "send_invitation"
    SEND_PROPOSAL = "send_proposal"
    FOLLOW_UP = "follow_up"
    FALLBACK_CHANNEL = "fallback_channel"
    SEND_CONFIRMATION = "send_confirmation"


# Next actions that still run once the request is terminal
POST_TERMINAL_ACTIONS = frozenset({NextActionType.SEND_CONFIRMATION})


class Channel(str, enum.Enum):
    """Outbound channel."""
    EMAIL = "email"
    SMS = "sms"


class AttendeeSide(str, enum.Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class Actor(str, enum.Enum):
    HUMAN = "human"
    AUTOMATION = "automation"
    SYSTEM = "system"


class ActionType(str, enum.Enum):
    """Closed set of entries in a request's action log."""
    REQUEST_CREATED = "request_created"
    ATTENDEE_ADDED = "attendee_added"
    INBOUND_MESSAGE_RECEIVED = "inbound_message_received"
    AVAILABILITY_COMPUTED = "availability_computed"
    DRAFT_GENERATED = "draft_generated"
    DRAFT_REGENERATED = "draft_regenerated"
    DRAFT_UPDATED = "draft_updated"
    INVITATION_SENT = "invitation_sent"
    PROPOSAL_SENT = "proposal_sent"
    FOLLOW_UP_SENT = "follow_up_sent"
    SEND_FAILED = "send_failed"
    SEND_RETRY_SCHEDULED = "send_retry_scheduled"
    CONFIRMATION_SENT = "confirmation_sent"
    SMS_DELIVERY_FAILED = "sms_delivery_failed"
    EMAIL_DELIVERY_FAILED = "email_delivery_failed"
    CHANNEL_FALLBACK = "channel_fallback"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"
    CORRELATION_FAILED = "correlation_failed"
    POSTMORTEM_CREATED = "postmortem_created"


# Action types that represent a message leaving the system
OUTBOUND_ACTION_TYPES = frozenset({
    ActionType.INVITATION_SENT,
    ActionType.PROPOSAL_SENT,
    ActionType.FOLLOW_UP_SENT,
})

DELIVERY_FAILURE_ACTION_TYPES = frozenset({
    ActionType.SEND_FAILED,
    ActionType.SMS_DELIVERY_FAILED,
    ActionType.EMAIL_DELIVERY_FAILED,
})

# Provider callbacks reporting a message that was accepted but never arrived
CALLBACK_FAILURE_ACTION_TYPES = frozenset({
    ActionType.SMS_DELIVERY_FAILED,
    ActionType.EMAIL_DELIVERY_FAILED,
})


class SchedulingRequest(Base, IdMixin, TimestampMixin):
    """
    One meeting negotiation.

    Mutated only through state machine transitions. At most one
    non-terminal request may exist per thread_key.
    """
    __tablename__ = "scheduling_requests"
    __table_args__ = (
        Index("ix_scheduling_requests_due", "next_action_at"),
        Index(
            "uq_scheduling_requests_live_thread",
            "thread_key",
            unique=True,
            postgresql_where=text(LIVE_STATUS_SQL),
            sqlite_where=text(LIVE_STATUS_SQL),
        ),
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[SchedulingStatus] = mapped_column(
        enum_column(SchedulingStatus),
        nullable=False,
        default=SchedulingStatus.DRAFT,
        index=True
    )
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    thread_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_action_type: Mapped[NextActionType | None] = mapped_column(
        enum_column(NextActionType),
        nullable=True
    )
    next_action_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    preferred_channel: Mapped[Channel] = mapped_column(
        enum_column(Channel),
        nullable=False,
        default=Channel.EMAIL
    )
    action_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmed_slot_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    confirmed_slot_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    outcome_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self):
        return f"<SchedulingRequest(id={self.id}, status={self.status}, thread={self.thread_key})>"


class Attendee(Base, IdMixin, TimestampMixin):
    """
    A party whose presence is required.

    Internal attendees resolve to a calendar identity; external attendees
    only have an email address and/or phone number.
    """
    __tablename__ = "scheduling_attendees"

    request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scheduling_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    side: Mapped[AttendeeSide] = mapped_column(enum_column(AttendeeSide), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    calendar_identity: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_primary_contact: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def address_for(self, channel: Channel) -> str | None:
        return self.email if channel == Channel.EMAIL else self.phone

    def __repr__(self):
        return f"<Attendee(id={self.id}, side={self.side}, email={self.email})>"


class Action(Base, IdMixin):
    """
    Append-only log entry for a scheduling request.

    Actions are never edited or deleted. sequence is 1-based and strictly
    increasing per request.
    """
    __tablename__ = "scheduling_actions"
    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_scheduling_actions_sequence"),
        UniqueConstraint("request_id", "external_message_id", name="uq_scheduling_actions_external_message"),
    )

    request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scheduling_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[ActionType] = mapped_column(enum_column(ActionType), nullable=False)
    actor: Mapped[Actor] = mapped_column(enum_column(Actor), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel: Mapped[Channel | None] = mapped_column(enum_column(Channel), nullable=True)
    external_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    draft_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Action(request_id={self.request_id}, seq={self.sequence}, type={self.action_type})>"


class Draft(Base, IdMixin, TimestampMixin):
    """
    Proposal text plus the locked slot set it proposes.

    The slot set never changes after creation; regeneration creates a new
    row and retires the previous one (is_live = False).
    """
    __tablename__ = "scheduling_drafts"

    request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scheduling_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    slots: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_live: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    generated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    edited_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self):
        return f"<Draft(id={self.id}, request_id={self.request_id}, version={self.version}, live={self.is_live})>"


class ConversationMapping(Base, IdMixin, TimestampMixin):
    """Canonical provider conversation id -> internal thread key mapping."""
    __tablename__ = "conversation_mappings"
    __table_args__ = (
        UniqueConstraint("provider", "conversation_id", name="uq_conversation_mappings_provider_conversation"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(512), nullable=False)
    thread_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    def __repr__(self):
        return f"<ConversationMapping({self.provider}:{self.conversation_id} -> {self.thread_key})>"
