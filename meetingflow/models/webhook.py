"""
Webhook Models

Registered external listeners and the outbound deliveries made to them.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Integer, Text, Boolean, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from meetingflow.models.base import Base, IdMixin, TimestampMixin, UTCDateTime, enum_column, utcnow


class WebhookEventType(str, enum.Enum):
    """Events a webhook can subscribe to."""
    REQUEST_CREATED = "request.created"
    REQUEST_STATUS_CHANGED = "request.status_changed"
    REQUEST_EXPIRED = "request.expired"
    REQUEST_FAILED = "request.failed"
    MEETING_SCHEDULED = "meeting.scheduled"
    MEETING_CANCELLED = "meeting.cancelled"
    RESPONSE_RECEIVED = "response.received"
    DRAFT_GENERATED = "draft.generated"
    ATTEMPT_SENT = "attempt.sent"
    ATTEMPT_FAILED = "attempt.failed"
    CHANNEL_ESCALATED = "channel.escalated"


class WebhookAuthType(str, enum.Enum):
    HMAC = "hmac"
    BEARER = "bearer"
    NONE = "none"


class BackoffPolicy(str, enum.Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


class Webhook(Base, IdMixin, TimestampMixin):
    """
    Registered external listener.

    consecutive_failures resets to 0 on any successful delivery; reaching
    auto_disable_after_failures flips is_active off until re-enabled.
    """
    __tablename__ = "webhooks"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    auth_type: Mapped[WebhookAuthType] = mapped_column(
        enum_column(WebhookAuthType),
        nullable=False,
        default=WebhookAuthType.HMAC
    )
    secret_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auth_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    custom_headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Retry policy
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    backoff: Mapped[BackoffPolicy] = mapped_column(
        enum_column(BackoffPolicy),
        nullable=False,
        default=BackoffPolicy.FIXED
    )
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_disable_after_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    disabled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in (self.events or [])

    def __repr__(self):
        return f"<Webhook(id={self.id}, url={self.url}, active={self.is_active})>"


class WebhookDelivery(Base, IdMixin, TimestampMixin):
    """One attempt-series delivering one event to one webhook."""
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("webhook_id", "event_id", name="uq_webhook_deliveries_webhook_event"),
    )

    webhook_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        enum_column(DeliveryStatus),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, webhook_id={self.webhook_id}, status={self.status})>"


class WebhookDeliveryAttempt(Base, IdMixin):
    """Outcome of a single HTTP attempt within a delivery."""
    __tablename__ = "webhook_delivery_attempts"

    delivery_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhook_deliveries.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
