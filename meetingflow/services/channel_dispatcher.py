"""
Channel Dispatcher.

Sends invitations, proposals, follow-ups and confirmations over email or
SMS, records the outcome in the action log and falls back to the other
channel when one fails. Runs inside the caller's transaction and request lock.
"""
import asyncio
import enum
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meetingflow.config import settings
from meetingflow.errors import ChannelUnavailable, ProviderTimeout
from meetingflow.logging_config import get_logger
from meetingflow.models.scheduling import (
    Action,
    ActionType,
    Actor,
    Attendee,
    AttendeeSide,
    Channel,
    CALLBACK_FAILURE_ACTION_TYPES,
    OUTBOUND_ACTION_TYPES,
    SchedulingRequest,
)
from meetingflow.routes.metrics import track_channel_fallback, track_channel_send
from meetingflow.services.action_log import append_action
from meetingflow.services.correlation_service import CorrelationService
from meetingflow.services.draft_service import DraftService
from meetingflow.services.providers import EmailSender, MessageContent, SendResult, SmsSender

log = get_logger(component="channel_dispatcher")

CHANNEL_ORDER = (Channel.EMAIL, Channel.SMS)

# Provider statuses that mean the message never reached the recipient
FAILED_DELIVERY_STATUSES = frozenset({"undelivered", "failed", "bounced"})


class DeliveryOutcome(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    STALE_DRAFT = "stale_draft"
    DUPLICATE = "duplicate"


@dataclass
class OutboundMessage:
    """What to send. kind is the Action type recorded on success."""
    kind: ActionType
    body: str
    subject: str | None = None
    draft_id: str | None = None


@dataclass
class DeliveryResult:
    outcome: DeliveryOutcome
    channel: Channel
    provider_message_id: str | None = None
    error: str | None = None
    permanent: bool = False

    @property
    def sent(self) -> bool:
        return self.outcome == DeliveryOutcome.SENT


class ChannelDispatcher:
    """Service for sending messages to the external attendee of a request."""

    def __init__(
        self,
        db: AsyncSession,
        email_sender: EmailSender | None,
        sms_sender: SmsSender | None,
        timeout: float | None = None,
    ):
        self.db = db
        self.senders = {Channel.EMAIL: email_sender, Channel.SMS: sms_sender}
        self.timeout = timeout if timeout is not None else settings.CHANNEL_SEND_TIMEOUT_SECONDS

    async def send(self, request: SchedulingRequest, channel: Channel, message: OutboundMessage) -> DeliveryResult:
        """
        Send one message on one channel.

        A message tied to a draft is only sent while that draft is live, and
        a proposal is sent at most once per draft and channel.
        """
        request_log = log.bind(request_id=request.id, channel=channel.value, kind=message.kind.value)

        if message.draft_id is not None:
            live = await DraftService(self.db).get_live(request.id)
            if live is None or live.id != message.draft_id:
                request_log.info("send_skipped_stale_draft", draft_id=message.draft_id)
                return DeliveryResult(DeliveryOutcome.STALE_DRAFT, channel)

            if message.kind == ActionType.PROPOSAL_SENT and await self._already_sent(request.id, message.draft_id, channel):
                request_log.info("send_skipped_duplicate", draft_id=message.draft_id)
                return DeliveryResult(DeliveryOutcome.DUPLICATE, channel)

        if message.kind == ActionType.CONFIRMATION_SENT and await self._confirmation_sent(request.id):
            request_log.info("send_skipped_duplicate_confirmation")
            return DeliveryResult(DeliveryOutcome.DUPLICATE, channel)

        recipient = await self._recipient(request.id, channel)
        if recipient is None:
            result = SendResult(error=f"No {channel.value} address for external attendee", permanent=True)
        else:
            result = await self._call_sender(channel, recipient, MessageContent(
                body=message.body,
                subject=message.subject,
                thread_key=request.thread_key,
            ))

        if not result.ok:
            append_action(
                self.db, request, ActionType.SEND_FAILED, Actor.SYSTEM,
                content=result.error,
                channel=channel,
                draft_id=message.draft_id,
                details={"kind": message.kind.value, "to": recipient, "permanent": result.permanent},
            )
            await self.db.flush()
            track_channel_send(channel.value, "failed")
            request_log.warning("send_failed", error=result.error, permanent=result.permanent)
            return DeliveryResult(DeliveryOutcome.FAILED, channel, error=result.error, permanent=result.permanent)

        append_action(
            self.db, request, message.kind, Actor.AUTOMATION,
            content=message.body,
            channel=channel,
            provider_message_id=result.id,
            draft_id=message.draft_id,
            details={"to": recipient, "subject": message.subject},
        )
        if result.conversation_id:
            await CorrelationService(self.db).register(channel.value, result.conversation_id, request.thread_key)
        await self.db.flush()

        track_channel_send(channel.value, "sent")
        request_log.info("message_sent", provider_message_id=result.id)
        return DeliveryResult(DeliveryOutcome.SENT, channel, provider_message_id=result.id)

    async def send_with_fallback(
        self,
        request: SchedulingRequest,
        message: OutboundMessage,
        preferred: Channel | None = None,
    ) -> DeliveryResult:
        """
        Send on the preferred channel, then on the others.

        Channels that already reported a delivery failure or a permanent
        rejection for this request are skipped. A transient send error only
        moves this attempt on to the next channel.

        Raises:
            ChannelUnavailable: every remaining channel failed; retryable
                when one of them failed transiently
        """
        preferred = preferred or request.preferred_channel
        order = [preferred] + [channel for channel in CHANNEL_ORDER if channel != preferred]
        failed = await self.failed_channels(request.id)
        errors = {channel.value: "previous delivery failure" for channel in order if channel in failed}
        retryable = False

        attempted = []
        for channel in order:
            if channel in failed:
                continue
            if attempted:
                append_action(
                    self.db, request, ActionType.CHANNEL_FALLBACK, Actor.SYSTEM,
                    channel=channel,
                    details={"from": attempted[-1].value, "to": channel.value},
                )
                track_channel_fallback(attempted[-1].value, channel.value)
            attempted.append(channel)

            result = await self.send(request, channel, message)
            if result.outcome != DeliveryOutcome.FAILED:
                return result
            errors[channel.value] = result.error or "send failed"
            retryable = retryable or not result.permanent

        raise ChannelUnavailable(request.id, errors, retryable=retryable)

    async def record_delivery_failure(
        self,
        request: SchedulingRequest,
        original: Action,
        status: str,
        error: str | None = None,
    ) -> bool:
        """
        Handle an asynchronous "not delivered" callback for a sent message.

        Appends sms_delivery_failed / email_delivery_failed; the caller
        schedules the fallback channel. Returns False for a repeated callback.
        """
        stmt = select(Action.id).where(
            Action.request_id == request.id,
            Action.provider_message_id == original.provider_message_id,
            Action.action_type.in_(CALLBACK_FAILURE_ACTION_TYPES),
        )
        if (await self.db.execute(stmt)).first() is not None:
            log.info("delivery_failure_duplicate", request_id=request.id, provider_message_id=original.provider_message_id)
            return False

        action_type = ActionType.SMS_DELIVERY_FAILED if original.channel == Channel.SMS else ActionType.EMAIL_DELIVERY_FAILED
        append_action(
            self.db, request, action_type, Actor.SYSTEM,
            content=error,
            channel=original.channel,
            provider_message_id=original.provider_message_id,
            draft_id=original.draft_id,
            details={"status": status, "kind": original.action_type.value},
        )
        await self.db.flush()

        log.warning(
            "delivery_failed",
            request_id=request.id,
            channel=original.channel.value if original.channel else None,
            status=status,
            error=error,
        )
        return True

    async def failed_channels(self, request_id: str) -> set[Channel]:
        """Channels excluded for the rest of the request: undelivered callbacks and permanent rejections."""
        stmt = select(Action).where(
            Action.request_id == request_id,
            Action.action_type.in_(CALLBACK_FAILURE_ACTION_TYPES | {ActionType.SEND_FAILED}),
            Action.channel.is_not(None),
        )
        failed = set()
        for action in (await self.db.execute(stmt)).scalars():
            if action.action_type == ActionType.SEND_FAILED and not (action.details or {}).get("permanent"):
                continue
            failed.add(action.channel)
        return failed

    async def retries_since_last_send(self, request_id: str) -> int:
        """Retries scheduled since the last message that went out."""
        sent_types = OUTBOUND_ACTION_TYPES | {ActionType.CONFIRMATION_SENT}
        stmt = (
            select(Action.action_type)
            .where(
                Action.request_id == request_id,
                Action.action_type.in_(sent_types | {ActionType.SEND_RETRY_SCHEDULED}),
            )
            .order_by(Action.sequence.desc())
        )
        retries = 0
        for action_type in (await self.db.execute(stmt)).scalars():
            if action_type in sent_types:
                break
            retries += 1
        return retries

    async def last_sent(self, request_id: str) -> Action | None:
        """Most recent successfully sent message."""
        stmt = (
            select(Action)
            .where(
                Action.request_id == request_id,
                Action.action_type.in_(OUTBOUND_ACTION_TYPES),
            )
            .order_by(Action.sequence.desc())
            .limit(1)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _already_sent(self, request_id: str, draft_id: str, channel: Channel) -> bool:
        stmt = select(Action.id).where(
            Action.request_id == request_id,
            Action.action_type == ActionType.PROPOSAL_SENT,
            Action.draft_id == draft_id,
            Action.channel == channel,
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _confirmation_sent(self, request_id: str) -> bool:
        stmt = select(Action.id).where(
            Action.request_id == request_id,
            Action.action_type == ActionType.CONFIRMATION_SENT,
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _recipient(self, request_id: str, channel: Channel) -> str | None:
        stmt = (
            select(Attendee)
            .where(Attendee.request_id == request_id, Attendee.side == AttendeeSide.EXTERNAL)
            .order_by(Attendee.is_primary_contact.desc(), Attendee.created_at)
        )
        for attendee in (await self.db.execute(stmt)).scalars():
            address = attendee.address_for(channel)
            if address:
                return address
        return None

    async def _call_sender(self, channel: Channel, to: str, content: MessageContent) -> SendResult:
        sender = self.senders.get(channel)
        if sender is None:
            return SendResult(error=f"{channel.value} sender not configured", permanent=True)
        try:
            return await asyncio.wait_for(sender.send(to, content), timeout=self.timeout)
        except asyncio.TimeoutError:
            return SendResult(error=str(ProviderTimeout(channel.value, self.timeout)))
        except Exception as e:
            log.error("sender_error", channel=channel.value, error=str(e))
            return SendResult(error=str(e))
