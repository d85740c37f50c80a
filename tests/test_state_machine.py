"""
Scheduling state machine: transitions, inbound replies, channel fallback and
the background driver.
"""
import asyncio

import pytest

from conftest import make_request

from meetingflow.config import settings
from meetingflow.errors import CorrelationFailure, InvalidTransition, NotFound
from meetingflow.models.scheduling import (
    ActionType,
    AttendeeSide,
    Channel,
    NextActionType,
    SchedulingStatus,
    TERMINAL_STATUSES,
)
from meetingflow.services.action_log import RequestLocks
from meetingflow.services.channel_dispatcher import DeliveryOutcome
from meetingflow.services.composer import TemplateComposer
from meetingflow.services.draft_service import draft_slots
from meetingflow.services.scheduling_service import (
    TRANSITIONS,
    AttendeeSpec,
    InboundSignal,
    SchedulingService,
    SignalIntent,
    SignalOutcome,
    can_transition,
)


def email_reply(request, message_id="reply-1", intent=SignalIntent.REPLY, **kwargs):
    return InboundSignal(
        provider="email",
        conversation_id=f"conv-{request.thread_key}",
        message_id=message_id,
        body="Works for me",
        intent=intent,
        **kwargs,
    )


async def proposed_and_sent(scheduling, **kwargs):
    request = await make_request(scheduling, **kwargs)
    await scheduling.generate_draft(request.id, seed=5)
    result = await scheduling.send_draft(request.id)
    assert result.outcome == DeliveryOutcome.SENT
    return await scheduling.get_request(request.id)


class TestTransitionTable:
    def test_terminal_states_allow_nothing(self):
        for status in TERMINAL_STATUSES:
            assert TRANSITIONS[status] == frozenset()

    def test_every_status_is_listed(self):
        assert set(TRANSITIONS) == set(SchedulingStatus)

    def test_draft_cannot_confirm(self):
        assert not can_transition(SchedulingStatus.DRAFT, SchedulingStatus.CONFIRMED)
        assert can_transition(SchedulingStatus.PROPOSED, SchedulingStatus.PROPOSED)
        assert can_transition(SchedulingStatus.AWAITING_RESPONSE, SchedulingStatus.EXPIRED)


class TestRequests:
    async def test_create_starts_in_draft(self, scheduling, events):
        request = await make_request(scheduling, thread_key="thread-1")

        assert request.status == SchedulingStatus.DRAFT
        assert request.next_action_type is None
        actions = await scheduling.list_actions(request.id)
        assert [a.action_type for a in actions] == [
            ActionType.REQUEST_CREATED,
            ActionType.ATTENDEE_ADDED,
            ActionType.ATTENDEE_ADDED,
        ]
        assert events.types() == ["request.created"]

    async def test_one_live_request_per_thread(self, scheduling):
        first = await make_request(scheduling, thread_key="thread-1")

        with pytest.raises(InvalidTransition):
            await make_request(scheduling, thread_key="thread-1")

        await scheduling.generate_draft(first.id)
        await scheduling.cancel(first.id, reason="Duplicate")
        second = await make_request(scheduling, thread_key="thread-1")
        assert second.id != first.id

    async def test_confirm_from_draft_rejected(self, scheduling):
        request = await make_request(scheduling)

        with pytest.raises(InvalidTransition) as exc_info:
            await scheduling.confirm(request.id)
        assert exc_info.value.current_status == "draft"

        with pytest.raises(InvalidTransition):
            await scheduling.cancel(request.id)

    async def test_terminal_request_rejects_transitions(self, scheduling, events):
        request = await make_request(scheduling)
        await scheduling.generate_draft(request.id)
        await scheduling.cancel(request.id, reason="Client withdrew")

        with pytest.raises(InvalidTransition):
            await scheduling.confirm(request.id)
        with pytest.raises(InvalidTransition):
            await scheduling.cancel(request.id)

        request = await scheduling.get_request(request.id)
        assert request.status == SchedulingStatus.CANCELLED
        assert request.closed_at is not None
        assert request.outcome_reason == "Client withdrew"
        assert events.types().count("meeting.cancelled") == 1

    async def test_list_requests_by_status(self, scheduling):
        live = await make_request(scheduling)
        cancelled = await make_request(scheduling)
        await scheduling.generate_draft(cancelled.id)
        await scheduling.cancel(cancelled.id)

        drafts = await scheduling.list_requests(status=SchedulingStatus.DRAFT)
        assert [r.id for r in drafts] == [live.id]

    async def test_delete_request(self, scheduling):
        request = await proposed_and_sent(scheduling)

        await scheduling.delete_request(request.id)

        with pytest.raises(NotFound):
            await scheduling.get_request(request.id)


class TestSending:
    async def test_invitation_awaits_response(self, scheduling, email_sender, clock):
        request = await make_request(scheduling)

        request = await scheduling.send_invitation(request.id, subject="Intro", body="When are you free?")

        assert request.status == SchedulingStatus.AWAITING_RESPONSE
        assert request.next_action_type == NextActionType.FOLLOW_UP
        assert request.next_action_at > clock()
        assert email_sender.sent[0][0] == "dana@client.com"

    async def test_send_draft_schedules_follow_up(self, scheduling, email_sender, events):
        request = await proposed_and_sent(scheduling)

        assert request.next_action_type == NextActionType.FOLLOW_UP
        assert len(email_sender.sent) == 1
        assert "attempt.sent" in events.types()

    async def test_resend_same_draft_is_duplicate(self, scheduling, email_sender):
        request = await proposed_and_sent(scheduling)

        result = await scheduling.send_draft(request.id)

        assert result.outcome == DeliveryOutcome.DUPLICATE
        assert len(email_sender.sent) == 1

    async def test_send_requires_proposed(self, scheduling):
        request = await make_request(scheduling)

        with pytest.raises(InvalidTransition):
            await scheduling.send_draft(request.id)

    async def test_every_channel_failing_fails_request(self, scheduling, email_sender, sms_sender, events):
        email_sender.fail = True
        sms_sender.fail = True
        request = await make_request(scheduling)
        await scheduling.generate_draft(request.id)

        result = await scheduling.send_draft(request.id)

        assert result is None
        request = await scheduling.get_request(request.id)
        assert request.status == SchedulingStatus.FAILED
        assert "request.failed" in events.types()
        actions = [a.action_type for a in await scheduling.list_actions(request.id)]
        assert actions.count(ActionType.SEND_FAILED) == 2
        assert ActionType.CHANNEL_FALLBACK in actions

    async def test_failed_email_falls_back_to_sms(self, scheduling, email_sender, sms_sender):
        email_sender.fail = True
        request = await make_request(scheduling)
        await scheduling.generate_draft(request.id)

        result = await scheduling.send_draft(request.id)

        assert result.outcome == DeliveryOutcome.SENT
        assert result.channel == Channel.SMS
        assert sms_sender.sent[0][0] == "+15555550100"

    async def test_outage_retries_same_channel_later(self, scheduling, email_sender, clock, events):
        email_only = [
            AttendeeSpec(side=AttendeeSide.INTERNAL, name="Host", email="host@example.com", calendar_identity="host@example.com"),
            AttendeeSpec(side=AttendeeSide.EXTERNAL, name="Dana", email="dana@client.com", is_primary_contact=True),
        ]
        email_sender.outages = 1
        request = await make_request(scheduling, attendees=email_only)
        await scheduling.generate_draft(request.id)

        assert await scheduling.send_draft(request.id) is None

        request = await scheduling.get_request(request.id)
        assert request.status == SchedulingStatus.PROPOSED
        assert request.next_action_type == NextActionType.SEND_PROPOSAL
        assert request.next_action_at > clock()
        assert "attempt.failed" in events.types()
        actions = [a.action_type for a in await scheduling.list_actions(request.id)]
        assert ActionType.SEND_RETRY_SCHEDULED in actions

        # Not due yet
        assert await scheduling.process_request(request.id) == SchedulingStatus.PROPOSED
        assert email_sender.sent == []

        clock.advance(minutes=settings.SEND_RETRY_DELAY_MINUTES + 1)
        assert await scheduling.process_request(request.id) == SchedulingStatus.PROPOSED

        assert email_sender.sent[0][0] == "dana@client.com"
        request = await scheduling.get_request(request.id)
        assert request.next_action_type == NextActionType.FOLLOW_UP

    async def test_persistent_outage_fails_after_retries(self, scheduling, email_sender, sms_sender, clock):
        email_sender.outages = sms_sender.outages = 100
        request = await make_request(scheduling)
        await scheduling.generate_draft(request.id)
        await scheduling.send_draft(request.id)

        for _ in range(settings.MAX_SEND_RETRIES):
            clock.advance(hours=1)
            await scheduling.process_request(request.id)

        request = await scheduling.get_request(request.id)
        assert request.status == SchedulingStatus.FAILED
        actions = [a.action_type for a in await scheduling.list_actions(request.id)]
        assert actions.count(ActionType.SEND_RETRY_SCHEDULED) == settings.MAX_SEND_RETRIES
        assert email_sender.calls == settings.MAX_SEND_RETRIES + 1

    async def test_outage_then_undelivered_sms_retries_email(self, scheduling, email_sender, sms_sender):
        email_sender.outages = 1
        request = await make_request(scheduling)
        await scheduling.generate_draft(request.id)

        result = await scheduling.send_draft(request.id)
        assert result.channel == Channel.SMS

        assert await scheduling.handle_delivery_status("sms-msg-1", "undelivered", "30003") == request.id
        assert await scheduling.process_request(request.id) == SchedulingStatus.PROPOSED

        assert email_sender.sent[0][0] == "dana@client.com"
        actions = await scheduling.list_actions(request.id)
        proposals = [a.channel for a in actions if a.action_type == ActionType.PROPOSAL_SENT]
        assert proposals == [Channel.SMS, Channel.EMAIL]

    async def test_invitation_outage_is_retried(self, scheduling, email_sender, sms_sender, clock):
        email_sender.outages = sms_sender.outages = 1
        request = await make_request(scheduling)

        request = await scheduling.send_invitation(request.id, subject="Intro", body="When are you free?")

        assert request.status == SchedulingStatus.DRAFT
        assert request.next_action_type == NextActionType.SEND_INVITATION

        clock.advance(minutes=settings.SEND_RETRY_DELAY_MINUTES + 1)
        assert await scheduling.process_request(request.id) == SchedulingStatus.AWAITING_RESPONSE
        assert email_sender.sent[0][1].subject == "Intro"
        assert email_sender.sent[0][1].body == "When are you free?"

    async def test_confirmation_sent_once(self, scheduling, email_sender, events):
        request = await proposed_and_sent(scheduling)
        draft = await scheduling.get_draft(request.id)
        chosen = draft_slots(draft)[0]

        await scheduling.confirm(request.id, slot_start=chosen.start)
        assert len(email_sender.sent) == 1

        assert await scheduling.process_request(request.id) == SchedulingStatus.CONFIRMED
        assert await scheduling.process_request(request.id) == SchedulingStatus.CONFIRMED

        assert len(email_sender.sent) == 2
        content = email_sender.sent[1][1]
        assert content.subject == "Confirmed: Intro call"
        assert chosen.label in content.body
        actions = [a.action_type for a in await scheduling.list_actions(request.id)]
        assert actions.count(ActionType.CONFIRMATION_SENT) == 1
        request = await scheduling.get_request(request.id)
        assert request.next_action_type is None
        assert await scheduling.due_request_ids() == []

    async def test_confirmation_is_picked_up_by_driver(self, scheduling, email_sender):
        request = await proposed_and_sent(scheduling)
        await scheduling.confirm(request.id)

        assert await scheduling.due_request_ids() == [request.id]
        assert await scheduling.process_due_requests() == 1
        assert email_sender.sent[-1][1].subject == "Confirmed: Intro call"


class TestInboundSignals:
    async def test_confirming_reply_confirms(self, scheduling, events):
        request = await proposed_and_sent(scheduling)
        draft = await scheduling.get_draft(request.id)
        chosen = draft_slots(draft)[1]

        result = await scheduling.handle_inbound_signal(
            email_reply(request, intent=SignalIntent.CONFIRM, selected_slot_start=chosen.start)
        )

        assert result.outcome == SignalOutcome.PROCESSED
        assert result.status == SchedulingStatus.CONFIRMED
        request = await scheduling.get_request(request.id)
        assert request.confirmed_slot_start == chosen.start
        assert request.confirmed_slot_end == chosen.end
        assert request.next_action_type == NextActionType.SEND_CONFIRMATION
        assert "response.received" in events.types()
        assert events.types()[-1] == "meeting.scheduled"

    async def test_plain_reply_prepares_new_proposal(self, scheduling, email_sender):
        request = await proposed_and_sent(scheduling)

        result = await scheduling.handle_inbound_signal(email_reply(request))
        assert result.outcome == SignalOutcome.PROCESSED

        request = await scheduling.get_request(request.id)
        assert request.status == SchedulingStatus.PROPOSED
        assert request.next_action_type == NextActionType.SEND_PROPOSAL
        draft = await scheduling.get_draft(request.id)
        assert draft.version == 2

        await scheduling.process_request(request.id)
        assert len(email_sender.sent) == 2

    async def test_declining_reply_cancels(self, scheduling):
        request = await proposed_and_sent(scheduling)

        result = await scheduling.handle_inbound_signal(email_reply(request, intent=SignalIntent.DECLINE))

        assert result.status == SchedulingStatus.CANCELLED

    async def test_concurrent_duplicates_processed_once(self, scheduling):
        request = await proposed_and_sent(scheduling)
        signal = email_reply(request, message_id="reply-dup")

        results = await asyncio.gather(
            scheduling.handle_inbound_signal(signal),
            scheduling.handle_inbound_signal(signal),
        )

        assert sorted(r.outcome.value for r in results) == ["duplicate", "processed"]
        actions = await scheduling.list_actions(request.id)
        received = [a for a in actions if a.action_type == ActionType.INBOUND_MESSAGE_RECEIVED]
        assert len(received) == 1

    async def test_reply_on_terminal_request_is_ignored(self, scheduling):
        request = await make_request(scheduling)
        await scheduling.generate_draft(request.id)
        await scheduling.cancel(request.id)
        before = len(await scheduling.list_actions(request.id))

        # Providers that echo the thread key resolve without a mapping
        signal = InboundSignal(provider="email", conversation_id=request.thread_key, message_id="late-reply")
        result = await scheduling.handle_inbound_signal(signal)

        assert result.outcome == SignalOutcome.IGNORED_TERMINAL
        assert len(await scheduling.list_actions(request.id)) == before

    async def test_uncorrelated_reply_without_hint_raises(self, scheduling):
        signal = InboundSignal(provider="email", conversation_id="unknown-thread", message_id="m-1")

        with pytest.raises(CorrelationFailure):
            await scheduling.handle_inbound_signal(signal)

    async def test_uncorrelated_reply_fails_hinted_request(self, scheduling, events):
        request = await proposed_and_sent(scheduling)
        signal = InboundSignal(
            provider="email",
            conversation_id="unknown-thread",
            message_id="m-1",
            request_id=request.id,
        )

        result = await scheduling.handle_inbound_signal(signal)

        assert result.outcome == SignalOutcome.CORRELATION_FAILED
        assert result.status == SchedulingStatus.FAILED
        actions = [a.action_type for a in await scheduling.list_actions(request.id)]
        assert ActionType.CORRELATION_FAILED in actions
        assert events.types()[-1] == "request.failed"

    def test_signal_round_trips_through_queue_payload(self):
        signal = InboundSignal(provider="sms", conversation_id="+15555550100", message_id="SM1", channel=Channel.SMS)
        assert InboundSignal.from_dict(signal.to_dict()) == signal


class TestDeliveryCallbacks:
    async def test_undelivered_sms_falls_back_to_email(self, scheduling, email_sender, sms_sender, events):
        request = await proposed_and_sent(scheduling, preferred_channel=Channel.SMS)
        assert len(sms_sender.sent) == 1

        request_id = await scheduling.handle_delivery_status("sms-msg-1", "undelivered", "30003")
        assert request_id == request.id

        request = await scheduling.get_request(request.id)
        assert request.next_action_type == NextActionType.FALLBACK_CHANNEL

        status = await scheduling.process_request(request.id)

        assert status == SchedulingStatus.PROPOSED
        assert email_sender.sent[0][0] == "dana@client.com"
        assert "attempt.failed" in events.types()
        assert events.types()[-1] == "channel.escalated"
        actions = [a.action_type for a in await scheduling.list_actions(request.id)]
        assert ActionType.SMS_DELIVERY_FAILED in actions

    async def test_repeated_callback_is_ignored(self, scheduling):
        await proposed_and_sent(scheduling, preferred_channel=Channel.SMS)

        assert await scheduling.handle_delivery_status("sms-msg-1", "failed") is not None
        assert await scheduling.handle_delivery_status("sms-msg-1", "failed") is None

    async def test_delivered_status_is_ignored(self, scheduling):
        await proposed_and_sent(scheduling, preferred_channel=Channel.SMS)

        assert await scheduling.handle_delivery_status("sms-msg-1", "delivered") is None
        assert await scheduling.handle_delivery_status("unknown", "undelivered") is None


class TestDriver:
    async def test_follow_ups_then_expiry(self, scheduling, email_sender, clock, events):
        request = await proposed_and_sent(scheduling)

        for _ in range(2):
            clock.advance(hours=49)
            assert await scheduling.process_request(request.id) == SchedulingStatus.PROPOSED

        clock.advance(hours=49)
        assert await scheduling.process_request(request.id) == SchedulingStatus.EXPIRED

        assert len(email_sender.sent) == 3
        actions = [a.action_type for a in await scheduling.list_actions(request.id)]
        assert actions.count(ActionType.FOLLOW_UP_SENT) == 2
        assert actions[-1] == ActionType.EXPIRED
        assert events.types()[-1] == "request.expired"

    async def test_not_due_is_a_no_op(self, scheduling, email_sender):
        request = await proposed_and_sent(scheduling)

        assert await scheduling.process_request(request.id) == SchedulingStatus.PROPOSED
        assert len(email_sender.sent) == 1

    async def test_auto_propose_chains_prepare_and_send(self, scheduling, email_sender):
        request = await make_request(scheduling, auto_propose=True)
        assert request.next_action_type == NextActionType.PREPARE_PROPOSAL

        status = await scheduling.process_request(request.id)

        assert status == SchedulingStatus.PROPOSED
        assert len(email_sender.sent) == 1
        request = await scheduling.get_request(request.id)
        assert request.next_action_type == NextActionType.FOLLOW_UP

    async def test_batch_survives_a_failing_request(self, session_factory, email_sender, sms_sender, clock, events, scheduling):
        class ExplodingComposer(TemplateComposer):
            def proposal(self, title, slot_labels, recipient_name):
                if title == "boom":
                    raise RuntimeError("composer crashed")
                return super().proposal(title, slot_labels, recipient_name)

        service = SchedulingService(
            resolver=scheduling.resolver,
            email_sender=email_sender,
            sms_sender=sms_sender,
            session_factory=session_factory,
            event_sink=events,
            composer=ExplodingComposer(),
            clock=clock,
        )
        broken = await make_request(service, title="boom", auto_propose=True)
        healthy = await make_request(service, auto_propose=True)

        assert await service.process_due_requests(concurrency=1) == 2

        assert (await service.get_request(healthy.id)).status == SchedulingStatus.PROPOSED
        broken = await service.get_request(broken.id)
        assert broken.status == SchedulingStatus.DRAFT
        assert broken.next_action_type == NextActionType.PREPARE_PROPOSAL
        assert await service.due_request_ids() == [broken.id]

    async def test_action_sequence_has_no_gaps(self, scheduling, clock):
        request = await proposed_and_sent(scheduling)
        await scheduling.handle_inbound_signal(email_reply(request))
        await scheduling.process_request(request.id)
        clock.advance(hours=49)
        await scheduling.process_request(request.id)

        actions = await scheduling.list_actions(request.id)
        request = await scheduling.get_request(request.id)
        assert [a.sequence for a in actions] == list(range(1, len(actions) + 1))
        assert request.action_count == len(actions)


class TestRequestLocks:
    async def test_same_key_is_serialized(self):
        locks = RequestLocks()
        order = []

        async def hold(name):
            async with locks("request-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(hold("a"), hold("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    async def test_released_when_idle(self):
        locks = RequestLocks()

        async with locks("request-1"):
            async with locks("request-2"):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    async def test_service_keeps_no_idle_locks(self, scheduling, clock):
        request = await proposed_and_sent(scheduling)
        await scheduling.handle_inbound_signal(email_reply(request))
        await scheduling.process_request(request.id)
        clock.advance(hours=49)
        await scheduling.process_due_requests()

        assert len(scheduling.locks) == 0


class TestEvents:
    async def test_every_event_has_its_own_id(self, scheduling, events):
        request = await proposed_and_sent(scheduling)
        await scheduling.handle_inbound_signal(email_reply(request))

        assert len(events.event_ids) > 3
        assert None not in events.event_ids
        assert len(set(events.event_ids)) == len(events.event_ids)
