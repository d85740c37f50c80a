"""
Postmortem / reporting service.

Rebuilds a terminal request's timeline from its action log and aggregates
postmortems into a performance report.
"""
from collections import Counter
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meetingflow.errors import InvalidTransition
from meetingflow.models.postmortem import Postmortem
from meetingflow.models.scheduling import (
    ActionType,
    Actor,
    DELIVERY_FAILURE_ACTION_TYPES,
    OUTBOUND_ACTION_TYPES,
    SchedulingRequest,
    SchedulingStatus,
)
from meetingflow.services.action_log import append_action, list_actions


def efficiency_score(outbound_count: int, confirmed: bool) -> int:
    """0-100: every message beyond the first costs 10, more than 5 costs 20 more."""
    score = 100
    if outbound_count > 1:
        score -= (outbound_count - 1) * 10
    if outbound_count > 5:
        score -= 20
    if not confirmed:
        score -= 30
    return max(0, min(100, score))


def key_insight(outbound_count: int, confirmed: bool, fallback_used: bool) -> str:
    if confirmed:
        if outbound_count <= 1:
            insight = "Excellent - scheduled on first attempt"
        elif outbound_count <= 3:
            insight = "Good scheduling efficiency with minimal follow-up needed"
        else:
            insight = f"Scheduled after {outbound_count} attempts - consider adjusting initial approach"
    elif outbound_count >= 5:
        insight = "Multiple attempts failed - may need different approach or timing"
    else:
        insight = "Did not complete - investigate blockers"
    if fallback_used:
        insight += " (primary channel failed, fallback channel used)"
    return insight


def mean(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None


class PostmortemService:
    """Service for request postmortems and aggregate reports."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, request: SchedulingRequest) -> Postmortem:
        """
        Create or refresh the postmortem of a terminal request.

        Raises:
            InvalidTransition: the request is still live
        """
        if not request.status.is_terminal:
            raise InvalidTransition(
                f"Postmortem requires a terminal request; {request.id} is {request.status.value}",
                current_status=request.status.value,
            )

        actions = [
            action for action in await list_actions(self.db, request.id)
            if action.action_type != ActionType.POSTMORTEM_CREATED
        ]

        timeline = []
        gaps = []
        previous = None
        for action in actions:
            elapsed = (action.created_at - previous.created_at).total_seconds() if previous else 0.0
            if previous:
                gaps.append(elapsed)
            timeline.append({
                "sequence": action.sequence,
                "action_type": action.action_type.value,
                "actor": action.actor.value,
                "channel": action.channel.value if action.channel else None,
                "at": action.created_at.isoformat(),
                "elapsed_seconds": elapsed,
            })
            previous = action

        exchanges: dict[str, dict[str, int]] = {}
        inbound_count = outbound_count = follow_up_count = 0
        for action in actions:
            if action.action_type == ActionType.INBOUND_MESSAGE_RECEIVED:
                direction = "inbound"
                inbound_count += 1
            elif action.action_type in OUTBOUND_ACTION_TYPES:
                direction = "outbound"
                outbound_count += 1
                if action.action_type == ActionType.FOLLOW_UP_SENT:
                    follow_up_count += 1
            else:
                continue
            channel = action.channel.value if action.channel else "unknown"
            counts = exchanges.setdefault(channel, {"inbound": 0, "outbound": 0})
            counts[direction] += 1

        channels_used = sorted(
            channel for channel, counts in exchanges.items()
            if counts["outbound"] and channel != "unknown"
        )
        fallback_used = any(
            action.action_type == ActionType.CHANNEL_FALLBACK for action in actions
        ) or (
            len(channels_used) > 1
            and any(action.action_type in DELIVERY_FAILURE_ACTION_TYPES for action in actions)
        )
        confirmed = request.status == SchedulingStatus.CONFIRMED
        time_to_outcome = (
            (request.closed_at - request.created_at).total_seconds() if request.closed_at else None
        )

        stmt = select(Postmortem).where(Postmortem.request_id == request.id)
        postmortem = (await self.db.execute(stmt)).scalar_one_or_none()
        if postmortem is None:
            postmortem = Postmortem(request_id=request.id)
            self.db.add(postmortem)

        postmortem.outcome = request.status.value
        postmortem.total_actions = len(actions)
        postmortem.inbound_count = inbound_count
        postmortem.outbound_count = outbound_count
        postmortem.follow_up_count = follow_up_count
        postmortem.exchanges_by_channel = exchanges
        postmortem.channels_used = channels_used
        postmortem.fallback_used = fallback_used
        postmortem.time_to_outcome_seconds = time_to_outcome
        postmortem.mean_gap_seconds = mean(gaps)
        postmortem.max_gap_seconds = max(gaps) if gaps else None
        postmortem.timeline = timeline
        postmortem.efficiency_score = efficiency_score(outbound_count, confirmed)
        postmortem.key_insight = key_insight(outbound_count, confirmed, fallback_used)

        append_action(
            self.db, request, ActionType.POSTMORTEM_CREATED, Actor.SYSTEM,
            content=postmortem.key_insight,
            details={"efficiency_score": postmortem.efficiency_score, "outcome": postmortem.outcome},
        )
        await self.db.flush()
        return postmortem

    async def get(self, request_id: str) -> Postmortem | None:
        stmt = select(Postmortem).where(Postmortem.request_id == request_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def performance_report(self, start: datetime, end: datetime) -> dict:
        """Aggregate postmortems of requests closed in [start, end)."""
        stmt = (
            select(Postmortem, SchedulingRequest.closed_at)
            .join(SchedulingRequest, SchedulingRequest.id == Postmortem.request_id)
            .where(SchedulingRequest.closed_at >= start, SchedulingRequest.closed_at < end)
            .order_by(SchedulingRequest.closed_at)
        )
        postmortems = [row[0] for row in (await self.db.execute(stmt)).all()]

        report = {
            "range": {"start": start.isoformat(), "end": end.isoformat()},
            "overview": {
                "total_requests": len(postmortems),
                "confirm_rate": 0.0,
                "mean_time_to_confirm_hours": None,
                "mean_actions": None,
                "mean_outbound_messages": None,
                "mean_follow_ups": None,
                "fallback_channel_rate": 0.0,
                "mean_efficiency_score": None,
            },
            "by_outcome": {},
            "exchanges_by_channel": {},
            "needs_attention": [],
        }
        if not postmortems:
            return report

        total = len(postmortems)
        confirmed = [pm for pm in postmortems if pm.outcome == SchedulingStatus.CONFIRMED.value]
        hours_to_confirm = [pm.time_to_outcome_seconds / 3600 for pm in confirmed if pm.time_to_outcome_seconds is not None]

        exchanges: dict[str, dict[str, int]] = {}
        for pm in postmortems:
            for channel, counts in pm.exchanges_by_channel.items():
                totals = exchanges.setdefault(channel, {"inbound": 0, "outbound": 0})
                totals["inbound"] += counts.get("inbound", 0)
                totals["outbound"] += counts.get("outbound", 0)

        overview = report["overview"]
        overview["confirm_rate"] = round(len(confirmed) / total, 2)
        overview["mean_time_to_confirm_hours"] = mean(hours_to_confirm)
        overview["mean_actions"] = mean([pm.total_actions for pm in postmortems])
        overview["mean_outbound_messages"] = mean([pm.outbound_count for pm in postmortems])
        overview["mean_follow_ups"] = mean([pm.follow_up_count for pm in postmortems])
        overview["fallback_channel_rate"] = round(sum(1 for pm in postmortems if pm.fallback_used) / total, 2)
        overview["mean_efficiency_score"] = mean([pm.efficiency_score for pm in postmortems])

        by_outcome = Counter(pm.outcome for pm in postmortems)
        report["by_outcome"] = dict(by_outcome)
        report["exchanges_by_channel"] = exchanges

        needs_attention = report["needs_attention"]
        if overview["mean_outbound_messages"] > 4:
            needs_attention.append("High average attempt count")
        if overview["confirm_rate"] < 0.5:
            needs_attention.append("Low overall confirm rate")
        if by_outcome[SchedulingStatus.FAILED.value] > total * 0.1:
            needs_attention.append("High delivery failure rate")
        if overview["fallback_channel_rate"] > 0.25:
            needs_attention.append("Primary channel often fails; check contact data")

        return report
