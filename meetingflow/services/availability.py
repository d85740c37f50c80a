"""
Availability Resolver.

Builds candidate meeting slots by intersecting the busy blocks of every
internal attendee. External attendees have no calendar access and are
assumed open. When the calendar provider is slow or broken the resolver
returns fixed fallback slots instead of failing the negotiation.
"""
import asyncio
import enum
import random
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from meetingflow.config import settings
from meetingflow.errors import ProviderTimeout
from meetingflow.logging_config import get_logger
from meetingflow.models.base import utcnow
from meetingflow.models.scheduling import AttendeeSide
from meetingflow.routes.metrics import track_availability_fallback
from meetingflow.services.providers import BusyInterval, CalendarProvider, ContactDirectory, parse_timestamp

log = get_logger(component="availability")

# Local hours used when the calendar cannot be read
FALLBACK_HOURS = (10, 14)


class SlotProvenance(str, enum.Enum):
    CALENDAR = "calendar"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class AvailabilitySlot:
    start: datetime
    end: datetime
    label: str
    provenance: SlotProvenance = SlotProvenance.CALENDAR

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "label": self.label,
            "provenance": self.provenance.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AvailabilitySlot":
        return cls(
            start=parse_timestamp(data["start"]),
            end=parse_timestamp(data["end"]),
            label=data["label"],
            provenance=SlotProvenance(data.get("provenance", SlotProvenance.CALENDAR.value)),
        )


@dataclass
class AvailabilityConstraints:
    """Search parameters for one resolve call."""
    window_business_days: int = field(default_factory=lambda: settings.SEARCH_WINDOW_BUSINESS_DAYS)
    duration_minutes: int = field(default_factory=lambda: settings.DEFAULT_DURATION_MINUTES)
    count: int = field(default_factory=lambda: settings.DEFAULT_SLOT_COUNT)
    timezone: str = field(default_factory=lambda: settings.DEFAULT_TIMEZONE)
    seed: int | None = None
    avoid_back_to_back: bool = False
    start: datetime | None = None
    business_hours_start: int = field(default_factory=lambda: settings.BUSINESS_HOURS_START)
    business_hours_end: int = field(default_factory=lambda: settings.BUSINESS_HOURS_END)
    step_minutes: int = field(default_factory=lambda: settings.SLOT_STEP_MINUTES)

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_slot_label(start: datetime, zone: ZoneInfo) -> str:
    """Human label, e.g. "Tuesday, October 20th at 9:30 AM EDT"."""
    local = start.astimezone(zone)
    hour = local.strftime("%I").lstrip("0")
    return f"{local:%A}, {local:%B} {ordinal(local.day)} at {hour}:{local:%M} {local:%p} {local.tzname()}"


def business_days(first: date, count: int) -> list[date]:
    """The first `count` Monday-Friday dates on or after `first`."""
    days = []
    current = first
    while len(days) < count:
        if current.weekday() < 5:
            days.append(current)
        current += timedelta(days=1)
    return days


def search_window(constraints: AvailabilityConstraints, now: datetime) -> tuple[datetime, list[date]]:
    """Earliest allowed slot start and the business days to search."""
    earliest = max(constraints.start or now, now)
    local_start = earliest.astimezone(constraints.zone)
    return earliest, business_days(local_start.date(), max(constraints.window_business_days, 1))


def overlaps(start: datetime, end: datetime, busy: BusyInterval, padding: timedelta) -> bool:
    return start < busy.end + padding and end > busy.start - padding


def day_period(slot: AvailabilitySlot, zone: ZoneInfo) -> int:
    """0 = morning, 1 = afternoon, 2 = late afternoon."""
    hour = slot.start.astimezone(zone).hour
    if hour < 12:
        return 0
    return 1 if hour < 15 else 2


def find_candidates(
    busy: list[BusyInterval],
    constraints: AvailabilityConstraints,
    now: datetime | None = None,
) -> list[AvailabilitySlot]:
    """
    Every conflict-free slot in the window, in chronological order.

    Candidates start on step boundaries inside business hours, Monday to
    Friday, and are rejected when they overlap a blocking busy interval.
    With avoid_back_to_back the busy intervals are padded on both sides.
    """
    now = now or utcnow()
    zone = constraints.zone
    duration = timedelta(minutes=constraints.duration_minutes)
    step = timedelta(minutes=constraints.step_minutes)
    padding = timedelta(minutes=settings.BACK_TO_BACK_BUFFER_MINUTES) if constraints.avoid_back_to_back else timedelta(0)
    blocking = [interval for interval in busy if interval.blocks_time]

    earliest, days = search_window(constraints, now)
    candidates = []
    for day in days:
        cursor = datetime.combine(day, time(constraints.business_hours_start), tzinfo=zone)
        day_end = datetime.combine(day, time(constraints.business_hours_end), tzinfo=zone)
        while cursor + duration <= day_end:
            slot_start = cursor
            slot_end = cursor + duration
            cursor += step
            if slot_start < earliest:
                continue
            if any(overlaps(slot_start, slot_end, interval, padding) for interval in blocking):
                continue
            candidates.append(AvailabilitySlot(
                start=slot_start.astimezone(timezone.utc),
                end=slot_end.astimezone(timezone.utc),
                label=format_slot_label(slot_start, zone),
            ))
    return candidates


def select_diverse(
    candidates: list[AvailabilitySlot],
    count: int,
    rng: random.Random,
    zone: ZoneInfo,
) -> list[AvailabilitySlot]:
    """
    Pick `count` slots spread across days and times of day.

    Days are shuffled, then visited round-robin; each pick prefers the next
    period in the morning/afternoon/late rotation. Result is chronological.
    """
    if len(candidates) <= count:
        return sorted(candidates, key=lambda slot: slot.start)

    by_day: dict[date, list[AvailabilitySlot]] = {}
    for slot in candidates:
        by_day.setdefault(slot.start.astimezone(zone).date(), []).append(slot)

    days = sorted(by_day)
    rng.shuffle(days)
    for slots in by_day.values():
        rng.shuffle(slots)

    selected = []
    start_period = rng.randrange(3)
    day_index = 0
    while len(selected) < count and any(by_day.values()):
        remaining = by_day[days[day_index % len(days)]]
        day_index += 1
        if not remaining:
            continue
        target = (len(selected) + start_period) % 3
        pick = next((slot for slot in remaining if day_period(slot, zone) == target), remaining[0])
        remaining.remove(pick)
        selected.append(pick)

    return sorted(selected, key=lambda slot: slot.start)


def fallback_slots(constraints: AvailabilityConstraints, now: datetime) -> list[AvailabilitySlot]:
    """Fixed 10:00 and 14:00 slots on successive business days."""
    zone = constraints.zone
    duration = timedelta(minutes=constraints.duration_minutes)
    earliest, _ = search_window(constraints, now)
    first_day = earliest.astimezone(zone).date()

    slots = []
    for day in business_days(first_day, constraints.count + constraints.window_business_days):
        for hour in FALLBACK_HOURS:
            start = datetime.combine(day, time(hour), tzinfo=zone)
            if start < earliest:
                continue
            slots.append(AvailabilitySlot(
                start=start.astimezone(timezone.utc),
                end=(start + duration).astimezone(timezone.utc),
                label=format_slot_label(start, zone),
                provenance=SlotProvenance.FALLBACK,
            ))
            if len(slots) == constraints.count:
                return slots
    return slots


class AvailabilityResolver:
    """Resolve open meeting slots for a set of attendees."""

    def __init__(
        self,
        calendar: CalendarProvider,
        directory: ContactDirectory,
        timeout: float | None = None,
    ):
        self.calendar = calendar
        self.directory = directory
        self.timeout = timeout if timeout is not None else settings.AVAILABILITY_TIMEOUT_SECONDS

    async def resolve(
        self,
        attendees,
        constraints: AvailabilityConstraints,
        now: datetime | None = None,
        rng: random.Random | None = None,
    ) -> list[AvailabilitySlot]:
        """
        Candidate slots for the attendees. Never raises for provider trouble.

        With a seed (or an explicitly seeded rng) the selection is
        reproducible; without one repeated calls vary.
        """
        now = now or utcnow()
        rng = rng or random.Random(constraints.seed)

        try:
            busy = await asyncio.wait_for(
                self._collect_busy(attendees, constraints, now),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            error = ProviderTimeout("calendar", self.timeout)
            log.warning("availability_fallback", reason="timeout", error=str(error))
            track_availability_fallback("timeout")
            return fallback_slots(constraints, now)
        except Exception as e:
            log.warning("availability_fallback", reason="provider_error", error=str(e))
            track_availability_fallback("provider_error")
            return fallback_slots(constraints, now)

        candidates = find_candidates(busy, constraints, now)
        slots = select_diverse(candidates, constraints.count, rng, constraints.zone)

        log.info(
            "availability_resolved",
            busy_intervals=len(busy),
            candidates=len(candidates),
            returned=len(slots),
        )
        return slots

    async def _collect_busy(self, attendees, constraints: AvailabilityConstraints, now: datetime) -> list[BusyInterval]:
        earliest, days = search_window(constraints, now)
        zone = constraints.zone
        window_start = datetime.combine(days[0], time(0), tzinfo=zone)
        window_end = datetime.combine(days[-1] + timedelta(days=1), time(0), tzinfo=zone)

        identities = []
        for attendee in attendees:
            if attendee.side != AttendeeSide.INTERNAL:
                continue
            identity = await self.directory.resolve_calendar_identity(attendee)
            if identity:
                identities.append(identity)
            else:
                log.warning("calendar_identity_unresolved", attendee_id=attendee.id)

        results = await asyncio.gather(*[
            self.calendar.get_busy(identity, window_start, window_end)
            for identity in identities
        ])
        return [interval for intervals in results for interval in intervals]
