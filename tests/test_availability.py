"""Availability resolution: candidate search, diverse selection and fallback slots."""
import random
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from conftest import FakeCalendar

from meetingflow.models.scheduling import Attendee, AttendeeSide
from meetingflow.services.availability import (
    AvailabilityConstraints,
    AvailabilityResolver,
    SlotProvenance,
    find_candidates,
    format_slot_label,
    ordinal,
    select_diverse,
)
from meetingflow.services.providers import BusyInterval, StaticContactDirectory

NEW_YORK = ZoneInfo("America/New_York")
# Monday 2026-10-19 08:00 in New York
MONDAY_MORNING = datetime(2026, 10, 19, 8, 0, tzinfo=NEW_YORK)


def tuesday_constraints(**overrides):
    values = dict(
        window_business_days=3,
        duration_minutes=30,
        count=4,
        timezone="America/New_York",
        start=datetime(2026, 10, 20, 9, 0, tzinfo=NEW_YORK),
        business_hours_start=9,
        business_hours_end=17,
        step_minutes=30,
    )
    values.update(overrides)
    return AvailabilityConstraints(**values)


def tuesday_busy(**kwargs):
    return BusyInterval(
        start=datetime(2026, 10, 20, 9, 0, tzinfo=NEW_YORK),
        end=datetime(2026, 10, 20, 9, 30, tzinfo=NEW_YORK),
        **kwargs,
    )


def attendees():
    return [
        Attendee(side=AttendeeSide.INTERNAL, email="host@example.com", calendar_identity="host@example.com"),
        Attendee(side=AttendeeSide.EXTERNAL, email="dana@client.com"),
    ]


class TestLabels:
    def test_ordinals(self):
        assert [ordinal(d) for d in (1, 2, 3, 4, 11, 12, 13, 21, 22, 23, 31)] == [
            "1st", "2nd", "3rd", "4th", "11th", "12th", "13th", "21st", "22nd", "23rd", "31st",
        ]

    def test_label_uses_local_time_and_zone_abbreviation(self):
        start = datetime(2026, 10, 20, 13, 30, tzinfo=timezone.utc)
        assert format_slot_label(start, NEW_YORK) == "Tuesday, October 20th at 9:30 AM EDT"


class TestFindCandidates:
    def test_first_slot_follows_busy_block(self):
        candidates = find_candidates([tuesday_busy()], tuesday_constraints(), MONDAY_MORNING)

        first = candidates[0]
        assert first.start == datetime(2026, 10, 20, 13, 30, tzinfo=timezone.utc)
        assert first.end == datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)
        assert first.label == "Tuesday, October 20th at 9:30 AM EDT"
        # Tuesday loses one slot, Wednesday and Thursday have 16 each
        assert len(candidates) == 15 + 16 + 16

    def test_slots_are_utc_and_inside_business_hours(self):
        candidates = find_candidates([], tuesday_constraints(), MONDAY_MORNING)

        for slot in candidates:
            assert slot.start.tzinfo == timezone.utc
            local_start = slot.start.astimezone(NEW_YORK)
            local_end = slot.end.astimezone(NEW_YORK)
            assert local_start.weekday() < 5
            assert 9 <= local_start.hour
            assert local_end.hour < 17 or (local_end.hour == 17 and local_end.minute == 0)

    def test_back_to_back_padding(self):
        candidates = find_candidates(
            [tuesday_busy()],
            tuesday_constraints(avoid_back_to_back=True),
            MONDAY_MORNING,
        )
        assert candidates[0].start.astimezone(NEW_YORK).hour == 10
        assert candidates[0].start.astimezone(NEW_YORK).minute == 0

    def test_free_and_cancelled_entries_do_not_block(self):
        busy = [tuesday_busy(show_as="free"), tuesday_busy(is_cancelled=True)]
        candidates = find_candidates(busy, tuesday_constraints(), MONDAY_MORNING)
        assert candidates[0].start.astimezone(NEW_YORK).hour == 9
        assert candidates[0].start.astimezone(NEW_YORK).minute == 0

    def test_nothing_before_now(self):
        now = datetime(2026, 10, 20, 15, 10, tzinfo=NEW_YORK)
        candidates = find_candidates([], tuesday_constraints(), now)
        assert candidates[0].start.astimezone(NEW_YORK) == datetime(2026, 10, 20, 15, 30, tzinfo=NEW_YORK)

    def test_window_skips_weekends(self):
        friday = datetime(2026, 10, 23, 8, 0, tzinfo=NEW_YORK)
        constraints = tuesday_constraints(start=None, window_business_days=2)
        days = {slot.start.astimezone(NEW_YORK).date() for slot in find_candidates([], constraints, friday)}
        assert days == {datetime(2026, 10, 23).date(), datetime(2026, 10, 26).date()}


class TestSelectDiverse:
    def test_spreads_across_days(self):
        candidates = find_candidates([], tuesday_constraints(), MONDAY_MORNING)
        selected = select_diverse(candidates, 4, random.Random(7), NEW_YORK)

        assert len(selected) == 4
        assert selected == sorted(selected, key=lambda slot: slot.start)
        assert len({slot.start.astimezone(NEW_YORK).date() for slot in selected}) == 3

    def test_same_seed_same_selection(self):
        candidates = find_candidates([], tuesday_constraints(), MONDAY_MORNING)
        first = select_diverse(candidates, 4, random.Random(42), NEW_YORK)
        second = select_diverse(candidates, 4, random.Random(42), NEW_YORK)
        assert first == second

    def test_fewer_candidates_than_requested(self):
        candidates = find_candidates([], tuesday_constraints(), MONDAY_MORNING)[:2]
        assert select_diverse(candidates, 4, random.Random(1), NEW_YORK) == candidates


class TestResolver:
    async def test_only_internal_calendars_are_queried(self):
        calendar = FakeCalendar(busy={"host@example.com": [tuesday_busy()]})
        resolver = AvailabilityResolver(calendar, StaticContactDirectory())

        slots = await resolver.resolve(attendees(), tuesday_constraints(count=100), now=MONDAY_MORNING)

        assert calendar.calls == ["host@example.com"]
        assert slots[0].label == "Tuesday, October 20th at 9:30 AM EDT"
        assert all(slot.provenance == SlotProvenance.CALENDAR for slot in slots)

    async def test_seeded_resolution_is_reproducible(self):
        resolver = AvailabilityResolver(FakeCalendar(), StaticContactDirectory())
        constraints = tuesday_constraints(seed=11)

        first = await resolver.resolve(attendees(), constraints, now=MONDAY_MORNING)
        second = await resolver.resolve(attendees(), constraints, now=MONDAY_MORNING)
        assert first == second

    async def test_unseeded_resolution_varies(self):
        resolver = AvailabilityResolver(FakeCalendar(), StaticContactDirectory())
        constraints = tuesday_constraints()
        assert constraints.seed is None

        selections = set()
        for _ in range(20):
            slots = await resolver.resolve(attendees(), constraints, now=MONDAY_MORNING)
            selections.add(tuple(slot.start for slot in slots))
        assert len(selections) > 1

    async def test_provider_error_returns_fallback_slots(self):
        resolver = AvailabilityResolver(FakeCalendar(error=RuntimeError("calendar down")), StaticContactDirectory())
        constraints = tuesday_constraints(start=None)

        slots = await resolver.resolve(attendees(), constraints, now=MONDAY_MORNING)

        assert [slot.start.astimezone(NEW_YORK).hour for slot in slots] == [10, 14, 10, 14]
        assert slots[0].start.astimezone(NEW_YORK).date() == MONDAY_MORNING.date()
        assert all(slot.provenance == SlotProvenance.FALLBACK for slot in slots)

    async def test_timeout_returns_fallback_slots(self):
        resolver = AvailabilityResolver(FakeCalendar(delay=0.5), StaticContactDirectory(), timeout=0.05)

        slots = await resolver.resolve(attendees(), tuesday_constraints(), now=MONDAY_MORNING)

        assert len(slots) == 4
        assert all(slot.provenance == SlotProvenance.FALLBACK for slot in slots)
        # Fallback still honours the requested start
        assert slots[0].start.astimezone(NEW_YORK) == datetime(2026, 10, 20, 10, 0, tzinfo=NEW_YORK)
