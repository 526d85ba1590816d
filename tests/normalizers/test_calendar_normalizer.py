"""Tests for the calendar normalizer."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest

from tidings.errors import ValidationError
from tidings.jobs.payloads import MAX_DISPLAY_NAME_LEN
from tidings.normalizers.calendar import (
    INTERACTION_MEETING_CREATED,
    CalendarNormalizer,
    parse_event_time,
)
from tidings.storage.raw_events import RawEvent

pytestmark = pytest.mark.unit


def _event(payload, *, source_id: str | None = "evt-1") -> RawEvent:
    return RawEvent(
        id=uuid.uuid4(),
        user_id="u1",
        provider="calendar",
        source_id=source_id,
        payload=payload,
        occurred_at=datetime(2026, 3, 1, tzinfo=UTC),
    )


def _calendar_event(**overrides):
    event = {
        "id": "evt-1",
        "status": "confirmed",
        "summary": "Quarterly review",
        "description": "<p>Agenda:</p><ul><li>Numbers</li></ul>",
        "location": "Room 4",
        "start": {"dateTime": "2026-03-10T15:00:00+01:00"},
        "end": {"dateTime": "2026-03-10T16:00:00+01:00"},
        "organizer": {"email": "Sofia@Example.com", "displayName": "Sofia Reyes"},
        "attendees": [
            {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
            {"email": "sofia@example.com", "displayName": "Sofia Reyes"},
            {"email": "dan@example.com", "responseStatus": "tentative"},
            {"displayName": "Room 4"},
        ],
    }
    event.update(overrides)
    return event


class TestCalendarNormalizer:
    def test_meeting_interaction(self) -> None:
        normalized = CalendarNormalizer().normalize(_event(_calendar_event()))

        assert len(normalized.interactions) == 1
        interaction = normalized.interactions[0]
        assert interaction.type == INTERACTION_MEETING_CREATED
        assert interaction.source == "calendar"
        assert interaction.source_id == "evt-1"
        assert interaction.subject == "Quarterly review"
        assert interaction.occurred_at == datetime(2026, 3, 10, 14, 0, tzinfo=UTC)
        assert "Agenda:" in interaction.body_text
        assert "Location: Room 4" in interaction.body_text
        assert interaction.source_meta["location"] == "Room 4"
        assert interaction.source_meta["ends_at"].startswith("2026-03-10T16:00")

    def test_identities_skip_self_and_dedupe_organizer(self) -> None:
        normalized = CalendarNormalizer().normalize(_event(_calendar_event()))

        values = [i.value for i in normalized.identities]
        assert values == ["sofia@example.com", "dan@example.com"]
        assert normalized.identities[0].role == "organizer"
        # The owner still shows in the attendee list, flagged as self
        attendees = normalized.interactions[0].source_meta["attendees"]
        assert any(a["self"] for a in attendees)
        assert "me@example.com" not in normalized.interactions[0].participants

    def test_all_day_event_starts_at_midnight_utc(self) -> None:
        payload = _calendar_event(start={"date": "2026-04-02"}, end={"date": "2026-04-03"})
        normalized = CalendarNormalizer().normalize(_event(payload))
        assert normalized.interactions[0].occurred_at == datetime(2026, 4, 2, tzinfo=UTC)

    def test_missing_start_falls_back_to_event_time(self) -> None:
        payload = _calendar_event(start=None)
        normalized = CalendarNormalizer().normalize(_event(payload))
        assert normalized.interactions[0].occurred_at == datetime(2026, 3, 1, tzinfo=UTC)

    def test_unrecognized_shape(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            CalendarNormalizer().normalize(_event({"kind": "calendar#colors"}))
        assert exc_info.value.context["keys"] == ["kind"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ({"dateTime": "2026-01-01T10:00:00Z"}, datetime(2026, 1, 1, 10, tzinfo=UTC)),
        ({"dateTime": "2026-01-01T10:00:00"}, datetime(2026, 1, 1, 10, tzinfo=UTC)),
        ({"date": "2026-01-01"}, datetime(2026, 1, 1, tzinfo=UTC)),
        ({"dateTime": "garbage"}, None),
        ("2026-01-01", None),
        (None, None),
    ],
)
def test_parse_event_time(value, expected) -> None:
    assert parse_event_time(value) == expected


class TestMalformedFields:
    def test_attendees_must_be_a_list(self) -> None:
        with pytest.raises(ValidationError, match="attendees") as exc_info:
            CalendarNormalizer().normalize(_event(_calendar_event(attendees=3)))
        assert exc_info.value.context == {"field": "attendees"}

    def test_null_attendees_mean_none(self) -> None:
        normalized = CalendarNormalizer().normalize(_event(_calendar_event(attendees=None)))
        assert [i.value for i in normalized.identities] == ["sofia@example.com"]

    def test_odd_attendee_entries_are_skipped(self) -> None:
        payload = _calendar_event(attendees=["dan@example.com", {"email": 42}, None])
        normalized = CalendarNormalizer().normalize(_event(payload))
        assert [i.value for i in normalized.identities] == ["sofia@example.com"]

    def test_long_display_name_is_clipped(self) -> None:
        payload = _calendar_event(
            organizer={"email": "sofia@example.com", "displayName": "S" * 1000}
        )
        normalized = CalendarNormalizer().normalize(_event(payload))
        assert len(normalized.identities[0].display_name) == MAX_DISPLAY_NAME_LEN
