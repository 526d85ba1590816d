"""Calendar normalizer for Google-Calendar-style event resources."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time
from typing import Any

from tidings.errors import ValidationError
from tidings.normalizers.base import (
    IDENTITY_EMAIL,
    IdentityCandidate,
    InteractionDraft,
    NormalizedEvent,
    Normalizer,
    clip_display_name,
    dedupe_identities,
    html_to_text,
    list_field,
    normalize_email,
)
from tidings.storage.raw_events import RawEvent

logger = logging.getLogger(__name__)

INTERACTION_MEETING_CREATED = "meeting_created"

_EVENT_KEYS = ("id", "summary", "start", "attendees")


def parse_event_time(value: Any) -> datetime | None:
    """Parse a ``{"dateTime": ...}`` / ``{"date": ...}`` pair into an aware datetime.

    All-day events (``date`` only) map to midnight UTC.
    """
    if not isinstance(value, dict):
        return None
    raw = value.get("dateTime")
    if raw:
        try:
            parsed = datetime.fromisoformat(str(raw))
        except ValueError:
            logger.debug("Unparseable calendar dateTime: %r", raw)
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raw = value.get("date")
    if raw:
        try:
            return datetime.combine(date.fromisoformat(str(raw)), time.min, tzinfo=UTC)
        except ValueError:
            logger.debug("Unparseable calendar date: %r", raw)
    return None


class CalendarNormalizer(Normalizer):
    provider = "calendar"

    def normalize(self, event: RawEvent) -> NormalizedEvent:
        payload = event.payload
        if not isinstance(payload, dict) or not any(key in payload for key in _EVENT_KEYS):
            raise ValidationError(
                "Unrecognized calendar payload shape",
                provider=event.provider,
                stage="normalize",
                raw_event_id=str(event.id),
                context={"keys": sorted(payload)[:20] if isinstance(payload, dict) else None},
            )

        identities: list[IdentityCandidate] = []
        organizer = payload.get("organizer") or {}
        if not isinstance(organizer, dict):
            organizer = {}
        organizer_email = normalize_email(organizer.get("email"))
        if organizer_email:
            identities.append(
                IdentityCandidate(
                    kind=IDENTITY_EMAIL,
                    value=organizer_email,
                    provider=event.provider,
                    display_name=clip_display_name(organizer.get("displayName")),
                    role="organizer",
                )
            )

        attendees: list[dict[str, Any]] = []
        for attendee in list_field(event, payload, "attendees"):
            if not isinstance(attendee, dict):
                continue
            email = normalize_email(attendee.get("email"))
            if not email:
                continue
            attendees.append(
                {
                    "email": email,
                    "name": attendee.get("displayName"),
                    "response": attendee.get("responseStatus"),
                    "self": bool(attendee.get("self", False)),
                }
            )
            # The calendar owner shows up as an attendee with self=true
            if attendee.get("self"):
                continue
            identities.append(
                IdentityCandidate(
                    kind=IDENTITY_EMAIL,
                    value=email,
                    provider=event.provider,
                    display_name=clip_display_name(attendee.get("displayName")),
                    role="attendee",
                )
            )
        identities = dedupe_identities(identities)

        summary = payload.get("summary")
        description = payload.get("description")
        if isinstance(description, str) and "<" in description:
            description = html_to_text(description)
        location = payload.get("location")
        starts_at = parse_event_time(payload.get("start"))
        ends_at = parse_event_time(payload.get("end"))

        text_parts = [str(p).strip() for p in (summary, description) if p and str(p).strip()]
        if location:
            text_parts.append(f"Location: {location}")

        source_id = event.source_id or payload.get("id") or str(event.id)
        interaction = InteractionDraft(
            type=INTERACTION_MEETING_CREATED,
            source=event.provider,
            source_id=str(source_id),
            occurred_at=starts_at or event.occurred_at,
            subject=str(summary).strip() if summary else None,
            body_text="\n\n".join(text_parts) or None,
            body_raw={
                "html_link": payload.get("htmlLink"),
                "hangout_link": payload.get("hangoutLink"),
            },
            source_meta={
                "status": payload.get("status"),
                "location": location,
                "starts_at": starts_at.isoformat() if starts_at else None,
                "ends_at": ends_at.isoformat() if ends_at else None,
                "organizer": organizer_email,
                "attendees": attendees,
                "recurring_event_id": payload.get("recurringEventId"),
            },
            participants=[identity.value for identity in identities],
        )
        return NormalizedEvent(interactions=[interaction], identities=identities)
