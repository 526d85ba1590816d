"""Shared contract for provider normalizers.

A normalizer turns one raw event into canonical interaction drafts plus the
contact identities found in it. It is pure: no I/O, no clock. Persisting the
result and chaining the next stages is the normalize handler's job.
"""

from __future__ import annotations

import abc
import html
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from tidings.errors import ValidationError
from tidings.jobs.kinds import JobKind
from tidings.jobs.payloads import MAX_DISPLAY_NAME_LEN, MAX_IDENTITY_VALUE_LEN
from tidings.storage.raw_events import RawEvent

IDENTITY_EMAIL = "email"
IDENTITY_PHONE = "phone"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_STRIP_RE = re.compile(r"[^\d+]")
# E.164 allows 15 digits; leave room for extensions
_MAX_PHONE_DIGITS = 20


def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address; ``None`` when it isn't one.

    Addresses too long to be an identity value are rejected too.
    """
    if not value or not isinstance(value, str):
        return None
    normalized = value.strip().strip("<>").lower()
    if len(normalized) > MAX_IDENTITY_VALUE_LEN:
        return None
    return normalized if _EMAIL_RE.match(normalized) else None


def normalize_phone(value: str | None) -> str | None:
    """Keep digits and a leading ``+``; ``None`` unless 7 to 20 digits remain."""
    if not value:
        return None
    stripped = _PHONE_STRIP_RE.sub("", value.strip())
    plus = stripped.startswith("+")
    digits = stripped.replace("+", "")
    if not 7 <= len(digits) <= _MAX_PHONE_DIGITS:
        return None
    return f"+{digits}" if plus else digits


def clip_display_name(name: Any) -> str | None:
    """Trim a display name to what a resolve payload accepts."""
    if name is None:
        return None
    text = " ".join(str(name).split())
    return text[:MAX_DISPLAY_NAME_LEN].rstrip() or None


def list_field(event: RawEvent, container: dict[str, Any], key: str) -> list[Any]:
    """Return ``container[key]`` as a list; absent or null means empty.

    Any other type makes the payload uninterpretable, so it raises
    ``ValidationError`` instead of failing later with a ``TypeError``.
    """
    value = container.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(
            f"{event.provider} payload field {key!r} must be a list, "
            f"got {type(value).__name__}",
            provider=event.provider,
            stage="normalize",
            raw_event_id=str(event.id),
            context={"field": key},
        )
    return value


@dataclass(frozen=True)
class IdentityCandidate:
    """A contact point seen in a payload, tagged with its provider."""

    kind: str
    value: str
    provider: str
    display_name: str | None = None
    role: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "value": self.value,
            "provider": self.provider,
            "display_name": clip_display_name(self.display_name),
        }


@dataclass
class InteractionDraft:
    """A canonical interaction before it is persisted.

    ``participants`` holds the normalized identity values involved; it is
    stored in ``source_meta`` and is what the resolver uses to link every
    interaction touching an identity once that identity maps to a contact.
    """

    type: str
    source: str
    source_id: str
    occurred_at: datetime
    subject: str | None = None
    body_text: str | None = None
    body_raw: dict[str, Any] | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)
    participants: list[str] = field(default_factory=list)

    def meta_with_participants(self) -> dict[str, Any]:
        return {**self.source_meta, "participants": sorted(set(self.participants))}


@dataclass
class NormalizedEvent:
    interactions: list[InteractionDraft] = field(default_factory=list)
    identities: list[IdentityCandidate] = field(default_factory=list)
    follow_up_kinds: frozenset[JobKind] = frozenset({JobKind.RESOLVE, JobKind.EMBED})


def dedupe_identities(identities: list[IdentityCandidate]) -> list[IdentityCandidate]:
    """Drop repeated (kind, value, provider) keeping the first, which tends to
    carry the most specific role and display name."""
    seen: set[tuple[str, str, str]] = set()
    result: list[IdentityCandidate] = []
    for identity in identities:
        key = (identity.kind, identity.value, identity.provider)
        if key in seen:
            continue
        seen.add(key)
        result.append(identity)
    return result


class Normalizer(abc.ABC):
    """Converts raw events of one provider into canonical records."""

    provider: ClassVar[str]

    @abc.abstractmethod
    def normalize(self, event: RawEvent) -> NormalizedEvent:
        """Interpret *event*.

        Raises ``ValidationError`` when the payload cannot be interpreted at
        all; missing optional fields are tolerated.
        """


_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\b[^>]*>", re.IGNORECASE)
_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def html_to_text(markup: str) -> str:
    """Cheap HTML to plain text: drop scripts and tags, keep line breaks."""
    text = _SCRIPT_STYLE_RE.sub("", markup)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()
