"""Mail normalizer.

Understands two payload shapes:

- Gmail API ``users.messages.get(format=full)`` messages: headers under
  ``payload.headers``, body spread over a nested MIME tree whose leaves carry
  base64url ``body.data``.
- Flat messages from simpler adapters::

      {"from": "Ana <ana@x.com>", "to": ["b@y.com"], "subject": "...", "body": "..."}
"""

from __future__ import annotations

import base64
import binascii
import logging
from email.utils import getaddresses
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

INTERACTION_EMAIL_RECEIVED = "email_received"
INTERACTION_EMAIL_SENT = "email_sent"

_MAX_MIME_DEPTH = 20
_FLAT_KEYS = ("from", "to", "subject", "body", "text")
_ADDRESS_ROLES = ("from", "to", "cc")


def _decode_b64url(data: str) -> str | None:
    # Gmail strips base64 padding
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


def _find_part_text(part: dict[str, Any], mime_type: str, depth: int = 0) -> str | None:
    """Depth-first search of a MIME tree for the first non-empty *mime_type* leaf."""
    if depth > _MAX_MIME_DEPTH:
        logger.warning("Maximum MIME nesting depth reached while extracting %s", mime_type)
        return None
    if part.get("mimeType") == mime_type:
        body = part.get("body")
        data = body.get("data") if isinstance(body, dict) else None
        if isinstance(data, str) and data:
            text = _decode_b64url(data)
            if text and text.strip():
                return text
    children = part.get("parts")
    for child in children if isinstance(children, list) else ():
        if isinstance(child, dict):
            text = _find_part_text(child, mime_type, depth + 1)
            if text:
                return text
    return None


def extract_body_text(mime_root: dict[str, Any]) -> str | None:
    """Rebuild plain text from a Gmail MIME tree.

    Prefers ``text/plain``; falls back to tag-stripped ``text/html``.
    """
    plain = _find_part_text(mime_root, "text/plain")
    if plain:
        return plain.strip()
    markup = _find_part_text(mime_root, "text/html")
    if markup:
        return html_to_text(markup)
    return None


def _as_header_values(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return [str(value)]


def _parse_addresses(values: list[str]) -> list[tuple[str | None, str]]:
    """Return ``(display_name, normalized_email)`` pairs, dropping junk."""
    parsed: list[tuple[str | None, str]] = []
    for name, addr in getaddresses(values):
        email = normalize_email(addr)
        if email:
            parsed.append((name.strip() or None, email))
    return parsed


class MailNormalizer(Normalizer):
    provider = "mail"

    def normalize(self, event: RawEvent) -> NormalizedEvent:
        payload = event.payload
        if not isinstance(payload, dict):
            raise ValidationError(
                "mail payload must be an object",
                provider=event.provider,
                stage="normalize",
                raw_event_id=str(event.id),
            )

        mime_root = payload.get("payload")
        if isinstance(mime_root, dict):
            fields = self._from_gmail(event, payload, mime_root)
        elif any(key in payload for key in _FLAT_KEYS):
            fields = self._from_flat(event, payload)
        else:
            raise ValidationError(
                "Unrecognized mail payload shape",
                provider=event.provider,
                stage="normalize",
                raw_event_id=str(event.id),
                context={"keys": sorted(payload)[:20]},
            )

        addresses = {role: _parse_addresses(fields[role]) for role in _ADDRESS_ROLES}
        identities = dedupe_identities(
            [
                IdentityCandidate(
                    kind=IDENTITY_EMAIL,
                    value=email,
                    provider=event.provider,
                    display_name=clip_display_name(name),
                    role=role,
                )
                for role in _ADDRESS_ROLES
                for name, email in addresses[role]
            ]
        )

        source_id = event.source_id or payload.get("id") or str(event.id)
        interaction = InteractionDraft(
            type=INTERACTION_EMAIL_SENT if fields["sent"] else INTERACTION_EMAIL_RECEIVED,
            source=event.provider,
            source_id=str(source_id),
            occurred_at=event.occurred_at,
            subject=fields["subject"],
            body_text=fields["body"],
            body_raw=fields["raw"],
            source_meta={
                "thread_id": fields["thread_id"],
                "labels": fields["labels"],
                "direction": "outbound" if fields["sent"] else "inbound",
                **{role: [email for _, email in addresses[role]] for role in _ADDRESS_ROLES},
            },
            participants=[identity.value for identity in identities],
        )
        return NormalizedEvent(interactions=[interaction], identities=identities)

    def _from_gmail(
        self, event: RawEvent, message: dict[str, Any], mime_root: dict[str, Any]
    ) -> dict[str, Any]:
        headers: dict[str, list[str]] = {}
        for header in list_field(event, mime_root, "headers"):
            if isinstance(header, dict) and header.get("name"):
                name = str(header["name"]).lower()
                headers.setdefault(name, []).append(str(header.get("value", "")))

        labels = [str(label) for label in list_field(event, message, "labelIds")]
        body = extract_body_text(mime_root)
        if body is None and message.get("snippet"):
            body = str(message["snippet"])
        subject = headers.get("subject", [None])[0]
        return {
            "from": headers.get("from", []),
            "to": headers.get("to", []),
            "cc": headers.get("cc", []),
            "subject": subject.strip() if subject else None,
            "body": body,
            "sent": "SENT" in labels,
            "labels": labels,
            "thread_id": message.get("threadId"),
            "raw": {
                "snippet": message.get("snippet"),
                "message_id": headers.get("message-id", [None])[0],
                "mime_type": mime_root.get("mimeType"),
            },
        }

    def _from_flat(self, event: RawEvent, message: dict[str, Any]) -> dict[str, Any]:
        body = message.get("body", message.get("text"))
        if isinstance(body, str) and "<" in body and message.get("content_type") == "text/html":
            body = html_to_text(body)
        labels = [str(label) for label in list_field(event, message, "labels")]
        direction = str(message.get("direction", "")).lower()
        subject = message.get("subject")
        return {
            "from": _as_header_values(message.get("from")),
            "to": _as_header_values(message.get("to")),
            "cc": _as_header_values(message.get("cc")),
            "subject": str(subject).strip() if subject else None,
            "body": str(body) if body is not None else None,
            "sent": direction in ("outbound", "sent") or "SENT" in labels,
            "labels": labels,
            "thread_id": message.get("thread_id"),
            "raw": None,
        }
