"""Deterministic dedup key for insights."""

from __future__ import annotations

import hashlib
import uuid

CANONICAL_TITLES: dict[str, str] = {
    "summary": "Relationship summary",
    "follow_up": "Suggested follow-up",
    "topics": "Recurring topics",
}


def canonical_title(kind: str) -> str:
    """The title an insight of *kind* is deduplicated under before generation."""
    return CANONICAL_TITLES.get(kind, kind.replace("_", " ").capitalize())


def fingerprint(
    kind: str,
    subject_type: str,
    subject_id: uuid.UUID | str,
    model: str,
    title: str,
) -> str:
    """sha256 hex over the NUL-joined identifying fields."""
    joined = "\x00".join((kind, subject_type, str(subject_id), model, title.strip()))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()
