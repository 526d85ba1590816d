"""Per-kind job payload schemas and envelope limits.

Payloads are validated before dispatch so a handler only ever sees a typed
model. Anything that fails here is a ``ValidationError``: the job goes to
``dead`` and the payload lands in the side error log.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from tidings.errors import ValidationError
from tidings.jobs.kinds import JobKind

MAX_PAYLOAD_BYTES = 1024 * 1024
MAX_PAYLOAD_DEPTH = 10
MAX_BATCH_ITEMS = 500
MAX_IDENTITY_VALUE_LEN = 320
MAX_DISPLAY_NAME_LEN = 256


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SyncPayload(_Payload):
    provider: str = Field(min_length=1, max_length=64)
    filters: dict[str, Any] = Field(default_factory=dict)


class NormalizePayload(_Payload):
    raw_event_id: uuid.UUID


class IdentityRef(_Payload):
    kind: Literal["email", "phone", "handle", "provider_id"]
    value: str = Field(min_length=1, max_length=MAX_IDENTITY_VALUE_LEN)
    provider: str = Field(min_length=1, max_length=64)
    display_name: str | None = Field(default=None, max_length=MAX_DISPLAY_NAME_LEN)


class ResolvePayload(_Payload):
    identities: list[IdentityRef] = Field(min_length=1, max_length=MAX_BATCH_ITEMS)
    raw_event_id: uuid.UUID | None = None


class EmbedPayload(_Payload):
    interaction_id: uuid.UUID


class InsightPayload(_Payload):
    subject_type: Literal["contact", "interaction"]
    subject_id: uuid.UUID
    insight_kind: str = Field(default="summary", min_length=1, max_length=64)


class TimelinePayload(_Payload):
    contact_id: uuid.UUID


PAYLOAD_MODELS: dict[JobKind, type[_Payload]] = {
    JobKind.SYNC: SyncPayload,
    JobKind.NORMALIZE: NormalizePayload,
    JobKind.RESOLVE: ResolvePayload,
    JobKind.EMBED: EmbedPayload,
    JobKind.INSIGHT: InsightPayload,
    JobKind.TIMELINE: TimelinePayload,
}


def _depth(value: Any, level: int = 0) -> int:
    if isinstance(value, dict):
        return max((_depth(v, level + 1) for v in value.values()), default=level + 1)
    if isinstance(value, list):
        return max((_depth(v, level + 1) for v in value), default=level + 1)
    return level


def validate_payload(kind: JobKind, payload: Any) -> _Payload:
    """Check envelope limits and parse *payload* into the model for *kind*.

    Raises
    ------
    ValidationError
        When the payload is oversized, too deeply nested, or does not match
        the schema for *kind*.
    """
    if not isinstance(payload, dict):
        raise ValidationError(
            f"{kind} payload must be an object, got {type(payload).__name__}",
            stage=str(kind),
        )

    size = len(json.dumps(payload, default=str).encode())
    if size > MAX_PAYLOAD_BYTES:
        raise ValidationError(
            f"{kind} payload is {size} bytes (limit {MAX_PAYLOAD_BYTES})",
            stage=str(kind),
            context={"size": size},
        )
    depth = _depth(payload)
    if depth > MAX_PAYLOAD_DEPTH:
        raise ValidationError(
            f"{kind} payload nesting depth {depth} exceeds {MAX_PAYLOAD_DEPTH}",
            stage=str(kind),
            context={"depth": depth},
        )

    model = PAYLOAD_MODELS[kind]
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid {kind} payload: {exc.error_count()} error(s)",
            stage=str(kind),
            context={"errors": exc.errors(include_url=False, include_input=False)},
        ) from exc
