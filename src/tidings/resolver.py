"""Contact identity resolution: link emitted identities to known contacts.

Resolution strategy (in order, per identity):

1. Exact: any contact already tied to the same (kind, value), through an
   identity row from any provider or the contact's own primary email/phone.
   One contact resolves with confidence 1.0; several distinct contacts are
   ambiguous and stay unresolved.
2. Fuzzy: only when the exact tier found nothing. A pluggable
   ``FuzzyMatcher`` scores every contact of the user; the best candidate links
   when its score reaches ``threshold`` AND beats the runner-up by
   ``min_margin``. Anything weaker stays unresolved.

An unresolved identity never creates a contact and never sets
``interactions.contact_id``. Once an identity resolves, every still-unlinked
interaction of that user listing the identity value among its participants is
linked in the same transaction.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Protocol

import asyncpg

from tidings.errors import ItemError
from tidings.jobs.deadline import Deadline
from tidings.normalizers.base import IDENTITY_EMAIL, IDENTITY_PHONE, IdentityCandidate
from tidings.storage import identities as identity_store
from tidings.storage import interactions as interaction_store
from tidings.storage.identities import ContactCandidate

logger = logging.getLogger(__name__)

METHOD_EXACT = "exact"
METHOD_FUZZY = "fuzzy"
METHOD_AMBIGUOUS = "ambiguous"
METHOD_UNRESOLVED = "unresolved"

_DEFAULT_THRESHOLD = 0.85
_DEFAULT_MIN_MARGIN = 0.1

_NAME_WEIGHT = 0.6
_VALUE_WEIGHT = 0.4
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


# ---------------------------------------------------------------------------
# Fuzzy matching
# ---------------------------------------------------------------------------


class FuzzyMatcher(Protocol):
    """Scores how likely *identity* belongs to *candidate*, in ``[0, 1]``."""

    def score(self, identity: IdentityCandidate, candidate: ContactCandidate) -> float: ...


def _name_tokens(name: str | None) -> str:
    if not name:
        return ""
    tokens = _NON_ALNUM_RE.sub(" ", name.lower()).split()
    return " ".join(sorted(tokens))


def _ratio(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


def _email_similarity(a: str, b: str) -> float:
    local_a, _, domain_a = a.partition("@")
    local_b, _, domain_b = b.partition("@")
    local = _ratio(_NON_ALNUM_RE.sub("", local_a), _NON_ALNUM_RE.sub("", local_b))
    return 0.7 * local + 0.3 * (1.0 if domain_a == domain_b else 0.0)


def _phone_similarity(a: str, b: str) -> float:
    digits_a = a.lstrip("+")[-10:]
    digits_b = b.lstrip("+")[-10:]
    if digits_a and digits_a == digits_b:
        return 1.0
    return _ratio(digits_a, digits_b)


class NameAndValueMatcher:
    """Display-name similarity combined with contact-value similarity.

    ``0.6 * name + 0.4 * value`` where *name* compares token-sorted display
    names and *value* is the best similarity between the identity value and
    any value already known for the contact (email local part plus domain, or
    trailing phone digits). An identity without a display name scores 0:
    with nothing but a new address there is no evidence to go on.
    """

    def score(self, identity: IdentityCandidate, candidate: ContactCandidate) -> float:
        identity_name = _name_tokens(identity.display_name)
        if not identity_name:
            return 0.0
        name_score = _ratio(identity_name, _name_tokens(candidate.display_name))

        value_score = 0.0
        for value in candidate.values:
            if identity.kind == IDENTITY_EMAIL:
                value_score = max(value_score, _email_similarity(identity.value, value))
            elif identity.kind == IDENTITY_PHONE:
                value_score = max(value_score, _phone_similarity(identity.value, value))
            else:
                value_score = max(value_score, _ratio(identity.value, value))

        return _NAME_WEIGHT * name_score + _VALUE_WEIGHT * value_score


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass
class Resolution:
    identity: IdentityCandidate
    method: str
    contact_id: uuid.UUID | None = None
    confidence: float = 0.0
    linked_interaction_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.contact_id is not None


@dataclass
class ResolveReport:
    resolutions: list[Resolution] = field(default_factory=list)
    item_errors: list[ItemError] = field(default_factory=list)
    attempted: int = 0
    incomplete: bool = False

    @property
    def contact_ids(self) -> list[uuid.UUID]:
        """Distinct resolved contacts in first-seen order."""
        seen: list[uuid.UUID] = []
        for resolution in self.resolutions:
            if resolution.contact_id is not None and resolution.contact_id not in seen:
                seen.append(resolution.contact_id)
        return seen


class ContactIdentityResolver:
    """Resolves identities to contacts and links their interactions.

    Parameters
    ----------
    pool:
        asyncpg pool for the pipeline database.
    matcher:
        Fuzzy tier implementation; ``None`` disables the fuzzy tier entirely
        so only exact matches ever link.
    threshold, min_margin:
        Fuzzy acceptance rule (see module docstring).
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        matcher: FuzzyMatcher | None = None,
        threshold: float = _DEFAULT_THRESHOLD,
        min_margin: float = _DEFAULT_MIN_MARGIN,
    ) -> None:
        self._pool = pool
        self._matcher = matcher
        self._threshold = threshold
        self._min_margin = min_margin

    async def resolve_one(
        self,
        user_id: str,
        identity: IdentityCandidate,
        *,
        candidates: dict[str, list[ContactCandidate]] | None = None,
    ) -> Resolution:
        """Resolve and link a single identity.

        *candidates* caches fuzzy candidates per identity kind across calls in
        one resolve pass.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                resolution = await self._decide(conn, user_id, identity, candidates)
                if resolution.contact_id is not None:
                    await identity_store.link_identity(
                        conn,
                        user_id=user_id,
                        kind=identity.kind,
                        value=identity.value,
                        contact_id=resolution.contact_id,
                    )
                    linked = await interaction_store.link_by_participant(
                        conn,
                        user_id=user_id,
                        value=identity.value,
                        contact_id=resolution.contact_id,
                    )
                    resolution.linked_interaction_ids = linked
        logger.debug(
            "resolver: %s:%s -> %s (%s, %.2f, linked=%d)",
            identity.kind,
            identity.value,
            resolution.contact_id,
            resolution.method,
            resolution.confidence,
            len(resolution.linked_interaction_ids),
        )
        return resolution

    async def resolve(
        self,
        user_id: str,
        identities: Sequence[IdentityCandidate],
        *,
        deadline: Deadline | None = None,
    ) -> ResolveReport:
        """Resolve *identities* in order, stopping early if *deadline* expires.

        Identities sharing (kind, value) across providers are resolved once.
        A failing identity is recorded as an item error and the rest go on.
        """
        report = ResolveReport()
        seen: set[tuple[str, str]] = set()
        candidates: dict[str, list[ContactCandidate]] = {}
        for identity in identities:
            key = (identity.kind, identity.value)
            if key in seen:
                continue
            if deadline is not None and deadline.expired():
                report.incomplete = True
                break
            seen.add(key)
            report.attempted += 1
            try:
                resolution = await self.resolve_one(user_id, identity, candidates=candidates)
            except Exception as exc:
                logger.warning("resolver: %s:%s failed: %s", identity.kind, identity.value, exc)
                report.item_errors.append(ItemError(f"{identity.kind}:{identity.value}", str(exc)))
                continue
            report.resolutions.append(resolution)
        return report

    async def _decide(
        self,
        conn: asyncpg.Connection,
        user_id: str,
        identity: IdentityCandidate,
        candidates: dict[str, list[ContactCandidate]] | None,
    ) -> Resolution:
        exact = await identity_store.exact_contact_ids(
            conn, user_id=user_id, kind=identity.kind, value=identity.value
        )
        if len(exact) == 1:
            return Resolution(identity, METHOD_EXACT, contact_id=exact[0], confidence=1.0)
        if len(exact) > 1:
            logger.info(
                "resolver: %s:%s matches %d contacts; leaving unresolved",
                identity.kind,
                identity.value,
                len(exact),
            )
            return Resolution(identity, METHOD_AMBIGUOUS)

        if self._matcher is None:
            return Resolution(identity, METHOD_UNRESOLVED)

        if candidates is not None and identity.kind in candidates:
            known = candidates[identity.kind]
        else:
            known = await identity_store.fuzzy_candidates(conn, user_id=user_id, kind=identity.kind)
            if candidates is not None:
                candidates[identity.kind] = known
        return self.pick_fuzzy(identity, known)

    def pick_fuzzy(
        self, identity: IdentityCandidate, known: Sequence[ContactCandidate]
    ) -> Resolution:
        """Apply the threshold and margin rule to matcher scores."""
        if self._matcher is None or not known:
            return Resolution(identity, METHOD_UNRESOLVED)
        scored = sorted(
            ((self._matcher.score(identity, c), c) for c in known),
            key=lambda pair: pair[0],
            reverse=True,
        )
        best_score, best = scored[0]
        runner_up = scored[1][0] if len(scored) > 1 else 0.0
        if best_score >= self._threshold and best_score - runner_up >= self._min_margin:
            return Resolution(
                identity, METHOD_FUZZY, contact_id=best.contact_id, confidence=best_score
            )
        return Resolution(identity, METHOD_UNRESOLVED, confidence=best_score)
