"""Provider name to normalizer lookup."""

from __future__ import annotations

from collections.abc import Iterable

from tidings.errors import ValidationError
from tidings.normalizers.base import Normalizer
from tidings.normalizers.calendar import CalendarNormalizer
from tidings.normalizers.mail import MailNormalizer

# Provider names used by older adapters
_ALIASES = {
    "gmail": "mail",
    "google_gmail": "mail",
    "google_calendar": "calendar",
    "gcal": "calendar",
}


class NormalizerRegistry:
    def __init__(self, normalizers: Iterable[Normalizer]) -> None:
        self._normalizers = {n.provider: n for n in normalizers}

    @property
    def providers(self) -> list[str]:
        return sorted(self._normalizers)

    def for_provider(self, provider: str) -> Normalizer:
        """Return the normalizer for *provider*.

        An unknown provider is a ``ValidationError``: retrying will never help.
        """
        key = _ALIASES.get(provider, provider)
        try:
            return self._normalizers[key]
        except KeyError:
            raise ValidationError(
                f"No normalizer for provider {provider!r}",
                provider=provider,
                stage="normalize",
            ) from None


def default_registry() -> NormalizerRegistry:
    return NormalizerRegistry([MailNormalizer(), CalendarNormalizer()])
