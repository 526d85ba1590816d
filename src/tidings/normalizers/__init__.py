from tidings.normalizers.base import (
    IdentityCandidate,
    InteractionDraft,
    NormalizedEvent,
    Normalizer,
)
from tidings.normalizers.calendar import CalendarNormalizer
from tidings.normalizers.mail import MailNormalizer
from tidings.normalizers.registry import NormalizerRegistry, default_registry

__all__ = [
    "CalendarNormalizer",
    "IdentityCandidate",
    "InteractionDraft",
    "MailNormalizer",
    "NormalizedEvent",
    "Normalizer",
    "NormalizerRegistry",
    "default_registry",
]
