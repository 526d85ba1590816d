from tidings.insights.capability import (
    GeneratedInsight,
    InsightCapability,
    InsightContext,
    OpenAIInsightCapability,
)
from tidings.insights.fingerprint import canonical_title, fingerprint
from tidings.insights.generator import InsightGenerator, InsightOutcome
from tidings.insights.quota import QuotaGuard

__all__ = [
    "GeneratedInsight",
    "InsightCapability",
    "InsightContext",
    "InsightGenerator",
    "InsightOutcome",
    "OpenAIInsightCapability",
    "QuotaGuard",
    "canonical_title",
    "fingerprint",
]
