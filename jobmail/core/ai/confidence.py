"""
Confidence policy.

Single place where probability thresholds turn into routing decisions, so no
caller compares against a hardcoded number.
"""
from enum import Enum
from typing import Dict, Optional

from .config_constants import (
    VERY_LOW_CONFIDENCE,
    LOW_CONFIDENCE,
    MEDIUM_CONFIDENCE,
    HIGH_CONFIDENCE,
)
from .config_loader import PipelineConfig, ThresholdConfig


class ConfidenceLevel(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class ConfidencePolicy:
    """Threshold policy built from PipelineConfig."""

    def __init__(
        self,
        thresholds: Optional[ThresholdConfig] = None,
        retention_days: Optional[Dict[str, int]] = None,
    ):
        self.thresholds = thresholds or ThresholdConfig()
        self.retention_days = retention_days or PipelineConfig().retention_days

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "ConfidencePolicy":
        return cls(thresholds=config.thresholds, retention_days=config.retention_days)

    def level(self, probability: float) -> ConfidenceLevel:
        if probability < VERY_LOW_CONFIDENCE:
            return ConfidenceLevel.VERY_LOW
        if probability < LOW_CONFIDENCE:
            return ConfidenceLevel.LOW
        if probability < MEDIUM_CONFIDENCE:
            return ConfidenceLevel.MEDIUM
        if probability < HIGH_CONFIDENCE:
            return ConfidenceLevel.HIGH
        return ConfidenceLevel.VERY_HIGH

    def needs_review(self, probability: float) -> bool:
        return probability < self.thresholds.needs_review

    def can_auto_approve(self, probability: float) -> bool:
        return probability >= self.thresholds.auto_approve

    def should_store_as_job(self, probability: float) -> bool:
        """Below min-storage a record is kept for audit but never promoted."""
        return probability >= self.thresholds.min_storage

    def is_confident_digest(self, confidence: float) -> bool:
        return confidence >= self.thresholds.digest_filter

    def get_retention_days(self, probability: float) -> int:
        if probability >= self.thresholds.auto_approve:
            return self.retention_days["high"]
        if probability >= self.thresholds.needs_review:
            return self.retention_days["medium"]
        return self.retention_days["low"]
