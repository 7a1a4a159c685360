"""Time-decayed quality scoring for stored records."""

import math
from dataclasses import replace
from datetime import datetime
from typing import Optional

from loguru import logger

from .config import QualityConfig
from .error_handling import InputError
from .models import QualityMetrics, Record, UsageCounters, days_between


FRESHNESS_STEPS = [(7, 1.0), (30, 0.8), (90, 0.5), (180, 0.3)]
STALE_FRESHNESS = 0.1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class QualityScorer:
    """Computes the five-dimension quality vector of a record."""

    def __init__(self, config: Optional[QualityConfig] = None):
        self.config = config or QualityConfig()

    def score(self, record: Record, now: Optional[datetime] = None) -> QualityMetrics:
        """
        Score a record from its content and usage counters.

        Args:
            record: Stored record
            now: Reference time, defaults to the current time

        Returns:
            QualityMetrics with every dimension in [0, 1]
        """
        now = now or datetime.now()
        usage = record.metadata.usage

        relevance = self.relevance(usage)
        freshness = self.freshness(usage.last_accessed or record.created_at, now)
        completeness = self.completeness(record)
        accuracy = self.accuracy(record)
        usefulness = _clamp(0.4 * relevance + 0.3 * freshness + 0.3 * accuracy)
        overall = _clamp(
            0.30 * relevance
            + 0.25 * freshness
            + 0.20 * accuracy
            + 0.15 * usefulness
            + 0.10 * completeness
        )

        return QualityMetrics(
            relevance=relevance,
            freshness=freshness,
            completeness=completeness,
            accuracy=accuracy,
            usefulness=usefulness,
            overall=overall,
            usage=replace(usage),
            calculated_at=now,
        )

    def relevance(self, usage: UsageCounters) -> float:
        weighted = 2 * usage.reference_count + usage.search_count
        if weighted <= 0:
            return 0.5
        return _clamp(min(0.5 + 0.5 * math.log(1 + weighted) / math.log(100), 1.0))

    def freshness(self, last_seen: datetime, now: datetime) -> float:
        days = days_between(last_seen, now)
        for limit, value in FRESHNESS_STEPS:
            if days <= limit:
                return value
        return STALE_FRESHNESS

    def completeness(self, record: Record) -> float:
        score = 0.5
        length = len(record.content or "")
        for threshold in (100, 300, 1000):
            if length > threshold:
                score += 0.1
        if record.file_path:
            score += 0.1
        if record.line_ranges:
            score += 0.05
        if record.tags:
            score += 0.05
        if record.language:
            score += 0.05
        return _clamp(score)

    def accuracy(self, record: Record) -> float:
        rating = record.metadata.usage.user_rating
        if rating is not None:
            return _clamp(float(rating))
        if record.quality_score is not None:
            return _clamp(float(record.quality_score))
        return _clamp(self.config.default_accuracy)

    def apply(self, record: Record, now: Optional[datetime] = None) -> QualityMetrics:
        """Score the record and write the metrics into its metadata envelope."""
        metrics = self.score(record, now)
        record.metadata.quality = metrics
        record.quality_score = metrics.overall
        return metrics

    def register_usage(self, record: Record, kind: str = "search",
                       now: Optional[datetime] = None) -> QualityMetrics:
        """Count one search hit or explicit reference, then rescore."""
        usage = record.metadata.usage
        if kind == "search":
            usage.search_count += 1
        elif kind == "reference":
            usage.reference_count += 1
        else:
            raise InputError(f"Unknown usage kind: {kind!r}")
        usage.last_accessed = now or datetime.now()
        logger.debug(f"Record {record.id} {kind} usage registered")
        return self.apply(record, now)

    def rate(self, record: Record, rating: float, now: Optional[datetime] = None) -> QualityMetrics:
        """Store a user rating in [0, 1] and rescore."""
        try:
            rating = float(rating)
        except (TypeError, ValueError) as e:
            raise InputError(f"Rating must be a number: {rating!r}") from e
        record.metadata.usage.user_rating = _clamp(rating)
        return self.apply(record, now)
