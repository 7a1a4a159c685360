"""Threshold learning from confirmation feedback."""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

from loguru import logger

from .capture import CapturePreferences
from .config import LearningConfig
from .models import ActivityType


@dataclass
class FeedbackEntry:
    activity_type: ActivityType
    accepted: bool
    value_score: int
    recorded_at: datetime = field(default_factory=datetime.now)


@dataclass
class ThresholdChange:
    activity_type: ActivityType
    old_value: int
    new_value: int
    reason: str

    def to_dict(self) -> Dict:
        return {
            'activity_type': self.activity_type.value,
            'old_value': self.old_value,
            'new_value': self.new_value,
            'reason': self.reason,
        }


class FeedbackLearner:
    """
    Nudges the high capture threshold from accept/reject feedback.

    When users keep rejecting a type's confirmations the bar for asking is
    too low, so the high threshold drops and more candidates get decided
    automatically. When they accept nearly everything, it rises.
    """

    def __init__(self, config: Optional[LearningConfig] = None):
        self.config = config or LearningConfig()
        self._entries: Dict[ActivityType, List[FeedbackEntry]] = defaultdict(list)
        self.history: List[ThresholdChange] = []

    def record(self,
               activity_type: ActivityType,
               accepted: bool,
               value_score: int,
               preferences: CapturePreferences) -> CapturePreferences:
        """
        Record one resolved confirmation and return possibly adjusted preferences.

        Args:
            activity_type: Type of the resolved candidate
            accepted: True for yes, False for no
            value_score: The candidate's total value score
            preferences: Current preferences

        Returns:
            New preferences when a threshold moved, else the ones passed in
        """
        self._entries[activity_type].append(
            FeedbackEntry(activity_type=activity_type, accepted=accepted, value_score=value_score)
        )
        if not self.config.enabled:
            return preferences

        entries = self._entries[activity_type]
        if len(entries) < self.config.min_samples:
            return preferences

        rate = sum(1 for e in entries if e.accepted) / len(entries)
        high = preferences.high_threshold
        if rate < 0.5:
            target = max(self.config.min_threshold, preferences.low_threshold, high - self.config.step)
            reason = f"low acceptance rate {rate:.2f} for {activity_type.value}"
        elif rate > 0.9:
            target = min(self.config.max_threshold, high + self.config.step)
            reason = f"high acceptance rate {rate:.2f} for {activity_type.value}"
        else:
            return preferences

        if target == high:
            return preferences

        change = ThresholdChange(activity_type, high, target, reason)
        self.history.append(change)
        logger.info(f"High capture threshold {high} -> {target}: {reason}")
        return replace(preferences, high_threshold=target)

    def acceptance_rate(self, activity_type: ActivityType) -> Optional[float]:
        entries = self._entries.get(activity_type)
        if not entries:
            return None
        return sum(1 for e in entries if e.accepted) / len(entries)

    def stats(self) -> Dict:
        return {
            'samples': {t.value: len(e) for t, e in self._entries.items()},
            'acceptance': {
                t.value: self.acceptance_rate(t) for t in self._entries
            },
            'changes': [c.to_dict() for c in self.history],
        }
