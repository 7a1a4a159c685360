"""Capture decisions and the confirmation lifecycle.

Every candidate memory ends in one of three outcomes: recorded straight
away, discarded, or parked as a pending confirmation that the user resolves
(yes / no / maybe) before a timer expires it. The pending state machine has a
single authoritative resolved flag; whichever of the timer or the caller gets
there first wins and the other becomes a no-op.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from loguru import logger

from .bus import Event, EventBus
from .classifier import ActivityClassification
from .config import CaptureConfig
from .error_handling import InputError
from .models import (
    ActivityType,
    CaptureOutcome,
    ConfirmationChoice,
    ConfirmationState,
    Priority,
    new_id,
)
from .value import ValueScore


EXTENSION_TAGS = {
    "ts": "typescript", "tsx": "typescript", "js": "javascript", "jsx": "javascript",
    "py": "python", "go": "go", "rs": "rust", "java": "java", "rb": "ruby",
    "php": "php", "vue": "vue", "sql": "sql", "md": "markdown",
}

FEATURE_TAGS = [
    ("security", ("security", "vulnerability", "auth", "安全")),
    ("performance", ("performance", "optimiz", "latency", "性能")),
    ("architecture", ("architecture", "design pattern", "架构")),
    ("reusable", ("reusable", "generic", "utility", "可复用")),
]

MAX_SUGGESTED_TAGS = 5


def _as_types(values: Iterable[Any]) -> FrozenSet[ActivityType]:
    types = set()
    for value in values:
        try:
            types.add(value if isinstance(value, ActivityType) else ActivityType(value))
        except ValueError as e:
            raise InputError(f"Unknown activity type in preferences: {value!r}") from e
    return frozenset(types)


@dataclass(frozen=True)
class CapturePreferences:
    """Thresholds and per-type overrides for capture decisions."""
    high_threshold: int = 80
    low_threshold: int = 40
    auto_confirm_floor: int = 60
    auto_confirm_types: FrozenSet[ActivityType] = frozenset()
    never_confirm_types: FrozenSet[ActivityType] = frozenset()
    confirmation_timeout_s: float = 30.0

    def __post_init__(self):
        object.__setattr__(self, 'auto_confirm_types', _as_types(self.auto_confirm_types))
        object.__setattr__(self, 'never_confirm_types', _as_types(self.never_confirm_types))
        if self.low_threshold > self.high_threshold:
            raise InputError("low_threshold must not exceed high_threshold")

    @classmethod
    def from_config(cls, config: CaptureConfig) -> "CapturePreferences":
        return cls(
            high_threshold=config.high_threshold,
            low_threshold=config.low_threshold,
            auto_confirm_floor=config.auto_confirm_floor,
            auto_confirm_types=frozenset(config.auto_confirm_types),
            never_confirm_types=frozenset(config.never_confirm_types),
            confirmation_timeout_s=config.confirmation_timeout_s,
        )


@dataclass
class CaptureCandidate:
    """Content plus its classifier and evaluator output."""
    content: str
    classification: ActivityClassification
    value: ValueScore
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingConfirmation:
    """An ask-the-user capture awaiting a response or the timer."""
    id: str
    content: str
    classification: ActivityClassification
    value: ValueScore
    confidence: float
    deadline: float
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    state: ConfirmationState = ConfirmationState.PENDING
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def resolved(self) -> bool:
        return self.state != ConfirmationState.PENDING

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'content': self.content,
            'activity_type': self.classification.type.value,
            'value_score': self.value.total_score,
            'confidence': self.confidence,
            'state': self.state.value,
            'created_at': self.created_at.isoformat(),
            'context': dict(self.context),
        }


@dataclass
class CaptureDecision:
    """Outcome of scoring one candidate."""
    outcome: CaptureOutcome
    confidence: float
    reason: str
    reasoning: str
    priority: Priority
    classification: ActivityClassification
    value: ValueScore
    suggested_tags: List[str] = field(default_factory=list)
    confirmation_id: Optional[str] = None

    @property
    def should_record(self) -> bool:
        return self.outcome == CaptureOutcome.AUTO_RECORD

    def to_dict(self) -> Dict:
        return {
            'outcome': self.outcome.value,
            'confidence': self.confidence,
            'reason': self.reason,
            'reasoning': self.reasoning,
            'priority': self.priority.value,
            'activity_type': self.classification.type.value,
            'value_score': self.value.total_score,
            'suggested_tags': list(self.suggested_tags),
            'confirmation_id': self.confirmation_id,
        }


@dataclass
class ConfirmationResult:
    """Outcome of resolving a pending confirmation."""
    confirmation_id: str
    state: ConfirmationState
    confidence: float
    message: str
    entry: Optional[PendingConfirmation] = None

    @property
    def recorded(self) -> bool:
        return self.state == ConfirmationState.RECORDED

    def to_dict(self) -> Dict:
        return {
            'confirmation_id': self.confirmation_id,
            'state': self.state.value,
            'confidence': self.confidence,
            'message': self.message,
        }


def suggest_tags(content: str, classification: ActivityClassification) -> List[str]:
    """Up to five tags from activity type, file languages and content features."""
    tags = [classification.type.value]
    for file_name in classification.key_elements.files:
        ext = file_name.rsplit(".", 1)[-1].lower()
        if ext in EXTENSION_TAGS:
            tags.append(EXTENSION_TAGS[ext])

    lowered = content.lower()
    for tag, needles in FEATURE_TAGS:
        if any(n in lowered for n in needles):
            tags.append(tag)

    unique: List[str] = []
    for tag in tags:
        if tag not in unique:
            unique.append(tag)
    return unique[:MAX_SUGGESTED_TAGS]


class CaptureDecisionEngine:
    """
    Turns classifier and evaluator output into capture decisions.

    Decision rules, applied in order:
    1. Type in the auto-confirm set and score >= auto-confirm floor: record
    2. Type in the never-confirm set: discard
    3. Score >= high: record; score < low: discard; otherwise ask the user
    """

    def __init__(self,
                 preferences: Optional[CapturePreferences] = None,
                 event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.preferences = preferences or CapturePreferences()
        self.event_bus = event_bus
        self._clock = clock
        self._pending: Dict[str, PendingConfirmation] = {}
        self._stats = defaultdict(int)

    def decide(self,
               content: str,
               classification: ActivityClassification,
               value: ValueScore,
               preferences: Optional[CapturePreferences] = None,
               context: Optional[Dict[str, Any]] = None) -> CaptureDecision:
        """
        Decide whether a candidate is recorded, discarded or needs confirmation.

        Args:
            content: Candidate memory text
            classification: Activity classifier output
            value: Value evaluator output
            preferences: Per-call override of the engine preferences
            context: Opaque data kept with a pending confirmation

        Returns:
            The decision; pending decisions carry a confirmation id
        """
        prefs = preferences or self.preferences
        outcome, reason = self._apply_rules(classification.type, value.total_score, prefs)
        decision = self._build(outcome, reason, content, classification, value, prefs)

        if outcome == CaptureOutcome.PENDING:
            entry = self._park(content, classification, value, prefs, context or {})
            decision.confirmation_id = entry.id

        self._stats[f"decision_{outcome.value}"] += 1
        logger.debug(
            f"Capture decision {outcome.value} for {classification.type.value} "
            f"(score {value.total_score}): {reason}"
        )
        return decision

    def decide_batch(self,
                     candidates: Sequence[CaptureCandidate],
                     preferences: Optional[CapturePreferences] = None) -> List[CaptureDecision]:
        """
        Decide a batch, treating same-type candidates as a group.

        The group's average score goes through the same rules; a group whose
        average lands between the thresholds falls back to per-item decisions.
        Output order matches input order.
        """
        prefs = preferences or self.preferences
        results: List[Optional[CaptureDecision]] = [None] * len(candidates)

        groups: Dict[ActivityType, List[int]] = {}
        for index, candidate in enumerate(candidates):
            groups.setdefault(candidate.classification.type, []).append(index)

        for activity_type, indexes in groups.items():
            average = sum(candidates[i].value.total_score for i in indexes) / len(indexes)
            outcome, reason = self._apply_rules(activity_type, average, prefs)

            if outcome == CaptureOutcome.PENDING:
                for i in indexes:
                    c = candidates[i]
                    results[i] = self.decide(c.content, c.classification, c.value, prefs, c.context)
                continue

            reason = f"batch of {len(indexes)} {activity_type.value} (avg {average:.1f}): {reason}"
            for i in indexes:
                c = candidates[i]
                results[i] = self._build(outcome, reason, c.content, c.classification, c.value, prefs)
                self._stats[f"decision_{outcome.value}"] += 1

        self._stats['batches'] += 1
        return [r for r in results if r is not None]

    def resolve(self, confirmation_id: str, choice: Any) -> ConfirmationResult:
        """
        Apply the user's answer to a pending confirmation.

        Unknown, expired or already resolved ids yield a zero-confidence
        discard rather than an error.
        """
        try:
            choice = choice if isinstance(choice, ConfirmationChoice) else ConfirmationChoice(str(choice).lower())
        except ValueError as e:
            raise InputError(f"Invalid confirmation choice: {choice!r}") from e

        entry = self._pending.get(confirmation_id)
        if entry is None or entry.resolved:
            self._stats['unknown_resolutions'] += 1
            return ConfirmationResult(
                confirmation_id=confirmation_id,
                state=ConfirmationState.DISCARDED,
                confidence=0.0,
                message="Unknown or expired confirmation",
            )

        if self._clock() >= entry.deadline:
            self._expire(entry)
            return ConfirmationResult(
                confirmation_id=confirmation_id,
                state=ConfirmationState.DISCARDED,
                confidence=0.0,
                message="Confirmation expired",
            )

        if choice == ConfirmationChoice.MAYBE:
            # Deadline stays where it was
            entry.confidence = entry.confidence / 2
            self._stats['maybe'] += 1
            return ConfirmationResult(
                confirmation_id=confirmation_id,
                state=ConfirmationState.PENDING,
                confidence=entry.confidence,
                message="Still pending",
                entry=entry,
            )

        if choice == ConfirmationChoice.YES:
            self._finish(entry, ConfirmationState.RECORDED)
            entry.confidence = 1.0
            logger.info(f"Confirmation {confirmation_id} accepted")
            return ConfirmationResult(
                confirmation_id=confirmation_id,
                state=ConfirmationState.RECORDED,
                confidence=1.0,
                message="Recorded",
                entry=entry,
            )

        self._finish(entry, ConfirmationState.DISCARDED)
        logger.info(f"Confirmation {confirmation_id} rejected")
        return ConfirmationResult(
            confirmation_id=confirmation_id,
            state=ConfirmationState.DISCARDED,
            confidence=1.0,
            message="Discarded",
            entry=entry,
        )

    def get_pending(self, confirmation_id: str) -> Optional[PendingConfirmation]:
        entry = self._pending.get(confirmation_id)
        if entry is not None and self._clock() >= entry.deadline:
            self._expire(entry)
            return None
        return entry

    def list_pending(self) -> List[PendingConfirmation]:
        self.expire_overdue()
        return list(self._pending.values())

    def pending_count(self) -> int:
        return len(self._pending)

    def expire_overdue(self) -> int:
        """Expire entries whose deadline passed without a running timer."""
        now = self._clock()
        overdue = [e for e in self._pending.values() if now >= e.deadline]
        for entry in overdue:
            self._expire(entry)
        return len(overdue)

    def shutdown(self) -> None:
        """Cancel every timer and drop all pending confirmations."""
        for entry in list(self._pending.values()):
            self._finish(entry, ConfirmationState.DISCARDED)
        logger.info("Capture decision engine shut down")

    def stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats['pending'] = len(self._pending)
        return stats

    def _apply_rules(self, activity_type: ActivityType, score: float, prefs: CapturePreferences):
        if activity_type in prefs.auto_confirm_types and score >= prefs.auto_confirm_floor:
            return CaptureOutcome.AUTO_RECORD, f"{activity_type.value} is auto-confirmed"
        if activity_type in prefs.never_confirm_types:
            return CaptureOutcome.DISCARD, f"{activity_type.value} is never captured"
        if score >= prefs.high_threshold:
            return CaptureOutcome.AUTO_RECORD, f"score {score:g} >= {prefs.high_threshold}"
        if score < prefs.low_threshold:
            return CaptureOutcome.DISCARD, f"score {score:g} < {prefs.low_threshold}"
        return CaptureOutcome.PENDING, "score between thresholds, asking user"

    def _build(self,
               outcome: CaptureOutcome,
               reason: str,
               content: str,
               classification: ActivityClassification,
               value: ValueScore,
               prefs: CapturePreferences) -> CaptureDecision:
        score = value.total_score
        if score >= 90:
            priority = Priority.CRITICAL
        elif score >= prefs.high_threshold:
            priority = Priority.HIGH
        elif outcome == CaptureOutcome.PENDING:
            priority = Priority.MEDIUM
        else:
            priority = Priority.LOW

        return CaptureDecision(
            outcome=outcome,
            confidence=classification.confidence / 100,
            reason=reason,
            reasoning=(
                f"Total score: {score}/100; Activity: {classification.type.value} "
                f"({classification.confidence}%); {reason}"
            ),
            priority=priority,
            classification=classification,
            value=value,
            suggested_tags=suggest_tags(content, classification),
        )

    def _park(self,
              content: str,
              classification: ActivityClassification,
              value: ValueScore,
              prefs: CapturePreferences,
              context: Dict[str, Any]) -> PendingConfirmation:
        entry = PendingConfirmation(
            id=f"confirm_{new_id()}",
            content=content,
            classification=classification,
            value=value,
            confidence=classification.confidence / 100,
            deadline=self._clock() + prefs.confirmation_timeout_s,
            context=dict(context),
        )

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            entry.timer = loop.call_later(prefs.confirmation_timeout_s, self._on_timer, entry.id)

        self._pending[entry.id] = entry
        self._emit("capture.pending", entry.to_dict())
        return entry

    def _on_timer(self, confirmation_id: str) -> None:
        entry = self._pending.get(confirmation_id)
        if entry is not None:
            self._expire(entry)

    def _expire(self, entry: PendingConfirmation) -> None:
        if self._finish(entry, ConfirmationState.TIMED_OUT):
            logger.debug(f"Confirmation {entry.id} timed out")
            self._emit("capture.timed_out", {'id': entry.id})

    def _finish(self, entry: PendingConfirmation, state: ConfirmationState) -> bool:
        """Terminal transition; returns False when the entry was already resolved."""
        if entry.resolved:
            return False
        entry.state = state
        self._pending.pop(entry.id, None)
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        self._stats[f"confirmation_{state.value}"] += 1
        return True

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit_nowait(Event(type=event_type, data=data, source="capture"))
