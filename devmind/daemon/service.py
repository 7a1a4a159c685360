"""Service facade wiring the capture pipeline and hybrid retrieval together.

Flow for a capture:
1. Classify the activity and evaluate its value
2. Decide: record, discard, or park for confirmation
3. On record, attach diff ranges, quality metrics and provenance
4. Write through the store with retries and invalidate cached rankings
"""

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from .bus import Event, EventBus
from .capture import (
    EXTENSION_TAGS,
    CaptureCandidate,
    CaptureDecision,
    CaptureDecisionEngine,
    CapturePreferences,
    ConfirmationResult,
)
from .classifier import ActivityClassification, ActivityClassifier, HistoryItem
from .config import Config
from .diff_ranges import DiffProvider, DiffRangeExtractor, DiffRanges
from .embeddings import EmbeddingProvider
from .error_handling import (
    ErrorAggregator,
    ErrorEvent,
    ErrorSeverity,
    InputError,
    RetryPolicy,
)
from .feedback import FeedbackLearner
from .identity import IdentityResolver
from .models import (
    ActivityType,
    CaptureOutcome,
    CaptureProvenance,
    ConfirmationState,
    QualityMetrics,
    Record,
)
from .quality import QualityScorer
from .search import HybridRetrievalEngine, ScoredRecord, SearchParams
from .sessions import SessionTracker
from .store import InMemoryStore, RecordStore
from .value import ValueEvaluator, ValueScore


@dataclass
class CaptureReport:
    """What happened to one capture attempt."""
    recorded: bool
    reason: str
    decision: Optional[CaptureDecision] = None
    record: Optional[Record] = None
    confirmation_id: Optional[str] = None
    state: Optional[ConfirmationState] = None

    def to_dict(self) -> Dict:
        return {
            'recorded': self.recorded,
            'reason': self.reason,
            'decision': self.decision.to_dict() if self.decision else None,
            'record_id': self.record.id if self.record else None,
            'confirmation_id': self.confirmation_id,
            'state': self.state.value if self.state else None,
        }


def language_for(file_path: Optional[str]) -> Optional[str]:
    if not file_path:
        return None
    ext = os.path.splitext(file_path)[1].lstrip(".").lower()
    return EXTENSION_TAGS.get(ext)


class DevMindService:
    """Upward API of the core: pure scoring calls plus the stateful pipeline."""

    def __init__(self,
                 config: Optional[Config] = None,
                 embedder: Optional[EmbeddingProvider] = None,
                 store: Optional[RecordStore] = None,
                 diff_provider: Optional[DiffProvider] = None,
                 event_bus: Optional[EventBus] = None,
                 identity: Optional[IdentityResolver] = None,
                 project_root: str = "."):
        """
        Initialize service.

        Args:
            config: Core configuration, defaults when omitted
            embedder: text -> vector function; without it search is unranked
            store: Persistent store, in-memory when omitted
            diff_provider: Repository status/diff source for changed ranges
            event_bus: Bus for capture and search events
            identity: Project identity resolver
            project_root: Root that relative file paths resolve against
        """
        self.config = config or Config()
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.store = store if store is not None else InMemoryStore()
        self.identity = identity or IdentityResolver(self.config.identity)
        self.sessions = SessionTracker(self.store, self.identity)

        self.classifier = ActivityClassifier()
        self.evaluator = ValueEvaluator()
        self.quality = QualityScorer(self.config.quality)
        self.decisions = CaptureDecisionEngine(
            CapturePreferences.from_config(self.config.capture),
            event_bus=self.event_bus,
        )
        self.learner = FeedbackLearner(self.config.learning)

        self.diff_extractor = (
            DiffRangeExtractor(diff_provider, project_root) if diff_provider is not None else None
        )
        self.retrieval = None
        if embedder is not None:
            self.retrieval = HybridRetrievalEngine(
                embedder,
                config=self.config.search,
                embedding_config=self.config.embedding,
                event_bus=self.event_bus,
                strict_caches=self.config.cache.strict,
            )

        self.errors = ErrorAggregator()
        self.retry = RetryPolicy(max_retries=2)

    async def start(self) -> None:
        if not self.event_bus.running:
            await self.event_bus.start()

    async def close(self) -> None:
        self.decisions.shutdown()
        await self.event_bus.stop()
        logger.info("DevMind service closed")

    def classify(self, text: str, recent_history: Sequence[HistoryItem] = ()) -> ActivityClassification:
        return self.classifier.classify(text, recent_history)

    def evaluate_value(self, text: str, activity_type: ActivityType) -> ValueScore:
        return self.evaluator.evaluate(text, activity_type)

    def decide_capture(self,
                       content: str,
                       classification: Optional[ActivityClassification] = None,
                       value: Optional[ValueScore] = None,
                       preferences: Optional[CapturePreferences] = None,
                       recent_history: Sequence[HistoryItem] = (),
                       context: Optional[Dict[str, Any]] = None) -> CaptureDecision:
        """Classify and evaluate when needed, then decide."""
        self.event_bus.ensure_running()
        classification = classification or self.classify(content, recent_history)
        value = value or self.evaluate_value(content, classification.type)
        return self.decisions.decide(content, classification, value, preferences, context)

    def score_quality(self, record: Record, now: Optional[datetime] = None) -> QualityMetrics:
        return self.quality.score(record, now)

    async def extract_diff_ranges(self, file_path: str) -> DiffRanges:
        if self.diff_extractor is None:
            return DiffRanges(file_path=file_path)
        return await self.diff_extractor.extract(file_path)

    async def capture(self,
                      content: str,
                      session_id: str,
                      file_path: Optional[str] = None,
                      language: Optional[str] = None,
                      tags: Sequence[str] = (),
                      recent_history: Sequence[HistoryItem] = (),
                      preferences: Optional[CapturePreferences] = None) -> CaptureReport:
        """
        Run the full capture pipeline for one piece of activity.

        Raises:
            InputError: Empty content or unknown session; nothing is stored
        """
        self.event_bus.ensure_running()
        if not content or not content.strip():
            raise InputError("Capture content is empty")
        if await self.store.get_session(session_id) is None:
            raise InputError(f"Unknown session: {session_id}")

        context = {
            'session_id': session_id,
            'file_path': file_path,
            'language': language,
            'tags': list(tags),
        }
        decision = self.decide_capture(
            content,
            preferences=preferences,
            recent_history=recent_history,
            context=context,
        )
        candidate = CaptureCandidate(content, decision.classification, decision.value, context)
        return await self._apply_decision(candidate, decision)

    async def capture_many(self,
                           contents: Sequence[str],
                           session_id: str,
                           file_path: Optional[str] = None,
                           tags: Sequence[str] = (),
                           preferences: Optional[CapturePreferences] = None) -> List[CaptureReport]:
        """
        Capture several pieces of activity from one session.

        With `capture.batch_mode` on, same-type items are decided as a group
        on their average score; otherwise each item is decided alone.
        Reports come back in input order.
        """
        self.event_bus.ensure_running()
        if not contents or any(not c or not c.strip() for c in contents):
            raise InputError("Capture batch is empty or holds empty content")
        if await self.store.get_session(session_id) is None:
            raise InputError(f"Unknown session: {session_id}")

        candidates = []
        for content in contents:
            classification = self.classify(content)
            candidates.append(CaptureCandidate(
                content,
                classification,
                self.evaluate_value(content, classification.type),
                {'session_id': session_id, 'file_path': file_path, 'language': None, 'tags': list(tags)},
            ))

        if self.config.capture.batch_mode:
            decisions = self.decisions.decide_batch(candidates, preferences)
        else:
            decisions = [
                self.decisions.decide(c.content, c.classification, c.value, preferences, c.context)
                for c in candidates
            ]

        reports = []
        for candidate, decision in zip(candidates, decisions):
            reports.append(await self._apply_decision(candidate, decision))
        return reports

    async def _apply_decision(self, candidate: CaptureCandidate, decision: CaptureDecision) -> CaptureReport:
        if decision.outcome == CaptureOutcome.PENDING:
            return CaptureReport(
                recorded=False,
                reason="awaiting confirmation",
                decision=decision,
                confirmation_id=decision.confirmation_id,
                state=ConfirmationState.PENDING,
            )
        if decision.outcome == CaptureOutcome.DISCARD:
            self._emit("capture.discarded", {'reason': decision.reason})
            return CaptureReport(recorded=False, reason=decision.reason, decision=decision)

        return await self._persist(candidate, decision)

    async def resolve_confirmation(self, confirmation_id: str, choice: Any) -> CaptureReport:
        """Apply a user's answer; a yes persists the parked candidate."""
        self.event_bus.ensure_running()
        result: ConfirmationResult = self.decisions.resolve(confirmation_id, choice)
        entry = result.entry

        if entry is not None and result.state in (ConfirmationState.RECORDED, ConfirmationState.DISCARDED):
            self.decisions.preferences = self.learner.record(
                entry.classification.type,
                accepted=result.recorded,
                value_score=entry.value.total_score,
                preferences=self.decisions.preferences,
            )

        if not result.recorded:
            return CaptureReport(
                recorded=False,
                reason=result.message,
                confirmation_id=confirmation_id,
                state=result.state,
            )

        report = await self._persist(
            CaptureCandidate(entry.content, entry.classification, entry.value, entry.context),
            None,
            confirmation_id=confirmation_id,
        )
        report.state = ConfirmationState.RECORDED if report.recorded else ConfirmationState.DISCARDED
        return report

    async def hybrid_search(self,
                            query: str,
                            candidates: Optional[Sequence[Record]] = None,
                            params: Optional[SearchParams] = None) -> List[ScoredRecord]:
        """Rank candidates, pulling them from the store when not given."""
        self.event_bus.ensure_running()
        params = params or SearchParams.from_config(self.config.search)
        if candidates is None:
            candidates = await self.store.list_records(
                project_id=params.project_id,
                session_id=params.session_id,
            )

        if self.retrieval is None:
            return [ScoredRecord(record=r) for r in candidates]

        results = await self.retrieval.search(query, candidates, params)
        for item in results:
            if item.scored:
                await self._register_search_hit(item.record)
        return results

    def stats(self) -> Dict[str, Any]:
        return {
            'decisions': self.decisions.stats(),
            'retrieval': self.retrieval.stats() if self.retrieval else None,
            'learning': self.learner.stats(),
            'events': self.event_bus.get_stats(),
            'errors': self.errors.get_error_summary(),
        }

    def clear_caches(self) -> None:
        if self.retrieval is not None:
            self.retrieval.clear_caches()

    async def _persist(self,
                       candidate: CaptureCandidate,
                       decision: Optional[CaptureDecision],
                       confirmation_id: Optional[str] = None) -> CaptureReport:
        context = candidate.context
        file_path = context.get('file_path')
        classification = candidate.classification

        tags = list(context.get('tags') or [])
        suggested = decision.suggested_tags if decision else []
        for tag in suggested:
            if tag not in tags:
                tags.append(tag)

        record = Record(
            session_id=context['session_id'],
            activity_type=classification.type,
            content=candidate.content,
            file_path=file_path,
            language=context.get('language') or language_for(file_path),
            tags=tags,
        )
        record.metadata.capture = CaptureProvenance(
            activity_confidence=classification.confidence,
            value_score=candidate.value.total_score,
            outcome=CaptureOutcome.AUTO_RECORD if decision else CaptureOutcome.PENDING,
            confirmation_id=confirmation_id,
        )
        record.metadata.enrichment['key_elements'] = classification.key_elements.to_dict()

        if file_path:
            ranges = await self.extract_diff_ranges(file_path)
            record.line_ranges = list(ranges.ranges)
            record.metadata.change_type = ranges.change_type
            record.metadata.total_changed_lines = ranges.total_changed_lines

        self.quality.apply(record)

        try:
            await self.retry.execute(self.store.create_record, record)
        except Exception as e:
            self.errors.record_error(ErrorEvent.from_exception("store", e, ErrorSeverity.HIGH))
            logger.error(f"Capture not recorded: {e}")
            self._emit("capture.failed", {'error': str(e), 'session_id': record.session_id})
            return CaptureReport(
                recorded=False,
                reason=f"not recorded: {e}",
                decision=decision,
                confirmation_id=confirmation_id,
            )

        self.errors.record_success("store")
        if self.retrieval is not None:
            self.retrieval.invalidate_results()
        self._emit("capture.recorded", {
            'id': record.id,
            'activity_type': record.activity_type.value,
            'session_id': record.session_id,
        })
        logger.info(f"Recorded {record.activity_type.value} memory {record.id}")
        return CaptureReport(
            recorded=True,
            reason="recorded",
            decision=decision,
            record=record,
            confirmation_id=confirmation_id,
        )

    async def _register_search_hit(self, record: Record) -> None:
        self.quality.register_usage(record, "search")
        try:
            await self.store.update_record(record)
        except Exception as e:
            # Usage counters are advisory
            self.errors.record_error(ErrorEvent.from_exception("store", e, ErrorSeverity.LOW))
            logger.warning(f"Could not update usage for record {record.id}: {e}")

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        self.event_bus.emit_nowait(Event(type=event_type, data=data, source="service"))
