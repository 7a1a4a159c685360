"""
End-to-end tests for DevMind.
Tests complete flows from activity text to a stored record to ranked retrieval.
"""

import pytest
import pytest_asyncio

from devmind.daemon.bus import Event
from devmind.daemon.capture import CapturePreferences
from devmind.daemon.models import ActivityType, CaptureOutcome, ConfirmationState, Record
from devmind.daemon.search import SearchParams
from devmind.daemon.service import DevMindService
from devmind.tests.conftest import VocabularyEmbedder


RICH_BUG_FIX = (
    "Fixed critical bug in auth.ts: a race condition and a memory leak in the token "
    "refresh let expired sessions reach production for every user. The algorithm now "
    "avoids the performance bottleneck, with optimization of lookup complexity, and a "
    "comprehensive, generic, reusable interface for token stores."
)

VOCABULARY = ["auth", "bug", "login", "token", "error", "issue", "readme", "guide", "install", "screenshots"]


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "webapp"
    (root / ".git").mkdir(parents=True)
    (root / "package.json").write_text('{"name": "webapp"}')
    return root


@pytest_asyncio.fixture
async def service(repo):
    """A running service over an in-memory store."""
    svc = DevMindService(embedder=VocabularyEmbedder(VOCABULARY), project_root=str(repo))
    await svc.start()
    yield svc
    await svc.close()


@pytest_asyncio.fixture
async def session(service, repo):
    return await service.sessions.get_or_create_session(str(repo), tool_used="editor")


class TestCaptureToSearchFlow:
    """Test classify → decide → persist → search flow."""

    def test_short_bug_fix_classification(self):
        result = DevMindService().classify("Fixed login bug in auth.ts")
        assert result.type == ActivityType.BUG_FIX
        assert result.confidence > 50

    @pytest.mark.asyncio
    async def test_auto_record_then_rank_above_documentation(self, service, session):
        events = []

        async def on_capture(event: Event):
            events.append(event)

        service.event_bus.subscribe("capture.*", on_capture)
        prefs = CapturePreferences(auto_confirm_types={ActivityType.BUG_FIX})

        report = await service.capture(RICH_BUG_FIX, session.id, file_path="src/auth.ts", preferences=prefs)

        assert report.recorded
        assert report.decision.outcome == CaptureOutcome.AUTO_RECORD
        assert report.decision.value.total_score == 63
        assert report.decision.classification.type == ActivityType.BUG_FIX

        record = report.record
        assert record.project_id == session.project_id
        assert record.language == "typescript"
        assert "security" in record.tags
        assert record.metadata.capture.value_score == 63
        assert record.metadata.quality is not None
        assert 0 <= record.quality_score <= 1

        docs = Record(
            session_id=session.id,
            activity_type=ActivityType.DOCUMENTATION,
            content="Updated README installation guide with screenshots",
        )
        await service.store.create_record(docs)

        results = await service.hybrid_search("auth bug", params=SearchParams(similarity_threshold=0.0))

        assert [r.record.id for r in results] == [record.id, docs.id]
        assert results[0].score > results[1].score
        assert record.metadata.usage.search_count == 1

        await service.event_bus.drain()
        assert "capture.recorded" in [e.type for e in events]

    @pytest.mark.asyncio
    async def test_pending_then_confirmed(self, service, session):
        report = await service.capture(RICH_BUG_FIX, session.id)

        assert not report.recorded
        assert report.state == ConfirmationState.PENDING
        assert await service.store.list_records() == []

        confirmed = await service.resolve_confirmation(report.confirmation_id, "yes")

        assert confirmed.recorded
        assert confirmed.record.metadata.capture.confirmation_id == report.confirmation_id
        assert confirmed.record.metadata.capture.outcome == CaptureOutcome.PENDING
        assert [r.id for r in await service.store.list_records()] == [confirmed.record.id]
        assert service.learner.acceptance_rate(ActivityType.BUG_FIX) == 1.0

    @pytest.mark.asyncio
    async def test_pending_then_rejected(self, service, session):
        report = await service.capture(RICH_BUG_FIX, session.id)
        rejected = await service.resolve_confirmation(report.confirmation_id, "no")

        assert not rejected.recorded
        assert rejected.state == ConfirmationState.DISCARDED
        assert await service.store.list_records() == []
        assert service.learner.acceptance_rate(ActivityType.BUG_FIX) == 0.0

    @pytest.mark.asyncio
    async def test_low_value_discarded(self, service, session):
        report = await service.capture("Fixed login bug in auth.ts", session.id)
        assert not report.recorded
        assert report.decision.outcome == CaptureOutcome.DISCARD
        assert await service.store.list_records() == []

    @pytest.mark.asyncio
    async def test_search_sees_every_new_record(self, service, session):
        params = SearchParams(similarity_threshold=0.0)
        prefs = CapturePreferences(auto_confirm_types={ActivityType.BUG_FIX})
        await service.capture(RICH_BUG_FIX, session.id, preferences=prefs)
        assert len(await service.hybrid_search("auth bug", params=params)) == 1

        # Stored behind the service's back, still part of the next ranking
        await service.store.create_record(Record(
            session_id=session.id,
            activity_type=ActivityType.DOCUMENTATION,
            content="Updated README installation guide with screenshots",
        ))
        assert len(await service.hybrid_search("auth bug", params=params)) == 2

        await service.capture(RICH_BUG_FIX, session.id, preferences=prefs)
        assert len(await service.hybrid_search("auth bug", params=params)) == 3
