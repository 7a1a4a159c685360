"""Tests for the service facade."""

from unittest.mock import AsyncMock

import pytest

from devmind.daemon.bus import Event
from devmind.daemon.capture import CapturePreferences
from devmind.daemon.config import Config
from devmind.daemon.diff_ranges import DiffStatus
from devmind.daemon.error_handling import InputError, RetryPolicy
from devmind.daemon.models import ActivityType, CaptureOutcome, ChangeType
from devmind.daemon.service import DevMindService, language_for
from devmind.daemon.store import InMemoryStore
from devmind.tests.conftest import make_record


BUG_FIX = (
    "Fixed critical bug in auth.ts: a race condition and a memory leak in the token "
    "refresh let expired sessions reach production for every user. The algorithm now "
    "avoids the performance bottleneck, with optimization of lookup complexity, and a "
    "comprehensive, generic, reusable interface for token stores."
)

AUTO_BUG_FIX = CapturePreferences(auto_confirm_types={ActivityType.BUG_FIX})


class BrokenStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def create_record(self, record):
        self.attempts += 1
        raise OSError("disk full")


@pytest.fixture
def repo(tmp_path):
    (tmp_path / ".git").mkdir()
    return tmp_path


async def open_session(service, repo):
    return await service.sessions.get_or_create_session(str(repo))


def test_language_for():
    assert language_for("src/auth.ts") == "typescript"
    assert language_for("setup.PY") == "python"
    assert language_for("Makefile") is None
    assert language_for(None) is None


def test_decide_capture_without_session(embedder):
    """Pure decisions need no store state."""
    service = DevMindService(embedder=embedder)
    decision = service.decide_capture("Fixed login bug in auth.ts")

    assert decision.classification.type == ActivityType.BUG_FIX
    assert decision.outcome == CaptureOutcome.DISCARD
    assert service.stats()['decisions']['decision_discard'] == 1
    assert not service.event_bus.running


class TestCaptureValidation:
    """Inputs rejected before anything is stored."""

    @pytest.mark.asyncio
    async def test_empty_content(self, repo):
        service = DevMindService()
        session = await open_session(service, repo)
        with pytest.raises(InputError):
            await service.capture("   ", session.id)

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        service = DevMindService()
        with pytest.raises(InputError):
            await service.capture(BUG_FIX, "no-such-session")
        assert await service.store.list_records() == []

    @pytest.mark.asyncio
    async def test_unknown_confirmation(self):
        service = DevMindService()
        report = await service.resolve_confirmation("confirm_missing", "yes")
        assert not report.recorded
        assert report.reason == "Unknown or expired confirmation"
        assert service.learner.stats()['samples'] == {}


class TestPersistence:
    @pytest.mark.asyncio
    async def test_store_failure_is_reported(self, repo):
        store = BrokenStore()
        service = DevMindService(store=store)
        service.retry = RetryPolicy(max_retries=1, base_delay=0.001)
        await service.start()

        failures = []

        async def on_failed(event: Event):
            failures.append(event)

        service.event_bus.subscribe("capture.failed", on_failed)
        session = await open_session(service, repo)

        report = await service.capture(BUG_FIX, session.id, preferences=AUTO_BUG_FIX)
        await service.event_bus.drain()

        assert not report.recorded
        assert report.reason.startswith("not recorded")
        assert store.attempts == 2
        assert len(failures) == 1
        assert service.errors.get_error_summary()['error_counts'] == {'store:OSError': 1}
        await service.close()

    @pytest.mark.asyncio
    async def test_new_file_gets_full_range(self, repo):
        source = repo / "src"
        source.mkdir()
        (source / "tokens.py").write_text("a = 1\nb = 2\nc = 3\n")

        provider = AsyncMock()
        provider.is_repo.return_value = True
        provider.status.return_value = DiffStatus(untracked=["src/tokens.py"])

        service = DevMindService(diff_provider=provider, project_root=str(repo))
        session = await open_session(service, repo)
        report = await service.capture(BUG_FIX, session.id, file_path="src/tokens.py",
                                       preferences=AUTO_BUG_FIX)

        record = report.record
        assert record.language == "python"
        assert record.line_ranges == [(1, 3)]
        assert record.metadata.change_type == ChangeType.ADDED
        assert record.metadata.total_changed_lines == 3
        provider.diff.assert_not_called()

    @pytest.mark.asyncio
    async def test_caller_tags_come_first(self, repo):
        service = DevMindService()
        session = await open_session(service, repo)
        report = await service.capture(BUG_FIX, session.id, tags=["oncall", "security"],
                                       preferences=AUTO_BUG_FIX)

        assert report.record.tags[:3] == ["oncall", "security", "bug_fix"]
        assert report.record.tags.count("security") == 1

    @pytest.mark.asyncio
    async def test_key_elements_kept(self, repo):
        service = DevMindService()
        session = await open_session(service, repo)
        report = await service.capture(BUG_FIX, session.id, preferences=AUTO_BUG_FIX)

        elements = report.record.metadata.enrichment['key_elements']
        assert "auth.ts" in elements['files']


class TestSearchFacade:
    @pytest.mark.asyncio
    async def test_without_embedder_results_are_unscored(self, repo):
        service = DevMindService()
        session = await open_session(service, repo)
        record = make_record("Added retry to the payment client", session_id=session.id)
        await service.store.create_record(record)

        results = await service.hybrid_search("payment retry")

        assert [r.record.id for r in results] == [record.id]
        assert not results[0].scored
        assert record.metadata.usage.search_count == 0

    @pytest.mark.asyncio
    async def test_explicit_candidates(self, embedder):
        service = DevMindService(embedder=embedder)
        service.config.search.enhance_queries = False
        records = [make_record("payment retry backoff"), make_record("css grid layout")]

        results = await service.hybrid_search("payment retry backoff", candidates=records)

        assert results[0].record is records[0]
        assert results[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_usage_update_failure_is_not_fatal(self, embedder):
        """Hits on records the store never saw still come back."""
        service = DevMindService(embedder=embedder)
        record = make_record("payment retry backoff")

        results = await service.hybrid_search("payment retry backoff", candidates=[record])

        assert len(results) == 1
        assert record.metadata.usage.search_count == 1
        assert service.errors.get_error_summary()['total_errors'] == 1

    @pytest.mark.asyncio
    async def test_clear_caches(self, embedder):
        service = DevMindService(embedder=embedder)
        records = [make_record("payment retry backoff")]
        await service.hybrid_search("payment", candidates=records)
        service.clear_caches()

        assert len(service.retrieval.result_cache) == 0
        assert len(service.retrieval.embedding_cache) == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_bus_starts_on_first_use(self, repo):
        """Events flow without an explicit start()."""
        service = DevMindService()
        seen = []

        async def on_recorded(event: Event):
            seen.append(event)

        service.event_bus.subscribe("capture.recorded", on_recorded)
        session = await open_session(service, repo)
        await service.capture(BUG_FIX, session.id, preferences=AUTO_BUG_FIX)
        await service.event_bus.drain()

        assert service.event_bus.running
        assert len(seen) == 1
        assert service.event_bus.pending == 0
        await service.close()

    def test_strict_caches_from_config(self, tmp_path, embedder):
        path = tmp_path / "devmind.yaml"
        path.write_text("cache:\n  strict: true\n")

        service = DevMindService(config=Config.load(path), embedder=embedder)

        assert service.retrieval.embedding_cache.strict
        assert service.retrieval.result_cache.strict


class TestCaptureMany:
    @pytest.mark.asyncio
    async def test_batch_mode_decides_as_group(self, repo):
        config = Config()
        config.capture.batch_mode = True
        service = DevMindService(config=config)
        session = await open_session(service, repo)

        reports = await service.capture_many([BUG_FIX, BUG_FIX], session.id, preferences=AUTO_BUG_FIX)

        assert [r.recorded for r in reports] == [True, True]
        assert all(r.decision.reason.startswith("batch of 2 bug_fix") for r in reports)
        assert len(await service.store.list_records()) == 2
        await service.close()

    @pytest.mark.asyncio
    async def test_per_item_without_batch_mode(self, repo):
        service = DevMindService()
        session = await open_session(service, repo)

        reports = await service.capture_many([BUG_FIX, "Fixed login bug in auth.ts"], session.id,
                                             preferences=AUTO_BUG_FIX)

        assert reports[0].recorded
        assert reports[0].decision.reason == "bug_fix is auto-confirmed"
        assert reports[1].decision.outcome == CaptureOutcome.DISCARD
        await service.close()

    @pytest.mark.asyncio
    async def test_rejects_empty_item(self, repo):
        service = DevMindService()
        session = await open_session(service, repo)
        with pytest.raises(InputError):
            await service.capture_many([BUG_FIX, " "], session.id)
        assert await service.store.list_records() == []
