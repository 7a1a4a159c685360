"""Tests for core data models."""

from datetime import datetime

import pytest

from devmind.daemon.error_handling import InputError
from devmind.daemon.models import (
    METADATA_VERSION,
    ActivityType,
    CaptureOutcome,
    CaptureProvenance,
    ChangeType,
    QualityMetrics,
    Record,
    RecordMetadata,
    days_between,
)


class TestRecord:
    def test_id_generated(self):
        record = Record(session_id="s", activity_type="bug_fix", content="x")
        assert record.id
        assert record.activity_type == ActivityType.BUG_FIX

    def test_unknown_activity_type(self):
        with pytest.raises(InputError):
            Record(session_id="s", activity_type="gardening", content="x")

    def test_requires_session(self):
        with pytest.raises(InputError):
            Record(session_id="", activity_type="test", content="x")

    def test_attach_embedding_checks_width(self):
        record = Record(session_id="s", activity_type="test", content="x")
        widths = {"v1.0": 3}
        with pytest.raises(InputError):
            record.attach_embedding([1.0, 2.0], "v1.0", widths)
        with pytest.raises(InputError):
            record.attach_embedding([1.0, 2.0, 3.0], "v9", widths)

        record.attach_embedding([1, 2, 3], "v1.0", widths)
        assert record.embedding == [1.0, 2.0, 3.0]
        assert record.embedding_version == "v1.0"


class TestRecordMetadata:
    """Versioned metadata envelope."""

    def test_round_trip(self):
        metadata = RecordMetadata(
            quality=QualityMetrics(0.5, 1.0, 0.6, 0.6, 0.68, 0.65),
            capture=CaptureProvenance(activity_confidence=75, value_score=63,
                                      outcome=CaptureOutcome.AUTO_RECORD),
            change_type=ChangeType.MODIFIED,
            total_changed_lines=4,
            enrichment={'key_elements': {'files': ['auth.ts']}},
        )
        restored = RecordMetadata.from_dict(metadata.to_dict())

        assert restored.version == METADATA_VERSION
        assert restored.quality.overall == 0.65
        assert restored.capture.value_score == 63
        assert restored.change_type == ChangeType.MODIFIED
        assert restored.enrichment == metadata.enrichment

    def test_empty_is_default(self):
        metadata = RecordMetadata.from_dict(None)
        assert metadata.quality is None
        assert metadata.usage.search_count == 0

    def test_newer_version_rejected(self):
        with pytest.raises(InputError):
            RecordMetadata.from_dict({'version': METADATA_VERSION + 1})

    def test_incomplete_quality_rejected(self):
        with pytest.raises(InputError):
            RecordMetadata.from_dict({'quality': {'relevance': 0.5}})


def test_days_between_never_negative():
    assert days_between(datetime(2024, 1, 10), datetime(2024, 1, 1)) == 0
    assert days_between(datetime(2024, 1, 1, 23), datetime(2024, 1, 3, 1)) == 1
