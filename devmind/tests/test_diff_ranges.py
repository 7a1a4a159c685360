"""Tests for unified diff range extraction."""

from unittest.mock import AsyncMock

import pytest

from devmind.daemon.diff_ranges import (
    DiffRangeExtractor,
    DiffStatus,
    merge_adjacent_ranges,
    parse_unified_diff,
    total_lines,
)
from devmind.daemon.models import ChangeType


SAMPLE_DIFF = """diff --git a/src/auth.ts b/src/auth.ts
index 3b18e51..a9c2f4d 100644
--- a/src/auth.ts
+++ b/src/auth.ts
@@ -10,3 +10,4 @@ export function login() {
 const user = find();
-if (!user) return;
+if (!user) {
+  throw new AuthError();
 }
@@ -40,0 +42,2 @@
+logout();
+audit();
"""


def make_provider(is_repo=True, status=None, diff=""):
    provider = AsyncMock()
    provider.is_repo.return_value = is_repo
    provider.status.return_value = status or DiffStatus()
    provider.diff.return_value = diff
    return provider


class TestMergeAdjacentRanges:
    """Sorting and merging of line ranges."""

    def test_merges_consecutive_single_lines(self):
        assert merge_adjacent_ranges([[10, 10], [11, 11], [12, 12]]) == [(10, 12)]

    def test_merges_overlapping(self):
        assert merge_adjacent_ranges([[5, 8], [7, 12]]) == [(5, 12)]

    def test_keeps_gaps_larger_than_one(self):
        assert merge_adjacent_ranges([[1, 2], [4, 5]]) == [(1, 2), (4, 5)]

    def test_sorts_by_start(self):
        assert merge_adjacent_ranges([[20, 21], [1, 3], [4, 4]]) == [(1, 4), (20, 21)]

    def test_contained_range(self):
        assert merge_adjacent_ranges([[1, 10], [3, 4]]) == [(1, 10)]

    def test_empty(self):
        assert merge_adjacent_ranges([]) == []


class TestParseUnifiedDiff:
    """Hunk parsing into new-file line ranges."""

    def test_sample_diff(self):
        ranges = parse_unified_diff(SAMPLE_DIFF)
        assert ranges == [(11, 12), (42, 43)]
        assert total_lines(ranges) == 4

    def test_removed_lines_do_not_advance(self):
        diff = "@@ -1,3 +1,2 @@\n-old\n-older\n+new\n same\n"
        assert parse_unified_diff(diff) == [(1, 1)]

    def test_context_closes_block(self):
        diff = "@@ -1,5 +1,6 @@\n+a\n keep\n+b\n+c\n"
        assert parse_unified_diff(diff) == [(1, 1), (3, 4)]

    def test_file_headers_ignored(self):
        diff = "--- a/x.py\n+++ b/x.py\n@@ -0,0 +1 @@\n+only\n"
        assert parse_unified_diff(diff) == [(1, 1)]

    def test_adjacent_hunks_merge(self):
        diff = "@@ -1 +1 @@\n+a\n@@ -2 +2 @@\n+b\n"
        assert parse_unified_diff(diff) == [(1, 2)]

    def test_no_hunks(self):
        assert parse_unified_diff("") == []
        assert parse_unified_diff("+not in a hunk\n") == []


@pytest.mark.asyncio
async def test_untracked_file_is_one_range(tmp_path):
    """New files span every line."""
    path = tmp_path / "new.py"
    path.write_text("a = 1\nb = 2\nc = 3\n")
    provider = make_provider(status=DiffStatus(untracked=["new.py"]))

    result = await DiffRangeExtractor(provider, str(tmp_path)).extract("new.py")

    assert result.ranges == [(1, 3)]
    assert result.change_type == ChangeType.ADDED
    assert result.total_changed_lines == 3
    provider.diff.assert_not_called()


@pytest.mark.asyncio
async def test_tracked_file_uses_diff(tmp_path):
    path = tmp_path / "src"
    path.mkdir()
    (path / "auth.ts").write_text("x\n" * 50)
    provider = make_provider(diff=SAMPLE_DIFF)

    result = await DiffRangeExtractor(provider, str(tmp_path)).extract("src/auth.ts")

    assert result.change_type == ChangeType.MODIFIED
    assert result.ranges == [(11, 12), (42, 43)]
    assert result.total_changed_lines == 4
    provider.diff.assert_awaited_once_with("src/auth.ts")


@pytest.mark.asyncio
async def test_empty_diff_is_zero_result(tmp_path):
    (tmp_path / "same.py").write_text("pass\n")
    provider = make_provider(diff="")

    result = await DiffRangeExtractor(provider, str(tmp_path)).extract("same.py")

    assert result.ranges == []
    assert result.total_changed_lines == 0


@pytest.mark.asyncio
async def test_missing_file_is_deleted(tmp_path):
    provider = make_provider()
    result = await DiffRangeExtractor(provider, str(tmp_path)).extract("gone.py")
    assert result.change_type == ChangeType.DELETED
    assert result.ranges == []


@pytest.mark.asyncio
async def test_not_a_repository(tmp_path):
    provider = make_provider(is_repo=False)
    result = await DiffRangeExtractor(provider, str(tmp_path)).extract("a.py")
    assert result.change_type == ChangeType.NONE
    assert result.total_changed_lines == 0


@pytest.mark.asyncio
async def test_provider_failure_is_absorbed(tmp_path):
    """A failing provider yields an empty result instead of raising."""
    (tmp_path / "a.py").write_text("pass\n")
    provider = make_provider()
    provider.status.side_effect = RuntimeError("git exploded")

    result = await DiffRangeExtractor(provider, str(tmp_path)).extract("a.py")

    assert result.ranges == []
    assert result.change_type == ChangeType.NONE


@pytest.mark.asyncio
async def test_extract_many(tmp_path):
    (tmp_path / "a.py").write_text("1\n2\n")
    (tmp_path / "b.py").write_text("1\n")
    provider = make_provider(status=DiffStatus(untracked=["a.py", "b.py"]))

    results = await DiffRangeExtractor(provider, str(tmp_path)).extract_many(["a.py", "b.py"])

    assert results["a.py"].ranges == [(1, 2)]
    assert results["b.py"].ranges == [(1, 1)]
