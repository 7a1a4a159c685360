"""Changed-line range extraction from unified diffs."""

import asyncio
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Dict

import aiofiles
from loguru import logger

from .models import ChangeType, LineRange


HUNK_HEADER = re.compile(r'^@@\s+-\d+(?:,\d+)?\s+\+(\d+)(?:,(\d+))?\s+@@')


@dataclass
class DiffStatus:
    """Working tree status as reported by the diff provider."""
    staged: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    def is_new(self, path: str) -> bool:
        return path in self.untracked or path in self.added


class DiffProvider(Protocol):
    """Opaque source of repository status and unified diffs."""

    async def is_repo(self) -> bool: ...

    async def status(self) -> DiffStatus: ...

    async def diff(self, path: str) -> str: ...


@dataclass
class DiffRanges:
    """Merged changed-line ranges for one file."""
    file_path: str
    ranges: List[LineRange] = field(default_factory=list)
    change_type: ChangeType = ChangeType.NONE
    total_changed_lines: int = 0

    def to_dict(self) -> Dict:
        return {
            'file_path': self.file_path,
            'ranges': [list(r) for r in self.ranges],
            'change_type': self.change_type.value,
            'total_changed_lines': self.total_changed_lines,
        }


def parse_unified_diff(diff_text: str) -> List[LineRange]:
    """
    Parse unified diff hunks into merged new-file line ranges.

    Each hunk header resets the running new-file line counter. Added lines
    open or extend a block, removed lines are skipped without advancing,
    context lines close the open block and advance.
    """
    ranges: List[LineRange] = []
    counter = 0
    in_hunk = False
    block_start: Optional[int] = None

    for line in diff_text.splitlines():
        header = HUNK_HEADER.match(line)
        if header:
            if block_start is not None:
                ranges.append((block_start, counter - 1))
                block_start = None
            counter = int(header.group(1))
            in_hunk = True
            continue

        # Nothing counts before the first hunk
        if not in_hunk:
            continue

        if line.startswith("+") and not line.startswith("+++"):
            if block_start is None:
                block_start = counter
            counter += 1
        elif line.startswith("-") and not line.startswith("---"):
            continue
        elif line.startswith(" "):
            if block_start is not None:
                ranges.append((block_start, counter - 1))
                block_start = None
            counter += 1

    if block_start is not None:
        ranges.append((block_start, counter - 1))

    return merge_adjacent_ranges(ranges)


def merge_adjacent_ranges(ranges: Sequence[Sequence[int]]) -> List[LineRange]:
    """Sort by start and merge ranges that overlap or sit at most one line apart."""
    if not ranges:
        return []

    ordered = sorted((int(r[0]), int(r[1])) for r in ranges)
    merged = [ordered[0]]
    for start, end in ordered[1:]:
        last_start, last_end = merged[-1]
        if start <= last_end + 1:
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def total_lines(ranges: Sequence[LineRange]) -> int:
    return sum(end - start + 1 for start, end in ranges)


class GitDiffProvider:
    """Diff provider backed by the `git` command line."""

    def __init__(self, repo_root: str, timeout: float = 10.0):
        self.repo_root = repo_root
        self.timeout = timeout

    async def _git(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=self.repo_root,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            raise RuntimeError(f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}")
        return stdout.decode("utf-8", errors="replace")

    async def is_repo(self) -> bool:
        try:
            out = await self._git("rev-parse", "--is-inside-work-tree")
        except (OSError, RuntimeError, asyncio.TimeoutError):
            return False
        return out.strip() == "true"

    async def status(self) -> DiffStatus:
        out = await self._git("status", "--porcelain")
        status = DiffStatus()
        for line in out.splitlines():
            if len(line) < 4:
                continue
            index, worktree, path = line[0], line[1], line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if index == "?" and worktree == "?":
                status.untracked.append(path)
                continue
            if index == "A":
                status.added.append(path)
            if index == "D" or worktree == "D":
                status.deleted.append(path)
            if index not in (" ", "?"):
                status.staged.append(path)
            if worktree == "M":
                status.modified.append(path)
        return status

    async def diff(self, path: str) -> str:
        return await self._git("diff", "HEAD", "--unified=0", "--", path)


class DiffRangeExtractor:
    """Turns provider diffs into changed-line ranges, never raising."""

    def __init__(self, provider: DiffProvider, root: str = "."):
        """
        Initialize extractor.

        Args:
            provider: Source of repository status and diffs
            root: Directory that relative file paths are resolved against
        """
        self.provider = provider
        self.root = root

    async def extract(self, file_path: str) -> DiffRanges:
        """Changed-line ranges for one file relative to the last commit."""
        try:
            if not await self.provider.is_repo():
                return DiffRanges(file_path=file_path)

            absolute = Path(file_path)
            if not absolute.is_absolute():
                absolute = Path(self.root) / file_path
            relative = self._relative(absolute)

            if not absolute.exists():
                return DiffRanges(file_path=file_path, change_type=ChangeType.DELETED)

            status = await self.provider.status()
            if status.is_new(relative):
                line_count = await self._count_lines(absolute)
                ranges = [(1, line_count)] if line_count > 0 else []
                return DiffRanges(
                    file_path=file_path,
                    ranges=ranges,
                    change_type=ChangeType.ADDED,
                    total_changed_lines=line_count,
                )

            diff_text = await self.provider.diff(relative)
            if not diff_text or not diff_text.strip():
                return DiffRanges(file_path=file_path, change_type=ChangeType.MODIFIED)

            ranges = parse_unified_diff(diff_text)
            return DiffRanges(
                file_path=file_path,
                ranges=ranges,
                change_type=ChangeType.MODIFIED,
                total_changed_lines=total_lines(ranges),
            )

        except Exception as e:
            logger.warning(f"Diff extraction failed for {file_path}: {e}")
            return DiffRanges(file_path=file_path)

    async def extract_many(self, file_paths: Sequence[str]) -> Dict[str, DiffRanges]:
        """Extract ranges for several files concurrently."""
        results = await asyncio.gather(*(self.extract(p) for p in file_paths))
        return {r.file_path: r for r in results}

    def _relative(self, absolute: Path) -> str:
        try:
            rel = os.path.relpath(str(absolute), str(self.root))
        except ValueError:
            rel = str(absolute)
        return rel.replace("\\", "/")

    async def _count_lines(self, path: Path) -> int:
        async with aiofiles.open(path, mode="r", encoding="utf-8", errors="replace") as f:
            content = await f.read()
        return len(content.splitlines())
