"""Shared fixtures for DevMind tests."""

import hashlib
import re
from datetime import datetime, timedelta
from typing import Dict, List

import numpy as np
import pytest

from devmind.daemon.config import Config
from devmind.daemon.models import ActivityType, Record


EMBED_DIM = 256

_TOKEN = re.compile(r"[a-z0-9_]+")


class HashingEmbedder:
    """Bag-of-words embedder: each token hashes to one dimension."""

    def __init__(self, dim: int = EMBED_DIM):
        self.dim = dim
        self.calls: List[str] = []

    def __call__(self, text: str) -> List[float]:
        self.calls.append(text)
        vector = np.zeros(self.dim)
        for token in _TOKEN.findall(text.lower()):
            index = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dim
            vector[index] += 1.0
        return vector.tolist()


class VocabularyEmbedder:
    """Counts known words only; unknown words contribute nothing."""

    def __init__(self, vocabulary: List[str]):
        self.index = {word: i for i, word in enumerate(vocabulary)}

    async def __call__(self, text: str) -> List[float]:
        vector = [0.0] * len(self.index)
        for token in _TOKEN.findall(text.lower()):
            if token in self.index:
                vector[self.index[token]] += 1.0
        return vector


class FixedEmbedder:
    """Returns preset vectors by exact text, a default vector otherwise."""

    def __init__(self, vectors: Dict[str, List[float]], default: List[float]):
        self.vectors = vectors
        self.default = default

    def __call__(self, text: str) -> List[float]:
        return self.vectors.get(text, self.default)


class FailingEmbedder:
    def __init__(self):
        self.calls = 0

    async def __call__(self, text: str) -> List[float]:
        self.calls += 1
        raise RuntimeError("embedding backend unavailable")


@pytest.fixture
def config():
    """Default configuration with query expansion off for exact vectors."""
    cfg = Config()
    cfg.search.enhance_queries = False
    return cfg


@pytest.fixture
def embedder():
    return HashingEmbedder()


def make_record(content: str,
                activity_type: ActivityType = ActivityType.CODE_CHANGE,
                session_id: str = "session-1",
                age_days: int = 0,
                **kwargs) -> Record:
    return Record(
        session_id=session_id,
        activity_type=activity_type,
        content=content,
        created_at=datetime.now() - timedelta(days=age_days),
        **kwargs,
    )
