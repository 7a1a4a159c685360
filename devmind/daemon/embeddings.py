"""Embedding providers consumed by the retrieval engine."""

import asyncio
import re
from typing import Awaitable, List, Optional, Protocol, Sequence, Union

import numpy as np
from loguru import logger

try:
    from sentence_transformers import SentenceTransformer
    HAS_SENTENCE_TRANSFORMERS = True
except ImportError:
    HAS_SENTENCE_TRANSFORMERS = False

from .config import EmbeddingConfig
from .error_handling import CollaboratorError


Vector = Sequence[float]


class EmbeddingProvider(Protocol):
    """Any callable mapping text to a fixed-length vector, sync or async."""

    def __call__(self, text: str) -> Union[Vector, Awaitable[Vector]]: ...


def preprocess(text: str, max_chars: int = 512) -> str:
    """Collapse whitespace and keep the first `max_chars` characters."""
    return re.sub(r'\s+', ' ', text or "").strip()[:max_chars]


def normalize_vector(vector: Vector) -> List[float]:
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()


class SentenceTransformerEmbedder:
    """Local sentence-transformers model as an async embedding provider."""

    def __init__(self, config: Optional[EmbeddingConfig] = None, device: str = "cpu"):
        if not HAS_SENTENCE_TRANSFORMERS:
            raise CollaboratorError(
                "sentence-transformers is not installed; install the 'embeddings' extra"
            )
        self.config = config or EmbeddingConfig()
        self.device = device
        self._model = None
        self._load_lock = asyncio.Lock()

    @property
    def dim(self) -> int:
        return self.config.dim

    async def _get_model(self):
        async with self._load_lock:
            if self._model is None:
                logger.info(f"Loading embedding model: {self.config.model}")
                self._model = await asyncio.to_thread(
                    SentenceTransformer, self.config.model, device=self.device
                )
        return self._model

    async def __call__(self, text: str) -> List[float]:
        model = await self._get_model()
        cleaned = preprocess(text, self.config.max_chars)
        embedding = await asyncio.to_thread(model.encode, cleaned, convert_to_numpy=True)
        if len(embedding) != self.dim:
            raise CollaboratorError(
                f"Model {self.config.model} produced {len(embedding)} dims, expected {self.dim}"
            )
        return normalize_vector(embedding)
