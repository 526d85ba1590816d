"""Embedding capability backed by sentence-transformers.

Uses the all-MiniLM-L6-v2 model which produces 384-dimensional vectors,
matching the ``vector(384)`` column of the ``embeddings`` table.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

_MODEL_NAME = "all-MiniLM-L6-v2"
_EMBEDDING_DIM = 384


class Embedder(Protocol):
    """Anything that turns a batch of texts into fixed-size vectors."""

    @property
    def dimension(self) -> int: ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


class SentenceTransformerEmbedder:
    """Local embedding model. Loading it is slow, so build one per process."""

    def __init__(self, model_name: str = _MODEL_NAME) -> None:
        logger.info("Loading embedding model %s", model_name)
        self._model = SentenceTransformer(model_name)
        self._model_name = model_name
        self._dim = _EMBEDDING_DIM

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int:
        """Return the embedding dimension (384)."""
        return self._dim

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts in one model call, preserving order."""
        if not texts:
            return []
        cleaned = [self._normalise(t) for t in texts]
        vectors = self._model.encode(cleaned, show_progress_bar=False)
        return [v.tolist() for v in vectors]

    @staticmethod
    def _normalise(text: str | None) -> str:
        # The model rejects empty input
        if not text or not text.strip():
            return " "
        return text
