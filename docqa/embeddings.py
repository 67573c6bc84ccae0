"""Embedding providers."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Protocol, runtime_checkable

import numpy as np

from docqa.config import (
    EMBED_MODEL_NAME,
    EMBED_PROVIDER,
    HASH_EMBED_DIM,
    HASH_RELEVANCE_THRESHOLD,
    RELEVANCE_THRESHOLD,
    env_flag,
)

log = logging.getLogger(__name__)

_TOKEN = re.compile(r"[^\W_]+", re.UNICODE)

STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been before
    being below between both but by can could did do does doing down during each few for
    from further had has have having he her here hers him his how i if in into is it its
    just me more most my no nor not now of off on once only or other our out over own
    same she should so some such than that the their them then there these they this
    those through to too under until up very was we were what when where which while who
    whom why will with would you your
    """.split()
)


def content_tokens(text: str) -> list[str]:
    """Lowercased word tokens with stopwords removed."""
    return [tok for tok in _TOKEN.findall(text.lower()) if tok not in STOPWORDS]


@runtime_checkable
class Embedder(Protocol):
    """Anything that maps a batch of texts to a (len(texts), dimension) matrix."""

    @property
    def name(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    @property
    def relevance_threshold(self) -> float: ...

    def embed(self, texts: list[str]) -> np.ndarray: ...


class HashEmbedder:
    """Deterministic offline embedder that requires no network or model downloads."""

    def __init__(self, dim: int = HASH_EMBED_DIM) -> None:
        self._dim = max(64, dim)

    @property
    def name(self) -> str:
        return f"hash-{self._dim}"

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def relevance_threshold(self) -> float:
        return HASH_RELEVANCE_THRESHOLD

    def embed(self, texts: list[str]) -> np.ndarray:
        matrix = np.zeros((len(texts), self._dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for token in content_tokens(text):
                digest = hashlib.sha256(token.encode("utf-8")).digest()
                idx = int.from_bytes(digest[:4], "big") % self._dim
                sign = 1.0 if digest[4] % 2 == 0 else -1.0
                matrix[row, idx] += sign
        return matrix


class SentenceTransformerEmbedder:
    """Embedding provider backed by a local sentence-transformers model."""

    def __init__(self, model_name: str = EMBED_MODEL_NAME) -> None:
        self._model_name = model_name
        self._model = None

    @property
    def model(self):
        """Lazy-load the model on first access."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            log.info("Loading sentence-transformers model %s", self._model_name)
            self._model = SentenceTransformer(self._model_name)
        return self._model

    @property
    def name(self) -> str:
        return f"st-{self._model_name}"

    @property
    def relevance_threshold(self) -> float:
        return RELEVANCE_THRESHOLD

    @property
    def dimension(self) -> int:
        return self.model.get_sentence_embedding_dimension()

    def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        return np.asarray(
            self.model.encode(texts, convert_to_numpy=True, normalize_embeddings=True),
            dtype=np.float32,
        )


def get_embedder() -> Embedder:
    provider = os.getenv("EMBED_PROVIDER", EMBED_PROVIDER).strip().lower()
    if env_flag("OFFLINE_MODE") or provider == "hash":
        return HashEmbedder()
    if provider == "sentence_transformer":
        return SentenceTransformerEmbedder(os.getenv("EMBED_MODEL_NAME", EMBED_MODEL_NAME))
    raise ValueError(f"Unknown EMBED_PROVIDER={provider!r}")
