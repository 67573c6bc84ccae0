"""Per-corpus vector index and the shared embedding primitive."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from docqa.cancellation import CancellationToken
from docqa.config import EMBED_BATCH_SIZE
from docqa.embeddings import Embedder
from docqa.errors import IndexBuildError, IngestCancelled
from docqa.models import Passage

log = logging.getLogger(__name__)


def _normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / np.maximum(norms, 1e-12)


@dataclass(frozen=True)
class RetrievedPassage:
    passage: Passage
    score: float


@dataclass(frozen=True)
class VectorIndex:
    """Immutable exact cosine index over one corpus. Row i holds passage i."""

    corpus_handle: str
    embedder_name: str
    passages: tuple[Passage, ...]
    matrix: np.ndarray

    def __len__(self) -> int:
        return len(self.passages)

    def search(self, query: np.ndarray, k: int) -> list[RetrievedPassage]:
        if not self.passages or k <= 0:
            return []
        scores = np.clip(self.matrix @ query, 0.0, 1.0)
        # Descending score, then ascending passage index.
        order = np.lexsort((np.arange(len(scores)), -scores))[:k]
        return [
            RetrievedPassage(passage=self.passages[idx], score=float(scores[idx]))
            for idx in order
        ]


class EmbeddingIndexer:
    """Owns the one embedding function used for both passages and questions."""

    def __init__(self, embedder: Embedder, batch_size: int = EMBED_BATCH_SIZE) -> None:
        self._embedder = embedder
        self._batch_size = max(1, batch_size)

    @property
    def embedder_name(self) -> str:
        return self._embedder.name

    @property
    def relevance_threshold(self) -> float:
        return self._embedder.relevance_threshold

    def _embed_batch(self, texts: list[str]) -> np.ndarray:
        matrix = np.asarray(self._embedder.embed(texts), dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[0] != len(texts):
            raise IndexBuildError(
                f"Embedder {self.embedder_name} returned shape {matrix.shape} "
                f"for {len(texts)} texts."
            )
        if not np.all(np.isfinite(matrix)):
            raise IndexBuildError(f"Embedder {self.embedder_name} returned non-finite values.")
        return _normalize(matrix)

    def embed(self, text: str) -> np.ndarray:
        return self._embed_batch([text])[0]

    def build(
        self,
        corpus_handle: str,
        passages: list[Passage],
        token: CancellationToken | None = None,
    ) -> VectorIndex:
        """
        Embed every passage and return a fully built index.

        The index is a fresh object; nothing is published here. Cancellation is
        checked between batches and raises IngestCancelled, dropping the partial
        matrix.
        """
        if not passages:
            raise IndexBuildError(f"Corpus {corpus_handle} has no passages to index.")

        blocks: list[np.ndarray] = []
        try:
            for start in range(0, len(passages), self._batch_size):
                if token is not None:
                    token.raise_if_cancelled()
                batch = passages[start:start + self._batch_size]
                blocks.append(self._embed_batch([p.text for p in batch]))
        except (IndexBuildError, IngestCancelled):
            raise
        except Exception as exc:
            raise IndexBuildError(f"Embedding failed for corpus {corpus_handle}: {exc}") from exc

        if len({block.shape[1] for block in blocks}) != 1:
            raise IndexBuildError(f"Inconsistent embedding dimensions for corpus {corpus_handle}.")
        matrix = np.vstack(blocks)
        matrix.setflags(write=False)
        log.info(
            "Built index for corpus %s: %d passages, dim=%d, embedder=%s",
            corpus_handle,
            matrix.shape[0],
            matrix.shape[1],
            self.embedder_name,
        )
        return VectorIndex(
            corpus_handle=corpus_handle,
            embedder_name=self.embedder_name,
            passages=tuple(passages),
            matrix=matrix,
        )
