"""Question-time retrieval against a published corpus index."""

from __future__ import annotations

import logging

from docqa.config import TOP_K, TOP_K_MAX, TOP_K_MIN
from docqa.errors import IndexBuildError
from docqa.index import EmbeddingIndexer, RetrievedPassage
from docqa.lifecycle import CorpusManager

log = logging.getLogger(__name__)


def clamp_k(k: int | None) -> int:
    if k is None:
        k = TOP_K
    return max(TOP_K_MIN, min(TOP_K_MAX, k))


class Retriever:
    def __init__(self, manager: CorpusManager, indexer: EmbeddingIndexer) -> None:
        self._manager = manager
        self._indexer = indexer

    def retrieve(
        self, corpus_handle: str, question: str, k: int | None = None
    ) -> list[RetrievedPassage]:
        """
        Return the top-k passages for a question, best first.

        Raises CorpusNotFound, CorpusNotReady or CorpusFailed according to the
        corpus state. Out-of-range k values are clamped.
        """
        if not question.strip():
            raise ValueError("Question must not be blank.")
        snapshot = self._manager.snapshot(corpus_handle)
        if snapshot.index.embedder_name != self._indexer.embedder_name:
            raise IndexBuildError(
                f"Corpus {corpus_handle} was indexed with {snapshot.index.embedder_name} "
                f"but queries use {self._indexer.embedder_name}; re-ingest the document."
            )
        query = self._indexer.embed(question)
        results = snapshot.index.search(query, clamp_k(k))
        log.debug(
            "Retrieved %d passage(s) for corpus %s (best=%.4f)",
            len(results),
            corpus_handle,
            results[0].score if results else 0.0,
        )
        return results
