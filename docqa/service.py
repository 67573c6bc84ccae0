"""End-to-end document QA service: ingestion pipeline and grounded Q&A."""

from __future__ import annotations

import hashlib
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from docqa.cancellation import CancellationToken
from docqa.config import (
    ASK_TIMEOUT_S,
    INGEST_TIMEOUT_S,
    INGEST_WORKERS,
    WINDOW_OVERLAP,
    WINDOW_SIZE,
)
from docqa.embeddings import get_embedder
from docqa.errors import AskTimeout, DocQAError, IndexBuildError, IngestCancelled
from docqa.index import EmbeddingIndexer
from docqa.lifecycle import CorpusManager, SourceInfo
from docqa.llm_client import LLMServiceError
from docqa.models import Answer, CorpusStatus, Document
from docqa.parser import parse
from docqa.retrieval import Retriever
from docqa.security import validate_document
from docqa.segmenter import segment
from docqa.synthesizer import AnswerSynthesizer

log = logging.getLogger(__name__)


class DocumentQAService:
    def __init__(
        self,
        *,
        manager: CorpusManager | None = None,
        indexer: EmbeddingIndexer | None = None,
        synthesizer: AnswerSynthesizer | None = None,
        window_size: int = WINDOW_SIZE,
        overlap: int = WINDOW_OVERLAP,
        workers: int = INGEST_WORKERS,
    ) -> None:
        if not 0 <= overlap < window_size:
            raise ValueError(
                f"Invalid segmentation config: window_size={window_size}, overlap={overlap}."
            )
        self.manager = manager if manager is not None else CorpusManager()
        self.indexer = indexer if indexer is not None else EmbeddingIndexer(get_embedder())
        self.retriever = Retriever(self.manager, self.indexer)
        if synthesizer is None:
            synthesizer = AnswerSynthesizer(relevance_threshold=self.indexer.relevance_threshold)
        self.synthesizer = synthesizer
        self._window_size = window_size
        self._overlap = overlap
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="docqa-ingest"
        )

    # Ingestion

    def ingest(
        self,
        document: Document,
        *,
        handle: str | None = None,
        timeout: float | None = None,
        wait: bool = False,
    ) -> CorpusStatus:
        """
        Register a document and start its ingestion pipeline.

        Type, signature and size problems are raised before any corpus exists.
        Passing ``handle`` re-ingests into a failed corpus. With ``wait`` the
        call blocks until the corpus settles and re-raises the failure that
        stopped it, if any.
        """
        media_type = validate_document(document)
        source = SourceInfo(
            filename=document.filename,
            media_type=media_type,
            size_bytes=document.size,
            sha256=hashlib.sha256(document.content).hexdigest(),
        )
        token = CancellationToken(timeout if timeout is not None else INGEST_TIMEOUT_S)
        if handle is None:
            record = self.manager.create(source, token)
        else:
            record = self.manager.reset_for_retry(handle, source, token)
        handle, generation = record.handle, record.generation

        future = self._executor.submit(self._run_ingest, handle, generation, document, token)
        if wait:
            self._await_ingest(handle, generation, future, token)
        return self.manager.status(handle)

    def _await_ingest(
        self,
        handle: str,
        generation: int,
        future: Future,
        token: CancellationToken,
    ) -> None:
        try:
            error = future.result(timeout=token.remaining())
        except FutureTimeout:
            token.cancel("timed out")
            self.manager.fail(handle, generation, "Ingestion timed out.", IngestCancelled.code)
            error = IngestCancelled("Ingestion timed out.")
        if error is not None:
            error.handle = handle
            raise error

    def _run_ingest(
        self,
        handle: str,
        generation: int,
        document: Document,
        token: CancellationToken,
    ) -> DocQAError | None:
        started = time.perf_counter()
        try:
            token.raise_if_cancelled()
            parsed = parse(document)
            token.raise_if_cancelled()
            passages = segment(
                parsed.text,
                parsed.structure,
                window_size=self._window_size,
                overlap=self._overlap,
                corpus_handle=handle,
            )
            if not self.manager.begin_indexing(handle, generation, parsed.page_count, passages):
                token.raise_if_cancelled()
                return IngestCancelled(f"Corpus {handle} was evicted or superseded.")
            index = self.indexer.build(handle, passages, token)
            if not self.manager.publish(handle, generation, index):
                token.raise_if_cancelled()
                return IngestCancelled(f"Corpus {handle} was evicted or superseded.")
        except DocQAError as exc:
            log.warning("Ingestion of corpus %s failed: %s", handle, exc)
            self.manager.fail(handle, generation, str(exc), exc.code)
            return exc
        except Exception as exc:
            log.exception("Unexpected ingestion failure for corpus %s", handle)
            error = IndexBuildError(f"Unexpected ingestion failure: {exc}")
            self.manager.fail(handle, generation, str(error), error.code)
            return error

        log.info(
            "Corpus %s ready: %d page(s), %d passage(s) in %.2fs",
            handle,
            parsed.page_count,
            len(passages),
            time.perf_counter() - started,
        )
        return None

    def wait_until_settled(self, handle: str, timeout: float | None = None) -> CorpusStatus:
        return self.manager.wait_settled(handle, timeout)

    # Queries

    def status(self, handle: str) -> CorpusStatus:
        return self.manager.status(handle)

    def ask(
        self,
        handle: str,
        question: str,
        k: int | None = None,
        timeout: float | None = None,
    ) -> Answer:
        """
        Answer a question from one corpus.

        Raises CorpusNotFound/CorpusNotReady/CorpusFailed, NoEvidenceFound when
        nothing relevant supports an answer, and AskTimeout past the deadline.
        """
        budget = timeout if timeout is not None else ASK_TIMEOUT_S
        started = time.monotonic()
        retrieved = self.retriever.retrieve(handle, question, k)

        remaining = budget - (time.monotonic() - started)
        if remaining <= 0:
            raise AskTimeout(f"Question on corpus {handle} exceeded {budget:.1f}s.")
        try:
            answer = self.synthesizer.synthesize(question, retrieved, timeout=remaining)
        except LLMServiceError as exc:
            if time.monotonic() - started >= budget:
                raise AskTimeout(f"Question on corpus {handle} exceeded {budget:.1f}s.") from exc
            raise

        log.info(
            "Answered question on corpus %s with %d citation(s) in %.2fs",
            handle,
            len(answer.citations),
            time.monotonic() - started,
        )
        return answer

    # Teardown

    def cancel(self, handle: str) -> None:
        self.manager.cancel(handle)

    def evict(self, handle: str) -> bool:
        return self.manager.evict(handle)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.manager.evict_all()
