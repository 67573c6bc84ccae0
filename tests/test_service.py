import threading
import time

import pytest

from docqa.config import HASH_RELEVANCE_THRESHOLD
from docqa.embeddings import HashEmbedder
from docqa.errors import (
    AskTimeout,
    CorpusFailed,
    CorpusNotFound,
    CorpusNotReady,
    CorruptDocument,
    FormatMismatch,
    IndexBuildError,
    IngestCancelled,
    NoEvidenceFound,
)
from docqa.index import EmbeddingIndexer
from docqa.llm_client import ExtractiveClient, LLMClient, LLMServiceError
from docqa.models import CorpusState, Document
from docqa.service import DocumentQAService
from docqa.synthesizer import AnswerSynthesizer

FACTS = (
    "The Eiffel Tower was completed in 1889 for the World Fair in Paris. "
    "Gustave Eiffel's company designed and built the wrought iron lattice tower.\n\f"
    "Photosynthesis converts sunlight, water and carbon dioxide into glucose and oxygen. "
    "Chlorophyll in plant leaves absorbs mostly blue and red light.\n\f"
    "The Amazon river carries more water than any other river on Earth. "
    "Its basin spans nine countries in South America.\n"
)


class BlockingEmbedder(HashEmbedder):
    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def embed(self, texts):
        self.started.set()
        assert self.release.wait(timeout=10)
        return super().embed(texts)


class MarkedBlockingEmbedder(HashEmbedder):
    """Blocks only on batches that contain the marker text."""

    def __init__(self, marker: str) -> None:
        super().__init__()
        self.marker = marker
        self.started = threading.Event()
        self.release = threading.Event()

    def embed(self, texts):
        if any(self.marker in text for text in texts):
            self.started.set()
            assert self.release.wait(timeout=10)
        return super().embed(texts)


class FlakyEmbedder(HashEmbedder):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def embed(self, texts):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("GPU fell over")
        return super().embed(texts)


class SlowFailingLLM(LLMClient):
    def generate(self, *args, **kwargs):
        time.sleep(0.05)
        raise LLMServiceError("upstream timeout")


def _doc(text: str = FACTS, media_type: str = "text/plain") -> Document:
    return Document(content=text.encode("utf-8"), media_type=media_type, filename="facts.txt")


def _make_service(embedder=None, llm=None, window_size=200, overlap=50) -> DocumentQAService:
    return DocumentQAService(
        indexer=EmbeddingIndexer(embedder or HashEmbedder()),
        synthesizer=AnswerSynthesizer(llm=llm or ExtractiveClient(), relevance_threshold=0.2),
        window_size=window_size,
        overlap=overlap,
        workers=2,
    )


@pytest.fixture
def service():
    svc = _make_service()
    yield svc
    svc.shutdown()


def test_ingest_and_ask_end_to_end(service) -> None:
    status = service.ingest(_doc(), wait=True)
    assert status.status is CorpusState.READY
    assert status.page_count == 3
    assert status.passage_count >= 2

    answer = service.ask(status.corpus_handle, "When was the Eiffel Tower completed?")
    assert "1889" in answer.answer
    assert answer.citations
    assert answer.citations[0].page == 1


def test_three_page_document_yields_four_passages() -> None:
    svc = _make_service(window_size=800, overlap=150)
    try:
        page = ("lorem ipsum dolor sit amet " * 40)[:799] + "\f"
        text = page * 2 + page[:-1] + "x"
        assert len(text) == 2400
        status = svc.ingest(_doc(text), wait=True)
        assert status.page_count == 3
        assert status.passage_count == 4
        snapshot = svc.manager.snapshot(status.corpus_handle)
        assert snapshot.passages[-1].end == 2400
        for prev, nxt in zip(snapshot.passages, snapshot.passages[1:]):
            assert prev.end - nxt.start >= 150
    finally:
        svc.shutdown()


def test_ask_unknown_handle_is_not_found(service) -> None:
    try:
        service.ask("never-issued", "anything?")
        raise AssertionError("Expected CorpusNotFound.")
    except CorpusNotFound:
        pass


def test_ask_while_indexing_is_not_ready() -> None:
    embedder = BlockingEmbedder()
    svc = _make_service(embedder=embedder)
    try:
        status = svc.ingest(_doc())
        assert embedder.started.wait(timeout=5)
        assert svc.status(status.corpus_handle).status is CorpusState.INDEXING
        try:
            svc.ask(status.corpus_handle, "When was the Eiffel Tower completed?")
            raise AssertionError("Expected CorpusNotReady.")
        except CorpusNotReady:
            pass

        embedder.release.set()
        settled = svc.wait_until_settled(status.corpus_handle, timeout=5)
        assert settled.status is CorpusState.READY
        assert svc.ask(status.corpus_handle, "When was the Eiffel Tower completed?").citations
    finally:
        embedder.release.set()
        svc.shutdown()


def test_readers_never_see_a_partial_index() -> None:
    embedder = BlockingEmbedder()
    svc = _make_service(embedder=embedder)
    unexpected: list[Exception] = []
    answered = threading.Event()
    try:
        handle = svc.ingest(_doc()).corpus_handle

        def reader() -> None:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline and not answered.is_set():
                try:
                    svc.ask(handle, "Which light does chlorophyll in plant leaves absorb?")
                    answered.set()
                except NoEvidenceFound:
                    answered.set()
                except CorpusNotReady:
                    time.sleep(0.005)
                except Exception as exc:
                    unexpected.append(exc)
                    return

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        embedder.release.set()
        for t in threads:
            t.join()
        assert not unexpected
        assert answered.is_set()
    finally:
        embedder.release.set()
        svc.shutdown()


def test_unrelated_question_is_no_evidence(service) -> None:
    handle = service.ingest(_doc(), wait=True).corpus_handle
    try:
        service.ask(handle, "Which football club won the championship trophy?")
        raise AssertionError("Expected NoEvidenceFound.")
    except NoEvidenceFound:
        pass


def test_evict_then_ask_and_double_evict(service) -> None:
    handle = service.ingest(_doc(), wait=True).corpus_handle
    assert service.evict(handle) is True
    try:
        service.ask(handle, "When was the Eiffel Tower completed?")
        raise AssertionError("Expected CorpusNotFound.")
    except CorpusNotFound:
        pass
    assert service.evict(handle) is False


def test_validation_errors_are_raised_before_registration(service) -> None:
    try:
        service.ingest(_doc(media_type="application/pdf"), wait=True)
        raise AssertionError("Expected FormatMismatch.")
    except FormatMismatch:
        pass
    assert len(service.manager) == 0


def test_corrupt_document_fails_the_corpus(service) -> None:
    bad = Document(content=b"\xff\xfe\xfa broken", media_type="text/plain", filename="bad.txt")
    try:
        service.ingest(bad, wait=True)
        raise AssertionError("Expected CorruptDocument.")
    except CorruptDocument as exc:
        handle = exc.handle
    status = service.status(handle)
    assert status.status is CorpusState.FAILED
    assert status.error_code == "corrupt_document"


def test_index_error_is_recorded_and_retry_reuses_handle() -> None:
    svc = _make_service(embedder=FlakyEmbedder())
    try:
        try:
            svc.ingest(_doc(), wait=True)
            raise AssertionError("Expected IndexBuildError.")
        except IndexBuildError as exc:
            handle = exc.handle
        assert svc.status(handle).status is CorpusState.FAILED
        try:
            svc.ask(handle, "When was the Eiffel Tower completed?")
            raise AssertionError("Expected CorpusFailed.")
        except CorpusFailed as exc:
            assert "GPU fell over" in str(exc)

        status = svc.ingest(_doc(), handle=handle, wait=True)
        assert status.corpus_handle == handle
        assert status.status is CorpusState.READY
    finally:
        svc.shutdown()


def test_ingest_timeout_discards_partial_index() -> None:
    embedder = BlockingEmbedder()
    svc = _make_service(embedder=embedder)
    try:
        try:
            svc.ingest(_doc(), wait=True, timeout=0.2)
            raise AssertionError("Expected IngestCancelled.")
        except IngestCancelled as exc:
            handle = exc.handle
        embedder.release.set()
        svc._executor.shutdown(wait=True)
        status = svc.status(handle)
        assert status.status is CorpusState.FAILED
        assert status.error_code == "ingest_cancelled"
    finally:
        embedder.release.set()
        svc.shutdown()


def test_ask_timeout() -> None:
    svc = _make_service(llm=SlowFailingLLM())
    try:
        handle = svc.ingest(_doc(), wait=True).corpus_handle
        try:
            svc.ask(handle, "When was the Eiffel Tower completed?", timeout=0.01)
            raise AssertionError("Expected AskTimeout.")
        except AskTimeout:
            pass
    finally:
        svc.shutdown()


def test_cancel_during_indexing_fails_the_corpus() -> None:
    embedder = BlockingEmbedder()
    svc = _make_service(embedder=embedder)
    try:
        handle = svc.ingest(_doc()).corpus_handle
        assert embedder.started.wait(timeout=5)
        svc.cancel(handle)
        embedder.release.set()
        status = svc.wait_until_settled(handle, timeout=5)
        assert status.status is CorpusState.FAILED
        assert status.error_code == "ingest_cancelled"
        try:
            svc.ask(handle, "When was the Eiffel Tower completed?")
            raise AssertionError("Expected CorpusFailed.")
        except CorpusFailed:
            pass
    finally:
        embedder.release.set()
        svc.shutdown()


REPORT_LINES = [
    "Freight volumes rose in the first quarter.",
    "Two new forklifts arrived in January.",
    "Staff turnover fell to its lowest level since 2019.",
    "The loading bays were repainted over the winter.",
    "Fuel costs climbed sharply during February.",
    "A new shift pattern started on weekday nights.",
    "Customer complaints dropped by a third.",
    "The returns desk moved next to the main gate.",
    "Pallet racking on aisle nine was replaced.",
    "Energy use per square metre declined slightly.",
    "Temporary labour covered the holiday peak.",
    "Safety training was refreshed for all drivers.",
    "Two minor injuries were logged in the period.",
    "Carrier invoices are now matched automatically.",
    "The northern yard flooded briefly in March.",
    "Drainage repairs cost roughly four thousand pounds.",
    "Scanner batteries are replaced every six months.",
    "Cold storage capacity grew by twelve pallets.",
    "Late deliveries fell below two percent.",
    "The fleet added one electric van.",
    "Route planning software was upgraded in April.",
    "Packaging waste is now baled and sold.",
    "Overtime hours fell compared with last year.",
    "Security cameras now cover every exit.",
    "Supplier lead times lengthened for spare parts.",
    "The canteen reopened after refurbishment.",
    "Seasonal demand peaked in the second week of May.",
    "Label printers were consolidated onto one model.",
    "Dock door sensors reduced idle engine time.",
    "New hires finish induction within three days.",
    "Mezzanine storage remains underused.",
    "The site passed its fire inspection.",
    "Cycle counting now runs every Tuesday.",
    "Picking errors halved after the layout change.",
    "Rainwater harvesting supplies the truck wash.",
    "Night shift productivity matched the day shift.",
    "Three managers joined the leadership course.",
    "Battery charging moved to off-peak hours.",
    "Quarterly targets were met in every category.",
    "The budget for next year was approved in June.",
]
AUDIT_LINE = "The warehouse audit was completed on 14 March by an external firm."
INVENTORY_LINE = "Inventory accuracy reached ninety eight percent by year end."


def _report() -> tuple[str, int]:
    """Operations report where the audit sentence straddles the first window edge."""
    lines = iter(REPORT_LINES)
    text = ""
    while len(text) < 740:
        text += next(lines) + " "
    audit_start = len(text)
    text += AUDIT_LINE + " "
    for line in lines:
        if INVENTORY_LINE not in text and len(text) >= 1500:
            text += INVENTORY_LINE + " "
        text += line + " "
    if INVENTORY_LINE not in text:
        text += INVENTORY_LINE + " "
    return text, audit_start


def test_default_settings_answer_from_full_size_passages(monkeypatch) -> None:
    monkeypatch.setenv("OFFLINE_MODE", "1")
    text, audit_start = _report()
    assert 650 <= audit_start < 800 < audit_start + len(AUDIT_LINE)

    svc = DocumentQAService()
    try:
        assert svc.synthesizer.relevance_threshold == HASH_RELEVANCE_THRESHOLD
        status = svc.ingest(_doc(text), wait=True)
        assert status.status is CorpusState.READY
        assert status.passage_count >= 3

        inventory = svc.ask(status.corpus_handle, "What inventory accuracy was reached?")
        assert inventory.answer == INVENTORY_LINE
        assert inventory.citations

        audit = svc.ask(status.corpus_handle, "When was the warehouse audit completed?")
        assert audit.answer == AUDIT_LINE
        assert [c.excerpt for c in audit.citations] == [AUDIT_LINE]
    finally:
        svc.shutdown()


def test_slow_ingestion_does_not_block_other_corpora() -> None:
    embedder = MarkedBlockingEmbedder("SLOWDOC")
    svc = _make_service(embedder=embedder)
    try:
        slow = svc.ingest(_doc("SLOWDOC " + FACTS))
        assert embedder.started.wait(timeout=5)

        fast = svc.ingest(_doc(), wait=True, timeout=5)
        assert fast.status is CorpusState.READY
        answer = svc.ask(fast.corpus_handle, "When was the Eiffel Tower completed?")
        assert "1889" in answer.answer
        assert svc.status(slow.corpus_handle).status is CorpusState.INDEXING

        embedder.release.set()
        settled = svc.wait_until_settled(slow.corpus_handle, timeout=5)
        assert settled.status is CorpusState.READY
    finally:
        embedder.release.set()
        svc.shutdown()
