from docqa.models import DocumentStructure, Heading, PageSpan
from docqa.segmenter import segment


def _three_pages(total: int) -> tuple[str, DocumentStructure]:
    text = "".join(chr(ord("a") + (i % 26)) for i in range(total))
    third = total // 3
    pages = (
        PageSpan(page=1, start=0, end=third),
        PageSpan(page=2, start=third, end=2 * third),
        PageSpan(page=3, start=2 * third, end=total),
    )
    return text, DocumentStructure(pages=pages)


def test_segment_three_page_document_scenario() -> None:
    text, structure = _three_pages(2400)
    passages = segment(text, structure, window_size=800, overlap=150, corpus_handle="c1")
    assert len(passages) == 4
    assert [(p.start, p.end) for p in passages] == [(0, 800), (650, 1450), (1300, 2100), (1950, 2400)]
    for prev, nxt in zip(passages, passages[1:]):
        assert prev.end - nxt.start >= 150
    assert passages[-1].end == 2400
    assert [p.page for p in passages] == [1, 1, 2, 3]
    assert passages[1].page_end == 2


def test_segment_covers_text_without_gaps() -> None:
    text = "The quick brown fox jumps over the lazy dog. " * 97
    structure = DocumentStructure(pages=(PageSpan(page=1, start=0, end=len(text)),))
    for window, overlap in [(100, 0), (128, 30), (800, 150), (5000, 10)]:
        passages = segment(text, structure, window_size=window, overlap=overlap)
        assert passages[0].start == 0
        assert passages[-1].end == len(text)
        for prev, nxt in zip(passages, passages[1:]):
            assert nxt.start > prev.start
            assert nxt.start <= prev.end
        for p in passages:
            assert p.text == text[p.start:p.end]
            assert p.end - p.start <= window


def test_segment_is_deterministic() -> None:
    text, structure = _three_pages(3100)
    a = segment(text, structure, window_size=500, overlap=120, corpus_handle="c1")
    b = segment(text, structure, window_size=500, overlap=120, corpus_handle="c1")
    assert [p.model_dump() for p in a] == [p.model_dump() for p in b]


def test_segment_short_and_empty_text() -> None:
    structure = DocumentStructure(pages=(PageSpan(page=1, start=0, end=5),))
    passages = segment("hello", structure, window_size=800, overlap=150, corpus_handle="c9")
    assert len(passages) == 1
    assert passages[0].passage_id == "c9-P0000"
    assert passages[0].text == "hello"
    assert segment("", DocumentStructure(), window_size=800, overlap=150) == []


def test_segment_assigns_sections_from_headings() -> None:
    text = "x" * 300
    structure = DocumentStructure(
        pages=(PageSpan(page=1, start=0, end=300),),
        headings=(
            Heading(title="Intro", level=1, page=1, offset=0),
            Heading(title="Method", level=1, page=1, offset=150),
        ),
    )
    passages = segment(text, structure, window_size=100, overlap=0)
    assert [p.section for p in passages] == ["Intro", "Intro", "Method"]


def test_segment_rejects_invalid_config() -> None:
    for window, overlap in [(0, 0), (100, 100), (100, 150), (100, -1)]:
        try:
            segment("text", DocumentStructure(), window_size=window, overlap=overlap)
            raise AssertionError(f"Expected ValueError for {window}/{overlap}.")
        except ValueError:
            pass
