"""Reference grounding and validation helpers."""

from __future__ import annotations

from docqa.embeddings import content_tokens
from docqa.llm_client import split_sentences
from docqa.models import Passage, Reference
from docqa.security import quote_supported_by_passage


def passage_lookup(passages: list[Passage]) -> dict[str, Passage]:
    return {passage.passage_id: passage for passage in passages}


def filter_references_with_real_quotes(
    references: list[Reference],
    passages: list[Passage],
) -> list[Reference]:
    """Keep references that point at one of ``passages`` and quote it verbatim."""
    lookup = passage_lookup(passages)
    return [
        ref
        for ref in references
        if (passage := lookup.get(ref.passage_id))
        and quote_supported_by_passage(ref.quote, passage.text)
    ]


def sentence_supported(sentence: str, evidence_tokens: set[str], min_overlap: float) -> bool:
    tokens = set(content_tokens(sentence))
    if not tokens:
        return True
    return len(tokens & evidence_tokens) / len(tokens) >= min_overlap


def supported_sentences(
    answer: str,
    cited: list[Passage],
    min_overlap: float,
) -> tuple[list[str], int]:
    """
    Split an answer into sentences and keep those whose content words are
    covered by the cited passages. Returns kept sentences and the drop count.
    """
    evidence_tokens: set[str] = set()
    for passage in cited:
        evidence_tokens.update(content_tokens(passage.text))
    kept: list[str] = []
    dropped = 0
    for sentence in split_sentences(answer):
        if sentence_supported(sentence, evidence_tokens, min_overlap):
            kept.append(sentence)
        else:
            dropped += 1
    return kept, dropped
