"""Grounded answer synthesis over retrieved passages."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from docqa.config import GENERATION_MAX_TOKENS, GROUNDING_MIN_OVERLAP, RELEVANCE_THRESHOLD
from docqa.errors import NoEvidenceFound
from docqa.grounding import filter_references_with_real_quotes, passage_lookup, supported_sentences
from docqa.index import RetrievedPassage
from docqa.llm_client import LLMClient, LLMServiceError, get_llm_client
from docqa.models import Answer, Citation, QAPayload
from docqa.prompts import NO_EVIDENCE_MARKER, SYSTEM_PROMPT, build_qa_prompt

log = logging.getLogger(__name__)


def render_context_blocks(retrieved: list[RetrievedPassage]) -> str:
    blocks: list[str] = []
    for idx, item in enumerate(retrieved, start=1):
        passage = item.passage
        block = (
            f"[{idx}] passage_id={passage.passage_id} page={passage.page} "
            f"start={passage.start} score={item.score:.4f}\n"
            f"text={' '.join(passage.text.split())}"
        )
        blocks.append(block)
    return "\n\n".join(blocks)


class AnswerSynthesizer:
    def __init__(
        self,
        llm: LLMClient | None = None,
        relevance_threshold: float = RELEVANCE_THRESHOLD,
        min_overlap: float = GROUNDING_MIN_OVERLAP,
    ) -> None:
        self._llm = llm if llm is not None else get_llm_client()
        self._threshold = relevance_threshold
        self._min_overlap = min_overlap

    @property
    def relevance_threshold(self) -> float:
        return self._threshold

    def synthesize(
        self,
        question: str,
        retrieved: list[RetrievedPassage],
        timeout: float | None = None,
    ) -> Answer:
        """
        Compose an answer whose citations are a subset of ``retrieved``.

        Raises NoEvidenceFound when no passage clears the relevance threshold,
        when the model declines, or when nothing it wrote survives grounding.
        """
        evidence = [item for item in retrieved if item.score >= self._threshold]
        if not evidence:
            best = max((item.score for item in retrieved), default=0.0)
            raise NoEvidenceFound(
                f"No passage reached the relevance threshold "
                f"({best:.3f} < {self._threshold:.3f})."
            )

        prompt = build_qa_prompt(question=question, contexts=render_context_blocks(evidence))
        raw = self._llm.generate_json(
            prompt=prompt,
            system=SYSTEM_PROMPT,
            max_tokens=GENERATION_MAX_TOKENS,
            timeout=timeout,
        )
        try:
            payload = QAPayload.model_validate(raw)
        except ValidationError as exc:
            raise LLMServiceError(f"Model returned an invalid answer payload: {exc}") from exc

        if payload.answer.strip() == NO_EVIDENCE_MARKER:
            raise NoEvidenceFound(payload.uncertainty or "The model found no supporting passage.")

        passages = [item.passage for item in evidence]
        scores = {item.passage.passage_id: item.score for item in evidence}
        references = filter_references_with_real_quotes(payload.references, passages)
        if len(references) < len(payload.references):
            log.warning(
                "Dropped %d reference(s) that do not quote a retrieved passage",
                len(payload.references) - len(references),
            )
        if not references:
            raise NoEvidenceFound("The generated answer could not be tied to any retrieved passage.")

        lookup = passage_lookup(passages)
        citations: list[Citation] = []
        for ref in references:
            if any(c.passage_id == ref.passage_id for c in citations):
                continue
            passage = lookup[ref.passage_id]
            citations.append(
                Citation(
                    passage_id=passage.passage_id,
                    page=passage.page,
                    excerpt=ref.quote,
                    score=scores[passage.passage_id],
                )
            )

        cited = [lookup[c.passage_id] for c in citations]
        sentences, dropped = supported_sentences(payload.answer, cited, self._min_overlap)
        if not sentences:
            raise NoEvidenceFound("No sentence of the generated answer is supported by its citations.")

        uncertainty = payload.uncertainty
        if dropped:
            log.warning("Dropped %d unsupported sentence(s) from the answer", dropped)
            note = f"{dropped} unsupported sentence(s) were removed."
            uncertainty = f"{uncertainty} {note}".strip()

        return Answer(
            question=question,
            answer=" ".join(sentences),
            citations=citations,
            uncertainty=uncertainty,
        )
