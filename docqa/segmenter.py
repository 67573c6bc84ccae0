"""Sliding-window passage segmentation."""

from __future__ import annotations

from docqa.config import WINDOW_OVERLAP, WINDOW_SIZE
from docqa.models import DocumentStructure, Passage


def passage_id(corpus_handle: str, index: int) -> str:
    return f"{corpus_handle}-P{index:04d}"


def segment(
    text: str,
    structure: DocumentStructure,
    window_size: int = WINDOW_SIZE,
    overlap: int = WINDOW_OVERLAP,
    corpus_handle: str = "",
) -> list[Passage]:
    """
    Split text into overlapping character windows.

    Consecutive passages share exactly ``overlap`` characters (the final one may
    share more when it is clipped to the end of the text), the union of all
    spans is the whole text, and the output depends only on the arguments.
    """
    if window_size <= 0:
        raise ValueError(f"window_size must be positive, got {window_size}.")
    if not 0 <= overlap < window_size:
        raise ValueError(
            f"overlap must satisfy 0 <= overlap < window_size ({window_size}), got {overlap}."
        )

    step = window_size - overlap
    passages: list[Passage] = []
    for start in range(0, len(text), step):
        end = min(len(text), start + window_size)
        index = len(passages)
        passages.append(
            Passage(
                passage_id=passage_id(corpus_handle, index),
                corpus_handle=corpus_handle,
                index=index,
                start=start,
                end=end,
                page=structure.page_at(start),
                page_end=structure.page_at(end - 1),
                section=structure.section_at(start),
                text=text[start:end],
            )
        )
        if end == len(text):
            break
    return passages
