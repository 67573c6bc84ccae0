"""Shared data models for the document QA service."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Document(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: bytes = Field(..., repr=False)
    media_type: str = ""
    filename: str = "document"

    @property
    def size(self) -> int:
        return len(self.content)


class PageSpan(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int = Field(..., description="1-based page number.")
    start: int
    end: int


class Heading(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    level: int
    page: int
    offset: int = Field(..., description="Character offset of the heading in the extracted text.")


class DocumentStructure(BaseModel):
    model_config = ConfigDict(frozen=True)

    pages: tuple[PageSpan, ...] = ()
    headings: tuple[Heading, ...] = ()

    def page_at(self, offset: int) -> int:
        for span in self.pages:
            if span.start <= offset < span.end:
                return span.page
        return self.pages[-1].page if self.pages else 1

    def section_at(self, offset: int) -> str | None:
        title = None
        for heading in self.headings:
            if heading.offset > offset:
                break
            title = heading.title
        return title


class ParsedDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    structure: DocumentStructure
    media_type: str
    injection_lines_filtered: int = 0

    @property
    def page_count(self) -> int:
        return len(self.structure.pages)


class Passage(BaseModel):
    model_config = ConfigDict(frozen=True)

    passage_id: str
    corpus_handle: str
    index: int
    start: int
    end: int
    page: int
    page_end: int
    section: str | None = None
    text: str


class Citation(BaseModel):
    passage_id: str
    page: int
    excerpt: str = Field(..., description="Verbatim excerpt from the cited passage.")
    score: float


class Answer(BaseModel):
    question: str
    answer: str
    citations: list[Citation]
    uncertainty: str = ""


class CorpusState(str, Enum):
    PENDING = "pending"
    INDEXING = "indexing"
    READY = "ready"
    FAILED = "failed"
    EVICTED = "evicted"


class CorpusStatus(BaseModel):
    corpus_handle: str
    status: CorpusState
    reason: str | None = None
    error_code: str | None = None
    filename: str
    media_type: str
    size_bytes: int
    page_count: int = 0
    passage_count: int = 0
    created_at: datetime
    updated_at: datetime


# LLM payloads


class Reference(BaseModel):
    passage_id: str = Field(..., description="Passage id backing the answer.")
    quote: str = Field(..., description="Verbatim excerpt from the passage.")


class QAPayload(BaseModel):
    answer: str
    references: list[Reference] = Field(default_factory=list)
    uncertainty: str = ""
