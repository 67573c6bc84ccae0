"""Document parsing: plain text plus page and heading structure."""

from __future__ import annotations

import logging
import re

import fitz

from docqa.errors import CorruptDocument
from docqa.models import Document, DocumentStructure, Heading, PageSpan, ParsedDocument
from docqa.security import PDF_MEDIA_TYPE, redact_injection_lines, validate_document

log = logging.getLogger(__name__)

PAGE_BREAK = "\f"
_MARKDOWN_HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", re.MULTILINE)


def _read_pdf_bytes(raw: bytes) -> tuple[str, list[PageSpan], list[tuple[int, str, int]]]:
    try:
        pdf = fitz.open(stream=raw, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        raise CorruptDocument(f"Unreadable PDF: {exc}") from exc

    with pdf:
        if pdf.needs_pass:
            raise CorruptDocument("Encrypted PDFs are not supported.")
        if pdf.page_count == 0:
            raise CorruptDocument("PDF has no pages.")

        parts: list[str] = []
        spans: list[PageSpan] = []
        offset = 0
        try:
            for number, page in enumerate(pdf, start=1):
                page_text = page.get_text("text")
                if number < pdf.page_count:
                    page_text += "\n"
                parts.append(page_text)
                spans.append(PageSpan(page=number, start=offset, end=offset + len(page_text)))
                offset += len(page_text)
            toc = pdf.get_toc(simple=True)
        except (RuntimeError, ValueError) as exc:
            raise CorruptDocument(f"Failed to extract PDF text: {exc}") from exc

    return "".join(parts), spans, [(level, title, page) for level, title, page, *_ in toc]


def _pdf_headings(toc: list[tuple[int, str, int]], spans: list[PageSpan]) -> list[Heading]:
    headings = [
        Heading(title=title.strip(), level=level, page=page, offset=spans[page - 1].start)
        for level, title, page in toc
        if 1 <= page <= len(spans) and title.strip()
    ]
    return sorted(headings, key=lambda h: h.offset)


def _decode_text(raw: bytes) -> str:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptDocument(f"Text document is not valid UTF-8: {exc.reason}") from exc
    return text.removeprefix("\ufeff")


def _text_page_spans(text: str) -> list[PageSpan]:
    # A form feed ends the page it sits on.
    spans: list[PageSpan] = []
    start = 0
    for match in re.finditer(PAGE_BREAK, text):
        spans.append(PageSpan(page=len(spans) + 1, start=start, end=match.end()))
        start = match.end()
    if start < len(text) or not spans:
        spans.append(PageSpan(page=len(spans) + 1, start=start, end=len(text)))
    return spans


def _markdown_headings(text: str, structure: DocumentStructure) -> list[Heading]:
    return [
        Heading(
            title=match.group(2).strip(),
            level=len(match.group(1)),
            page=structure.page_at(match.start()),
            offset=match.start(),
        )
        for match in _MARKDOWN_HEADING.finditer(text)
    ]


def parse(document: Document) -> ParsedDocument:
    """
    Extract text and structure from an uploaded document.

    Raises FormatMismatch, TooLarge or CorruptDocument. Never touches any index.
    """
    media_type = validate_document(document)

    if media_type == PDF_MEDIA_TYPE:
        text, spans, toc = _read_pdf_bytes(document.content)
        structure = DocumentStructure(pages=tuple(spans), headings=tuple(_pdf_headings(toc, spans)))
    else:
        text = _decode_text(document.content)
        structure = DocumentStructure(pages=tuple(_text_page_spans(text)))
        if media_type == "text/markdown":
            structure = structure.model_copy(
                update={"headings": tuple(_markdown_headings(text, structure))}
            )

    if not text.strip():
        raise CorruptDocument("Document contains no extractable text.")

    text, filtered = redact_injection_lines(text)
    if filtered:
        log.warning("Blanked %d suspicious line(s) in %s", filtered, document.filename)
    log.info(
        "Parsed %s (%s): %d page(s), %d chars",
        document.filename,
        media_type,
        len(structure.pages),
        len(text),
    )
    return ParsedDocument(
        text=text,
        structure=structure,
        media_type=media_type,
        injection_lines_filtered=filtered,
    )
