"""Error taxonomy shared by the pipeline, the lifecycle manager and the API."""

from __future__ import annotations


class DocQAError(Exception):
    """Base class for every error the service reports to its callers."""

    status_code: int = 500
    code: str = "internal_error"


# Input validation: caller-fixable, never retried internally.


class ParseError(DocQAError):
    status_code = 400
    code = "parse_error"


class FormatMismatch(ParseError):
    code = "format_mismatch"


class UnsupportedMediaType(FormatMismatch):
    code = "unsupported_media_type"


class TooLarge(ParseError):
    code = "too_large"


class CorruptDocument(ParseError):
    code = "corrupt_document"


# Ingestion


class IndexBuildError(DocQAError):
    """Raised when embedding or index construction fails for a corpus."""

    status_code = 500
    code = "index_error"


class IngestCancelled(DocQAError):
    status_code = 504
    code = "ingest_cancelled"


# Corpus state: safe for the caller to retry later.


class CorpusNotFound(DocQAError):
    status_code = 404
    code = "corpus_not_found"

    def __init__(self, handle: str) -> None:
        super().__init__(f"Corpus {handle!r} does not exist or was evicted.")
        self.handle = handle


class CorpusNotReady(DocQAError):
    status_code = 409
    code = "corpus_not_ready"

    def __init__(self, handle: str, state: str) -> None:
        super().__init__(f"Corpus {handle!r} is not ready (state={state}).")
        self.handle = handle
        self.state = state


class CorpusFailed(DocQAError):
    status_code = 409
    code = "corpus_failed"

    def __init__(self, handle: str, reason: str | None) -> None:
        super().__init__(f"Corpus {handle!r} failed to ingest: {reason or 'unknown error'}")
        self.handle = handle
        self.reason = reason


class CorpusBusy(DocQAError):
    status_code = 409
    code = "corpus_busy"


class CapacityExceeded(DocQAError):
    status_code = 503
    code = "capacity_exceeded"


# Answering


class NoEvidenceFound(DocQAError):
    """No retrieved passage supports an answer. A valid outcome, not a fault."""

    status_code = 200
    code = "no_evidence"


class AskTimeout(DocQAError):
    status_code = 504
    code = "ask_timeout"
