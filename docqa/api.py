"""
HTTP API for the document QA service.

Routes: POST /documents, PUT /documents/{handle}, GET /documents/{handle}/status,
POST /documents/{handle}/questions, DELETE /documents/{handle}, GET /health
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from docqa.errors import DocQAError, NoEvidenceFound
from docqa.llm_client import LLMServiceError
from docqa.models import Citation, CorpusState, CorpusStatus, Document
from docqa.service import DocumentQAService

log = logging.getLogger(__name__)

router = APIRouter()


class IngestResponse(BaseModel):
    corpus_handle: str
    status: CorpusState
    reason: str | None = None
    page_count: int = 0
    passage_count: int = 0

    @classmethod
    def from_status(cls, status: CorpusStatus) -> IngestResponse:
        return cls(
            corpus_handle=status.corpus_handle,
            status=status.status,
            reason=status.reason,
            page_count=status.page_count,
            passage_count=status.passage_count,
        )


class QuestionRequest(BaseModel):
    question: str = Field(..., max_length=4000)
    k: int | None = Field(None, description="Passages to retrieve; clamped to the allowed range.")

    @field_validator("question")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("question must not be blank")
        return value


class AnswerResponse(BaseModel):
    answer: str
    citations: list[Citation]
    no_evidence: bool = False
    uncertainty: str = ""


def get_service(request: Request) -> DocumentQAService:
    return request.app.state.service


async def _ingest_upload(
    service: DocumentQAService,
    response: Response,
    file: UploadFile,
    media_type: str | None,
    wait: bool,
    timeout: float | None,
    handle: str | None = None,
) -> IngestResponse:
    content = await file.read()
    document = Document(
        content=content,
        media_type=media_type or file.content_type or "",
        filename=file.filename or "document",
    )
    log.info(
        "Document upload received: %s (%s, %d bytes)",
        document.filename,
        document.media_type or "unknown",
        document.size,
    )
    status = await run_in_threadpool(
        service.ingest, document, handle=handle, timeout=timeout, wait=wait
    )
    if status.status is not CorpusState.READY:
        response.status_code = 202
    return IngestResponse.from_status(status)


@router.post("/documents", response_model=IngestResponse, status_code=201)
async def upload_document(
    response: Response,
    file: UploadFile = File(...),
    media_type: str | None = Form(None),
    wait: bool = Query(True, description="Block until the corpus is ready or failed."),
    timeout: float | None = Query(None, gt=0, description="Ingestion deadline in seconds."),
    service: DocumentQAService = Depends(get_service),
) -> IngestResponse:
    return await _ingest_upload(service, response, file, media_type, wait, timeout)


@router.put("/documents/{handle}", response_model=IngestResponse, status_code=201)
async def reingest_document(
    handle: str,
    response: Response,
    file: UploadFile = File(...),
    media_type: str | None = Form(None),
    wait: bool = Query(True),
    timeout: float | None = Query(None, gt=0),
    service: DocumentQAService = Depends(get_service),
) -> IngestResponse:
    """Retry ingestion into a corpus handle that previously failed."""
    return await _ingest_upload(service, response, file, media_type, wait, timeout, handle=handle)


@router.get("/documents/{handle}/status", response_model=CorpusStatus)
def corpus_status(
    handle: str,
    service: DocumentQAService = Depends(get_service),
) -> CorpusStatus:
    return service.status(handle)


@router.post("/documents/{handle}/questions", response_model=AnswerResponse)
def ask_question(
    handle: str,
    body: QuestionRequest,
    timeout: float | None = Query(None, gt=0),
    service: DocumentQAService = Depends(get_service),
) -> AnswerResponse:
    try:
        answer = service.ask(handle, body.question, k=body.k, timeout=timeout)
    except NoEvidenceFound as exc:
        # A grounded refusal is a successful outcome.
        return AnswerResponse(answer="", citations=[], no_evidence=True, uncertainty=str(exc))
    return AnswerResponse(
        answer=answer.answer,
        citations=answer.citations,
        uncertainty=answer.uncertainty,
    )


@router.delete("/documents/{handle}", status_code=204)
def evict_document(
    handle: str,
    service: DocumentQAService = Depends(get_service),
) -> Response:
    service.evict(handle)
    return Response(status_code=204)


@router.get("/health")
def health(service: DocumentQAService = Depends(get_service)) -> dict:
    return {"status": "healthy", "corpora": len(service.manager)}


async def _docqa_error_handler(request: Request, exc: DocQAError) -> JSONResponse:
    content = {"detail": str(exc), "code": exc.code}
    handle = getattr(exc, "handle", None)
    if handle:
        content["corpus_handle"] = handle
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=content)


async def _llm_error_handler(request: Request, exc: LLMServiceError) -> JSONResponse:
    log.error("%s %s failed upstream: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc), "code": "llm_error"})


def create_app(service: DocumentQAService | None = None) -> FastAPI:
    """Build the FastAPI application around one service instance."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.service.shutdown()

    app = FastAPI(title="Document QA", version="0.1.0", lifespan=lifespan)
    app.state.service = service if service is not None else DocumentQAService()
    app.include_router(router)
    app.add_exception_handler(DocQAError, _docqa_error_handler)
    app.add_exception_handler(LLMServiceError, _llm_error_handler)
    return app
