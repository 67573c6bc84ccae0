"""CLI entrypoint for the document QA service."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from docqa.config import SERVICE_HOST, SERVICE_PORT
from docqa.observability import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Grounded question answering over uploaded documents."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default=SERVICE_HOST)
    serve.add_argument("--port", type=int, default=SERVICE_PORT)

    ask = sub.add_parser("ask", help="Ingest one document and answer one question.")
    ask.add_argument("--doc", required=True, help="Document path (pdf/txt/md).")
    ask.add_argument("--question", required=True, help="Question to answer.")
    ask.add_argument("--k", type=int, default=None, help="Passages to retrieve.")
    ask.add_argument(
        "--offline",
        action="store_true",
        help="Run deterministic offline mode (no API keys or external model calls).",
    )
    return parser


def _run_ask(args: argparse.Namespace) -> dict:
    from docqa.errors import NoEvidenceFound
    from docqa.models import Document
    from docqa.security import resolve_media_type
    from docqa.service import DocumentQAService

    path = Path(args.doc).expanduser().resolve()
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")

    service = DocumentQAService()
    try:
        document = Document(
            content=path.read_bytes(),
            media_type=resolve_media_type("", path.name),
            filename=path.name,
        )
        status = service.ingest(document, wait=True)
        try:
            answer = service.ask(status.corpus_handle, args.question, k=args.k)
        except NoEvidenceFound as exc:
            return {"question": args.question, "no_evidence": True, "uncertainty": str(exc)}
        return answer.model_dump()
    finally:
        service.shutdown()


def main() -> None:
    args = build_parser().parse_args()
    configure_logging()

    if args.command == "serve":
        import uvicorn

        from docqa.api import create_app

        uvicorn.run(create_app(), host=args.host, port=args.port)
        return

    if args.offline:
        os.environ["OFFLINE_MODE"] = "1"
        os.environ["LLM_PROVIDER"] = "extractive"
        os.environ["EMBED_PROVIDER"] = "hash"
    print(json.dumps(_run_ask(args), indent=2, ensure_ascii=True))


if __name__ == "__main__":
    main()
