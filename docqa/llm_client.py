"""Provider-agnostic LLM client abstraction."""

from __future__ import annotations

import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass

from docqa.embeddings import content_tokens
from docqa.prompts import NO_EVIDENCE_MARKER

log = logging.getLogger(__name__)

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_BREAK.split(" ".join(text.split())) if s.strip()]


class LLMServiceError(RuntimeError):
    """Raised when an LLM call fails after retries."""


@dataclass(frozen=True)
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class ContextRow:
    passage_id: str
    text: str
    start: int = 0


class LLMClient:
    """Abstract base class for LLM providers."""

    provider: str = "base"
    _last_call_ts: float = 0.0

    def _throttle(self) -> None:
        from docqa.config import LLM_MIN_CALL_INTERVAL_S

        if LLM_MIN_CALL_INTERVAL_S <= 0:
            return
        elapsed = time.time() - self._last_call_ts
        if elapsed < LLM_MIN_CALL_INTERVAL_S:
            time.sleep(LLM_MIN_CALL_INTERVAL_S - elapsed)

    def _sleep_backoff(self, attempt: int) -> None:
        from docqa.config import LLM_BACKOFF_BASE_S, LLM_BACKOFF_MAX_S

        base = max(0.1, LLM_BACKOFF_BASE_S)
        max_wait = max(base, LLM_BACKOFF_MAX_S)
        wait = min(max_wait, base * (2**attempt))
        jitter = random.uniform(0.0, base)  # nosec B311
        time.sleep(wait + jitter)

    def _is_retryable_error(self, exc: Exception) -> tuple[bool, str]:
        name = exc.__class__.__name__
        status_code = getattr(exc, "status_code", None)
        body = str(exc).lower()
        retryable_status = {408, 409, 429, 500, 502, 503, 504}
        retryable_name_markers = (
            "RateLimitError",
            "APITimeoutError",
            "APIConnectionError",
            "InternalServerError",
        )

        if status_code in retryable_status:
            return True, f"status={status_code}"
        if any(marker in name for marker in retryable_name_markers):
            return True, name
        if "rate limit" in body or "too many requests" in body or "timeout" in body:
            return True, name
        return False, name

    def _chat_completion_with_retry(self, client, kwargs: dict):
        from docqa.config import LLM_MAX_RETRIES

        attempts = max(1, LLM_MAX_RETRIES + 1)
        for attempt in range(attempts):
            try:
                self._throttle()
                resp = client.chat.completions.create(**kwargs)
                self._last_call_ts = time.time()
                return resp
            except Exception as exc:
                retryable, reason = self._is_retryable_error(exc)
                is_last = attempt == attempts - 1
                if not retryable or is_last:
                    msg = (
                        f"{self.__class__.__name__} failed after "
                        f"{attempt + 1}/{attempts} attempts: {exc}"
                    )
                    raise LLMServiceError(msg) from exc
                log.warning(
                    "%s transient error (attempt %d/%d, reason=%s). Retrying...",
                    self.__class__.__name__,
                    attempt + 1,
                    attempts,
                    reason,
                )
                self._sleep_backoff(attempt)

        raise LLMServiceError(f"{self.__class__.__name__} failed unexpectedly.")

    @staticmethod
    def _messages(prompt: str, system: str) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    @staticmethod
    def _to_response(resp) -> LLMResponse:
        usage = resp.usage
        return LLMResponse(
            text=resp.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
        )

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        raise NotImplementedError

    def generate_json(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> dict:
        response = self.generate(
            prompt=prompt,
            system=system,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        text = response.text.strip()
        # Handles JSON wrapped in markdown fences.
        if text.startswith("```"):
            text = text.strip("`")
            text = text.replace("json", "", 1).strip()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMServiceError(f"{self.__class__.__name__} returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise LLMServiceError(f"{self.__class__.__name__} returned a non-object JSON payload.")
        return payload


class OpenAIClient(LLMClient):
    """Any OpenAI-compatible chat completions endpoint."""

    provider = "openai"

    def __init__(self) -> None:
        from openai import OpenAI

        from docqa.config import OPENAI_API_KEY, OPENAI_BASE_URL

        if not OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai.")
        self._client = OpenAI(base_url=OPENAI_BASE_URL, api_key=OPENAI_API_KEY)

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        from docqa.config import GENERATION_TEMPERATURE, OPENAI_MODEL

        kwargs: dict = {
            "model": model or OPENAI_MODEL,
            "messages": self._messages(prompt, system),
            "temperature": temperature if temperature is not None else GENERATION_TEMPERATURE,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if timeout is not None:
            kwargs["timeout"] = timeout

        return self._to_response(self._chat_completion_with_retry(self._client, kwargs))


class AzureOpenAIClient(LLMClient):
    provider = "azure_openai"

    def __init__(self) -> None:
        from openai import AzureOpenAI

        from docqa.config import AZURE_API_KEY, AZURE_API_VERSION, AZURE_ENDPOINT

        if not AZURE_API_KEY:
            raise ValueError("AZURE_API_KEY is required when LLM_PROVIDER=azure_openai.")
        if not AZURE_ENDPOINT:
            raise ValueError("AZURE_ENDPOINT is required when LLM_PROVIDER=azure_openai.")

        self._client = AzureOpenAI(
            api_version=AZURE_API_VERSION,
            azure_endpoint=AZURE_ENDPOINT,
            api_key=AZURE_API_KEY,
        )

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        from docqa.config import AZURE_MODEL, GENERATION_TEMPERATURE

        deploy = model or AZURE_MODEL
        kwargs: dict = {"model": deploy, "messages": self._messages(prompt, system)}
        if deploy.startswith("o"):
            if max_tokens is not None:
                kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["temperature"] = (
                temperature if temperature is not None else GENERATION_TEMPERATURE
            )
            if max_tokens is not None:
                kwargs["max_tokens"] = max_tokens
        if timeout is not None:
            kwargs["timeout"] = timeout

        return self._to_response(self._chat_completion_with_retry(self._client, kwargs))


class ExtractiveClient(LLMClient):
    """
    Deterministic offline answerer.

    Reads the question and passages back out of the QA prompt and answers with
    the passage sentences that share the most content words with the question,
    quoting each one. Answers NO_EVIDENCE when no sentence shares any.
    """

    provider = "extractive"
    max_sentences = 3

    _ROW = re.compile(
        r"^\[\d+\]\s+passage_id=(?P<passage_id>\S+)(?P<meta>[^\n]*)\n\s*text=(?P<text>.*)$",
        re.MULTILINE,
    )
    _START = re.compile(r"\bstart=(?P<start>\d+)")
    _SENTENCE_END = re.compile(r"[.!?][\"')\]]*$")
    _QUESTION = re.compile(r"QUESTION:\n(?P<question>.*?)\n\s*\nRETRIEVED_CONTEXTS:", re.DOTALL)

    def _extract_context_rows(self, prompt: str) -> list[ContextRow]:
        rows: list[ContextRow] = []
        for match in self._ROW.finditer(prompt):
            start = self._START.search(match.group("meta"))
            rows.append(
                ContextRow(
                    passage_id=match.group("passage_id"),
                    text=match.group("text").strip(),
                    start=int(start.group("start")) if start else 0,
                )
            )
        return rows

    def _extract_question(self, prompt: str) -> str:
        match = self._QUESTION.search(prompt)
        return match.group("question").strip() if match else ""

    def _is_complete(self, row: ContextRow, sentences: list[str], position: int) -> bool:
        # Window edges cut sentences: the head of a later passage and an
        # unpunctuated tail are fragments.
        if position == 0 and row.start > 0:
            return False
        if position == len(sentences) - 1:
            return bool(self._SENTENCE_END.search(sentences[position]))
        return True

    def _build_payload(self, prompt: str) -> dict:
        wanted = set(content_tokens(self._extract_question(prompt)))
        complete: list[tuple[int, int, int, str, str]] = []
        partial: list[tuple[int, int, int, str, str]] = []
        for row_idx, row in enumerate(self._extract_context_rows(prompt)):
            sentences = split_sentences(row.text)
            for sent_idx, sentence in enumerate(sentences):
                hits = len(wanted & set(content_tokens(sentence)))
                if not hits:
                    continue
                candidate = (-hits, row_idx, sent_idx, row.passage_id, sentence)
                if self._is_complete(row, sentences, sent_idx):
                    complete.append(candidate)
                else:
                    partial.append(candidate)

        candidates = complete or partial
        if not candidates:
            return {
                "answer": NO_EVIDENCE_MARKER,
                "references": [],
                "uncertainty": "No retrieved passage mentions the terms of the question.",
            }

        # Overlapping windows repeat sentences; quote each one once.
        picked: list[tuple[int, int, int, str, str]] = []
        seen: set[str] = set()
        for candidate in sorted(candidates):
            if candidate[-1] in seen:
                continue
            seen.add(candidate[-1])
            picked.append(candidate)
            if len(picked) == self.max_sentences:
                break
        return {
            "answer": " ".join(sentence for *_, sentence in picked),
            "references": [
                {"passage_id": passage_id, "quote": sentence}
                for *_, passage_id, sentence in picked
            ],
            "uncertainty": "Extractive answer quoting the best matching passage sentences.",
        }

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        del system, model, temperature, max_tokens, timeout
        payload = self._build_payload(prompt)
        return LLMResponse(text=json.dumps(payload), input_tokens=0, output_tokens=0)


def get_llm_client() -> LLMClient:
    from docqa.config import LLM_PROVIDER, env_flag

    provider = os.getenv("LLM_PROVIDER", LLM_PROVIDER).strip().lower()
    if env_flag("OFFLINE_MODE"):
        return ExtractiveClient()

    if provider == "openai":
        return OpenAIClient()
    if provider == "azure_openai":
        return AzureOpenAIClient()
    if provider == "extractive":
        return ExtractiveClient()
    raise ValueError(f"Unknown LLM_PROVIDER={provider!r}")
