"""Centralized configuration for the document QA service."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")

_TRUTHY = {"1", "true", "yes"}


def env_flag(name: str, default: bool = False) -> bool:
    return os.getenv(name, "1" if default else "0").strip().lower() in _TRUTHY


# Service
SERVICE_HOST = os.getenv("SERVICE_HOST", "127.0.0.1")
SERVICE_PORT = int(os.getenv("SERVICE_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# LLM provider configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "extractive")
OFFLINE_MODE = env_flag("OFFLINE_MODE")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "") or None
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

AZURE_ENDPOINT = os.getenv("AZURE_ENDPOINT", "")
AZURE_API_KEY = os.getenv("AZURE_API_KEY", "")
AZURE_API_VERSION = os.getenv("AZURE_API_VERSION", "2024-12-01-preview")
AZURE_MODEL = os.getenv("AZURE_MODEL", "o4-mini")

# Generation and reliability
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.0"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "1200"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "0"))
LLM_BACKOFF_BASE_S = float(os.getenv("LLM_BACKOFF_BASE_S", "1.0"))
LLM_BACKOFF_MAX_S = float(os.getenv("LLM_BACKOFF_MAX_S", "15.0"))
LLM_MIN_CALL_INTERVAL_S = float(os.getenv("LLM_MIN_CALL_INTERVAL_S", "0.0"))

# Embedding and retrieval
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
HASH_EMBED_DIM = int(os.getenv("HASH_EMBED_DIM", "1024"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "64"))
TOP_K = int(os.getenv("TOP_K", "5"))
TOP_K_MIN = 1
TOP_K_MAX = int(os.getenv("TOP_K_MAX", "20"))
# Minimum cosine score for a passage to count as evidence, per embedder family.
RELEVANCE_THRESHOLD = float(os.getenv("RELEVANCE_THRESHOLD", "0.2"))
HASH_RELEVANCE_THRESHOLD = float(os.getenv("HASH_RELEVANCE_THRESHOLD", "0.1"))
GROUNDING_MIN_OVERLAP = float(os.getenv("GROUNDING_MIN_OVERLAP", "0.5"))

# Segmentation (characters)
WINDOW_SIZE = int(os.getenv("WINDOW_SIZE", "800"))
WINDOW_OVERLAP = int(os.getenv("WINDOW_OVERLAP", "150"))

# Upload policy
MAX_UPLOAD_FILE_MB = int(os.getenv("MAX_UPLOAD_FILE_MB", "50"))

# Corpus lifecycle and concurrency
MAX_CORPORA = int(os.getenv("MAX_CORPORA", "32"))
INGEST_WORKERS = int(os.getenv("INGEST_WORKERS", "4"))
INGEST_TIMEOUT_S = float(os.getenv("INGEST_TIMEOUT_S", "300"))
ASK_TIMEOUT_S = float(os.getenv("ASK_TIMEOUT_S", "60"))
