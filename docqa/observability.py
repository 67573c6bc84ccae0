"""Logging setup shared by the API server and the CLI."""

from __future__ import annotations

import logging
import sys

from docqa.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from verbose third-party libraries
    for noisy in ("httpx", "openai", "sentence_transformers", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
