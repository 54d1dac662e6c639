"""Logging setup shared by the client and server entry points."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(level: int | str = logging.INFO) -> None:
    """Send log records to stderr so stdout carries only result payloads."""

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def structured_log(logger: logging.Logger, level: int, **payload: Any) -> None:
    logger.log(level, json.dumps(payload, ensure_ascii=False, sort_keys=True))
