from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_BASE_URL = "http://localhost/items/"
DEFAULT_PORT = 8080
DEFAULT_AUTHORIZATION_TOKEN = ""
DEFAULT_REQUEST_COUNT = 100
DEFAULT_MAX_CONCURRENCY = 5

ITEM_FOUND_MESSAGE = "Item is in inventory."


def load_environment(env_file: Path | None = None) -> None:
    """Load ``.env`` settings without overriding variables already exported."""

    path = env_file or Path.cwd() / ".env"
    if path.exists():
        load_dotenv(path, override=False)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ClientConfig:
    # None disables the timeout; a stalled server then holds its worker.
    timeout_seconds: float | None = None
    verify_tls: bool = True
    follow_redirects: bool = False

    @classmethod
    def from_env(cls) -> "ClientConfig":
        raw_timeout = os.getenv("LOOKUP_TIMEOUT_SECONDS")
        return cls(
            timeout_seconds=float(raw_timeout) if raw_timeout else None,
            verify_tls=_env_bool("LOOKUP_VERIFY_TLS", True),
            follow_redirects=_env_bool("LOOKUP_FOLLOW_REDIRECTS", False),
        )


def normalize_route(route: str) -> str:
    """Reduce ``/items/`` style routes to their single path component."""

    parts = [part for part in route.strip().split("/") if part.strip()]
    if len(parts) != 1:
        raise ValueError("routes must be top level routes with only one component")
    return parts[0]


@dataclass
class ServerConfig:
    authorization_token: str
    route: str = "items"
    processing_time_ms: int = 0
    max_inflight: int = 5

    def __post_init__(self) -> None:
        self.route = normalize_route(self.route)
        self.authorization_token = self.authorization_token.strip()
        if self.max_inflight <= 0:
            raise ValueError("max_inflight must be positive")
        if self.processing_time_ms < 0:
            raise ValueError("processing_time_ms must be non-negative")
