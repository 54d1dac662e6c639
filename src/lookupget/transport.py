"""HTTP transport used by lookup workers.

Each worker owns one transport for its whole lifetime, so implementations do
not need to be thread-safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Protocol

import httpx

from lookupget.config import ClientConfig

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "text/json"


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    body: bytes = b""
    failed: bool = False
    error: str | None = None
    truncated: bool = False

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class Transport(Protocol):
    def get(self, url: str, port: int, headers: Mapping[str, str]) -> TransportResponse:
        ...

    def close(self) -> None:
        ...


def build_headers(authorization_token: str) -> dict[str, str]:
    return {"Accept": ACCEPT_HEADER, "Authorization": authorization_token}


class HttpxTransport:
    def __init__(
        self,
        config: ClientConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(self._config.timeout_seconds),
            verify=self._config.verify_tls,
            follow_redirects=self._config.follow_redirects,
        )

    def get(self, url: str, port: int, headers: Mapping[str, str]) -> TransportResponse:
        try:
            target = httpx.URL(url).copy_with(port=port)
            # Header values are sent as raw UTF-8 bytes.
            raw_headers = {name: value.encode("utf-8") for name, value in headers.items()}
            with self._client.stream("GET", target, headers=raw_headers) as response:
                body = bytearray()
                truncated = False
                try:
                    for chunk in response.iter_bytes():
                        body.extend(chunk)
                except httpx.HTTPError as exc:
                    truncated = True
                    logger.warning(
                        "Response body for %s truncated after %d bytes: %s", target, len(body), exc
                    )
                return TransportResponse(
                    status_code=response.status_code,
                    body=bytes(body),
                    truncated=truncated,
                )
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError) as exc:
            logger.warning("GET %s on port %d failed: %s", url, port, exc)
            return TransportResponse(status_code=0, failed=True, error=str(exc))

    def close(self) -> None:
        self._client.close()
