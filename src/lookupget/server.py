"""Rate-limited lookup service used to exercise the batch client.

Serves ``GET /<route>/<id>``: at most ``max_inflight`` requests are processed at
once (excess requests get 429), the ``Authorization`` header must match the
configured token (403 otherwise), and each admitted request takes
``processing_time_ms`` before answering.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import Response

from lookupget.config import ITEM_FOUND_MESSAGE, ServerConfig
from lookupget.schemas import HealthResponse, ItemResponse
from lookupget.telemetry import ServerTelemetry

MEDIA_TYPE = "text/json"


class InflightLimiter:
    """Counts admitted requests; safe to share across event loops and threads."""

    def __init__(self, max_inflight: int) -> None:
        if max_inflight <= 0:
            raise ValueError("max_inflight must be positive")
        self._max_inflight = max_inflight
        self._inflight = 0
        self._lock = threading.Lock()

    @property
    def inflight(self) -> int:
        with self._lock:
            return self._inflight

    @property
    def max_inflight(self) -> int:
        return self._max_inflight

    def try_acquire(self) -> bool:
        with self._lock:
            if self._inflight >= self._max_inflight:
                return False
            self._inflight += 1
            return True

    def release(self) -> None:
        with self._lock:
            self._inflight = max(0, self._inflight - 1)


@dataclass
class Services:
    config: ServerConfig
    limiter: InflightLimiter
    telemetry: ServerTelemetry


def _build_services(config: ServerConfig) -> Services:
    return Services(
        config=config,
        limiter=InflightLimiter(max_inflight=config.max_inflight),
        telemetry=ServerTelemetry(),
    )


def create_app(config: ServerConfig | None = None) -> FastAPI:
    services = _build_services(config or ServerConfig(authorization_token=""))

    app = FastAPI(title="Lookup Server", version="0.1.0")
    app.state.services = services

    def respond(status_code: int, content: bytes | None = None) -> Response:
        services.telemetry.record_response(status_code)
        return Response(content=content, status_code=status_code, media_type=MEDIA_TYPE)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            inflight=services.limiter.inflight,
            max_inflight=services.limiter.max_inflight,
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        body, content_type = services.telemetry.scrape()
        return Response(content=body, media_type=content_type)

    @app.get("/{path:path}")
    async def lookup_item(path: str, request: Request) -> Response:
        parts = path.split("/")
        if parts[0] != services.config.route:
            return respond(404)

        if not services.limiter.try_acquire():
            return respond(429)
        services.telemetry.set_inflight(services.limiter.inflight)

        try:
            if request.headers.get("authorization", "") != services.config.authorization_token:
                return respond(403)

            if services.config.processing_time_ms:
                await asyncio.sleep(services.config.processing_time_ms / 1000.0)

            if len(parts) > 1 and parts[1] != "":
                item = ItemResponse(result=ITEM_FOUND_MESSAGE)
                return respond(200, item.model_dump_json().encode("utf-8"))
            return respond(404)
        finally:
            services.limiter.release()
            services.telemetry.set_inflight(services.limiter.inflight)

    return app
