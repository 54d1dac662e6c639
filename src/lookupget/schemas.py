from __future__ import annotations

from pydantic import BaseModel, Field

from lookupget.config import (
    DEFAULT_AUTHORIZATION_TOKEN,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PORT,
)


class BatchRequest(BaseModel):
    base_url: str = Field(min_length=1)
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    authorization_token: str = DEFAULT_AUTHORIZATION_TOKEN
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)


class ItemResponse(BaseModel):
    result: str


class HealthResponse(BaseModel):
    status: str
    inflight: int
    max_inflight: int
