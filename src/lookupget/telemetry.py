from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class Telemetry:
    """Batch client metrics, registered on a private registry per instance."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._transmissions = Counter(
            "lookup_transmissions_total",
            "Outbound lookup requests by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self._duplicates_skipped = Counter(
            "lookup_duplicates_skipped_total",
            "Queue entries skipped because the identifier was reserved or finalized.",
            registry=self.registry,
        )
        self._rollbacks = Counter(
            "lookup_rate_limit_rollbacks_total",
            "Reservations rolled back and requeued after a 429.",
            registry=self.registry,
        )
        self._inflight = Gauge(
            "lookup_inflight",
            "Outbound lookup requests currently in flight.",
            registry=self.registry,
        )
        self._transmit_seconds = Histogram(
            "lookup_transmit_seconds",
            "Wall time of one outbound lookup request.",
            registry=self.registry,
        )

    def record_transmission(self, outcome: str, seconds: float) -> None:
        self._transmissions.labels(outcome=outcome).inc()
        self._transmit_seconds.observe(max(0.0, seconds))

    def record_duplicate_skipped(self) -> None:
        self._duplicates_skipped.inc()

    def record_rollback(self) -> None:
        self._rollbacks.inc()

    def transmission_started(self) -> None:
        self._inflight.inc()

    def transmission_finished(self) -> None:
        self._inflight.dec()

    def sample(self, name: str, **labels: str) -> float:
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0

    def scrape(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


class ServerTelemetry:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._requests = Counter(
            "lookup_server_requests_total",
            "Lookup server responses by status code.",
            ["status"],
            registry=self.registry,
        )
        self._inflight = Gauge(
            "lookup_server_inflight",
            "Requests admitted and still being processed.",
            registry=self.registry,
        )

    def record_response(self, status: int) -> None:
        self._requests.labels(status=str(status)).inc()

    def set_inflight(self, count: int) -> None:
        self._inflight.set(max(0, count))

    def sample(self, name: str, **labels: str) -> float:
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0

    def scrape(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
