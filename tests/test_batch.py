from __future__ import annotations

import threading
import time
import unittest
from collections import Counter
from typing import Callable, Mapping

from pydantic import ValidationError

from lookupget.batch import LookupBatch, lookup
from lookupget.results import Outcome
from lookupget.schemas import BatchRequest
from lookupget.telemetry import Telemetry
from lookupget.transport import TransportResponse

BASE_URL = "http://lookup.test/items/"

Responder = Callable[[str, int], TransportResponse]


def always(status: int, body: bytes = b'{"result":"ok"}') -> Responder:
    return lambda identifier, attempt: TransportResponse(status, body)


class FakeService:
    """Transport double shared by every worker's private transport."""

    def __init__(self, responder: Responder, delay: float = 0.0) -> None:
        self._responder = responder
        self._delay = delay
        self._lock = threading.Lock()
        self.calls: list[str] = []
        self.headers: list[dict[str, str]] = []
        self.ports: list[int] = []
        self.inflight = 0
        self.max_inflight = 0
        self.transports_created = 0
        self.transports_closed = 0

    def factory(self) -> "FakeTransport":
        with self._lock:
            self.transports_created += 1
        return FakeTransport(self)

    def closed_count(self) -> int:
        with self._lock:
            return self.transports_closed

    def attempts(self) -> Counter:
        with self._lock:
            return Counter(self.calls)

    def handle(self, url: str, port: int, headers: Mapping[str, str]) -> TransportResponse:
        identifier = url[len(BASE_URL):]
        with self._lock:
            self.calls.append(identifier)
            self.headers.append(dict(headers))
            self.ports.append(port)
            attempt = self.calls.count(identifier)
            self.inflight += 1
            self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            if self._delay:
                time.sleep(self._delay)
            return self._responder(identifier, attempt)
        finally:
            with self._lock:
                self.inflight -= 1


class FakeTransport:
    def __init__(self, service: FakeService) -> None:
        self._service = service

    def get(self, url: str, port: int, headers: Mapping[str, str]) -> TransportResponse:
        return self._service.handle(url, port, headers)

    def close(self) -> None:
        with self._service._lock:
            self._service.transports_closed += 1


def run_batch(
    identifiers: list[str],
    service: FakeService,
    max_concurrency: int,
    telemetry: Telemetry | None = None,
) -> tuple[LookupBatch, dict]:
    batch = LookupBatch(
        BatchRequest(
            base_url=BASE_URL,
            port=8080,
            authorization_token="token-123",
            max_concurrency=max_concurrency,
        ),
        transport_factory=service.factory,
        telemetry=telemetry,
    )
    return batch, batch.run(identifiers)


class LookupBatchTests(unittest.TestCase):
    def test_duplicates_scenario_with_single_worker(self) -> None:
        service = FakeService(always(200))

        _, results = run_batch(["a", "a", "b"], service, max_concurrency=1)

        self.assertEqual(len(service.calls), 2)
        self.assertEqual(list(results), ["a", "b"])
        self.assertTrue(all(result.status == 200 for result in results.values()))

    def test_result_keys_match_distinct_identifiers(self) -> None:
        identifiers = [f"id-{i % 7}" for i in range(40)]

        def responder(identifier: str, attempt: int) -> TransportResponse:
            return TransportResponse(404 if identifier.endswith("3") else 200, b"1")

        service = FakeService(responder)
        _, results = run_batch(identifiers, service, max_concurrency=4)

        self.assertEqual(set(results), set(identifiers))
        self.assertEqual(results["id-3"].status, 404)

    def test_duplicates_are_transmitted_once(self) -> None:
        distinct = [f"item-{i}" for i in range(10)]
        adjacent = [identifier for identifier in distinct for _ in range(2)]
        identifiers = adjacent + adjacent
        service = FakeService(always(200), delay=0.005)

        batch, results = run_batch(identifiers, service, max_concurrency=4)

        self.assertEqual(service.attempts(), Counter({identifier: 1 for identifier in distinct}))
        self.assertEqual(len(results), len(distinct))
        self.assertEqual(batch.stats.transmissions, 10)
        self.assertEqual(batch.stats.duplicates_skipped, 30)

    def test_success_embeds_transport_body(self) -> None:
        body = b'{"result":"Item is in inventory."}'
        service = FakeService(always(200, body))

        _, results = run_batch(["X"], service, max_concurrency=2)

        result = results["X"]
        self.assertEqual(result.status, 200)
        self.assertEqual(result.response, body.decode())
        self.assertEqual(result.outcome, Outcome.SUCCESS)
        self.assertEqual(
            result.payload,
            f'{{"id":"X","timestamp":{result.timestamp_ns},"status":200,"response":{body.decode()}}}',
        )

    def test_rate_limited_identifier_is_retried(self) -> None:
        def responder(identifier: str, attempt: int) -> TransportResponse:
            if attempt == 1:
                return TransportResponse(429)
            return TransportResponse(200, b'{"ok":true}')

        service = FakeService(responder)
        batch, results = run_batch(["r"], service, max_concurrency=1)

        self.assertEqual(list(results), ["r"])
        self.assertEqual(results["r"].status, 200)
        self.assertGreaterEqual(service.attempts()["r"], 2)
        self.assertEqual(batch.stats.rate_limited, 1)

    def test_not_found_is_final_and_not_retried(self) -> None:
        service = FakeService(always(404, b"missing"))

        _, results = run_batch(["n"], service, max_concurrency=3)

        self.assertEqual(len(service.calls), 1)
        self.assertEqual(results["n"].status, 404)
        self.assertIsNone(results["n"].response)
        self.assertTrue(results["n"].payload.endswith('"status":404,"response":null}'))

    def test_transport_failure_is_final_and_not_retried(self) -> None:
        service = FakeService(
            lambda identifier, attempt: TransportResponse(0, failed=True, error="refused")
        )

        _, results = run_batch(["t", "t"], service, max_concurrency=2)

        self.assertEqual(len(service.calls), 1)
        self.assertEqual(results["t"].status, 0)
        self.assertEqual(results["t"].outcome, Outcome.TRANSPORT_FAILURE)

    def test_inflight_requests_never_exceed_limit(self) -> None:
        identifiers = [f"c-{i}" for i in range(30)]
        service = FakeService(always(200), delay=0.01)
        telemetry = Telemetry()

        _, results = run_batch(identifiers, service, max_concurrency=3, telemetry=telemetry)

        self.assertEqual(len(results), 30)
        self.assertLessEqual(service.max_inflight, 3)
        self.assertGreaterEqual(service.max_inflight, 1)
        self.assertEqual(telemetry.sample("lookup_inflight"), 0.0)

    def test_idle_workers_stay_available_while_a_rate_limited_id_is_outstanding(self) -> None:
        others_done = threading.Event()
        finished: list[str] = []
        finished_lock = threading.Lock()
        closed_at_attempt: dict[int, int] = {}

        def responder(identifier: str, attempt: int) -> TransportResponse:
            if identifier == "slow":
                if attempt == 1:
                    # Answer 429 only after every other identifier is finalized
                    # and the other workers have had time to find the queue empty.
                    others_done.wait(timeout=5.0)
                    time.sleep(0.1)
                    closed_at_attempt[attempt] = service.closed_count()
                    return TransportResponse(429)
                closed_at_attempt[attempt] = service.closed_count()
                return TransportResponse(200, b"1")
            with finished_lock:
                finished.append(identifier)
                if len(finished) == 3:
                    others_done.set()
            return TransportResponse(200, b"1")

        service = FakeService(responder)
        _, results = run_batch(["slow", "b", "c", "d"], service, max_concurrency=4)

        self.assertEqual(list(results), ["b", "c", "d", "slow"])
        self.assertEqual(results["slow"].status, 200)
        self.assertEqual(service.attempts()["slow"], 2)
        # No worker may finish while "slow" can still be requeued.
        self.assertEqual(closed_at_attempt, {1: 0, 2: 0})
        self.assertEqual(service.transports_closed, 4)

    def test_repeated_rate_limits_are_retried_without_bound(self) -> None:
        def responder(identifier: str, attempt: int) -> TransportResponse:
            return TransportResponse(429) if attempt <= 25 else TransportResponse(200, b"1")

        service = FakeService(responder)
        telemetry = Telemetry()
        _, results = run_batch(["busy", "busy"], service, max_concurrency=2, telemetry=telemetry)

        self.assertEqual(results["busy"].status, 200)
        self.assertEqual(service.attempts()["busy"], 26)
        self.assertEqual(telemetry.sample("lookup_rate_limit_rollbacks_total"), 25.0)

    def test_each_worker_owns_a_transport_and_closes_it(self) -> None:
        service = FakeService(always(200))

        run_batch(["a", "b", "c"], service, max_concurrency=5)

        self.assertEqual(service.transports_created, 5)
        self.assertEqual(service.transports_closed, 5)

    def test_requests_carry_port_and_headers(self) -> None:
        service = FakeService(always(200))

        run_batch(["a"], service, max_concurrency=1)

        self.assertEqual(service.ports, [8080])
        self.assertEqual(service.headers, [{"Accept": "text/json", "Authorization": "token-123"}])

    def test_records_outcome_metrics(self) -> None:
        def responder(identifier: str, attempt: int) -> TransportResponse:
            return TransportResponse(200 if identifier == "ok" else 500, b"1")

        telemetry = Telemetry()
        run_batch(["ok", "ok", "bad"], FakeService(responder), max_concurrency=1, telemetry=telemetry)

        self.assertEqual(telemetry.sample("lookup_transmissions_total", outcome="success"), 1.0)
        self.assertEqual(
            telemetry.sample("lookup_transmissions_total", outcome="application_error"), 1.0
        )
        self.assertEqual(telemetry.sample("lookup_duplicates_skipped_total"), 1.0)

    def test_batch_runs_only_once(self) -> None:
        service = FakeService(always(200))
        batch, _ = run_batch(["a"], service, max_concurrency=1)

        with self.assertRaises(RuntimeError):
            batch.run(["a"])

    def test_empty_batch_returns_empty_results(self) -> None:
        service = FakeService(always(200))

        batch, results = run_batch([], service, max_concurrency=3)

        self.assertEqual(results, {})
        self.assertEqual(service.calls, [])
        self.assertEqual(batch.unresolved([]), [])

    def test_worker_exception_propagates(self) -> None:
        def responder(identifier: str, attempt: int) -> TransportResponse:
            if identifier == "boom":
                raise RuntimeError("transport bug")
            return TransportResponse(200, b"1")

        service = FakeService(responder)
        batch = LookupBatch(
            BatchRequest(base_url=BASE_URL, max_concurrency=2),
            transport_factory=service.factory,
        )

        with self.assertRaises(RuntimeError):
            batch.run(["boom", "ok"])
        with self.assertLogs("lookupget.batch", level="WARNING") as logs:
            self.assertEqual(batch.unresolved(["boom", "ok"]), ["boom"])
        self.assertIn("still reserved", logs.output[0])
        self.assertEqual(service.transports_closed, 2)


class LookupFunctionTests(unittest.TestCase):
    def test_runs_one_batch(self) -> None:
        service = FakeService(always(200))

        results = lookup(["a", "b", "a"], BASE_URL, 8080, "tok", 2, transport_factory=service.factory)

        self.assertEqual(list(results), ["a", "b"])

    def test_rejects_invalid_port(self) -> None:
        with self.assertRaises(ValidationError):
            lookup(["a"], BASE_URL, 70000, "tok", 2, transport_factory=FakeService(always(200)).factory)

    def test_rejects_non_positive_concurrency(self) -> None:
        with self.assertRaises(ValidationError):
            lookup(["a"], BASE_URL, 8080, "tok", 0, transport_factory=FakeService(always(200)).factory)
