"""Batch orchestration: seed the shared queue, run the workers, collect results."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Sequence

from lookupget.config import ClientConfig
from lookupget.log import structured_log
from lookupget.pending import PendingQueue
from lookupget.results import LookupResult, ResultTable
from lookupget.schemas import BatchRequest
from lookupget.semaphore import AdmissionSemaphore
from lookupget.telemetry import Telemetry
from lookupget.transport import HttpxTransport, Transport
from lookupget.worker import LookupWorker, WorkerStats

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]


class LookupBatch:
    """One batch of lookups. Each instance runs exactly once."""

    def __init__(
        self,
        request: BatchRequest,
        transport_factory: TransportFactory | None = None,
        telemetry: Telemetry | None = None,
        client_config: ClientConfig | None = None,
    ) -> None:
        self._request = request
        self._client_config = client_config or ClientConfig()
        self._transport_factory = transport_factory or self._default_transport
        self._telemetry = telemetry or Telemetry()
        self._pending = PendingQueue()
        self._results = ResultTable()
        self._permits = AdmissionSemaphore(0)
        self._started = False
        self.stats = WorkerStats()

    def _default_transport(self) -> Transport:
        return HttpxTransport(config=self._client_config)

    @property
    def telemetry(self) -> Telemetry:
        return self._telemetry

    def run(self, identifiers: Iterable[str]) -> dict[str, LookupResult]:
        if self._started:
            raise RuntimeError("a LookupBatch can only be run once")
        self._started = True

        max_concurrency = self._request.max_concurrency
        for _ in range(max_concurrency):
            self._permits.post()
        self._pending.extend(identifiers)
        queued = len(self._pending)

        structured_log(
            logger,
            logging.INFO,
            event="batch_started",
            base_url=self._request.base_url,
            port=self._request.port,
            queued=queued,
            max_concurrency=max_concurrency,
        )
        started = time.monotonic()

        workers = [
            LookupWorker(
                worker_id=worker_id,
                pending=self._pending,
                results=self._results,
                permits=self._permits,
                transport=self._transport_factory(),
                request=self._request,
                telemetry=self._telemetry,
            )
            for worker_id in range(max_concurrency)
        ]
        with ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="lookup-worker"
        ) as executor:
            futures: list[Future[WorkerStats]] = [
                executor.submit(worker.run) for worker in workers
            ]
            for future in futures:
                self.stats.merge(future.result())

        results = self._results.snapshot()
        structured_log(
            logger,
            logging.INFO,
            event="batch_finished",
            queued=queued,
            finalized=len(results),
            transmissions=self.stats.transmissions,
            rate_limited=self.stats.rate_limited,
            failed=self.stats.failed,
            duplicates_skipped=self.stats.duplicates_skipped,
            elapsed_seconds=round(time.monotonic() - started, 3),
        )
        return results

    def unresolved(self, identifiers: Iterable[str]) -> list[str]:
        """Distinct identifiers that have no finalized result."""

        stranded = self._results.reserved()
        if stranded:
            logger.warning("%d identifiers still reserved after the batch: %s", len(stranded), stranded)
        finalized = self._results.snapshot()
        return sorted({identifier for identifier in identifiers if identifier not in finalized})


def lookup(
    identifiers: Sequence[str],
    base_url: str,
    port: int,
    authorization_token: str,
    max_concurrency: int,
    *,
    transport_factory: TransportFactory | None = None,
    telemetry: Telemetry | None = None,
    client_config: ClientConfig | None = None,
) -> dict[str, LookupResult]:
    request = BatchRequest(
        base_url=base_url,
        port=port,
        authorization_token=authorization_token,
        max_concurrency=max_concurrency,
    )
    batch = LookupBatch(
        request,
        transport_factory=transport_factory,
        telemetry=telemetry,
        client_config=client_config,
    )
    results = batch.run(identifiers)
    missing = batch.unresolved(identifiers)
    if missing:
        logger.warning("%d identifiers finished without a result", len(missing))
    return results
