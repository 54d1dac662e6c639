from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum

from lookupget.pending import PendingQueue
from lookupget.results import LookupResult, Outcome, ResultTable
from lookupget.schemas import BatchRequest
from lookupget.semaphore import AdmissionSemaphore
from lookupget.telemetry import Telemetry
from lookupget.transport import Transport, build_headers

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    FETCH = "fetch"
    RESERVE = "reserve"
    ACQUIRE_PERMIT = "acquire_permit"
    TRANSMIT = "transmit"
    RECORD = "record"
    DONE = "done"


@dataclass
class WorkerStats:
    transmissions: int = 0
    succeeded: int = 0
    rate_limited: int = 0
    failed: int = 0
    duplicates_skipped: int = 0

    def merge(self, other: "WorkerStats") -> None:
        self.transmissions += other.transmissions
        self.succeeded += other.succeeded
        self.rate_limited += other.rate_limited
        self.failed += other.failed
        self.duplicates_skipped += other.duplicates_skipped


class LookupWorker:
    """Drains the pending queue through one exclusively owned transport."""

    def __init__(
        self,
        worker_id: int,
        pending: PendingQueue,
        results: ResultTable,
        permits: AdmissionSemaphore,
        transport: Transport,
        request: BatchRequest,
        telemetry: Telemetry,
    ) -> None:
        self.worker_id = worker_id
        self.state = WorkerState.FETCH
        self.stats = WorkerStats()
        self._pending = pending
        self._results = results
        self._permits = permits
        self._transport = transport
        self._request = request
        self._telemetry = telemetry
        self._headers = build_headers(request.authorization_token)

    def run(self) -> WorkerStats:
        try:
            while True:
                self.state = WorkerState.FETCH
                identifier = self._pending.dequeue_or_empty()
                if identifier is None:
                    break
                try:
                    self._process(identifier)
                finally:
                    self._pending.task_done()
        finally:
            self.state = WorkerState.DONE
            self._transport.close()
        logger.debug("Worker %d finished: %s", self.worker_id, self.stats)
        return self.stats

    def _process(self, identifier: str) -> None:
        self.state = WorkerState.RESERVE
        if not self._results.try_reserve(identifier):
            self.stats.duplicates_skipped += 1
            self._telemetry.record_duplicate_skipped()
            return

        self.state = WorkerState.ACQUIRE_PERMIT
        with self._permits.slot():
            self.state = WorkerState.TRANSMIT
            self._telemetry.transmission_started()
            started = time.monotonic()
            try:
                response = self._transport.get(
                    self._request.base_url + identifier,
                    self._request.port,
                    self._headers,
                )
            finally:
                self._telemetry.transmission_finished()
            timestamp_ns = time.time_ns()
            self.stats.transmissions += 1

            self.state = WorkerState.RECORD
            result = LookupResult.from_response(identifier, response, timestamp_ns)
            self._telemetry.record_transmission(result.outcome.value, time.monotonic() - started)
            self._record(result)

    def _record(self, result: LookupResult) -> None:
        if not result.outcome.terminal:
            self.stats.rate_limited += 1
            self._telemetry.record_rollback()
            # Other workers may already have requeued the same identifier;
            # at least one queue entry must survive the rollback.
            self._results.rollback(result.identifier)
            self._pending.enqueue_back(result.identifier)
            logger.debug("Rate limited on %s; requeued", result.identifier)
            return

        if result.outcome is Outcome.SUCCESS:
            self.stats.succeeded += 1
        else:
            self.stats.failed += 1
        self._results.finalize(result.identifier, result)
