from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum

from lookupget.transport import TransportResponse

RATE_LIMITED_STATUS = 429
SUCCESS_STATUS = 200


class Outcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    APPLICATION_ERROR = "application_error"
    TRANSPORT_FAILURE = "transport_failure"

    @property
    def terminal(self) -> bool:
        return self is not Outcome.RATE_LIMITED


def classify(response: TransportResponse) -> Outcome:
    if response.status_code == SUCCESS_STATUS and not response.failed:
        return Outcome.SUCCESS
    if response.status_code == RATE_LIMITED_STATUS:
        return Outcome.RATE_LIMITED
    if response.failed:
        return Outcome.TRANSPORT_FAILURE
    return Outcome.APPLICATION_ERROR


@dataclass(frozen=True)
class LookupResult:
    identifier: str
    timestamp_ns: int
    status: int
    response: str | None
    outcome: Outcome

    @classmethod
    def from_response(
        cls, identifier: str, response: TransportResponse, timestamp_ns: int
    ) -> "LookupResult":
        outcome = classify(response)
        body = response.text if outcome is Outcome.SUCCESS else None
        return cls(
            identifier=identifier,
            timestamp_ns=timestamp_ns,
            status=response.status_code,
            response=body,
            outcome=outcome,
        )

    @property
    def payload(self) -> str:
        # The body is spliced in verbatim; consumers rely on this exact layout.
        response = "null" if self.response is None else self.response
        return (
            f'{{"id":"{self.identifier}"'
            f',"timestamp":{self.timestamp_ns}'
            f',"status":{self.status}'
            f',"response":{response}}}'
        )


class EntryState(str, Enum):
    ABSENT = "absent"
    RESERVED = "reserved"
    FINALIZED = "finalized"


class ResultTable:
    """Finalized results keyed by identifier, doubling as the in-flight table.

    A key mapped to ``None`` is reserved: one worker is transmitting for it and
    every other attempt at the same identifier must be skipped.
    """

    def __init__(self) -> None:
        self._entries: dict[str, LookupResult | None] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._entries

    def state(self, identifier: str) -> EntryState:
        with self._lock:
            if identifier not in self._entries:
                return EntryState.ABSENT
            if self._entries[identifier] is None:
                return EntryState.RESERVED
            return EntryState.FINALIZED

    def try_reserve(self, identifier: str) -> bool:
        with self._lock:
            if identifier in self._entries:
                return False
            self._entries[identifier] = None
            return True

    def finalize(self, identifier: str, result: LookupResult) -> None:
        with self._lock:
            self._entries[identifier] = result

    def rollback(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    def reserved(self) -> list[str]:
        with self._lock:
            return sorted(key for key, value in self._entries.items() if value is None)

    def snapshot(self) -> dict[str, LookupResult]:
        with self._lock:
            finalized = {key: value for key, value in self._entries.items() if value is not None}
        return {key: finalized[key] for key in sorted(finalized)}
