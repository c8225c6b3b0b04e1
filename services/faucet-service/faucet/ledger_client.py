"""Clients for the external ledger that executes token transfers."""

from __future__ import annotations

import logging
import re
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import httpx

from .domain.errors import AmbiguousOutcome, PermanentSubmissionError, TransientNetworkError

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")


class LedgerStatus(str, Enum):
    # the ledger has no transfer under the idempotency key
    unknown = "unknown"
    # accepted but not settled yet
    pending = "pending"
    success = "success"
    failure = "failure"


_IN_FLIGHT_STATUSES = frozenset({"pending", "processing", "submitted", "in_flight"})


@dataclass(frozen=True, slots=True)
class SubmitReceipt:
    tx_reference: str


@dataclass(frozen=True, slots=True)
class LedgerStatusReport:
    status: LedgerStatus
    tx_reference: str | None = None
    detail: str | None = None


class LedgerClient(Protocol):
    def submit(self, destination: str, amount: int, idempotency_key: str) -> SubmitReceipt:
        """Submit a transfer; retries with the same key must not move tokens twice."""
        ...

    def query_status(self, idempotency_key: str) -> LedgerStatusReport: ...


class HttpLedgerClient:
    """Ledger gateway spoken to over HTTP with explicit connect/read timeouts.

    Errors raised before the request left the process are transient. Errors after
    it may have been received (read timeouts, dropped connections, most 5xx) are
    ambiguous and must be reconciled before any terminal decision.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float,
        api_key: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
        )

    def submit(self, destination: str, amount: int, idempotency_key: str) -> SubmitReceipt:
        try:
            response = self._client.post(
                "/transfers",
                json={"destination": destination, "amount": amount, "idempotency_key": idempotency_key},
                headers={"Idempotency-Key": idempotency_key},
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            raise TransientNetworkError(f"ledger unreachable: {exc}") from exc
        except httpx.TransportError as exc:
            raise AmbiguousOutcome(f"ledger response lost: {exc}") from exc

        if response.status_code in (429, 503):
            raise TransientNetworkError(f"ledger busy: HTTP {response.status_code}")
        if response.status_code >= 500:
            raise AmbiguousOutcome(f"ledger error: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise PermanentSubmissionError(_error_detail(response))

        body = _json_object(response)
        if body is None:
            raise AmbiguousOutcome(f"ledger accepted the transfer with an unreadable body: HTTP {response.status_code}")
        tx_reference = body.get("tx_reference")
        if not tx_reference:
            raise AmbiguousOutcome("ledger accepted the transfer without a tx reference")
        return SubmitReceipt(tx_reference=tx_reference)

    def query_status(self, idempotency_key: str) -> LedgerStatusReport:
        try:
            response = self._client.get(f"/transfers/{idempotency_key}")
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"ledger status query failed: {exc}") from exc

        if response.status_code == 404:
            return LedgerStatusReport(status=LedgerStatus.unknown)
        if response.status_code >= 400:
            raise TransientNetworkError(f"ledger status query failed: HTTP {response.status_code}")

        body = _json_object(response)
        if body is None:
            raise TransientNetworkError(f"ledger status query returned an unreadable body: HTTP {response.status_code}")
        raw_status = str(body.get("status", "")).lower()
        if raw_status == "success":
            status = LedgerStatus.success
        elif raw_status == "failure":
            status = LedgerStatus.failure
        elif raw_status in _IN_FLIGHT_STATUSES:
            status = LedgerStatus.pending
        else:
            raise TransientNetworkError(f"ledger reported an unrecognised status {raw_status!r}")
        return LedgerStatusReport(status=status, tx_reference=body.get("tx_reference"), detail=body.get("detail"))

    def close(self) -> None:
        self._client.close()


def _json_object(response: httpx.Response) -> dict | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    detail = body.get("detail") if isinstance(body, dict) else None
    return f"HTTP {response.status_code}: {detail or body}"


class InMemoryLedgerClient:
    """Process-local ledger stand-in for development; idempotent per key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._transfers: dict[str, tuple[str, str, int]] = {}

    def submit(self, destination: str, amount: int, idempotency_key: str) -> SubmitReceipt:
        if not _ADDRESS_RE.match(destination):
            raise PermanentSubmissionError(f"invalid destination address {destination!r}")
        with self._lock:
            existing = self._transfers.get(idempotency_key)
            if existing is None:
                existing = (f"mock-tx-{uuid.uuid4().hex}", destination, amount)
                self._transfers[idempotency_key] = existing
                logger.info("mock ledger transfer destination=%s amount=%s", destination, amount)
        return SubmitReceipt(tx_reference=existing[0])

    def query_status(self, idempotency_key: str) -> LedgerStatusReport:
        with self._lock:
            existing = self._transfers.get(idempotency_key)
        if existing is None:
            return LedgerStatusReport(status=LedgerStatus.unknown)
        return LedgerStatusReport(status=LedgerStatus.success, tx_reference=existing[0])

    @property
    def transfer_count(self) -> int:
        with self._lock:
            return len(self._transfers)
