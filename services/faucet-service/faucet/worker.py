"""Submission worker draining the disbursement queue into the external ledger.

State machine per request: ``pending -> processing -> completed | failed``.
Retries keep the request in ``processing`` and push its lease expiry out by the
backoff delay, so redelivery after a crash and a scheduled retry share one path.
Before any terminal decision on an uncertain submission the ledger is queried by
idempotency key, so quota is never released for a transfer that actually landed.
"""

from __future__ import annotations

import argparse
import logging
import signal
import socket
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from . import metrics
from .domain.disbursement import DisbursementRequest, DisbursementStatus
from .domain.errors import (
    AmbiguousOutcome,
    PermanentSubmissionError,
    StorageUnavailable,
    SubmissionError,
    TransientNetworkError,
)
from .domain.ledger import AccountLedger, utc_now
from .domain.ports import FaucetStore
from .ledger_client import LedgerClient, LedgerStatus, LedgerStatusReport

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff for the given 1-based attempt number, capped at ``max_seconds``."""
    return min(base_seconds * (2 ** max(attempt - 1, 0)), max_seconds)


class SubmissionWorker:
    def __init__(
        self,
        store: FaucetStore,
        ledger: AccountLedger,
        client: LedgerClient,
        *,
        worker_id: str | None = None,
        lease_seconds: float = 60.0,
        max_attempts: int = 5,
        backoff_seconds: float = 2.0,
        backoff_max_seconds: float = 120.0,
        reconcile_attempts: int = 3,
        reconcile_interval_seconds: float = 1.0,
        poll_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._store = store
        self._ledger = ledger
        self._client = client
        self._lease_seconds = lease_seconds
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._reconcile_attempts = max(reconcile_attempts, 1)
        self._reconcile_interval_seconds = reconcile_interval_seconds
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(cls, store, ledger, client, settings, **overrides) -> "SubmissionWorker":
        options = dict(
            lease_seconds=settings.lease_seconds,
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            backoff_max_seconds=settings.retry_backoff_max_seconds,
            reconcile_attempts=settings.reconcile_attempts,
            reconcile_interval_seconds=settings.reconcile_interval_seconds,
            poll_seconds=settings.worker_poll_seconds,
        )
        options.update(overrides)
        return cls(store, ledger, client, **options)

    # loop -----------------------------------------------------------------

    def run_once(self) -> bool:
        """Lease and process one request. Returns ``False`` when nothing was due."""
        request = self._store.lease_next(self.worker_id, self._lease_seconds, self._clock())
        if request is None:
            return False
        logger.debug(
            "disbursement leased request_id=%s attempt=%s worker=%s",
            request.request_id,
            request.attempts,
            self.worker_id,
        )
        self.process(request)
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("submission worker started worker=%s", self.worker_id)
        while not stop_event.is_set():
            try:
                worked = self.run_once()
            except StorageUnavailable as exc:
                logger.warning("storage unavailable, backing off worker=%s: %s", self.worker_id, exc)
                worked = False
            except Exception:  # keep the loop alive; the lease makes the request redeliverable
                logger.exception("unexpected worker error worker=%s", self.worker_id)
                worked = False
            if not worked:
                self.observe_backlog()
                stop_event.wait(self._poll_seconds)
        logger.info("submission worker stopped worker=%s", self.worker_id)

    def observe_backlog(self) -> None:
        now = self._clock()
        oldest = [
            rows[0].age_seconds(now)
            for status in (DisbursementStatus.pending, DisbursementStatus.processing)
            if (rows := self._store.list_requests(status=status, limit=1))
        ]
        metrics.OLDEST_OPEN_REQUEST_AGE.set(max(oldest) if oldest else 0)

    # state machine --------------------------------------------------------

    def process(self, request: DisbursementRequest) -> None:
        if request.submitted_at is not None:
            # An earlier delivery may already have reached the ledger.
            report = self._query_once(request)
            if report is not None and report.status is LedgerStatus.success:
                self._complete(request, report.tx_reference or request.tx_reference)
                return
            if report is not None and report.status is LedgerStatus.failure:
                self._fail(request, f"ledger reports failure: {report.detail or 'no detail'}")
                return
        if request.attempts > self._max_attempts:
            self._settle_after_budget(request)
            return
        self._submit(request)

    def _submit(self, request: DisbursementRequest) -> None:
        now = self._clock()
        marked = replace(request, submitted_at=now, updated_at=now)
        if not self._save(marked):
            return
        try:
            with metrics.SUBMISSION_LATENCY.time():
                receipt = self._client.submit(request.destination, request.amount, request.request_id)
        except PermanentSubmissionError as exc:
            metrics.SUBMISSION_ATTEMPTS.labels(result="permanent_error").inc()
            self._fail(marked, str(exc), tx_reference=exc.tx_reference)
            return
        except (TransientNetworkError, AmbiguousOutcome) as exc:
            metrics.SUBMISSION_ATTEMPTS.labels(result=exc.code).inc()
            self._retry_or_settle(marked, exc)
            return
        metrics.SUBMISSION_ATTEMPTS.labels(result="accepted").inc()
        self._complete(marked, receipt.tx_reference)

    def _retry_or_settle(self, request: DisbursementRequest, exc: SubmissionError) -> None:
        request = replace(
            request,
            last_error=f"{exc.code}: {exc}",
            tx_reference=exc.tx_reference or request.tx_reference,
        )
        if request.attempts >= self._max_attempts:
            self._settle_after_budget(request)
            return
        delay = backoff_delay(request.attempts, self._backoff_seconds, self._backoff_max_seconds)
        now = self._clock()
        rescheduled = replace(request, lease_expires_at=now + timedelta(seconds=delay), updated_at=now)
        if self._save(rescheduled):
            logger.warning(
                "disbursement retry scheduled request_id=%s attempt=%s delay=%.1fs error=%s",
                request.request_id,
                request.attempts,
                delay,
                request.last_error,
            )

    def _settle_after_budget(self, request: DisbursementRequest) -> None:
        """Decide a request whose retries are exhausted, consulting the ledger first.

        Quota is released only when the ledger positively reports a failure, or has no
        transfer under the key and nothing suggests one was ever accepted. An in-flight
        transfer, or an unknown key after an ambiguous submission, is left for an operator.
        """
        last_exc: SubmissionError | None = None
        for attempt in range(1, self._reconcile_attempts + 1):
            try:
                report = self._client.query_status(request.request_id)
            except SubmissionError as exc:
                last_exc = exc
                metrics.RECONCILIATIONS.labels(result="error").inc()
                logger.warning(
                    "reconciliation query failed request_id=%s attempt=%s: %s",
                    request.request_id,
                    attempt,
                    exc,
                )
                if attempt < self._reconcile_attempts:
                    self._sleep(self._reconcile_interval_seconds)
                continue
            metrics.RECONCILIATIONS.labels(result=report.status.value).inc()
            if report.status is LedgerStatus.success:
                self._complete(request, report.tx_reference or request.tx_reference)
            elif report.status is LedgerStatus.failure:
                self._fail(
                    request,
                    f"retry budget exhausted ({request.last_error}); "
                    f"ledger reports failure: {report.detail or 'no detail'}",
                )
            elif report.status is LedgerStatus.pending:
                self._flag_for_reconciliation(
                    replace(request, tx_reference=report.tx_reference or request.tx_reference),
                    "ledger reports the transfer still in flight",
                )
            elif _may_have_landed(request):
                self._flag_for_reconciliation(
                    request, f"ledger has no record after an ambiguous submission ({request.last_error})"
                )
            else:
                self._fail(request, f"retry budget exhausted ({request.last_error}); ledger has no record")
            return

        self._flag_for_reconciliation(request, f"reconciliation failed: {last_exc}")

    def _flag_for_reconciliation(self, request: DisbursementRequest, reason: str) -> None:
        now = self._clock()
        stuck = replace(
            request,
            needs_reconciliation=True,
            lease_expires_at=None,
            last_error=reason,
            updated_at=now,
        )
        if self._save(stuck):
            metrics.DISBURSEMENTS.labels(status="needs_reconciliation").inc()
            logger.error(
                "disbursement needs manual reconciliation request_id=%s account_id=%s amount=%s reason=%s",
                request.request_id,
                request.account_id,
                request.amount,
                reason,
            )

    def _query_once(self, request: DisbursementRequest) -> LedgerStatusReport | None:
        try:
            report = self._client.query_status(request.request_id)
        except SubmissionError as exc:
            metrics.RECONCILIATIONS.labels(result="error").inc()
            logger.warning("redelivery status query failed request_id=%s: %s", request.request_id, exc)
            return None
        metrics.RECONCILIATIONS.labels(result=report.status.value).inc()
        return report

    def _complete(self, request: DisbursementRequest, tx_reference: str | None) -> None:
        now = self._clock()
        completed = request.transitioned(
            DisbursementStatus.completed,
            now,
            tx_reference=tx_reference,
            lease_owner=None,
            lease_expires_at=None,
            needs_reconciliation=False,
        )
        if self._save(completed):
            metrics.DISBURSEMENTS.labels(status="completed").inc()
            logger.info(
                "disbursement completed request_id=%s tx_reference=%s",
                request.request_id,
                tx_reference,
            )

    def _fail(self, request: DisbursementRequest, reason: str, tx_reference: str | None = None) -> None:
        failed = self._ledger.fail_request(
            request.request_id,
            reason,
            expected_status=DisbursementStatus.processing,
            expected_owner=self.worker_id,
            tx_reference=tx_reference or request.tx_reference,
        )
        if failed is None:
            logger.warning("lease lost before failing request_id=%s", request.request_id)

    def _save(self, request: DisbursementRequest) -> bool:
        saved = self._store.update_request(
            request,
            expected_status=DisbursementStatus.processing,
            expected_owner=self.worker_id,
        )
        if not saved:
            logger.warning(
                "lease lost request_id=%s worker=%s; leaving it to the current holder",
                request.request_id,
                self.worker_id,
            )
        return saved


def _may_have_landed(request: DisbursementRequest) -> bool:
    """True when the last submission could have reached the ledger despite the error."""
    return request.tx_reference is not None or (request.last_error or "").startswith(AmbiguousOutcome.code)


def start_worker_threads(
    factory: Callable[[int], SubmissionWorker], count: int, stop_event: threading.Event
) -> list[threading.Thread]:
    threads = []
    for index in range(count):
        worker = factory(index)
        thread = threading.Thread(
            target=worker.run_forever,
            args=(stop_event,),
            name=f"submission-worker-{index}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    return threads


def main(argv: list[str] | None = None) -> None:
    from .bootstrap import build_components, configure_logging
    from .config import get_settings

    parser = argparse.ArgumentParser(description="Drain the disbursement queue into the ledger.")
    parser.add_argument("--threads", type=int, default=1)
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)
    components = build_components(settings)
    stop_event = threading.Event()

    def _stop(signum, _frame) -> None:
        logger.info("shutdown signal received signum=%s", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    threads = start_worker_threads(components.worker_factory, max(args.threads, 1), stop_event)
    try:
        for thread in threads:
            while thread.is_alive():
                thread.join(timeout=1.0)
    finally:
        components.close()


if __name__ == "__main__":
    main()
