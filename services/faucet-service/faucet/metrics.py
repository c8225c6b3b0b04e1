"""Prometheus instruments exported on ``/metrics``."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

RESERVATIONS = Counter(
    "faucet_quota_reservations_total",
    "Quota reservation attempts by outcome.",
    ["outcome"],
)

DISBURSEMENTS = Counter(
    "faucet_disbursements_total",
    "Disbursement requests reaching a terminal state or the stuck state.",
    ["status"],
)

SUBMISSION_ATTEMPTS = Counter(
    "faucet_ledger_submissions_total",
    "Ledger submission calls by result.",
    ["result"],
)

RECONCILIATIONS = Counter(
    "faucet_reconciliations_total",
    "Ledger status queries issued to settle an uncertain submission, by result.",
    ["result"],
)

SUBMISSION_LATENCY = Histogram(
    "faucet_ledger_submit_seconds",
    "Latency of ledger submission calls.",
)

OLDEST_OPEN_REQUEST_AGE = Gauge(
    "faucet_oldest_open_request_age_seconds",
    "Age of the oldest non-terminal disbursement request seen by the last worker poll.",
)
