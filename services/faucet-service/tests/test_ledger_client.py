from __future__ import annotations

import httpx
import pytest

from faucet.domain.account import Channel
from faucet.domain.contracts import MintInput
from faucet.domain.disbursement import DisbursementStatus
from faucet.domain.errors import AmbiguousOutcome, PermanentSubmissionError, TransientNetworkError
from faucet.ledger_client import HttpLedgerClient, LedgerStatus
from faucet.worker import SubmissionWorker

from conftest import DESTINATION


def _client(handler) -> HttpLedgerClient:
    transport = httpx.MockTransport(handler)
    return HttpLedgerClient(
        "https://ledger.test",
        timeout_seconds=1,
        client=httpx.Client(base_url="https://ledger.test", transport=transport),
    )


def test_submit_sends_the_idempotency_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"tx_reference": "0xfeed"})

    receipt = _client(handler).submit(DESTINATION, 100, "request-1")
    assert receipt.tx_reference == "0xfeed"
    assert seen[0].headers["Idempotency-Key"] == "request-1"
    assert seen[0].url.path == "/transfers"


@pytest.mark.parametrize(
    ("status_code", "error"),
    [
        (429, TransientNetworkError),
        (503, TransientNetworkError),
        (500, AmbiguousOutcome),
        (502, AmbiguousOutcome),
        (400, PermanentSubmissionError),
        (422, PermanentSubmissionError),
    ],
)
def test_submit_classifies_http_errors(status_code, error):
    client = _client(lambda request: httpx.Response(status_code, json={"detail": "nope"}))
    with pytest.raises(error):
        client.submit(DESTINATION, 100, "request-1")


def test_connect_failure_is_transient_and_read_timeout_is_ambiguous():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    def hang(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientNetworkError):
        _client(refuse).submit(DESTINATION, 100, "request-1")
    with pytest.raises(AmbiguousOutcome):
        _client(hang).submit(DESTINATION, 100, "request-1")


def test_accepted_without_reference_is_ambiguous():
    with pytest.raises(AmbiguousOutcome):
        _client(lambda request: httpx.Response(200, json={})).submit(DESTINATION, 100, "request-1")


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(404), LedgerStatus.unknown),
        (httpx.Response(200, json={"status": "pending", "tx_reference": "0xinflight"}), LedgerStatus.pending),
        (httpx.Response(200, json={"status": "success", "tx_reference": "0xabc"}), LedgerStatus.success),
        (httpx.Response(200, json={"status": "FAILURE", "detail": "reverted"}), LedgerStatus.failure),
    ],
)
def test_query_status_maps_ledger_states(response, expected):
    report = _client(lambda request: response).query_status("request-1")
    assert report.status is expected


def test_query_status_errors_are_transient():
    with pytest.raises(TransientNetworkError):
        _client(lambda request: httpx.Response(500)).query_status("request-1")


def test_unreadable_bodies_stay_inside_the_error_taxonomy():
    def html(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(AmbiguousOutcome):
        _client(html).submit(DESTINATION, 100, "request-1")
    with pytest.raises(TransientNetworkError):
        _client(html).query_status("request-1")
    with pytest.raises(TransientNetworkError):
        _client(lambda request: httpx.Response(200, json=["success"])).query_status("request-1")


def test_unrecognised_status_is_not_read_as_a_missing_transfer():
    client = _client(lambda request: httpx.Response(200, json={"status": "queued-ish"}))
    with pytest.raises(TransientNetworkError):
        client.query_status("request-1")


def _gateway(status_response: httpx.Response):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(504)
        return status_response

    return handler


def _submit_once(service, store, clock, handler):
    worker = SubmissionWorker(
        store,
        service.ledger,
        _client(handler),
        worker_id="worker-1",
        max_attempts=1,
        reconcile_attempts=2,
        reconcile_interval_seconds=0,
        clock=clock,
        sleep=lambda seconds: None,
    )
    outcome = service.mint(MintInput(channel=Channel.telegram, handle="alice", destination=DESTINATION))
    assert worker.run_once() is True
    return service.get_request(outcome.request.request_id)


def test_gateway_timeout_with_transfer_in_flight_is_not_failed(service, store, clock):
    status = httpx.Response(200, json={"status": "pending", "tx_reference": "0xinflight"})
    request = _submit_once(service, store, clock, _gateway(status))

    assert request.status is DisbursementStatus.processing
    assert request.needs_reconciliation is True
    assert request.tx_reference == "0xinflight"
    assert service.ledger.snapshot(request.account_id).reserved == 100


def test_gateway_timeout_with_unreadable_status_is_flagged(service, store, clock):
    request = _submit_once(service, store, clock, _gateway(httpx.Response(200, text="<html>gateway</html>")))

    assert request.status is DisbursementStatus.processing
    assert request.needs_reconciliation is True
    assert request.last_error.startswith("reconciliation failed")
    assert service.ledger.snapshot(request.account_id).reserved == 100


def test_gateway_timeout_with_no_ledger_record_is_flagged(service, store, clock):
    request = _submit_once(service, store, clock, _gateway(httpx.Response(404)))

    assert request.status is DisbursementStatus.processing
    assert request.needs_reconciliation is True
    assert service.ledger.snapshot(request.account_id).reserved == 100
