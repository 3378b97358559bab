import json
import logging

import httpx
import pytest

from stx402_client.classifier import ErrorClassification
from stx402_client.codec import decode_payment_payload
from stx402_client.config import RetryConfig
from stx402_client.errors import (
    NonceConflictError,
    PaymentRejectedError,
    ProtocolError,
    SignerError,
    TransientError,
)
from stx402_client.retry import FlowStatus, RetryPhase

from stub_server import (
    AsyncRecordingSigner,
    RecordingSigner,
    SleepRecorder,
    StubServer,
    coordinator_for,
    legacy_terms,
    paid_ok,
    versioned_terms,
)


@pytest.mark.asyncio
async def test_flat_terms_paid_on_first_attempt():
    legacy_settlement = json.dumps({"success": True, "txId": "0xfeed", "network": "testnet"})
    server = StubServer(
        [httpx.Response(200, json={"ok": True}, headers={"X-PAYMENT-RESPONSE": legacy_settlement})],
        terms=legacy_terms,
    )
    sleeps = SleepRecorder()

    async with coordinator_for(server, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.SUCCEEDED
    assert result.ok
    assert result.retry_count == 0
    assert result.attempts == 1
    assert result.data == {"ok": True}
    assert result.settlement is not None
    assert result.settlement.transaction == "0xfeed"
    assert sleeps.calls == []

    paid = server.paid_requests[0]
    assert paid.headers["X-PAYMENT"] == "signed-nonce-1"
    assert paid.headers["X-PAYMENT-TOKEN-TYPE"] == "STX"


@pytest.mark.asyncio
async def test_rate_limited_submissions_honor_retry_after():
    rate_limited = [
        httpx.Response(429, json={"error": "Too many requests"}, headers={"Retry-After": "2"})
        for _ in range(3)
    ]
    server = StubServer(rate_limited + [paid_ok()])
    signer = RecordingSigner()
    sleeps = SleepRecorder()

    async with coordinator_for(server, signer=signer, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.SUCCEEDED
    assert result.retry_count == 3
    assert result.was_nonce_conflict is False
    assert sleeps.ms == [2000, 2000, 2000]
    assert result.delays_ms == [2000, 2000, 2000]
    # Every attempt re-probed and signed a fresh nonce.
    assert server.probes == 4
    assert signer.nonces == ["nonce-1", "nonce-2", "nonce-3", "nonce-4"]
    assert result.settlement.transaction == "0xabc"


@pytest.mark.asyncio
async def test_nonce_conflict_waits_conflict_delay_and_refetches_terms():
    server = StubServer(
        [
            httpx.Response(500, json={"error": "Transaction rejected: nonce too low"}),
            paid_ok(),
        ]
    )
    signer = RecordingSigner()
    sleeps = SleepRecorder()
    config = RetryConfig(base_delay_ms=1000, max_delay_ms=8000, nonce_conflict_delay_ms=45_000)

    async with coordinator_for(server, signer=signer, config=config, sleep=sleeps) as coordinator:
        result = await coordinator.request("POST", "/paid", json={"value": 1})

    assert result.status is FlowStatus.SUCCEEDED
    assert result.was_nonce_conflict is True
    assert result.retry_count == 1
    assert sleeps.ms == [45_000]
    assert signer.nonces == ["nonce-1", "nonce-2"]

    first, second = (decode_payment_payload(r.headers["PAYMENT-SIGNATURE"]) for r in server.paid_requests)
    assert first.accepted.extra["nonce"] == "nonce-1"
    assert second.accepted.extra["nonce"] == "nonce-2"
    assert second.payload == {"transaction": "signed-nonce-2"}


@pytest.mark.asyncio
async def test_submissions_are_bounded_by_max_retries():
    server = StubServer([httpx.Response(503, text="Service Unavailable") for _ in range(10)])
    sleeps = SleepRecorder()
    config = RetryConfig(max_retries=2)

    async with coordinator_for(server, config=config, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.EXHAUSTED
    assert not result.ok
    assert result.attempts == 3
    assert len(server.paid_requests) == 3
    assert result.retry_count == 2
    assert sleeps.ms == [1000, 2000]
    assert isinstance(result.error, TransientError)
    assert result.error.status == 503
    assert result.status_code == 503
    assert result.classification is ErrorClassification.RETRYABLE


@pytest.mark.asyncio
async def test_repeated_nonce_conflicts_exhaust_with_conflict_error():
    conflict = {"error": "Settlement failed", "details": {"errorReason": "ConflictingNonceInMempool"}}
    server = StubServer([httpx.Response(400, json=conflict) for _ in range(3)])
    config = RetryConfig(max_retries=1, nonce_conflict_delay_ms=5000)
    sleeps = SleepRecorder()

    async with coordinator_for(server, config=config, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.EXHAUSTED
    assert result.attempts == 2
    assert sleeps.ms == [5000]
    assert isinstance(result.error, NonceConflictError)
    assert result.error.payload == conflict


@pytest.mark.asyncio
async def test_fatal_failure_is_not_retried():
    server = StubServer([httpx.Response(400, json={"error": "Insufficient funds", "code": "INSUFFICIENT_FUNDS"})])
    sleeps = SleepRecorder()

    async with coordinator_for(server, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.FAILED
    assert result.classification is ErrorClassification.FATAL
    assert result.attempts == 1
    assert sleeps.calls == []
    assert isinstance(result.error, PaymentRejectedError)
    assert result.error.code == "INSUFFICIENT_FUNDS"
    assert "Insufficient funds" in str(result.error)


@pytest.mark.asyncio
async def test_signer_failure_fails_without_submitting():
    server = StubServer([paid_ok()])
    signer = RecordingSigner(error=RuntimeError("invalid key"))

    async with coordinator_for(server, signer=signer) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.FAILED
    assert result.classification is ErrorClassification.FATAL
    assert isinstance(result.error, SignerError)
    assert isinstance(result.error.__cause__, RuntimeError)
    assert result.attempts == 0
    assert server.paid_requests == []


@pytest.mark.asyncio
async def test_async_signer_is_awaited():
    server = StubServer([paid_ok()])
    signer = AsyncRecordingSigner()

    async with coordinator_for(server, signer=signer) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.ok
    assert signer.nonces == ["nonce-1"]


@pytest.mark.asyncio
async def test_unsupported_version_is_protocol_error():
    def terms(nonce):
        body = versioned_terms(nonce)
        body["x402Version"] = 1
        return body

    server = StubServer(terms=terms)
    signer = RecordingSigner()

    async with coordinator_for(server, signer=signer) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.FAILED
    assert isinstance(result.error, ProtocolError)
    assert result.error.payload["x402Version"] == 1
    assert result.status_code == 402
    assert signer.requests == []


@pytest.mark.asyncio
async def test_non_payment_response_passes_through():
    def handler(request):
        return httpx.Response(404, json={"error": "no such resource"})

    signer = RecordingSigner()
    async with coordinator_for(handler, signer=signer) as coordinator:
        result = await coordinator.request("GET", "/missing")

    assert result.status is FlowStatus.PASSED_THROUGH
    assert not result.ok
    assert result.status_code == 404
    assert result.error is None
    assert signer.requests == []


@pytest.mark.asyncio
async def test_transport_error_during_submission_is_retried():
    request = httpx.Request("GET", "http://api.test/paid")
    server = StubServer([httpx.ConnectError("connection reset", request=request), paid_ok()])
    sleeps = SleepRecorder()

    async with coordinator_for(server, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.SUCCEEDED
    assert result.retry_count == 1
    assert sleeps.ms == [1000]
    assert server.probes == 2


@pytest.mark.asyncio
async def test_caller_body_and_headers_are_resent_with_payment():
    server = StubServer([paid_ok()])

    async with coordinator_for(server) as coordinator:
        await coordinator.request("POST", "/paid", json={"text": "hello"}, headers={"X-Trace": "t-1"})

    paid = server.paid_requests[0]
    assert json.loads(paid.content) == {"text": "hello"}
    assert paid.headers["X-Trace"] == "t-1"
    assert "PAYMENT-SIGNATURE" in paid.headers


@pytest.mark.asyncio
async def test_each_transition_can_be_stepped():
    server = StubServer(
        [httpx.Response(429, json={"error": "slow down"}, headers={"Retry-After": "3"}), paid_ok()]
    )
    sleeps = SleepRecorder()

    async with coordinator_for(server, sleep=sleeps) as coordinator:
        state = coordinator.new_state("GET", "/paid")
        assert state.phase is RetryPhase.IDLE

        assert await coordinator.step(state) is RetryPhase.FETCHING_TERMS
        assert await coordinator.step(state) is RetryPhase.SIGNING
        assert state.signing_request.nonce == "nonce-1"
        assert await coordinator.step(state) is RetryPhase.SUBMITTING
        assert state.signed_transaction == "signed-nonce-1"
        assert await coordinator.step(state) is RetryPhase.EVALUATING
        assert state.response.status == 429
        assert await coordinator.step(state) is RetryPhase.SLEEPING
        assert state.delay_ms == 3000
        assert await coordinator.step(state) is RetryPhase.FETCHING_TERMS
        assert sleeps.ms == [3000]
        assert state.retry_count == 1
        assert state.terms is None and state.response is None

        while state.phase not in (RetryPhase.DONE, RetryPhase.FAILED):
            await coordinator.step(state)

    assert state.phase is RetryPhase.DONE
    assert coordinator.result_for(state).status is FlowStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_verbose_logs_attempts_and_warns_on_retry(caplog):
    server = StubServer([httpx.Response(502, text="Bad Gateway"), paid_ok()])
    caplog.set_level(logging.INFO, logger="stx402_client.retry")

    async with coordinator_for(server, config=RetryConfig(verbose=True)) as coordinator:
        await coordinator.request("GET", "/paid")

    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("Attempt 1/4") for message in messages)
    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "retrying in 1000 ms" in warnings[0].getMessage()


@pytest.mark.asyncio
async def test_nonce_conflict_reported_under_detail_key():
    server = StubServer([httpx.Response(500, json={"detail": "nonce too low"}), paid_ok()])
    sleeps = SleepRecorder()

    async with coordinator_for(server, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.status is FlowStatus.SUCCEEDED
    assert result.was_nonce_conflict is True
    assert result.delays_ms == [30_000]


@pytest.mark.asyncio
async def test_zero_retry_after_resubmits_without_waiting():
    server = StubServer(
        [httpx.Response(429, json={"error": "slow down"}, headers={"Retry-After": "0"}), paid_ok()]
    )
    sleeps = SleepRecorder()

    async with coordinator_for(server, sleep=sleeps) as coordinator:
        result = await coordinator.request("GET", "/paid")

    assert result.ok
    assert result.retry_count == 1
    assert sleeps.ms == [0]
