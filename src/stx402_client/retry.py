"""Payment retry coordinator.

One logical request runs through an explicit state machine::

    IDLE -> FETCHING_TERMS -> SIGNING -> SUBMITTING -> EVALUATING
                 ^                                        |
                 +---------------- SLEEPING <-------------+
    EVALUATING -> DONE | FAILED

Every loop re-probes the endpoint for fresh payment terms, so a nonce issued
for a failed attempt is never signed twice.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx
from x402.schemas import SettleResponse

from .classifier import (
    ClassifiedError,
    ErrorClassification,
    ErrorClassifier,
    RawErrorBody,
    compute_delay_ms,
    error_for,
)
from .codec import build_payment_headers, decode_settlement
from .config import RetryConfig
from .constants import PAYMENT_REQUIRED_STATUS
from .errors import ProtocolError, SignerError, TransientError, X402ClientError
from .executor import HttpResponse, RequestExecutor
from .requirements import PaymentTerms, SigningRequest, parse_payment_required, to_signing_request
from .signers import PaymentSigner

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class RetryPhase(str, Enum):
    IDLE = "idle"
    FETCHING_TERMS = "fetching_terms"
    SIGNING = "signing"
    SUBMITTING = "submitting"
    EVALUATING = "evaluating"
    SLEEPING = "sleeping"
    DONE = "done"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({RetryPhase.DONE, RetryPhase.FAILED})


class FlowStatus(str, Enum):
    SUCCEEDED = "succeeded"
    # The endpoint answered without asking for payment.
    PASSED_THROUGH = "passed_through"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass
class RetryState:
    """Mutable bookkeeping for one ``request()`` call. Never shared."""

    method: str
    url: str
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    phase: RetryPhase = RetryPhase.IDLE
    attempt: int = 0
    retry_count: int = 0
    was_nonce_conflict: bool = False
    submissions: int = 0
    delays_ms: List[int] = field(default_factory=list)
    outcome: Optional[FlowStatus] = None
    error: Optional[X402ClientError] = None
    # Per-attempt scratch, cleared before each re-probe.
    terms: Optional[PaymentTerms] = None
    signing_request: Optional[SigningRequest] = None
    signed_transaction: Optional[str] = None
    response: Optional[HttpResponse] = None
    classified: Optional[ClassifiedError] = None
    delay_ms: Optional[int] = None

    def reset_attempt(self) -> None:
        self.terms = None
        self.signing_request = None
        self.signed_transaction = None
        self.response = None
        self.classified = None
        self.delay_ms = None


@dataclass
class PaymentResult:
    status: FlowStatus
    response: Optional[HttpResponse] = None
    settlement: Optional[SettleResponse] = None
    error: Optional[X402ClientError] = None
    classification: Optional[ErrorClassification] = None
    retry_count: int = 0
    was_nonce_conflict: bool = False
    attempts: int = 0
    delays_ms: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        if self.status not in (FlowStatus.SUCCEEDED, FlowStatus.PASSED_THROUGH):
            return False
        return self.response is not None and self.response.is_success

    @property
    def status_code(self) -> Optional[int]:
        return self.response.status if self.response is not None else None

    @property
    def data(self) -> Any:
        return self.response.body if self.response is not None else None


def _preview(value: Optional[str], size: int = 16) -> str:
    if not value:
        return ""
    return value if len(value) <= size else value[:size] + "..."


class RetryCoordinator:
    """Wraps one logical request in the 402 pay-and-retry envelope.

    The coordinator assumes exclusive use of the signer's key for the duration
    of a flow; attempts are strictly sequential.
    """

    def __init__(
        self,
        signer: PaymentSigner,
        config: Optional[RetryConfig] = None,
        executor: Optional[RequestExecutor] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._signer = signer
        self._config = config or RetryConfig()
        self._owns_executor = executor is None
        self._executor = executor or RequestExecutor()
        self._classifier = classifier or ErrorClassifier.from_config(self._config)
        self._sleep = sleep
        self._log_level = logging.INFO if self._config.verbose else logging.DEBUG
        self._handlers: Dict[RetryPhase, Callable[[RetryState], Awaitable[RetryPhase]]] = {
            RetryPhase.IDLE: self._on_idle,
            RetryPhase.FETCHING_TERMS: self._on_fetching_terms,
            RetryPhase.SIGNING: self._on_signing,
            RetryPhase.SUBMITTING: self._on_submitting,
            RetryPhase.EVALUATING: self._on_evaluating,
            RetryPhase.SLEEPING: self._on_sleeping,
        }

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def executor(self) -> RequestExecutor:
        return self._executor

    async def aclose(self) -> None:
        if self._owns_executor:
            await self._executor.aclose()

    async def __aenter__(self) -> "RetryCoordinator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def new_state(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RetryState:
        return RetryState(method=method.upper(), url=url, json=json, headers=dict(headers or {}))

    async def step(self, state: RetryState) -> RetryPhase:
        """Run the handler for ``state.phase`` and advance to the phase it returns."""
        if state.phase in TERMINAL_PHASES:
            return state.phase
        next_phase = await self._handlers[state.phase](state)
        logger.debug("%s %s: %s -> %s", state.method, state.url, state.phase.value, next_phase.value)
        state.phase = next_phase
        return next_phase

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> PaymentResult:
        state = self.new_state(method, url, json=json, headers=headers)
        while state.phase not in TERMINAL_PHASES:
            await self.step(state)
        return self.result_for(state)

    def result_for(self, state: RetryState) -> PaymentResult:
        settlement = None
        if state.outcome is FlowStatus.SUCCEEDED and state.response is not None:
            network = state.signing_request.network if state.signing_request else ""
            settlement = decode_settlement(state.response, network=network)
        return PaymentResult(
            status=state.outcome or FlowStatus.FAILED,
            response=state.response,
            settlement=settlement,
            error=state.error,
            classification=state.classified.classification if state.classified else None,
            retry_count=state.retry_count,
            was_nonce_conflict=state.was_nonce_conflict,
            attempts=state.submissions,
            delays_ms=list(state.delays_ms),
        )

    # -- transitions -------------------------------------------------------

    async def _on_idle(self, state: RetryState) -> RetryPhase:
        return RetryPhase.FETCHING_TERMS

    async def _on_fetching_terms(self, state: RetryState) -> RetryPhase:
        try:
            probe = await self._executor.execute(
                state.method, state.url, json=state.json, headers=state.headers
            )
        except httpx.TransportError as exc:
            self._record_transport_failure(state, "probe", exc)
            return RetryPhase.EVALUATING

        if probe.status != PAYMENT_REQUIRED_STATUS:
            state.response = probe
            state.outcome = FlowStatus.PASSED_THROUGH
            logger.log(
                self._log_level,
                "%s %s answered %d without payment",
                state.method,
                state.url,
                probe.status,
            )
            return RetryPhase.DONE

        try:
            state.terms = parse_payment_required(probe.body)
            state.signing_request = to_signing_request(state.terms, self._config)
        except ProtocolError as exc:
            return self._fail(state, exc, response=probe)

        logger.log(
            self._log_level,
            "Attempt %d/%d: %s %s requires %s %s (nonce %s)",
            state.attempt + 1,
            self._config.max_retries + 1,
            state.method,
            state.url,
            state.signing_request.max_amount_required,
            state.signing_request.token_type,
            state.signing_request.nonce,
        )
        return RetryPhase.SIGNING

    async def _on_signing(self, state: RetryState) -> RetryPhase:
        try:
            signed = self._signer.sign_payment(state.signing_request)
            if inspect.isawaitable(signed):
                signed = await signed
        except Exception as exc:
            error = SignerError(f"Signer failed: {exc}", payload=repr(exc))
            error.__cause__ = exc
            return self._fail(state, error)

        if not isinstance(signed, str) or not signed:
            return self._fail(state, SignerError("Signer returned an empty transaction"))

        state.signed_transaction = signed
        logger.debug("Signed transaction %s", _preview(signed))
        return RetryPhase.SUBMITTING

    async def _on_submitting(self, state: RetryState) -> RetryPhase:
        headers = dict(state.headers)
        headers.update(
            build_payment_headers(state.signed_transaction, state.terms, state.signing_request)
        )
        state.submissions += 1
        try:
            state.response = await self._executor.execute(
                state.method, state.url, json=state.json, headers=headers
            )
        except httpx.TransportError as exc:
            self._record_transport_failure(state, "submission", exc)
        return RetryPhase.EVALUATING

    async def _on_evaluating(self, state: RetryState) -> RetryPhase:
        if state.classified is None and state.response is not None and state.response.is_success:
            state.outcome = FlowStatus.SUCCEEDED
            logger.log(
                self._log_level,
                "%s %s paid after %d retries",
                state.method,
                state.url,
                state.retry_count,
            )
            return RetryPhase.DONE

        if state.classified is None:
            state.classified = self._classifier.classify_response(state.response)
        classified = state.classified
        state.error = error_for(classified) if state.error is None else state.error

        if classified.classification is ErrorClassification.NONCE_CONFLICT:
            state.was_nonce_conflict = True

        if classified.classification is ErrorClassification.FATAL:
            state.outcome = FlowStatus.FAILED
            logger.log(self._log_level, "Giving up on %s %s: %s", state.method, state.url, state.error)
            return RetryPhase.FAILED

        if state.attempt >= self._config.max_retries:
            state.outcome = FlowStatus.EXHAUSTED
            logger.log(
                self._log_level,
                "Retries exhausted for %s %s after %d attempts: %s",
                state.method,
                state.url,
                state.attempt + 1,
                state.error,
            )
            return RetryPhase.FAILED

        state.delay_ms = compute_delay_ms(
            state.attempt, classified.classification, self._config, classified.retry_after
        )
        logger.warning(
            "%s %s failed (%s, status %s); retrying in %d ms (%d/%d)",
            state.method,
            state.url,
            classified.classification.value,
            classified.status,
            state.delay_ms,
            state.attempt + 1,
            self._config.max_retries,
        )
        return RetryPhase.SLEEPING

    async def _on_sleeping(self, state: RetryState) -> RetryPhase:
        delay_ms = state.delay_ms or 0
        await self._sleep(delay_ms / 1000)
        state.delays_ms.append(delay_ms)
        state.retry_count += 1
        state.attempt += 1
        state.error = None
        state.reset_attempt()
        return RetryPhase.FETCHING_TERMS

    # -- helpers -----------------------------------------------------------

    def _fail(
        self,
        state: RetryState,
        error: X402ClientError,
        *,
        response: Optional[HttpResponse] = None,
    ) -> RetryPhase:
        state.error = error
        state.response = response if response is not None else state.response
        state.classified = ClassifiedError(
            classification=ErrorClassification.FATAL,
            status=error.status,
            body=RawErrorBody(str(error)),
        )
        state.outcome = FlowStatus.FAILED
        logger.log(self._log_level, "%s %s failed: %s", state.method, state.url, error)
        return RetryPhase.FAILED

    def _record_transport_failure(self, state: RetryState, stage: str, exc: Exception) -> None:
        message = f"Network error during {stage}: {exc}"
        state.error = TransientError(message, code="NETWORK_ERROR", payload=str(exc))
        state.classified = ClassifiedError(
            classification=ErrorClassification.RETRYABLE,
            status=None,
            body=RawErrorBody(message),
        )
