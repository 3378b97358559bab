"""Challenge-response authentication for ownership-gated mutations.

Both phases travel through the payment envelope: the unsigned request earns
a single-use challenge, and the signed resubmission carries
``{signature, challengeId}`` alongside the original body.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional

from pydantic import ValidationError
from x402.schemas import BaseX402Model

from .classifier import ErrorClassification, ErrorClassifier, error_for
from .errors import (
    AuthorizationError,
    NotFoundError,
    ProtocolError,
    SignerError,
    X402ClientError,
)
from .retry import FlowStatus, PaymentResult, RetryCoordinator
from .signers import StructuredDataSigner

logger = logging.getLogger(__name__)

REGISTRY_TRANSFER_PATH = "/registry/transfer"
REGISTRY_DELETE_PATH = "/registry/delete"


class Challenge(BaseX402Model):
    challenge_id: str
    message: str
    domain: str
    expires_at: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at


class ChallengeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ChallengeResult:
    status: ChallengeStatus
    classification: Optional[ErrorClassification] = None
    error: Optional[X402ClientError] = None
    challenge: Optional[Challenge] = None
    signer_address: Optional[str] = None
    # Address whose signature the server accepted.
    verified_by: Optional[str] = None
    data: Any = None
    phases: List[PaymentResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is ChallengeStatus.SUCCEEDED

    @property
    def registered_owner(self) -> Optional[str]:
        return getattr(self.error, "registered_owner", None)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class ChallengeResponseAuthenticator:
    def __init__(
        self,
        coordinator: RetryCoordinator,
        signer: StructuredDataSigner,
        clock: Optional[Callable[[], int]] = None,
        *,
        registry_base: str = "",
    ) -> None:
        self._coordinator = coordinator
        self._signer = signer
        self._clock = clock or _epoch_ms
        self._registry_base = registry_base.rstrip("/")
        self._classifier = ErrorClassifier.from_config(coordinator.config)

    async def transfer(self, url: str, owner: str, new_owner: str) -> ChallengeResult:
        body = {"url": url, "owner": owner, "newOwner": new_owner}
        return await self.authenticate("POST", self._registry_base + REGISTRY_TRANSFER_PATH, body)

    async def delete(self, url: str, owner: str) -> ChallengeResult:
        body = {"url": url, "owner": owner}
        return await self.authenticate("POST", self._registry_base + REGISTRY_DELETE_PATH, body)

    async def authenticate(
        self, method: str, url: str, body: Mapping[str, Any]
    ) -> ChallengeResult:
        """Run the challenge phase, sign once, resubmit and resolve."""
        phases: List[PaymentResult] = []

        first = await self._coordinator.request(method, url, json=dict(body))
        phases.append(first)
        failure = self._phase_failure(first, phases)
        if failure is not None:
            return failure

        data = first.data
        if not isinstance(data, dict) or not data.get("requiresSignature") or not data.get("challenge"):
            error = ProtocolError("No challenge in response", status=first.status_code, payload=data)
            return self._fatal(error, phases)

        try:
            challenge = Challenge.model_validate(data["challenge"])
        except ValidationError as exc:
            return self._fatal(
                ProtocolError(f"Invalid challenge: {exc}", status=first.status_code, payload=data),
                phases,
            )

        if challenge.is_expired(self._clock()):
            return self._fatal(
                ProtocolError(f"Challenge {challenge.challenge_id} expired before signing", payload=data),
                phases,
                challenge=challenge,
            )

        logger.debug("Signing challenge %s for %s %s", challenge.challenge_id, method, url)
        try:
            signature = self._signer.sign_structured_data(challenge.domain, challenge.message)
            if inspect.isawaitable(signature):
                signature = await signature
        except Exception as exc:
            error = SignerError(f"Signer failed: {exc}", payload=repr(exc))
            error.__cause__ = exc
            return self._fatal(error, phases, challenge=challenge)

        signed_body = dict(body)
        signed_body["signature"] = signature
        signed_body["challengeId"] = challenge.challenge_id

        second = await self._coordinator.request(method, url, json=signed_body)
        phases.append(second)
        failure = self._phase_failure(second, phases, challenge=challenge)
        if failure is not None:
            return failure

        data = second.data
        if isinstance(data, dict) and data.get("requiresSignature"):
            # Signing again could loop forever against a misbehaving server.
            return self._fatal(
                ProtocolError(
                    "Server returned another challenge instead of processing the signature",
                    status=second.status_code,
                    payload=data,
                ),
                phases,
                challenge=challenge,
            )
        if not isinstance(data, dict) or not data.get("success"):
            return self._fatal(
                ProtocolError(
                    "Unexpected response to signed request",
                    status=second.status_code,
                    payload=data,
                ),
                phases,
                challenge=challenge,
            )

        logger.info("%s %s verified by %s", method, url, self._signer.address)
        return ChallengeResult(
            status=ChallengeStatus.SUCCEEDED,
            challenge=challenge,
            signer_address=self._signer.address,
            verified_by=self._signer.address,
            data=data,
            phases=phases,
        )

    def _phase_failure(
        self,
        result: PaymentResult,
        phases: List[PaymentResult],
        *,
        challenge: Optional[Challenge] = None,
    ) -> Optional[ChallengeResult]:
        if result.ok:
            return None

        # Ownership failures surface as-is whether or not payment preceded them.
        data = result.data
        payload = data if isinstance(data, dict) else {}
        message = payload.get("error") or str(data or "")
        if result.status_code == 403:
            error: X402ClientError = AuthorizationError(
                f"Not authorized: {message}",
                payload=data,
                registered_owner=payload.get("registeredOwner"),
            )
            return self._fatal(error, phases, challenge=challenge)
        if result.status_code == 404:
            return self._fatal(
                NotFoundError(f"Not found: {message}", status=404, payload=data),
                phases,
                challenge=challenge,
            )

        if result.status in (FlowStatus.FAILED, FlowStatus.EXHAUSTED) or result.response is None:
            return ChallengeResult(
                status=ChallengeStatus.FAILED,
                classification=result.classification,
                error=result.error,
                challenge=challenge,
                signer_address=self._signer.address,
                data=data,
                phases=phases,
            )

        classified = self._classifier.classify_response(result.response)
        return ChallengeResult(
            status=ChallengeStatus.FAILED,
            classification=classified.classification,
            error=error_for(classified),
            challenge=challenge,
            signer_address=self._signer.address,
            data=data,
            phases=phases,
        )

    def _fatal(
        self,
        error: X402ClientError,
        phases: List[PaymentResult],
        *,
        challenge: Optional[Challenge] = None,
    ) -> ChallengeResult:
        logger.debug("Challenge flow failed: %s", error)
        return ChallengeResult(
            status=ChallengeStatus.FAILED,
            classification=ErrorClassification.FATAL,
            error=error,
            challenge=challenge,
            signer_address=self._signer.address,
            data=phases[-1].data if phases else None,
            phases=phases,
        )
