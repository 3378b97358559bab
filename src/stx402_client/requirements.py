"""Parsing of payment-required responses into a single signing request."""

from __future__ import annotations

import datetime as _dt
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

from pydantic import ValidationError, field_validator
from x402.schemas import BaseX402Model, PaymentRequired, PaymentRequirements

from .config import RetryConfig
from .constants import (
    DEFAULT_MAX_TIMEOUT_SECONDS,
    PAYMENT_REQUIRED_STATUS,
    X402_VERSION,
    UnsupportedNetworkError,
    legacy_network_for,
)
from .errors import ProtocolError

JsonDict = Dict[str, Any]


class LegacyPaymentRequirements(BaseX402Model):
    """Flat terms issued by servers that predate the versioned envelope."""

    max_amount_required: str
    resource: str
    pay_to: str
    network: str
    nonce: Optional[str] = None
    expires_at: Optional[str] = None
    token_type: Optional[str] = None
    token_contract: Optional[Dict[str, Any]] = None
    pricing_tier: Optional[str] = None

    @field_validator("max_amount_required", mode="before")
    @classmethod
    def _amount_as_string(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class SigningRequest(BaseX402Model):
    """The flat request handed to a :class:`~stx402_client.signers.PaymentSigner`."""

    max_amount_required: str
    resource: str
    pay_to: str
    network: str
    nonce: str
    expires_at: str
    token_type: str
    token_contract: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class LegacyTerms:
    requirements: LegacyPaymentRequirements
    raw: JsonDict
    kind: Literal["legacy"] = "legacy"


@dataclass(frozen=True)
class VersionedTerms:
    payment_required: PaymentRequired
    raw: JsonDict
    kind: Literal["versioned"] = "versioned"

    @property
    def accepted(self) -> PaymentRequirements:
        # First match wins; the client does not negotiate between options.
        return self.payment_required.accepts[0]


PaymentTerms = Union[LegacyTerms, VersionedTerms]


def _protocol_error(message: str, body: Any) -> ProtocolError:
    return ProtocolError(message, status=PAYMENT_REQUIRED_STATUS, payload=body)


def parse_payment_required(body: Any) -> PaymentTerms:
    """Decode a 402 body into legacy or versioned terms.

    Raises :class:`ProtocolError` when the body declares an unknown version,
    offers no payment options or does not match either shape.
    """
    if not isinstance(body, dict):
        raise _protocol_error("payment-required body is not a JSON object", body)

    if "x402Version" in body or "accepts" in body:
        version = body.get("x402Version")
        if version != X402_VERSION:
            raise _protocol_error(
                f"Unsupported x402 version: {version}. Expected {X402_VERSION}.", body
            )
        accepts = body.get("accepts")
        if not isinstance(accepts, list) or not accepts:
            raise _protocol_error("No payment options in accepts array", body)
        try:
            payment_required = PaymentRequired.model_validate(body)
        except ValidationError as exc:
            raise _protocol_error(f"Invalid versioned payment requirements: {exc}", body) from exc
        return VersionedTerms(payment_required=payment_required, raw=body)

    try:
        requirements = LegacyPaymentRequirements.model_validate(body)
    except ValidationError as exc:
        raise _protocol_error(f"Invalid payment requirements: {exc}", body) from exc
    return LegacyTerms(requirements=requirements, raw=body)


def _iso_utc(moment: _dt.datetime) -> str:
    return moment.astimezone(_dt.timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def _resolve_network(network: str, default: str) -> str:
    try:
        return legacy_network_for(network)
    except UnsupportedNetworkError:
        return default


def to_signing_request(
    terms: PaymentTerms,
    config: RetryConfig,
    *,
    now: Optional[_dt.datetime] = None,
) -> SigningRequest:
    """Normalise either terms shape into the one request the signer consumes."""
    now = now or _dt.datetime.now(tz=_dt.timezone.utc)

    if isinstance(terms, LegacyTerms):
        req = terms.requirements
        expires_at = req.expires_at or _iso_utc(
            now + _dt.timedelta(seconds=DEFAULT_MAX_TIMEOUT_SECONDS)
        )
        return SigningRequest(
            max_amount_required=req.max_amount_required,
            resource=req.resource,
            pay_to=req.pay_to,
            network=_resolve_network(req.network, config.network),
            nonce=req.nonce or str(uuid.uuid4()),
            expires_at=expires_at,
            token_type=req.token_type or config.token_type,
            token_contract=req.token_contract,
        )

    accepted = terms.accepted
    extra = accepted.extra or {}
    resource = terms.payment_required.resource
    token_contract = extra.get("tokenContract")
    return SigningRequest(
        max_amount_required=accepted.amount,
        resource=resource.url if resource is not None else "",
        pay_to=accepted.pay_to,
        network=_resolve_network(str(accepted.network), config.network),
        nonce=str(extra.get("nonce") or uuid.uuid4()),
        expires_at=_iso_utc(now + _dt.timedelta(seconds=accepted.max_timeout_seconds)),
        token_type=str(extra.get("tokenType") or config.token_type),
        token_contract=token_contract if isinstance(token_contract, dict) else None,
    )
