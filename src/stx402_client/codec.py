"""Encoding of payment payloads and decoding of settlement confirmations."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from x402.http.utils import (
    decode_payment_response_header,
    decode_payment_signature_header,
    encode_payment_signature_header,
)
from x402.schemas import PaymentPayload, PaymentRequirements, ResourceInfo, SettleResponse

from .constants import (
    LEGACY_PAYMENT_HEADER,
    LEGACY_SETTLEMENT_HEADER,
    LEGACY_TOKEN_TYPE_HEADER,
    PAYMENT_HEADER,
    SETTLEMENT_HEADER,
    X402_VERSION,
)
from .errors import ProtocolError
from .executor import HttpResponse
from .requirements import PaymentTerms, SigningRequest, VersionedTerms


def build_payment_payload(
    signed_transaction: str,
    accepted: PaymentRequirements,
    resource: Optional[ResourceInfo] = None,
) -> PaymentPayload:
    return PaymentPayload(
        x402_version=X402_VERSION,
        payload={"transaction": signed_transaction},
        accepted=accepted,
        resource=resource,
    )


def encode_payment_payload(
    signed_transaction: str,
    accepted: PaymentRequirements,
    resource: Optional[ResourceInfo] = None,
) -> str:
    """Return the base64 header value carrying the signed transaction."""
    return encode_payment_signature_header(
        build_payment_payload(signed_transaction, accepted, resource)
    )


def decode_payment_payload(header_value: str) -> PaymentPayload:
    """Inverse of :func:`encode_payment_payload`, as a server would apply it."""
    try:
        payload = decode_payment_signature_header(header_value)
    except (ValueError, TypeError, AttributeError, KeyError) as exc:
        raise ProtocolError(f"Invalid payment payload: {exc}", payload=header_value) from exc
    if not isinstance(payload, PaymentPayload) or payload.x402_version != X402_VERSION:
        raise ProtocolError(
            f"Invalid x402 version, expected {X402_VERSION}", payload=header_value
        )
    return payload


def build_payment_headers(
    signed_transaction: str,
    terms: PaymentTerms,
    request: SigningRequest,
) -> Dict[str, str]:
    """Headers that authenticate the resubmitted request."""
    if isinstance(terms, VersionedTerms):
        header = encode_payment_payload(
            signed_transaction,
            terms.accepted,
            terms.payment_required.resource,
        )
        return {PAYMENT_HEADER: header}
    return {
        LEGACY_PAYMENT_HEADER: signed_transaction,
        LEGACY_TOKEN_TYPE_HEADER: request.token_type,
    }


def _decode_versioned(value: str) -> Optional[SettleResponse]:
    try:
        return decode_payment_response_header(value)
    except (ValueError, TypeError, AttributeError, KeyError):
        return None


def _decode_header_json(value: str) -> Optional[Dict[str, Any]]:
    # Legacy servers send the settle result as plain JSON.
    try:
        payload = json.loads(value)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def decode_settlement(response: HttpResponse, network: str = "") -> Optional[SettleResponse]:
    """Return the settlement confirmation carried by ``response``, if any.

    Absence is not an error: the confirmation is informational only.
    """
    value = response.header(SETTLEMENT_HEADER)
    if value:
        return _decode_versioned(value)

    value = response.header(LEGACY_SETTLEMENT_HEADER)
    if not value:
        return None
    settlement = _decode_versioned(value)
    if settlement is not None:
        return settlement
    payload = _decode_header_json(value)
    if payload is None:
        return None
    return _legacy_settlement(payload, network)


def _legacy_settlement(payload: Dict[str, Any], network: str) -> SettleResponse:
    tx = payload.get("txId") or payload.get("tx_id") or payload.get("transaction") or ""
    error_reason = payload.get("errorReason") or payload.get("error")
    return SettleResponse(
        success=bool(payload.get("success", error_reason is None)),
        error_reason=error_reason,
        error_message=payload.get("errorMessage"),
        payer=payload.get("senderAddress") or payload.get("payer"),
        transaction=str(tx),
        network=str(payload.get("network") or network),
    )
