"""Shared constants for the stx402 payment client."""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Tuple

from x402.http import (
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
)

X402_VERSION = 2

PAYMENT_REQUIRED_STATUS = 402

# Versioned (v2) form: one header carrying the base64 PaymentPayload.
PAYMENT_HEADER = PAYMENT_SIGNATURE_HEADER
SETTLEMENT_HEADER = PAYMENT_RESPONSE_HEADER

# Legacy flat form: the signed transaction and its token type travel separately.
LEGACY_PAYMENT_HEADER = X_PAYMENT_HEADER
LEGACY_TOKEN_TYPE_HEADER = "X-PAYMENT-TOKEN-TYPE"
LEGACY_SETTLEMENT_HEADER = X_PAYMENT_RESPONSE_HEADER

RETRY_AFTER_HEADER = "Retry-After"

RETRYABLE_STATUSES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})

RETRYABLE_ERROR_CODES: FrozenSet[str] = frozenset(
    {
        "NETWORK_ERROR",
        "FACILITATOR_UNAVAILABLE",
        "FACILITATOR_ERROR",
        "UNKNOWN_ERROR",
    }
)

# Matched case-insensitively against the error text. Stacks reports mempool
# contention as "ConflictingNonceInMempool"; the other phrases cover the
# facilitator's prose and other chains' wording for the same condition.
NONCE_CONFLICT_PHRASES: Tuple[str, ...] = (
    "conflictingnonceinmempool",
    "conflicting nonce in mempool",
    "conflicting nonce",
    "nonce already used",
    "nonce too low",
    "badnonce",
    "sequence number too low",
    "already pending",
)

TRANSIENT_PHRASES: Tuple[str, ...] = (
    "429",
    "rate limit",
    "too many requests",
    "timeout",
    "temporarily",
    "try again",
)

SUPPORTED_NETWORKS: List[str] = ["stacks:1", "stacks:2147483648"]

LEGACY_NETWORKS: Dict[str, str] = {
    "stacks:1": "mainnet",
    "stacks:2147483648": "testnet",
}

CAIP2_NETWORKS: Dict[str, str] = {legacy: caip for caip, legacy in LEGACY_NETWORKS.items()}

SUPPORTED_TOKEN_TYPES: List[str] = ["STX", "sBTC", "USDCx"]

DEFAULT_TOKEN_TYPE = "STX"
DEFAULT_NETWORK = "testnet"

# Lifetime assumed for legacy terms that omit expiresAt.
DEFAULT_MAX_TIMEOUT_SECONDS = 300


class UnsupportedNetworkError(ValueError):
    """Raised when a network is neither a known CAIP-2 id nor a legacy name."""


def legacy_network_for(network: str) -> str:
    """Return the legacy network name ("mainnet"/"testnet") for ``network``."""
    if network in CAIP2_NETWORKS:
        return network
    try:
        return LEGACY_NETWORKS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No legacy network mapping for {network}") from exc


def caip2_network_for(network: str) -> str:
    if network in LEGACY_NETWORKS:
        return network
    try:
        return CAIP2_NETWORKS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No CAIP-2 network mapping for {network}") from exc
