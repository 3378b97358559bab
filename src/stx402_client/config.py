"""Retry configuration consumed by the payment coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Tuple

from .constants import (
    DEFAULT_NETWORK,
    DEFAULT_TOKEN_TYPE,
    NONCE_CONFLICT_PHRASES,
    legacy_network_for,
)


@dataclass(frozen=True)
class RetryConfig:
    """Bounds and delays for one payment flow.

    Delays are in milliseconds. ``max_retries`` counts retries after the first
    attempt, so a flow submits at most ``max_retries + 1`` payments.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    nonce_conflict_delay_ms: int = 30_000
    verbose: bool = False
    token_type: str = DEFAULT_TOKEN_TYPE
    network: str = DEFAULT_NETWORK
    nonce_conflict_phrases: Tuple[str, ...] = field(default=NONCE_CONFLICT_PHRASES)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        for name in ("base_delay_ms", "max_delay_ms", "nonce_conflict_delay_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        # Normalises CAIP-2 ids and rejects unknown networks.
        object.__setattr__(self, "network", legacy_network_for(self.network))
        object.__setattr__(self, "nonce_conflict_phrases", tuple(self.nonce_conflict_phrases))

    def replace(self, **changes) -> "RetryConfig":
        return replace(self, **changes)
