"""x402 payment-retry and challenge-response client (Python)."""

from __future__ import annotations

from x402.schemas import PaymentPayload, PaymentRequired, PaymentRequirements, SettleResponse

from .challenge import (
    Challenge,
    ChallengeResponseAuthenticator,
    ChallengeResult,
    ChallengeStatus,
)
from .classifier import (
    ClassifiedError,
    ErrorClassification,
    ErrorClassifier,
    PhraseMatcher,
    RawErrorBody,
    StructuredErrorBody,
    compute_delay_ms,
    parse_error_body,
    retry_after_seconds,
)
from .codec import decode_payment_payload, decode_settlement, encode_payment_payload
from .config import RetryConfig
from .constants import (
    SUPPORTED_NETWORKS,
    SUPPORTED_TOKEN_TYPES,
    X402_VERSION,
    UnsupportedNetworkError,
)
from .errors import (
    AuthorizationError,
    NonceConflictError,
    NotFoundError,
    PaymentRejectedError,
    ProtocolError,
    SignerError,
    TransientError,
    X402ClientError,
)
from .executor import HttpResponse, RequestExecutor
from .requirements import SigningRequest, parse_payment_required, to_signing_request
from .retry import FlowStatus, PaymentResult, RetryCoordinator, RetryPhase
from .signers import (
    EthAccountPaymentSigner,
    EthAccountStructuredDataSigner,
    PaymentSigner,
    StructuredDataSigner,
)

__all__ = [
    "X402_VERSION",
    "SUPPORTED_NETWORKS",
    "SUPPORTED_TOKEN_TYPES",
    "UnsupportedNetworkError",
    "RetryConfig",
    "X402ClientError",
    "ProtocolError",
    "TransientError",
    "NonceConflictError",
    "PaymentRejectedError",
    "AuthorizationError",
    "NotFoundError",
    "SignerError",
    "SigningRequest",
    "parse_payment_required",
    "to_signing_request",
    "encode_payment_payload",
    "decode_payment_payload",
    "decode_settlement",
    "ErrorClassification",
    "ErrorClassifier",
    "ClassifiedError",
    "PhraseMatcher",
    "StructuredErrorBody",
    "RawErrorBody",
    "parse_error_body",
    "retry_after_seconds",
    "compute_delay_ms",
    "HttpResponse",
    "RequestExecutor",
    "RetryCoordinator",
    "RetryPhase",
    "FlowStatus",
    "PaymentResult",
    "Challenge",
    "ChallengeResponseAuthenticator",
    "ChallengeResult",
    "ChallengeStatus",
    "PaymentSigner",
    "StructuredDataSigner",
    "EthAccountPaymentSigner",
    "EthAccountStructuredDataSigner",
    "PaymentPayload",
    "PaymentRequirements",
    "PaymentRequired",
    "SettleResponse",
]

try:  # Optional: the mock paid API depends on fastapi
    from .mock_server import MockServerState, create_app

    __all__.extend(["MockServerState", "create_app"])
except ImportError:
    MockServerState = None  # type: ignore[assignment]
    create_app = None  # type: ignore[assignment]
