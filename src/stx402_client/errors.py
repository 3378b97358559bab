"""Error taxonomy for the payment and challenge flows.

These exceptions describe *why* a flow failed. The coordinator and the
authenticator carry them inside their result objects instead of raising them,
so callers decide how a failure is presented.
"""

from __future__ import annotations

from typing import Any, Optional


class X402ClientError(RuntimeError):
    """Base class for failures observed while talking to a paid endpoint."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        payload: Any = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload
        self.code = code


class ProtocolError(X402ClientError):
    """Server and client disagree on the protocol. Never retried."""


class TransientError(X402ClientError):
    """Rate limiting, facilitator downtime or a network failure."""


class NonceConflictError(TransientError):
    """A transaction for the same account sequence is still pending."""


class PaymentRejectedError(X402ClientError):
    """The server refused the signed payment for a non-transient reason."""


class AuthorizationError(X402ClientError):
    """Signature or ownership mismatch (HTTP 403)."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = 403,
        payload: Any = None,
        code: Optional[str] = None,
        registered_owner: Optional[str] = None,
    ) -> None:
        super().__init__(message, status=status, payload=payload, code=code)
        self.registered_owner = registered_owner


class NotFoundError(X402ClientError):
    """The target resource does not exist (HTTP 404)."""


class SignerError(X402ClientError):
    """A signing collaborator failed to produce a signature."""
