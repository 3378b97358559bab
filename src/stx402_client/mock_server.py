"""Mock paid registry API for exercising the client end to end.

The app emulates a pay-per-request server:
  • Every paid route answers an unpaid request with 402 and versioned terms
    carrying a fresh nonce, so a client that re-probes always signs a new one.
  • A signed request is checked against the nonce it was issued, then either
    answered from the scripted ``MockServerState.failures`` queue or settled
    with a ``PAYMENT-RESPONSE`` header.
  • ``/registry/transfer`` and ``/registry/delete`` additionally require the
    owner to sign a single-use challenge.

Run with:

    uvicorn stx402_client.mock_server:create_app --factory --port 9000
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from x402.http.utils import encode_payment_response_header
from x402.schemas import SettleResponse

from .codec import decode_payment_payload
from .constants import (
    DEFAULT_MAX_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_TYPE,
    PAYMENT_HEADER,
    SETTLEMENT_HEADER,
    X402_VERSION,
    caip2_network_for,
)
from .errors import ProtocolError
from .signers import encode_structured_data, recover_structured_data_signer

JsonDict = Dict[str, Any]

DEFAULT_NETWORK = "stacks:2147483648"
DEFAULT_AMOUNT = "1000"
DEFAULT_ASSET = "STX"
DEFAULT_PAY_TO = "0x209693bc6afc0c5328ba36faf03c514ef312287c"
CHALLENGE_TTL_MS = 5 * 60 * 1000

logger = logging.getLogger(__name__)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ScriptedResponse:
    status: int
    body: Any = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class MockServerState:
    """Everything the app remembers between requests; tests inspect it directly."""

    network: str = DEFAULT_NETWORK
    amount: str = DEFAULT_AMOUNT
    asset: str = DEFAULT_ASSET
    pay_to: str = DEFAULT_PAY_TO
    token_type: str = DEFAULT_TOKEN_TYPE
    # Answers for signed submissions, consumed front to back before settling.
    failures: Deque[ScriptedResponse] = field(default_factory=deque)
    registry: Dict[str, str] = field(default_factory=dict)
    challenges: Dict[str, JsonDict] = field(default_factory=dict)
    issued_nonces: List[str] = field(default_factory=list)
    consumed_nonces: Set[str] = field(default_factory=set)
    settlements: List[SettleResponse] = field(default_factory=list)
    # Answer signed challenge submissions with yet another challenge.
    rechallenge: bool = False
    clock: Callable[[], int] = _epoch_ms

    def __post_init__(self) -> None:
        self.network = caip2_network_for(self.network)

    def fail_next(self, status_code: int, body: Any = None, headers: Optional[Dict[str, str]] = None) -> None:
        self.failures.append(ScriptedResponse(status_code, body or {}, dict(headers or {})))

    def issue_nonce(self) -> str:
        nonce = uuid.uuid4().hex
        self.issued_nonces.append(nonce)
        return nonce


def _domain(state: MockServerState) -> JsonDict:
    chain_id = int(state.network.split(":", 1)[1])
    return {"name": "stx402 registry", "version": "1", "chainId": chain_id}


def _action_message(action: str, action_data: JsonDict, timestamp: int) -> JsonDict:
    fields = [{"name": "action", "type": "string"}]
    fields.extend({"name": key, "type": "string"} for key in action_data)
    fields.append({"name": "timestamp", "type": "uint256"})
    message: JsonDict = {"action": action}
    message.update({key: str(value) for key, value in action_data.items()})
    message["timestamp"] = timestamp
    return {"types": {"Action": fields}, "primaryType": "Action", "message": message}


def issue_challenge(state: MockServerState, owner: str, action: str, action_data: JsonDict) -> JsonDict:
    now = state.clock()
    challenge_id = str(uuid.uuid4())
    challenge = {
        "challengeId": challenge_id,
        "domain": encode_structured_data(_domain(state)),
        "message": encode_structured_data(_action_message(action, action_data, now)),
        "expiresAt": now + CHALLENGE_TTL_MS,
    }
    state.challenges[challenge_id] = {**challenge, "owner": owner, "action": action}
    return challenge


def _payment_required(state: MockServerState, request: Request) -> JSONResponse:
    body = {
        "x402Version": X402_VERSION,
        "error": "Payment required",
        "resource": {
            "url": str(request.url),
            "description": f"{request.method} {request.url.path}",
            "mimeType": "application/json",
        },
        "accepts": [
            {
                "scheme": "exact",
                "network": state.network,
                "asset": state.asset,
                "amount": state.amount,
                "payTo": state.pay_to,
                "maxTimeoutSeconds": DEFAULT_MAX_TIMEOUT_SECONDS,
                "extra": {"nonce": state.issue_nonce(), "tokenType": state.token_type},
            }
        ],
    }
    return JSONResponse(body, status_code=status.HTTP_402_PAYMENT_REQUIRED)


def _settle(state: MockServerState, request: Request) -> Tuple[Optional[Response], Optional[str]]:
    """Return ``(error_response, settlement_header)``; exactly one is set."""
    header = request.headers.get(PAYMENT_HEADER)
    if header is None:
        return _payment_required(state, request), None

    try:
        payload = decode_payment_payload(header)
    except ProtocolError as exc:
        logger.warning("rejecting malformed payment header: %s", exc)
        body = {"error": str(exc), "code": "INVALID_PAYMENT"}
        return JSONResponse(body, status_code=status.HTTP_400_BAD_REQUEST), None

    nonce = (payload.accepted.extra or {}).get("nonce")
    if nonce not in state.issued_nonces or nonce in state.consumed_nonces:
        logger.warning("rejecting payment with unknown or spent nonce %s", nonce)
        body = {"error": "Payment nonce was not issued or is spent", "code": "INVALID_PAYMENT"}
        return JSONResponse(body, status_code=status.HTTP_400_BAD_REQUEST), None
    state.consumed_nonces.add(nonce)

    if state.failures:
        scripted = state.failures.popleft()
        logger.info("answering %s with scripted %d", request.url.path, scripted.status)
        if isinstance(scripted.body, str):
            return PlainTextResponse(scripted.body, status_code=scripted.status, headers=scripted.headers), None
        return JSONResponse(scripted.body, status_code=scripted.status, headers=scripted.headers), None

    transaction = str(payload.payload.get("transaction", ""))
    settlement = SettleResponse(
        success=True,
        transaction="0x" + hashlib.sha256(transaction.encode("utf-8")).hexdigest(),
        network=state.network,
    )
    state.settlements.append(settlement)
    return None, encode_payment_response_header(settlement)


async def _json_body(request: Request) -> Optional[JsonDict]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _authenticate(
    state: MockServerState,
    owner: str,
    action: str,
    action_data: JsonDict,
    body: JsonDict,
) -> Optional[Response]:
    signature = body.get("signature")
    if not signature:
        challenge = issue_challenge(state, owner, action, action_data)
        return JSONResponse(
            {
                "requiresSignature": True,
                "message": f"{action} operation requires a signed challenge. Sign the message and resubmit.",
                "challenge": challenge,
            }
        )

    challenge_id = body.get("challengeId")
    if not challenge_id:
        return JSONResponse(
            {"error": "challengeId is required when providing signature"},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    if state.rechallenge:
        challenge = issue_challenge(state, owner, action, action_data)
        return JSONResponse({"requiresSignature": True, "challenge": challenge})

    challenge = state.challenges.pop(challenge_id, None)
    if challenge is None or challenge["expiresAt"] < state.clock():
        return JSONResponse(
            {"error": "Challenge expired or invalid. Request a new challenge."},
            status_code=status.HTTP_403_FORBIDDEN,
        )
    if challenge["owner"].lower() != owner.lower():
        return JSONResponse(
            {"error": "Challenge was issued for a different owner"},
            status_code=status.HTTP_403_FORBIDDEN,
        )

    try:
        recovered = recover_structured_data_signer(challenge["domain"], challenge["message"], signature)
    except Exception as exc:
        logger.warning("signature recovery failed for challenge %s: %s", challenge_id, exc)
        recovered = None
    if recovered is None or recovered.lower() != owner.lower():
        return JSONResponse(
            {
                "error": "Invalid signature",
                "recoveredAddress": recovered,
                "expectedAddress": owner,
            },
            status_code=status.HTTP_403_FORBIDDEN,
        )
    return None


def create_app(state: Optional[MockServerState] = None) -> FastAPI:
    state = state or MockServerState()
    app = FastAPI(title="Mock Paid Registry API")
    app.state.mock = state

    def _paid(content: JsonDict, settlement_header: str) -> JSONResponse:
        return JSONResponse(content, headers={SETTLEMENT_HEADER: settlement_header})

    @app.get("/")
    async def index() -> JsonDict:
        return {
            "message": "Mock paid registry API",
            "paid": "/paid/data",
            "registry": ["/registry/register", "/registry/transfer", "/registry/delete"],
        }

    @app.get("/paid/data")
    async def paid_data(request: Request) -> Response:
        logger.info("received /paid/data request (has_payment=%s)", PAYMENT_HEADER in request.headers)
        error, settlement = _settle(state, request)
        if error is not None:
            return error
        return _paid({"message": "paid content", "settlements": len(state.settlements)}, settlement)

    @app.post("/registry/register")
    async def register(request: Request) -> Response:
        logger.info("received /registry/register request")
        body = await _json_body(request)
        if body is None or not body.get("url") or not body.get("owner"):
            return JSONResponse({"error": "url and owner are required"}, status_code=status.HTTP_400_BAD_REQUEST)
        error, settlement = _settle(state, request)
        if error is not None:
            return error
        state.registry[body["url"]] = body["owner"]
        return _paid({"success": True, "entry": {"url": body["url"], "owner": body["owner"]}}, settlement)

    async def _owned_mutation(request: Request) -> Tuple[Optional[Response], JsonDict, str, str]:
        body = await _json_body(request)
        if body is None or not body.get("url"):
            error = JSONResponse({"error": "url is required"}, status_code=status.HTTP_400_BAD_REQUEST)
            return error, {}, "", ""
        url = body["url"]
        owner = str(body.get("owner") or "")
        registered = state.registry.get(url)
        if registered is None:
            error = JSONResponse({"error": "Endpoint not found in registry"}, status_code=status.HTTP_404_NOT_FOUND)
            return error, body, url, owner
        if registered.lower() != owner.lower():
            error = JSONResponse(
                {
                    "error": "Not authorized - you are not the owner of this endpoint",
                    "registeredOwner": registered,
                },
                status_code=status.HTTP_403_FORBIDDEN,
            )
            return error, body, url, owner
        return None, body, url, owner

    @app.post("/registry/transfer")
    async def transfer(request: Request) -> Response:
        logger.info("received /registry/transfer request")
        error, settlement = _settle(state, request)
        if error is not None:
            return error
        error, body, url, owner = await _owned_mutation(request)
        if error is not None:
            return error
        new_owner = body.get("newOwner")
        if not new_owner:
            return JSONResponse({"error": "newOwner is required"}, status_code=status.HTTP_400_BAD_REQUEST)
        action_data = {"url": url, "owner": owner, "newOwner": new_owner}
        error = _authenticate(state, owner, "transfer-ownership", action_data, body)
        if error is not None:
            return error
        state.registry[url] = new_owner
        return _paid(
            {
                "success": True,
                "transferred": {"url": url, "from": owner, "to": new_owner},
                "verifiedBy": "signature",
            },
            settlement,
        )

    @app.post("/registry/delete")
    async def delete(request: Request) -> Response:
        logger.info("received /registry/delete request")
        error, settlement = _settle(state, request)
        if error is not None:
            return error
        error, body, url, owner = await _owned_mutation(request)
        if error is not None:
            return error
        error = _authenticate(state, owner, "delete-endpoint", {"url": url, "owner": owner}, body)
        if error is not None:
            return error
        del state.registry[url]
        return _paid({"success": True, "deleted": {"url": url}, "verifiedBy": "signature"}, settlement)

    return app
