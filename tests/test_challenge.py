import json

import httpx
import pytest

from stx402_client.challenge import Challenge, ChallengeResponseAuthenticator, ChallengeStatus
from stx402_client.classifier import ErrorClassification
from stx402_client.errors import AuthorizationError, NotFoundError, ProtocolError, SignerError
from stx402_client.signers import EthAccountStructuredDataSigner, encode_structured_data

from stub_server import coordinator_for

OWNER_KEY = "0x" + "11" * 32
TARGET = "https://api.example/weather"
NOW_MS = 1_700_000_000_000


def challenge_body(challenge_id="c-1", expires_at=NOW_MS + 60_000):
    return {
        "requiresSignature": True,
        "challenge": {
            "challengeId": challenge_id,
            "domain": encode_structured_data({"name": "registry", "version": "1", "chainId": 1}),
            "message": encode_structured_data(
                {
                    "types": {"Action": [{"name": "action", "type": "string"}]},
                    "primaryType": "Action",
                    "message": {"action": "delete-endpoint"},
                }
            ),
            "expiresAt": expires_at,
        },
    }


class CountingSigner:
    def __init__(self, error=None):
        self._inner = EthAccountStructuredDataSigner(OWNER_KEY)
        self.error = error
        self.calls = []

    @property
    def address(self):
        return self._inner.address

    def sign_structured_data(self, domain, message):
        self.calls.append((domain, message))
        if self.error is not None:
            raise self.error
        return self._inner.sign_structured_data(domain, message)


class ScriptedRegistry:
    """Serves a fixed sequence of responses without a payment envelope."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies = []

    def __call__(self, request):
        self.bodies.append(json.loads(request.content) if request.content else None)
        return self.responses.pop(0)


def authenticator(coordinator, signer):
    return ChallengeResponseAuthenticator(coordinator, signer, clock=lambda: NOW_MS)


@pytest.mark.asyncio
async def test_delete_signs_challenge_and_resubmits():
    registry = ScriptedRegistry(
        httpx.Response(200, json=challenge_body()),
        httpx.Response(200, json={"success": True, "deleted": {"url": TARGET}, "verifiedBy": "signature"}),
    )
    signer = CountingSigner()

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).delete(TARGET, signer.address)

    assert result.status is ChallengeStatus.SUCCEEDED
    assert result.ok
    assert result.verified_by == signer.address
    assert result.signer_address == signer.address
    assert result.challenge.challenge_id == "c-1"
    assert len(result.phases) == 2
    assert len(signer.calls) == 1

    first, second = registry.bodies
    assert first == {"url": TARGET, "owner": signer.address}
    assert second["challengeId"] == "c-1"
    assert second["signature"].startswith("0x")
    assert second["url"] == TARGET


@pytest.mark.asyncio
async def test_second_challenge_is_fatal_without_resigning():
    registry = ScriptedRegistry(
        httpx.Response(200, json=challenge_body("c-1")),
        httpx.Response(200, json=challenge_body("c-2")),
    )
    signer = CountingSigner()

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).delete(TARGET, signer.address)

    assert result.status is ChallengeStatus.FAILED
    assert result.classification is ErrorClassification.FATAL
    assert isinstance(result.error, ProtocolError)
    assert result.error.payload["challenge"]["challengeId"] == "c-2"
    assert len(signer.calls) == 1
    assert len(registry.bodies) == 2


@pytest.mark.asyncio
async def test_consumed_challenge_is_fatal():
    registry = ScriptedRegistry(
        httpx.Response(200, json=challenge_body()),
        httpx.Response(403, json={"error": "Challenge expired or invalid. Request a new challenge."}),
    )
    signer = CountingSigner()

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).delete(TARGET, signer.address)

    assert result.classification is ErrorClassification.FATAL
    assert isinstance(result.error, AuthorizationError)
    assert result.error.status == 403
    assert len(registry.bodies) == 2
    assert len(signer.calls) == 1


@pytest.mark.asyncio
async def test_forbidden_surfaces_registered_owner():
    registry = ScriptedRegistry(
        httpx.Response(
            403,
            json={"error": "Not authorized - you are not the owner", "registeredOwner": "0xowner"},
        ),
    )
    signer = CountingSigner()

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).transfer(TARGET, signer.address, "0xnew")

    assert result.status is ChallengeStatus.FAILED
    assert isinstance(result.error, AuthorizationError)
    assert result.registered_owner == "0xowner"
    assert signer.calls == []


@pytest.mark.asyncio
async def test_missing_resource_is_not_found():
    registry = ScriptedRegistry(httpx.Response(404, json={"error": "Endpoint not found in registry"}))
    signer = CountingSigner()

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).delete(TARGET, signer.address)

    assert result.classification is ErrorClassification.FATAL
    assert isinstance(result.error, NotFoundError)
    assert result.error.status == 404


@pytest.mark.asyncio
async def test_response_without_challenge_is_protocol_error():
    registry = ScriptedRegistry(httpx.Response(200, json={"success": True}))
    signer = CountingSigner()

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).delete(TARGET, signer.address)

    assert isinstance(result.error, ProtocolError)
    assert "No challenge" in str(result.error)
    assert signer.calls == []


@pytest.mark.asyncio
async def test_expired_challenge_is_not_signed():
    registry = ScriptedRegistry(httpx.Response(200, json=challenge_body(expires_at=NOW_MS - 1)))
    signer = CountingSigner()

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).delete(TARGET, signer.address)

    assert isinstance(result.error, ProtocolError)
    assert "expired" in str(result.error)
    assert signer.calls == []
    assert len(registry.bodies) == 1


@pytest.mark.asyncio
async def test_signer_failure_is_fatal():
    registry = ScriptedRegistry(httpx.Response(200, json=challenge_body()))
    signer = CountingSigner(error=ValueError("locked key"))

    async with coordinator_for(registry) as coordinator:
        result = await authenticator(coordinator, signer).delete(TARGET, signer.address)

    assert result.classification is ErrorClassification.FATAL
    assert isinstance(result.error, SignerError)
    assert len(registry.bodies) == 1


def test_challenge_expiry_boundary():
    challenge = Challenge.model_validate(challenge_body()["challenge"])

    assert not challenge.is_expired(NOW_MS)
    assert challenge.is_expired(NOW_MS + 60_000)
