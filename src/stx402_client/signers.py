"""Signing collaborators and reference implementations on eth-account."""

from __future__ import annotations

import datetime as _dt
import hashlib
import json
from typing import Any, Awaitable, Dict, List, Mapping, Protocol, Union, runtime_checkable

from eth_account import Account
from eth_account.messages import encode_typed_data

from .constants import CAIP2_NETWORKS
from .requirements import SigningRequest

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_DOMAIN_FIELD_TYPES = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
    ("salt", "bytes32"),
)

_TRANSFER_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}


@runtime_checkable
class PaymentSigner(Protocol):
    """Produces an opaque signed transaction for one signing request."""

    @property
    def address(self) -> str: ...

    def sign_payment(self, request: SigningRequest) -> Union[str, Awaitable[str]]: ...


@runtime_checkable
class StructuredDataSigner(Protocol):
    """Signs a challenge's hex-encoded ``domain`` and ``message`` as one unit."""

    @property
    def address(self) -> str: ...

    def sign_structured_data(self, domain: str, message: str) -> Union[str, Awaitable[str]]: ...


def encode_structured_data(obj: Mapping[str, Any]) -> str:
    """Hex-encode a JSON descriptor the way challenges carry it."""
    raw = json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return "0x" + raw.hex()


def decode_structured_data(value: str) -> Dict[str, Any]:
    text = value[2:] if value.startswith("0x") else value
    decoded = json.loads(bytes.fromhex(text).decode("utf-8"))
    if not isinstance(decoded, dict):
        raise ValueError("structured data must decode to a JSON object")
    return decoded


def _domain_types(domain: Mapping[str, Any]) -> List[Dict[str, str]]:
    return [{"name": name, "type": kind} for name, kind in _DOMAIN_FIELD_TYPES if name in domain]


def typed_data_for(domain: Mapping[str, Any], message: Mapping[str, Any]) -> Dict[str, Any]:
    """Assemble the EIP-712 document for a decoded domain and message descriptor."""
    types = dict(message.get("types") or {})
    types["EIP712Domain"] = _domain_types(domain)
    return {
        "types": types,
        "primaryType": message["primaryType"],
        "domain": dict(domain),
        "message": dict(message["message"]),
    }


def _hex_signature(signature: Any) -> str:
    value = signature.hex() if hasattr(signature, "hex") else str(signature)
    return value if value.startswith("0x") else "0x" + value


def recover_structured_data_signer(domain: str, message: str, signature: str) -> str:
    """Address that produced ``signature`` over the hex-encoded challenge."""
    typed = typed_data_for(decode_structured_data(domain), decode_structured_data(message))
    return Account.recover_message(encode_typed_data(full_message=typed), signature=signature)


class EthAccountStructuredDataSigner:
    def __init__(self, private_key: str) -> None:
        self._private_key = private_key
        self._address = Account.from_key(private_key).address

    @property
    def address(self) -> str:
        return self._address

    def sign_structured_data(self, domain: str, message: str) -> str:
        typed = typed_data_for(decode_structured_data(domain), decode_structured_data(message))
        signed = Account.sign_message(
            encode_typed_data(full_message=typed), private_key=self._private_key
        )
        return _hex_signature(signed.signature)


def _epoch_seconds(iso_timestamp: str) -> int:
    moment = _dt.datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    return int(moment.timestamp())


def _chain_id(network: str) -> int:
    caip = CAIP2_NETWORKS.get(network, network)
    reference = caip.split(":", 1)[-1]
    return int(reference) if reference.isdigit() else 0


class EthAccountPaymentSigner:
    """Signs an EIP-3009 ``TransferWithAuthorization`` for each request.

    The signed transaction is the hex-encoded JSON of the authorization plus
    its signature; the server treats it as opaque.
    """

    def __init__(self, private_key: str, *, token_version: str = "1") -> None:
        self._private_key = private_key
        self._address = Account.from_key(private_key).address
        self._token_version = token_version

    @property
    def address(self) -> str:
        return self._address

    def _verifying_contract(self, request: SigningRequest) -> str:
        contract = request.token_contract or {}
        address = contract.get("address")
        if isinstance(address, str) and address.startswith("0x") and len(address) == 42:
            return address
        return ZERO_ADDRESS

    def authorization_for(self, request: SigningRequest) -> Dict[str, Any]:
        nonce = "0x" + hashlib.sha256(request.nonce.encode("utf-8")).hexdigest()
        return {
            "from": self._address,
            "to": request.pay_to,
            "value": int(request.max_amount_required),
            "validAfter": 0,
            "validBefore": _epoch_seconds(request.expires_at),
            "nonce": nonce,
        }

    def sign_payment(self, request: SigningRequest) -> str:
        authorization = self.authorization_for(request)
        typed = {
            "types": {
                "EIP712Domain": _domain_types(
                    {"name": "", "version": "", "chainId": 0, "verifyingContract": ""}
                ),
                **_TRANSFER_TYPES,
            },
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": request.token_type,
                "version": self._token_version,
                "chainId": _chain_id(request.network),
                "verifyingContract": self._verifying_contract(request),
            },
            "message": authorization,
        }
        signed = Account.sign_message(
            encode_typed_data(full_message=typed), private_key=self._private_key
        )
        envelope = {
            "authorization": {**authorization, "value": str(authorization["value"])},
            "signature": _hex_signature(signed.signature),
            "network": request.network,
            "tokenType": request.token_type,
        }
        return encode_structured_data(envelope)
