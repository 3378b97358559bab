import base64
import json

import pytest
from x402.http.utils import decode_payment_signature_header

from stx402_client.codec import (
    build_payment_headers,
    decode_payment_payload,
    decode_settlement,
    encode_payment_payload,
)
from stx402_client.config import RetryConfig
from stx402_client.errors import ProtocolError
from stx402_client.executor import HttpResponse
from stx402_client.requirements import parse_payment_required, to_signing_request

from stub_server import legacy_terms, settlement_header, versioned_terms


def _b64(data):
    return base64.b64encode(json.dumps(data).encode()).decode()


def test_versioned_headers_carry_payload_envelope():
    terms = parse_payment_required(versioned_terms("n-1"))
    request = to_signing_request(terms, RetryConfig())

    headers = build_payment_headers("0xsigned", terms, request)

    assert list(headers) == ["PAYMENT-SIGNATURE"]
    raw = json.loads(base64.b64decode(headers["PAYMENT-SIGNATURE"]))
    assert raw["x402Version"] == 2
    assert raw["payload"] == {"transaction": "0xsigned"}
    assert raw["accepted"]["payTo"] == terms.accepted.pay_to
    assert raw["accepted"]["extra"]["nonce"] == "n-1"
    assert raw["resource"]["url"] == "http://api.test/paid"


def test_legacy_headers_are_flat():
    terms = parse_payment_required(legacy_terms("n-1"))
    request = to_signing_request(terms, RetryConfig(token_type="sBTC"))

    assert build_payment_headers("0xsigned", terms, request) == {
        "X-PAYMENT": "0xsigned",
        "X-PAYMENT-TOKEN-TYPE": "STX",
    }


def test_decode_payment_payload_reads_what_was_encoded():
    accepted = parse_payment_required(versioned_terms("n-3")).accepted

    payload = decode_payment_payload(encode_payment_payload("0xsigned", accepted))

    assert payload.x402_version == 2
    assert payload.payload["transaction"] == "0xsigned"
    assert payload.accepted.extra["nonce"] == "n-3"


@pytest.mark.parametrize(
    "value",
    ["not base64!", _b64(["list"]), _b64({"x402Version": 1, "payload": {}}), _b64({"x402Version": 2})],
)
def test_decode_payment_payload_rejects_malformed_headers(value):
    with pytest.raises(ProtocolError):
        decode_payment_payload(value)


def test_payment_header_is_readable_by_x402():
    accepted = parse_payment_required(versioned_terms("n-4")).accepted

    payload = decode_payment_signature_header(encode_payment_payload("0xsigned", accepted))

    assert payload.payload == {"transaction": "0xsigned"}
    assert payload.accepted.extra["nonce"] == "n-4"


def _with_headers(headers):
    return HttpResponse(200, {}, headers)


def test_settlement_from_versioned_header():
    settlement = decode_settlement(_with_headers({"payment-response": settlement_header("0x99")}))

    assert settlement.success is True
    assert settlement.transaction == "0x99"
    assert settlement.network == "stacks:2147483648"


def test_settlement_from_legacy_plain_json_header():
    header = json.dumps({"success": True, "txId": "0x77", "senderAddress": "SP123"})

    settlement = decode_settlement(_with_headers({"X-PAYMENT-RESPONSE": header}), network="testnet")

    assert settlement.transaction == "0x77"
    assert settlement.payer == "SP123"
    assert settlement.network == "testnet"


def test_legacy_header_may_carry_versioned_encoding():
    settlement = decode_settlement(_with_headers({"X-PAYMENT-RESPONSE": settlement_header("0x55")}))

    assert settlement.transaction == "0x55"


def test_legacy_settlement_reports_failure_reason():
    header = json.dumps({"errorReason": "insufficient_funds", "txId": "0x1"})

    settlement = decode_settlement(_with_headers({"X-PAYMENT-RESPONSE": header}), network="mainnet")

    assert settlement.success is False
    assert settlement.error_reason == "insufficient_funds"
    assert settlement.transaction == "0x1"
    assert settlement.network == "mainnet"


def test_missing_or_garbled_settlement_is_none():
    assert decode_settlement(_with_headers({})) is None
    assert decode_settlement(_with_headers({"PAYMENT-RESPONSE": "{{not json"})) is None
    assert decode_settlement(_with_headers({"PAYMENT-RESPONSE": _b64(["x"])})) is None
    assert decode_settlement(_with_headers({"X-PAYMENT-RESPONSE": "[1, 2]"})) is None
