import os

from dotenv import load_dotenv

from stx402_client.mock_server import DEFAULT_PAY_TO, MockServerState, create_app

load_dotenv()

# Run with: uvicorn demo.server:app --port 9000
state = MockServerState(
    network=os.getenv("X402_NETWORK", "stacks:2147483648"),
    amount=os.getenv("PRICE_AMOUNT", "1000"),
    pay_to=os.getenv("PAY_TO_ADDRESS", DEFAULT_PAY_TO).lower(),
    token_type=os.getenv("X402_TOKEN_TYPE", "STX"),
)

# Scripted failures exercise the client's retry paths.
for _ in range(int(os.getenv("FAIL_RATE_LIMITED", "0"))):
    state.fail_next(429, {"error": "Too many requests"}, {"Retry-After": "1"})
if os.getenv("FAIL_NONCE_CONFLICT", "").lower() in ("1", "true", "yes"):
    state.fail_next(400, {"error": "Settlement failed", "details": {"errorReason": "ConflictingNonceInMempool"}})

app = create_app(state)
