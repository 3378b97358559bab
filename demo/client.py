import asyncio
import logging
import os

from dotenv import load_dotenv

from stx402_client import EthAccountPaymentSigner, RetryConfig, RetryCoordinator

load_dotenv()

PRIVATE_KEY = os.getenv("X402_CLIENT_PK")
if not PRIVATE_KEY or not PRIVATE_KEY.startswith("0x"):
    raise SystemExit("X402_CLIENT_PK env var must be set and start with 0x")

API_URL = os.getenv("API_URL", "http://localhost:9000")
ENDPOINT = f"{API_URL}/paid/data"

VERBOSE = os.getenv("VERBOSE", "").lower() in ("1", "true", "yes")

config = RetryConfig(
    max_retries=int(os.getenv("X402_MAX_RETRIES", "3")),
    base_delay_ms=int(os.getenv("X402_BASE_DELAY_MS", "1000")),
    max_delay_ms=int(os.getenv("X402_MAX_DELAY_MS", "30000")),
    nonce_conflict_delay_ms=int(os.getenv("X402_NONCE_CONFLICT_DELAY_MS", "30000")),
    verbose=VERBOSE,
    network=os.getenv("X402_NETWORK", "testnet"),
    token_type=os.getenv("X402_TOKEN_TYPE", "STX"),
)

logging.basicConfig(level=logging.INFO if VERBOSE else logging.WARNING)


async def main() -> None:
    signer = EthAccountPaymentSigner(PRIVATE_KEY)
    async with RetryCoordinator(signer, config) as coordinator:
        result = await coordinator.request("GET", ENDPOINT)

    print("Status:", result.status.value, result.status_code)
    print("Retries:", result.retry_count, "(nonce conflict)" if result.was_nonce_conflict else "")
    if result.settlement is not None:
        print("Settlement:", result.settlement.transaction, "on", result.settlement.network)
    if result.error is not None:
        print("Error:", result.error)
    print("Body:", result.data)


if __name__ == "__main__":
    asyncio.run(main())
