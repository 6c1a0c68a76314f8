import hashlib
import os
import time

import pytest

# Well-known development keys (never funded on mainnet)
BUYER_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TREASURY_PRIVATE_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"
SELLER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
MONITOR_SECRET = "test-monitor-secret"

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
os.environ.setdefault("SELLER_ADDRESS", SELLER_ADDRESS)
os.environ.setdefault("BUYER_PRIVATE_KEY", BUYER_PRIVATE_KEY)
os.environ.setdefault("MONITOR_SECRET", MONITOR_SECRET)
os.environ.setdefault("FACILITATOR_URL", "http://facilitator.test")

from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport  # noqa: E402

from src.config import Config  # noqa: E402
from src.ledger import ReceiptLedger  # noqa: E402
from src.payments import codec  # noqa: E402
from src.payments.signer import recover_authorization_signer  # noqa: E402


class FakeFacilitator:
    """In-process settlement authority.

    Recovers the EIP-712 signer, checks the validity window and enforces
    nonce uniqueness per payer and token the way the real authority does.
    """

    def __init__(self, clock=time.time):
        self.clock = clock
        self.used_nonces = set()
        self.verify_calls = 0
        self.settle_calls = 0
        self.app = FastAPI()
        self.app.post("/verify")(self._verify)
        self.app.post("/settle")(self._settle)

    @property
    def transport(self) -> ASGITransport:
        return ASGITransport(app=self.app)

    def _check(self, body: dict):
        payload = codec.decode(body["payment"])
        auth = payload.authorization
        if body["chainId"] != payload.chain_id:
            return payload, "chain_mismatch"
        if recover_authorization_signer(payload) != auth.payer:
            return payload, "invalid_signature"
        if not auth.is_valid_at(int(self.clock())):
            return payload, "authorization_expired"
        if (auth.payer, payload.token, auth.nonce) in self.used_nonces:
            return payload, "nonce_already_used"
        return payload, None

    async def _verify(self, body: dict):
        self.verify_calls += 1
        payload, error = self._check(body)
        if error:
            return {"valid": False, "error": error}
        return {
            "valid": True,
            "payer": payload.authorization.payer,
            "amount": str(payload.authorization.value),
        }

    async def _settle(self, body: dict):
        self.settle_calls += 1
        payload, error = self._check(body)
        if error:
            return {"success": False, "error": error}
        auth = payload.authorization
        self.used_nonces.add((auth.payer, payload.token, auth.nonce))
        tx_hash = "0x" + hashlib.sha256(auth.nonce.encode()).hexdigest()
        return {"success": True, "txHash": tx_hash}


@pytest.fixture
def settings(tmp_path):
    """Explicit test configuration."""
    return Config(
        seller_address=SELLER_ADDRESS,
        buyer_private_key=BUYER_PRIVATE_KEY,
        treasury_private_key="",
        monitor_secret=MONITOR_SECRET,
        facilitator_url="http://facilitator.test",
        database_path=str(tmp_path / "ledger.db"),
    )


@pytest.fixture
async def ledger(tmp_path):
    """Create a temporary, initialized receipt ledger."""
    ledger = ReceiptLedger(str(tmp_path / "test.db"))
    await ledger.initialize()
    return ledger


@pytest.fixture
def facilitator():
    """Fake settlement authority mounted over an ASGI transport."""
    return FakeFacilitator()


@pytest.fixture
def treasury_key():
    return TREASURY_PRIVATE_KEY
