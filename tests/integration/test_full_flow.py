"""End-to-end payment and refund flows against an in-process facilitator."""

from datetime import datetime, timezone

import httpx
import pytest

from src.constants import PAYMENT_HEADER, PAYMENT_TX_HASH_HEADER
from src.models import BreachEvent, BreachType, SeverityTier
from src.payments import codec
from src.payments.facilitator import SettlementClient
from src.payments.signer import AuthorizationSigner
from src.seller.server import create_app
from src.agent.buyer import BuyerAgent
from src.sla.escrow import EscrowReleaser
from src.sla.ingestion import RefundReporter
from src.sla.monitor import StreamMonitor


@pytest.fixture
def settlement_client(facilitator):
    return SettlementClient(
        "http://facilitator.test",
        verify_timeout=5.0,
        settle_timeout=5.0,
        transport=facilitator.transport,
    )


@pytest.fixture
def seller_app(settings, ledger, settlement_client):
    return create_app(settings, ledger=ledger, settlement_client=settlement_client)


@pytest.fixture
def seller_transport(seller_app):
    return httpx.ASGITransport(app=seller_app)


@pytest.fixture
def signer(settings):
    return AuthorizationSigner(settings.buyer_private_key)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_full_payment_flow(seller_transport, signer, facilitator, ledger):
    """402 challenge, signed retry, settlement and receipt."""
    async with httpx.AsyncClient(
        transport=seller_transport, base_url="http://seller.test"
    ) as client:
        challenge = await client.get("/api/premium-data")

    assert challenge.status_code == 402
    body = challenge.json()
    assert body["amount"] == "100000"
    assert body["currency"] == "USDC.e"
    assert body["chainId"] == 338

    async with BuyerAgent(
        signer, seller_url="http://seller.test", transport=seller_transport
    ) as agent:
        result = await agent.fetch_resource("/api/premium-data")

    assert result.status_code == 200
    assert result.paid is True
    assert result.amount == 100_000
    assert result.data["success"] is True
    assert facilitator.verify_calls == 1
    assert facilitator.settle_calls == 1

    receipt = await ledger.get_receipt(result.transaction_id)
    assert receipt.payer == signer.address
    assert receipt.amount == 100_000
    assert receipt.resource == "/api/premium-data"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_replayed_authorization_rejected(seller_transport, signer, facilitator, ledger):
    async with httpx.AsyncClient(
        transport=seller_transport, base_url="http://seller.test"
    ) as client:
        challenge = await client.get("/api/premium-data")
        header = codec.encode(signer.sign(challenge.json()))

        first = await client.get("/api/premium-data", headers={PAYMENT_HEADER: header})
        replay = await client.get("/api/premium-data", headers={PAYMENT_HEADER: header})

    assert first.status_code == 200
    assert first.headers[PAYMENT_TX_HASH_HEADER]
    assert replay.status_code == 402
    assert replay.json()["error"] == "payment_verification_failed"
    assert replay.json()["amount"] == "100000"
    assert facilitator.settle_calls == 1
    assert (await ledger.stats()).total_payments == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_buyer_refuses_overpriced_resource(seller_transport, signer, facilitator):
    async with BuyerAgent(
        signer, seller_url="http://seller.test", max_amount=200_000, transport=seller_transport
    ) as agent:
        result = await agent.fetch_resource("/api/ai-inference")

    assert result.paid is False
    assert result.error == "amount_exceeds_limit"
    assert facilitator.verify_calls == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_sla_stream_refund_flow(
    settings, seller_transport, signer, facilitator, settlement_client, ledger, treasury_key
):
    """Pay for a stream, breach its SLA, and release the refund from escrow."""
    async with BuyerAgent(
        signer, seller_url="http://seller.test", transport=seller_transport
    ) as agent:
        result = await agent.fetch_resource(
            "/api/streams", method="POST", json={"slaPreset": "strict"}
        )

    assert result.status_code == 201
    stream_id = result.data["stream"]["streamId"]

    releaser = EscrowReleaser(
        settlement_client,
        ledger,
        settings=settings.model_copy(update={"treasury_private_key": treasury_key}),
    )
    monitor = await StreamMonitor.load(ledger, stream_id, releaser)
    decision = await monitor.handle_event(
        BreachEvent(
            breach_type=BreachType.UPTIME,
            measured_value=9800,
            threshold=9950,
            timestamp=datetime.now(timezone.utc),
        )
    )

    assert decision.tier == SeverityTier.SEVERE
    assert decision.terminate is True
    assert facilitator.settle_calls == 2

    async with httpx.AsyncClient(
        transport=seller_transport, base_url="http://seller.test"
    ) as client:
        detail = (await client.get(f"/api/streams/{stream_id}")).json()

    assert detail["stream"]["terminated"] is True
    assert detail["remaining"] == "500000"
    (refund,) = detail["refunds"]
    assert refund["refundAmount"] == "500000"
    assert refund["recipient"] == signer.address
    assert refund["refundTransactionId"]

    async with RefundReporter(
        "http://seller.test", settings.monitor_secret, transport=seller_transport
    ) as reporter:
        assert await reporter.report(decision.refund) is True
