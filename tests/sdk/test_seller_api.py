"""Tests for the seller FastAPI application."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.constants import MONITOR_SIGNATURE_HEADER, PAYMENT_HEADER, PAYMENT_TX_HASH_HEADER
from src.errors import LedgerWriteError
from src.ledger import TransientReceiptCache
from src.models import (
    BreachType,
    PaymentReceipt,
    RefundRecord,
    SeverityTier,
    SettleResult,
    SLAConfig,
    StreamEscrow,
    VerifyResult,
)
from src.payments import codec
from src.payments.facilitator import SettlementClient
from src.payments.signer import AuthorizationSigner
from src.seller.server import create_app
from src.sla.ingestion import create_refund_signature

PAYER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def settlement_client():
    client = AsyncMock(spec=SettlementClient)
    client.verify.return_value = VerifyResult(valid=True)
    counter = iter(range(1, 1000))
    client.settle.side_effect = lambda *a: SettleResult(
        success=True, transaction_id="0x" + f"{next(counter):064x}"
    )
    return client


@pytest.fixture
def cache():
    return TransientReceiptCache()


@pytest.fixture
def app(settings, ledger, settlement_client, cache):
    return create_app(settings, ledger=ledger, settlement_client=settlement_client, cache=cache)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://seller.test") as client:
        yield client


@pytest.fixture
def signer(settings):
    return AuthorizationSigner(settings.buyer_private_key)


async def paid_request(client, signer, method: str, path: str, **kwargs) -> httpx.Response:
    challenge = await client.request(method, path, **kwargs)
    assert challenge.status_code == 402
    header = codec.encode(signer.sign(challenge.json()))
    return await client.request(method, path, headers={PAYMENT_HEADER: header}, **kwargs)


def receipt(tx_id: str, minutes: int, **overrides) -> PaymentReceipt:
    fields = dict(
        transaction_id=tx_id,
        payer=PAYER,
        recipient="0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
        amount=100_000,
        currency="USDC.e",
        resource="/api/premium-data",
        chain_id=338,
        timestamp=T0 + timedelta(minutes=minutes),
    )
    fields.update(overrides)
    return PaymentReceipt(**fields)


def signed_refund(refund: RefundRecord, secret: str):
    body = refund.model_dump_json(by_alias=True).encode("utf-8")
    return body, {
        MONITOR_SIGNATURE_HEADER: create_refund_signature(body, secret),
        "Content-Type": "application/json",
    }


def make_refund(refund_id: str = "refund-1", amount: int = 100_000, stream_id: str = "stream-x"):
    return RefundRecord(
        refund_id=refund_id,
        stream_id=stream_id,
        breach_type=BreachType.LATENCY,
        severity=SeverityTier.MINOR,
        refund_percent=10,
        original_amount=1_000_000,
        refund_amount=amount,
        recipient=PAYER,
    )


@pytest.mark.unit
class TestPublicEndpoints:
    """Endpoints that never require payment."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["chainId"] == 338

    @pytest.mark.asyncio
    async def test_pricing(self, client):
        response = await client.get("/api/pricing")

        endpoints = {e["path"]: e for e in response.json()["endpoints"]}
        assert endpoints["/api/premium-data"]["amount"] == "100000"
        assert endpoints["/api/ai-inference"]["amount"] == "500000"
        assert endpoints["/api/streams"]["method"] == "POST"
        assert response.json()["currency"] == "USDC.e"


@pytest.mark.unit
class TestPaidEndpoints:
    """Endpoints behind the payment gate."""

    @pytest.mark.asyncio
    async def test_premium_data_challenge(self, client, settings):
        response = await client.get("/api/premium-data")

        assert response.status_code == 402
        body = response.json()
        assert body["amount"] == "100000"
        assert body["currency"] == "USDC.e"
        assert body["chainId"] == 338
        assert body["recipient"] == settings.seller_address

    @pytest.mark.asyncio
    async def test_premium_data_paid(self, client, signer, ledger):
        response = await paid_request(client, signer, "GET", "/api/premium-data")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["payment"]["payer"] == signer.address
        assert body["payment"]["amount"] == "0.100000 USDC.e"
        tx_id = response.headers[PAYMENT_TX_HASH_HEADER]
        assert body["payment"]["txHash"] == tx_id
        assert await ledger.get_receipt(tx_id) is not None

    @pytest.mark.asyncio
    async def test_ai_inference_paid(self, client, signer):
        response = await paid_request(
            client, signer, "GET", "/api/ai-inference", params={"prompt": "hello"}
        )

        assert response.status_code == 200
        assert response.json()["inference"]["prompt"] == "hello"
        assert response.json()["payment"]["amount"] == "0.500000 USDC.e"

    @pytest.mark.asyncio
    async def test_stream_creation_opens_escrow(self, client, signer, ledger):
        response = await paid_request(
            client, signer, "POST", "/api/streams", json={"slaPreset": "strict"}
        )

        assert response.status_code == 201
        stream = response.json()["stream"]
        escrow = await ledger.get_escrow(stream["streamId"])
        assert escrow.original_amount == 1_000_000
        assert escrow.payer == signer.address
        assert escrow.sla == SLAConfig.from_preset("strict")

        detail = await client.get(f"/api/streams/{stream['streamId']}")
        assert detail.status_code == 200
        assert detail.json()["remaining"] == "1000000"

    @pytest.mark.asyncio
    async def test_bad_stream_preset_refused_before_payment(
        self, client, signer, ledger, settlement_client
    ):
        challenge = await client.post("/api/streams", json={"slaPreset": "strict"})
        header = codec.encode(signer.sign(challenge.json()))

        response = await client.post(
            "/api/streams", headers={PAYMENT_HEADER: header}, json={"slaPreset": "nope"}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_request"
        settlement_client.verify.assert_not_called()
        settlement_client.settle.assert_not_called()
        assert (await ledger.stats()).total_payments == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"json": {"slaPreset": "nope"}},
            {"json": {"sla": {"maxLatencyMs": -1}}},
            {"content": b"{not json", "headers": {"content-type": "application/json"}},
            {"content": b"slaPreset=strict", "headers": {"content-type": "text/plain"}},
        ],
    )
    async def test_invalid_stream_request_gets_no_challenge(self, client, kwargs):
        response = await client.post("/api/streams", **kwargs)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stream_without_body_uses_default_preset(self, client, signer, ledger):
        response = await paid_request(client, signer, "POST", "/api/streams")

        assert response.status_code == 201
        escrow = await ledger.get_escrow(response.json()["stream"]["streamId"])
        assert escrow.sla == SLAConfig.from_preset("moderate")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure",
        [AsyncMock(return_value=False), AsyncMock(side_effect=LedgerWriteError("disk full"))],
    )
    async def test_escrow_open_failure_escalates(self, client, signer, ledger, failure, caplog):
        with patch.object(ledger, "open_escrow", failure):
            with caplog.at_level("CRITICAL", logger="parallelpay.reconciliation"):
                response = await paid_request(
                    client, signer, "POST", "/api/streams", json={"slaPreset": "strict"}
                )

        assert response.status_code == 500
        tx_id = response.json()["detail"]["transactionId"]
        assert await ledger.get_receipt(tx_id) is not None
        assert any("escrow_open_failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_unknown_stream(self, client):
        assert (await client.get("/api/streams/nope")).status_code == 404


@pytest.mark.unit
class TestReceiptQueries:
    """Receipt listing across the ledger and the legacy cache."""

    @pytest.mark.asyncio
    async def test_merged_listing_dedups(self, client, ledger, cache):
        await ledger.append_receipt(receipt("0xa", 1))
        await ledger.append_receipt(receipt("0xb", 2))
        cache.add(receipt("0xb", 2))
        cache.add(receipt("0xc", 3))

        response = await client.get("/api/payments", params={"count": 10})

        ids = [p["transactionId"] for p in response.json()["payments"]]
        assert ids == ["0xc", "0xb", "0xa"]
        assert response.json()["total"] == 2

    @pytest.mark.asyncio
    async def test_count_capped(self, client, ledger, settings):
        for i in range(settings.max_query_count + 5):
            await ledger.append_receipt(receipt(f"0x{i:x}", i))

        response = await client.get("/api/payments", params={"count": 10_000})

        assert len(response.json()["payments"]) == settings.max_query_count

    @pytest.mark.asyncio
    async def test_legacy_writer_goes_to_cache(self, client, ledger, cache):
        body = receipt("0xlegacy", 1).model_dump(mode="json", by_alias=True)

        response = await client.post("/api/payments", json=body)

        assert response.json()["stored"] is True
        assert cache.get("0xlegacy") is not None
        assert await ledger.get_receipt("0xlegacy") is None
        assert (await client.get("/api/payments/0xlegacy")).status_code == 200

    @pytest.mark.asyncio
    async def test_payment_not_found(self, client):
        assert (await client.get("/api/payments/0xmissing")).status_code == 404


@pytest.mark.unit
class TestRefundIngestion:
    """Signed refund ingestion from the monitor."""

    @pytest.mark.asyncio
    async def test_signed_refund_recorded(self, client, ledger, settings):
        body, headers = signed_refund(make_refund(), settings.monitor_secret)

        response = await client.post("/api/refunds", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "recorded", "refundId": "refund-1"}
        assert (await ledger.get_refund("refund-1")).refund_amount == 100_000

    @pytest.mark.asyncio
    async def test_replayed_refund_is_duplicate(self, client, settings):
        body, headers = signed_refund(make_refund(), settings.monitor_secret)

        await client.post("/api/refunds", content=body, headers=headers)
        response = await client.post("/api/refunds", content=body, headers=headers)

        assert response.json()["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client, ledger):
        body, headers = signed_refund(make_refund(), "wrong-secret")

        response = await client.post("/api/refunds", content=body, headers=headers)

        assert response.status_code == 401
        assert await ledger.get_refund("refund-1") is None

    @pytest.mark.asyncio
    async def test_unsigned_refund_rejected(self, client):
        body = make_refund().model_dump_json(by_alias=True)

        response = await client.post(
            "/api/refunds", content=body, headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_signed_garbage_rejected(self, client, settings):
        body = json.dumps({"refundId": "x"}).encode()
        headers = {MONITOR_SIGNATURE_HEADER: create_refund_signature(body, settings.monitor_secret)}

        response = await client.post("/api/refunds", content=body, headers=headers)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_refund_beyond_escrow_conflicts(self, client, ledger, settings):
        await ledger.open_escrow(
            StreamEscrow(
                stream_id="stream-x",
                payer=PAYER,
                recipient=settings.seller_address,
                original_amount=1_000_000,
                sla=SLAConfig.from_preset("moderate"),
            )
        )
        await ledger.append_refund(make_refund("refund-0", 950_000))
        body, headers = signed_refund(make_refund("refund-1", 100_000), settings.monitor_secret)

        response = await client.post("/api/refunds", content=body, headers=headers)

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_refunds_listed_and_counted(self, client, ledger):
        await ledger.append_refund(make_refund("refund-1", 100_000))

        refunds = (await client.get("/api/refunds")).json()["refunds"]
        stats = (await client.get("/api/stats")).json()

        assert [r["refundId"] for r in refunds] == ["refund-1"]
        assert stats["totalRefunds"] == 1
        assert stats["totalRefunded"] == "100000"
