"""ParallelPay Seller API.

FastAPI application serving x402-protected resources on Cronos:
- Paid premium data and AI inference endpoints
- SLA-backed stream creation (escrowed payment)
- Receipt and refund query interface
- Signed refund ingestion from the external SLA monitor
"""

import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.config import Config, config, validate_config_for_service
from src.constants import (
    MONITOR_SIGNATURE_HEADER,
    format_usdc,
    get_explorer_tx_url,
    get_network_config,
)
from src.errors import LedgerWriteError, RefundLimitExceededError
from src.ledger import ReceiptLedger, TransientReceiptCache, merge_receipts
from src.logging_utils import get_logger, log_reconciliation_alert, setup_logging
from src.models import (
    PaidRoute,
    PaymentReceipt,
    RefundRecord,
    SLAConfig,
    StreamEscrow,
)
from src.payments.facilitator import SettlementClient
from src.payments.gate import PaymentGate, PaymentGateMiddleware
from src.sla.ingestion import verify_refund_signature

logger = get_logger(__name__)


class StreamRequest(BaseModel):
    """Body of POST /api/streams. An explicit ``sla`` overrides the preset."""

    sla_preset: str = "moderate"
    sla: Optional[SLAConfig] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _stream_sla(body: StreamRequest) -> SLAConfig:
    return body.sla or SLAConfig.from_preset(body.sla_preset)


async def validate_stream_request(request: Request) -> Optional[str]:
    """Refuse a stream request the handler could not open, before it is paid for."""
    raw = await request.body()
    if not raw:
        return None
    content_type = request.headers.get("content-type", "")
    if content_type and "json" not in content_type:
        return f"Unsupported content type: {content_type}"
    try:
        _stream_sla(StreamRequest.model_validate_json(raw))
    except ValueError as e:
        return str(e)
    return None


def _network_name(settings: Config) -> str:
    try:
        return get_network_config(settings.chain_id)["network"]["name"]
    except ValueError:
        return f"chain-{settings.chain_id}"


def _explorer(tx_id: str, settings: Config) -> Optional[str]:
    try:
        return get_explorer_tx_url(tx_id, settings.chain_id)
    except ValueError:
        return None


def _payment_block(receipt: PaymentReceipt, settings: Config) -> Dict[str, Any]:
    return {
        "txHash": receipt.transaction_id,
        "payer": receipt.payer,
        "amount": format_usdc(receipt.amount),
        "explorer": receipt.explorer_url or _explorer(receipt.transaction_id, settings),
    }


def _receipt_view(receipt: PaymentReceipt, settings: Config) -> Dict[str, Any]:
    return {
        **receipt.model_dump(mode="json", by_alias=True),
        "amountFormatted": format_usdc(receipt.amount),
        "explorer": receipt.explorer_url or _explorer(receipt.transaction_id, settings),
    }


def paid_routes(settings: Config) -> Dict[str, PaidRoute]:
    """Paid routes keyed by ``"METHOD /path"``."""
    return {
        "GET /api/premium-data": PaidRoute(
            amount=settings.premium_data_price, description="Premium data access"
        ),
        "GET /api/ai-inference": PaidRoute(
            amount=settings.ai_inference_price, description="AI inference request"
        ),
        "POST /api/streams": PaidRoute(
            amount=settings.stream_creation_price, description="SLA-backed stream creation"
        ),
    }


def create_app(
    settings: Config = config,
    ledger: Optional[ReceiptLedger] = None,
    settlement_client: Optional[SettlementClient] = None,
    cache: Optional[TransientReceiptCache] = None,
) -> FastAPI:
    """Build the seller application.

    Every component reaches the ledger through the instance passed here (or
    the one created from ``settings.database_path``); there is no global ledger.
    """
    validate_config_for_service("seller", settings)

    ledger = ledger or ReceiptLedger(settings.database_path)
    settlement_client = settlement_client or SettlementClient(
        settings.facilitator_url,
        verify_timeout=settings.verify_timeout_seconds,
        settle_timeout=settings.settle_timeout_seconds,
    )
    cache = cache if cache is not None else TransientReceiptCache()
    gate = PaymentGate(settlement_client, ledger, settings)
    routes = paid_routes(settings)

    app = FastAPI(
        title="ParallelPay Seller API",
        description="x402 pay-per-request resources with SLA-backed refunds",
    )
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.cache = cache
    app.state.gate = gate
    app.add_middleware(
        PaymentGateMiddleware,
        routes=routes,
        gate=gate,
        prechecks={"POST /api/streams": validate_stream_request},
    )

    def capped(count: Optional[int]) -> int:
        if count is None or count < 1:
            count = settings.default_query_count
        return min(count, settings.max_query_count)

    def escrow_failed(escrow: StreamEscrow, error: str) -> HTTPException:
        # The payment is settled and recorded but backs no stream.
        log_reconciliation_alert(
            "escrow_open_failed",
            transaction_id=escrow.original_transaction_id,
            payer=escrow.payer,
            stream_id=escrow.stream_id,
            amount=escrow.original_amount,
            error=error,
        )
        return HTTPException(
            status_code=500,
            detail={"error": "escrow_open_failed", "transactionId": escrow.original_transaction_id},
        )

    @app.on_event("startup")
    async def startup():
        """Initialize the ledger on startup."""
        logger.info("Initializing seller service...")
        await ledger.initialize()
        logger.info(f"Seller ready: {len(routes)} paid routes, recipient {settings.seller_address}")

    @app.on_event("shutdown")
    async def shutdown():
        await settlement_client.close()

    @app.get("/api/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "parallelpay-seller",
            "network": _network_name(settings),
            "chainId": settings.chain_id,
            "facilitator": settings.facilitator_url,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/pricing")
    async def pricing() -> dict:
        """List paid endpoints and their prices."""
        return {
            "endpoints": [
                {
                    "method": key.split(" ", 1)[0],
                    "path": key.split(" ", 1)[1],
                    "amount": str(route.amount),
                    "price": format_usdc(route.amount),
                    "description": route.description,
                }
                for key, route in routes.items()
            ],
            "currency": settings.currency,
            "network": _network_name(settings),
            "chainId": settings.chain_id,
            "paymentMethod": "x402 (EIP-3009 transferWithAuthorization)",
        }

    @app.get("/api/premium-data")
    async def premium_data(request: Request) -> dict:
        """Premium market data (requires payment)."""
        receipt: PaymentReceipt = request.state.payment_receipt
        return {
            "success": True,
            "data": {
                "type": "premium_market_data",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "prices": {"BTC": 98500.00, "ETH": 3850.00, "CRO": 0.145},
                "signals": [
                    {"asset": "BTC", "action": "HOLD", "confidence": 0.85},
                    {"asset": "ETH", "action": "BUY", "confidence": 0.72},
                ],
            },
            "payment": _payment_block(receipt, settings),
        }

    @app.get("/api/ai-inference")
    async def ai_inference(request: Request, prompt: str = "Analyze market trends") -> dict:
        """Simulated AI inference (requires payment)."""
        receipt: PaymentReceipt = request.state.payment_receipt
        return {
            "success": True,
            "inference": {
                "prompt": prompt,
                "response": (
                    "Based on current market analysis: momentum is positive with BTC "
                    "testing resistance. Watch support levels before adding exposure."
                ),
                "model": "parallel-pay-ai-v1",
                "tokensUsed": 150,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "payment": _payment_block(receipt, settings),
        }

    @app.post("/api/streams", status_code=201)
    async def create_stream(request: Request, body: Optional[StreamRequest] = None) -> dict:
        """Open an SLA-backed stream escrowing the payment (requires payment)."""
        receipt: PaymentReceipt = request.state.payment_receipt
        sla = _stream_sla(body or StreamRequest())

        escrow = StreamEscrow(
            stream_id=f"stream-{uuid.uuid4().hex[:12]}",
            payer=receipt.payer,
            recipient=receipt.recipient,
            original_amount=receipt.amount,
            original_transaction_id=receipt.transaction_id,
            sla=sla,
        )
        try:
            opened = await ledger.open_escrow(escrow)
        except LedgerWriteError as e:
            raise escrow_failed(escrow, str(e)) from e
        if not opened:
            raise escrow_failed(escrow, "stream id already on file")
        return {
            "success": True,
            "stream": escrow.model_dump(mode="json", by_alias=True),
            "payment": _payment_block(receipt, settings),
        }

    @app.get("/api/streams/{stream_id}")
    async def get_stream(stream_id: str) -> dict:
        escrow = await ledger.get_escrow(stream_id)
        if escrow is None:
            raise HTTPException(status_code=404, detail="Stream not found")
        refunds = await ledger.refunds_for_stream(stream_id)
        return {
            "stream": escrow.model_dump(mode="json", by_alias=True),
            "remaining": str(escrow.remaining),
            "refunds": [r.model_dump(mode="json", by_alias=True) for r in refunds],
        }

    @app.get("/api/payments")
    async def list_payments(count: Optional[int] = Query(default=None)) -> dict:
        """Recent payments, merged from the ledger and the legacy in-process cache."""
        limit = capped(count)
        durable = await ledger.recent_receipts(limit)
        merged = merge_receipts(durable, cache.all(), limit)
        stats = await ledger.stats()
        return {
            "payments": [_receipt_view(r, settings) for r in merged],
            "total": stats.total_payments,
        }

    @app.get("/api/payments/{tx_id}")
    async def get_payment(tx_id: str) -> dict:
        receipt = await ledger.get_receipt(tx_id) or cache.get(tx_id)
        if receipt is None:
            raise HTTPException(status_code=404, detail="Payment not found")
        return _receipt_view(receipt, settings)

    @app.post("/api/payments")
    async def record_legacy_payment(receipt: PaymentReceipt) -> dict:
        """Legacy writer: keeps the receipt in the in-process cache only."""
        stored = cache.add(receipt)
        return {"stored": stored, "transactionId": receipt.transaction_id}

    @app.post("/api/refunds")
    async def ingest_refund(
        request: Request,
        x_monitor_signature: Optional[str] = Header(None, alias=MONITOR_SIGNATURE_HEADER),
    ) -> dict:
        """Append a refund reported by the external SLA monitor."""
        payload = await request.body()
        if not verify_refund_signature(payload, x_monitor_signature, settings.monitor_secret):
            logger.warning("Refund ingestion rejected: invalid signature")
            raise HTTPException(status_code=401, detail="Invalid monitor signature")

        try:
            refund = RefundRecord.model_validate_json(payload)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        try:
            recorded = await ledger.append_refund(refund)
        except RefundLimitExceededError as e:
            raise HTTPException(status_code=409, detail=str(e))

        return {
            "status": "recorded" if recorded else "duplicate",
            "refundId": refund.refund_id,
        }

    @app.get("/api/refunds")
    async def list_refunds(count: Optional[int] = Query(default=None)) -> dict:
        refunds = await ledger.recent_refunds(capped(count))
        return {"refunds": [r.model_dump(mode="json", by_alias=True) for r in refunds]}

    @app.get("/api/stats")
    async def stats() -> dict:
        totals = await ledger.stats()
        return {
            **totals.model_dump(mode="json", by_alias=True),
            "totalPaidFormatted": format_usdc(totals.total_paid),
            "totalRefundedFormatted": format_usdc(totals.total_refunded),
            "cachedPayments": len(cache),
        }

    return app


if __name__ == "__main__":
    import uvicorn

    setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting seller server on {config.seller_host}:{config.seller_port}")
    uvicorn.run(
        create_app(),
        host=config.seller_host,
        port=config.seller_port,
        log_level=config.log_level.lower(),
    )
