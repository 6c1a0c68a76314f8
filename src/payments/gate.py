"""Server-side payment gate.

Runs the challenge, verify, settle, admit cycle for one request::

    Unpaid -> Challenged -> Verifying -> Settling -> Admitted
                               |            |
                               +-> Rejected <+

A request is admitted only after its receipt has been appended to the
ledger, so the ledger write always happens before the resource handler runs.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from ..config import Config, config
from ..constants import (
    CORRELATION_ID_HEADER,
    PAYMENT_HEADER,
    PAYMENT_TX_HASH_HEADER,
    get_explorer_tx_url,
    get_network_config,
)
from ..errors import LedgerWriteError, MalformedPaymentError, SettlementOutcomeUnknownError
from ..ledger import ReceiptLedger
from ..logging_utils import (
    CorrelationIdContext,
    get_correlation_id,
    get_logger,
    log_reconciliation_alert,
)
from ..models import PaidRoute, PaymentPayload, PaymentReceipt, PaymentRequirement
from . import codec
from .facilitator import SettlementClient

logger = get_logger(__name__)

# Returns an error message for a request that must be refused before payment.
RequestCheck = Callable[[Request], Awaitable[Optional[str]]]


class GateState(str, Enum):
    UNPAID = "unpaid"
    CHALLENGED = "challenged"
    VERIFYING = "verifying"
    SETTLING = "settling"
    ADMITTED = "admitted"
    REJECTED = "rejected"


class GateOutcome(BaseModel):
    """Result of running one request through the gate."""

    state: GateState
    status_code: int
    body: Optional[Dict[str, Any]] = None
    receipt: Optional[PaymentReceipt] = None
    error: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.state == GateState.ADMITTED


def _network_name(chain_id: int) -> str:
    try:
        return get_network_config(chain_id)["network"]["name"]
    except ValueError:
        return f"chain-{chain_id}"


def _explorer_url(transaction_id: str, chain_id: int) -> Optional[str]:
    try:
        return get_explorer_tx_url(transaction_id, chain_id)
    except ValueError:
        return None


class PaymentGate:
    """Protocol state machine guarding paid resources."""

    def __init__(
        self,
        settlement_client: SettlementClient,
        ledger: ReceiptLedger,
        settings: Config = config,
        clock: Callable[[], float] = time.time,
    ):
        self.settlement_client = settlement_client
        self.ledger = ledger
        self.settings = settings
        self.clock = clock

    def requirement_for(self, route: PaidRoute, resource: str) -> PaymentRequirement:
        """Build a fresh challenge. Nothing is retained between challenges."""
        return PaymentRequirement(
            resource=resource,
            amount=route.amount,
            currency=self.settings.currency,
            recipient=self.settings.seller_address,
            chain_id=self.settings.chain_id,
            token=self.settings.token_address,
            facilitator_url=self.settings.facilitator_url,
            description=route.description,
            network=_network_name(self.settings.chain_id),
        )

    def _reject(
        self,
        requirement: PaymentRequirement,
        status_code: int,
        error: str,
        reason: Optional[str] = None,
        **extra: Any,
    ) -> GateOutcome:
        body = {**requirement.to_challenge(), "error": error, **extra}
        if reason:
            body["reason"] = reason
        return GateOutcome(
            state=GateState.REJECTED, status_code=status_code, body=body, error=error
        )

    def _check_terms(
        self, payload: PaymentPayload, requirement: PaymentRequirement
    ) -> Optional[str]:
        """Compare the authorization with the challenge before any remote call."""
        auth = payload.authorization
        if payload.chain_id != requirement.chain_id:
            return f"chainId {payload.chain_id} does not match {requirement.chain_id}"
        if payload.token != requirement.token:
            return "token does not match the requested token"
        if auth.payee != requirement.recipient:
            return "payee does not match the recipient"
        if auth.value != requirement.amount:
            return f"value {auth.value} does not equal the required amount {requirement.amount}"
        if not auth.is_valid_at(int(self.clock())):
            return "authorization is outside its validity window"
        return None

    async def process(
        self, payment_header: Optional[str], route: PaidRoute, resource: str
    ) -> GateOutcome:
        """Run one request through the gate.

        Args:
            payment_header: Raw X-PAYMENT header value, or None.
            route: Price of the requested resource.
            resource: Path of the requested resource.

        Returns:
            GateOutcome. Only an ADMITTED outcome carries a receipt.
        """
        requirement = self.requirement_for(route, resource)

        if not payment_header:
            logger.info(f"Payment required for {resource}: {route.amount}")
            return GateOutcome(
                state=GateState.CHALLENGED, status_code=402, body=requirement.to_challenge()
            )

        try:
            payload = codec.decode(payment_header)
        except MalformedPaymentError as e:
            logger.warning(f"Malformed payment header for {resource}: {e}")
            return self._reject(requirement, 400, "malformed_payment", str(e))

        # Verifying
        mismatch = self._check_terms(payload, requirement)
        if mismatch:
            logger.warning(f"Authorization does not satisfy challenge for {resource}: {mismatch}")
            return self._reject(requirement, 402, "payment_verification_failed", mismatch)

        verification = await self.settlement_client.verify(payment_header, requirement.chain_id)
        if not verification.valid:
            return self._reject(
                requirement, 402, "payment_verification_failed", verification.error
            )

        # Settling
        payer = payload.authorization.payer
        try:
            settlement = await self.settlement_client.settle(
                payment_header, requirement.chain_id, requirement.recipient
            )
        except SettlementOutcomeUnknownError as e:
            log_reconciliation_alert(
                "settlement_outcome_unknown",
                payer=payer,
                nonce=payload.authorization.nonce,
                amount=str(requirement.amount),
                resource=resource,
                error=str(e),
            )
            return GateOutcome(
                state=GateState.REJECTED,
                status_code=502,
                body={
                    "error": "settlement_outcome_unknown",
                    "retrySafe": False,
                    "message": (
                        "Payment may have been settled. Do not retry; "
                        "contact support with this reference."
                    ),
                    "reference": get_correlation_id() or payload.authorization.nonce,
                    "nonce": payload.authorization.nonce,
                },
                error="settlement_outcome_unknown",
            )
        except asyncio.CancelledError:
            log_reconciliation_alert(
                "settlement_cancelled",
                payer=payer,
                nonce=payload.authorization.nonce,
                resource=resource,
            )
            raise

        if not settlement.success:
            return self._reject(requirement, 402, "payment_settlement_failed", settlement.error)

        receipt = PaymentReceipt(
            transaction_id=settlement.transaction_id,
            payer=payer,
            recipient=requirement.recipient,
            amount=requirement.amount,
            currency=requirement.currency,
            resource=resource,
            chain_id=requirement.chain_id,
            explorer_url=_explorer_url(settlement.transaction_id, requirement.chain_id),
            facilitator_url=requirement.facilitator_url,
        )

        try:
            recorded = await self.ledger.append_receipt(receipt)
        except LedgerWriteError as e:
            log_reconciliation_alert(
                "ledger_write_failed",
                transaction_id=receipt.transaction_id,
                payer=payer,
                amount=str(receipt.amount),
                resource=resource,
                error=str(e),
            )
            return self._reject(
                requirement,
                500,
                "ledger_write_failed",
                "Payment settled but could not be recorded",
                transactionId=receipt.transaction_id,
            )

        if not recorded:
            logger.warning(f"Settlement {receipt.transaction_id} was already redeemed")
            return self._reject(
                requirement,
                402,
                "payment_already_redeemed",
                f"Transaction {receipt.transaction_id} has already been used",
            )

        logger.info(f"Admitted {resource} for {payer} ({receipt.transaction_id})")
        return GateOutcome(state=GateState.ADMITTED, status_code=200, receipt=receipt)


class PaymentGateMiddleware(BaseHTTPMiddleware):
    """Guards paid routes with a PaymentGate.

    Admitted requests reach the handler with ``request.state.payment_receipt``
    set, and the response carries the settlement transaction id in
    ``X-Payment-Tx-Hash``. A route's precheck runs before the gate; a request
    it refuses gets a 422 and no payment is verified or settled.
    """

    def __init__(
        self,
        app: ASGIApp,
        routes: Dict[str, PaidRoute],
        gate: PaymentGate,
        prechecks: Optional[Dict[str, RequestCheck]] = None,
    ):
        """Initialize the middleware.

        Args:
            app: The ASGI application.
            routes: Paid routes keyed by ``"METHOD /path"``.
            gate: The payment gate to run for those routes.
            prechecks: Request validators keyed like ``routes``.
        """
        super().__init__(app)
        self.routes = routes
        self.gate = gate
        self.prechecks = prechecks or {}

    async def dispatch(self, request: Request, call_next):
        key = f"{request.method} {request.url.path}"
        route = self.routes.get(key)
        if route is None:
            return await call_next(request)

        with CorrelationIdContext(request.headers.get(CORRELATION_ID_HEADER)) as correlation_id:
            precheck = self.prechecks.get(key)
            error = await precheck(request) if precheck else None
            if error is not None:
                logger.info(f"Refusing {key} before payment: {error}")
                return JSONResponse(
                    content={"error": "invalid_request", "detail": error},
                    status_code=422,
                    headers={CORRELATION_ID_HEADER: correlation_id},
                )

            outcome = await self.gate.process(
                request.headers.get(PAYMENT_HEADER), route, request.url.path
            )
            if not outcome.admitted:
                return JSONResponse(
                    content=outcome.body,
                    status_code=outcome.status_code,
                    headers={CORRELATION_ID_HEADER: correlation_id},
                )

            request.state.payment_receipt = outcome.receipt
            response = await call_next(request)
            response.headers[PAYMENT_TX_HASH_HEADER] = outcome.receipt.transaction_id
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
