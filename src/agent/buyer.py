"""ParallelPay buyer agent.

Runs the client side of the x402 cycle against the seller:
1. Request a protected resource
2. Receive the 402 payment requirement
3. Sign an EIP-3009 transfer authorization for it
4. Retry with the X-PAYMENT header and collect the settlement transaction id
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.config import config, validate_config_for_service
from src.constants import (
    CORRELATION_ID_HEADER,
    PAYMENT_HEADER,
    PAYMENT_TX_HASH_HEADER,
    format_usdc,
)
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import PaymentRequirement
from src.payments import codec
from src.payments.signer import AuthorizationSigner

logger = get_logger(__name__)


class ResourceResult(BaseModel):
    """What the buyer got back for one resource request."""

    status_code: int
    data: Optional[Dict[str, Any]] = None
    paid: bool = False
    amount: Optional[int] = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    retry_safe: bool = True


class BuyerAgent:
    """Pays for and fetches x402-protected resources."""

    def __init__(
        self,
        signer: AuthorizationSigner,
        seller_url: str = config.seller_url,
        max_amount: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the agent.

        Args:
            signer: Signs authorizations with the buyer's key.
            seller_url: Base URL of the seller API.
            max_amount: Refuse challenges asking for more than this (smallest units).
            transport: Optional httpx transport (tests mount the seller app here).
        """
        self.signer = signer
        self.max_amount = max_amount
        self._http = httpx.AsyncClient(
            base_url=seller_url.rstrip("/"), timeout=30.0, transport=transport
        )

    async def close(self):
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def fetch_resource(
        self,
        path: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> ResourceResult:
        """Fetch a resource, paying for it if the seller asks.

        A settlement with unknown outcome is reported with ``retry_safe=False``
        and is never retried.
        """
        with CorrelationIdContext() as correlation_id:
            headers = {CORRELATION_ID_HEADER: correlation_id}
            logger.info(f"Requesting {method} {path}")
            response = await self._http.request(
                method, path, params=params, json=json, headers=headers
            )
            if response.status_code != 402:
                return self._result(response, paid=False)

            try:
                requirement = PaymentRequirement.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                logger.error(f"Seller sent an unreadable payment requirement: {e}")
                return ResourceResult(status_code=402, error="invalid_payment_requirement")

            if self.max_amount is not None and requirement.amount > self.max_amount:
                logger.warning(
                    f"Refusing to pay {format_usdc(requirement.amount)} for {path} "
                    f"(limit {format_usdc(self.max_amount)})"
                )
                return ResourceResult(
                    status_code=402, amount=requirement.amount, error="amount_exceeds_limit"
                )

            logger.info(
                f"Payment required: {format_usdc(requirement.amount)} to {requirement.recipient}"
            )
            payload = self.signer.sign(requirement)
            headers[PAYMENT_HEADER] = codec.encode(payload)

            response = await self._http.request(
                method, path, params=params, json=json, headers=headers
            )
            result = self._result(response, paid=response.is_success)
            result.amount = requirement.amount
            if result.paid:
                logger.info(f"Paid {format_usdc(requirement.amount)} in {result.transaction_id}")
            return result

    def _result(self, response: httpx.Response, paid: bool) -> ResourceResult:
        try:
            body = response.json()
        except ValueError:
            body = None
        data = body if isinstance(body, dict) else None

        if response.is_success:
            return ResourceResult(
                status_code=response.status_code,
                data=data,
                paid=paid,
                transaction_id=response.headers.get(PAYMENT_TX_HASH_HEADER),
            )

        error = (data or {}).get("error") or f"http_{response.status_code}"
        if not isinstance(error, str):
            error = str(error)
        retry_safe = not (data and data.get("retrySafe") is False)
        logger.warning(f"Request failed with HTTP {response.status_code}: {error}")
        return ResourceResult(
            status_code=response.status_code, data=data, error=error, retry_safe=retry_safe
        )


async def main():
    """Pay for each seller resource once."""
    setup_logging(config.log_level, config.log_format)
    validate_config_for_service("buyer")

    signer = AuthorizationSigner(config.buyer_private_key)
    async with BuyerAgent(signer) as agent:
        logger.info(f"Buyer {signer.address} using seller {config.seller_url}")
        for path, params in (
            ("/api/premium-data", None),
            ("/api/ai-inference", {"prompt": "Summarize CRO market sentiment"}),
        ):
            result = await agent.fetch_resource(path, params=params)
            if result.paid:
                logger.info(f"{path}: tx {result.transaction_id}")
            else:
                logger.error(f"{path}: {result.error}")


if __name__ == "__main__":
    asyncio.run(main())
