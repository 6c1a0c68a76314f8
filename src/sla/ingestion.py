"""Refund ingestion between an external monitor process and the seller.

The monitor signs each RefundRecord with HMAC-SHA256 over the raw JSON body
using the shared monitor secret; the seller verifies the signature before
appending the refund to its ledger.
"""

import hashlib
import hmac
from typing import Optional

import httpx

from ..constants import MONITOR_SIGNATURE_HEADER
from ..logging_utils import get_logger
from ..models import RefundRecord

logger = get_logger(__name__)

REFUNDS_PATH = "/api/refunds"


def create_refund_signature(payload: bytes, secret: str) -> str:
    """Create the hex HMAC-SHA256 signature for a refund payload."""
    if not secret:
        raise ValueError("Monitor secret is required for signing")
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_refund_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Check a refund payload signature in constant time."""
    if not signature or not secret:
        return False
    expected = create_refund_signature(payload, secret)
    return hmac.compare_digest(expected, signature)


class RefundReporter:
    """Posts RefundRecords to a seller's ingestion endpoint."""

    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not secret:
            raise ValueError("secret is required to report refunds")
        self.secret = secret
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    async def close(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def report(self, refund: RefundRecord) -> bool:
        """Send one refund. Returns True if the seller accepted or already had it."""
        body = refund.model_dump_json(by_alias=True).encode("utf-8")
        signature = create_refund_signature(body, self.secret)

        logger.info(f"Reporting refund {refund.refund_id} for stream {refund.stream_id}")
        try:
            response = await self._http.post(
                REFUNDS_PATH,
                content=body,
                headers={
                    MONITOR_SIGNATURE_HEADER: signature,
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Error reporting refund {refund.refund_id}: {e}")
            return False

        if response.status_code in (200, 201):
            return True

        logger.error(
            f"Failed to report refund {refund.refund_id}: "
            f"{response.status_code} - {response.text}"
        )
        return False
