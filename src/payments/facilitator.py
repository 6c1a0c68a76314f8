"""Client for the x402 settlement authority (facilitator).

Two remote calls, both sequential request/response:

* ``verify`` is a side-effect-free pre-check. Every failure reads as invalid.
* ``settle`` moves funds irreversibly. A confirmed rejection is returned as
  ``success=False``; when the outcome cannot be observed (transport error,
  timeout, unreadable success response) SettlementOutcomeUnknownError is
  raised instead. Settle is never retried here.
"""

from typing import Optional

import httpx
from pydantic import ValidationError

from ..config import config
from ..constants import CORRELATION_ID_HEADER, FACILITATOR_SETTLE_PATH, FACILITATOR_VERIFY_PATH
from ..errors import SettlementOutcomeUnknownError
from ..logging_utils import get_correlation_id, get_logger
from ..models import SettleResult, VerifyResult

logger = get_logger(__name__)


def _error_from_body(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return None


class SettlementClient:
    """Typed boundary to the remote settlement authority."""

    def __init__(
        self,
        base_url: str = config.facilitator_url,
        verify_timeout: float = config.verify_timeout_seconds,
        settle_timeout: float = config.settle_timeout_seconds,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the settlement client.

        Args:
            base_url: Facilitator base URL; ``/verify`` and ``/settle`` are relative to it.
            verify_timeout: Seconds before a verify call counts as invalid.
            settle_timeout: Seconds before a settle call counts as outcome unknown.
            transport: Optional httpx transport (tests mount the facilitator here).
        """
        self.base_url = base_url.rstrip("/")
        self.verify_timeout = verify_timeout
        self.settle_timeout = settle_timeout
        self._http = httpx.AsyncClient(base_url=self.base_url, transport=transport)

    async def close(self):
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _headers(self) -> dict:
        correlation_id = get_correlation_id()
        return {CORRELATION_ID_HEADER: correlation_id} if correlation_id else {}

    async def verify(self, payment_header: str, chain_id: int) -> VerifyResult:
        """Ask the authority whether an encoded authorization is valid.

        Never raises for remote failures: transport errors, timeouts, non-2xx
        statuses and malformed bodies all yield ``valid=False``.
        """
        try:
            response = await self._http.post(
                FACILITATOR_VERIFY_PATH,
                json={"payment": payment_header, "chainId": chain_id},
                headers=self._headers(),
                timeout=self.verify_timeout,
            )
        except httpx.TimeoutException:
            logger.warning("Facilitator verify timed out")
            return VerifyResult(valid=False, error="verify_timeout")
        except httpx.HTTPError as e:
            logger.warning(f"Facilitator verify transport error: {e}")
            return VerifyResult(valid=False, error="verify_unavailable")

        if not response.is_success:
            logger.warning(f"Facilitator verify returned HTTP {response.status_code}")
            return VerifyResult(valid=False, error=f"verify_http_{response.status_code}")

        try:
            result = VerifyResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"Facilitator verify returned a malformed body: {e}")
            return VerifyResult(valid=False, error="verify_malformed_response")

        if not result.valid:
            logger.info(f"Authorization rejected by facilitator: {result.error}")
        return result

    async def settle(self, payment_header: str, chain_id: int, recipient: str) -> SettleResult:
        """Submit an encoded authorization for settlement.

        Returns:
            SettleResult with ``success=True`` and a transaction id, or
            ``success=False`` when the authority confirmed the failure.

        Raises:
            SettlementOutcomeUnknownError: If the result could not be observed.
        """
        try:
            response = await self._http.post(
                FACILITATOR_SETTLE_PATH,
                json={"payment": payment_header, "chainId": chain_id, "recipient": recipient},
                headers=self._headers(),
                timeout=self.settle_timeout,
            )
        except httpx.TimeoutException as e:
            raise SettlementOutcomeUnknownError("Settlement timed out", cause=e) from e
        except httpx.HTTPError as e:
            raise SettlementOutcomeUnknownError(f"Settlement transport error: {e}", cause=e) from e

        if not response.is_success:
            error = _error_from_body(response) or f"settle_http_{response.status_code}"
            logger.warning(f"Facilitator refused settlement: HTTP {response.status_code} {error}")
            return SettleResult(success=False, error=error)

        try:
            result = SettleResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise SettlementOutcomeUnknownError(
                f"Settlement response could not be read: {e}", cause=e
            ) from e

        if result.success and not result.transaction_id:
            raise SettlementOutcomeUnknownError("Settlement reported success without a transaction id")

        if result.success:
            logger.info(f"Settlement confirmed: {result.transaction_id}")
        else:
            logger.warning(f"Settlement failed: {result.error}")
        return result
