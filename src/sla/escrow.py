"""Escrow release: settles refunds from the treasury back to the payer.

The treasury signs a transfer authorization for the refund amount and it is
submitted through the same settlement authority as inbound payments. The
refund's settlement transaction id is written to the ledger exactly once.
"""

import hashlib
from typing import Optional

from ..config import Config, config
from ..errors import SettlementOutcomeUnknownError
from ..ledger import ReceiptLedger
from ..logging_utils import get_logger, log_reconciliation_alert
from ..models import RefundRecord
from ..payments import codec
from ..payments.facilitator import SettlementClient
from ..payments.signer import AuthorizationSigner

logger = get_logger(__name__)


class EscrowReleaser:
    """Returns refunded escrow to payers."""

    def __init__(
        self,
        settlement_client: SettlementClient,
        ledger: ReceiptLedger,
        settings: Config = config,
        signer: Optional[AuthorizationSigner] = None,
    ):
        """Initialize the releaser.

        Without a treasury key (and no explicit signer) the releaser runs in
        simulation mode and records a deterministic placeholder transaction id.
        """
        self.settlement_client = settlement_client
        self.ledger = ledger
        self.settings = settings
        if signer is None and settings.treasury_private_key:
            signer = AuthorizationSigner(
                settings.treasury_private_key,
                validity_seconds=settings.authorization_validity_seconds,
                token_name=settings.token_name,
                token_version=settings.token_version,
            )
        self.signer = signer

    @property
    def simulated(self) -> bool:
        return self.signer is None

    async def release(self, refund: RefundRecord) -> Optional[str]:
        """Settle a refund and record its transaction id.

        Returns:
            The refund transaction id, or None if nothing was settled.

        Raises:
            SettlementOutcomeUnknownError: If the refund settlement result could
                not be observed. Escalated for reconciliation, not retried.
        """
        if refund.settled:
            return refund.refund_transaction_id
        if refund.refund_amount <= 0:
            return None
        if not refund.recipient:
            logger.warning(f"Refund {refund.refund_id} has no recipient; not released")
            return None

        if self.simulated:
            logger.warning("TREASURY_PRIVATE_KEY not configured - using simulation mode")
            tx_id = "0x" + hashlib.sha256(refund.refund_id.encode("utf-8")).hexdigest()
            logger.info(f"[SIMULATED] refund tx: {tx_id}")
        else:
            tx_id = await self._settle(refund)
            if tx_id is None:
                return None

        await self.ledger.mark_refund_settled(refund.refund_id, tx_id)
        return tx_id

    async def _settle(self, refund: RefundRecord) -> Optional[str]:
        payload = self.signer.sign(
            {
                "recipient": refund.recipient,
                "amount": refund.refund_amount,
                "chainId": self.settings.chain_id,
                "token": self.settings.token_address,
            }
        )
        header = codec.encode(payload)

        try:
            result = await self.settlement_client.settle(
                header, self.settings.chain_id, refund.recipient
            )
        except SettlementOutcomeUnknownError as e:
            log_reconciliation_alert(
                "refund_settlement_outcome_unknown",
                refund_id=refund.refund_id,
                stream_id=refund.stream_id,
                recipient=refund.recipient,
                amount=str(refund.refund_amount),
                error=str(e),
            )
            raise

        if not result.success:
            logger.error(f"Refund {refund.refund_id} settlement failed: {result.error}")
            return None

        logger.info(f"Refund {refund.refund_id} released in {result.transaction_id}")
        return result.transaction_id
