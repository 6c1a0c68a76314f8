"""Per-stream SLA monitor.

The single evaluation loop for one stream: quality samples and breach events
go through the refund tier engine, refunds are appended to the ledger and
released from escrow, and the stream is stopped once the engine terminates it.
"""

import asyncio
from typing import List, Optional, Union

from ..errors import LedgerWriteError, RefundLimitExceededError, SettlementOutcomeUnknownError
from ..ledger import ReceiptLedger
from ..logging_utils import get_logger, log_reconciliation_alert
from ..models import BreachEvent, QualitySample, TierDecision
from .escrow import EscrowReleaser
from .evaluator import evaluate_sample
from .refunds import RefundTierEngine

logger = get_logger(__name__)

Observation = Union[QualitySample, BreachEvent]


class StreamMonitor:
    """Drives one stream's refund tier engine against the ledger."""

    def __init__(
        self,
        engine: RefundTierEngine,
        ledger: ReceiptLedger,
        releaser: Optional[EscrowReleaser] = None,
    ):
        self.engine = engine
        self.ledger = ledger
        self.releaser = releaser

    @classmethod
    async def load(
        cls,
        ledger: ReceiptLedger,
        stream_id: str,
        releaser: Optional[EscrowReleaser] = None,
    ) -> "StreamMonitor":
        """Build a monitor for a stream whose escrow is on file.

        Raises:
            KeyError: If the stream has no escrow.
        """
        escrow = await ledger.get_escrow(stream_id)
        if escrow is None:
            raise KeyError(f"No escrow for stream {stream_id}")
        refunds = await ledger.refunds_for_stream(stream_id)
        return cls(RefundTierEngine.from_escrow(escrow, refunds), ledger, releaser)

    @property
    def stream_id(self) -> str:
        return self.engine.stream_id

    @property
    def terminated(self) -> bool:
        return self.engine.terminated

    async def handle_event(self, event: BreachEvent) -> Optional[TierDecision]:
        """Evaluate one breach event. Ignored once the stream is terminated."""
        if self.engine.terminated:
            logger.info(f"Stream {self.stream_id} terminated; ignoring {event.breach_type.value}")
            return None

        decision = self.engine.process(event, commit=False)
        if decision is None:
            return None

        if decision.refund is not None:
            await self._record_refund(decision)
        if decision.terminate:
            await self.ledger.terminate_stream(self.stream_id)
        return decision

    async def handle_sample(self, sample: QualitySample) -> List[TierDecision]:
        """Evaluate every breach in a raw quality sample."""
        decisions = []
        for event in evaluate_sample(sample, self.engine.sla):
            decision = await self.handle_event(event)
            if decision is not None:
                decisions.append(decision)
        return decisions

    async def _record_refund(self, decision: TierDecision) -> None:
        # Engine counters move only once the ledger holds the refund.
        refund = decision.refund
        try:
            recorded = await self.ledger.append_refund(refund)
        except RefundLimitExceededError as e:
            logger.error(f"Refund rejected by ledger: {e}")
            return
        except LedgerWriteError as e:
            log_reconciliation_alert(
                "refund_ledger_write_failed",
                refund_id=refund.refund_id,
                stream_id=refund.stream_id,
                amount=refund.refund_amount,
                error=str(e),
            )
            return

        self.engine.commit(refund)
        if not recorded or self.releaser is None:
            return

        try:
            await self.releaser.release(refund)
        except SettlementOutcomeUnknownError as e:
            # Already escalated by the releaser; the refund stays unsettled.
            logger.error(f"Refund {refund.refund_id} outcome unknown: {e}")

    async def run(self, observations: "asyncio.Queue[Optional[Observation]]") -> None:
        """Consume observations until a ``None`` sentinel or termination."""
        logger.info(f"Monitoring stream {self.stream_id}")
        while not self.terminated:
            item = await observations.get()
            try:
                if item is None:
                    break
                if isinstance(item, QualitySample):
                    await self.handle_sample(item)
                else:
                    await self.handle_event(item)
            finally:
                observations.task_done()
        logger.info(f"Stopped monitoring stream {self.stream_id}")
