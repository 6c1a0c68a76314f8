"""Graduated refund tier engine.

One engine instance per stream. Each qualifying breach is classified,
most severe condition first:

========  ====================================================  ========
Tier      Condition                                             Refund
========  ====================================================  ========
Critical  ``critical_breach_threshold`` Severe episodes         100%
          start within 24 hours
Severe    5+ breaches in the rolling window, or a single        50%
          catastrophic breach
Moderate  3+ breaches in the rolling window                     25%
Minor     any other qualifying breach                           10%
========  ====================================================  ========

A Severe episode starts when a breach classifies as Severe after the previous
classification was below Severe; consecutive Severe breaches belong to the
same episode.

A refund is issued each time a stream reaches a tier higher than any it has
already been refunded for. Every refund is a percentage of the original
escrow, clamped to what is still refundable, so cumulative refunds never
exceed the escrow. Critical always terminates the stream; Severe terminates
it when ``auto_stop_on_severe_breach`` is set.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from ..constants import MODERATE_BREACH_COUNT, ROLLING_WINDOW_SECONDS, SEVERE_BREACH_COUNT
from ..errors import StreamTerminatedError
from ..logging_utils import get_logger
from ..models import (
    BreachEvent,
    RefundRecord,
    SeverityTier,
    SLAConfig,
    StreamEscrow,
    TierDecision,
)
from .evaluator import is_catastrophic, qualifies

logger = get_logger(__name__)


class RefundTierEngine:
    """Maps a stream's breach history to refund tiers and escrow refunds."""

    def __init__(
        self,
        stream_id: str,
        sla: SLAConfig,
        original_amount: int,
        refunded_amount: int = 0,
        original_transaction_id: Optional[str] = None,
        recipient: Optional[str] = None,
        highest_refunded_tier: Optional[SeverityTier] = None,
        terminated: bool = False,
    ):
        """Initialize the engine.

        Args:
            stream_id: Stream the engine evaluates.
            sla: The stream's SLA, fixed for its lifetime.
            original_amount: Escrowed amount all refund percentages apply to.
            refunded_amount: Amount already refunded on this stream.
            original_transaction_id: Settlement transaction that funded the escrow.
            recipient: Payer receiving refunds.
            highest_refunded_tier: Highest tier already refunded, when resuming.
            terminated: Whether the stream has already been stopped.
        """
        if refunded_amount > original_amount:
            raise ValueError("refunded_amount cannot exceed original_amount")
        self.stream_id = stream_id
        self.sla = sla
        self.original_amount = original_amount
        self.refunded_amount = refunded_amount
        self.original_transaction_id = original_transaction_id
        self.recipient = recipient
        self.highest_refunded_tier = highest_refunded_tier
        self.terminated = terminated
        self._breach_times: List[datetime] = []
        self._severe_episodes: List[datetime] = []
        self._last_tier: Optional[SeverityTier] = None

    @classmethod
    def from_escrow(
        cls, escrow: StreamEscrow, prior_refunds: Iterable[RefundRecord] = ()
    ) -> "RefundTierEngine":
        """Resume an engine from a persisted escrow and its recorded refunds."""
        highest = max(
            (refund.severity for refund in prior_refunds),
            key=lambda tier: tier.rank,
            default=None,
        )
        return cls(
            stream_id=escrow.stream_id,
            sla=escrow.sla,
            original_amount=escrow.original_amount,
            refunded_amount=escrow.refunded_amount,
            original_transaction_id=escrow.original_transaction_id,
            recipient=escrow.payer,
            highest_refunded_tier=highest,
            terminated=escrow.terminated,
        )

    @property
    def remaining(self) -> int:
        return self.original_amount - self.refunded_amount

    def _classify(self, event: BreachEvent) -> SeverityTier:
        window_start = event.timestamp - timedelta(seconds=self.sla.rolling_window_seconds)
        self._breach_times = [t for t in self._breach_times if t > window_start]
        self._breach_times.append(event.timestamp)
        count = len(self._breach_times)

        if count >= SEVERE_BREACH_COUNT or is_catastrophic(event, self.sla):
            tier = SeverityTier.SEVERE
        elif count >= MODERATE_BREACH_COUNT:
            tier = SeverityTier.MODERATE
        else:
            tier = SeverityTier.MINOR

        new_episode = tier == SeverityTier.SEVERE and self._last_tier != SeverityTier.SEVERE
        self._last_tier = tier
        if new_episode:
            day_start = event.timestamp - timedelta(seconds=ROLLING_WINDOW_SECONDS)
            self._severe_episodes = [t for t in self._severe_episodes if t > day_start]
            self._severe_episodes.append(event.timestamp)
            if len(self._severe_episodes) >= self.sla.critical_breach_threshold:
                tier = SeverityTier.CRITICAL
        return tier

    def _refund_for(self, event: BreachEvent, tier: SeverityTier) -> Optional[RefundRecord]:
        if self.highest_refunded_tier and tier.rank <= self.highest_refunded_tier.rank:
            return None

        percent = self.sla.refund_percent_for(tier)
        amount = min(
            RefundRecord.compute_refund_amount(self.original_amount, percent),
            self.remaining,
        )
        if amount <= 0:
            return None

        return RefundRecord(
            stream_id=self.stream_id,
            original_transaction_id=self.original_transaction_id,
            breach_type=event.breach_type,
            severity=tier,
            refund_percent=percent,
            original_amount=self.original_amount,
            refund_amount=amount,
            recipient=self.recipient,
            timestamp=event.timestamp,
        )

    def commit(self, refund: RefundRecord) -> None:
        """Count a refund the ledger has accepted against this stream."""
        self.refunded_amount += refund.refund_amount
        if self.highest_refunded_tier is None or refund.severity.rank > self.highest_refunded_tier.rank:
            self.highest_refunded_tier = refund.severity

    def process(self, event: BreachEvent, commit: bool = True) -> Optional[TierDecision]:
        """Feed one breach event to the engine.

        Args:
            event: The breach to classify.
            commit: Count the decision's refund immediately. Pass False when the
                refund must first be accepted by the ledger, then call ``commit``.

        Returns:
            The tier decision, or None if the event does not violate this
            stream's SLA.

        Raises:
            StreamTerminatedError: If the stream has been terminated.
        """
        if self.terminated:
            raise StreamTerminatedError(f"Stream {self.stream_id} is terminated")

        if not qualifies(event.breach_type, event.measured_value, self.sla):
            logger.debug(
                f"Ignoring non-qualifying {event.breach_type.value} event on {self.stream_id}"
            )
            return None

        tier = self._classify(event)
        refund = self._refund_for(event, tier)
        if refund is not None and commit:
            self.commit(refund)
        terminate = tier == SeverityTier.CRITICAL or (
            tier == SeverityTier.SEVERE and self.sla.auto_stop_on_severe_breach
        )
        if terminate:
            self.terminated = True

        logger.info(
            f"{self.stream_id}: {event.breach_type.value} breach "
            f"({event.measured_value} vs {event.threshold}) -> {tier.value}"
            + (f", refund {refund.refund_amount}" if refund else "")
            + (", terminating" if terminate else "")
        )
        return TierDecision(
            stream_id=self.stream_id,
            breach=event,
            tier=tier,
            refund=refund,
            terminate=terminate,
        )
