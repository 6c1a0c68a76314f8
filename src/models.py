"""Shared data models for ParallelPay.

All Pydantic models used across services for type safety and validation.
Wire-facing models serialize with camelCase aliases; construct them with
either the alias or the Python field name.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from eth_utils import is_hex_address, to_checksum_address
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .constants import (
    AUTHORIZATION_TYPE,
    DEFAULT_CRITICAL_SEVERE_COUNT,
    DEFAULT_MINOR_REFUND_PERCENT,
    DEFAULT_MODERATE_REFUND_PERCENT,
    DEFAULT_SEVERE_REFUND_PERCENT,
    ROLLING_WINDOW_SECONDS,
    SCHEMA_VERSION,
    SLA_PRESETS,
)

_BYTES32_RE = re.compile(r"^0x[0-9a-f]{64}$")
_SIGNATURE_RE = re.compile(r"^0x[0-9a-f]{130}$")

UINT256_MAX = 2**256 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def checksum_address(value: str) -> str:
    """Normalize an EVM address to its EIP-55 checksum form."""
    if not isinstance(value, str) or not is_hex_address(value):
        raise ValueError(f"Invalid EVM address: {value!r}")
    return to_checksum_address(value)


class WireModel(BaseModel):
    """Base for models exchanged over HTTP (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Payment protocol
# ---------------------------------------------------------------------------


class PaidRoute(BaseModel):
    """Price and description for a payment-gated route."""

    amount: int = Field(ge=0, description="Price in smallest token units")
    description: str = Field(default="", description="Human readable description")


class PaymentRequirement(WireModel):
    """HTTP 402 challenge describing what the caller must pay.

    Regenerated per request and never persisted.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    schema_version: str = Field(default=SCHEMA_VERSION)
    payment_required: bool = Field(default=True)
    resource: str = Field(default="", description="Path of the protected resource")
    amount: int = Field(ge=0, le=UINT256_MAX, description="Smallest token units")
    currency: str
    recipient: str
    chain_id: int
    token: str
    facilitator_url: str
    description: str = ""
    network: str = ""

    @field_validator("recipient", "token")
    @classmethod
    def _normalize_address(cls, value: str) -> str:
        return checksum_address(value)

    @field_serializer("amount")
    def _amount_as_decimal_string(self, amount: int) -> str:
        return str(amount)

    def to_challenge(self) -> dict:
        """Render the 402 response body."""
        return self.model_dump(by_alias=True)


class TransferAuthorization(BaseModel):
    """EIP-3009 transferWithAuthorization signed by the payer.

    The validity window is half open: ``valid_after <= now < valid_before``.
    """

    model_config = ConfigDict(frozen=True)

    payer: str
    payee: str
    value: int = Field(ge=0, le=UINT256_MAX)
    valid_after: int = Field(ge=0)
    valid_before: int = Field(ge=0)
    nonce: str = Field(description="0x-prefixed 32-byte hex")
    signature: str = Field(description="0x-prefixed 65-byte r || s || v")

    @field_validator("payer", "payee")
    @classmethod
    def _normalize_address(cls, value: str) -> str:
        return checksum_address(value)

    @field_validator("nonce")
    @classmethod
    def _normalize_nonce(cls, value: str) -> str:
        value = value.lower()
        if not _BYTES32_RE.match(value):
            raise ValueError("nonce must be 32 bytes of 0x-prefixed hex")
        return value

    @field_validator("signature")
    @classmethod
    def _normalize_signature(cls, value: str) -> str:
        value = value.lower()
        if not _SIGNATURE_RE.match(value):
            raise ValueError("signature must be 65 bytes of 0x-prefixed hex")
        return value

    @property
    def r(self) -> str:
        return "0x" + self.signature[2:66]

    @property
    def s(self) -> str:
        return "0x" + self.signature[66:130]

    @property
    def v(self) -> int:
        return int(self.signature[130:132], 16)

    def is_valid_at(self, timestamp: int) -> bool:
        return self.valid_after <= timestamp < self.valid_before


class PaymentPayload(BaseModel):
    """A TransferAuthorization plus the chain and token it targets.

    This is what the X-PAYMENT header carries once decoded.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["eip3009"] = AUTHORIZATION_TYPE
    chain_id: int = Field(gt=0)
    token: str
    authorization: TransferAuthorization

    @field_validator("token")
    @classmethod
    def _normalize_token(cls, value: str) -> str:
        return checksum_address(value)


class VerifyResult(WireModel):
    """Settlement authority response to /verify."""

    valid: bool = False
    payer: Optional[str] = None
    amount: Optional[int] = None
    error: Optional[str] = None


class SettleResult(WireModel):
    """Settlement authority response to /settle."""

    success: bool = False
    transaction_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("transactionId", "txHash", "transaction_id"),
    )
    error: Optional[str] = None


class PaymentReceipt(WireModel):
    """Proof of a settled payment. Append-only, keyed by transaction id."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    transaction_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("transactionId", "txHash", "transaction_id"),
    )
    payer: str
    recipient: str
    amount: int = Field(ge=0)
    currency: str
    resource: str
    chain_id: int
    timestamp: datetime = Field(default_factory=utcnow)
    explorer_url: Optional[str] = None
    facilitator_url: Optional[str] = None
    schema_version: Optional[str] = SCHEMA_VERSION

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_serializer("amount")
    def _amount_as_decimal_string(self, amount: int) -> str:
        return str(amount)


# ---------------------------------------------------------------------------
# SLA and refunds
# ---------------------------------------------------------------------------


class BreachType(str, Enum):
    """Quality metric that was violated."""

    LATENCY = "latency"
    UPTIME = "uptime"
    ERROR_RATE = "error-rate"
    JITTER = "jitter"


class SeverityTier(str, Enum):
    """Graduated refund tier, ordered by ``rank``."""

    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]


_TIER_RANKS = {
    SeverityTier.MINOR: 1,
    SeverityTier.MODERATE: 2,
    SeverityTier.SEVERE: 3,
    SeverityTier.CRITICAL: 4,
}


class SLAConfig(WireModel):
    """Per-stream service level agreement. Never mutated; a change needs a new stream.

    Uptime and error rate are expressed in basis points (9950 == 99.50%).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_latency_ms: float = Field(gt=0)
    min_uptime_percent: float = Field(ge=0, le=10_000)
    max_error_rate: float = Field(ge=0, le=10_000)
    max_jitter_ms: float = Field(ge=0)
    minor_refund_percent: int = Field(default=DEFAULT_MINOR_REFUND_PERCENT, ge=0, le=100)
    moderate_refund_percent: int = Field(default=DEFAULT_MODERATE_REFUND_PERCENT, ge=0, le=100)
    severe_refund_percent: int = Field(default=DEFAULT_SEVERE_REFUND_PERCENT, ge=0, le=100)
    auto_stop_on_severe_breach: bool = False
    critical_breach_threshold: int = Field(default=DEFAULT_CRITICAL_SEVERE_COUNT, gt=0)
    rolling_window_seconds: int = Field(default=ROLLING_WINDOW_SECONDS, gt=0)

    @model_validator(mode="after")
    def _tiers_non_decreasing(self) -> "SLAConfig":
        if not (
            self.minor_refund_percent
            <= self.moderate_refund_percent
            <= self.severe_refund_percent
        ):
            raise ValueError("refund percentages must not decrease with severity")
        return self

    @classmethod
    def from_preset(cls, name: str, **overrides) -> "SLAConfig":
        """Build a config from one of the named presets (strict, moderate, lenient)."""
        if name not in SLA_PRESETS:
            raise ValueError(f"Unknown SLA preset: {name}")
        return cls(**{**SLA_PRESETS[name], **overrides})

    def threshold_for(self, breach_type: BreachType) -> float:
        return {
            BreachType.LATENCY: self.max_latency_ms,
            BreachType.UPTIME: self.min_uptime_percent,
            BreachType.ERROR_RATE: self.max_error_rate,
            BreachType.JITTER: self.max_jitter_ms,
        }[breach_type]

    def refund_percent_for(self, tier: SeverityTier) -> int:
        return {
            SeverityTier.MINOR: self.minor_refund_percent,
            SeverityTier.MODERATE: self.moderate_refund_percent,
            SeverityTier.SEVERE: self.severe_refund_percent,
            SeverityTier.CRITICAL: 100,
        }[tier]


class QualitySample(WireModel):
    """One raw observation of a stream's service quality. Missing metrics are skipped."""

    timestamp: datetime = Field(default_factory=utcnow)
    latency_ms: Optional[float] = Field(default=None, ge=0, description="p99 latency")
    uptime_percent: Optional[float] = Field(default=None, ge=0, le=10_000)
    error_rate: Optional[float] = Field(default=None, ge=0, le=10_000)
    jitter_ms: Optional[float] = Field(default=None, ge=0)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class BreachEvent(WireModel):
    """A single observed threshold violation. Ephemeral input to the tier engine."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    breach_type: BreachType
    measured_value: float
    threshold: float
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class RefundRecord(WireModel):
    """A refund issued against a stream's escrow.

    ``refund_transaction_id`` is assigned once, when the refund itself settles.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    refund_id: str = Field(default_factory=lambda: f"refund-{uuid.uuid4().hex[:16]}")
    stream_id: str
    original_transaction_id: Optional[str] = None
    breach_type: BreachType
    severity: SeverityTier
    refund_percent: int = Field(ge=0, le=100)
    original_amount: int = Field(ge=0)
    refund_amount: int = Field(ge=0)
    recipient: Optional[str] = Field(default=None, description="Payer receiving the refund")
    refund_transaction_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    settled_at: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _refund_within_original(self) -> "RefundRecord":
        if self.refund_amount > self.original_amount:
            raise ValueError("refund_amount cannot exceed original_amount")
        return self

    @field_serializer("original_amount", "refund_amount")
    def _amount_as_decimal_string(self, amount: int) -> str:
        return str(amount)

    @staticmethod
    def compute_refund_amount(original_amount: int, refund_percent: int) -> int:
        """``floor(original_amount * refund_percent / 100)`` in exact integer arithmetic."""
        return original_amount * refund_percent // 100

    @property
    def settled(self) -> bool:
        return self.refund_transaction_id is not None


class StreamEscrow(WireModel):
    """Funds held against an SLA-backed stream pending fulfillment."""

    stream_id: str
    payer: str
    recipient: str
    original_amount: int = Field(ge=0)
    refunded_amount: int = Field(default=0, ge=0)
    original_transaction_id: Optional[str] = None
    sla: SLAConfig
    terminated: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    terminated_at: Optional[datetime] = None

    @field_serializer("original_amount", "refunded_amount")
    def _amount_as_decimal_string(self, amount: int) -> str:
        return str(amount)

    @property
    def remaining(self) -> int:
        return self.original_amount - self.refunded_amount


class TierDecision(BaseModel):
    """Outcome of feeding one breach into the refund tier engine."""

    stream_id: str
    breach: BreachEvent
    tier: SeverityTier
    refund: Optional[RefundRecord] = None
    terminate: bool = False


class ReceiptStats(WireModel):
    """Aggregate statistics over the receipt ledger."""

    total_payments: int = 0
    total_refunds: int = 0
    total_paid: int = 0
    total_refunded: int = 0

    @field_serializer("total_paid", "total_refunded")
    def _amount_as_decimal_string(self, amount: int) -> str:
        return str(amount)
