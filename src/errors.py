"""Exception hierarchy for the payment and refund flows."""

from typing import Iterable, Optional


class ParallelPayError(Exception):
    """Base class for all ParallelPay errors."""


class MalformedPaymentError(ParallelPayError):
    """The X-PAYMENT header could not be decoded into an authorization."""


class SigningError(ParallelPayError):
    """An authorization could not be signed."""


class AuthorizationFieldMissingError(SigningError):
    """The payment requirement lacks a field the signature must bind."""

    def __init__(self, fields: Iterable[str]):
        self.fields = sorted(fields)
        super().__init__(f"Payment requirement is missing bound fields: {', '.join(self.fields)}")


class SigningKeyUnavailableError(SigningError):
    """No usable private key is configured for signing."""


class SettlementOutcomeUnknownError(ParallelPayError):
    """Settlement was attempted but its result could not be observed.

    Funds may have moved without a receipt. Retrying is not safe.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class LedgerWriteError(ParallelPayError):
    """The receipt ledger failed to persist a record."""


class RefundLimitExceededError(ParallelPayError):
    """A refund would push a stream's cumulative refunds past its escrow."""


class StreamTerminatedError(ParallelPayError):
    """The stream has been stopped and accepts no further evaluation."""
