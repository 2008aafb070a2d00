"""Error taxonomy for settlement operations."""

import enum
from typing import Optional, Any


class ProcessorErrorReason(str, enum.Enum):
    """Why a call to the payment processor failed."""
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    BUSINESS_RULE = "business_rule"
    TRANSFER_NOT_FOUND = "transfer_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNKNOWN = "unknown"


class SettlementError(Exception):
    """Base class for all settlement errors."""


class ValidationError(SettlementError):
    """A required input (payment reference, booking id, amount) is missing or invalid."""


class NotFoundError(SettlementError):
    """A booking or ledger record does not exist."""


class ProcessorError(SettlementError):
    """A ledger, refund or transfer call to the processor failed.

    Attributes:
        reason: Categorized failure reason.
        outcome: Optional recorded outcome attached by the caller after the
            failed attempt was persisted.
    """

    def __init__(
        self,
        message: str,
        reason: ProcessorErrorReason = ProcessorErrorReason.UNKNOWN,
        outcome: Optional[Any] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.outcome = outcome


class DataIntegrityError(SettlementError):
    """A stored monetary value is inconsistent with its source (minor/major unit mix-up)."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name


class ConcurrencyError(SettlementError):
    """A booking changed between read and write (optimistic update conflict)."""
