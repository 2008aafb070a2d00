"""Settlement SDK - fee reconciliation and refund orchestration for a booking marketplace."""

__version__ = "0.1.0"

from .config import (
    FeeSchedule,
    ProcessorFeePreset,
    SettlementSettings,
    get_processor_fee_preset,
)
from .errors import (
    ConcurrencyError,
    DataIntegrityError,
    NotFoundError,
    ProcessorError,
    ProcessorErrorReason,
    SettlementError,
    ValidationError,
)
from .ledger import LedgerClientBase, get_ledger_client
from .reconciliation import ReconciliationService
from .refunds import RefundCommand, RefundOrchestrator, RefundType

__all__ = [
    "__version__",
    "FeeSchedule",
    "ProcessorFeePreset",
    "SettlementSettings",
    "get_processor_fee_preset",
    "ConcurrencyError",
    "DataIntegrityError",
    "NotFoundError",
    "ProcessorError",
    "ProcessorErrorReason",
    "SettlementError",
    "ValidationError",
    "LedgerClientBase",
    "get_ledger_client",
    "ReconciliationService",
    "RefundCommand",
    "RefundOrchestrator",
    "RefundType",
]
