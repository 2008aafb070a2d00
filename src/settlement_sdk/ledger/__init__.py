"""Ledger clients and read models."""

from .models import (
    BalanceTransaction,
    Charge,
    FeeDetail,
    PaymentRecord,
    Refund,
    RefundReason,
    Settlement,
    Transfer,
    TransferReversal,
)
from .base import LedgerClientBase, run_ledger_call
from .stripe_client import StripeLedgerClient, get_ledger_client
from .simulator import (
    SimulatorLedgerClient,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedPayment,
)

__all__ = [
    # Read models
    "BalanceTransaction",
    "Charge",
    "FeeDetail",
    "PaymentRecord",
    "Refund",
    "RefundReason",
    "Settlement",
    "Transfer",
    "TransferReversal",
    # Clients
    "LedgerClientBase",
    "run_ledger_call",
    "StripeLedgerClient",
    "get_ledger_client",
    "SimulatorLedgerClient",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedPayment",
]
