"""Refund orchestration.

Full, partial and 50/50 split refunds against the payment processor, with
partner transfer reversals, pending placeholders for rejected attempts and an
audit entry for every attempt.
"""

from .models import (
    PartnerReversalResult,
    RefundCommand,
    RefundOutcome,
    RefundPlan,
    RefundState,
    RefundType,
    ReversalStatus,
)
from .orchestrator import RefundOrchestrator, plan_refund

__all__ = [
    # Models
    "PartnerReversalResult",
    "RefundCommand",
    "RefundOutcome",
    "RefundPlan",
    "RefundState",
    "RefundType",
    "ReversalStatus",
    # Orchestration
    "RefundOrchestrator",
    "plan_refund",
]
