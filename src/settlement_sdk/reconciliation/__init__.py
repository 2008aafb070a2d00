"""Fee reconciliation.

Corrects stored booking fee fields (net application fee, platform earnings)
using the ledger's balance transactions as the source of truth.

Features:
- Sequential, paced ledger fetches with per-booking failure isolation
- Tolerance-gated, idempotent writes with an audit entry per write
- Detection of values persisted in minor units
- Reports in JSON, CSV and text
"""

from .models import (
    BookingOutcome,
    OutcomeReason,
    OutcomeStatus,
    ReconciliationReport,
    ReconciliationRequest,
    ReconciliationStatus,
)
from .reconciler import Reconciler
from .service import ReconciliationService
from .report import ReportGenerator

__all__ = [
    # Models
    "BookingOutcome",
    "OutcomeReason",
    "OutcomeStatus",
    "ReconciliationReport",
    "ReconciliationRequest",
    "ReconciliationStatus",
    # Core Components
    "Reconciler",
    "ReconciliationService",
    "ReportGenerator",
]
