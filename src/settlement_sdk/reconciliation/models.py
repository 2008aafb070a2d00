"""Models for fee reconciliation."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class ReconciliationStatus(str, enum.Enum):
    """Status of a reconciliation job."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeStatus(str, enum.Enum):
    """Result of reconciling a single booking."""
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


class OutcomeReason(str, enum.Enum):
    """Why a booking was skipped or failed, or which source a write came from."""
    LEDGER = "ledger"
    ESTIMATE = "estimate"
    NOT_SETTLED = "not_settled"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    TIMEOUT = "timeout"
    DATA_INTEGRITY = "data_integrity"
    CONCURRENCY = "concurrency"
    UNKNOWN = "unknown"


class BookingOutcome(BaseModel):
    """Per-booking result, including stored and computed values (major units)."""
    booking_id: str = Field(..., description="Booking ID")
    payment_reference_id: Optional[str] = Field(None, description="Ledger payment reference")
    status: OutcomeStatus = Field(..., description="Outcome of the booking")
    reason: Optional[OutcomeReason] = Field(None, description="Source of the write, or why it was skipped/failed")
    stored_net_application_fee: Optional[Decimal] = None
    computed_net_application_fee: Optional[Decimal] = None
    stored_platform_earnings: Optional[Decimal] = None
    computed_platform_earnings: Optional[Decimal] = None
    gross_application_fee: Optional[Decimal] = None
    unit_corruption_detected: bool = Field(default=False, description="Stored value looked like minor units")
    changes: Dict[str, Decimal] = Field(default_factory=dict, description="Fields written (or that would be, on a dry run)")
    error_message: Optional[str] = None
    processed_at: datetime = Field(default_factory=datetime.utcnow)


class ReconciliationReport(BaseModel):
    """Aggregate result of a reconciliation run."""
    id: str = Field(..., description="Report ID")
    status: ReconciliationStatus = Field(default=ReconciliationStatus.PENDING)
    provider: str = Field(default="stripe", description="Ledger provider name")
    dry_run: bool = Field(default=False)
    fee_schedule_version: Optional[str] = None
    processor_fee_preset: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = Field(None, description="Time when reconciliation completed")

    # Statistics
    total_bookings: int = Field(default=0)
    total_updated: int = Field(default=0)
    total_unchanged: int = Field(default=0)
    total_skipped: int = Field(default=0)
    total_failed: int = Field(default=0)

    outcomes: List[BookingOutcome] = Field(default_factory=list)

    # Error information
    error_message: Optional[str] = Field(None, description="Error message if reconciliation failed")

    @property
    def total_succeeded(self) -> int:
        return self.total_updated + self.total_unchanged

    def add_outcome(self, outcome: BookingOutcome) -> None:
        """Record a booking outcome and update the counters."""
        self.outcomes.append(outcome)
        self.total_bookings += 1
        if outcome.status == OutcomeStatus.UPDATED:
            self.total_updated += 1
        elif outcome.status == OutcomeStatus.UNCHANGED:
            self.total_unchanged += 1
        elif outcome.status == OutcomeStatus.SKIPPED:
            self.total_skipped += 1
        else:
            self.total_failed += 1

    def outcomes_with_status(self, status: OutcomeStatus) -> List[BookingOutcome]:
        return [o for o in self.outcomes if o.status == status]

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a summary of the report without per-booking outcomes."""
        return {
            "id": self.id,
            "status": self.status.value,
            "provider": self.provider,
            "dry_run": self.dry_run,
            "fee_schedule_version": self.fee_schedule_version,
            "processor_fee_preset": self.processor_fee_preset,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "statistics": {
                "total_bookings": self.total_bookings,
                "total_updated": self.total_updated,
                "total_unchanged": self.total_unchanged,
                "total_skipped": self.total_skipped,
                "total_failed": self.total_failed,
                "total_succeeded": self.total_succeeded,
                "success_rate": (
                    f"{(self.total_succeeded / self.total_bookings * 100):.2f}%"
                    if self.total_bookings > 0 else "N/A"
                ),
            },
            "error_message": self.error_message,
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the complete report including every booking outcome."""
        result = self.to_summary_dict()
        result["outcomes"] = [o.model_dump(mode="json") for o in self.outcomes]
        return result


class ReconciliationRequest(BaseModel):
    """Request model for starting a reconciliation job."""
    limit: Optional[int] = Field(default=None, ge=1, description="Maximum bookings to process")
    booking_ids: Optional[List[str]] = Field(default=None, description="Restrict the run to these bookings")
    dry_run: bool = Field(default=False, description="Compute outcomes without writing")
    provider: str = Field(default="stripe", description="Ledger provider name")
    actor: str = Field(default="reconciler", description="Recorded on audit entries")
