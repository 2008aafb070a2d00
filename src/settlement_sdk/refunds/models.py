"""Models for refund orchestration."""

import enum
from typing import Optional

from pydantic import BaseModel, Field

from ..ledger.models import Refund, RefundReason


class RefundType(str, enum.Enum):
    """How a refund is split between the platform and the partner."""
    FULL = "full"
    PARTIAL = "partial"
    SPLIT_50_50 = "split_50_50"


class RefundState(str, enum.Enum):
    """Lifecycle of a refund request."""
    REQUESTED = "requested"
    PROCESSOR_CALL_SUCCEEDED = "processor_call_succeeded"
    PROCESSOR_CALL_FAILED = "processor_call_failed"
    RECORDED = "recorded"


class ReversalStatus(str, enum.Enum):
    """Result of the partner transfer reversal on a split refund."""
    SUCCEEDED = "succeeded"
    REQUIRES_MANUAL_PROCESSING = "requires_manual_processing"
    UNCONFIRMED = "unconfirmed"
    NOT_APPLICABLE = "not_applicable"


# Reversal outcomes an operator has to follow up on
MANUAL_REVERSAL_STATUSES = (
    ReversalStatus.REQUIRES_MANUAL_PROCESSING.value,
    ReversalStatus.UNCONFIRMED.value,
)


class RefundCommand(BaseModel):
    """An operator's request to refund a booking."""
    payment_reference_id: Optional[str] = Field(None, description="Processor payment id of the booking")
    booking_id: Optional[str] = Field(None, description="Booking to refund")
    refund_type: RefundType = Field(default=RefundType.FULL)
    amount_minor: Optional[int] = Field(None, gt=0, description="Customer refund in minor units; omit for the full amount")
    reason: RefundReason = Field(default=RefundReason.REQUESTED_BY_CUSTOMER)
    partner_refund_amount_minor: Optional[int] = Field(
        None, ge=0, description="Portion clawed back from the partner on a split refund"
    )
    actor: str = Field(default="system", description="Operator recorded on the audit trail")


class RefundPlan(BaseModel):
    """Processor calls needed to carry out a refund command."""
    charge_ref: str
    amount_minor: Optional[int] = None
    reverse_transfer: bool = False
    refund_application_fee: bool = False
    is_destination_charge: bool = False
    transfer_id: Optional[str] = None
    partner_reversal_amount_minor: Optional[int] = None


class PartnerReversalResult(BaseModel):
    """Partner transfer reversal attempted as part of a split refund."""
    status: ReversalStatus = ReversalStatus.NOT_APPLICABLE
    reversal_id: Optional[str] = None
    transfer_id: Optional[str] = None
    amount_minor: Optional[int] = None
    error_message: Optional[str] = None
    audit_entry_id: Optional[str] = None

    @property
    def requires_manual_processing(self) -> bool:
        return self.status.value in MANUAL_REVERSAL_STATUSES


class RefundOutcome(BaseModel):
    """What happened to a refund command, as recorded."""
    booking_id: str
    refund_type: RefundType
    refund: Refund
    state: RefundState = RefundState.RECORDED
    amount_minor: Optional[int] = None
    payment_status: str
    partner_reversal: PartnerReversalResult = Field(default_factory=PartnerReversalResult)
    duplicate: bool = False
    audit_entry_id: Optional[str] = None

    @property
    def requires_manual_processing(self) -> bool:
        return self.partner_reversal.requires_manual_processing
