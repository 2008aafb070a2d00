"""Fee estimation and allocation.

Pure functions used when authoritative ledger data is unavailable. Every
function accepts anything number-like, clamps missing or negative inputs to
zero, and never raises for numeric input.

The processor charges its fee on the *entire* transaction, so the platform's
net share is the gross application fee minus the part of the processor fee
proportional to the platform's share of the transaction.
"""

from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .config import FeeSchedule, ProcessorFeePreset
from .ledger.models import BalanceTransaction
from .money import (
    ZERO,
    non_negative,
    quantize_money,
    to_decimal,
    to_major_units,
    to_minor_units,
)

__all__ = [
    "FeeEstimate",
    "FeeBreakdown",
    "estimate_service_fee",
    "estimate_processing_fee",
    "estimate_processor_fee",
    "allocate_processor_fee",
    "net_application_fee",
    "application_fee_gross",
    "total_transaction",
    "estimate_booking_fees",
    "commission_earnings_estimate",
    "proportional_platform_earnings",
    "parse_fee_breakdown",
    "compare_fees",
    "to_decimal",
    "quantize_money",
    "to_major_units",
    "to_minor_units",
]

DEFAULT_SERVICE_RATE = Decimal("0.12")
DEFAULT_PROCESSING_RATE = Decimal("0.0175")
DEFAULT_PROCESSING_FIXED = Decimal("0.30")

# Fee components at or below this amount are the processor's fixed per-charge fee.
FIXED_FEE_CEILING = Decimal("0.06")


def estimate_service_fee(base_amount: Any, rate: Any = DEFAULT_SERVICE_RATE) -> Decimal:
    """Service fee charged to the customer on top of the base amount."""
    base = non_negative(base_amount)
    if base == ZERO:
        return ZERO
    return quantize_money(base * non_negative(rate))


def estimate_processing_fee(
    base_amount: Any,
    service_fee: Any,
    rate: Any = DEFAULT_PROCESSING_RATE,
    fixed: Any = DEFAULT_PROCESSING_FIXED,
) -> Decimal:
    """Processing fee passed through to the customer: ``(base + service) * rate + fixed``."""
    base = non_negative(base_amount)
    if base == ZERO:
        return ZERO
    subtotal = base + non_negative(service_fee)
    return quantize_money(subtotal * non_negative(rate) + non_negative(fixed))


def estimate_processor_fee(
    total: Any,
    preset: ProcessorFeePreset,
    international: bool = False,
) -> Decimal:
    """Processor fee on a whole transaction under an explicit pricing preset.

    Not rounded, so that allocation downstream stays exact.
    """
    amount = non_negative(total)
    if amount == ZERO:
        return ZERO
    fee = preset.percentage * amount + preset.fixed
    if international:
        fee += preset.international_surcharge * amount
    return fee


def allocate_processor_fee(total: Any, gross: Any, processor_fee: Any) -> Decimal:
    """Share of the processor fee borne by the platform: ``fee * gross / total``."""
    total_amount = non_negative(total)
    if total_amount == ZERO:
        return ZERO
    return non_negative(processor_fee) * non_negative(gross) / total_amount


def net_application_fee(gross: Any, allocated_processor_fee: Any) -> Decimal:
    """Platform take net of its share of processor fees, never below zero."""
    net = non_negative(gross) - non_negative(allocated_processor_fee)
    return net if net > ZERO else ZERO


def application_fee_gross(service_fee: Any, processing_fee: Any, commission: Any) -> Decimal:
    return non_negative(service_fee) + non_negative(processing_fee) + non_negative(commission)


def total_transaction(base_amount: Any, service_fee: Any, processing_fee: Any) -> Decimal:
    return non_negative(base_amount) + non_negative(service_fee) + non_negative(processing_fee)


class FeeEstimate(BaseModel):
    """Every intermediate value of a booking fee estimate, in major units."""
    base_amount: Decimal
    service_fee: Decimal
    processing_fee: Decimal
    commission: Decimal
    application_fee_gross: Decimal
    total_transaction: Decimal
    processor_fee: Decimal
    allocated_processor_fee: Decimal
    net_application_fee: Decimal
    platform_earnings: Decimal
    partner_payout: Decimal
    schedule_version: str
    preset_name: str


def estimate_booking_fees(
    base_amount: Any,
    commission: Any,
    schedule: FeeSchedule,
    service_fee: Optional[Any] = None,
    processing_fee: Optional[Any] = None,
    international: bool = False,
) -> FeeEstimate:
    """Estimate every fee for a booking.

    Stored service and processing fees are used when given; otherwise they are
    estimated from the schedule.
    """
    base = non_negative(base_amount)
    service = (
        non_negative(service_fee)
        if service_fee is not None
        else estimate_service_fee(base, schedule.service_rate)
    )
    processing = (
        non_negative(processing_fee)
        if processing_fee is not None
        else estimate_processing_fee(
            base, service, schedule.processing_rate, schedule.processing_fixed
        )
    )
    commission_amount = non_negative(commission)

    gross = application_fee_gross(service, processing, commission_amount)
    total = total_transaction(base, service, processing)
    processor_fee = estimate_processor_fee(total, schedule.processor_preset, international)
    allocated = allocate_processor_fee(total, gross, processor_fee)
    net = net_application_fee(gross, allocated)

    return FeeEstimate(
        base_amount=base,
        service_fee=service,
        processing_fee=processing,
        commission=commission_amount,
        application_fee_gross=gross,
        total_transaction=total,
        processor_fee=processor_fee,
        allocated_processor_fee=allocated,
        net_application_fee=net,
        platform_earnings=proportional_platform_earnings(net, commission_amount, gross),
        partner_payout=base - commission_amount if base > commission_amount else ZERO,
        schedule_version=schedule.version,
        preset_name=schedule.processor_preset.name,
    )


def commission_earnings_estimate(commission: Any, preset: ProcessorFeePreset) -> Decimal:
    """Commission net of a processor fee computed on the commission alone.

    A coarse fallback for bookings with no ledger data at all.
    """
    amount = non_negative(commission)
    if amount == ZERO:
        return ZERO
    earnings = amount - estimate_processor_fee(amount, preset)
    return earnings if earnings > ZERO else ZERO


def proportional_platform_earnings(net_fee: Any, commission: Any, gross: Any) -> Decimal:
    """Commission's pro-rata share of the net application fee."""
    gross_amount = non_negative(gross)
    if gross_amount == ZERO:
        return ZERO
    return non_negative(net_fee) * non_negative(commission) / gross_amount


class FeeBreakdown(BaseModel):
    """Processor fee of a settled charge split into its components, in major units."""
    fixed_fee: Decimal = ZERO
    percentage_fee: Decimal = ZERO
    international_fee: Decimal = ZERO
    connect_fee: Decimal = ZERO
    other_fees: List[dict] = Field(default_factory=list)
    total_fee: Decimal = ZERO
    gross_amount: Decimal = ZERO
    net_amount: Decimal = ZERO
    effective_rate: Optional[Decimal] = None


def parse_fee_breakdown(balance_transaction: Optional[BalanceTransaction]) -> Optional[FeeBreakdown]:
    """Classify a balance transaction's fee details."""
    if balance_transaction is None:
        return None

    breakdown = FeeBreakdown(
        total_fee=to_major_units(balance_transaction.fee_minor),
        gross_amount=to_major_units(balance_transaction.amount_minor),
        net_amount=to_major_units(balance_transaction.net_minor) or ZERO,
    )

    for detail in balance_transaction.fee_details:
        amount = to_major_units(detail.amount_minor)
        description = (detail.description or "").lower()

        if amount <= FIXED_FEE_CEILING or "fixed" in description:
            breakdown.fixed_fee += amount
        elif detail.type == "international" or "international" in description or "cross-border" in description:
            breakdown.international_fee += amount
        elif detail.type == "connect_collection_transfer" or "connect" in description:
            breakdown.connect_fee += amount
        elif detail.type in ("stripe_fee", "application_fee"):
            breakdown.percentage_fee += amount
        else:
            breakdown.other_fees.append({
                "type": detail.type,
                "amount": amount,
                "description": detail.description or detail.type,
            })

    if breakdown.gross_amount > ZERO:
        breakdown.effective_rate = (breakdown.total_fee / breakdown.gross_amount).quantize(
            Decimal("0.0001")
        )
    return breakdown


def compare_fees(amount: Any, actual: Optional[FeeBreakdown], preset: ProcessorFeePreset) -> dict:
    """Contrast an estimated processor fee with the actual breakdown."""
    international = bool(actual and actual.international_fee > ZERO)
    estimated = quantize_money(estimate_processor_fee(amount, preset, international))
    result = {
        "preset": preset.name,
        "estimated_total_fee": estimated,
        "actual_total_fee": actual.total_fee if actual else None,
        "difference": None,
    }
    if actual is not None:
        result["difference"] = actual.total_fee - estimated
    return result
