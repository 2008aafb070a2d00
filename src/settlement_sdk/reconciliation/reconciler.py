"""Reconciliation logic for correcting stored fee fields against the ledger."""

import logging
from decimal import Decimal
from typing import Optional, Tuple

from ..config import FeeSchedule, ReconcilerSettings
from ..database.models import Booking
from ..errors import DataIntegrityError
from ..fees import (
    estimate_booking_fees,
    proportional_platform_earnings,
    quantize_money,
    to_major_units,
)
from ..ledger.models import Settlement
from ..money import ZERO, differs, non_negative
from .models import BookingOutcome, OutcomeStatus, OutcomeReason

logger = logging.getLogger(__name__)


class Reconciler:
    """Decides, per booking, which derived fee fields must be rewritten.

    The reconciler performs no I/O: the service fetches the settlement and
    applies the returned changes.
    """

    def __init__(
        self,
        fee_schedule: Optional[FeeSchedule] = None,
        settings: Optional[ReconcilerSettings] = None,
    ):
        """Initialize the reconciler.

        Args:
            fee_schedule: Rates used when an estimate has to stand in for ledger data.
            settings: Tolerance, corruption ratio and missing-ledger policy.
        """
        self.fee_schedule = fee_schedule or FeeSchedule()
        self.settings = settings or ReconcilerSettings()

    def check_unit_sanity(self, booking: Booking, gross: Optional[Decimal] = None) -> None:
        """Detect stored values that were persisted in minor units.

        Raises:
            DataIntegrityError: If stored earnings exceed the commission, or the
                stored net fee exceeds the gross fee, by the corruption ratio.
        """
        ratio = self.settings.unit_corruption_ratio
        commission = non_negative(booking.commission_partner)
        if booking.platform_earnings is not None and commission > ZERO:
            if non_negative(booking.platform_earnings) > commission * ratio:
                raise DataIntegrityError(
                    f"Booking {booking.id}: platform_earnings {booking.platform_earnings} "
                    f"exceeds {ratio}x commission {commission}",
                    field_name="platform_earnings",
                )

        gross = booking.application_fee_gross if gross is None else gross
        if booking.net_application_fee is not None and gross > ZERO:
            if non_negative(booking.net_application_fee) > gross * ratio:
                raise DataIntegrityError(
                    f"Booking {booking.id}: net_application_fee {booking.net_application_fee} "
                    f"exceeds {ratio}x gross application fee {gross}",
                    field_name="net_application_fee",
                )

    def compute_from_ledger(
        self,
        booking: Booking,
        settlement: Settlement,
    ) -> Optional[Tuple[Decimal, Decimal, Decimal]]:
        """Ledger-sourced (net fee, platform earnings, gross fee), or None when unsettled."""
        if not settlement.is_settled:
            return None

        net = to_major_units(settlement.balance_transaction.net_minor)
        gross = to_major_units(settlement.application_fee_amount_minor)
        if gross is None:
            gross = booking.application_fee_gross

        earnings = quantize_money(
            proportional_platform_earnings(net, booking.commission_partner, gross)
        )
        return net, earnings, gross

    def compute_estimate(self, booking: Booking) -> Tuple[Decimal, Decimal, Decimal]:
        """Estimated (net fee, platform earnings, gross fee) from the fee schedule."""
        estimate = estimate_booking_fees(
            base_amount=booking.base_amount,
            commission=booking.commission_partner,
            schedule=self.fee_schedule,
            service_fee=booking.service_fee,
            processing_fee=booking.payment_processing_fee,
        )
        return (
            quantize_money(estimate.net_application_fee),
            quantize_money(estimate.platform_earnings),
            estimate.application_fee_gross,
        )

    def evaluate(self, booking: Booking, settlement: Settlement) -> BookingOutcome:
        """Compare stored values with ledger truth and collect the fields to write."""
        outcome = BookingOutcome(
            booking_id=booking.id,
            payment_reference_id=booking.payment_reference_id,
            status=OutcomeStatus.UNCHANGED,
            stored_net_application_fee=booking.net_application_fee,
            stored_platform_earnings=booking.platform_earnings,
        )

        computed = self.compute_from_ledger(booking, settlement)
        if computed is None:
            if not (self.settings.estimate_when_ledger_missing and booking.net_application_fee is None):
                logger.info(f"Booking {booking.id}: payment not settled yet, skipping")
                outcome.status = OutcomeStatus.SKIPPED
                outcome.reason = OutcomeReason.NOT_SETTLED
                return outcome
            computed = self.compute_estimate(booking)
            outcome.reason = OutcomeReason.ESTIMATE
        else:
            outcome.reason = OutcomeReason.LEDGER

        net, earnings, gross = computed
        outcome.computed_net_application_fee = net
        outcome.computed_platform_earnings = earnings
        outcome.gross_application_fee = gross

        if net > gross + self.settings.tolerance:
            logger.error(
                f"Booking {booking.id}: ledger net {net} exceeds gross application fee {gross}"
            )
            outcome.status = OutcomeStatus.FAILED
            outcome.reason = OutcomeReason.DATA_INTEGRITY
            outcome.error_message = f"Net application fee {net} exceeds gross {gross}"
            return outcome

        try:
            self.check_unit_sanity(booking, gross)
        except DataIntegrityError as e:
            logger.warning(f"{e}; forcing recomputation")
            outcome.unit_corruption_detected = True

        tolerance = self.settings.tolerance
        candidates = (
            ("net_application_fee", booking.net_application_fee, net),
            ("platform_earnings", booking.platform_earnings, earnings),
        )
        for field_name, stored, value in candidates:
            if outcome.unit_corruption_detected or differs(stored, value, tolerance):
                outcome.changes[field_name] = value

        if outcome.changes:
            outcome.status = OutcomeStatus.UPDATED
        return outcome
