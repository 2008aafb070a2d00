"""Refund orchestration: plan the processor calls, execute them, record the result."""

import uuid
import logging
from typing import Optional, Dict, Any, List, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import SettlementSettings
from ..database import (
    AuditAction,
    AuditEntry,
    AuditEntryRepository,
    Booking,
    BookingRepository,
    PaymentStatus,
)
from ..database.repository import SUCCESSFUL_REFUND_STATUSES
from ..errors import (
    NotFoundError,
    ProcessorError,
    ProcessorErrorReason,
    ValidationError,
)
from ..fees import commission_earnings_estimate, estimate_booking_fees
from ..ledger import LedgerClientBase, Refund, Settlement, run_ledger_call
from ..money import quantize_money, to_major_units
from .models import (
    MANUAL_REVERSAL_STATUSES,
    PartnerReversalResult,
    RefundCommand,
    RefundOutcome,
    RefundPlan,
    RefundState,
    RefundType,
    ReversalStatus,
)

logger = logging.getLogger(__name__)

# Refund statuses reported by the processor that mean the money did not move
FAILED_REFUND_STATUSES = ("failed", "canceled")

PLACEHOLDER_REFUND_PREFIX = "re_pending_"

# Audit status of a refund attempt the processor rejected
REFUND_ATTEMPT_FAILED = "failed"

# Audit status of a refund attempt whose result never came back
REFUND_ATTEMPT_UNCONFIRMED = "unconfirmed"

# Failures after which the processor may still have carried out the call
UNCONFIRMED_FAILURE_REASONS = (ProcessorErrorReason.TIMEOUT,)

PARTNER_PORTION_REFUND_TYPE = "split_50_50_partner_portion"


def plan_refund(settlement: Settlement, command: RefundCommand) -> RefundPlan:
    """Decide the processor calls for a refund command.

    Full and partial refunds of a destination charge claw back the partner's
    transfer and the application fee proportionally. A 50/50 split refunds the
    customer from the platform balance only and reverses the partner's share
    with a separate transfer reversal.
    """
    destination = settlement.is_destination_charge

    if command.refund_type == RefundType.SPLIT_50_50:
        return RefundPlan(
            charge_ref=settlement.id,
            amount_minor=command.amount_minor,
            reverse_transfer=False,
            refund_application_fee=False,
            is_destination_charge=destination,
            transfer_id=settlement.transfer_id,
            partner_reversal_amount_minor=command.partner_refund_amount_minor if destination else None,
        )

    return RefundPlan(
        charge_ref=settlement.id,
        amount_minor=command.amount_minor,
        reverse_transfer=destination,
        refund_application_fee=destination,
        is_destination_charge=destination,
        transfer_id=settlement.transfer_id,
    )


class RefundOrchestrator:
    """Executes refund commands against the ledger and records them on the booking."""

    def __init__(
        self,
        session: AsyncSession,
        ledger_client: LedgerClientBase,
        settings: Optional[SettlementSettings] = None,
    ):
        """Initialize the orchestrator.

        Args:
            session: Async database session. Failed attempts are committed on it
                before the error is raised.
            ledger_client: Ledger used for settlement reads, refunds and reversals.
            settings: Optional settings. Read from the environment if not provided.
        """
        self.session = session
        self.ledger = ledger_client
        self.settings = settings or SettlementSettings.from_env()
        self.booking_repo = BookingRepository(session)
        self.audit_repo = AuditEntryRepository(session)

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await run_ledger_call(
            func, *args, timeout=self.settings.refunds.call_timeout_seconds, **kwargs
        )

    @staticmethod
    def validate(command: RefundCommand) -> None:
        """Reject commands that cannot be executed.

        Raises:
            ValidationError: If a required field is missing.
        """
        if not command.payment_reference_id:
            raise ValidationError("payment_reference_id is required")
        if not command.booking_id:
            raise ValidationError("booking_id is required")
        if command.refund_type in (RefundType.PARTIAL, RefundType.SPLIT_50_50) and command.amount_minor is None:
            raise ValidationError(f"amount_minor is required for {command.refund_type.value} refunds")
        if command.refund_type == RefundType.SPLIT_50_50 and not command.partner_refund_amount_minor:
            raise ValidationError("partner_refund_amount_minor must be positive for split_50_50 refunds")

    async def _load_booking(self, booking_id: str) -> Booking:
        booking = await self.booking_repo.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def execute(self, command: RefundCommand) -> RefundOutcome:
        """Refund a booking.

        Returns the recorded outcome. A refund equivalent to one already
        accepted by the processor is not repeated; the earlier one is returned
        with ``duplicate=True``.

        Raises:
            ValidationError: If the command is incomplete or does not match the booking.
            NotFoundError: If the booking does not exist.
            ConcurrencyError: If the booking is being modified by another operation.
            ProcessorError: If the processor rejected the refund or did not answer
                in time. The attempt is committed as a pending placeholder first
                and attached as ``outcome``.
        """
        self.validate(command)
        booking = await self._load_booking(command.booking_id)

        if booking.payment_reference_id != command.payment_reference_id:
            raise ValidationError(
                f"Payment reference {command.payment_reference_id} does not belong to booking {booking.id}"
            )

        existing = await self.audit_repo.find_successful_refund(
            booking.id, command.refund_type.value, command.amount_minor
        )
        if existing is not None:
            logger.info(f"Booking {booking.id}: {command.refund_type.value} refund already recorded as {existing.processor_reference}")
            return await self._duplicate_outcome(booking, command, existing)

        history = await self.audit_repo.list_for_booking(booking.id, action=AuditAction.REFUND.value)

        # Claim the booking before any processor call so a concurrent refund fails fast
        await self.booking_repo.update_fields(booking, {"payment_status": booking.payment_status})
        before = booking.money_snapshot()

        settlement: Optional[Settlement] = None
        try:
            settlement = await self._call(self.ledger.fetch_settlement, command.payment_reference_id)
            plan = plan_refund(settlement, command)
            refund = await self._call(
                self.ledger.create_refund,
                plan.charge_ref,
                plan.amount_minor,
                command.reason.value,
                plan.reverse_transfer,
                plan.refund_application_fee,
                metadata={
                    "processed_by": command.actor,
                    "booking_id": booking.id,
                    "refund_type": command.refund_type.value,
                },
                idempotency_key=self._idempotency_key(
                    "refund", booking.id, command, self._rejected_attempts(history, command)
                ),
            )
            if refund.status in FAILED_REFUND_STATUSES:
                raise ProcessorError(
                    f"Refund {refund.id} was {refund.status}: {refund.error or 'no reason given'}",
                    ProcessorErrorReason.BUSINESS_RULE,
                )
        except NotFoundError as e:
            error = ProcessorError(f"Payment not found at the processor: {e}", ProcessorErrorReason.BUSINESS_RULE)
            await self._record_failure(booking, command, settlement, error, before)
        except ProcessorError as e:
            await self._record_failure(booking, command, settlement, e, before)

        logger.info(
            f"Booking {booking.id}: {command.refund_type.value} refund {refund.id} "
            f"({refund.amount_minor} minor) {refund.status}"
        )

        payment_status = self._payment_status_after(command, refund, settlement, history, booking.payment_status)
        await self.booking_repo.update_fields(
            booking,
            {"payment_status": payment_status, **self._missing_fee_fields(booking, settlement)},
        )
        entry = await self.audit_repo.append(
            booking_id=booking.id,
            action=AuditAction.REFUND.value,
            status=refund.status,
            actor=command.actor,
            refund_type=command.refund_type.value,
            amount_minor=refund.amount_minor if refund.amount_minor is not None else command.amount_minor,
            reason=command.reason.value,
            processor_reference=refund.id,
            before=before,
            after=booking.money_snapshot(),
        )

        reversal = PartnerReversalResult()
        if plan.partner_reversal_amount_minor:
            reversal = await self._reverse_partner_transfer(
                booking,
                plan.transfer_id,
                plan.partner_reversal_amount_minor,
                actor=command.actor,
            )

        return RefundOutcome(
            booking_id=booking.id,
            refund_type=command.refund_type,
            refund=refund,
            state=RefundState.RECORDED,
            amount_minor=refund.amount_minor,
            payment_status=booking.payment_status,
            partner_reversal=reversal,
            audit_entry_id=entry.id,
        )

    async def _record_failure(
        self,
        booking: Booking,
        command: RefundCommand,
        settlement: Optional[Settlement],
        error: ProcessorError,
        before: Dict[str, Any],
    ) -> None:
        """Persist a placeholder for a failed refund attempt, commit, then raise.

        A timed-out attempt is recorded as unconfirmed: the processor may still
        have refunded, so a retry reuses its idempotency key.
        """
        logger.error(f"Booking {booking.id}: refund failed ({error.reason.value}): {error}")
        unconfirmed = error.reason in UNCONFIRMED_FAILURE_REASONS

        placeholder = Refund(
            id=f"{PLACEHOLDER_REFUND_PREFIX}{uuid.uuid4().hex[:16]}",
            amount_minor=command.amount_minor,
            status="pending",
            reason=command.reason.value,
            metadata={"booking_id": booking.id, "refund_type": command.refund_type.value},
            error=str(error),
        )
        fields = self._missing_fee_fields(booking, settlement)
        # Only an untouched payment moves to refund_pending; earlier refunds stay on record
        if booking.payment_status == PaymentStatus.PAID.value:
            fields["payment_status"] = PaymentStatus.REFUND_PENDING.value
        await self.booking_repo.update_fields(booking, fields)
        entry = await self.audit_repo.append(
            booking_id=booking.id,
            action=AuditAction.REFUND.value,
            status=REFUND_ATTEMPT_UNCONFIRMED if unconfirmed else REFUND_ATTEMPT_FAILED,
            actor=command.actor,
            refund_type=command.refund_type.value,
            amount_minor=command.amount_minor,
            reason=command.reason.value,
            processor_reference=placeholder.id,
            before=before,
            after=booking.money_snapshot(),
            error_message=str(error),
        )
        outcome = RefundOutcome(
            booking_id=booking.id,
            refund_type=command.refund_type,
            refund=placeholder,
            state=RefundState.PROCESSOR_CALL_FAILED,
            amount_minor=command.amount_minor,
            payment_status=booking.payment_status,
            audit_entry_id=entry.id,
        )
        await self.session.commit()
        raise ProcessorError(str(error), error.reason, outcome=outcome) from error

    async def _reverse_partner_transfer(
        self,
        booking: Booking,
        transfer_id: Optional[str],
        amount_minor: int,
        actor: str,
    ) -> PartnerReversalResult:
        """Reverse the partner's share of a split refund.

        Failures are recorded for manual processing and never undo the
        customer refund. A timed-out reversal is recorded as unconfirmed and
        retried under the same idempotency key.
        """
        result = PartnerReversalResult(transfer_id=transfer_id, amount_minor=amount_minor)
        previous = await self.audit_repo.list_for_booking(
            booking.id, action=AuditAction.TRANSFER_REVERSAL.value
        )
        # An unconfirmed attempt keeps its key so the processor can replay it
        attempt = sum(
            1 for entry in previous
            if entry.status != ReversalStatus.UNCONFIRMED.value
            and entry.amount_minor == amount_minor
        )

        if not transfer_id:
            result.status = ReversalStatus.REQUIRES_MANUAL_PROCESSING
            result.error_message = "Transfer not found (payment may not be settled yet)"
        else:
            try:
                reversal = await self._call(
                    self.ledger.reverse_transfer,
                    transfer_id,
                    amount_minor,
                    metadata={
                        "booking_id": booking.id,
                        "refund_type": PARTNER_PORTION_REFUND_TYPE,
                        "processed_by": actor,
                    },
                    idempotency_key=f"reversal:{booking.id}:{transfer_id}:{amount_minor}:{attempt}",
                )
                result.status = ReversalStatus.SUCCEEDED
                result.reversal_id = reversal.id
            except ProcessorError as e:
                result.status = (
                    ReversalStatus.UNCONFIRMED
                    if e.reason in UNCONFIRMED_FAILURE_REASONS
                    else ReversalStatus.REQUIRES_MANUAL_PROCESSING
                )
                result.error_message = str(e)

        if result.requires_manual_processing:
            logger.warning(
                f"Booking {booking.id}: partner reversal of {amount_minor} requires manual processing: "
                f"{result.error_message}"
            )
        else:
            logger.info(f"Booking {booking.id}: reversed {amount_minor} from transfer {transfer_id}")

        entry = await self.audit_repo.append(
            booking_id=booking.id,
            action=AuditAction.TRANSFER_REVERSAL.value,
            status=result.status.value,
            actor=actor,
            refund_type=RefundType.SPLIT_50_50.value,
            amount_minor=amount_minor,
            reason=PARTNER_PORTION_REFUND_TYPE,
            processor_reference=result.reversal_id or transfer_id,
            error_message=result.error_message,
        )
        result.audit_entry_id = entry.id
        return result

    async def retry_transfer_reversal(self, booking_id: str, actor: str = "system") -> PartnerReversalResult:
        """Re-attempt the latest partner reversal that needs manual processing.

        Raises:
            NotFoundError: If the booking or its payment does not exist.
            ValidationError: If there is no failed reversal to retry.
            ProcessorError: If the settlement cannot be read.
        """
        booking = await self._load_booking(booking_id)
        latest = await self.audit_repo.latest_transfer_reversal(booking.id)
        if latest is None or latest.status not in MANUAL_REVERSAL_STATUSES:
            raise ValidationError(f"Booking {booking.id} has no transfer reversal awaiting manual processing")

        settlement = await self._call(self.ledger.fetch_settlement, booking.payment_reference_id)
        return await self._reverse_partner_transfer(
            booking,
            settlement.transfer_id,
            latest.amount_minor,
            actor=actor,
        )

    async def _duplicate_outcome(
        self,
        booking: Booking,
        command: RefundCommand,
        existing: AuditEntry,
    ) -> RefundOutcome:
        refund = Refund(
            id=existing.processor_reference,
            amount_minor=existing.amount_minor,
            status=existing.status,
            reason=existing.reason,
            created_at=existing.created_at,
        )
        reversal = PartnerReversalResult()
        if command.refund_type == RefundType.SPLIT_50_50:
            latest = await self.audit_repo.latest_transfer_reversal(booking.id)
            if latest is not None:
                reversal = PartnerReversalResult(
                    status=ReversalStatus(latest.status),
                    reversal_id=latest.processor_reference if latest.status == ReversalStatus.SUCCEEDED.value else None,
                    amount_minor=latest.amount_minor,
                    error_message=latest.error_message,
                    audit_entry_id=latest.id,
                )
        return RefundOutcome(
            booking_id=booking.id,
            refund_type=command.refund_type,
            refund=refund,
            amount_minor=existing.amount_minor,
            payment_status=booking.payment_status,
            partner_reversal=reversal,
            duplicate=True,
            audit_entry_id=existing.id,
        )

    @staticmethod
    def _rejected_attempts(history: List[AuditEntry], command: RefundCommand) -> int:
        # Unconfirmed attempts are not counted so their retry replays the same key
        return sum(
            1 for entry in history
            if entry.status == REFUND_ATTEMPT_FAILED
            and entry.refund_type == command.refund_type.value
            and entry.amount_minor == command.amount_minor
        )

    @staticmethod
    def _idempotency_key(prefix: str, booking_id: str, command: RefundCommand, attempt: int) -> str:
        # A new attempt after a rejected one must not replay the cached rejection
        amount = command.amount_minor if command.amount_minor is not None else "full"
        return f"{prefix}:{booking_id}:{command.refund_type.value}:{amount}:{attempt}"

    @staticmethod
    def _payment_status_after(
        command: RefundCommand,
        refund: Refund,
        settlement: Optional[Settlement],
        history: List[AuditEntry],
        current_status: str,
    ) -> str:
        if not refund.succeeded:
            if current_status == PaymentStatus.PAID.value:
                return PaymentStatus.REFUND_PENDING.value
            return current_status
        if command.refund_type == RefundType.FULL:
            return PaymentStatus.REFUNDED.value

        refunded = sum(
            entry.amount_minor or 0
            for entry in history
            if entry.status in SUCCESSFUL_REFUND_STATUSES
        ) + (refund.amount_minor or 0)
        if settlement is not None and settlement.amount_minor and refunded >= settlement.amount_minor:
            return PaymentStatus.REFUNDED.value
        return PaymentStatus.PARTIALLY_REFUNDED.value

    def _missing_fee_fields(self, booking: Booking, settlement: Optional[Settlement]) -> Dict[str, Any]:
        """Values for derived fee fields that were never written."""
        schedule = self.settings.fee_schedule
        fields: Dict[str, Any] = {}

        if booking.platform_earnings is None:
            fields["platform_earnings"] = quantize_money(
                commission_earnings_estimate(booking.commission_partner, schedule.processor_preset)
            )

        if booking.net_application_fee is None:
            net = None
            if settlement is not None and settlement.is_settled:
                net = to_major_units(settlement.balance_transaction.net_minor)
                if net > booking.application_fee_gross + self.settings.reconciler.tolerance:
                    logger.warning(
                        f"Booking {booking.id}: ledger net {net} exceeds gross application fee "
                        f"{booking.application_fee_gross}; using estimate"
                    )
                    net = None
            if net is None:
                estimate = estimate_booking_fees(
                    booking.base_amount,
                    booking.commission_partner,
                    schedule,
                    service_fee=booking.service_fee,
                    processing_fee=booking.payment_processing_fee,
                )
                net = quantize_money(estimate.net_application_fee)
            fields["net_application_fee"] = net

        return fields
