"""Repository layer for bookings and the audit trail."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Sequence

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConcurrencyError
from .models import (
    Booking,
    AuditEntry,
    AuditAction,
    PaymentStatus,
    SETTLED_STATUSES,
)

logger = logging.getLogger(__name__)

# Audit statuses of refunds the processor accepted (a pending refund still settles)
SUCCESSFUL_REFUND_STATUSES = ("succeeded", "pending")

# Audit status of a partner reversal that failed and needs an operator
REQUIRES_MANUAL_PROCESSING = "requires_manual_processing"


class BookingRepository:
    """Repository for Booking reads and guarded updates."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        base_amount: Decimal,
        service_fee: Decimal,
        payment_processing_fee: Decimal,
        commission_partner: Decimal,
        payment_reference_id: Optional[str] = None,
        payment_status: str = PaymentStatus.PAID.value,
        platform_earnings: Optional[Decimal] = None,
        net_application_fee: Optional[Decimal] = None,
        currency: str = "USD",
        booking_id: Optional[str] = None,
    ) -> Booking:
        """Create a booking with its money fields (major units)."""
        booking = Booking(
            base_amount=base_amount,
            service_fee=service_fee,
            payment_processing_fee=payment_processing_fee,
            commission_partner=commission_partner,
            platform_earnings=platform_earnings,
            net_application_fee=net_application_fee,
            payment_reference_id=payment_reference_id,
            payment_status=payment_status,
            currency=currency.upper(),
        )
        if booking_id:
            booking.id = booking_id

        self.session.add(booking)
        await self.session.flush()

        logger.info(f"Created booking {booking.id} with status {payment_status}")
        return booking

    async def get_by_id(self, booking_id: str) -> Optional[Booking]:
        """Get a booking by its ID.

        Returns:
            Booking instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Booking).where(Booking.id == booking_id)
        )
        return result.scalar_one_or_none()

    async def get_by_payment_reference(self, payment_reference_id: str) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking).where(Booking.payment_reference_id == payment_reference_id)
        )
        return result.scalars().first()

    async def list_reconcilable(
        self,
        limit: int = 50,
        booking_ids: Optional[Sequence[str]] = None,
    ) -> List[Booking]:
        """List bookings eligible for reconciliation.

        Eligible means a payment reference is present, commission is positive
        and the payment is settled. Oldest bookings come first.

        Args:
            limit: Maximum number of bookings.
            booking_ids: Optional explicit subset of bookings to consider.
        """
        conditions = [
            Booking.payment_reference_id.is_not(None),
            Booking.payment_reference_id != "",
            Booking.commission_partner > 0,
            Booking.payment_status.in_(SETTLED_STATUSES),
        ]
        if booking_ids:
            conditions.append(Booking.id.in_(list(booking_ids)))

        result = await self.session.execute(
            select(Booking)
            .where(and_(*conditions))
            .order_by(Booking.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_fields(
        self,
        booking: Booking,
        fields: Dict[str, Any],
        expected_updated_at: Optional[datetime] = None,
    ) -> Booking:
        """Update booking fields with a compare-and-set on ``updated_at``.

        Args:
            booking: Booking instance to update.
            fields: Column values to write.
            expected_updated_at: ``updated_at`` observed when the booking was
                read. Defaults to the instance's current value.

        Raises:
            ConcurrencyError: If the booking changed since it was read.
        """
        expected = expected_updated_at or booking.updated_at
        now = datetime.utcnow()
        if now <= expected:
            # updated_at must strictly increase for later compare-and-set calls
            now = expected + timedelta(microseconds=1)

        result = await self.session.execute(
            update(Booking)
            .where(and_(Booking.id == booking.id, Booking.updated_at == expected))
            .values(**fields, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"Concurrent update detected on booking {booking.id}")
            raise ConcurrencyError(
                f"Booking {booking.id} was modified concurrently; reload and retry"
            )

        await self.session.refresh(booking)
        logger.debug(f"Updated booking {booking.id}: {sorted(fields)}")
        return booking


class AuditEntryRepository:
    """Repository for the append-only audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        booking_id: str,
        action: str,
        status: str,
        actor: str = "system",
        refund_type: Optional[str] = None,
        amount_minor: Optional[int] = None,
        reason: Optional[str] = None,
        processor_reference: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> AuditEntry:
        """Append an audit entry.

        Args:
            booking_id: Booking the entry belongs to.
            action: reconcile, refund or transfer_reversal.
            status: Outcome status of the action.
            actor: Operator or job that performed the action.
            refund_type: Refund type for refund entries.
            amount_minor: Amount involved, in minor units.
            reason: Refund reason or reconciliation note.
            processor_reference: Processor id or local placeholder id.
            before: Monetary fields before the write.
            after: Monetary fields after the write.
            error_message: Error message if the action failed.
        """
        entry = AuditEntry(
            booking_id=booking_id,
            action=action,
            status=status,
            actor=actor,
            refund_type=refund_type,
            amount_minor=amount_minor,
            reason=reason,
            processor_reference=processor_reference,
            error_message=error_message,
        )
        entry.before = before
        entry.after = after

        self.session.add(entry)
        await self.session.flush()

        logger.debug(f"Audit entry for booking {booking_id}: {action} -> {status}")
        return entry

    async def list_for_booking(
        self,
        booking_id: str,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Audit entries for a booking, newest first."""
        query = select(AuditEntry).where(AuditEntry.booking_id == booking_id)
        if action:
            query = query.where(AuditEntry.action == action)
        result = await self.session.execute(
            query.order_by(AuditEntry.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def find_successful_refund(
        self,
        booking_id: str,
        refund_type: str,
        amount_minor: Optional[int],
    ) -> Optional[AuditEntry]:
        """Find an equivalent refund the processor already accepted for a booking.

        A full refund (``amount_minor=None``) matches any accepted refund of
        the same type.
        """
        conditions = [
            AuditEntry.booking_id == booking_id,
            AuditEntry.action == AuditAction.REFUND.value,
            AuditEntry.refund_type == refund_type,
            AuditEntry.status.in_(SUCCESSFUL_REFUND_STATUSES),
        ]
        if amount_minor is not None:
            conditions.append(AuditEntry.amount_minor == amount_minor)

        result = await self.session.execute(
            select(AuditEntry)
            .where(and_(*conditions))
            .order_by(AuditEntry.created_at.desc())
        )
        return result.scalars().first()

    async def latest_transfer_reversal(self, booking_id: str) -> Optional[AuditEntry]:
        """Most recent transfer reversal attempt for a booking."""
        result = await self.session.execute(
            select(AuditEntry)
            .where(
                and_(
                    AuditEntry.booking_id == booking_id,
                    AuditEntry.action == AuditAction.TRANSFER_REVERSAL.value,
                )
            )
            .order_by(AuditEntry.created_at.desc())
        )
        return result.scalars().first()
