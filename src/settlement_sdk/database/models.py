"""SQLAlchemy models for booking money fields and the settlement audit trail."""

import uuid
import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    ForeignKey,
    Numeric,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum

from ..money import ZERO, non_negative

Money = Numeric(12, 2, asdecimal=True)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PaymentStatus(str, enum.Enum):
    """Booking payment statuses."""
    PENDING = "pending"
    PAID = "paid"
    REFUND_PENDING = "refund_pending"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"


# Statuses whose payment has been captured and may have a balance transaction
SETTLED_STATUSES = (
    PaymentStatus.PAID.value,
    PaymentStatus.REFUND_PENDING.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
)


class AuditAction(str, enum.Enum):
    """Kinds of writes recorded in the audit trail."""
    RECONCILE = "reconcile"
    REFUND = "refund"
    TRANSFER_REVERSAL = "transfer_reversal"


class Booking(Base):
    """Money fields of a marketplace booking, in major units."""
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    base_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=ZERO)
    service_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=ZERO)
    payment_processing_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=ZERO)
    # Gross commission owed to the platform
    commission_partner: Mapped[Decimal] = mapped_column(Money, nullable=False, default=ZERO)
    # Commission net of processor fee
    platform_earnings: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    # Total platform take net of processor fee
    net_application_fee: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    payment_status: Mapped[str] = mapped_column(String(50), nullable=False, default=PaymentStatus.PENDING.value)
    payment_reference_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    audit_entries: Mapped[List["AuditEntry"]] = relationship(
        "AuditEntry",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="AuditEntry.created_at.desc()"
    )

    __table_args__ = (
        Index("ix_bookings_payment_status", "payment_status"),
        Index("ix_bookings_created_at", "created_at"),
    )

    @property
    def application_fee_gross(self) -> Decimal:
        """Service fee + processing fee + commission, each clamped to zero."""
        return (
            non_negative(self.service_fee)
            + non_negative(self.payment_processing_fee)
            + non_negative(self.commission_partner)
        )

    @property
    def total_transaction(self) -> Decimal:
        """Amount charged to the customer."""
        return (
            non_negative(self.base_amount)
            + non_negative(self.service_fee)
            + non_negative(self.payment_processing_fee)
        )

    def money_snapshot(self) -> Dict[str, Optional[str]]:
        """Monetary fields as strings, for audit before/after values."""
        def _fmt(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            "platform_earnings": _fmt(self.platform_earnings),
            "net_application_fee": _fmt(self.net_application_fee),
            "payment_status": self.payment_status,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert booking to dictionary representation."""
        return {
            "id": self.id,
            "base_amount": str(self.base_amount),
            "service_fee": str(self.service_fee),
            "payment_processing_fee": str(self.payment_processing_fee),
            "commission_partner": str(self.commission_partner),
            "platform_earnings": str(self.platform_earnings) if self.platform_earnings is not None else None,
            "net_application_fee": str(self.net_application_fee) if self.net_application_fee is not None else None,
            "payment_status": self.payment_status,
            "payment_reference_id": self.payment_reference_id,
            "currency": self.currency,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class AuditEntry(Base):
    """Append-only record of a reconciliation write, refund or transfer reversal."""
    __tablename__ = "audit_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    refund_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount_minor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Refund / reversal id at the processor, or a local placeholder id
    processor_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")

    before_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    after_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="audit_entries")

    __table_args__ = (
        Index("ix_audit_entries_action", "action"),
        Index("ix_audit_entries_created_at", "created_at"),
    )

    @property
    def before(self) -> Optional[Dict[str, Any]]:
        if self.before_json:
            return json.loads(self.before_json)
        return None

    @before.setter
    def before(self, value: Optional[Dict[str, Any]]) -> None:
        self.before_json = json.dumps(value) if value is not None else None

    @property
    def after(self) -> Optional[Dict[str, Any]]:
        if self.after_json:
            return json.loads(self.after_json)
        return None

    @after.setter
    def after(self, value: Optional[Dict[str, Any]]) -> None:
        self.after_json = json.dumps(value) if value is not None else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit entry to dictionary representation."""
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "action": self.action,
            "refund_type": self.refund_type,
            "amount_minor": self.amount_minor,
            "reason": self.reason,
            "processor_reference": self.processor_reference,
            "status": self.status,
            "actor": self.actor,
            "before": self.before,
            "after": self.after,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
