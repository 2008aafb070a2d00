"""Typed mirrors of the external ledger's read shapes.

All amounts on these models are in minor units, exactly as the ledger reports
them. Conversion to the major units stored on bookings happens in
:mod:`settlement_sdk.money`.
"""

import enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Mapping

from pydantic import BaseModel, Field


def _expandable_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field, whether it arrived as an id or an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return getattr(value, "id", None)


def _expanded(value: Any) -> Optional[Mapping]:
    """Return the expanded object of an expandable field, or None when only an id is present."""
    if isinstance(value, Mapping):
        return value
    return None


def _from_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value)
    if isinstance(value, datetime):
        return value
    return datetime.utcnow()


class RefundReason(str, enum.Enum):
    """Refund reasons accepted by the processor."""
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"


class FeeDetail(BaseModel):
    """One component of a balance transaction's fee."""
    type: str = Field(..., description="Fee type, e.g. stripe_fee or application_fee")
    amount_minor: int = Field(..., description="Fee amount in minor units")
    description: Optional[str] = None


class BalanceTransaction(BaseModel):
    """Authoritative gross / fee / net record for a settled charge."""
    id: str
    amount_minor: int
    fee_minor: int = 0
    net_minor: Optional[int] = None
    currency: Optional[str] = None
    fee_details: List[FeeDetail] = Field(default_factory=list)

    @classmethod
    def from_stripe(cls, data: Mapping) -> "BalanceTransaction":
        return cls(
            id=data["id"],
            amount_minor=data.get("amount") or 0,
            fee_minor=data.get("fee") or 0,
            net_minor=data.get("net"),
            currency=(data.get("currency") or "").upper() or None,
            fee_details=[
                FeeDetail(
                    type=detail.get("type") or "unknown",
                    amount_minor=detail.get("amount") or 0,
                    description=detail.get("description"),
                )
                for detail in (data.get("fee_details") or [])
            ],
        )


class Charge(BaseModel):
    """The captured charge behind a payment."""
    id: str
    amount_minor: int = 0
    amount_captured_minor: int = 0
    fee_minor: Optional[int] = None
    net_minor: Optional[int] = None
    transfer_id: Optional[str] = Field(None, description="Transfer to the connected account, once settled")


class Transfer(BaseModel):
    """Funds moved to a connected partner account."""
    id: str
    destination: str
    amount_minor: int


class TransferReversal(BaseModel):
    """A (partial) claw-back of a transfer."""
    id: str
    transfer_id: str
    amount_minor: int
    status: str = "succeeded"

    @classmethod
    def from_stripe(cls, data: Mapping) -> "TransferReversal":
        return cls(
            id=data["id"],
            transfer_id=_expandable_id(data.get("transfer")) or "",
            amount_minor=data.get("amount") or 0,
            status=data.get("status") or "succeeded",
        )


class Refund(BaseModel):
    """A refund as reported by the processor, or a local placeholder for a failed attempt."""
    id: str
    amount_minor: Optional[int] = None
    status: str
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @classmethod
    def from_stripe(cls, data: Mapping) -> "Refund":
        return cls(
            id=data["id"],
            amount_minor=data.get("amount"),
            status=data.get("status") or "pending",
            reason=data.get("reason"),
            metadata=dict(data.get("metadata") or {}),
            created_at=_from_timestamp(data.get("created")),
            error=data.get("failure_reason"),
        )


class PaymentRecord(BaseModel):
    """Top-level payment as known to the ledger."""
    id: str
    amount_minor: int
    currency: str
    status: str
    application_fee_amount_minor: Optional[int] = None
    on_behalf_of: Optional[str] = None
    transfer_destination: Optional[str] = None

    @property
    def is_destination_charge(self) -> bool:
        """Funds are split at settlement between the platform and a connected account."""
        return bool(self.on_behalf_of or self.transfer_destination)


class Settlement(PaymentRecord):
    """A payment expanded with its charge and balance transaction."""
    charge: Optional[Charge] = None
    balance_transaction: Optional[BalanceTransaction] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def charge_id(self) -> Optional[str]:
        return self.charge.id if self.charge else None

    @property
    def transfer_id(self) -> Optional[str]:
        return self.charge.transfer_id if self.charge else None

    @property
    def is_settled(self) -> bool:
        return self.balance_transaction is not None and self.balance_transaction.net_minor is not None

    @classmethod
    def from_stripe(cls, payment_intent: Mapping) -> "Settlement":
        """Map an expanded PaymentIntent payload to a Settlement.

        Expects ``latest_charge`` and ``latest_charge.balance_transaction`` to be
        expanded; either may also arrive as a bare id, in which case the
        corresponding mirror carries only what is known.
        """
        transfer_data = _expanded(payment_intent.get("transfer_data")) or {}

        charge = None
        balance_transaction = None
        latest_charge = payment_intent.get("latest_charge")
        charge_data = _expanded(latest_charge)
        if charge_data is not None:
            bt_data = _expanded(charge_data.get("balance_transaction"))
            if bt_data is not None:
                balance_transaction = BalanceTransaction.from_stripe(bt_data)
            charge = Charge(
                id=charge_data["id"],
                amount_minor=charge_data.get("amount") or 0,
                amount_captured_minor=charge_data.get("amount_captured") or 0,
                fee_minor=balance_transaction.fee_minor if balance_transaction else None,
                net_minor=balance_transaction.net_minor if balance_transaction else None,
                transfer_id=_expandable_id(charge_data.get("transfer")),
            )
        elif latest_charge:
            charge = Charge(id=_expandable_id(latest_charge))

        return cls(
            id=payment_intent["id"],
            amount_minor=payment_intent.get("amount") or 0,
            currency=(payment_intent.get("currency") or "").upper(),
            status=payment_intent.get("status") or "unknown",
            application_fee_amount_minor=payment_intent.get("application_fee_amount"),
            on_behalf_of=_expandable_id(payment_intent.get("on_behalf_of")),
            transfer_destination=_expandable_id(transfer_data.get("destination")),
            charge=charge,
            balance_transaction=balance_transaction,
            metadata=dict(payment_intent.get("metadata") or {}),
        )
