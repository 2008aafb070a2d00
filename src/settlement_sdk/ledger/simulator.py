"""Simulator ledger client for exercising reconciliation and refunds without real processor calls."""

import uuid
import time
import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..errors import NotFoundError, ProcessorError, ProcessorErrorReason
from .base import LedgerClientBase
from .models import (
    BalanceTransaction,
    Charge,
    FeeDetail,
    Refund,
    Settlement,
    TransferReversal,
)

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined failure scenarios for the simulator."""
    SUCCESS = "success"
    REFUND_FAILURE = "refund_failure"
    REFUND_PENDING = "refund_pending"
    TRANSFER_NOT_FOUND = "transfer_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"


@dataclass
class SimulatedPayment:
    """In-memory representation of a settled (or unsettled) payment."""
    id: str
    amount_minor: int
    currency: str = "USD"
    application_fee_amount_minor: Optional[int] = None
    fee_minor: int = 0
    net_minor: Optional[int] = None
    destination: Optional[str] = None
    transfer_id: Optional[str] = None
    transfer_amount_minor: int = 0
    status: str = "succeeded"
    refunded_minor: int = 0
    reversed_minor: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    scenario: SimulatorScenario = SimulatorScenario.SUCCESS
    delay_ms: int = 0  # Simulated response delay in ms


@dataclass
class SimulatorCall:
    """One recorded call, for assertions in tests."""
    method: str
    params: Dict[str, Any]


class SimulatorLedgerClient(LedgerClientBase):
    """
    Simulator ledger for testing without real processor calls.

    Features:
    - In-memory payments, refunds and transfer reversals
    - Scenario switches for processor failures
    - Recording of every call and its parameters
    - Replay of a successful result for a repeated idempotency key
    """

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._payments: Dict[str, SimulatedPayment] = {}
        self._refunds: Dict[str, Refund] = {}
        self._reversals: Dict[str, TransferReversal] = {}
        self._idempotent_results: Dict[str, Any] = {}
        self.calls: List[SimulatorCall] = []
        logger.info("SimulatorLedgerClient initialized")

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}_sim_{uuid.uuid4().hex[:24]}"

    def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            time.sleep(self.config.delay_ms / 1000.0)

    def _record(self, method: str, **params: Any) -> None:
        self.calls.append(SimulatorCall(method=method, params=params))

    def _raise_for_transport_scenario(self) -> None:
        if self.config.scenario == SimulatorScenario.TIMEOUT:
            raise ProcessorError("Simulated timeout", ProcessorErrorReason.TIMEOUT)
        if self.config.scenario == SimulatorScenario.RATE_LIMIT:
            raise ProcessorError("Simulated rate limit", ProcessorErrorReason.RATE_LIMIT)

    def add_payment(
        self,
        amount_minor: int,
        application_fee_amount_minor: Optional[int] = None,
        fee_minor: int = 0,
        net_minor: Optional[int] = None,
        destination: Optional[str] = None,
        settled: bool = True,
        payment_id: Optional[str] = None,
        currency: str = "USD",
    ) -> SimulatedPayment:
        """Register a payment the simulator will report (simulator-specific method).

        A destination payment gets a transfer of ``amount - application_fee``
        once settled.
        """
        payment = SimulatedPayment(
            id=payment_id or self._generate_id("pi"),
            amount_minor=amount_minor,
            currency=currency,
            application_fee_amount_minor=application_fee_amount_minor,
            fee_minor=fee_minor,
            net_minor=net_minor if settled else None,
            destination=destination,
        )
        if destination and settled:
            payment.transfer_id = self._generate_id("tr")
            payment.transfer_amount_minor = amount_minor - (application_fee_amount_minor or 0)
        self._payments[payment.id] = payment
        return payment

    def fetch_settlement(self, payment_reference_id: str) -> Settlement:
        self._apply_delay()
        self._record("fetch_settlement", payment_reference_id=payment_reference_id)
        self._raise_for_transport_scenario()

        payment = self._payments.get(payment_reference_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_reference_id} not found")

        balance_transaction = None
        if payment.net_minor is not None:
            balance_transaction = BalanceTransaction(
                id=self._generate_id("txn"),
                amount_minor=payment.amount_minor,
                fee_minor=payment.fee_minor,
                net_minor=payment.net_minor,
                currency=payment.currency,
                fee_details=[FeeDetail(type="stripe_fee", amount_minor=payment.fee_minor)],
            )
        charge = Charge(
            id=f"ch_{payment.id}",
            amount_minor=payment.amount_minor,
            amount_captured_minor=payment.amount_minor,
            fee_minor=payment.fee_minor if balance_transaction else None,
            net_minor=payment.net_minor,
            transfer_id=payment.transfer_id,
        )
        return Settlement(
            id=payment.id,
            amount_minor=payment.amount_minor,
            currency=payment.currency,
            status=payment.status,
            application_fee_amount_minor=payment.application_fee_amount_minor,
            transfer_destination=payment.destination,
            charge=charge,
            balance_transaction=balance_transaction,
        )

    def create_refund(
        self,
        charge_ref: str,
        amount_minor: Optional[int],
        reason: Optional[str],
        reverse_transfer: bool,
        refund_application_fee: bool,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        self._apply_delay()
        self._record(
            "create_refund",
            charge_ref=charge_ref,
            amount_minor=amount_minor,
            reason=reason,
            reverse_transfer=reverse_transfer,
            refund_application_fee=refund_application_fee,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        self._raise_for_transport_scenario()
        if idempotency_key in self._idempotent_results:
            return self._idempotent_results[idempotency_key]

        if self.config.scenario == SimulatorScenario.REFUND_FAILURE:
            raise ProcessorError("Simulated refund decline", ProcessorErrorReason.BUSINESS_RULE)

        payment = self._payments.get(charge_ref)
        if payment is None:
            raise NotFoundError(f"Payment {charge_ref} not found")

        refundable = payment.amount_minor - payment.refunded_minor
        amount = refundable if amount_minor is None else amount_minor
        if amount <= 0 or amount > refundable:
            raise ProcessorError(
                f"Refund amount {amount} exceeds refundable {refundable}",
                ProcessorErrorReason.BUSINESS_RULE,
            )

        status = "pending" if self.config.scenario == SimulatorScenario.REFUND_PENDING else "succeeded"
        refund = Refund(
            id=self._generate_id("re"),
            amount_minor=amount,
            status=status,
            reason=reason,
            metadata=metadata or {},
        )
        payment.refunded_minor += amount
        if reverse_transfer and payment.transfer_id and payment.amount_minor:
            payment.reversed_minor += payment.transfer_amount_minor * amount // payment.amount_minor
        self._refunds[refund.id] = refund
        if idempotency_key:
            self._idempotent_results[idempotency_key] = refund
        return refund

    def reverse_transfer(
        self,
        transfer_id: str,
        amount_minor: int,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferReversal:
        self._apply_delay()
        self._record(
            "reverse_transfer",
            transfer_id=transfer_id,
            amount_minor=amount_minor,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        self._raise_for_transport_scenario()
        if idempotency_key in self._idempotent_results:
            return self._idempotent_results[idempotency_key]

        if self.config.scenario == SimulatorScenario.INSUFFICIENT_FUNDS:
            raise ProcessorError(
                "Connected account has insufficient funds", ProcessorErrorReason.INSUFFICIENT_FUNDS
            )
        payment = next(
            (p for p in self._payments.values() if p.transfer_id and p.transfer_id == transfer_id),
            None,
        )
        if payment is None or self.config.scenario == SimulatorScenario.TRANSFER_NOT_FOUND:
            raise ProcessorError(
                f"Transfer {transfer_id} not found", ProcessorErrorReason.TRANSFER_NOT_FOUND
            )
        if payment.reversed_minor + amount_minor > payment.transfer_amount_minor:
            raise ProcessorError(
                "Reversal exceeds transferred amount", ProcessorErrorReason.INSUFFICIENT_FUNDS
            )

        payment.reversed_minor += amount_minor
        reversal = TransferReversal(
            id=self._generate_id("trr"),
            transfer_id=transfer_id,
            amount_minor=amount_minor,
        )
        self._reversals[reversal.id] = reversal
        if idempotency_key:
            self._idempotent_results[idempotency_key] = reversal
        return reversal

    def settle(self, payment_reference_id: str, net_minor: int) -> SimulatedPayment:
        """Mark a payment settled, creating its transfer (simulator-specific method)."""
        payment = self._payments[payment_reference_id]
        payment.net_minor = net_minor
        if payment.destination and not payment.transfer_id:
            payment.transfer_id = self._generate_id("tr")
            payment.transfer_amount_minor = (
                payment.amount_minor - (payment.application_fee_amount_minor or 0)
            )
        return payment

    def get_payment(self, payment_reference_id: str) -> Optional[SimulatedPayment]:
        return self._payments.get(payment_reference_id)

    def calls_to(self, method: str) -> List[SimulatorCall]:
        """Recorded calls of one method (for testing)."""
        return [call for call in self.calls if call.method == method]

    def clear(self) -> None:
        """Clear all stored state (for test cleanup)."""
        self._payments.clear()
        self._refunds.clear()
        self._reversals.clear()
        self._idempotent_results.clear()
        self.calls.clear()

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": "simulator",
            "payment_count": len(self._payments),
            "refund_count": len(self._refunds),
            "config": {
                "scenario": self.config.scenario.value,
                "delay_ms": self.config.delay_ms,
            },
        }
