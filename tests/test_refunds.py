"""Tests for refund orchestration."""

import time
import pytest
from decimal import Decimal
from unittest.mock import MagicMock

from settlement_sdk.config import RefundSettings, SettlementSettings
from settlement_sdk.database import (
    AuditAction,
    AuditEntryRepository,
    BookingRepository,
    PaymentStatus,
    make_session_factory,
)
from settlement_sdk.errors import (
    ConcurrencyError,
    NotFoundError,
    ProcessorError,
    ProcessorErrorReason,
    ValidationError,
)
from settlement_sdk.ledger import (
    BalanceTransaction,
    Charge,
    Refund,
    Settlement,
    SimulatorConfig,
    SimulatorLedgerClient,
    SimulatorScenario,
    TransferReversal,
)
from settlement_sdk.refunds import (
    RefundCommand,
    RefundOrchestrator,
    RefundState,
    RefundType,
    ReversalStatus,
    plan_refund,
)


def _settlement(destination=True, transfer_id="tr_1", payment_id="pi_example"):
    return Settlement(
        id=payment_id,
        amount_minor=11426,
        currency="USD",
        status="succeeded",
        application_fee_amount_minor=1826,
        transfer_destination="acct_partner" if destination else None,
        charge=Charge(id="ch_1", amount_minor=11426, transfer_id=transfer_id if destination else None),
        balance_transaction=BalanceTransaction(id="txn_1", amount_minor=11426, fee_minor=361, net_minor=1768),
    )


def _command(booking, refund_type=RefundType.FULL, **kwargs):
    return RefundCommand(
        booking_id=booking.id,
        payment_reference_id=booking.payment_reference_id,
        refund_type=refund_type,
        actor="ops@example.com",
        **kwargs,
    )


@pytest.fixture
def orchestrator(db_session, simulator, settings):
    return RefundOrchestrator(db_session, ledger_client=simulator, settings=settings)


async def _audit(db_session, booking_id, action):
    return await AuditEntryRepository(db_session).list_for_booking(booking_id, action=action)


class _LateAnsweringLedger(SimulatorLedgerClient):
    """Carries out a call but answers after the caller gave up, once per listed method."""

    def __init__(self, answer_delay, methods):
        super().__init__()
        self.answer_delay = answer_delay
        self.late_methods = set(methods)

    def _answer_late(self, method):
        if method in self.late_methods:
            self.late_methods.discard(method)
            time.sleep(self.answer_delay)

    def create_refund(self, *args, **kwargs):
        refund = super().create_refund(*args, **kwargs)
        self._answer_late("create_refund")
        return refund

    def reverse_transfer(self, *args, **kwargs):
        reversal = super().reverse_transfer(*args, **kwargs)
        self._answer_late("reverse_transfer")
        return reversal


def _late_ledger(*methods):
    ledger = _LateAnsweringLedger(answer_delay=0.2, methods=methods)
    ledger.add_payment(
        amount_minor=11426,
        application_fee_amount_minor=1826,
        fee_minor=361,
        net_minor=1768,
        destination="acct_partner",
        payment_id="pi_example",
    )
    return ledger


@pytest.fixture
def impatient_settings():
    return SettlementSettings(refunds=RefundSettings(call_timeout_seconds=0.05))


class TestPlanRefund:
    """Choosing the processor flags."""

    def test_full_refund_on_destination_charge(self):
        plan = plan_refund(_settlement(), RefundCommand(booking_id="b", payment_reference_id="pi_example"))

        assert plan.reverse_transfer is True
        assert plan.refund_application_fee is True
        assert plan.amount_minor is None
        assert plan.partner_reversal_amount_minor is None

    def test_partial_refund_on_direct_charge(self):
        command = RefundCommand(
            booking_id="b", payment_reference_id="pi_example",
            refund_type=RefundType.PARTIAL, amount_minor=5000,
        )

        plan = plan_refund(_settlement(destination=False), command)

        assert plan.reverse_transfer is False
        assert plan.refund_application_fee is False
        assert plan.amount_minor == 5000

    def test_split_refund(self):
        command = RefundCommand(
            booking_id="b", payment_reference_id="pi_example",
            refund_type=RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000,
        )

        plan = plan_refund(_settlement(), command)

        assert plan.reverse_transfer is False
        assert plan.refund_application_fee is False
        assert plan.transfer_id == "tr_1"
        assert plan.partner_reversal_amount_minor == 1000

    def test_split_refund_on_direct_charge_has_no_reversal(self):
        command = RefundCommand(
            booking_id="b", payment_reference_id="pi_example",
            refund_type=RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000,
        )

        plan = plan_refund(_settlement(destination=False), command)

        assert plan.partner_reversal_amount_minor is None


class TestSplitRefund:
    """A 50/50 split against a ledger test double."""

    async def test_customer_refund_and_partner_reversal_are_separate(self, db_session, make_booking, settings):
        booking = await make_booking()
        ledger = MagicMock()
        ledger.fetch_settlement.return_value = _settlement()
        ledger.create_refund.return_value = Refund(id="re_1", amount_minor=2000, status="succeeded")
        ledger.reverse_transfer.return_value = TransferReversal(id="trr_1", transfer_id="tr_1", amount_minor=1000)
        orchestrator = RefundOrchestrator(db_session, ledger_client=ledger, settings=settings)

        outcome = await orchestrator.execute(
            _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000)
        )

        ledger.create_refund.assert_called_once()
        args = ledger.create_refund.call_args
        assert args.args == ("pi_example", 2000, "requested_by_customer", False, False)
        assert args.kwargs["metadata"] == {
            "processed_by": "ops@example.com",
            "booking_id": booking.id,
            "refund_type": "split_50_50",
        }
        assert args.kwargs["idempotency_key"] == f"refund:{booking.id}:split_50_50:2000:0"

        ledger.reverse_transfer.assert_called_once()
        reversal_args = ledger.reverse_transfer.call_args
        assert reversal_args.args == ("tr_1", 1000)
        assert reversal_args.kwargs["metadata"]["refund_type"] == "split_50_50_partner_portion"

        assert outcome.state == RefundState.RECORDED
        assert outcome.payment_status == PaymentStatus.PARTIALLY_REFUNDED.value
        assert outcome.partner_reversal.status == ReversalStatus.SUCCEEDED
        assert outcome.partner_reversal.reversal_id == "trr_1"
        assert not outcome.requires_manual_processing
        assert len(await _audit(db_session, booking.id, AuditAction.REFUND.value)) == 1
        assert len(await _audit(db_session, booking.id, AuditAction.TRANSFER_REVERSAL.value)) == 1


class TestFullAndPartialRefunds:
    """Destination and direct charges against the simulator."""

    async def test_full_refund_on_destination_charge(self, orchestrator, make_booking, settled_payment, simulator, db_session):
        booking = await make_booking()

        outcome = await orchestrator.execute(_command(booking))

        params = simulator.calls_to("create_refund")[0].params
        assert params["reverse_transfer"] is True
        assert params["refund_application_fee"] is True
        assert params["amount_minor"] is None
        assert outcome.refund.amount_minor == 11426
        assert outcome.payment_status == PaymentStatus.REFUNDED.value
        assert booking.payment_status == PaymentStatus.REFUNDED.value

        entry = (await _audit(db_session, booking.id, AuditAction.REFUND.value))[0]
        assert entry.status == "succeeded"
        assert entry.actor == "ops@example.com"
        assert entry.processor_reference == outcome.refund.id
        assert entry.amount_minor == 11426

    async def test_partial_refund_on_direct_charge(self, orchestrator, make_booking, simulator):
        simulator.add_payment(amount_minor=11426, net_minor=1768, payment_id="pi_direct")
        booking = await make_booking(payment_reference_id="pi_direct")

        outcome = await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=5000))

        params = simulator.calls_to("create_refund")[0].params
        assert params["reverse_transfer"] is False
        assert params["refund_application_fee"] is False
        assert params["amount_minor"] == 5000
        assert outcome.payment_status == PaymentStatus.PARTIALLY_REFUNDED.value

    async def test_partials_adding_up_to_the_total(self, orchestrator, make_booking, settled_payment):
        booking = await make_booking()

        await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=6000))
        outcome = await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=5426))

        assert outcome.payment_status == PaymentStatus.REFUNDED.value

    async def test_missing_fee_fields_are_filled(self, orchestrator, make_booking, settled_payment):
        booking = await make_booking()

        await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=1000))

        # 4.00 - (4.00 * 0.029 + 0.30)
        assert booking.platform_earnings == Decimal("3.58")
        assert booking.net_application_fee == Decimal("17.68")

    async def test_stored_fee_fields_are_kept(self, orchestrator, make_booking, settled_payment):
        booking = await make_booking(platform_earnings=Decimal("3.87"), net_application_fee=Decimal("17.68"))

        await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=1000))

        assert booking.platform_earnings == Decimal("3.87")


class TestIdempotency:
    """Repeated refund commands."""

    async def test_repeat_is_short_circuited(self, orchestrator, make_booking, settled_payment, simulator):
        booking = await make_booking()
        first = await orchestrator.execute(_command(booking))

        second = await orchestrator.execute(_command(booking))

        assert second.duplicate
        assert second.refund.id == first.refund.id
        assert len(simulator.calls_to("create_refund")) == 1

    async def test_different_partial_amount_is_not_a_duplicate(self, orchestrator, make_booking, settled_payment, simulator):
        booking = await make_booking()
        await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=1000))

        outcome = await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=2000))

        assert not outcome.duplicate
        keys = [call.params["idempotency_key"] for call in simulator.calls_to("create_refund")]
        assert keys == [
            f"refund:{booking.id}:partial:1000:0",
            f"refund:{booking.id}:partial:2000:0",
        ]

    async def test_pending_refund_counts_as_accepted(self, db_session, make_booking, settings):
        ledger = SimulatorLedgerClient(SimulatorConfig(scenario=SimulatorScenario.REFUND_PENDING))
        ledger.add_payment(amount_minor=11426, net_minor=1768, payment_id="pi_example")
        booking = await make_booking()
        orchestrator = RefundOrchestrator(db_session, ledger_client=ledger, settings=settings)

        outcome = await orchestrator.execute(_command(booking))
        again = await orchestrator.execute(_command(booking))

        assert outcome.refund.status == "pending"
        assert outcome.payment_status == PaymentStatus.REFUND_PENDING.value
        assert again.duplicate
        assert len(ledger.calls_to("create_refund")) == 1


class TestProcessorFailures:
    """Rejected refunds are recorded as pending placeholders."""

    async def test_placeholder_is_committed(self, db_engine, db_session, make_booking, settled_payment, simulator, orchestrator):
        simulator.config.scenario = SimulatorScenario.REFUND_FAILURE
        booking = await make_booking()

        with pytest.raises(ProcessorError) as exc_info:
            await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=1000))

        outcome = exc_info.value.outcome
        assert exc_info.value.reason == ProcessorErrorReason.BUSINESS_RULE
        assert outcome.state == RefundState.PROCESSOR_CALL_FAILED
        assert outcome.refund.id.startswith("re_pending_")
        assert outcome.refund.status == "pending"
        assert outcome.refund.error

        factory = make_session_factory(db_engine)
        async with factory() as other:
            stored = await BookingRepository(other).get_by_id(booking.id)
            entries = await AuditEntryRepository(other).list_for_booking(booking.id)
        assert stored.payment_status == PaymentStatus.REFUND_PENDING.value
        assert stored.net_application_fee == Decimal("17.68")
        assert entries[0].processor_reference == outcome.refund.id
        assert entries[0].status == "failed"
        assert entries[0].error_message

    async def test_failed_attempt_can_be_retried(self, orchestrator, make_booking, settled_payment, simulator):
        simulator.config.scenario = SimulatorScenario.REFUND_FAILURE
        booking = await make_booking()
        with pytest.raises(ProcessorError):
            await orchestrator.execute(_command(booking))

        simulator.config.scenario = SimulatorScenario.SUCCESS
        outcome = await orchestrator.execute(_command(booking))

        assert not outcome.duplicate
        assert outcome.payment_status == PaymentStatus.REFUNDED.value
        keys = [call.params["idempotency_key"] for call in simulator.calls_to("create_refund")]
        assert keys[0] != keys[1]

    async def test_failed_refund_status(self, db_session, make_booking, settings):
        booking = await make_booking()
        ledger = MagicMock()
        ledger.fetch_settlement.return_value = _settlement()
        ledger.create_refund.return_value = Refund(
            id="re_1", amount_minor=11426, status="failed", error="charge_for_pending_refund_disputed"
        )
        orchestrator = RefundOrchestrator(db_session, ledger_client=ledger, settings=settings)

        with pytest.raises(ProcessorError) as exc_info:
            await orchestrator.execute(_command(booking))

        assert "charge_for_pending_refund_disputed" in str(exc_info.value)
        assert booking.payment_status == PaymentStatus.REFUND_PENDING.value

    async def test_payment_missing_at_processor(self, orchestrator, make_booking):
        booking = await make_booking(payment_reference_id="pi_unknown")

        with pytest.raises(ProcessorError) as exc_info:
            await orchestrator.execute(_command(booking))

        assert exc_info.value.outcome.refund.id.startswith("re_pending_")
        # Estimated without ledger data
        assert booking.net_application_fee == Decimal("17.68")

    async def test_ledger_call_timeout(self, db_session, make_booking, settled_payment, simulator):
        simulator.config.delay_ms = 300
        settings = SettlementSettings(refunds=RefundSettings(call_timeout_seconds=0.05))
        orchestrator = RefundOrchestrator(db_session, ledger_client=simulator, settings=settings)
        booking = await make_booking()

        with pytest.raises(ProcessorError) as exc_info:
            await orchestrator.execute(_command(booking))

        assert exc_info.value.reason == ProcessorErrorReason.TIMEOUT
        assert booking.payment_status == PaymentStatus.REFUND_PENDING.value

    async def test_late_refund_is_not_repeated_on_retry(self, db_session, make_booking, impatient_settings):
        ledger = _late_ledger("create_refund")
        orchestrator = RefundOrchestrator(db_session, ledger_client=ledger, settings=impatient_settings)
        booking = await make_booking()
        command = _command(booking, RefundType.PARTIAL, amount_minor=2000)

        with pytest.raises(ProcessorError) as exc_info:
            await orchestrator.execute(command)
        assert exc_info.value.reason == ProcessorErrorReason.TIMEOUT

        outcome = await orchestrator.execute(command)

        keys = [call.params["idempotency_key"] for call in ledger.calls_to("create_refund")]
        assert keys == [f"refund:{booking.id}:partial:2000:0"] * 2
        assert ledger.get_payment("pi_example").refunded_minor == 2000
        assert outcome.refund.succeeded
        assert outcome.payment_status == PaymentStatus.PARTIALLY_REFUNDED.value
        entries = await _audit(db_session, booking.id, AuditAction.REFUND.value)
        assert sorted(entry.status for entry in entries) == ["succeeded", "unconfirmed"]

    async def test_rejection_keeps_earlier_refund_status(self, db_session, orchestrator, make_booking, settled_payment):
        booking = await make_booking()
        await orchestrator.execute(_command(booking))

        with pytest.raises(ProcessorError) as exc_info:
            await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=500))

        assert "exceeds refundable" in str(exc_info.value)
        assert exc_info.value.outcome.payment_status == PaymentStatus.REFUNDED.value
        assert booking.payment_status == PaymentStatus.REFUNDED.value
        reconcilable = await BookingRepository(db_session).list_reconcilable()
        assert [b.id for b in reconcilable] == [booking.id]

    async def test_refund_pending_booking_is_still_reconciled(
        self, db_session, orchestrator, make_booking, settled_payment, simulator
    ):
        simulator.config.scenario = SimulatorScenario.REFUND_FAILURE
        booking = await make_booking()

        with pytest.raises(ProcessorError):
            await orchestrator.execute(_command(booking))

        assert booking.payment_status == PaymentStatus.REFUND_PENDING.value
        reconcilable = await BookingRepository(db_session).list_reconcilable()
        assert [b.id for b in reconcilable] == [booking.id]

    async def test_pending_refund_keeps_partially_refunded_status(self, orchestrator, make_booking, settled_payment, simulator):
        booking = await make_booking()
        await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=1000))

        simulator.config.scenario = SimulatorScenario.REFUND_PENDING
        outcome = await orchestrator.execute(_command(booking, RefundType.PARTIAL, amount_minor=2000))

        assert outcome.refund.status == "pending"
        assert outcome.payment_status == PaymentStatus.PARTIALLY_REFUNDED.value


class TestPartnerReversal:
    """Partner reversal failures never undo the customer refund."""

    async def test_insufficient_funds(self, orchestrator, make_booking, settled_payment, simulator, db_session):
        simulator.config.scenario = SimulatorScenario.INSUFFICIENT_FUNDS
        booking = await make_booking()

        outcome = await orchestrator.execute(
            _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000)
        )

        assert outcome.refund.succeeded
        assert outcome.requires_manual_processing
        assert outcome.payment_status == PaymentStatus.PARTIALLY_REFUNDED.value
        entry = (await _audit(db_session, booking.id, AuditAction.TRANSFER_REVERSAL.value))[0]
        assert entry.status == "requires_manual_processing"
        assert entry.amount_minor == 1000
        assert "insufficient funds" in entry.error_message

    async def test_unsettled_transfer(self, orchestrator, make_booking, simulator):
        simulator.add_payment(
            amount_minor=11426, application_fee_amount_minor=1826,
            destination="acct_partner", settled=False, payment_id="pi_example",
        )
        booking = await make_booking()

        outcome = await orchestrator.execute(
            _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000)
        )

        assert outcome.refund.succeeded
        assert outcome.partner_reversal.status == ReversalStatus.REQUIRES_MANUAL_PROCESSING
        assert "Transfer not found" in outcome.partner_reversal.error_message
        assert simulator.calls_to("reverse_transfer") == []

    async def test_retry(self, orchestrator, make_booking, settled_payment, simulator, db_session):
        simulator.config.scenario = SimulatorScenario.INSUFFICIENT_FUNDS
        booking = await make_booking()
        await orchestrator.execute(
            _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000)
        )

        simulator.config.scenario = SimulatorScenario.SUCCESS
        result = await orchestrator.retry_transfer_reversal(booking.id, actor="ops@example.com")

        assert result.status == ReversalStatus.SUCCEEDED
        assert result.amount_minor == 1000
        assert result.transfer_id == settled_payment.transfer_id
        entries = await _audit(db_session, booking.id, AuditAction.TRANSFER_REVERSAL.value)
        assert len(entries) == 2

        with pytest.raises(ValidationError):
            await orchestrator.retry_transfer_reversal(booking.id)

    async def test_late_reversal_is_retried_under_the_same_key(self, db_session, make_booking, impatient_settings):
        ledger = _late_ledger("reverse_transfer")
        orchestrator = RefundOrchestrator(db_session, ledger_client=ledger, settings=impatient_settings)
        booking = await make_booking()

        outcome = await orchestrator.execute(
            _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000)
        )

        assert outcome.refund.succeeded
        assert outcome.partner_reversal.status == ReversalStatus.UNCONFIRMED
        assert outcome.requires_manual_processing

        result = await orchestrator.retry_transfer_reversal(booking.id)

        keys = [call.params["idempotency_key"] for call in ledger.calls_to("reverse_transfer")]
        assert len(keys) == 2
        assert keys[0] == keys[1]
        assert result.status == ReversalStatus.SUCCEEDED
        assert ledger.get_payment("pi_example").reversed_minor == 1000

    async def test_retry_after_rejection_uses_a_new_key(self, orchestrator, make_booking, settled_payment, simulator):
        simulator.config.scenario = SimulatorScenario.INSUFFICIENT_FUNDS
        booking = await make_booking()
        await orchestrator.execute(
            _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000)
        )

        simulator.config.scenario = SimulatorScenario.SUCCESS
        await orchestrator.retry_transfer_reversal(booking.id)

        keys = [call.params["idempotency_key"] for call in simulator.calls_to("reverse_transfer")]
        assert keys[0] != keys[1]

    async def test_retry_without_failed_reversal(self, orchestrator, make_booking):
        booking = await make_booking()
        with pytest.raises(ValidationError):
            await orchestrator.retry_transfer_reversal(booking.id)

    async def test_duplicate_split_reports_reversal(self, orchestrator, make_booking, settled_payment, simulator):
        simulator.config.scenario = SimulatorScenario.INSUFFICIENT_FUNDS
        booking = await make_booking()
        command = _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=1000)
        await orchestrator.execute(command)

        again = await orchestrator.execute(command)

        assert again.duplicate
        assert again.requires_manual_processing


class TestValidation:
    """Commands rejected before any processor call."""

    async def test_missing_payment_reference(self, orchestrator, make_booking, simulator):
        booking = await make_booking()
        with pytest.raises(ValidationError):
            await orchestrator.execute(RefundCommand(booking_id=booking.id))
        assert simulator.calls == []

    async def test_missing_booking_id(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.execute(RefundCommand(payment_reference_id="pi_example"))

    async def test_partial_without_amount(self, orchestrator, make_booking):
        booking = await make_booking()
        with pytest.raises(ValidationError, match="amount_minor"):
            await orchestrator.execute(_command(booking, RefundType.PARTIAL))

    @pytest.mark.parametrize("partner_amount", [None, 0])
    async def test_split_without_partner_amount(self, orchestrator, make_booking, partner_amount):
        booking = await make_booking()
        with pytest.raises(ValidationError, match="partner_refund_amount_minor"):
            await orchestrator.execute(
                _command(booking, RefundType.SPLIT_50_50, amount_minor=2000, partner_refund_amount_minor=partner_amount)
            )

    async def test_reference_mismatch(self, orchestrator, make_booking):
        booking = await make_booking()
        command = RefundCommand(booking_id=booking.id, payment_reference_id="pi_other")
        with pytest.raises(ValidationError):
            await orchestrator.execute(command)

    async def test_unknown_booking(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.execute(RefundCommand(booking_id="missing", payment_reference_id="pi_example"))


class TestConcurrency:
    """Concurrent changes to the booking."""

    async def test_stale_booking_is_rejected_before_refunding(
        self, db_engine, db_session, orchestrator, make_booking, settled_payment, simulator
    ):
        booking = await make_booking()
        await db_session.commit()

        factory = make_session_factory(db_engine)
        async with factory() as other:
            repo = BookingRepository(other)
            copy = await repo.get_by_id(booking.id)
            await repo.update_fields(copy, {"payment_status": PaymentStatus.REFUND_PENDING.value})
            await other.commit()

        with pytest.raises(ConcurrencyError):
            await orchestrator.execute(_command(booking))
        assert simulator.calls_to("create_refund") == []
