"""Tests for the ledger read models."""

from settlement_sdk.ledger import (
    BalanceTransaction,
    PaymentRecord,
    Refund,
    Settlement,
    TransferReversal,
)


def _payment_intent(**overrides):
    payload = {
        "id": "pi_123",
        "amount": 11426,
        "currency": "usd",
        "status": "succeeded",
        "application_fee_amount": 1826,
        "on_behalf_of": None,
        "transfer_data": {"destination": "acct_partner"},
        "metadata": {"booking_id": "bk_1"},
        "latest_charge": {
            "id": "ch_123",
            "amount": 11426,
            "amount_captured": 11426,
            "transfer": "tr_123",
            "balance_transaction": {
                "id": "txn_123",
                "amount": 11426,
                "fee": 361,
                "net": 1768,
                "currency": "usd",
                "fee_details": [
                    {"type": "stripe_fee", "amount": 361, "description": "Stripe processing fees"},
                ],
            },
        },
    }
    payload.update(overrides)
    return payload


class TestSettlementFromStripe:
    """Mapping expanded PaymentIntent payloads."""

    def test_expanded_payload(self):
        settlement = Settlement.from_stripe(_payment_intent())

        assert settlement.id == "pi_123"
        assert settlement.currency == "USD"
        assert settlement.application_fee_amount_minor == 1826
        assert settlement.transfer_destination == "acct_partner"
        assert settlement.is_destination_charge
        assert settlement.charge_id == "ch_123"
        assert settlement.transfer_id == "tr_123"
        assert settlement.is_settled
        assert settlement.balance_transaction.net_minor == 1768
        assert settlement.balance_transaction.fee_details[0].amount_minor == 361
        assert settlement.charge.fee_minor == 361
        assert settlement.metadata == {"booking_id": "bk_1"}

    def test_on_behalf_of_is_destination_charge(self):
        settlement = Settlement.from_stripe(
            _payment_intent(transfer_data=None, on_behalf_of="acct_partner")
        )
        assert settlement.is_destination_charge
        assert settlement.transfer_destination is None

    def test_direct_charge(self):
        settlement = Settlement.from_stripe(_payment_intent(transfer_data=None))
        assert not settlement.is_destination_charge

    def test_unexpanded_balance_transaction(self):
        payload = _payment_intent()
        payload["latest_charge"]["balance_transaction"] = "txn_123"

        settlement = Settlement.from_stripe(payload)

        assert settlement.charge_id == "ch_123"
        assert settlement.balance_transaction is None
        assert not settlement.is_settled

    def test_charge_as_id_only(self):
        settlement = Settlement.from_stripe(_payment_intent(latest_charge="ch_999"))
        assert settlement.charge_id == "ch_999"
        assert settlement.transfer_id is None

    def test_no_charge(self):
        settlement = Settlement.from_stripe(_payment_intent(latest_charge=None))
        assert settlement.charge is None
        assert settlement.transfer_id is None
        assert not settlement.is_settled


class TestOtherModels:
    """Refunds, reversals and balance transactions."""

    def test_refund_from_stripe(self):
        refund = Refund.from_stripe({
            "id": "re_1",
            "amount": 2000,
            "status": "succeeded",
            "reason": "requested_by_customer",
            "metadata": {"refund_type": "split_50_50"},
            "created": 1700000000,
        })

        assert refund.succeeded
        assert refund.amount_minor == 2000
        assert refund.metadata["refund_type"] == "split_50_50"
        assert refund.created_at.year == 2023

    def test_failed_refund_keeps_failure_reason(self):
        refund = Refund.from_stripe({"id": "re_2", "status": "failed", "failure_reason": "expired_or_canceled_card"})
        assert not refund.succeeded
        assert refund.error == "expired_or_canceled_card"

    def test_transfer_reversal_from_stripe(self):
        reversal = TransferReversal.from_stripe({"id": "trr_1", "transfer": "tr_123", "amount": 1000})
        assert reversal.transfer_id == "tr_123"
        assert reversal.amount_minor == 1000
        assert reversal.status == "succeeded"

    def test_balance_transaction_without_net(self):
        bt = BalanceTransaction.from_stripe({"id": "txn_1", "amount": 500})
        assert bt.net_minor is None
        assert bt.fee_minor == 0

    def test_payment_record_destination(self):
        record = PaymentRecord(id="pi_1", amount_minor=100, currency="USD", status="succeeded")
        assert not record.is_destination_charge
