"""Stripe-backed ledger client."""

import os
import logging
from typing import Optional, Dict, Any

import stripe

from ..errors import NotFoundError, ProcessorError, ProcessorErrorReason
from .base import LedgerClientBase
from .models import Settlement, Refund, TransferReversal

logger = logging.getLogger(__name__)

SETTLEMENT_EXPAND = [
    "latest_charge",
    "latest_charge.balance_transaction",
]


class StripeLedgerClient(LedgerClientBase):
    """Ledger client using stripe-python PaymentIntents, Refunds and Transfers."""

    # Fields that should not be logged or kept in raw payloads
    SENSITIVE_FIELDS = frozenset([
        'client_secret',
        'payment_method',
        'source',
        'customer',
        'payment_method_details',
        'card',
        'bank_account',
        'billing_details',
    ])

    def __init__(self, api_key: Optional[str] = None):
        """Initialize the Stripe ledger client.

        Args:
            api_key: Stripe API key. Falls back to STRIPE_API_KEY env var.

        Raises:
            ValueError: If no API key is provided or found.
        """
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )

    def _configure_stripe(self) -> None:
        """Configure the Stripe SDK with the API key."""
        stripe.api_key = self._api_key

    def _sanitize_response(self, raw_response: Dict[str, Any]) -> Dict[str, Any]:
        """Remove sensitive fields from a raw response, recursively."""
        if not raw_response:
            return {}
        sanitized = {}
        for key, value in raw_response.items():
            if key in self.SENSITIVE_FIELDS:
                continue
            if isinstance(value, dict):
                sanitized[key] = self._sanitize_response(value)
            else:
                sanitized[key] = value
        return sanitized

    @staticmethod
    def _to_dict(obj: Any) -> Dict[str, Any]:
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return dict(obj)

    def _map_error(self, error: "stripe.StripeError", context: str) -> ProcessorError:
        """Translate a Stripe exception into a ProcessorError."""
        code = getattr(error, "code", None)
        message = f"{context}: {getattr(error, 'user_message', None) or error}"

        if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            logger.error(f"Stripe authentication failed during {context}")
            return ProcessorError(message, ProcessorErrorReason.AUTH)
        if isinstance(error, stripe.RateLimitError):
            logger.warning(f"Stripe rate limit hit during {context}")
            return ProcessorError(message, ProcessorErrorReason.RATE_LIMIT)
        if isinstance(error, stripe.APIConnectionError):
            logger.error(f"Failed to connect to Stripe API during {context}")
            return ProcessorError(message, ProcessorErrorReason.TIMEOUT)
        if code in ("insufficient_funds", "balance_insufficient"):
            return ProcessorError(message, ProcessorErrorReason.INSUFFICIENT_FUNDS)
        if isinstance(error, (stripe.InvalidRequestError, stripe.CardError)):
            return ProcessorError(message, ProcessorErrorReason.BUSINESS_RULE)

        logger.error(f"Stripe API error during {context}: {type(error).__name__}")
        return ProcessorError(message, ProcessorErrorReason.UNKNOWN)

    def fetch_settlement(self, payment_reference_id: str) -> Settlement:
        """Retrieve a PaymentIntent with its latest charge and balance transaction expanded.

        Raises:
            NotFoundError: If Stripe has no such PaymentIntent.
            ProcessorError: On any other Stripe failure.
        """
        self._configure_stripe()
        try:
            pi = stripe.PaymentIntent.retrieve(payment_reference_id, expand=SETTLEMENT_EXPAND)
        except stripe.InvalidRequestError as e:
            if "No such payment_intent" in str(e):
                logger.warning(f"PaymentIntent {payment_reference_id} not found")
                raise NotFoundError(f"Payment {payment_reference_id} not found") from e
            raise self._map_error(e, "fetch_settlement") from e
        except stripe.StripeError as e:
            raise self._map_error(e, "fetch_settlement") from e

        payload = self._sanitize_response(self._to_dict(pi))
        return Settlement.from_stripe(payload)

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
        """Create a refund against a PaymentIntent or charge.

        ``reverse_transfer`` and ``refund_application_fee`` are only sent when
        set, since Stripe rejects them on charges without a transfer.
        """
        self._configure_stripe()
        params: Dict[str, Any] = {"metadata": metadata or {}}
        if charge_ref.startswith("ch_"):
            params["charge"] = charge_ref
        else:
            params["payment_intent"] = charge_ref
        if amount_minor is not None:
            params["amount"] = amount_minor
        if reason:
            params["reason"] = reason
        if reverse_transfer:
            params["reverse_transfer"] = True
        if refund_application_fee:
            params["refund_application_fee"] = True
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            raise self._map_error(e, "create_refund") from e

        logger.info(f"Created Stripe refund {refund.id} with status {refund.status}")
        return Refund.from_stripe(self._to_dict(refund))

    def reverse_transfer(
        self,
        transfer_id: str,
        amount_minor: int,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferReversal:
        """Create a partial reversal of a transfer to a connected account."""
        self._configure_stripe()
        params: Dict[str, Any] = {"amount": amount_minor, "metadata": metadata or {}}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        try:
            reversal = stripe.Transfer.create_reversal(transfer_id, **params)
        except stripe.InvalidRequestError as e:
            if "No such transfer" in str(e):
                logger.warning(f"Transfer {transfer_id} not found")
                raise ProcessorError(
                    f"Transfer {transfer_id} not found", ProcessorErrorReason.TRANSFER_NOT_FOUND
                ) from e
            raise self._map_error(e, "reverse_transfer") from e
        except stripe.StripeError as e:
            raise self._map_error(e, "reverse_transfer") from e

        logger.info(f"Reversed {amount_minor} of transfer {transfer_id}")
        return TransferReversal.from_stripe(self._to_dict(reversal))

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": "stripe", "configured": bool(self._api_key)}


def get_ledger_client(provider: str = "stripe", api_key: Optional[str] = None) -> LedgerClientBase:
    """Factory function to get the appropriate ledger client.

    Args:
        provider: Ledger provider name (``stripe`` or ``simulator``).
        api_key: Optional API key for the provider.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = provider.lower()
    if provider == "stripe":
        return StripeLedgerClient(api_key=api_key)
    if provider == "simulator":
        from .simulator import SimulatorLedgerClient
        return SimulatorLedgerClient()
    raise ValueError(f"Unsupported ledger provider: {provider}")
