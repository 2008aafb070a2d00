import asyncio
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Callable, TypeVar

from ..errors import ProcessorError, ProcessorErrorReason
from .models import Settlement, Refund, TransferReversal

T = TypeVar("T")


class LedgerClientBase(ABC):
    """
    Minimal ledger interface. Implementations read settlements and perform
    refunds and transfer reversals against the payment processor.

    Failures are raised as :mod:`settlement_sdk.errors` exceptions; processor
    SDK exceptions never escape an implementation.
    """

    @abstractmethod
    def fetch_settlement(self, payment_reference_id: str) -> Settlement:
        """
        Fetch a payment expanded with its charge and balance transaction.
        Raises NotFoundError or ProcessorError.
        """
        raise NotImplementedError

    @abstractmethod
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
        """
        Refund a payment. ``amount_minor=None`` refunds the remaining amount.
        Callers must inspect the returned status, not only the absence of errors.
        """
        raise NotImplementedError

    @abstractmethod
    def reverse_transfer(
        self,
        transfer_id: str,
        amount_minor: int,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferReversal:
        """
        Claw back part of a transfer to a connected account.
        Raises ProcessorError with reason transfer_not_found or insufficient_funds.
        """
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True}


async def run_ledger_call(func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """
    Run a blocking ledger call in a worker thread, bounded by ``timeout`` seconds.
    Raises ProcessorError(reason=timeout) when the call does not finish in time.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as e:
        name = getattr(func, "__name__", "ledger call")
        raise ProcessorError(
            f"{name} timed out after {timeout:g}s", ProcessorErrorReason.TIMEOUT
        ) from e
