"""API endpoints for refunds."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import verify_api_key, limiter, WRITE_RATE_LIMIT
from ..config import SettlementSettings
from ..database import get_db
from ..dependencies import get_actor, get_ledger, get_settings
from ..errors import ConcurrencyError, NotFoundError, ProcessorError, ValidationError
from ..ledger import LedgerClientBase, RefundReason
from .models import RefundCommand, RefundOutcome, RefundType
from .orchestrator import RefundOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/refunds", tags=["refunds"])


class RefundRequestBody(BaseModel):
    """Request body for refunding a booking."""
    booking_id: str = Field(..., description="Booking to refund")
    payment_reference_id: str = Field(..., description="Processor payment id of the booking")
    refund_type: RefundType = Field(default=RefundType.FULL)
    amount_minor: Optional[int] = Field(default=None, gt=0, description="Customer refund in minor units")
    reason: RefundReason = Field(default=RefundReason.REQUESTED_BY_CUSTOMER)
    partner_refund_amount_minor: Optional[int] = Field(default=None, ge=0)


def _outcome_body(outcome: RefundOutcome) -> dict:
    body = outcome.model_dump(mode="json")
    body["requires_manual_processing"] = outcome.requires_manual_processing
    return body


@router.post("", status_code=201)
@limiter.limit(WRITE_RATE_LIMIT)
async def create_refund(
    request: Request,
    body: RefundRequestBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
    ledger: LedgerClientBase = Depends(get_ledger),
    settings: SettlementSettings = Depends(get_settings),
    actor: str = Depends(get_actor),
):
    """
    Refund a booking.

    Returns 201 with the recorded outcome, or 200 when an equivalent refund
    was already accepted. A processor failure returns 502 with the pending
    placeholder that was recorded for the attempt.
    """
    command = RefundCommand(**body.model_dump(), actor=actor)
    orchestrator = RefundOrchestrator(db, ledger_client=ledger, settings=settings)

    try:
        outcome = await orchestrator.execute(command)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrencyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ProcessorError as e:
        detail = {"message": str(e), "reason": e.reason.value}
        if e.outcome is not None:
            detail["outcome"] = _outcome_body(e.outcome)
        raise HTTPException(status_code=502, detail=detail)

    if outcome.duplicate:
        return JSONResponse(status_code=200, content=_outcome_body(outcome))
    return _outcome_body(outcome)


@router.post("/{booking_id}/transfer-reversal/retry")
@limiter.limit(WRITE_RATE_LIMIT)
async def retry_transfer_reversal(
    request: Request,
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
    ledger: LedgerClientBase = Depends(get_ledger),
    settings: SettlementSettings = Depends(get_settings),
    actor: str = Depends(get_actor),
):
    """Re-attempt a partner transfer reversal that requires manual processing."""
    orchestrator = RefundOrchestrator(db, ledger_client=ledger, settings=settings)
    try:
        result = await orchestrator.retry_transfer_reversal(booking_id, actor=actor)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ProcessorError as e:
        raise HTTPException(status_code=502, detail={"message": str(e), "reason": e.reason.value})

    logger.info(f"Transfer reversal retry for booking {booking_id} by {actor}: {result.status.value}")
    body = result.model_dump(mode="json")
    body["requires_manual_processing"] = result.requires_manual_processing
    return body
