"""API endpoints for reconciliation operations."""

import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import verify_api_key, limiter, WRITE_RATE_LIMIT
from ..config import SettlementSettings
from ..database import get_db
from ..dependencies import get_actor, get_ledger, get_settings
from ..ledger import LedgerClientBase
from .models import ReconciliationRequest
from .report import ReportGenerator
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


class ReconciliationRequestBody(BaseModel):
    """Request body for starting a reconciliation job."""
    limit: Optional[int] = Field(default=None, ge=1, description="Maximum bookings to process")
    booking_ids: Optional[List[str]] = Field(default=None, description="Restrict the run to these bookings")
    dry_run: bool = Field(default=False, description="Compute outcomes without writing")


class ReconciliationSummaryResponse(BaseModel):
    """Summary response for reconciliation job."""
    id: str
    status: str
    provider: str
    dry_run: bool = False
    fee_schedule_version: Optional[str] = None
    processor_fee_preset: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    total_bookings: int = 0
    total_updated: int = 0
    total_unchanged: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    success_rate: str = "N/A"
    error_message: Optional[str] = None


async def _run(
    body: ReconciliationRequestBody,
    db: AsyncSession,
    ledger: LedgerClientBase,
    settings: SettlementSettings,
    actor: str,
):
    service = ReconciliationService(db, ledger_client=ledger, settings=settings)
    request = ReconciliationRequest(
        limit=body.limit,
        booking_ids=body.booking_ids,
        dry_run=body.dry_run,
        actor=actor,
    )
    logger.info(f"Starting reconciliation job requested by {actor}")
    return await service.run_reconciliation(request)


@router.post("/jobs", response_model=ReconciliationSummaryResponse)
@limiter.limit(WRITE_RATE_LIMIT)
async def create_reconciliation_job(
    request: Request,
    body: ReconciliationRequestBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
    ledger: LedgerClientBase = Depends(get_ledger),
    settings: SettlementSettings = Depends(get_settings),
    actor: str = Depends(get_actor),
):
    """
    Start a new reconciliation job.

    Corrects stored net application fees and platform earnings for eligible
    bookings and returns the batch statistics.
    """
    report = await _run(body, db, ledger, settings, actor)
    summary = report.to_summary_dict()
    stats = summary["statistics"]

    return ReconciliationSummaryResponse(
        id=report.id,
        status=summary["status"],
        provider=report.provider,
        dry_run=report.dry_run,
        fee_schedule_version=report.fee_schedule_version,
        processor_fee_preset=report.processor_fee_preset,
        created_at=report.created_at,
        completed_at=report.completed_at,
        total_bookings=stats["total_bookings"],
        total_updated=stats["total_updated"],
        total_unchanged=stats["total_unchanged"],
        total_skipped=stats["total_skipped"],
        total_failed=stats["total_failed"],
        success_rate=stats["success_rate"],
        error_message=summary.get("error_message"),
    )


@router.post("/jobs/report")
@limiter.limit(WRITE_RATE_LIMIT)
async def create_reconciliation_report(
    request: Request,
    body: ReconciliationRequestBody,
    include_details: bool = Query(default=True, description="Include per-booking outcomes"),
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
    ledger: LedgerClientBase = Depends(get_ledger),
    settings: SettlementSettings = Depends(get_settings),
    actor: str = Depends(get_actor),
):
    """
    Run reconciliation and return the full report.

    JSON responses carry every booking outcome (stored vs computed values);
    other formats are returned as plain text.
    """
    if format not in ReportGenerator.FORMATS:
        raise HTTPException(
            status_code=400,
            detail="format must be one of: json, csv, text, detailed_text"
        )

    report = await _run(body, db, ledger, settings, actor)

    if format == "json":
        return report.to_full_dict() if include_details else report.to_summary_dict()

    output = ReportGenerator(report).render(format=format, include_details=include_details)
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}
