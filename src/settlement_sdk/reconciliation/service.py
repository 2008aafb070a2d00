"""Service layer for reconciliation operations."""

import uuid
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import SettlementSettings
from ..database import (
    AuditAction,
    AuditEntryRepository,
    Booking,
    BookingRepository,
)
from ..errors import (
    ConcurrencyError,
    NotFoundError,
    ProcessorError,
    ProcessorErrorReason,
    SettlementError,
)
from ..ledger import LedgerClientBase, get_ledger_client, run_ledger_call
from .models import (
    BookingOutcome,
    OutcomeReason,
    OutcomeStatus,
    ReconciliationReport,
    ReconciliationRequest,
    ReconciliationStatus,
)
from .reconciler import Reconciler
from .report import ReportGenerator

logger = logging.getLogger(__name__)

_PROCESSOR_REASONS = {
    ProcessorErrorReason.RATE_LIMIT: OutcomeReason.RATE_LIMIT,
    ProcessorErrorReason.AUTH: OutcomeReason.AUTH,
    ProcessorErrorReason.TIMEOUT: OutcomeReason.TIMEOUT,
}


class ReconciliationService:
    """Runs reconciliation batches: fetch ledger truth, decide, write, audit."""

    def __init__(
        self,
        session: AsyncSession,
        ledger_client: Optional[LedgerClientBase] = None,
        settings: Optional[SettlementSettings] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            session: Async database session.
            ledger_client: Optional ledger client. Will create default if not provided.
            settings: Optional settings. Read from the environment if not provided.
        """
        self.session = session
        self.booking_repo = BookingRepository(session)
        self.audit_repo = AuditEntryRepository(session)
        self.settings = settings or SettlementSettings.from_env()
        self.reconciler = Reconciler(self.settings.fee_schedule, self.settings.reconciler)
        self._ledger_client = ledger_client

    def _get_ledger_client(self, provider: str = "stripe") -> LedgerClientBase:
        if self._ledger_client is None:
            self._ledger_client = get_ledger_client(provider)
        return self._ledger_client

    async def reconcile_booking(
        self,
        booking: Booking,
        ledger_client: LedgerClientBase,
        dry_run: bool = False,
        actor: str = "reconciler",
    ) -> BookingOutcome:
        """Reconcile one booking. Failures become a failed outcome, never an exception."""
        try:
            settlement = await run_ledger_call(
                ledger_client.fetch_settlement,
                booking.payment_reference_id,
                timeout=self.settings.reconciler.call_timeout_seconds,
            )
        except NotFoundError as e:
            logger.warning(f"Booking {booking.id}: {e}")
            return self._failed(booking, OutcomeReason.NOT_FOUND, str(e))
        except ProcessorError as e:
            logger.error(f"Booking {booking.id}: ledger fetch failed ({e.reason.value}): {e}")
            reason = _PROCESSOR_REASONS.get(e.reason, OutcomeReason.UNKNOWN)
            return self._failed(booking, reason, str(e))

        outcome = self.reconciler.evaluate(booking, settlement)
        if outcome.status != OutcomeStatus.UPDATED or dry_run:
            return outcome

        before = booking.money_snapshot()
        try:
            await self.booking_repo.update_fields(booking, dict(outcome.changes))
        except ConcurrencyError as e:
            outcome.status = OutcomeStatus.FAILED
            outcome.reason = OutcomeReason.CONCURRENCY
            outcome.error_message = str(e)
            return outcome

        await self.audit_repo.append(
            booking_id=booking.id,
            action=AuditAction.RECONCILE.value,
            status=OutcomeStatus.UPDATED.value,
            actor=actor,
            reason=outcome.reason.value if outcome.reason else None,
            processor_reference=booking.payment_reference_id,
            before=before,
            after=booking.money_snapshot(),
            error_message="unit corruption corrected" if outcome.unit_corruption_detected else None,
        )
        logger.info(f"Booking {booking.id}: updated {', '.join(sorted(outcome.changes))}")
        return outcome

    @staticmethod
    def _failed(booking: Booking, reason: OutcomeReason, message: str) -> BookingOutcome:
        return BookingOutcome(
            booking_id=booking.id,
            payment_reference_id=booking.payment_reference_id,
            status=OutcomeStatus.FAILED,
            reason=reason,
            stored_net_application_fee=booking.net_application_fee,
            stored_platform_earnings=booking.platform_earnings,
            error_message=message,
        )

    async def run_reconciliation(
        self,
        request: Optional[ReconciliationRequest] = None,
    ) -> ReconciliationReport:
        """Execute a reconciliation job.

        Bookings are processed sequentially with a fixed pause between ledger
        calls. A failure on one booking is recorded and the batch continues.

        Args:
            request: Reconciliation request parameters.

        Returns:
            ReconciliationReport with per-booking outcomes.
        """
        request = request or ReconciliationRequest()
        report_id = str(uuid.uuid4())
        schedule = self.settings.fee_schedule

        report = ReconciliationReport(
            id=report_id,
            status=ReconciliationStatus.IN_PROGRESS,
            provider=request.provider,
            dry_run=request.dry_run,
            fee_schedule_version=schedule.version,
            processor_fee_preset=schedule.processor_preset.name,
            created_at=datetime.utcnow(),
        )

        logger.info(
            f"Starting reconciliation job {report_id} for {request.provider}"
            f"{' (dry run)' if request.dry_run else ''}"
        )

        try:
            ledger_client = self._get_ledger_client(request.provider)
            bookings = await self.booking_repo.list_reconcilable(
                limit=request.limit or self.settings.reconciler.batch_limit,
                booking_ids=request.booking_ids,
            )
            logger.info(f"Found {len(bookings)} bookings to reconcile")

            delay = self.settings.reconciler.call_delay_ms / 1000.0
            for index, booking in enumerate(bookings):
                if index > 0:
                    await asyncio.sleep(delay)
                try:
                    outcome = await self.reconcile_booking(
                        booking, ledger_client, dry_run=request.dry_run, actor=request.actor
                    )
                except SettlementError as e:
                    logger.error(f"Booking {booking.id}: {e}")
                    outcome = self._failed(booking, OutcomeReason.UNKNOWN, str(e))
                report.add_outcome(outcome)

            report.status = ReconciliationStatus.COMPLETED
            report.completed_at = datetime.utcnow()

            logger.info(
                f"Reconciliation job {report_id} completed: "
                f"{report.total_updated} updated, "
                f"{report.total_unchanged} unchanged, "
                f"{report.total_skipped} skipped, "
                f"{report.total_failed} failed"
            )

        except Exception as e:
            logger.error(f"Reconciliation job {report_id} failed: {e}")
            report.status = ReconciliationStatus.FAILED
            report.error_message = str(e)
            report.completed_at = datetime.utcnow()

        return report

    def generate_report(
        self,
        report: ReconciliationReport,
        format: str = "json",
        include_details: bool = True,
    ) -> str:
        """Generate a formatted report ('json', 'csv', 'text', 'detailed_text')."""
        return ReportGenerator(report).render(format=format, include_details=include_details)
