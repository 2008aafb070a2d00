"""Report generation for reconciliation results."""

import json
import csv
import io

from .models import ReconciliationReport, OutcomeStatus

CSV_COLUMNS = [
    "booking_id",
    "payment_reference_id",
    "status",
    "reason",
    "stored_net_application_fee",
    "computed_net_application_fee",
    "stored_platform_earnings",
    "computed_platform_earnings",
    "unit_corruption_detected",
    "error_message",
]


def _fmt(value) -> str:
    return "" if value is None else str(value)


class ReportGenerator:
    """Generator for reconciliation reports in various formats."""

    FORMATS = ("json", "csv", "text", "detailed_text")

    def __init__(self, report: ReconciliationReport):
        """Initialize the report generator.

        Args:
            report: The reconciliation report to generate output from.
        """
        self.report = report

    def render(self, format: str = "json", include_details: bool = True) -> str:
        """Render the report in one of :attr:`FORMATS`.

        Raises:
            ValueError: If the format is not supported.
        """
        if format == "json":
            return self.to_json(include_details=include_details)
        elif format == "csv":
            return self.to_csv()
        elif format == "text":
            return self.to_summary_text()
        elif format == "detailed_text":
            return self.to_detailed_text()
        raise ValueError(f"Unsupported report format: {format}")

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include every booking outcome. If False, only summary.
            indent: JSON indentation level.
        """
        if include_details:
            data = self.report.to_full_dict()
        else:
            data = self.report.to_summary_dict()
        return json.dumps(data, indent=indent, default=str)

    def to_csv(self, status: str = "all") -> str:
        """Generate CSV of booking outcomes.

        Args:
            status: Outcome status to include ('updated', 'unchanged',
                    'skipped', 'failed', or 'all').
        """
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(CSV_COLUMNS)

        for outcome in self.report.outcomes:
            if status != "all" and outcome.status.value != status:
                continue
            writer.writerow([
                outcome.booking_id,
                _fmt(outcome.payment_reference_id),
                outcome.status.value,
                outcome.reason.value if outcome.reason else "",
                _fmt(outcome.stored_net_application_fee),
                _fmt(outcome.computed_net_application_fee),
                _fmt(outcome.stored_platform_earnings),
                _fmt(outcome.computed_platform_earnings),
                "yes" if outcome.unit_corruption_detected else "no",
                _fmt(outcome.error_message),
            ])

        return output.getvalue()

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the report."""
        summary = self.report.to_summary_dict()
        stats = summary["statistics"]

        lines = [
            "=" * 60,
            "FEE RECONCILIATION REPORT SUMMARY",
            "=" * 60,
            f"Report ID: {summary['id']}",
            f"Status: {summary['status']}",
            f"Provider: {summary['provider']}",
            f"Dry Run: {'yes' if summary['dry_run'] else 'no'}",
            f"Fee Schedule: {summary['fee_schedule_version'] or 'N/A'} "
            f"({summary['processor_fee_preset'] or 'N/A'})",
            "",
            "Statistics:",
            f"  Bookings Processed: {stats['total_bookings']}",
            f"  Updated: {stats['total_updated']}",
            f"  Unchanged: {stats['total_unchanged']}",
            f"  Skipped: {stats['total_skipped']}",
            f"  Failed: {stats['total_failed']}",
            f"  Success Rate: {stats['success_rate']}",
            "",
            f"Created At: {summary['created_at']}",
            f"Completed At: {summary['completed_at'] or 'N/A'}",
        ]

        if summary.get("error_message"):
            lines.extend([
                "",
                "Error:",
                f"  {summary['error_message']}",
            ])

        lines.append("=" * 60)

        return "\n".join(lines)

    def to_detailed_text(self) -> str:
        """Generate a detailed text report: summary, then updated, failed and skipped bookings."""
        lines = [self.to_summary_text(), ""]

        updated = self.report.outcomes_with_status(OutcomeStatus.UPDATED)
        if updated:
            lines.extend([
                "UPDATED BOOKINGS",
                "-" * 40,
            ])
            for o in updated:
                lines.append(f"\nBooking: {o.booking_id} | Payment: {o.payment_reference_id}")
                lines.append(f"  Source: {o.reason.value if o.reason else 'N/A'}")
                for field_name, value in o.changes.items():
                    stored = getattr(o, f"stored_{field_name}")
                    lines.append(f"  {field_name}: {_fmt(stored) or 'null'} -> {value}")
                if o.unit_corruption_detected:
                    lines.append("  Stored value looked like minor units and was replaced")
            lines.append("")

        failed = self.report.outcomes_with_status(OutcomeStatus.FAILED)
        if failed:
            lines.extend([
                "FAILED BOOKINGS",
                "-" * 40,
            ])
            for o in failed:
                lines.append(
                    f"  Booking: {o.booking_id}, "
                    f"Reason: {o.reason.value if o.reason else 'unknown'}, "
                    f"Error: {o.error_message or 'N/A'}"
                )
            lines.append("")

        skipped = self.report.outcomes_with_status(OutcomeStatus.SKIPPED)
        if skipped:
            lines.extend([
                "SKIPPED BOOKINGS",
                "-" * 40,
                f"Total: {len(skipped)} bookings not yet settled",
                "",
            ])

        return "\n".join(lines)
