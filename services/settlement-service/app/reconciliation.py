"""
Period reconciliation: revenue vs. payouts vs. the commission the catalog implies.

    platform_commission = total_revenue - total_payouts
    expected_commission = sum(total_amount * commission_percentage / 100)
    discrepancy_amount  = platform_commission - expected_commission
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select, update

from . import events
from .errors import DiscrepancyDetected, InvalidTransition, NotFound, ValidationError
from .models import Booking, BookingStatus, Payout, PayoutStatus, ReconciliationReport, Service, utcnow
from .payouts import ZERO, q

logger = logging.getLogger(__name__)

BALANCED = "balanced"
DISCREPANCY = "discrepancy"
RECONCILED = "reconciled"


@dataclass
class BookingDiscrepancy:
    booking_id: str
    provider_id: str | None
    revenue: Decimal
    payouts: Decimal
    observed_commission: Decimal
    expected_commission: Decimal

    @property
    def difference(self) -> Decimal:
        return q(self.observed_commission - self.expected_commission)


@dataclass
class ReconciliationResult:
    report: ReconciliationReport
    details: list[BookingDiscrepancy] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return self.report.status == DISCREPANCY


def _day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    lo = datetime.combine(start, time.min, tzinfo=timezone.utc)
    hi = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return lo, hi


class ReconciliationReporter:
    def __init__(self, session_factory, emitter: events.EventEmitter, settings, clock=utcnow):
        self.session_factory = session_factory
        self.emitter = emitter
        self.tolerance = settings.reconciliation_tolerance
        self.clock = clock

    async def reconcile(self, period_start: date, period_end: date) -> ReconciliationResult:
        now = self.clock()
        if period_start > period_end:
            raise ValidationError("period_start must be on or before period_end")
        if period_end > now.date():
            raise ValidationError("Only closed periods can be reconciled")

        lo, hi = _day_bounds(period_start, period_end)

        async with self.session_factory() as db:
            res = await db.execute(
                select(Booking.id, Booking.provider_id, Booking.total_amount, Service.commission_percentage)
                .join(Service, Service.id == Booking.service_id)
                .where(
                    Booking.status == BookingStatus.COMPLETED,
                    Booking.completed_at >= lo,
                    Booking.completed_at < hi,
                )
                .order_by(Booking.completed_at)
            )
            bookings = res.all()

            res = await db.execute(
                select(func.coalesce(func.sum(Payout.amount), 0)).where(
                    Payout.status != PayoutStatus.VOIDED,
                    Payout.created_at >= lo,
                    Payout.created_at < hi,
                )
            )
            total_payouts = q(res.scalar())

            paid_per_booking = {}
            booking_ids = [b.id for b in bookings]
            if booking_ids:
                res = await db.execute(
                    select(Payout.booking_id, func.sum(Payout.amount))
                    .where(Payout.booking_id.in_(booking_ids), Payout.status != PayoutStatus.VOIDED)
                    .group_by(Payout.booking_id)
                )
                paid_per_booking = {booking_id: q(total) for booking_id, total in res.all()}

            total_revenue = ZERO
            expected = ZERO
            details = []
            for b in bookings:
                revenue = q(b.total_amount)
                implied = q(revenue * Decimal(str(b.commission_percentage or 0)) / Decimal(100))
                total_revenue += revenue
                expected += implied

                paid = paid_per_booking.get(b.id, ZERO)
                line = BookingDiscrepancy(
                    booking_id=b.id,
                    provider_id=b.provider_id,
                    revenue=revenue,
                    payouts=paid,
                    observed_commission=q(revenue - paid),
                    expected_commission=implied,
                )
                if line.difference != ZERO:
                    details.append(line)

            commission = q(total_revenue - total_payouts)
            discrepancy = q(commission - q(expected))
            flagged = abs(discrepancy) > self.tolerance

            report = ReconciliationReport(
                period_start=period_start,
                period_end=period_end,
                total_revenue=q(total_revenue),
                total_payouts=total_payouts,
                platform_commission=commission,
                expected_commission=q(expected),
                discrepancy_amount=discrepancy,
                status=DISCREPANCY if flagged else BALANCED,
                created_at=now,
            )
            db.add(report)
            await db.commit()

        if flagged:
            logger.warning(
                "[settlement-service] reconciliation %s..%s off by %s (%d bookings diverge)",
                period_start,
                period_end,
                discrepancy,
                len(details),
            )
            await self.emitter.emit(
                events.RECONCILIATION_DISCREPANCY,
                {
                    "report_id": report.id,
                    "period_start": period_start,
                    "period_end": period_end,
                    "discrepancy_amount": discrepancy,
                    "booking_ids": [d.booking_id for d in details],
                },
            )
        return ReconciliationResult(report=report, details=details)

    async def get_report(self, report_id: str) -> ReconciliationReport:
        async with self.session_factory() as db:
            report = await db.get(ReconciliationReport, report_id)
            if not report:
                raise NotFound("Reconciliation report not found")
            return report

    async def mark_reconciled(self, report_id: str, reconciled_by: str, notes: str | None = None) -> ReconciliationReport:
        notes = (notes or "").strip() or None

        async with self.session_factory() as db:
            report = await db.get(ReconciliationReport, report_id)
            if not report:
                raise NotFound("Reconciliation report not found")
            if report.status == RECONCILED:
                return report
            if report.status == DISCREPANCY and not notes:
                raise DiscrepancyDetected(report.discrepancy_amount)

            res = await db.execute(
                update(ReconciliationReport)
                .where(
                    ReconciliationReport.id == report_id,
                    ReconciliationReport.status.in_([BALANCED, DISCREPANCY]),
                )
                .values(status=RECONCILED, reconciled_by=reconciled_by, reconciled_at=self.clock(), notes=notes)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                await db.commit()
            else:
                await db.rollback()

            report = await db.get(ReconciliationReport, report_id, populate_existing=True)

        if report.status != RECONCILED:
            raise InvalidTransition(report.status, "reconcile")
        return report
