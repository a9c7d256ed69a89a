"""
Payout batching.

Pending job payouts are claimed into a batch with a conditional UPDATE
(`batch_id IS NULL AND status = 'pending'`), so overlapping runs, manual
payouts and new completions can interleave without a payout ever landing in
two batches. A batch's total_amount/payout_count are always recomputed from
its rows and checked before commit.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from dateutil.rrule import MONTHLY, WEEKLY, rrule
from sqlalchemy import func, select, update

from . import events
from .cache import ACTIVE_RULE_KEY, ReferenceCache, RuleSnapshot
from .errors import BatchIntegrityError, InvalidTransition, NotFound, ValidationError
from .models import (
    BatchStatus,
    Booking,
    BookingStatus,
    Payout,
    PayoutBatch,
    PayoutRule,
    PayoutStatus,
    utcnow,
)
from .payouts import ZERO, q

logger = logging.getLogger(__name__)

FREQUENCIES = ("weekly", "bi-weekly", "monthly")

# bi-weekly runs fall on even weeks counted from this Monday
SCHEDULE_EPOCH = date(2024, 1, 1)


def _schedule(rule) -> rrule:
    dtstart = datetime.combine(SCHEDULE_EPOCH, time())
    if rule.payout_frequency == "monthly":
        day = int(rule.payout_day)
        if day >= 29:
            # short months pay on their last day
            return rrule(MONTHLY, dtstart=dtstart, bymonthday=(day, -1), bysetpos=1)
        return rrule(MONTHLY, dtstart=dtstart, bymonthday=day)

    interval = 2 if rule.payout_frequency == "bi-weekly" else 1
    return rrule(WEEKLY, dtstart=dtstart, interval=interval, byweekday=int(rule.payout_day) - 1)


def next_run_date(rule, after: date) -> date:
    """First scheduled payout day strictly after `after`."""
    return _schedule(rule).after(datetime.combine(after, time()), inc=False).date()


def is_run_due(rule, day: date) -> bool:
    return next_run_date(rule, day - timedelta(days=1)) == day


def validate_rule_fields(payout_frequency: str, payout_day: int):
    if payout_frequency not in FREQUENCIES:
        raise ValidationError(f"payout_frequency must be one of {', '.join(FREQUENCIES)}")
    if payout_frequency == "monthly":
        if not 1 <= payout_day <= 31:
            raise ValidationError("payout_day must be a day of month (1-31) for monthly payouts")
    elif not 1 <= payout_day <= 7:
        raise ValidationError("payout_day must be an ISO weekday (1=Monday .. 7=Sunday)")


@dataclass
class RunSummary:
    run_date: date
    rule_id: str
    batches: list[PayoutBatch] = field(default_factory=list)
    skipped_providers: list[str] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return q(sum((b.total_amount for b in self.batches), ZERO))


@dataclass
class ProviderPayoutTotal:
    provider_id: str
    total_amount: Decimal
    payout_count: int
    batch_id: str | None = None


@dataclass
class ManualPayoutSummary:
    providers: list[ProviderPayoutTotal]

    @property
    def total_amount(self) -> Decimal:
        return q(sum((p.total_amount for p in self.providers), ZERO))


def _payout_ready(batch: PayoutBatch) -> dict:
    return {
        "batch_id": batch.id,
        "batch_name": batch.batch_name,
        "provider_id": batch.provider_id,
        "total_amount": batch.total_amount,
        "payout_count": batch.payout_count,
        "status": batch.status,
    }


class PayoutBatchEngine:
    def __init__(self, session_factory, emitter: events.EventEmitter, settings, cache: ReferenceCache | None = None, clock=utcnow):
        self.session_factory = session_factory
        self.emitter = emitter
        self.settings = settings
        self.cache = cache or ReferenceCache()
        self.clock = clock

    # ---- rules ----

    async def create_rule(
        self,
        rule_name: str,
        minimum_payout_amount=ZERO,
        payout_frequency: str = "weekly",
        payout_day: int = 5,
        auto_approve_under_amount=ZERO,
        performance_bonus_enabled: bool = False,
        performance_bonus_threshold=None,
        performance_bonus_percentage=None,
        activate: bool = False,
    ) -> PayoutRule:
        validate_rule_fields(payout_frequency, payout_day)
        if performance_bonus_enabled and (performance_bonus_threshold is None or performance_bonus_percentage is None):
            raise ValidationError("Performance bonus needs both a rating threshold and a percentage")

        async with self.session_factory() as db:
            rule = PayoutRule(
                rule_name=rule_name or "Default Rule",
                minimum_payout_amount=q(minimum_payout_amount),
                payout_frequency=payout_frequency,
                payout_day=payout_day,
                auto_approve_under_amount=q(auto_approve_under_amount),
                performance_bonus_enabled=performance_bonus_enabled,
                performance_bonus_threshold=performance_bonus_threshold,
                performance_bonus_percentage=performance_bonus_percentage,
                is_active=False,
            )
            db.add(rule)
            await db.commit()

        if activate:
            return await self.activate_rule(rule.id)
        return rule

    async def list_rules(self) -> list[PayoutRule]:
        async with self.session_factory() as db:
            res = await db.execute(select(PayoutRule).order_by(PayoutRule.created_at.desc()))
            return list(res.scalars().all())

    async def activate_rule(self, rule_id: str) -> PayoutRule:
        async with self.session_factory() as db:
            rule = await db.get(PayoutRule, rule_id)
            if not rule:
                raise NotFound("Payout rule not found")

            await db.execute(
                update(PayoutRule)
                .where(PayoutRule.is_active.is_(True), PayoutRule.id != rule_id)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(PayoutRule)
                .where(PayoutRule.id == rule_id)
                .values(is_active=True, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            rule = await db.get(PayoutRule, rule_id, populate_existing=True)

        await self.cache.invalidate(ACTIVE_RULE_KEY)
        logger.info("[settlement-service] payout rule %s (%s) is now active", rule.id, rule.rule_name)
        return rule

    async def get_active_rule(self) -> RuleSnapshot | None:
        async with self.session_factory() as db:
            return await self.cache.get_active_rule(db)

    # ---- reads ----

    async def get_batch(self, batch_id: str) -> tuple[PayoutBatch, list[Payout]]:
        async with self.session_factory() as db:
            batch = await db.get(PayoutBatch, batch_id)
            if not batch:
                raise NotFound("Payout batch not found")
            res = await db.execute(select(Payout).where(Payout.batch_id == batch_id).order_by(Payout.created_at))
            return batch, list(res.scalars().all())

    async def list_batches(self, status: str | None = None, limit: int = 20) -> list[PayoutBatch]:
        async with self.session_factory() as db:
            stmt = select(PayoutBatch).order_by(PayoutBatch.created_at.desc()).limit(limit)
            if status:
                stmt = stmt.where(PayoutBatch.status == status)
            res = await db.execute(stmt)
            return list(res.scalars().all())

    # ---- helpers ----

    def _collectable(self):
        return (
            select(Payout.id)
            .join(Booking, Booking.id == Payout.booking_id)
            .where(
                Payout.status == PayoutStatus.PENDING,
                Payout.batch_id.is_(None),
                Booking.status == BookingStatus.COMPLETED,
            )
        )

    async def _pending_totals(self, db) -> dict[str, Decimal]:
        res = await db.execute(
            select(Payout.provider_id, func.sum(Payout.amount))
            .join(Booking, Booking.id == Payout.booking_id)
            .where(
                Payout.status == PayoutStatus.PENDING,
                Payout.batch_id.is_(None),
                Booking.status == BookingStatus.COMPLETED,
            )
            .group_by(Payout.provider_id)
        )
        return {provider_id: q(total) for provider_id, total in res.all()}

    async def _claim(self, db, batch: PayoutBatch, provider_id: str) -> int:
        res = await db.execute(self._collectable().where(Payout.provider_id == provider_id))
        ids = [row[0] for row in res.all()]
        if not ids:
            return 0

        claimed = await db.execute(
            update(Payout)
            .where(
                Payout.id.in_(ids),
                Payout.batch_id.is_(None),
                Payout.status == PayoutStatus.PENDING,
            )
            .values(batch_id=batch.id)
            .execution_options(synchronize_session=False)
        )
        return claimed.rowcount

    async def _sum_batch(self, db, batch_id: str) -> tuple[Decimal, int]:
        res = await db.execute(
            select(func.coalesce(func.sum(Payout.amount), 0), func.count(Payout.id)).where(Payout.batch_id == batch_id)
        )
        total, count = res.one()
        return q(total), int(count)

    async def _refresh_totals(self, db, batch: PayoutBatch):
        batch.total_amount, batch.payout_count = await self._sum_batch(db, batch.id)

    async def verify_batch(self, db, batch_id: str):
        await db.flush()
        batch = await db.get(PayoutBatch, batch_id, populate_existing=True)
        total, count = await self._sum_batch(db, batch_id)
        if q(batch.total_amount) != total or batch.payout_count != count:
            raise BatchIntegrityError(
                f"Batch {batch_id} total {batch.total_amount}/{batch.payout_count} "
                f"does not match its payouts {total}/{count}"
            )

    async def _average_rating(self, db, provider_id: str, since: datetime) -> Decimal | None:
        res = await db.execute(
            select(func.avg(Booking.rating)).where(
                Booking.provider_id == provider_id,
                Booking.status == BookingStatus.COMPLETED,
                Booking.rating.is_not(None),
                Booking.completed_at >= since,
            )
        )
        avg = res.scalar()
        return None if avg is None else Decimal(str(avg))

    async def _performance_bonus(self, db, rule: RuleSnapshot, provider_id: str, base: Decimal) -> tuple[Decimal, Decimal | None]:
        if not rule.performance_bonus_enabled:
            return ZERO, None
        if rule.performance_bonus_threshold is None or rule.performance_bonus_percentage is None:
            return ZERO, None

        since = self.clock() - timedelta(days=self.settings.performance_window_days)
        avg = await self._average_rating(db, provider_id, since)
        if avg is None or avg < rule.performance_bonus_threshold:
            return ZERO, avg
        return q(base * rule.performance_bonus_percentage / Decimal(100)), avg

    # ---- automated run ----

    async def run_automated(self, trigger: str = "manual_trigger", run_date: date | None = None, created_by: str | None = None) -> RunSummary:
        run_date = run_date or self.clock().date()

        async with self.session_factory() as db:
            rule = await self.cache.get_active_rule(db)
            if not rule:
                raise ValidationError("No active payout rule configured")
            totals = await self._pending_totals(db)

        summary = RunSummary(run_date=run_date, rule_id=rule.id)
        for provider_id in sorted(totals):
            if totals[provider_id] < rule.minimum_payout_amount:
                summary.skipped_providers.append(provider_id)
                logger.info(
                    "[settlement-service] provider %s below minimum payout (%s < %s), rolling forward",
                    provider_id,
                    totals[provider_id],
                    rule.minimum_payout_amount,
                )
                continue

            batch = await self._build_provider_batch(rule, provider_id, trigger, run_date, created_by)
            if batch is None:
                summary.skipped_providers.append(provider_id)
            else:
                summary.batches.append(batch)

        for batch in summary.batches:
            if batch.status == BatchStatus.APPROVED:
                await self.emitter.emit(events.PAYOUT_READY, _payout_ready(batch))

        logger.info(
            "[settlement-service] automated payout run %s: %d batches, %d skipped, total %s",
            run_date,
            len(summary.batches),
            len(summary.skipped_providers),
            summary.total_amount,
        )
        return summary

    async def _build_provider_batch(self, rule: RuleSnapshot, provider_id: str, trigger: str, run_date: date, created_by: str | None):
        now = self.clock()
        async with self.session_factory() as db:
            batch = PayoutBatch(
                batch_name=f"AUTO_BATCH_{run_date.isoformat()}_{provider_id}",
                batch_type=trigger,
                provider_id=provider_id,
                status=BatchStatus.DRAFT,
                scheduled_date=run_date,
                created_by=created_by,
                created_at=now,
            )
            db.add(batch)
            await db.flush()

            if await self._claim(db, batch, provider_id) == 0:
                await db.rollback()
                return None

            claimed_total, _ = await self._sum_batch(db, batch.id)
            if claimed_total < rule.minimum_payout_amount:
                # another run took part of the pending set; leave the rest for next time
                await db.rollback()
                return None

            bonus, avg = await self._performance_bonus(db, rule, provider_id, claimed_total)
            if bonus > ZERO:
                db.add(
                    Payout(
                        provider_id=provider_id,
                        batch_id=batch.id,
                        payout_type="performance_bonus",
                        amount=bonus,
                        weekend_bonus=ZERO,
                        status=PayoutStatus.PENDING,
                        notes=f"average rating {avg:.2f} >= {rule.performance_bonus_threshold}",
                        created_at=now,
                    )
                )
                await db.flush()

            await self._refresh_totals(db, batch)

            if batch.total_amount <= rule.auto_approve_under_amount:
                batch.status = BatchStatus.APPROVED
                batch.approved_at = now
                batch.approved_by = "auto"
                await db.execute(
                    update(Payout)
                    .where(Payout.batch_id == batch.id, Payout.status == PayoutStatus.PENDING)
                    .values(status=PayoutStatus.PROCESSING, approved_at=now)
                    .execution_options(synchronize_session=False)
                )
            else:
                batch.status = BatchStatus.PENDING

            await self.verify_batch(db, batch.id)
            await db.commit()
            return batch

    # ---- approval lifecycle ----

    async def approve_batch(self, batch_id: str, approved_by: str, notes: str | None = None) -> PayoutBatch:
        now = self.clock()
        async with self.session_factory() as db:
            batch = await db.get(PayoutBatch, batch_id)
            if not batch:
                raise NotFound("Payout batch not found")
            if batch.status in BatchStatus.APPROVED_OR_LATER:
                return batch
            if batch.status != BatchStatus.PENDING:
                raise InvalidTransition(batch.status, "approve")

            res = await db.execute(
                select(func.count(Payout.id))
                .join(Booking, Booking.id == Payout.booking_id)
                .where(Payout.batch_id == batch_id, Booking.status != BookingStatus.COMPLETED)
            )
            if res.scalar():
                raise InvalidTransition(
                    batch.status,
                    "approve",
                    "Batch contains payouts for bookings that are not completed",
                )

            approved = await db.execute(
                update(PayoutBatch)
                .where(PayoutBatch.id == batch_id, PayoutBatch.status == BatchStatus.PENDING)
                .values(status=BatchStatus.APPROVED, approved_at=now, approved_by=approved_by, approval_notes=notes)
                .execution_options(synchronize_session=False)
            )
            if approved.rowcount == 0:
                await db.rollback()
                batch = await db.get(PayoutBatch, batch_id, populate_existing=True)
                if batch.status in BatchStatus.APPROVED_OR_LATER:
                    return batch
                raise InvalidTransition(batch.status, "approve")

            await db.execute(
                update(Payout)
                .where(Payout.batch_id == batch_id, Payout.status == PayoutStatus.PENDING)
                .values(status=PayoutStatus.PROCESSING, approved_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.verify_batch(db, batch_id)
            await db.commit()
            batch = await db.get(PayoutBatch, batch_id, populate_existing=True)

        logger.info("[settlement-service] payout batch %s approved by %s", batch_id, approved_by)
        await self.emitter.emit(events.PAYOUT_READY, _payout_ready(batch))
        return batch

    async def dispatch_batch(self, batch_id: str) -> PayoutBatch:
        async with self.session_factory() as db:
            res = await db.execute(
                update(PayoutBatch)
                .where(PayoutBatch.id == batch_id, PayoutBatch.status == BatchStatus.APPROVED)
                .values(status=BatchStatus.PROCESSING)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                await db.commit()
            else:
                await db.rollback()

            batch = await db.get(PayoutBatch, batch_id, populate_existing=True)
            if not batch:
                raise NotFound("Payout batch not found")

        if res.rowcount == 0 and batch.status not in (BatchStatus.PROCESSING, BatchStatus.COMPLETED):
            raise InvalidTransition(batch.status, "dispatch")
        return batch

    async def settle_batch(self, batch_id: str, reference: str | None = None) -> PayoutBatch:
        now = self.clock()
        async with self.session_factory() as db:
            res = await db.execute(
                update(PayoutBatch)
                .where(
                    PayoutBatch.id == batch_id,
                    PayoutBatch.status.in_([BatchStatus.APPROVED, BatchStatus.PROCESSING]),
                )
                .values(status=BatchStatus.COMPLETED, processed_at=now, external_reference=reference)
                .execution_options(synchronize_session=False)
            )
            settled = res.rowcount == 1
            if settled:
                await db.execute(
                    update(Payout)
                    .where(Payout.batch_id == batch_id, Payout.status == PayoutStatus.PROCESSING)
                    .values(status=PayoutStatus.COMPLETED, processed_at=now, external_reference=reference)
                    .execution_options(synchronize_session=False)
                )
                await self.verify_batch(db, batch_id)
                await db.commit()
            else:
                await db.rollback()

            batch = await db.get(PayoutBatch, batch_id, populate_existing=True)
            if not batch:
                raise NotFound("Payout batch not found")

        if not settled and batch.status != BatchStatus.COMPLETED:
            raise InvalidTransition(batch.status, "settle")
        return batch

    # ---- manual provider payouts ----

    async def pay_providers(
        self,
        provider_ids: list[str],
        confirmed_by: str,
        confirmed: bool = False,
        payment_method: str | None = None,
        notes: str | None = None,
    ) -> ManualPayoutSummary:
        """
        Pays every collectable pending payout of the given providers right away.
        Ignores the active rule's thresholds; requires an explicit confirmation.
        """
        if not confirmed:
            raise ValidationError("Manual payouts must be explicitly confirmed")
        provider_ids = [p for p in dict.fromkeys(provider_ids or []) if p]
        if not provider_ids:
            raise ValidationError("At least one provider is required")

        totals = []
        paid_batches = []
        for provider_id in provider_ids:
            batch = await self._pay_provider(provider_id, confirmed_by, payment_method, notes)
            if batch is None:
                totals.append(ProviderPayoutTotal(provider_id=provider_id, total_amount=ZERO, payout_count=0))
                continue
            paid_batches.append(batch)
            totals.append(
                ProviderPayoutTotal(
                    provider_id=provider_id,
                    total_amount=q(batch.total_amount),
                    payout_count=batch.payout_count,
                    batch_id=batch.id,
                )
            )

        for batch in paid_batches:
            await self.emitter.emit(events.PAYOUT_READY, _payout_ready(batch))

        summary = ManualPayoutSummary(providers=totals)
        logger.info(
            "[settlement-service] manual payout by %s for %d providers, total %s",
            confirmed_by,
            len(provider_ids),
            summary.total_amount,
        )
        return summary

    async def _pay_provider(self, provider_id: str, confirmed_by: str, payment_method: str | None, notes: str | None):
        now = self.clock()
        async with self.session_factory() as db:
            batch = PayoutBatch(
                batch_name=f"MANUAL_{now.date().isoformat()}_{provider_id}",
                batch_type="manual",
                provider_id=provider_id,
                status=BatchStatus.DRAFT,
                scheduled_date=now.date(),
                created_by=confirmed_by,
                created_at=now,
            )
            db.add(batch)
            await db.flush()

            if await self._claim(db, batch, provider_id) == 0:
                await db.rollback()
                return None

            await db.execute(
                update(Payout)
                .where(Payout.batch_id == batch.id)
                .values(
                    status=PayoutStatus.COMPLETED,
                    approved_at=now,
                    processed_at=now,
                    payment_method=payment_method or "manual",
                )
                .execution_options(synchronize_session=False)
            )
            await self._refresh_totals(db, batch)
            batch.status = BatchStatus.COMPLETED
            batch.approved_at = now
            batch.approved_by = confirmed_by
            batch.approval_notes = notes
            batch.processed_at = now

            await self.verify_batch(db, batch.id)
            await db.commit()
            return batch
