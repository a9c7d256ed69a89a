"""
Booking lifecycle:

    pending -> accepted -> in_progress -> completed
    pending | accepted -> cancelled

Every transition is a conditional UPDATE guarded on the currently stored
status (and provider, where relevant). When the guard fails the row is
re-read to tell a harmless retry (return current state) from an illegal
request or a lost race.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from . import events
from .cache import ReferenceCache
from .errors import (
    AcceptanceExpired,
    ConcurrentAssignmentLost,
    EntitlementExhausted,
    Forbidden,
    InvalidTransition,
    NotAssignedProvider,
    NotFound,
    ValidationError,
)
from .ledger import NO_ACTIVE_PACKAGE, SERVICE_NOT_INCLUDED, EntitlementLedger
from .models import Booking, BookingStatus, Payout, PayoutStatus, utcnow
from .payouts import ZERO, BonusPolicy, PayoutTerms, calculate_payout, q

logger = logging.getLogger(__name__)

_EXHAUSTED_MESSAGES = {
    NO_ACTIVE_PACKAGE: "No active package found. Please purchase a package to book services.",
    SERVICE_NOT_INCLUDED: "Service not included in your active package",
}


def as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class CompletionResult:
    booking: Booking
    payout: Payout | None


def _booking_event(booking: Booking, **extra) -> dict:
    data = {
        "booking_id": booking.id,
        "client_id": booking.client_id,
        "provider_id": booking.provider_id,
        "service_id": booking.service_id,
        "status": booking.status,
        "booking_date": booking.booking_date,
    }
    data.update(extra)
    return data


class BookingStateMachine:
    def __init__(
        self,
        session_factory,
        ledger: EntitlementLedger,
        emitter: events.EventEmitter,
        settings,
        cache: ReferenceCache | None = None,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.emitter = emitter
        self.settings = settings
        self.cache = cache or ReferenceCache()
        self.clock = clock
        self.policy = BonusPolicy.from_settings(settings)

    async def _reload(self, db, booking_id: str) -> Booking:
        booking = await db.get(Booking, booking_id, populate_existing=True)
        if not booking:
            raise NotFound("Booking not found")
        return booking

    async def get(self, booking_id: str) -> Booking:
        async with self.session_factory() as db:
            return await self._reload(db, booking_id)

    async def list_available(self, limit: int = 50) -> list[Booking]:
        now = self.clock()
        async with self.session_factory() as db:
            res = await db.execute(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.PENDING,
                    Booking.provider_id.is_(None),
                    Booking.acceptance_deadline > now,
                )
                .order_by(Booking.booking_date, Booking.booking_time)
                .limit(limit)
            )
            return list(res.scalars().all())

    # ---- create ----

    async def create(
        self,
        client_id: str,
        service_id: str,
        booking_date: date,
        booking_time: time,
        emergency: bool = False,
        client_package_id: str | None = None,
        special_instructions: str | None = None,
    ) -> Booking:
        if not client_id:
            raise ValidationError("client_id is required")

        now = self.clock()
        if booking_date < now.date():
            raise ValidationError("Booking date cannot be in the past")

        async with self.session_factory() as db:
            service = await self.cache.get_service(db, service_id)
            if not service or not service.is_active:
                raise ValidationError("Unknown or inactive service")

            terms = PayoutTerms.for_service(service, self.policy)
            booking = Booking(
                id=str(uuid.uuid4()),
                client_id=client_id,
                service_id=service.id,
                booking_date=booking_date,
                booking_time=booking_time,
                duration_minutes=service.duration_minutes,
                special_instructions=special_instructions,
                status=BookingStatus.PENDING,
                total_amount=q(service.client_price),
                quoted_provider_fee=terms.provider_fee,
                quoted_weekend_bonus=terms.weekend_bonus,
                emergency_booking=bool(emergency),
                is_weekend_job=self.policy.is_bonus_day(booking_date),
                funding_source="pay_per_job",
                payment_status="unpaid",
                payout_eligible=True,
                acceptance_deadline=now + timedelta(minutes=self.settings.acceptance_window_minutes),
                created_at=now,
                updated_at=now,
            )

            if client_package_id:
                result = await self.ledger.try_consume(
                    db,
                    client_id=client_id,
                    service_id=service.id,
                    client_package_id=client_package_id,
                    on_date=booking_date,
                    booking_id=booking.id,
                )
                if not result.success:
                    await db.rollback()
                    raise EntitlementExhausted(result.reason, _EXHAUSTED_MESSAGES.get(result.reason))

                booking.funding_source = "package"
                booking.client_package_id = client_package_id
                booking.total_amount = ZERO
                booking.payment_status = "covered"
                booking.payout_eligible = self.settings.package_jobs_payout_eligible

            db.add(booking)
            await db.commit()

        logger.info("[settlement-service] booking %s created (%s)", booking.id, booking.funding_source)
        await self.emitter.emit(
            events.BOOKING_CREATED,
            _booking_event(booking, funding_source=booking.funding_source, total_amount=booking.total_amount),
        )
        return booking

    # ---- assign ----

    async def assign(self, booking_id: str, provider_id: str) -> Booking:
        if not provider_id:
            raise ValidationError("provider_id is required")

        now = self.clock()
        async with self.session_factory() as db:
            res = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == BookingStatus.PENDING,
                    Booking.provider_id.is_(None),
                    Booking.acceptance_deadline > now,
                )
                .values(
                    provider_id=provider_id,
                    status=BookingStatus.ACCEPTED,
                    assigned_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            won = res.rowcount == 1
            if won:
                await db.commit()
            else:
                await db.rollback()

            booking = await self._reload(db, booking_id)

        if not won:
            if booking.provider_id == provider_id and booking.status != BookingStatus.CANCELLED:
                return booking
            if booking.status == BookingStatus.CANCELLED or (
                booking.provider_id is None and booking.status != BookingStatus.PENDING
            ):
                raise InvalidTransition(booking.status, "assign")
            if booking.provider_id is not None:
                raise ConcurrentAssignmentLost()
            if as_utc(booking.acceptance_deadline) <= now:
                raise AcceptanceExpired()
            raise ConcurrentAssignmentLost()

        logger.info("[settlement-service] booking %s assigned to %s", booking_id, provider_id)
        await self.emitter.emit(events.BOOKING_ASSIGNED, _booking_event(booking, assigned_at=booking.assigned_at))
        return booking

    # ---- start ----

    async def start(self, booking_id: str, provider_id: str) -> Booking:
        now = self.clock()
        async with self.session_factory() as db:
            res = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == BookingStatus.ACCEPTED,
                    Booking.provider_id == provider_id,
                )
                .values(status=BookingStatus.IN_PROGRESS, check_in_time=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            started = res.rowcount == 1
            if started:
                await db.commit()
            else:
                await db.rollback()

            booking = await self._reload(db, booking_id)

        if not started:
            if booking.provider_id is None:
                raise InvalidTransition(booking.status, "start")
            if booking.provider_id != provider_id:
                raise NotAssignedProvider()
            if booking.status in (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
                return booking
            raise InvalidTransition(booking.status, "start")

        await self.emitter.emit(events.BOOKING_STARTED, _booking_event(booking, check_in_time=booking.check_in_time))
        return booking

    # ---- complete ----

    async def _existing_payout(self, db, booking_id: str) -> Payout | None:
        res = await db.execute(
            select(Payout)
            .where(Payout.booking_id == booking_id, Payout.status != PayoutStatus.VOIDED)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def complete(
        self,
        booking_id: str,
        provider_id: str,
        notes: str,
        quality_score: int,
        photos: list[str] | None = None,
    ) -> CompletionResult:
        notes = (notes or "").strip()
        if not notes:
            raise ValidationError("Visit notes are required to complete a job")
        if not isinstance(quality_score, int) or not 1 <= quality_score <= 5:
            raise ValidationError("quality_score must be between 1 and 5")

        now = self.clock()
        async with self.session_factory() as db:
            booking = await self._reload(db, booking_id)

            if booking.provider_id is None:
                raise InvalidTransition(booking.status, "complete")
            if booking.provider_id != provider_id:
                raise NotAssignedProvider()
            if booking.status == BookingStatus.COMPLETED:
                return CompletionResult(booking=booking, payout=await self._existing_payout(db, booking_id))
            if booking.status != BookingStatus.IN_PROGRESS:
                raise InvalidTransition(booking.status, "complete")

            quote = calculate_payout(booking, PayoutTerms.for_booking(booking), self.policy)
            eligible = bool(booking.payout_eligible)

            res = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == BookingStatus.IN_PROGRESS,
                    Booking.provider_id == provider_id,
                )
                .values(
                    status=BookingStatus.COMPLETED,
                    completed_at=now,
                    completion_notes=notes,
                    progress_photos=list(photos or []),
                    quality_score=quality_score,
                    provider_payout=quote.amount if eligible else None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if res.rowcount == 0:
                await db.rollback()
                return await self._completion_after_race(db, booking_id)

            payout = None
            if eligible:
                payout = Payout(
                    booking_id=booking_id,
                    provider_id=provider_id,
                    payout_type="job",
                    amount=quote.amount,
                    weekend_bonus=quote.weekend_bonus,
                    status=PayoutStatus.PENDING,
                    created_at=now,
                )
                db.add(payout)

            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return await self._completion_after_race(db, booking_id)

            booking = await self._reload(db, booking_id)

        logger.info(
            "[settlement-service] booking %s completed, payout %s",
            booking_id,
            quote.amount if eligible else "not eligible",
        )
        await self.emitter.emit(
            events.BOOKING_COMPLETED,
            _booking_event(booking, provider_payout=booking.provider_payout, quality_score=quality_score),
        )
        return CompletionResult(booking=booking, payout=payout)

    async def _completion_after_race(self, db, booking_id: str) -> CompletionResult:
        booking = await self._reload(db, booking_id)
        if booking.status != BookingStatus.COMPLETED:
            raise InvalidTransition(booking.status, "complete")
        return CompletionResult(booking=booking, payout=await self._existing_payout(db, booking_id))

    # ---- cancel ----

    async def cancel(self, booking_id: str, actor_id: str, is_admin: bool = False, reason: str | None = None) -> Booking:
        now = self.clock()
        async with self.session_factory() as db:
            booking = await self._reload(db, booking_id)
            if not is_admin and actor_id != booking.client_id:
                raise Forbidden("Only the client or an administrator can cancel this booking")

            res = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status.in_([BookingStatus.PENDING, BookingStatus.ACCEPTED]),
                )
                .values(
                    status=BookingStatus.CANCELLED,
                    cancelled_at=now,
                    cancellation_reason=reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            cancelled = res.rowcount == 1
            if cancelled:
                await db.commit()
            else:
                await db.rollback()

            booking = await self._reload(db, booking_id)

        if not cancelled:
            if booking.status == BookingStatus.CANCELLED:
                return booking
            raise InvalidTransition(booking.status, "cancel")

        logger.info("[settlement-service] booking %s cancelled by %s", booking_id, actor_id)
        await self.emitter.emit(events.BOOKING_CANCELLED, _booking_event(booking, reason=reason))
        return booking

    # ---- payment fact ----

    async def confirm_payment(self, booking_id: str, reference: str) -> Booking:
        """
        Records the external payment confirmation for a pay-per-job booking.
        Package-funded bookings are never billed per job.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("payment reference is required")

        async with self.session_factory() as db:
            booking = await self._reload(db, booking_id)
            if booking.funding_source == "package":
                raise ValidationError("This booking is covered by a package and cannot be billed per job")
            if booking.status == BookingStatus.CANCELLED:
                raise InvalidTransition(booking.status, "confirm_payment")

            res = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.funding_source == "pay_per_job",
                    Booking.payment_status == "unpaid",
                )
                .values(payment_status="paid", payment_reference=reference, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            paid = res.rowcount == 1
            if paid:
                await db.commit()
            else:
                await db.rollback()

            booking = await self._reload(db, booking_id)

        if not paid and booking.payment_reference != reference:
            raise InvalidTransition(booking.payment_status, "confirm_payment", "This booking has already been paid")
        return booking

    # ---- rating ----

    async def rate(self, booking_id: str, client_id: str, rating: int, review: str | None = None) -> Booking:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5")

        async with self.session_factory() as db:
            booking = await self._reload(db, booking_id)
            if booking.client_id != client_id:
                raise Forbidden("Only the client who booked can rate this job")

            res = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == BookingStatus.COMPLETED,
                    Booking.rating.is_(None),
                )
                .values(rating=rating, review=review, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            rated = res.rowcount == 1
            if rated:
                await db.commit()
            else:
                await db.rollback()

            booking = await self._reload(db, booking_id)

        if not rated:
            if booking.status != BookingStatus.COMPLETED:
                raise InvalidTransition(booking.status, "rate")
            if booking.rating != rating or (booking.review or None) != (review or None):
                raise ValidationError("This booking has already been rated")
        return booking
