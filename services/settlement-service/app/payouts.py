"""
Payout calculation for completed bookings, plus the admin override escape hatch.

calculate_payout is a pure function of the booking and the payout terms it was
quoted at creation; its result is written to the payout row at completion time
so a later price edit never changes an in-flight booking or a historical payout.
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .errors import InvalidTransition, NotFound, PayoutAlreadySettled, ValidationError
from .models import Booking, BookingStatus, Payout, PayoutStatus, utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def q(amount) -> Decimal:
    return Decimal(str(amount if amount is not None else 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BonusPolicy:
    weekend_days: frozenset[int]
    fixed_amount: Decimal = Decimal("50.00")
    percentage: Decimal | None = None

    @classmethod
    def from_settings(cls, settings) -> "BonusPolicy":
        return cls(
            weekend_days=frozenset(settings.weekend_days),
            fixed_amount=q(settings.weekend_bonus_amount),
            percentage=settings.weekend_bonus_percentage,
        )

    def is_bonus_day(self, day: date) -> bool:
        return day.weekday() in self.weekend_days


@dataclass(frozen=True)
class PayoutQuote:
    provider_fee: Decimal
    weekend_bonus: Decimal
    amount: Decimal


def weekend_bonus_for(service, policy: BonusPolicy) -> Decimal:
    if service.weekend_bonus is not None:
        return q(service.weekend_bonus)
    if policy.percentage is not None:
        return q(q(service.provider_fee) * Decimal(policy.percentage) / Decimal(100))
    return q(policy.fixed_amount)


@dataclass(frozen=True)
class PayoutTerms:
    """Fee and resolved bonus a booking was quoted at creation."""

    provider_fee: Decimal
    weekend_bonus: Decimal

    @classmethod
    def for_service(cls, service, policy: BonusPolicy) -> "PayoutTerms":
        return cls(provider_fee=q(service.provider_fee), weekend_bonus=weekend_bonus_for(service, policy))

    @classmethod
    def for_booking(cls, booking) -> "PayoutTerms":
        return cls(provider_fee=q(booking.quoted_provider_fee), weekend_bonus=q(booking.quoted_weekend_bonus))


def calculate_payout(booking, service, policy: BonusPolicy) -> PayoutQuote:
    fee = q(service.provider_fee)
    bonus = ZERO
    if booking.is_weekend_job or booking.emergency_booking:
        bonus = weekend_bonus_for(service, policy)
    return PayoutQuote(provider_fee=fee, weekend_bonus=bonus, amount=q(fee + bonus))


class PayoutService:
    def __init__(self, session_factory, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def get_for_booking(self, booking_id: str) -> Payout | None:
        async with self.session_factory() as db:
            res = await db.execute(
                select(Payout).where(Payout.booking_id == booking_id, Payout.status != PayoutStatus.VOIDED)
            )
            return res.scalar_one_or_none()

    async def record_manual_override(
        self,
        booking_id: str,
        amount,
        recorded_by: str,
        notes: str | None = None,
        payment_method: str | None = None,
    ) -> Payout:
        """
        Admin marks a completed booking paid outside the batch engine.
        Still writes a payout row so reconciliation sees the real amount.
        """
        amount = q(amount)
        if amount < ZERO:
            raise ValidationError("Payout amount cannot be negative")

        now = self.clock()
        async with self.session_factory() as db:
            booking = await db.get(Booking, booking_id)
            if not booking:
                raise NotFound("Booking not found")
            if booking.status != BookingStatus.COMPLETED:
                raise InvalidTransition(booking.status, "manual_payout")

            await db.execute(
                update(Payout)
                .where(
                    Payout.booking_id == booking_id,
                    Payout.status == PayoutStatus.PENDING,
                    Payout.batch_id.is_(None),
                )
                .values(status=PayoutStatus.VOIDED, notes=f"voided by manual override ({recorded_by})")
                .execution_options(synchronize_session=False)
            )

            res = await db.execute(
                select(Payout).where(Payout.booking_id == booking_id, Payout.status != PayoutStatus.VOIDED)
            )
            if res.scalar_one_or_none():
                raise PayoutAlreadySettled()

            payout = Payout(
                booking_id=booking.id,
                provider_id=booking.provider_id,
                payout_type="manual_override",
                amount=amount,
                weekend_bonus=ZERO,
                status=PayoutStatus.COMPLETED,
                payment_method=payment_method or "manual",
                notes=notes,
                created_at=now,
                approved_at=now,
                processed_at=now,
            )
            db.add(payout)
            booking.provider_payout = amount
            booking.payout_eligible = True

            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise PayoutAlreadySettled()

        logger.info(
            "[settlement-service] manual payout %s recorded for booking %s by %s",
            amount,
            booking_id,
            recorded_by,
        )
        return payout
