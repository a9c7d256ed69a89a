from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from conftest import SATURDAY, WEDNESDAY
from app.errors import InvalidTransition, PayoutAlreadySettled, ValidationError
from app.models import Payout, PayoutStatus
from app.payouts import BonusPolicy, calculate_payout, q

WEEKEND = frozenset({5, 6})


def _service(fee="100.00", weekend_bonus=None):
    return SimpleNamespace(
        provider_fee=Decimal(fee),
        weekend_bonus=None if weekend_bonus is None else Decimal(weekend_bonus),
    )


def _booking(weekend=False, emergency=False):
    return SimpleNamespace(is_weekend_job=weekend, emergency_booking=emergency)


def test_weekend_job_adds_service_bonus():
    quote = calculate_payout(_booking(weekend=True), _service(weekend_bonus="20.00"), BonusPolicy(WEEKEND))
    assert quote.provider_fee == Decimal("100.00")
    assert quote.weekend_bonus == Decimal("20.00")
    assert quote.amount == Decimal("120.00")


def test_weekday_job_pays_the_fee_only():
    quote = calculate_payout(_booking(), _service(weekend_bonus="20.00"), BonusPolicy(WEEKEND))
    assert quote.amount == Decimal("100.00")
    assert quote.weekend_bonus == Decimal("0.00")


def test_emergency_jobs_get_the_bonus_on_weekdays():
    quote = calculate_payout(_booking(emergency=True), _service(), BonusPolicy(WEEKEND, fixed_amount=Decimal("50.00")))
    assert quote.amount == Decimal("150.00")


def test_percentage_policy_applies_without_service_override():
    policy = BonusPolicy(WEEKEND, percentage=Decimal("15"))
    quote = calculate_payout(_booking(weekend=True), _service(fee="80.00"), policy)
    assert quote.weekend_bonus == Decimal("12.00")
    assert quote.amount == Decimal("92.00")


def test_bonus_day_uses_configured_weekdays():
    policy = BonusPolicy(frozenset({6}))
    assert policy.is_bonus_day(SATURDAY) is False
    assert BonusPolicy(WEEKEND).is_bonus_day(SATURDAY) is True


def test_quantize_rounds_half_up():
    assert q("10.005") == Decimal("10.01")
    assert q(None) == Decimal("0.00")


@pytest.mark.asyncio
async def test_completed_weekend_booking_stores_the_quote(scenario):
    service = await scenario.service(provider_fee="100.00", weekend_bonus="20.00")
    result = await scenario.completed(service, booking_date=SATURDAY)

    assert result.payout.amount == Decimal("120.00")
    assert result.payout.weekend_bonus == Decimal("20.00")
    assert result.booking.provider_payout == Decimal("120.00")


@pytest.mark.asyncio
async def test_manual_override_voids_the_pending_payout(scenario, engines, session_factory):
    service = await scenario.service()
    result = await scenario.completed(service)

    override = await engines.payouts.record_manual_override(
        result.booking.id,
        Decimal("90.00"),
        recorded_by="admin-1",
        notes="paid by bank transfer",
    )
    assert override.payout_type == "manual_override"
    assert override.status == PayoutStatus.COMPLETED

    async with session_factory() as db:
        res = await db.execute(select(Payout).where(Payout.booking_id == result.booking.id).order_by(Payout.created_at))
        statuses = sorted(p.status for p in res.scalars().all())
    assert statuses == [PayoutStatus.COMPLETED, PayoutStatus.VOIDED]

    current = await engines.payouts.get_for_booking(result.booking.id)
    assert current.id == override.id

    with pytest.raises(PayoutAlreadySettled):
        await engines.payouts.record_manual_override(result.booking.id, Decimal("10.00"), recorded_by="admin-1")


@pytest.mark.asyncio
async def test_manual_override_rules(scenario, engines):
    service = await scenario.service()
    open_booking = await scenario.booking(service)
    with pytest.raises(InvalidTransition):
        await engines.payouts.record_manual_override(open_booking.id, Decimal("10.00"), recorded_by="admin-1")

    done = await scenario.completed(service, booking_date=WEDNESDAY)
    with pytest.raises(ValidationError):
        await engines.payouts.record_manual_override(done.booking.id, Decimal("-1"), recorded_by="admin-1")


@pytest.mark.asyncio
async def test_manual_override_refuses_batched_payouts(scenario, engines):
    service = await scenario.service()
    result = await scenario.completed(service)
    await scenario.rule(minimum_payout_amount=Decimal("0"), auto_approve_under_amount=Decimal("0"))
    await engines.batches.run_automated()

    with pytest.raises(PayoutAlreadySettled):
        await engines.payouts.record_manual_override(result.booking.id, Decimal("50.00"), recorded_by="admin-1")
