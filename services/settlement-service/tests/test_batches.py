import asyncio
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from app.batches import is_run_due, next_run_date
from app.errors import InvalidTransition, NotFound, ValidationError
from app.models import BatchStatus, Payout, PayoutBatch, PayoutStatus


def _rule(frequency, day):
    return SimpleNamespace(payout_frequency=frequency, payout_day=day)


def test_weekly_schedule():
    rule = _rule("weekly", 1)
    assert is_run_due(rule, date(2026, 3, 2)) is True
    assert is_run_due(rule, date(2026, 3, 3)) is False
    assert next_run_date(rule, date(2026, 3, 2)) == date(2026, 3, 9)


def test_bi_weekly_schedule_skips_alternate_weeks():
    rule = _rule("bi-weekly", 1)
    assert is_run_due(rule, date(2026, 3, 2)) is False
    assert is_run_due(rule, date(2026, 3, 9)) is True
    assert next_run_date(rule, date(2026, 3, 9)) == date(2026, 3, 23)


def test_monthly_schedule_clamps_to_month_end():
    rule = _rule("monthly", 31)
    assert next_run_date(rule, date(2026, 2, 1)) == date(2026, 2, 28)
    assert next_run_date(rule, date(2026, 3, 1)) == date(2026, 3, 31)
    assert next_run_date(rule, date(2026, 4, 1)) == date(2026, 4, 30)
    assert is_run_due(_rule("monthly", 15), date(2026, 5, 15)) is True


@pytest.mark.asyncio
async def test_rule_validation_and_single_active_rule(scenario, engines):
    with pytest.raises(ValidationError):
        await engines.batches.create_rule(rule_name="bad", payout_frequency="daily")
    with pytest.raises(ValidationError):
        await engines.batches.create_rule(rule_name="bad", payout_frequency="weekly", payout_day=8)

    first = await scenario.rule(rule_name="First")
    second = await scenario.rule(rule_name="Second")

    rules = {r.id: r for r in await engines.batches.list_rules()}
    assert rules[first.id].is_active is False
    assert rules[second.id].is_active is True

    active = await engines.batches.get_active_rule()
    assert active.id == second.id

    await engines.batches.activate_rule(first.id)
    assert (await engines.batches.get_active_rule()).id == first.id


@pytest.mark.asyncio
async def test_run_without_active_rule_is_rejected(engines):
    with pytest.raises(ValidationError):
        await engines.batches.run_automated()


@pytest.mark.asyncio
async def test_providers_below_minimum_roll_forward(scenario, engines, session_factory):
    service = await scenario.service(provider_fee="30.00")
    await scenario.completed(service, provider_id="provider-small")
    await scenario.rule(minimum_payout_amount=Decimal("50.00"), auto_approve_under_amount=Decimal("100.00"))

    summary = await engines.batches.run_automated()
    assert summary.batches == []
    assert summary.skipped_providers == ["provider-small"]

    async with session_factory() as db:
        assert (await db.execute(select(func.count(PayoutBatch.id)))).scalar() == 0
        payout = (await db.execute(select(Payout))).scalar_one()
        assert payout.batch_id is None
        assert payout.status == PayoutStatus.PENDING


@pytest.mark.asyncio
async def test_small_batches_are_auto_approved(scenario, engines, publisher):
    service = await scenario.service(provider_fee="40.00")
    await scenario.completed(service, provider_id="provider-1")
    await scenario.completed(service, provider_id="provider-1")
    await scenario.rule(minimum_payout_amount=Decimal("50.00"), auto_approve_under_amount=Decimal("100.00"))

    summary = await engines.batches.run_automated()
    assert len(summary.batches) == 1
    batch = summary.batches[0]
    assert batch.status == BatchStatus.APPROVED
    assert batch.total_amount == Decimal("80.00")
    assert batch.payout_count == 2
    assert batch.batch_type == "manual_trigger"

    _, payouts = await engines.batches.get_batch(batch.id)
    assert {p.status for p in payouts} == {PayoutStatus.PROCESSING}
    assert publisher.of_type("payout.ready")[0]["batch_id"] == batch.id


@pytest.mark.asyncio
async def test_large_batches_wait_for_approval(scenario, engines, publisher):
    service = await scenario.service(provider_fee="100.00")
    await scenario.completed(service, provider_id="provider-1")
    await scenario.completed(service, provider_id="provider-1")
    await scenario.rule(minimum_payout_amount=Decimal("50.00"), auto_approve_under_amount=Decimal("100.00"))

    batch = (await engines.batches.run_automated()).batches[0]
    assert batch.status == BatchStatus.PENDING
    assert publisher.of_type("payout.ready") == []

    approved = await engines.batches.approve_batch(batch.id, approved_by="admin-1", notes="checked")
    assert approved.status == BatchStatus.APPROVED
    assert approved.approved_by == "admin-1"

    again = await engines.batches.approve_batch(batch.id, approved_by="admin-2")
    assert again.approved_by == "admin-1"
    assert len(publisher.of_type("payout.ready")) == 1

    _, payouts = await engines.batches.get_batch(batch.id)
    assert sum(p.amount for p in payouts) == approved.total_amount == Decimal("200.00")


@pytest.mark.asyncio
async def test_dispatch_and_settle(scenario, engines):
    service = await scenario.service(provider_fee="60.00")
    await scenario.completed(service, provider_id="provider-1")
    await scenario.rule(minimum_payout_amount=Decimal("50.00"), auto_approve_under_amount=Decimal("0.00"))
    batch = (await engines.batches.run_automated()).batches[0]

    with pytest.raises(InvalidTransition):
        await engines.batches.dispatch_batch(batch.id)
    with pytest.raises(InvalidTransition):
        await engines.batches.settle_batch(batch.id, "bank-1")

    await engines.batches.approve_batch(batch.id, approved_by="admin-1")
    dispatched = await engines.batches.dispatch_batch(batch.id)
    assert dispatched.status == BatchStatus.PROCESSING

    settled = await engines.batches.settle_batch(batch.id, "bank-1")
    assert settled.status == BatchStatus.COMPLETED
    assert settled.external_reference == "bank-1"
    assert (await engines.batches.settle_batch(batch.id, "bank-1")).status == BatchStatus.COMPLETED

    _, payouts = await engines.batches.get_batch(batch.id)
    assert [(p.status, p.external_reference) for p in payouts] == [(PayoutStatus.COMPLETED, "bank-1")]
    assert payouts[0].processed_at is not None

    with pytest.raises(NotFound):
        await engines.batches.dispatch_batch("missing")


@pytest.mark.asyncio
async def test_performance_bonus_for_well_rated_providers(scenario, engines):
    service = await scenario.service(provider_fee="100.00")
    await scenario.completed(service, provider_id="provider-good", rating=5)
    await scenario.completed(service, provider_id="provider-good", rating=4)
    await scenario.completed(service, provider_id="provider-meh", rating=3)
    await scenario.rule(
        minimum_payout_amount=Decimal("50.00"),
        auto_approve_under_amount=Decimal("0.00"),
        performance_bonus_enabled=True,
        performance_bonus_threshold=Decimal("4.50"),
        performance_bonus_percentage=Decimal("10.00"),
    )

    summary = await engines.batches.run_automated()
    batches = {b.provider_id: b for b in summary.batches}

    assert batches["provider-good"].total_amount == Decimal("220.00")
    assert batches["provider-good"].payout_count == 3
    assert batches["provider-meh"].total_amount == Decimal("100.00")

    _, payouts = await engines.batches.get_batch(batches["provider-good"].id)
    bonus = [p for p in payouts if p.payout_type == "performance_bonus"]
    assert len(bonus) == 1
    assert bonus[0].amount == Decimal("20.00")
    assert bonus[0].booking_id is None


@pytest.mark.asyncio
async def test_overlapping_runs_never_double_claim(scenario, engines, session_factory):
    service = await scenario.service(provider_fee="100.00")
    for _ in range(3):
        await scenario.completed(service, provider_id="provider-1")
    await scenario.rule(minimum_payout_amount=Decimal("50.00"), auto_approve_under_amount=Decimal("0.00"))

    summaries = await asyncio.gather(engines.batches.run_automated(), engines.batches.run_automated())
    batches = [b for s in summaries for b in s.batches]

    async with session_factory() as db:
        res = await db.execute(select(Payout.batch_id, func.count(Payout.id)).group_by(Payout.batch_id))
        counts = dict(res.all())

    assert None not in counts
    assert sum(b.payout_count for b in batches) == 3
    assert sum(b.total_amount for b in batches) == Decimal("300.00")


@pytest.mark.asyncio
async def test_manual_payout_requires_confirmation(engines):
    with pytest.raises(ValidationError):
        await engines.batches.pay_providers(["provider-1"], confirmed_by="admin-1")


@pytest.mark.asyncio
async def test_manual_payout_pays_everything_pending(scenario, engines, publisher):
    service = await scenario.service(provider_fee="30.00")
    await scenario.completed(service, provider_id="provider-1")
    await scenario.completed(service, provider_id="provider-1")
    await scenario.completed(service, provider_id="provider-2")

    summary = await engines.batches.pay_providers(
        ["provider-1", "provider-2", "provider-3"],
        confirmed_by="admin-1",
        confirmed=True,
    )
    totals = {p.provider_id: p for p in summary.providers}
    assert totals["provider-1"].total_amount == Decimal("60.00")
    assert totals["provider-1"].payout_count == 2
    assert totals["provider-2"].total_amount == Decimal("30.00")
    assert totals["provider-3"].payout_count == 0
    assert summary.total_amount == Decimal("90.00")

    batch, payouts = await engines.batches.get_batch(totals["provider-1"].batch_id)
    assert batch.batch_type == "manual"
    assert batch.status == BatchStatus.COMPLETED
    assert {p.status for p in payouts} == {PayoutStatus.COMPLETED}
    assert len(publisher.of_type("payout.ready")) == 2

    # nothing left to pay
    again = await engines.batches.pay_providers(["provider-1"], confirmed_by="admin-1", confirmed=True)
    assert again.total_amount == Decimal("0.00")
