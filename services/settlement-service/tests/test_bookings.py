import asyncio
from datetime import date, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import NOW, SATURDAY, WEDNESDAY
from app.errors import (
    AcceptanceExpired,
    ConcurrentAssignmentLost,
    Forbidden,
    InvalidTransition,
    NotAssignedProvider,
    ValidationError,
)
from app.models import BookingStatus, Payout, PayoutStatus


@pytest.mark.asyncio
async def test_create_copies_price_and_sets_deadline(scenario, publisher):
    service = await scenario.service(client_price="150.00")
    booking = await scenario.booking(service, booking_date=SATURDAY)

    assert booking.status == BookingStatus.PENDING
    assert booking.provider_id is None
    assert booking.total_amount == Decimal("150.00")
    assert booking.is_weekend_job is True
    assert booking.funding_source == "pay_per_job"
    assert booking.payment_status == "unpaid"
    assert booking.acceptance_deadline == NOW + timedelta(minutes=30)
    assert publisher.routing_keys() == ["booking.created"]


@pytest.mark.asyncio
async def test_create_rejects_past_dates_and_inactive_services(scenario, engines):
    service = await scenario.service()
    with pytest.raises(ValidationError):
        await scenario.booking(service, booking_date=NOW.date() - timedelta(days=1))

    retired = await scenario.service(name="Retired", is_active=False)
    with pytest.raises(ValidationError):
        await scenario.booking(retired)


@pytest.mark.asyncio
async def test_full_lifecycle_emits_events_in_order(scenario, engines, publisher):
    service = await scenario.service()
    result = await scenario.completed(service)

    assert result.booking.status == BookingStatus.COMPLETED
    assert result.booking.completion_notes == "All rooms done"
    assert result.payout.status == PayoutStatus.PENDING
    assert publisher.routing_keys() == [
        "booking.created",
        "booking.assigned",
        "booking.started",
        "booking.completed",
    ]


@pytest.mark.asyncio
async def test_only_one_provider_wins_a_concurrent_accept(scenario, engines):
    service = await scenario.service()
    booking = await scenario.booking(service)

    results = await asyncio.gather(
        *(engines.bookings.assign(booking.id, f"provider-{i}") for i in range(5)),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(e, ConcurrentAssignmentLost) for e in losers)

    stored = await engines.bookings.get(booking.id)
    assert stored.status == BookingStatus.ACCEPTED
    assert stored.provider_id == winners[0].provider_id


@pytest.mark.asyncio
async def test_winner_retrying_accept_gets_current_state(scenario, engines):
    service = await scenario.service()
    booking = await scenario.booking(service)

    first = await engines.bookings.assign(booking.id, "provider-1")
    again = await engines.bookings.assign(booking.id, "provider-1")
    assert again.provider_id == first.provider_id
    assert again.status == BookingStatus.ACCEPTED


@pytest.mark.asyncio
async def test_accept_after_deadline_is_rejected_and_booking_stays_pending(scenario, engines, clock):
    service = await scenario.service()
    booking = await scenario.booking(service)

    clock.advance(minutes=31)
    with pytest.raises(AcceptanceExpired):
        await engines.bookings.assign(booking.id, "provider-1")

    stored = await engines.bookings.get(booking.id)
    assert stored.status == BookingStatus.PENDING
    assert stored.provider_id is None
    assert await engines.bookings.list_available() == []


@pytest.mark.asyncio
async def test_list_available_hides_assigned_bookings(scenario, engines):
    service = await scenario.service()
    open_booking = await scenario.booking(service)
    taken = await scenario.booking(service)
    await engines.bookings.assign(taken.id, "provider-1")

    available = await engines.bookings.list_available()
    assert [b.id for b in available] == [open_booking.id]


@pytest.mark.asyncio
async def test_only_assigned_provider_can_start_or_complete(scenario, engines):
    service = await scenario.service()
    booking = await scenario.booking(service)
    await engines.bookings.assign(booking.id, "provider-1")

    with pytest.raises(NotAssignedProvider):
        await engines.bookings.start(booking.id, "provider-2")

    await engines.bookings.start(booking.id, "provider-1")
    with pytest.raises(NotAssignedProvider):
        await engines.bookings.complete(booking.id, "provider-2", notes="done", quality_score=4)


@pytest.mark.asyncio
async def test_complete_requires_notes_and_valid_quality_score(scenario, engines):
    service = await scenario.service()
    booking = await scenario.booking(service)
    await engines.bookings.assign(booking.id, "provider-1")
    await engines.bookings.start(booking.id, "provider-1")

    with pytest.raises(ValidationError):
        await engines.bookings.complete(booking.id, "provider-1", notes="  ", quality_score=4)
    with pytest.raises(ValidationError):
        await engines.bookings.complete(booking.id, "provider-1", notes="done", quality_score=6)

    stored = await engines.bookings.get(booking.id)
    assert stored.status == BookingStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_complete_cannot_skip_start(scenario, engines):
    service = await scenario.service()
    booking = await scenario.booking(service)
    await engines.bookings.assign(booking.id, "provider-1")

    with pytest.raises(InvalidTransition) as exc:
        await engines.bookings.complete(booking.id, "provider-1", notes="done", quality_score=4)
    assert exc.value.current == BookingStatus.ACCEPTED


@pytest.mark.asyncio
async def test_completing_twice_yields_one_payout(scenario, engines, session_factory, publisher):
    service = await scenario.service()
    first = await scenario.completed(service)

    again = await engines.bookings.complete(first.booking.id, "provider-1", notes="All rooms done", quality_score=5)
    assert again.payout.id == first.payout.id
    assert again.payout.amount == first.payout.amount

    async with session_factory() as db:
        res = await db.execute(select(func.count(Payout.id)).where(Payout.booking_id == first.booking.id))
        assert res.scalar() == 1
    assert publisher.routing_keys().count("booking.completed") == 1


@pytest.mark.asyncio
async def test_terminal_states_never_transition(scenario, engines):
    service = await scenario.service()
    done = (await scenario.completed(service)).booking

    with pytest.raises(InvalidTransition):
        await engines.bookings.cancel(done.id, "client-1")

    cancelled = await scenario.booking(service)
    await engines.bookings.cancel(cancelled.id, "client-1")
    with pytest.raises(InvalidTransition):
        await engines.bookings.assign(cancelled.id, "provider-1")
    with pytest.raises(InvalidTransition):
        await engines.bookings.start(cancelled.id, "provider-1")

    # cancelling again is a harmless retry
    again = await engines.bookings.cancel(cancelled.id, "client-1")
    assert again.status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_rules(scenario, engines):
    service = await scenario.service()
    booking = await scenario.booking(service)

    with pytest.raises(Forbidden):
        await engines.bookings.cancel(booking.id, "provider-1")

    await engines.bookings.assign(booking.id, "provider-1")
    cancelled = await engines.bookings.cancel(booking.id, "admin-1", is_admin=True, reason="duplicate")
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancellation_reason == "duplicate"

    started = await scenario.booking(service)
    await engines.bookings.assign(started.id, "provider-1")
    await engines.bookings.start(started.id, "provider-1")
    with pytest.raises(InvalidTransition):
        await engines.bookings.cancel(started.id, "client-1")


@pytest.mark.asyncio
async def test_payment_confirmation_is_idempotent_per_reference(scenario, engines):
    service = await scenario.service()
    booking = await scenario.booking(service)

    paid = await engines.bookings.confirm_payment(booking.id, "pi_123")
    assert paid.payment_status == "paid"
    again = await engines.bookings.confirm_payment(booking.id, "pi_123")
    assert again.payment_reference == "pi_123"

    with pytest.raises(InvalidTransition):
        await engines.bookings.confirm_payment(booking.id, "pi_456")


@pytest.mark.asyncio
async def test_package_bookings_are_never_billed_per_job(scenario, engines):
    service = await scenario.service()
    pkg = await scenario.package(service)
    booking = await scenario.booking(service, client_package_id=pkg.id)

    with pytest.raises(ValidationError):
        await engines.bookings.confirm_payment(booking.id, "pi_123")


@pytest.mark.asyncio
async def test_package_jobs_skip_payout_when_not_eligible(session_factory, publisher, redis_client, clock):
    from app.config import Settings
    from app.engines import build_engines
    from conftest import Scenario

    engines = build_engines(
        session_factory,
        Settings(package_jobs_payout_eligible=False),
        publisher,
        redis_client,
        clock=clock,
    )
    scenario = Scenario(engines, clock)
    service = await scenario.service()
    pkg = await scenario.package(service)

    result = await scenario.completed(service, client_package_id=pkg.id)
    assert result.payout is None
    assert result.booking.payout_eligible is False
    assert result.booking.provider_payout is None


@pytest.mark.asyncio
async def test_rating_once(scenario, engines):
    service = await scenario.service()
    booking = (await scenario.completed(service)).booking

    with pytest.raises(Forbidden):
        await engines.bookings.rate(booking.id, "client-2", 5)

    rated = await engines.bookings.rate(booking.id, "client-1", 4, review="Great")
    assert rated.rating == 4
    assert (await engines.bookings.rate(booking.id, "client-1", 4, review="Great")).rating == 4

    with pytest.raises(ValidationError):
        await engines.bookings.rate(booking.id, "client-1", 1)


@pytest.mark.asyncio
async def test_service_price_change_does_not_touch_existing_bookings(scenario, engines):
    service = await scenario.service(client_price="120.00")
    booking = await scenario.booking(service)

    await engines.catalog.update_service(service.id, client_price=Decimal("200.00"))
    stored = await engines.bookings.get(booking.id)
    assert stored.total_amount == Decimal("120.00")

    newer = await engines.bookings.create("client-2", service.id, WEDNESDAY, time(9, 0))
    assert newer.total_amount == Decimal("200.00")


@pytest.mark.asyncio
async def test_fee_edit_mid_lifecycle_keeps_the_quoted_payout(scenario, engines):
    service = await scenario.service(provider_fee="100.00", weekend_bonus="20.00")
    booking = await scenario.booking(service, booking_date=SATURDAY)
    assert booking.quoted_provider_fee == Decimal("100.00")
    assert booking.quoted_weekend_bonus == Decimal("20.00")

    await engines.bookings.assign(booking.id, "provider-1")
    await engines.bookings.start(booking.id, "provider-1")
    await engines.catalog.update_service(service.id, provider_fee=Decimal("10.00"), weekend_bonus=Decimal("5.00"))

    result = await engines.bookings.complete(booking.id, "provider-1", notes="Done", quality_score=4)
    assert result.payout.amount == Decimal("120.00")
    assert result.payout.weekend_bonus == Decimal("20.00")
    assert result.booking.provider_payout == Decimal("120.00")

    later = await scenario.completed(await engines.catalog.get_service(service.id), booking_date=SATURDAY)
    assert later.payout.amount == Decimal("15.00")
