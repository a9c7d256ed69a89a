from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from app.errors import DiscrepancyDetected, ValidationError

TODAY = NOW.date()


@pytest.mark.asyncio
async def test_open_or_inverted_periods_are_rejected(engines):
    with pytest.raises(ValidationError):
        await engines.reconciliation.reconcile(TODAY, TODAY + timedelta(days=1))
    with pytest.raises(ValidationError):
        await engines.reconciliation.reconcile(TODAY, TODAY - timedelta(days=1))


@pytest.mark.asyncio
async def test_consistent_catalog_reconciles_clean(scenario, engines, publisher, clock):
    service = await scenario.service(client_price="100.00", provider_fee="80.00", commission="20.00")
    await scenario.completed(service)
    await scenario.completed(service, client_id="client-2")
    clock.advance(days=1)

    result = await engines.reconciliation.reconcile(TODAY, TODAY)
    report = result.report

    assert report.total_revenue == Decimal("200.00")
    assert report.total_payouts == Decimal("160.00")
    assert report.platform_commission == Decimal("40.00")
    assert report.expected_commission == Decimal("40.00")
    assert report.discrepancy_amount == Decimal("0.00")
    assert report.status == "balanced"
    assert result.details == []
    assert publisher.of_type("reconciliation.discrepancy") == []


@pytest.mark.asyncio
async def test_low_manual_override_shows_positive_discrepancy(scenario, engines, publisher, clock):
    service = await scenario.service(client_price="100.00", provider_fee="80.00", commission="20.00")
    result = await scenario.completed(service)
    await engines.payouts.record_manual_override(result.booking.id, Decimal("50.00"), recorded_by="admin-1")
    clock.advance(days=1)

    recon = await engines.reconciliation.reconcile(TODAY, TODAY)

    assert recon.report.total_payouts == Decimal("50.00")
    assert recon.report.discrepancy_amount == Decimal("30.00")
    assert recon.report.status == "discrepancy"
    assert [d.booking_id for d in recon.details] == [result.booking.id]
    assert recon.details[0].difference == Decimal("30.00")

    events = publisher.of_type("reconciliation.discrepancy")
    assert events[0]["report_id"] == recon.report.id
    assert events[0]["discrepancy_amount"] == "30.00"


@pytest.mark.asyncio
async def test_drift_between_fee_and_commission_is_surfaced(scenario, engines, clock):
    # admin raised the provider fee without touching the commission
    service = await scenario.service(client_price="100.00", provider_fee="90.00", commission="20.00")
    await scenario.completed(service)
    clock.advance(days=1)

    recon = await engines.reconciliation.reconcile(TODAY, TODAY)
    assert recon.report.discrepancy_amount == Decimal("-10.00")
    assert recon.flagged is True


@pytest.mark.asyncio
async def test_differences_within_tolerance_stay_balanced(scenario, engines, clock):
    service = await scenario.service(client_price="100.00", provider_fee="79.50", commission="20.00")
    await scenario.completed(service)
    clock.advance(days=1)

    recon = await engines.reconciliation.reconcile(TODAY, TODAY)
    assert recon.report.discrepancy_amount == Decimal("0.50")
    assert recon.report.status == "balanced"
    assert len(recon.details) == 1


@pytest.mark.asyncio
async def test_closing_a_flagged_report_needs_notes(scenario, engines, clock):
    service = await scenario.service(client_price="100.00", provider_fee="90.00", commission="20.00")
    await scenario.completed(service)
    clock.advance(days=1)
    report = (await engines.reconciliation.reconcile(TODAY, TODAY)).report

    with pytest.raises(DiscrepancyDetected):
        await engines.reconciliation.mark_reconciled(report.id, reconciled_by="admin-1")

    closed = await engines.reconciliation.mark_reconciled(
        report.id,
        reconciled_by="admin-1",
        notes="fee raised mid-month, commission update pending",
    )
    assert closed.status == "reconciled"
    assert closed.reconciled_by == "admin-1"

    again = await engines.reconciliation.mark_reconciled(report.id, reconciled_by="admin-2")
    assert again.reconciled_by == "admin-1"
