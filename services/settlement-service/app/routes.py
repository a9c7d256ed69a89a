import json
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from .batches import next_run_date
from .engines import Engines
from .schemas import (
    ActivatePackageRequest,
    ApproveBatchRequest,
    BookingActionRequest,
    BookingActionResponse,
    BookingDiscrepancyResponse,
    BookingResponse,
    ClientPackageResponse,
    CloseReportRequest,
    CreateBookingRequest,
    CreateServiceRequest,
    DefinePackageRequest,
    ManualOverrideRequest,
    ManualPayoutRequest,
    ManualPayoutResponse,
    PackageEntitlementResponse,
    PackageUsageResponse,
    PaymentConfirmationRequest,
    PayoutBatchDetailResponse,
    PayoutBatchResponse,
    PayoutResponse,
    PayoutRuleRequest,
    PayoutRuleResponse,
    ReconciliationReportResponse,
    ReconciliationResponse,
    RestoreCreditRequest,
    RestoreCreditResponse,
    RunPayoutsRequest,
    RunSummaryResponse,
    ServiceResponse,
    ServiceUsageResponse,
    SettleBatchRequest,
    UpdateServiceRequest,
)

router = APIRouter()


# ---- identity (forwarded by the API gateway) ----


@dataclass
class Caller:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def get_caller(
    x_user_sub: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> Caller:
    if not x_user_sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")

    roles = []
    if x_user_roles:
        try:
            roles = json.loads(x_user_roles)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed X-User-Roles header")
        if not isinstance(roles, list):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed X-User-Roles header")

    return Caller(sub=x_user_sub, roles=[str(r).strip().lower() for r in roles])


def require_role(caller: Caller, allowed_roles: list[str]):
    if not caller.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Roles missing in request")

    allowed = {r.lower() for r in allowed_roles}
    if allowed.isdisjoint(caller.roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access forbidden for this role")


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    require_role(caller, ["admin"])
    return caller


def get_engines(request: Request) -> Engines:
    engines = getattr(request.app.state, "engines", None)
    if engines is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return engines


def _today(engines: Engines) -> date:
    return engines.bookings.clock().date()


# ---- Catalog ----


@router.post("/services", response_model=ServiceResponse, status_code=201)
async def create_service(data: CreateServiceRequest, _: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    return await engines.catalog.create_service(**data.model_dump())


@router.patch("/services/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: str,
    data: UpdateServiceRequest,
    _: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    return await engines.catalog.update_service(service_id, **data.model_dump(exclude_unset=True))


@router.get("/services", response_model=list[ServiceResponse])
async def list_services(include_inactive: bool = Query(default=False), engines: Engines = Depends(get_engines)):
    return await engines.catalog.list_services(active_only=not include_inactive)


@router.get("/services/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: str, engines: Engines = Depends(get_engines)):
    return await engines.catalog.get_service(service_id)


# ---- Packages ----


@router.put("/package-definitions/{package_id}", response_model=list[PackageEntitlementResponse])
async def define_package(
    package_id: str,
    data: DefinePackageRequest,
    _: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    return await engines.ledger.define_entitlements(
        package_id,
        [(e.service_id, e.quantity_per_cycle, e.cycle_days) for e in data.entitlements],
    )


@router.get("/package-definitions/{package_id}", response_model=list[PackageEntitlementResponse])
async def get_package_definition(package_id: str, _: Caller = Depends(get_caller), engines: Engines = Depends(get_engines)):
    return await engines.ledger.get_entitlements(package_id)


@router.post("/packages", response_model=ClientPackageResponse, status_code=201)
async def activate_package(data: ActivatePackageRequest, _: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    return await engines.ledger.activate_package(
        client_id=data.client_id,
        package_id=data.package_id,
        start_date=data.start_date,
        expiry_date=data.expiry_date,
        entitlements=[(e.service_id, e.quantity_per_cycle, e.cycle_days) for e in data.entitlements],
    )


@router.get("/packages/{client_package_id}/usage", response_model=PackageUsageResponse)
async def package_usage(
    client_package_id: str,
    on_date: date | None = Query(default=None),
    _: Caller = Depends(get_caller),
    engines: Engines = Depends(get_engines),
):
    on_date = on_date or _today(engines)
    usages = await engines.ledger.usage(client_package_id, on_date)
    return PackageUsageResponse(
        client_package_id=client_package_id,
        on_date=on_date,
        services=[
            ServiceUsageResponse(
                service_id=u.service_id,
                cycle_start=u.cycle_start,
                used_count=u.used_count,
                allowed_count=u.allowed_count,
                remaining=u.remaining,
            )
            for u in usages
        ],
    )


# ---- Bookings ----


@router.post("/bookings", response_model=BookingResponse, status_code=201)
async def create_booking(data: CreateBookingRequest, caller: Caller = Depends(get_caller), engines: Engines = Depends(get_engines)):
    return await engines.bookings.create(
        client_id=caller.sub,
        service_id=data.service_id,
        booking_date=data.booking_date,
        booking_time=data.booking_time,
        emergency=data.emergency,
        client_package_id=data.client_package_id,
        special_instructions=data.special_instructions,
    )


@router.get("/bookings/available", response_model=list[BookingResponse])
async def available_bookings(
    limit: int = Query(default=50, ge=1, le=200),
    _: Caller = Depends(get_caller),
    engines: Engines = Depends(get_engines),
):
    return await engines.bookings.list_available(limit=limit)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, caller: Caller = Depends(get_caller), engines: Engines = Depends(get_engines)):
    booking = await engines.bookings.get(booking_id)
    if not caller.is_admin and caller.sub not in (booking.client_id, booking.provider_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your booking")
    return booking


@router.post("/bookings/{booking_id}/actions/{action}", response_model=BookingActionResponse)
async def booking_action(
    booking_id: str,
    action: Literal["accept", "start", "complete", "cancel", "rate"],
    data: BookingActionRequest | None = None,
    caller: Caller = Depends(get_caller),
    engines: Engines = Depends(get_engines),
):
    data = data or BookingActionRequest()
    bookings = engines.bookings
    payout = None

    if action == "accept":
        booking = await bookings.assign(booking_id, caller.sub)
    elif action == "start":
        booking = await bookings.start(booking_id, caller.sub)
    elif action == "complete":
        result = await bookings.complete(
            booking_id,
            caller.sub,
            notes=data.notes,
            quality_score=data.quality_score,
            photos=data.photos,
        )
        booking, payout = result.booking, result.payout
    elif action == "cancel":
        booking = await bookings.cancel(booking_id, caller.sub, is_admin=caller.is_admin, reason=data.reason)
    else:
        booking = await bookings.rate(booking_id, caller.sub, rating=data.rating, review=data.review)

    return BookingActionResponse(
        booking=BookingResponse.model_validate(booking),
        payout=PayoutResponse.model_validate(payout) if payout else None,
    )


@router.post("/bookings/{booking_id}/payment", response_model=BookingResponse)
async def confirm_payment(
    booking_id: str,
    data: PaymentConfirmationRequest,
    _: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    return await engines.bookings.confirm_payment(booking_id, data.reference)


@router.post("/bookings/{booking_id}/restore-credit", response_model=RestoreCreditResponse)
async def restore_credit(
    booking_id: str,
    data: RestoreCreditRequest | None = None,
    caller: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    result = await engines.ledger.restore_credit(booking_id, restored_by=caller.sub, reason=data.reason if data else None)
    return RestoreCreditResponse(booking_id=result.booking_id, restored=result.restored, remaining=result.remaining)


@router.post("/bookings/{booking_id}/manual-payout", response_model=PayoutResponse, status_code=201)
async def manual_payout(
    booking_id: str,
    data: ManualOverrideRequest,
    caller: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    return await engines.payouts.record_manual_override(
        booking_id,
        data.amount,
        recorded_by=caller.sub,
        notes=data.notes,
        payment_method=data.payment_method,
    )


# ---- Payout rules ----


def _rule_response(rule, today: date) -> PayoutRuleResponse:
    resp = PayoutRuleResponse.model_validate(rule)
    resp.next_run_date = next_run_date(rule, today)
    return resp


@router.post("/payout-rules", response_model=PayoutRuleResponse, status_code=201)
async def create_payout_rule(data: PayoutRuleRequest, _: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    rule = await engines.batches.create_rule(**data.model_dump())
    return _rule_response(rule, _today(engines))


@router.get("/payout-rules", response_model=list[PayoutRuleResponse])
async def list_payout_rules(_: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    today = _today(engines)
    return [_rule_response(r, today) for r in await engines.batches.list_rules()]


@router.post("/payout-rules/{rule_id}/activate", response_model=PayoutRuleResponse)
async def activate_payout_rule(rule_id: str, _: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    rule = await engines.batches.activate_rule(rule_id)
    return _rule_response(rule, _today(engines))


# ---- Payouts & batches ----


@router.post("/payouts/manual", response_model=ManualPayoutResponse)
async def pay_providers(data: ManualPayoutRequest, caller: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    summary = await engines.batches.pay_providers(
        data.provider_ids,
        confirmed_by=caller.sub,
        confirmed=data.confirmed,
        payment_method=data.payment_method,
        notes=data.notes,
    )
    return ManualPayoutResponse(
        providers=[asdict(p) for p in summary.providers],
        total_amount=summary.total_amount,
    )


@router.post("/payouts/run", response_model=RunSummaryResponse)
async def run_payouts(
    data: RunPayoutsRequest | None = None,
    caller: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    summary = await engines.batches.run_automated(
        trigger="manual_trigger",
        run_date=data.run_date if data else None,
        created_by=caller.sub,
    )
    return RunSummaryResponse(
        run_date=summary.run_date,
        rule_id=summary.rule_id,
        batches=[PayoutBatchResponse.model_validate(b) for b in summary.batches],
        skipped_providers=summary.skipped_providers,
        total_amount=summary.total_amount,
    )


@router.get("/payout-batches/{batch_id}", response_model=PayoutBatchDetailResponse)
async def get_payout_batch(batch_id: str, _: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    batch, payouts = await engines.batches.get_batch(batch_id)
    resp = PayoutBatchDetailResponse.model_validate(batch)
    resp.payouts = [PayoutResponse.model_validate(p) for p in payouts]
    return resp


@router.post("/payout-batches/{batch_id}/approve", response_model=PayoutBatchResponse)
async def approve_payout_batch(
    batch_id: str,
    data: ApproveBatchRequest | None = None,
    caller: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    return await engines.batches.approve_batch(batch_id, approved_by=caller.sub, notes=data.notes if data else None)


@router.post("/payout-batches/{batch_id}/dispatch", response_model=PayoutBatchResponse)
async def dispatch_payout_batch(batch_id: str, _: Caller = Depends(require_admin), engines: Engines = Depends(get_engines)):
    return await engines.batches.dispatch_batch(batch_id)


@router.post("/payout-batches/{batch_id}/settle", response_model=PayoutBatchResponse)
async def settle_payout_batch(
    batch_id: str,
    data: SettleBatchRequest | None = None,
    _: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    return await engines.batches.settle_batch(batch_id, reference=data.reference if data else None)


# ---- Reconciliation ----


@router.get("/reconciliation", response_model=ReconciliationResponse)
async def reconcile(
    start: date = Query(...),
    end: date = Query(...),
    _: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    result = await engines.reconciliation.reconcile(start, end)
    return ReconciliationResponse(
        report=ReconciliationReportResponse.model_validate(result.report),
        details=[BookingDiscrepancyResponse.model_validate(d) for d in result.details],
    )


@router.post("/reconciliation/{report_id}/close", response_model=ReconciliationReportResponse)
async def close_reconciliation(
    report_id: str,
    data: CloseReportRequest | None = None,
    caller: Caller = Depends(require_admin),
    engines: Engines = Depends(get_engines),
):
    return await engines.reconciliation.mark_reconciled(report_id, reconciled_by=caller.sub, notes=data.notes if data else None)
