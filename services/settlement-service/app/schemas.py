from datetime import date, datetime, time
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# ---- Catalog ----


class CreateServiceRequest(BaseModel):
    name: str
    client_price: Decimal = Field(ge=0)
    provider_fee: Decimal = Field(ge=0)
    commission_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    duration_minutes: int = Field(default=60, gt=0)
    weekend_bonus: Decimal | None = Field(default=None, ge=0)
    is_active: bool = True


class UpdateServiceRequest(BaseModel):
    name: str | None = None
    client_price: Decimal | None = Field(default=None, ge=0)
    provider_fee: Decimal | None = Field(default=None, ge=0)
    commission_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    duration_minutes: int | None = Field(default=None, gt=0)
    weekend_bonus: Decimal | None = Field(default=None, ge=0)
    is_active: bool | None = None


class ServiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    client_price: Decimal
    provider_fee: Decimal
    commission_percentage: Decimal
    duration_minutes: int
    weekend_bonus: Decimal | None = None
    is_active: bool


# ---- Packages ----


class EntitlementItem(BaseModel):
    service_id: str
    quantity_per_cycle: int = Field(ge=0)
    cycle_days: int = Field(default=30, gt=0)


class DefinePackageRequest(BaseModel):
    entitlements: list[EntitlementItem] = Field(min_length=1)


class PackageEntitlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    package_id: str
    service_id: str
    quantity_per_cycle: int
    cycle_days: int


class ActivatePackageRequest(BaseModel):
    client_id: str
    package_id: str
    start_date: date
    expiry_date: date
    entitlements: list[EntitlementItem] = Field(default_factory=list)


class ClientPackageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    package_id: str
    start_date: date
    expiry_date: date
    status: str


class ServiceUsageResponse(BaseModel):
    service_id: str
    cycle_start: date
    used_count: int
    allowed_count: int
    remaining: int


class PackageUsageResponse(BaseModel):
    client_package_id: str
    on_date: date
    services: list[ServiceUsageResponse]


# ---- Bookings ----


class CreateBookingRequest(BaseModel):
    service_id: str
    booking_date: date
    booking_time: time
    emergency: bool = False
    client_package_id: str | None = None
    special_instructions: str | None = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    provider_id: str | None = None
    service_id: str
    booking_date: date
    booking_time: time
    duration_minutes: int
    status: str
    total_amount: Decimal
    provider_payout: Decimal | None = None
    emergency_booking: bool
    is_weekend_job: bool
    funding_source: str
    client_package_id: str | None = None
    payment_status: str
    payment_reference: str | None = None
    payout_eligible: bool
    acceptance_deadline: datetime
    special_instructions: str | None = None
    completion_notes: str | None = None
    progress_photos: list[str] | None = None
    quality_score: int | None = None
    rating: int | None = None
    review: str | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    assigned_at: datetime | None = None
    check_in_time: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class BookingActionRequest(BaseModel):
    # complete
    notes: str | None = None
    quality_score: int | None = None
    photos: list[str] = Field(default_factory=list)
    # cancel
    reason: str | None = None
    # rate
    rating: int | None = None
    review: str | None = None


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str | None = None
    provider_id: str
    batch_id: str | None = None
    payout_type: str
    amount: Decimal
    weekend_bonus: Decimal
    status: str
    payment_method: str | None = None
    notes: str | None = None
    external_reference: str | None = None
    created_at: datetime
    approved_at: datetime | None = None
    processed_at: datetime | None = None


class BookingActionResponse(BaseModel):
    booking: BookingResponse
    payout: PayoutResponse | None = None


class PaymentConfirmationRequest(BaseModel):
    reference: str


class RestoreCreditRequest(BaseModel):
    reason: str | None = None


class RestoreCreditResponse(BaseModel):
    booking_id: str
    restored: bool
    remaining: int


class ManualOverrideRequest(BaseModel):
    amount: Decimal = Field(ge=0)
    notes: str | None = None
    payment_method: str | None = None


# ---- Payout rules & batches ----


class PayoutRuleRequest(BaseModel):
    rule_name: str = "Default Rule"
    minimum_payout_amount: Decimal = Field(default=Decimal("0"), ge=0)
    payout_frequency: str = "weekly"
    payout_day: int = 5
    auto_approve_under_amount: Decimal = Field(default=Decimal("0"), ge=0)
    performance_bonus_enabled: bool = False
    performance_bonus_threshold: Decimal | None = Field(default=None, ge=0, le=5)
    performance_bonus_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    activate: bool = False


class PayoutRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rule_name: str
    minimum_payout_amount: Decimal
    payout_frequency: str
    payout_day: int
    auto_approve_under_amount: Decimal
    performance_bonus_enabled: bool
    performance_bonus_threshold: Decimal | None = None
    performance_bonus_percentage: Decimal | None = None
    is_active: bool
    next_run_date: date | None = None


class ManualPayoutRequest(BaseModel):
    provider_ids: list[str]
    confirmed: bool = False
    payment_method: str | None = None
    notes: str | None = None


class ProviderPayoutTotalResponse(BaseModel):
    provider_id: str
    total_amount: Decimal
    payout_count: int
    batch_id: str | None = None


class ManualPayoutResponse(BaseModel):
    providers: list[ProviderPayoutTotalResponse]
    total_amount: Decimal


class RunPayoutsRequest(BaseModel):
    run_date: date | None = None


class PayoutBatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_name: str
    batch_type: str
    provider_id: str | None = None
    total_amount: Decimal
    payout_count: int
    status: str
    scheduled_date: date | None = None
    created_by: str | None = None
    approved_at: datetime | None = None
    approved_by: str | None = None
    approval_notes: str | None = None
    processed_at: datetime | None = None
    external_reference: str | None = None
    created_at: datetime


class PayoutBatchDetailResponse(PayoutBatchResponse):
    payouts: list[PayoutResponse] = Field(default_factory=list)


class RunSummaryResponse(BaseModel):
    run_date: date
    rule_id: str
    batches: list[PayoutBatchResponse]
    skipped_providers: list[str]
    total_amount: Decimal


class ApproveBatchRequest(BaseModel):
    notes: str | None = None


class SettleBatchRequest(BaseModel):
    reference: str | None = None


# ---- Reconciliation ----


class BookingDiscrepancyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    provider_id: str | None = None
    revenue: Decimal
    payouts: Decimal
    observed_commission: Decimal
    expected_commission: Decimal
    difference: Decimal


class ReconciliationReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    period_start: date
    period_end: date
    total_revenue: Decimal
    total_payouts: Decimal
    platform_commission: Decimal
    expected_commission: Decimal
    discrepancy_amount: Decimal
    status: str
    notes: str | None = None
    reconciled_by: str | None = None
    reconciled_at: datetime | None = None
    created_at: datetime


class ReconciliationResponse(BaseModel):
    report: ReconciliationReportResponse
    details: list[BookingDiscrepancyResponse] = Field(default_factory=list)


class CloseReportRequest(BaseModel):
    notes: str | None = None
