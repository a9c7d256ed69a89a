import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)

from .db import Base

MONEY = Numeric(12, 2)


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (PENDING, ACCEPTED, IN_PROGRESS, COMPLETED, CANCELLED)
    TERMINAL = (COMPLETED, CANCELLED)


class PayoutStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    VOIDED = "voided"


class BatchStatus:
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"

    APPROVED_OR_LATER = (APPROVED, PROCESSING, COMPLETED)


class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    client_price = Column(MONEY, nullable=False)
    # provider_fee and commission_percentage are edited independently by admins
    provider_fee = Column(MONEY, nullable=False)
    commission_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    duration_minutes = Column(Integer, nullable=False, default=60)
    weekend_bonus = Column(MONEY, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    client_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=True, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False, index=True)

    booking_date = Column(Date, nullable=False)
    booking_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    special_instructions = Column(Text, nullable=True)

    status = Column(String, nullable=False, index=True, default=BookingStatus.PENDING)

    total_amount = Column(MONEY, nullable=False)
    provider_payout = Column(MONEY, nullable=True)
    # payout terms copied from the service when the booking is created
    quoted_provider_fee = Column(MONEY, nullable=False)
    quoted_weekend_bonus = Column(MONEY, nullable=False)
    emergency_booking = Column(Boolean, nullable=False, default=False)
    is_weekend_job = Column(Boolean, nullable=False, default=False)

    funding_source = Column(String, nullable=False, default="pay_per_job")  # pay_per_job/package
    client_package_id = Column(String(36), ForeignKey("client_packages.id"), nullable=True)
    payment_status = Column(String, nullable=False, default="unpaid")  # unpaid/paid/covered
    payment_reference = Column(String, nullable=True)
    payout_eligible = Column(Boolean, nullable=False, default=True)

    acceptance_deadline = Column(DateTime(timezone=True), nullable=False)

    completion_notes = Column(Text, nullable=True)
    progress_photos = Column(JSON, nullable=True)
    quality_score = Column(Integer, nullable=True)
    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    check_in_time = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True, index=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ClientPackage(Base):
    __tablename__ = "client_packages"

    id = Column(String(36), primary_key=True, default=_uuid)
    client_id = Column(String, nullable=False, index=True)
    package_id = Column(String, nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default="active")  # active/expired/cancelled
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class PackageEntitlement(Base):
    __tablename__ = "package_entitlements"
    __table_args__ = (UniqueConstraint("package_id", "service_id", name="uq_package_entitlements_service"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    package_id = Column(String, nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    quantity_per_cycle = Column(Integer, nullable=False)
    cycle_days = Column(Integer, nullable=False, default=30)


class EntitlementCounter(Base):
    """
    Compare-and-swap target for credit consumption: one row per package, service and cycle.
    """

    __tablename__ = "entitlement_counters"
    __table_args__ = (
        UniqueConstraint("client_package_id", "service_id", "cycle_start", name="uq_entitlement_counters_cycle"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    client_package_id = Column(String(36), ForeignKey("client_packages.id"), nullable=False)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    cycle_start = Column(Date, nullable=False)
    granted_quantity = Column(Integer, nullable=False)
    used_count = Column(Integer, nullable=False, default=0)


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    client_package_id = Column(String(36), ForeignKey("client_packages.id"), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)
    cycle_start = Column(Date, nullable=False)
    booking_id = Column(String(36), nullable=True, index=True)
    used_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # append-only: a restore stamps these once, the row itself stays
    restored_at = Column(DateTime(timezone=True), nullable=True)
    restored_by = Column(String, nullable=True)
    restore_reason = Column(Text, nullable=True)


class PayoutRule(Base):
    __tablename__ = "payout_rules"
    __table_args__ = (
        Index(
            "uq_payout_rules_single_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    rule_name = Column(String, nullable=False)
    minimum_payout_amount = Column(MONEY, nullable=False, default=0)
    payout_frequency = Column(String, nullable=False, default="weekly")  # weekly/bi-weekly/monthly
    payout_day = Column(Integer, nullable=False, default=5)
    auto_approve_under_amount = Column(MONEY, nullable=False, default=0)
    performance_bonus_enabled = Column(Boolean, nullable=False, default=False)
    performance_bonus_threshold = Column(Numeric(3, 2), nullable=True)
    performance_bonus_percentage = Column(Numeric(5, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class PayoutBatch(Base):
    __tablename__ = "payout_batches"

    id = Column(String(36), primary_key=True, default=_uuid)
    batch_name = Column(String, nullable=False)
    batch_type = Column(String, nullable=False)  # scheduled/manual_trigger/manual
    provider_id = Column(String, nullable=True, index=True)
    total_amount = Column(MONEY, nullable=False, default=0)
    payout_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=BatchStatus.DRAFT, index=True)
    scheduled_date = Column(Date, nullable=True)
    created_by = Column(String, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(String, nullable=True)
    approval_notes = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    external_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        Index(
            "uq_payouts_booking_active",
            "booking_id",
            unique=True,
            postgresql_where=text("status <> 'voided'"),
            sqlite_where=text("status <> 'voided'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=True)
    provider_id = Column(String, nullable=False, index=True)
    batch_id = Column(String(36), ForeignKey("payout_batches.id"), nullable=True, index=True)

    payout_type = Column(String, nullable=False, default="job")  # job/performance_bonus/manual_override
    amount = Column(MONEY, nullable=False)
    weekend_bonus = Column(MONEY, nullable=False, default=0)
    status = Column(String, nullable=False, default=PayoutStatus.PENDING, index=True)
    payment_method = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    external_reference = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class ReconciliationReport(Base):
    __tablename__ = "reconciliation_reports"

    id = Column(String(36), primary_key=True, default=_uuid)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    total_revenue = Column(MONEY, nullable=False)
    total_payouts = Column(MONEY, nullable=False)
    platform_commission = Column(MONEY, nullable=False)
    expected_commission = Column(MONEY, nullable=False)
    discrepancy_amount = Column(MONEY, nullable=False)
    status = Column(String, nullable=False)  # balanced/discrepancy/reconciled
    notes = Column(Text, nullable=True)
    reconciled_by = Column(String, nullable=True)
    reconciled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
