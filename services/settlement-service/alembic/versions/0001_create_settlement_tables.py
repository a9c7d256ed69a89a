from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade():
    op.create_table(
        "services",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("client_price", MONEY, nullable=False),
        sa.Column("provider_fee", MONEY, nullable=False),
        sa.Column("commission_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("weekend_bonus", MONEY, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "client_packages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("package_id", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_client_packages_client_id", "client_packages", ["client_id"], unique=False)
    op.create_index("ix_client_packages_package_id", "client_packages", ["package_id"], unique=False)

    op.create_table(
        "package_entitlements",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("package_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("quantity_per_cycle", sa.Integer(), nullable=False),
        sa.Column("cycle_days", sa.Integer(), nullable=False, server_default="30"),
        sa.UniqueConstraint("package_id", "service_id", name="uq_package_entitlements_service"),
    )
    op.create_index("ix_package_entitlements_package_id", "package_entitlements", ["package_id"], unique=False)

    op.create_table(
        "entitlement_counters",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("client_package_id", sa.String(36), sa.ForeignKey("client_packages.id"), nullable=False),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("cycle_start", sa.Date(), nullable=False),
        sa.Column("granted_quantity", sa.Integer(), nullable=False),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("client_package_id", "service_id", "cycle_start", name="uq_entitlement_counters_cycle"),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=True),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("booking_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("special_instructions", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("provider_payout", MONEY, nullable=True),
        sa.Column("quoted_provider_fee", MONEY, nullable=False),
        sa.Column("quoted_weekend_bonus", MONEY, nullable=False),
        sa.Column("emergency_booking", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_weekend_job", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("funding_source", sa.String(), nullable=False, server_default="pay_per_job"),
        sa.Column("client_package_id", sa.String(36), sa.ForeignKey("client_packages.id"), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=False, server_default="unpaid"),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("payout_eligible", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("acceptance_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completion_notes", sa.Text(), nullable=True),
        sa.Column("progress_photos", sa.JSON(), nullable=True),
        sa.Column("quality_score", sa.Integer(), nullable=True),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("review", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_in_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"], unique=False)
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"], unique=False)
    op.create_index("ix_bookings_service_id", "bookings", ["service_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_completed_at", "bookings", ["completed_at"], unique=False)

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("client_package_id", sa.String(36), sa.ForeignKey("client_packages.id"), nullable=False),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("cycle_start", sa.Date(), nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("restored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_by", sa.String(), nullable=True),
        sa.Column("restore_reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_usage_logs_client_package_id", "usage_logs", ["client_package_id"], unique=False)
    op.create_index("ix_usage_logs_booking_id", "usage_logs", ["booking_id"], unique=False)

    op.create_table(
        "payout_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("rule_name", sa.String(), nullable=False),
        sa.Column("minimum_payout_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("payout_frequency", sa.String(), nullable=False, server_default="weekly"),
        sa.Column("payout_day", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("auto_approve_under_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("performance_bonus_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("performance_bonus_threshold", sa.Numeric(3, 2), nullable=True),
        sa.Column("performance_bonus_percentage", sa.Numeric(5, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "uq_payout_rules_single_active",
        "payout_rules",
        ["is_active"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "payout_batches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("batch_name", sa.String(), nullable=False),
        sa.Column("batch_type", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=True),
        sa.Column("total_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("payout_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payout_batches_provider_id", "payout_batches", ["provider_id"], unique=False)
    op.create_index("ix_payout_batches_status", "payout_batches", ["status"], unique=False)

    op.create_table(
        "payouts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=True),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("payout_batches.id"), nullable=True),
        sa.Column("payout_type", sa.String(), nullable=False, server_default="job"),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("weekend_bonus", MONEY, nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("external_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payouts_provider_id", "payouts", ["provider_id"], unique=False)
    op.create_index("ix_payouts_batch_id", "payouts", ["batch_id"], unique=False)
    op.create_index("ix_payouts_status", "payouts", ["status"], unique=False)
    op.create_index("ix_payouts_created_at", "payouts", ["created_at"], unique=False)
    op.create_index(
        "uq_payouts_booking_active",
        "payouts",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'voided'"),
    )

    op.create_table(
        "reconciliation_reports",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("total_revenue", MONEY, nullable=False),
        sa.Column("total_payouts", MONEY, nullable=False),
        sa.Column("platform_commission", MONEY, nullable=False),
        sa.Column("expected_commission", MONEY, nullable=False),
        sa.Column("discrepancy_amount", MONEY, nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("reconciled_by", sa.String(), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("reconciliation_reports")
    op.drop_index("uq_payouts_booking_active", table_name="payouts")
    op.drop_index("ix_payouts_created_at", table_name="payouts")
    op.drop_index("ix_payouts_status", table_name="payouts")
    op.drop_index("ix_payouts_batch_id", table_name="payouts")
    op.drop_index("ix_payouts_provider_id", table_name="payouts")
    op.drop_table("payouts")
    op.drop_index("ix_payout_batches_status", table_name="payout_batches")
    op.drop_index("ix_payout_batches_provider_id", table_name="payout_batches")
    op.drop_table("payout_batches")
    op.drop_index("uq_payout_rules_single_active", table_name="payout_rules")
    op.drop_table("payout_rules")
    op.drop_index("ix_usage_logs_booking_id", table_name="usage_logs")
    op.drop_index("ix_usage_logs_client_package_id", table_name="usage_logs")
    op.drop_table("usage_logs")
    op.drop_index("ix_bookings_completed_at", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_service_id", table_name="bookings")
    op.drop_index("ix_bookings_provider_id", table_name="bookings")
    op.drop_index("ix_bookings_client_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("entitlement_counters")
    op.drop_index("ix_package_entitlements_package_id", table_name="package_entitlements")
    op.drop_table("package_entitlements")
    op.drop_index("ix_client_packages_package_id", table_name="client_packages")
    op.drop_index("ix_client_packages_client_id", table_name="client_packages")
    op.drop_table("client_packages")
    op.drop_table("services")
