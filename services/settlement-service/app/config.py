import os
from dataclasses import dataclass, field
from decimal import Decimal

SERVICE_NAME = "settlement-service"


def _bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _weekdays(value: str | None) -> frozenset[int]:
    # python weekday numbers, Monday=0 ... Sunday=6
    if not value:
        return frozenset({5, 6})
    return frozenset(int(x) for x in value.split(",") if x.strip())


def _decimal(value: str | None) -> Decimal | None:
    if value is None or value.strip() == "":
        return None
    return Decimal(value.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    rabbit_url: str | None = None
    redis_url: str | None = None

    acceptance_window_minutes: int = 30
    weekend_days: frozenset[int] = field(default_factory=lambda: frozenset({5, 6}))
    weekend_bonus_amount: Decimal = Decimal("50.00")
    weekend_bonus_percentage: Decimal | None = None
    package_jobs_payout_eligible: bool = True

    performance_window_days: int = 30
    reconciliation_tolerance: Decimal = Decimal("1.00")

    payout_scheduler_interval_seconds: float = 300.0
    reference_cache_ttl_seconds: int = 300


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("SETTLEMENT_DB"),
        rabbit_url=os.getenv("RABBIT_URL"),  # optional in dev, required if you want events
        redis_url=os.getenv("REDIS_URL"),
        acceptance_window_minutes=int(os.getenv("ACCEPTANCE_WINDOW_MINUTES") or "30"),
        weekend_days=_weekdays(os.getenv("WEEKEND_DAYS")),
        weekend_bonus_amount=_decimal(os.getenv("WEEKEND_BONUS_AMOUNT")) or Decimal("50.00"),
        weekend_bonus_percentage=_decimal(os.getenv("WEEKEND_BONUS_PERCENTAGE")),
        package_jobs_payout_eligible=_bool(os.getenv("PACKAGE_JOBS_PAYOUT_ELIGIBLE"), True),
        performance_window_days=int(os.getenv("PERFORMANCE_WINDOW_DAYS") or "30"),
        reconciliation_tolerance=_decimal(os.getenv("RECONCILIATION_TOLERANCE")) or Decimal("1.00"),
        payout_scheduler_interval_seconds=float(os.getenv("PAYOUT_SCHEDULER_INTERVAL_SECONDS") or "300"),
        reference_cache_ttl_seconds=int(os.getenv("REFERENCE_CACHE_TTL_SECONDS") or "300"),
    )
