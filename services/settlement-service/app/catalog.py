import logging
from decimal import Decimal

from sqlalchemy import select

from .cache import ReferenceCache, service_key
from .errors import NotFound, ValidationError
from .models import Service, utcnow
from .payouts import ZERO, q

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "name",
    "client_price",
    "provider_fee",
    "commission_percentage",
    "duration_minutes",
    "weekend_bonus",
    "is_active",
)


def _check(values: dict):
    for key in ("client_price", "provider_fee", "weekend_bonus"):
        if values.get(key) is not None and q(values[key]) < ZERO:
            raise ValidationError(f"{key} cannot be negative")
    pct = values.get("commission_percentage")
    if pct is not None and not Decimal(0) <= Decimal(str(pct)) <= Decimal(100):
        raise ValidationError("commission_percentage must be between 0 and 100")
    minutes = values.get("duration_minutes")
    if minutes is not None and minutes <= 0:
        raise ValidationError("duration_minutes must be positive")
    if "name" in values and not (values["name"] or "").strip():
        raise ValidationError("name is required")


class ServiceCatalog:
    """Admin-maintained reference data: prices, provider fees, commission."""

    def __init__(self, session_factory, cache: ReferenceCache | None = None, clock=utcnow):
        self.session_factory = session_factory
        self.cache = cache or ReferenceCache()
        self.clock = clock

    async def create_service(
        self,
        name: str,
        client_price,
        provider_fee,
        commission_percentage=ZERO,
        duration_minutes: int = 60,
        weekend_bonus=None,
        is_active: bool = True,
    ) -> Service:
        values = dict(
            name=name,
            client_price=client_price,
            provider_fee=provider_fee,
            commission_percentage=commission_percentage,
            duration_minutes=duration_minutes,
            weekend_bonus=weekend_bonus,
        )
        _check(values)

        now = self.clock()
        async with self.session_factory() as db:
            service = Service(
                name=name.strip(),
                client_price=q(client_price),
                provider_fee=q(provider_fee),
                commission_percentage=q(commission_percentage),
                duration_minutes=duration_minutes,
                weekend_bonus=None if weekend_bonus is None else q(weekend_bonus),
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            db.add(service)
            await db.commit()

        logger.info("[settlement-service] service %s (%s) created", service.id, service.name)
        return service

    async def update_service(self, service_id: str, **changes) -> Service:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown service fields: {', '.join(sorted(unknown))}")
        if any(v is None for k, v in changes.items() if k != "weekend_bonus"):
            raise ValidationError("Only weekend_bonus can be cleared")
        _check(changes)

        async with self.session_factory() as db:
            service = await db.get(Service, service_id)
            if not service:
                raise NotFound("Service not found")

            for key, value in changes.items():
                if key in ("client_price", "provider_fee", "commission_percentage"):
                    value = q(value)
                elif key == "weekend_bonus" and value is not None:
                    value = q(value)
                setattr(service, key, value)
            service.updated_at = self.clock()
            await db.commit()

        # bookings already created keep the price and payout terms they copied
        await self.cache.invalidate(service_key(service_id))
        return service

    async def get_service(self, service_id: str) -> Service:
        async with self.session_factory() as db:
            service = await db.get(Service, service_id)
            if not service:
                raise NotFound("Service not found")
            return service

    async def list_services(self, active_only: bool = True) -> list[Service]:
        async with self.session_factory() as db:
            stmt = select(Service).order_by(Service.name)
            if active_only:
                stmt = stmt.where(Service.is_active.is_(True))
            res = await db.execute(stmt)
            return list(res.scalars().all())
