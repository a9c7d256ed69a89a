import json
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import PayoutRule, Service

logger = logging.getLogger(__name__)

ACTIVE_RULE_KEY = "settlement:payout_rule:active"


def service_key(service_id: str) -> str:
    return f"settlement:service:{service_id}"


def _dec(value):
    return None if value is None else Decimal(str(value))


@dataclass(frozen=True)
class ServiceSnapshot:
    id: str
    name: str
    client_price: Decimal
    provider_fee: Decimal
    commission_percentage: Decimal
    duration_minutes: int
    weekend_bonus: Decimal | None
    is_active: bool

    @classmethod
    def from_model(cls, s: Service) -> "ServiceSnapshot":
        return cls(
            id=s.id,
            name=s.name,
            client_price=_dec(s.client_price),
            provider_fee=_dec(s.provider_fee),
            commission_percentage=_dec(s.commission_percentage) or Decimal("0"),
            duration_minutes=s.duration_minutes,
            weekend_bonus=_dec(s.weekend_bonus),
            is_active=bool(s.is_active),
        )

    @classmethod
    def from_json(cls, raw: str) -> "ServiceSnapshot":
        d = json.loads(raw)
        for k in ("client_price", "provider_fee", "commission_percentage", "weekend_bonus"):
            d[k] = _dec(d[k])
        return cls(**d)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


@dataclass(frozen=True)
class RuleSnapshot:
    id: str
    rule_name: str
    minimum_payout_amount: Decimal
    payout_frequency: str
    payout_day: int
    auto_approve_under_amount: Decimal
    performance_bonus_enabled: bool
    performance_bonus_threshold: Decimal | None
    performance_bonus_percentage: Decimal | None

    @classmethod
    def from_model(cls, r: PayoutRule) -> "RuleSnapshot":
        return cls(
            id=r.id,
            rule_name=r.rule_name,
            minimum_payout_amount=_dec(r.minimum_payout_amount) or Decimal("0"),
            payout_frequency=r.payout_frequency,
            payout_day=r.payout_day,
            auto_approve_under_amount=_dec(r.auto_approve_under_amount) or Decimal("0"),
            performance_bonus_enabled=bool(r.performance_bonus_enabled),
            performance_bonus_threshold=_dec(r.performance_bonus_threshold),
            performance_bonus_percentage=_dec(r.performance_bonus_percentage),
        )

    @classmethod
    def from_json(cls, raw: str) -> "RuleSnapshot":
        d = json.loads(raw)
        for k in (
            "minimum_payout_amount",
            "auto_approve_under_amount",
            "performance_bonus_threshold",
            "performance_bonus_percentage",
        ):
            d[k] = _dec(d[k])
        return cls(**d)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


class ReferenceCache:
    """
    Read-through cache for read-mostly reference data (services, the active payout rule).
    Redis is optional; any redis failure falls back to the database.
    """

    def __init__(self, redis_client=None, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def _get(self, key: str) -> str | None:
        if self.redis is None:
            return None
        try:
            return await self.redis.get(key)
        except Exception as e:
            logger.warning("[settlement-service] cache read failed for %s: %s", key, e)
            return None

    async def _set(self, key: str, value: str):
        if self.redis is None:
            return
        try:
            await self.redis.set(key, value, ex=self.ttl_seconds)
        except Exception as e:
            logger.warning("[settlement-service] cache write failed for %s: %s", key, e)

    async def invalidate(self, *keys: str):
        if self.redis is None or not keys:
            return
        try:
            await self.redis.delete(*keys)
        except Exception as e:
            logger.warning("[settlement-service] cache invalidate failed: %s", e)

    async def get_service(self, db: AsyncSession, service_id: str) -> ServiceSnapshot | None:
        cached = await self._get(service_key(service_id))
        if cached:
            return ServiceSnapshot.from_json(cached)

        service = await db.get(Service, service_id)
        if not service:
            return None
        snap = ServiceSnapshot.from_model(service)
        await self._set(service_key(service_id), snap.to_json())
        return snap

    async def get_active_rule(self, db: AsyncSession) -> RuleSnapshot | None:
        cached = await self._get(ACTIVE_RULE_KEY)
        if cached:
            return RuleSnapshot.from_json(cached)

        res = await db.execute(select(PayoutRule).where(PayoutRule.is_active.is_(True)))
        rule = res.scalar_one_or_none()
        if not rule:
            return None
        snap = RuleSnapshot.from_model(rule)
        await self._set(ACTIVE_RULE_KEY, snap.to_json())
        return snap
