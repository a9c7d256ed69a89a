"""
Entitlement ledger: prepaid package credits.

Consumption is a compare-and-swap on entitlement_counters.used_count, so two
devices booking against the same package at the same moment can never push
usage past the granted quantity. Every consumption also appends a usage_logs
row in the same transaction; restores stamp that row, they never delete it.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidTransition, NotFound, ValidationError
from .models import (
    Booking,
    BookingStatus,
    ClientPackage,
    EntitlementCounter,
    PackageEntitlement,
    UsageLog,
    utcnow,
)

logger = logging.getLogger(__name__)

NO_ACTIVE_PACKAGE = "NoActivePackage"
SERVICE_NOT_INCLUDED = "ServiceNotIncluded"
NO_ENTITLEMENT = "NoEntitlement"


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    remaining: int
    reason: str | None = None
    usage_log_id: str | None = None
    cycle_start: date | None = None


@dataclass(frozen=True)
class RestoreResult:
    booking_id: str
    restored: bool
    remaining: int


@dataclass(frozen=True)
class ServiceUsage:
    service_id: str
    cycle_start: date
    used_count: int
    allowed_count: int

    @property
    def remaining(self) -> int:
        return max(0, self.allowed_count - self.used_count)


def cycle_start_for(package_start: date, cycle_days: int, on_date: date) -> date:
    if cycle_days <= 0:
        raise ValidationError("cycle_days must be positive")
    elapsed = (on_date - package_start).days
    return package_start + timedelta(days=cycle_days * (elapsed // cycle_days))


def _insert_ignore(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert


async def _ensure_counter(db: AsyncSession, client_package_id: str, service_id: str, cycle_start: date, granted: int):
    insert = _insert_ignore(db)
    if insert is not None:
        stmt = (
            insert(EntitlementCounter)
            .values(
                client_package_id=client_package_id,
                service_id=service_id,
                cycle_start=cycle_start,
                granted_quantity=granted,
                used_count=0,
            )
            .on_conflict_do_nothing(index_elements=["client_package_id", "service_id", "cycle_start"])
        )
        await db.execute(stmt)
        return

    # other dialects: savepoint + unique constraint
    try:
        async with db.begin_nested():
            db.add(
                EntitlementCounter(
                    client_package_id=client_package_id,
                    service_id=service_id,
                    cycle_start=cycle_start,
                    granted_quantity=granted,
                    used_count=0,
                )
            )
    except IntegrityError:
        pass


async def _load_counter(db: AsyncSession, client_package_id: str, service_id: str, cycle_start: date):
    res = await db.execute(
        select(EntitlementCounter)
        .where(
            EntitlementCounter.client_package_id == client_package_id,
            EntitlementCounter.service_id == service_id,
            EntitlementCounter.cycle_start == cycle_start,
        )
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


class EntitlementLedger:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def try_consume(
        self,
        db: AsyncSession,
        client_id: str,
        service_id: str,
        client_package_id: str,
        on_date: date,
        booking_id: str | None = None,
    ) -> ConsumeResult:
        """
        Check-and-insert inside the caller's transaction.
        The caller commits (booking creation) or rolls back (any later failure).
        """
        pkg = await db.get(ClientPackage, client_package_id)
        if (
            not pkg
            or pkg.client_id != client_id
            or pkg.status != "active"
            or not (pkg.start_date <= on_date <= pkg.expiry_date)
        ):
            return ConsumeResult(success=False, remaining=0, reason=NO_ACTIVE_PACKAGE)

        res = await db.execute(
            select(PackageEntitlement).where(
                PackageEntitlement.package_id == pkg.package_id,
                PackageEntitlement.service_id == service_id,
            )
        )
        entitlement = res.scalar_one_or_none()
        if not entitlement:
            return ConsumeResult(success=False, remaining=0, reason=SERVICE_NOT_INCLUDED)

        cycle_start = cycle_start_for(pkg.start_date, entitlement.cycle_days, on_date)
        await _ensure_counter(db, pkg.id, service_id, cycle_start, entitlement.quantity_per_cycle)

        swapped = await db.execute(
            update(EntitlementCounter)
            .where(
                EntitlementCounter.client_package_id == pkg.id,
                EntitlementCounter.service_id == service_id,
                EntitlementCounter.cycle_start == cycle_start,
                EntitlementCounter.used_count < EntitlementCounter.granted_quantity,
            )
            .values(used_count=EntitlementCounter.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        counter = await _load_counter(db, pkg.id, service_id, cycle_start)
        remaining = max(0, counter.granted_quantity - counter.used_count) if counter else 0

        if swapped.rowcount == 0:
            return ConsumeResult(success=False, remaining=remaining, reason=NO_ENTITLEMENT, cycle_start=cycle_start)

        log = UsageLog(
            client_package_id=pkg.id,
            service_id=service_id,
            cycle_start=cycle_start,
            booking_id=booking_id,
        )
        db.add(log)
        await db.flush()

        return ConsumeResult(
            success=True,
            remaining=remaining,
            usage_log_id=log.id,
            cycle_start=cycle_start,
        )

    async def consume(
        self,
        client_id: str,
        service_id: str,
        client_package_id: str,
        on_date: date,
        booking_id: str | None = None,
    ) -> ConsumeResult:
        async with self.session_factory() as db:
            result = await self.try_consume(db, client_id, service_id, client_package_id, on_date, booking_id)
            if result.success:
                await db.commit()
            else:
                await db.rollback()
            return result

    async def restore_credit(self, booking_id: str, restored_by: str, reason: str | None = None) -> RestoreResult:
        """
        Compensating credit restore for a cancelled package booking.
        Never automatic: an admin (or a policy job) calls this explicitly.
        """
        async with self.session_factory() as db:
            booking = await db.get(Booking, booking_id)
            if not booking:
                raise NotFound("Booking not found")
            if booking.funding_source != "package":
                raise ValidationError("Only package-funded bookings carry a credit to restore")
            if booking.status != BookingStatus.CANCELLED:
                raise InvalidTransition(booking.status, "restore_credit")

            res = await db.execute(select(UsageLog).where(UsageLog.booking_id == booking_id))
            log = res.scalar_one_or_none()
            if not log:
                raise NotFound("No credit consumption recorded for this booking")

            stamped = await db.execute(
                update(UsageLog)
                .where(UsageLog.id == log.id, UsageLog.restored_at.is_(None))
                .values(restored_at=utcnow(), restored_by=restored_by, restore_reason=reason)
                .execution_options(synchronize_session=False)
            )

            restored = stamped.rowcount == 1
            if restored:
                await db.execute(
                    update(EntitlementCounter)
                    .where(
                        EntitlementCounter.client_package_id == log.client_package_id,
                        EntitlementCounter.service_id == log.service_id,
                        EntitlementCounter.cycle_start == log.cycle_start,
                        EntitlementCounter.used_count > 0,
                    )
                    .values(used_count=EntitlementCounter.used_count - 1)
                    .execution_options(synchronize_session=False)
                )

            counter = await _load_counter(db, log.client_package_id, log.service_id, log.cycle_start)
            await db.commit()

        if restored:
            logger.info("[settlement-service] credit restored for booking %s by %s", booking_id, restored_by)
        remaining = max(0, counter.granted_quantity - counter.used_count) if counter else 0
        return RestoreResult(booking_id=booking_id, restored=restored, remaining=remaining)

    async def usage(self, client_package_id: str, on_date: date) -> list[ServiceUsage]:
        async with self.session_factory() as db:
            pkg = await db.get(ClientPackage, client_package_id)
            if not pkg:
                raise NotFound("Package not found")

            res = await db.execute(
                select(PackageEntitlement)
                .where(PackageEntitlement.package_id == pkg.package_id)
                .order_by(PackageEntitlement.service_id)
            )

            usages = []
            for ent in res.scalars().all():
                cycle_start = cycle_start_for(pkg.start_date, ent.cycle_days, on_date)
                counter = await _load_counter(db, pkg.id, ent.service_id, cycle_start)
                usages.append(
                    ServiceUsage(
                        service_id=ent.service_id,
                        cycle_start=cycle_start,
                        used_count=counter.used_count if counter else 0,
                        allowed_count=counter.granted_quantity if counter else ent.quantity_per_cycle,
                    )
                )
            return usages

    async def _definition(self, db: AsyncSession, package_id: str) -> dict[str, PackageEntitlement]:
        res = await db.execute(select(PackageEntitlement).where(PackageEntitlement.package_id == package_id))
        return {e.service_id: e for e in res.scalars().all()}

    async def define_entitlements(self, package_id: str, items: list[tuple[str, int, int]]) -> list[PackageEntitlement]:
        """
        Admin edit of a package definition; items are (service_id, quantity_per_cycle, cycle_days).
        Cycles already opened keep the quantity they were granted.
        """
        if not package_id:
            raise ValidationError("package_id is required")
        async with self.session_factory() as db:
            existing = await self._definition(db, package_id)
            for service_id, quantity, cycle_days in items:
                if quantity < 0 or cycle_days <= 0:
                    raise ValidationError("quantity must be >= 0 and cycle_days > 0")
                ent = existing.get(service_id)
                if ent:
                    ent.quantity_per_cycle = quantity
                    ent.cycle_days = cycle_days
                else:
                    ent = PackageEntitlement(
                        package_id=package_id,
                        service_id=service_id,
                        quantity_per_cycle=quantity,
                        cycle_days=cycle_days,
                    )
                    db.add(ent)
                    existing[service_id] = ent
            await db.commit()

        logger.info("[settlement-service] package %s definition updated (%d services)", package_id, len(items))
        return sorted(existing.values(), key=lambda e: e.service_id)

    async def get_entitlements(self, package_id: str) -> list[PackageEntitlement]:
        async with self.session_factory() as db:
            existing = await self._definition(db, package_id)
        return sorted(existing.values(), key=lambda e: e.service_id)

    async def activate_package(
        self,
        client_id: str,
        package_id: str,
        start_date: date,
        expiry_date: date,
        entitlements: list[tuple[str, int, int]] | None = None,
    ) -> ClientPackage:
        """
        Registers a client on a package. Entitlements may only seed a package
        that has no definition yet; for a defined package they must match it.
        """
        if not client_id or not package_id:
            raise ValidationError("client_id and package_id are required")
        if expiry_date < start_date:
            raise ValidationError("expiry_date must be on or after start_date")

        async with self.session_factory() as db:
            existing = await self._definition(db, package_id)
            if entitlements:
                requested = {service_id: (quantity, cycle_days) for service_id, quantity, cycle_days in entitlements}
                if existing:
                    defined = {sid: (e.quantity_per_cycle, e.cycle_days) for sid, e in existing.items()}
                    if requested != defined:
                        raise ValidationError(f"Entitlements conflict with the definition of package {package_id}")
                else:
                    for service_id, (quantity, cycle_days) in requested.items():
                        if quantity < 0 or cycle_days <= 0:
                            raise ValidationError("quantity must be >= 0 and cycle_days > 0")
                        db.add(
                            PackageEntitlement(
                                package_id=package_id,
                                service_id=service_id,
                                quantity_per_cycle=quantity,
                                cycle_days=cycle_days,
                            )
                        )
            elif not existing:
                raise ValidationError(f"Package {package_id} has no entitlements defined")

            pkg = ClientPackage(
                client_id=client_id,
                package_id=package_id,
                start_date=start_date,
                expiry_date=expiry_date,
                status="active",
            )
            db.add(pkg)
            await db.commit()

        logger.info("[settlement-service] package %s activated for client %s", package_id, client_id)
        return pkg

