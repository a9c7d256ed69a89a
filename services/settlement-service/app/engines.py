from dataclasses import dataclass

from .batches import PayoutBatchEngine
from .bookings import BookingStateMachine
from .cache import ReferenceCache
from .catalog import ServiceCatalog
from .events import EventEmitter
from .ledger import EntitlementLedger
from .models import utcnow
from .payouts import PayoutService
from .reconciliation import ReconciliationReporter


@dataclass
class Engines:
    catalog: ServiceCatalog
    ledger: EntitlementLedger
    bookings: BookingStateMachine
    payouts: PayoutService
    batches: PayoutBatchEngine
    reconciliation: ReconciliationReporter


def build_engines(session_factory, settings, publisher=None, redis_client=None, clock=utcnow) -> Engines:
    """Wires every component against one session factory, publisher and (optional) redis."""
    emitter = EventEmitter(publisher)
    cache = ReferenceCache(redis_client, ttl_seconds=settings.reference_cache_ttl_seconds)
    ledger = EntitlementLedger(session_factory)

    return Engines(
        catalog=ServiceCatalog(session_factory, cache=cache, clock=clock),
        ledger=ledger,
        bookings=BookingStateMachine(session_factory, ledger, emitter, settings, cache=cache, clock=clock),
        payouts=PayoutService(session_factory, clock=clock),
        batches=PayoutBatchEngine(session_factory, emitter, settings, cache=cache, clock=clock),
        reconciliation=ReconciliationReporter(session_factory, emitter, settings, clock=clock),
    )
