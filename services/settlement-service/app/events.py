import logging

from shared.events import build_event, to_json

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_ASSIGNED = "booking.assigned"
BOOKING_STARTED = "booking.started"
BOOKING_COMPLETED = "booking.completed"
BOOKING_CANCELLED = "booking.cancelled"
PAYOUT_READY = "payout.ready"
RECONCILIATION_DISCREPANCY = "reconciliation.discrepancy"


class EventEmitter:
    """
    Publishes notify events after the owning transaction has committed.
    At-most-once: a failed publish is logged and dropped.
    """

    def __init__(self, publisher=None):
        self.publisher = publisher

    async def emit(self, event_type: str, data: dict):
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(event_type, to_json(build_event(event_type, data)))
        except Exception as e:
            logger.warning("[settlement-service] dropping %s event: %s", event_type, e)
