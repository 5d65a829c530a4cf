# Transactional outbox. Rows are added to the caller's session and commit or
# roll back with the mutation that produced them.
import logging
from datetime import date, datetime
from decimal import Decimal

from salonbook.models import DomainEvent

logger = logging.getLogger(__name__)

HOLD_CONSUMED = "HoldConsumed"
BOOKING_CREATED = "BookingCreated"
BOOKING_CANCELLED = "BookingCancelled"
BOOKING_RESCHEDULED = "BookingRescheduled"
PAY_RUN_CREATED = "PayRunCreated"


def _jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class OutboxEmitter:
    def __init__(self, session):
        self.session = session

    def emit(self, event_type: str, aggregate_id, payload=None) -> DomainEvent:
        event = DomainEvent(
            event_type=event_type,
            aggregate_id=str(aggregate_id),
            payload=_jsonable(payload or {}),
            created_at=datetime.now(),
        )
        self.session.add(event)
        logger.debug(f"Queued {event_type} for {aggregate_id}")
        return event
