"""
Booking creation, cancellation and rescheduling.

Creation re-checks every service against committed bookings and time blocks
and only flushes, so the caller (the hold manager) decides when the
transaction commits.
"""
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, List, Optional

from salonbook.errors import ConflictError, NotFoundError, ValidationError
from salonbook.models import Booking, BookingService
from salonbook.services.availability import AvailabilityLoader
from salonbook.services.cache import safe_invalidate
from salonbook.services.events import BOOKING_CANCELLED, BOOKING_RESCHEDULED
from salonbook.services.intervals import DurationWithBuffer, TimeInterval

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("card", "cash", "giftcard")
PAYMENT_OPTIONS = ("deposit", "full")
OPEN_STATUSES = ("pending", "confirmed")

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_booking_number(on_day: date) -> str:
    """BK-YYYYMMDD-XXXXXX"""
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(6))
    return f"BK-{on_day.strftime('%Y%m%d')}-{suffix}"


@dataclass(frozen=True)
class DraftService:
    offering_id: int
    staff_id: Optional[int]
    start: datetime
    end: datetime
    duration_minutes: int
    price: Decimal
    currency: Optional[str] = None
    prep_minutes: int = 0
    buffer_minutes: int = 0
    processing_minutes: int = 0
    finishing_minutes: int = 0

    @property
    def shape(self) -> DurationWithBuffer:
        return DurationWithBuffer(
            duration=self.duration_minutes,
            prep_minutes=self.prep_minutes,
            buffer_minutes=self.buffer_minutes,
            processing_minutes=self.processing_minutes,
            finishing_minutes=self.finishing_minutes,
        )


@dataclass
class BookingDraft:
    provider_id: int
    location_type: str
    services: List[DraftService]
    customer_user_id: Optional[str] = None
    location_id: Optional[int] = None
    address: Optional[dict] = None
    client_info: Optional[dict] = None
    payment_method: str = "card"
    payment_option: str = "deposit"
    addons: List[dict] = field(default_factory=list)
    special_requests: Optional[str] = None
    tip_amount: Decimal = Decimal("0")
    travel_fee: Decimal = Decimal("0")
    promotion_code: Optional[str] = None
    is_group_booking: bool = False
    group_participants: Optional[list] = None
    resource_ids: List = field(default_factory=list)
    hold_id: Optional[str] = None
    booking_source: str = "online"

    def __post_init__(self):
        if not self.services:
            raise ValidationError("A booking needs at least one service")
        if self.payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
        if self.payment_option not in PAYMENT_OPTIONS:
            raise ValidationError(f"payment_option must be one of {', '.join(PAYMENT_OPTIONS)}")

    @property
    def scheduled_at(self) -> datetime:
        return min(s.start for s in self.services)


def ensure_no_conflicts(loader: AvailabilityLoader, services, exclude_booking_id=None):
    """
    Raise ConflictError when any staffed service falls outside the staff
    member's operating hours, or overlaps a committed booking or a time
    block of theirs, prep and buffer included.
    """
    constraints_cache = {}
    for service in services:
        if service.staff_id is None:
            continue
        key = (service.staff_id, service.start.date())
        if key not in constraints_cache:
            constraints_cache[key] = loader.load(
                service.staff_id, service.start.date(), exclude_booking_id=exclude_booking_id
            )
        constraints = constraints_cache[key]

        interval = TimeInterval.from_datetimes(constraints.day_start, service.start, service.end)
        if not any(window.contains(interval) for window in constraints.operating_windows):
            raise ConflictError(
                f"Staff {service.staff_id} does not work at "
                f"{service.start.strftime('%Y-%m-%d %H:%M')}"
            )

        start = interval.start
        for segment in service.shape.blocked_segments(start):
            for busy in constraints.busy_intervals:
                if segment.overlaps(busy):
                    raise ConflictError(
                        f"Staff {service.staff_id} is no longer available at "
                        f"{service.start.strftime('%Y-%m-%d %H:%M')}"
                    )


def _affected_days(services):
    return {(s.staff_id, s.scheduled_start_at.date()) for s in services if s.staff_id is not None}


class BookingCreator:
    def __init__(
        self,
        store,
        loader: AvailabilityLoader,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.loader = loader
        self.clock = clock

    def create(self, draft: BookingDraft) -> Booking:
        ensure_no_conflicts(self.loader, draft.services)

        subtotal = sum((Decimal(str(s.price)) for s in draft.services), Decimal("0"))
        for addon in draft.addons or []:
            subtotal += Decimal(str(addon.get("price") or 0))
        travel_fee = Decimal(str(draft.travel_fee or 0))
        tip = Decimal(str(draft.tip_amount or 0))

        booking = Booking(
            booking_number=self._unique_booking_number(),
            provider_id=draft.provider_id,
            customer_user_id=draft.customer_user_id,
            location_id=draft.location_id,
            location_type=draft.location_type,
            status="pending" if draft.payment_method == "card" else "confirmed",
            scheduled_at=draft.scheduled_at,
            booking_source=draft.booking_source,
            hold_id=draft.hold_id,
            payment_method=draft.payment_method,
            payment_option=draft.payment_option,
            subtotal=subtotal,
            travel_fee=travel_fee,
            tip_amount=tip,
            total_amount=subtotal + travel_fee + tip,
            address=draft.address,
            client_info=draft.client_info,
            addons=draft.addons or [],
            resource_ids=list(draft.resource_ids or []),
            group_participants=draft.group_participants,
            is_group_booking=bool(draft.is_group_booking),
            promotion_code=draft.promotion_code,
            special_requests=draft.special_requests,
        )
        lines = [
            BookingService(
                offering_id=s.offering_id,
                staff_id=s.staff_id,
                scheduled_start_at=s.start,
                scheduled_end_at=s.end,
                duration_minutes=s.duration_minutes,
                price=Decimal(str(s.price)),
                currency=s.currency,
            )
            for s in draft.services
        ]
        self.store.add_booking(booking, lines)
        logger.info(f"Created booking {booking.booking_number} ({len(lines)} services)")
        return booking

    def _unique_booking_number(self) -> str:
        today = self.clock().date()
        for _ in range(5):
            number = generate_booking_number(today)
            if not self.store.booking_number_exists(number):
                return number
        raise ConflictError("Could not allocate a booking number, try again")


def cancel_booking(store, booking_id, cache=None, events=None, reason=None):
    booking = store.get_booking(booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    if booking.status not in OPEN_STATUSES:
        raise ConflictError(f"Booking {booking.booking_number} is {booking.status} and cannot be cancelled")

    affected = _affected_days(booking.services)
    try:
        booking.status = "cancelled"
        if events is not None:
            events.emit(
                BOOKING_CANCELLED,
                booking.id,
                {"booking_number": booking.booking_number, "reason": reason},
            )
        store.commit()
    except Exception:
        store.rollback()
        raise

    for staff_id, day in affected:
        safe_invalidate(cache, staff_id, day)

    logger.info(f"Cancelled booking {booking.booking_number}")
    return {"booking_id": booking.id, "status": booking.status}


def reschedule_booking(store, loader: AvailabilityLoader, booking_id, new_start: datetime, cache=None, events=None):
    """Move every service of the booking by the same offset so the first starts at ``new_start``."""
    booking = store.get_booking(booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    if booking.status not in OPEN_STATUSES:
        raise ConflictError(f"Booking {booking.booking_number} is {booking.status} and cannot be rescheduled")
    if not booking.services:
        raise ValidationError(f"Booking {booking.booking_number} has no services")

    previous_start = booking.scheduled_at
    offset = new_start - min(s.scheduled_start_at for s in booking.services)
    old_days = _affected_days(booking.services)

    moved = []
    for line in booking.services:
        offering = line.offering
        moved.append(
            DraftService(
                offering_id=line.offering_id,
                staff_id=line.staff_id,
                start=line.scheduled_start_at + offset,
                end=line.scheduled_end_at + offset,
                duration_minutes=line.duration_minutes,
                price=line.price,
                prep_minutes=offering.prep_minutes if offering else 0,
                buffer_minutes=offering.buffer_minutes if offering else 0,
                processing_minutes=offering.processing_minutes if offering else 0,
                finishing_minutes=offering.finishing_minutes if offering else 0,
            )
        )
    ensure_no_conflicts(loader, moved, exclude_booking_id=booking.id)

    try:
        for line in booking.services:
            line.scheduled_start_at = line.scheduled_start_at + offset
            line.scheduled_end_at = line.scheduled_end_at + offset
        booking.scheduled_at = booking.scheduled_at + offset
        if events is not None:
            events.emit(
                BOOKING_RESCHEDULED,
                booking.id,
                {
                    "booking_number": booking.booking_number,
                    "previous_start": previous_start,
                    "new_start": booking.scheduled_at,
                },
            )
        store.commit()
    except Exception:
        store.rollback()
        raise

    for staff_id, day in old_days | _affected_days(booking.services):
        safe_invalidate(cache, staff_id, day)

    logger.info(f"Rescheduled booking {booking.booking_number} by {offset}")
    return {
        "booking_id": booking.id,
        "scheduled_at": booking.scheduled_at.isoformat(),
    }


def auto_complete_bookings(store, now: datetime) -> int:
    """Mark confirmed bookings whose last service has ended as completed."""
    bookings = store.completable_bookings(now)
    for booking in bookings:
        booking.status = "completed"
    if bookings:
        store.commit()
    return len(bookings)
