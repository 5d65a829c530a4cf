"""
Slot calculation engine.

Given a staff member's constraints for a day, lists every candidate start
time with whether it can be booked. Unavailable candidates are kept in the
output so the booking page can render them disabled.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from salonbook.errors import TransientStoreError, ValidationError
from salonbook.services.availability import AvailabilityConstraints, AvailabilityLoader
from salonbook.services.intervals import TimeInterval, format_hhmm

logger = logging.getLogger(__name__)


def _is_minutes(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class SlotRequest:
    duration_minutes: int
    slot_interval_minutes: int = 15
    travel_buffer_minutes: int = 0
    avoid_gaps: bool = False

    def __post_init__(self):
        if not _is_minutes(self.duration_minutes) or self.duration_minutes <= 0:
            raise ValidationError("duration_minutes must be a positive integer")
        if not _is_minutes(self.slot_interval_minutes) or self.slot_interval_minutes <= 0:
            raise ValidationError("slot_interval_minutes must be a positive integer")
        if not _is_minutes(self.travel_buffer_minutes) or self.travel_buffer_minutes < 0:
            raise ValidationError("travel_buffer_minutes must be zero or more")

    def signature(self) -> str:
        signature = f"{self.duration_minutes}:{self.slot_interval_minutes}:{self.travel_buffer_minutes}"
        if self.avoid_gaps:
            signature += ":gapless"
        return signature


@dataclass(frozen=True)
class Slot:
    time: str
    available: bool
    minute: int

    def to_dict(self):
        return {"time": self.time, "available": self.available}


def occupied_interval(start: int, duration_minutes: int, travel_buffer_minutes: int) -> TimeInterval:
    """The time a candidate keeps the staff member busy, travel included."""
    if travel_buffer_minutes > 0:
        return TimeInterval(
            start - travel_buffer_minutes, start + duration_minutes + travel_buffer_minutes
        )
    return TimeInterval(start, start + duration_minutes)


def candidate_starts(windows, duration_minutes: int, slot_interval_minutes: int) -> List[int]:
    """Every start whose service fits entirely inside one operating window."""
    starts = set()
    for window in windows:
        start = window.start
        while start + duration_minutes <= window.end:
            starts.add(start)
            start += slot_interval_minutes
    return sorted(starts)


def leaves_no_gap(start: int, duration_minutes: int, occupied: TimeInterval, windows, busy_intervals) -> bool:
    """
    True when the service opens or closes a window, or when its occupied
    interval sits flush against something the staff member is already doing.
    """
    end = start + duration_minutes
    if any(start == window.start or end == window.end for window in windows):
        return True
    return any(occupied.end == busy.start or occupied.start == busy.end for busy in busy_intervals)


def calculate(
    constraints: AvailabilityConstraints,
    duration_minutes: int,
    on_date: Optional[date] = None,
    slot_interval_minutes: int = 15,
    travel_buffer_minutes: int = 0,
    avoid_gaps: bool = False,
) -> List[Slot]:
    request = SlotRequest(duration_minutes, slot_interval_minutes, travel_buffer_minutes, avoid_gaps)
    if on_date is not None and on_date != constraints.date:
        raise ValidationError(
            f"Constraints were loaded for {constraints.date}, not {on_date}"
        )

    slots = []
    for start in candidate_starts(
        constraints.operating_windows,
        request.duration_minutes,
        request.slot_interval_minutes,
    ):
        occupied = occupied_interval(
            start, request.duration_minutes, request.travel_buffer_minutes
        )
        # Pairwise test, busy intervals may be unsorted or overlap each other
        available = not any(occupied.overlaps(busy) for busy in constraints.busy_intervals)
        if available and request.avoid_gaps:
            available = leaves_no_gap(
                start,
                request.duration_minutes,
                occupied,
                constraints.operating_windows,
                constraints.busy_intervals,
            )
        slots.append(Slot(time=format_hhmm(start), available=available, minute=start))

    return slots


def compute_availability(
    loader: AvailabilityLoader,
    staff_id: int,
    on_date: date,
    request: SlotRequest,
    cache=None,
) -> List[dict]:
    """
    Load constraints and calculate slots, serving from the availability
    cache when one is configured.
    """
    if cache is not None:
        cached = cache.get(staff_id, on_date, request.signature())
        if cached is not None:
            return cached

    constraints = loader.load(staff_id, on_date)
    slots = [
        slot.to_dict()
        for slot in calculate(
            constraints,
            request.duration_minutes,
            on_date,
            request.slot_interval_minutes,
            request.travel_buffer_minutes,
            request.avoid_gaps,
        )
    ]

    if cache is not None:
        cache.set(staff_id, on_date, request.signature(), slots)

    return slots


def compute_availability_or_empty(loader, staff_id, on_date, request, cache=None) -> List[dict]:
    """Booking-page variant: a store outage reads as "no slots" instead of a crash."""
    try:
        return compute_availability(loader, staff_id, on_date, request, cache)
    except TransientStoreError as e:
        logger.warning(f"Availability unavailable for staff {staff_id} on {on_date}: {e}")
        return []
