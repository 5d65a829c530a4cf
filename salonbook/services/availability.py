"""
Availability constraint loader.

Builds, for one staff member and one date, the windows the staff member may
work and the intervals during which they are already busy. The loader only
reads through an ``AvailabilityStore`` so it can be exercised without a
database.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Protocol, Tuple

from salonbook.errors import NotFoundError, ValidationError
from salonbook.services.intervals import (
    DurationWithBuffer,
    TimeInterval,
    parse_hhmm,
    time_to_minutes,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaffRecord:
    id: int
    provider_id: int
    location_id: Optional[int]
    is_active: bool


@dataclass(frozen=True)
class LocationHoursRecord:
    is_open: bool
    open_time: Optional[time]
    close_time: Optional[time]
    breaks: List[dict] = field(default_factory=list)


@dataclass(frozen=True)
class BookedServiceRecord:
    start: datetime
    end: datetime
    prep_minutes: int = 0
    buffer_minutes: int = 0
    processing_minutes: int = 0
    finishing_minutes: int = 0


class AvailabilityStore(Protocol):
    def get_staff(self, staff_id: int) -> Optional[StaffRecord]: ...

    def get_staff_hours(self, staff_id: int, weekday: int, on_date: date) -> List[Tuple[time, time]]: ...

    def get_location_hours(
        self, provider_id: int, location_id: Optional[int], weekday: int
    ) -> Optional[LocationHoursRecord]: ...

    def get_booked_services(
        self,
        staff_id: int,
        window_start: datetime,
        window_end: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> List[BookedServiceRecord]: ...

    def get_time_blocks(
        self, provider_id: int, staff_id: int, window_start: datetime, window_end: datetime
    ) -> List[Tuple[datetime, datetime]]: ...


@dataclass(frozen=True)
class AvailabilityConstraints:
    staff_id: int
    date: date
    operating_windows: Tuple[TimeInterval, ...]
    busy_intervals: Tuple[TimeInterval, ...]

    @property
    def day_start(self) -> datetime:
        return datetime.combine(self.date, time.min)


def weekday_index(on_date: date) -> int:
    """0 = Sunday ... 6 = Saturday, the convention the hours tables use."""
    return on_date.isoweekday() % 7


class AvailabilityLoader:
    def __init__(self, store: AvailabilityStore):
        self.store = store

    def load(
        self, staff_id: int, on_date: date, exclude_booking_id: Optional[int] = None
    ) -> AvailabilityConstraints:
        if staff_id is None:
            raise ValidationError("staff_id is required")
        if not isinstance(on_date, date):
            raise ValidationError("A valid date is required")

        staff = self.store.get_staff(staff_id)
        if staff is None:
            raise NotFoundError(f"Staff member {staff_id} not found")

        day_start = datetime.combine(on_date, time.min)

        if not staff.is_active:
            logger.info(f"Staff {staff_id} is inactive, no operating windows")
            return AvailabilityConstraints(staff_id, on_date, (), ())

        windows, breaks = self._operating_windows(staff, on_date)

        busy: List[TimeInterval] = list(breaks)
        # Overlap query, so a booking from the previous evening that runs
        # past midnight still blocks the morning.
        query_start = day_start
        query_end = day_start + timedelta(days=1)

        for booked in self.store.get_booked_services(
            staff_id, query_start, query_end, exclude_booking_id
        ):
            if booked.end <= booked.start:
                continue
            base = TimeInterval.from_datetimes(day_start, booked.start, booked.end)
            shape = DurationWithBuffer(
                duration=base.duration,
                prep_minutes=booked.prep_minutes or 0,
                buffer_minutes=booked.buffer_minutes or 0,
                processing_minutes=booked.processing_minutes or 0,
                finishing_minutes=booked.finishing_minutes or 0,
            )
            busy.extend(shape.blocked_segments(base.start))

        for block_start, block_end in self.store.get_time_blocks(
            staff.provider_id, staff_id, query_start, query_end
        ):
            if block_end <= block_start:
                continue
            busy.append(TimeInterval.from_datetimes(day_start, block_start, block_end))

        busy.sort(key=lambda interval: interval.start)

        return AvailabilityConstraints(
            staff_id=staff_id,
            date=on_date,
            operating_windows=tuple(sorted(windows, key=lambda w: w.start)),
            busy_intervals=tuple(busy),
        )

    def _operating_windows(self, staff: StaffRecord, on_date: date):
        weekday = weekday_index(on_date)

        staff_hours = self.store.get_staff_hours(staff.id, weekday, on_date)
        if staff_hours:
            windows = []
            for start_time, end_time in staff_hours:
                start, end = time_to_minutes(start_time), time_to_minutes(end_time)
                if end <= start:
                    logger.warning(
                        f"Ignoring inverted working hours {start_time}-{end_time} "
                        f"for staff {staff.id}"
                    )
                    continue
                windows.append(TimeInterval(start, end))
            return windows, []

        hours = self.store.get_location_hours(staff.provider_id, staff.location_id, weekday)
        if hours is None or not hours.is_open or not hours.open_time or not hours.close_time:
            return [], []

        open_minute = time_to_minutes(hours.open_time)
        close_minute = time_to_minutes(hours.close_time)
        if close_minute <= open_minute:
            return [], []

        breaks = []
        for entry in hours.breaks or []:
            try:
                breaks.append(TimeInterval(parse_hhmm(entry["start"]), parse_hhmm(entry["end"])))
            except (KeyError, TypeError, ValidationError):
                logger.warning(f"Ignoring malformed break {entry!r}")

        return [TimeInterval(open_minute, close_minute)], breaks
