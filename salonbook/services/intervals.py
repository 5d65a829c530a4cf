"""
Interval primitives used by the availability and booking code.

Intervals are half-open ``[start, end)`` ranges of minute offsets from the
start of a provider-local day, so 09:30 is 570.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Tuple

from salonbook.errors import ValidationError

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True, order=True)
class TimeInterval:
    start: int
    end: int

    def __post_init__(self):
        if self.end <= self.start:
            raise ValidationError(
                f"Interval end ({self.end}) must be after start ({self.start})"
            )

    @property
    def duration(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        # Touching intervals ([9:00, 10:00) and [10:00, 11:00)) do not overlap
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeInterval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def shift(self, minutes: int) -> "TimeInterval":
        return TimeInterval(self.start + minutes, self.end + minutes)

    def widen(self, before: int = 0, after: int = 0) -> "TimeInterval":
        return TimeInterval(self.start - before, self.end + after)

    @classmethod
    def from_datetimes(
        cls, day_start: datetime, start: datetime, end: datetime
    ) -> "TimeInterval":
        """
        Convert timestamps into minute offsets from ``day_start``.

        Offsets are not clipped to the day, so a booking that started the
        evening before keeps a negative start and still blocks the morning.
        """
        return cls(_minutes_between(day_start, start), _minutes_between(day_start, end))

    def to_datetimes(self, day_start: datetime) -> Tuple[datetime, datetime]:
        return (
            day_start + timedelta(minutes=self.start),
            day_start + timedelta(minutes=self.end),
        )


def _minutes_between(origin: datetime, moment: datetime) -> int:
    return int((moment - origin).total_seconds() // 60)


def format_hhmm(minute: int) -> str:
    """570 -> '09:30'."""
    hours, minutes = divmod(minute, 60)
    return f"{hours:02d}:{minutes:02d}"


def parse_hhmm(value: str) -> int:
    """'09:30' (or '09:30:00') -> 570."""
    try:
        parts = value.split(":")
        hours, minutes = int(parts[0]), int(parts[1])
    except (AttributeError, IndexError, ValueError):
        raise ValidationError(f"Invalid time '{value}', expected HH:MM") from None
    if not (0 <= hours <= 24 and 0 <= minutes <= 59) or (hours == 24 and minutes):
        raise ValidationError(f"Invalid time '{value}', expected HH:MM")
    return hours * 60 + minutes


def time_to_minutes(value) -> int:
    """datetime.time -> minute offset."""
    return value.hour * 60 + value.minute


@dataclass(frozen=True)
class DurationWithBuffer:
    """
    How long one booked service keeps a staff member busy.

    The staff member is blocked for prep + service + buffer. When the
    offering has processing time (colour developing, etc.) the staff member
    is free during processing and blocked again for the finishing segment.
    """

    duration: int
    prep_minutes: int = 0
    buffer_minutes: int = 0
    processing_minutes: int = 0
    finishing_minutes: int = 0

    def blocked_segments(self, start: int) -> List[TimeInterval]:
        service_end = start + self.duration
        segments = [
            TimeInterval(start - self.prep_minutes, service_end + self.buffer_minutes)
        ]
        if self.finishing_minutes > 0:
            finishing_start = service_end + self.buffer_minutes + self.processing_minutes
            segments.append(
                TimeInterval(finishing_start, finishing_start + self.finishing_minutes)
            )
        return segments

    @property
    def total_minutes(self) -> int:
        return (
            self.duration
            + self.buffer_minutes
            + self.processing_minutes
            + self.finishing_minutes
        )


@dataclass(frozen=True)
class ChainedService:
    offering_id: int
    staff_id: object
    start: datetime
    end: datetime
    duration_minutes: int


def chain_services(start: datetime, services: Iterable[Tuple]) -> Tuple[List[ChainedService], int]:
    """
    Lay services out back to back from ``start``.

    ``services`` yields ``(offering_id, staff_id, duration_minutes,
    buffer_minutes)``. Each service starts after the previous one's buffer.
    Returns the schedule and the span in minutes from the first start to the
    last service end (the trailing buffer is not part of the span).
    """
    schedule = []
    cursor = start
    for offering_id, staff_id, duration, buffer_minutes in services:
        if duration is None or duration <= 0:
            raise ValidationError(f"Offering {offering_id} has no duration")
        end = cursor + timedelta(minutes=duration)
        schedule.append(ChainedService(offering_id, staff_id, cursor, end, duration))
        cursor = end + timedelta(minutes=buffer_minutes or 0)

    if not schedule:
        raise ValidationError("At least one service is required")

    span = _minutes_between(start, schedule[-1].end)
    return schedule, span
