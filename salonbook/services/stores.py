"""
SQLAlchemy-backed stores.

The availability loader, hold manager, booking creator and pay-run engine
take these by injection. Every method runs on the session it was given and
never commits on its own, except through ``commit()``.
"""
import functools
import logging
from collections import defaultdict
from datetime import datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from salonbook.errors import ConflictError, TransientStoreError
from salonbook.models import (
    Booking,
    BookingHold,
    BookingService,
    CustomField,
    CustomFieldValue,
    FinanceTransaction,
    LocationHours,
    Offering,
    PayRun,
    PayRunItem,
    PayrollRule,
    Provider,
    ProviderLocation,
    Staff,
    StaffCommissionTier,
    StaffTimeEntry,
    StaffWorkingHours,
    TimeBlock,
)
from salonbook.services.availability import (
    BookedServiceRecord,
    LocationHoursRecord,
    StaffRecord,
)
from salonbook.services.payroll import (
    DeductionRule,
    ScheduledHours,
    ServiceLine,
    StaffCompensation,
    Transaction,
)

logger = logging.getLogger(__name__)

# Bookings in these states no longer occupy the staff member
RELEASED_STATUSES = ("cancelled", "no_show")


def store_errors(method):
    """Re-raise driver and ORM failures as TransientStoreError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"{type(self).__name__}.{method.__name__} failed: {e}")
            raise TransientStoreError(f"Data store unavailable: {type(e).__name__}") from e

    return wrapper


def _day_bounds(start_date, end_date):
    return (
        datetime.combine(start_date, time.min),
        datetime.combine(end_date + timedelta(days=1), time.min),
    )


class SqlStore:
    def __init__(self, session):
        self.session = session

    def flush(self):
        self.session.flush()

    @store_errors
    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()


class SqlAvailabilityStore(SqlStore):
    @store_errors
    def get_provider(self, provider_id):
        return self.session.get(Provider, provider_id)

    @store_errors
    def get_provider_offerings(self, provider_id, offering_ids):
        rows = self.session.scalars(
            select(Offering).where(
                Offering.id.in_(set(offering_ids)), Offering.provider_id == provider_id
            )
        ).all()
        return {row.id: row for row in rows}

    @store_errors
    def get_staff(self, staff_id):
        staff = self.session.get(Staff, staff_id)
        if staff is None:
            return None
        return StaffRecord(
            id=staff.id,
            provider_id=staff.provider_id,
            location_id=staff.location_id,
            is_active=bool(staff.is_active),
        )

    @store_errors
    def get_staff_hours(self, staff_id, weekday, on_date):
        rows = self.session.scalars(
            select(StaffWorkingHours)
            .where(
                StaffWorkingHours.staff_id == staff_id,
                StaffWorkingHours.weekday == weekday,
                or_(
                    StaffWorkingHours.effective_from.is_(None),
                    StaffWorkingHours.effective_from <= on_date,
                ),
                or_(
                    StaffWorkingHours.effective_to.is_(None),
                    StaffWorkingHours.effective_to >= on_date,
                ),
            )
            .order_by(StaffWorkingHours.start_time)
        ).all()
        return [(row.start_time, row.end_time) for row in rows]

    @store_errors
    def get_location_hours(self, provider_id, location_id, weekday):
        location = None
        if location_id is not None:
            location = self.session.get(ProviderLocation, location_id)
            if location is not None and not location.is_active:
                location = None

        if location is None:
            # Fall back to the provider's primary active location
            location = self.session.scalar(
                select(ProviderLocation)
                .where(
                    ProviderLocation.provider_id == provider_id,
                    ProviderLocation.is_active.is_(True),
                )
                .order_by(ProviderLocation.is_primary.desc(), ProviderLocation.id)
                .limit(1)
            )
        if location is None:
            return None

        hours = self.session.scalar(
            select(LocationHours).where(
                LocationHours.location_id == location.id,
                LocationHours.weekday == weekday,
            )
        )
        if hours is None:
            return None

        return LocationHoursRecord(
            is_open=bool(hours.is_open),
            open_time=hours.open_time,
            close_time=hours.close_time,
            breaks=list(hours.breaks or []),
        )

    @store_errors
    def get_booked_services(self, staff_id, window_start, window_end, exclude_booking_id=None):
        stmt = (
            select(BookingService, Offering)
            .join(Booking, Booking.id == BookingService.booking_id)
            .outerjoin(Offering, Offering.id == BookingService.offering_id)
            .where(
                BookingService.staff_id == staff_id,
                Booking.status.not_in(RELEASED_STATUSES),
                BookingService.scheduled_start_at < window_end,
                BookingService.scheduled_end_at > window_start,
            )
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)

        records = []
        for line, offering in self.session.execute(stmt).all():
            records.append(
                BookedServiceRecord(
                    start=line.scheduled_start_at,
                    end=line.scheduled_end_at,
                    prep_minutes=offering.prep_minutes if offering else 0,
                    buffer_minutes=offering.buffer_minutes if offering else 0,
                    processing_minutes=offering.processing_minutes if offering else 0,
                    finishing_minutes=offering.finishing_minutes if offering else 0,
                )
            )
        return records

    @store_errors
    def get_time_blocks(self, provider_id, staff_id, window_start, window_end):
        rows = self.session.scalars(
            select(TimeBlock).where(
                TimeBlock.provider_id == provider_id,
                or_(TimeBlock.staff_id == staff_id, TimeBlock.staff_id.is_(None)),
                TimeBlock.start_at < window_end,
                TimeBlock.end_at > window_start,
            )
        ).all()
        return [(row.start_at, row.end_at) for row in rows]


class SqlBookingStore(SqlStore):
    @store_errors
    def get_booking(self, booking_id):
        return self.session.get(Booking, booking_id)

    @store_errors
    def booking_number_exists(self, booking_number) -> bool:
        return (
            self.session.scalar(
                select(func.count(Booking.id)).where(Booking.booking_number == booking_number)
            )
            > 0
        )

    @store_errors
    def add_booking(self, booking, lines):
        self.session.add(booking)
        self.session.flush()
        for line in lines:
            line.booking_id = booking.id
            self.session.add(line)
        self.session.flush()
        return booking

    @store_errors
    def completable_bookings(self, now):
        """Confirmed bookings whose last service has ended."""
        last_end = (
            select(
                BookingService.booking_id,
                func.max(BookingService.scheduled_end_at).label("ends_at"),
            )
            .group_by(BookingService.booking_id)
            .subquery()
        )
        return self.session.scalars(
            select(Booking)
            .join(last_end, last_end.c.booking_id == Booking.id)
            .where(Booking.status == "confirmed", last_end.c.ends_at <= now)
        ).all()


class SqlHoldStore(SqlStore):
    @store_errors
    def get_provider(self, provider_id):
        return self.session.get(Provider, provider_id)

    @store_errors
    def get_offerings(self, offering_ids):
        if not offering_ids:
            return {}
        rows = self.session.scalars(
            select(Offering).where(Offering.id.in_(set(offering_ids)))
        ).all()
        return {row.id: row for row in rows}

    @store_errors
    def add_hold(self, hold):
        self.session.add(hold)
        self.session.flush()
        return hold

    @store_errors
    def get_hold(self, hold_id):
        return self.session.get(BookingHold, hold_id)

    @store_errors
    def mark_consumed(self, hold_id, user_id, metadata, now) -> int:
        """
        Flip an active, unexpired hold to consumed. Returns the affected row
        count, 0 when another request consumed or the sweeper expired it first.
        """
        result = self.session.execute(
            update(BookingHold)
            .where(
                BookingHold.id == hold_id,
                BookingHold.hold_status == "active",
                BookingHold.expires_at > now,
            )
            .values(
                hold_status="consumed",
                created_by_user_id=user_id,
                hold_metadata=metadata,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @store_errors
    def set_hold_metadata(self, hold_id, metadata):
        self.session.execute(
            update(BookingHold)
            .where(BookingHold.id == hold_id)
            .values(hold_metadata=metadata)
            .execution_options(synchronize_session=False)
        )

    @store_errors
    def has_active_hold(self, guest_fingerprint_hash, now) -> bool:
        return (
            self.session.scalar(
                select(func.count(BookingHold.id)).where(
                    BookingHold.guest_fingerprint_hash == guest_fingerprint_hash,
                    BookingHold.hold_status == "active",
                    BookingHold.expires_at > now,
                )
            )
            > 0
        )

    @store_errors
    def expire_stale(self, now) -> int:
        result = self.session.execute(
            update(BookingHold)
            .where(BookingHold.hold_status == "active", BookingHold.expires_at <= now)
            .values(hold_status="expired")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @store_errors
    def attach_custom_field_values(self, entity_type, entity_id, values) -> int:
        """Upsert values keyed by custom field id. Unknown or inactive fields are skipped."""
        if not values:
            return 0
        field_ids = {int(k) for k in values.keys()}
        known = set(
            self.session.scalars(
                select(CustomField.id).where(
                    CustomField.id.in_(field_ids),
                    CustomField.entity_type == entity_type,
                    CustomField.is_active.is_(True),
                )
            ).all()
        )
        saved = 0
        for raw_id, value in values.items():
            field_id = int(raw_id)
            if field_id not in known:
                logger.warning(f"Skipping unknown custom field {field_id} for {entity_type}")
                continue
            existing = self.session.scalar(
                select(CustomFieldValue).where(
                    CustomFieldValue.entity_type == entity_type,
                    CustomFieldValue.entity_id == str(entity_id),
                    CustomFieldValue.custom_field_id == field_id,
                )
            )
            if existing is None:
                self.session.add(
                    CustomFieldValue(
                        entity_type=entity_type,
                        entity_id=str(entity_id),
                        custom_field_id=field_id,
                        value=None if value is None else str(value),
                    )
                )
            else:
                existing.value = None if value is None else str(value)
            saved += 1
        return saved

    @store_errors
    def save_form_responses(self, booking_id, responses):
        booking = self.session.get(Booking, booking_id)
        if booking is not None:
            booking.provider_form_responses = responses


class SqlPayrollStore(SqlStore):
    @store_errors
    def get_active_staff(self, provider_id):
        staff_rows = self.session.scalars(
            select(Staff)
            .where(Staff.provider_id == provider_id, Staff.is_active.is_(True))
            .order_by(Staff.id)
        ).all()
        if not staff_rows:
            return []

        tiers = defaultdict(list)
        for tier in self.session.scalars(
            select(StaffCommissionTier).where(
                StaffCommissionTier.staff_id.in_([s.id for s in staff_rows])
            )
        ).all():
            tiers[tier.staff_id].append((tier.min_revenue, tier.commission_rate))

        return [
            StaffCompensation(
                staff_id=s.id,
                commission_enabled=bool(s.commission_enabled),
                commission_rate=(
                    s.service_commission_rate
                    if s.service_commission_rate is not None
                    else s.commission_rate
                ),
                hourly_rate=s.hourly_rate,
                monthly_salary=s.monthly_salary,
                tiers=tuple(sorted(tiers[s.id])),
            )
            for s in staff_rows
        ]

    @store_errors
    def get_completed_service_lines(self, provider_id, period_start, period_end):
        start_at, end_at = _day_bounds(period_start, period_end)
        rows = self.session.execute(
            select(BookingService, Offering)
            .join(Booking, Booking.id == BookingService.booking_id)
            .outerjoin(Offering, Offering.id == BookingService.offering_id)
            .where(
                Booking.provider_id == provider_id,
                Booking.status == "completed",
                Booking.scheduled_at >= start_at,
                Booking.scheduled_at < end_at,
            )
            .order_by(BookingService.booking_id, BookingService.id)
        ).all()
        return [
            ServiceLine(
                booking_id=line.booking_id,
                staff_id=line.staff_id,
                offering_id=line.offering_id,
                price=Decimal(str(line.price or 0)),
                commission_rate_override=(
                    offering.commission_rate_override if offering else None
                ),
                team_member_commission_enabled=(
                    bool(offering.team_member_commission_enabled) if offering else True
                ),
            )
            for line, offering in rows
        ]

    @store_errors
    def get_transactions(self, booking_ids):
        if not booking_ids:
            return []
        rows = self.session.scalars(
            select(FinanceTransaction).where(
                FinanceTransaction.booking_id.in_(set(booking_ids)),
                FinanceTransaction.status == "completed",
            )
        ).all()
        return [
            Transaction(
                booking_id=row.booking_id,
                staff_id=row.staff_id,
                transaction_type=row.transaction_type,
                amount=Decimal(str(row.amount)),
            )
            for row in rows
        ]

    @store_errors
    def get_logged_hours(self, staff_ids, period_start, period_end):
        if not staff_ids:
            return {}
        rows = self.session.execute(
            select(StaffTimeEntry.staff_id, func.sum(StaffTimeEntry.hours))
            .where(
                StaffTimeEntry.staff_id.in_(staff_ids),
                StaffTimeEntry.work_date >= period_start,
                StaffTimeEntry.work_date <= period_end,
            )
            .group_by(StaffTimeEntry.staff_id)
        ).all()
        return {staff_id: Decimal(str(total)) for staff_id, total in rows if total is not None}

    @store_errors
    def get_scheduled_hours(self, staff_ids):
        schedule = defaultdict(list)
        if not staff_ids:
            return schedule
        for row in self.session.scalars(
            select(StaffWorkingHours).where(StaffWorkingHours.staff_id.in_(staff_ids))
        ).all():
            schedule[row.staff_id].append(
                ScheduledHours(
                    weekday=row.weekday,
                    start_time=row.start_time,
                    end_time=row.end_time,
                    effective_from=row.effective_from,
                    effective_to=row.effective_to,
                )
            )
        return schedule

    @store_errors
    def get_deduction_rules(self, provider_id):
        rows = self.session.scalars(
            select(PayrollRule).where(
                PayrollRule.provider_id == provider_id,
                PayrollRule.is_active.is_(True),
            )
        ).all()
        return [
            DeductionRule(
                staff_id=row.staff_id,
                rule_type=row.rule_type,
                calculation=row.calculation,
                value=Decimal(str(row.value)),
                cap_amount=None if row.cap_amount is None else Decimal(str(row.cap_amount)),
            )
            for row in rows
        ]

    @store_errors
    def pay_run_exists(self, provider_id, period_start, period_end) -> bool:
        return (
            self.session.scalar(
                select(func.count(PayRun.id)).where(
                    PayRun.provider_id == provider_id,
                    PayRun.pay_period_start == period_start,
                    PayRun.pay_period_end == period_end,
                )
            )
            > 0
        )

    def save_pay_run(self, provider_id, period_start, period_end, period_type, items):
        try:
            run = PayRun(
                provider_id=provider_id,
                pay_period_start=period_start,
                pay_period_end=period_end,
                period_type=period_type,
                status="draft",
            )
            self.session.add(run)
            self.session.flush()
            for item in items:
                self.session.add(
                    PayRunItem(
                        pay_run_id=run.id,
                        staff_id=item.staff_id,
                        gross_pay=item.gross_pay,
                        commission_amount=item.commission_amount,
                        hourly_amount=item.hourly_amount,
                        salary_amount=item.salary_amount,
                        tips_amount=item.tips_amount,
                        manual_deductions=item.manual_deductions,
                        tax_deduction=item.tax_deduction,
                        uif_contribution=item.uif_contribution,
                        net_pay=item.net_pay,
                        notes=item.notes,
                    )
                )
            self.session.flush()
            return run
        except IntegrityError as e:
            raise ConflictError(
                "A pay run already exists for this provider and period"
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Saving pay run failed: {e}")
            raise TransientStoreError("Data store unavailable while saving pay run") from e

    @store_errors
    def get_pay_run(self, pay_run_id):
        return self.session.get(PayRun, pay_run_id)
