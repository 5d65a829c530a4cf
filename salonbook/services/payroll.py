"""
Pay-run calculation.

The engine reads everything through a ``PayrollStore`` and returns one item
per active staff member. Amounts stay unrounded Decimals until the item is
built, where each component is rounded half-up to cents and gross and net
are summed from the rounded components.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Protocol, Tuple

from salonbook.errors import (
    ConflictError,
    PayRunConfigurationError,
    PayRunConfigurationWarning,
    ValidationError,
)
from salonbook.services.events import PAY_RUN_CREATED

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

PERIOD_TYPES = ("weekly", "biweekly", "monthly")

# Share of a monthly salary paid per period
SALARY_FACTORS = {
    "monthly": Decimal("1"),
    "biweekly": Decimal("12") / Decimal("26"),
    "weekly": Decimal("12") / Decimal("52"),
}

DEDUCTION_KINDS = ("manual_deduction", "tax", "uif")


def round2(amount) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class StaffCompensation:
    staff_id: int
    commission_enabled: bool = False
    commission_rate: Optional[Decimal] = None
    hourly_rate: Optional[Decimal] = None
    monthly_salary: Optional[Decimal] = None
    # (min_revenue, commission_rate), ascending
    tiers: Tuple[Tuple[Decimal, Decimal], ...] = ()

    @property
    def earns_commission(self) -> bool:
        return self.commission_enabled and (self.commission_rate is not None or bool(self.tiers))

    @property
    def is_configured(self) -> bool:
        return (
            self.earns_commission
            or bool(self.hourly_rate)
            or bool(self.monthly_salary)
        )


@dataclass(frozen=True)
class ServiceLine:
    booking_id: int
    staff_id: Optional[int]
    offering_id: Optional[int]
    price: Decimal
    commission_rate_override: Optional[Decimal] = None
    team_member_commission_enabled: bool = True


@dataclass(frozen=True)
class Transaction:
    booking_id: int
    staff_id: Optional[int]
    transaction_type: str
    amount: Decimal


@dataclass(frozen=True)
class ScheduledHours:
    weekday: int
    start_time: time
    end_time: time
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None

    def applies_on(self, day: date) -> bool:
        if day.isoweekday() % 7 != self.weekday:
            return False
        if self.effective_from and day < self.effective_from:
            return False
        if self.effective_to and day > self.effective_to:
            return False
        return True

    @property
    def hours(self) -> Decimal:
        start = datetime.combine(date.min, self.start_time)
        end = datetime.combine(date.min, self.end_time)
        if end <= start:
            return ZERO
        return Decimal((end - start).seconds) / Decimal(3600)


@dataclass(frozen=True)
class DeductionRule:
    staff_id: Optional[int]
    rule_type: str
    calculation: str
    value: Decimal
    cap_amount: Optional[Decimal] = None

    def amount_for(self, gross: Decimal) -> Decimal:
        if self.calculation == "percentage":
            amount = gross * self.value / HUNDRED
        else:
            amount = self.value
        if self.cap_amount is not None:
            amount = min(amount, self.cap_amount)
        return max(amount, ZERO)


class PayrollStore(Protocol):
    def get_active_staff(self, provider_id: int) -> List[StaffCompensation]: ...

    def get_completed_service_lines(
        self, provider_id: int, period_start: date, period_end: date
    ) -> List[ServiceLine]: ...

    def get_transactions(self, booking_ids) -> List[Transaction]: ...

    def get_logged_hours(self, staff_ids, period_start: date, period_end: date) -> Dict[int, Decimal]: ...

    def get_scheduled_hours(self, staff_ids) -> Dict[int, List[ScheduledHours]]: ...

    def get_deduction_rules(self, provider_id: int) -> List[DeductionRule]: ...


@dataclass
class PayRunItemResult:
    staff_id: int
    commission_amount: Decimal
    hourly_amount: Decimal
    salary_amount: Decimal
    tips_amount: Decimal
    manual_deductions: Decimal
    tax_deduction: Decimal
    uif_contribution: Decimal
    gross_pay: Decimal
    net_pay: Decimal
    notes: Optional[str] = None

    @classmethod
    def build(
        cls,
        staff_id,
        commission=ZERO,
        hourly=ZERO,
        salary=ZERO,
        tips=ZERO,
        deductions=None,
        notes=None,
    ):
        """Round every component once, then derive gross and net from the rounded values."""
        commission, hourly, salary, tips = (round2(v) for v in (commission, hourly, salary, tips))
        gross = commission + hourly + salary + tips
        deductions = deductions or {}
        manual = round2(deductions.get("manual_deduction", ZERO))
        tax = round2(deductions.get("tax", ZERO))
        uif = round2(deductions.get("uif", ZERO))
        return cls(
            staff_id=staff_id,
            commission_amount=commission,
            hourly_amount=hourly,
            salary_amount=salary,
            tips_amount=tips,
            manual_deductions=manual,
            tax_deduction=tax,
            uif_contribution=uif,
            gross_pay=gross,
            net_pay=gross - manual - tax - uif,
            notes=notes,
        )

    def to_dict(self):
        return {
            "staff_id": self.staff_id,
            "gross_pay": str(self.gross_pay),
            "commission_amount": str(self.commission_amount),
            "hourly_amount": str(self.hourly_amount),
            "salary_amount": str(self.salary_amount),
            "tips_amount": str(self.tips_amount),
            "manual_deductions": str(self.manual_deductions),
            "tax_deduction": str(self.tax_deduction),
            "uif_contribution": str(self.uif_contribution),
            "net_pay": str(self.net_pay),
            "notes": self.notes,
        }


@dataclass
class PayRunCalculation:
    items: List[PayRunItemResult] = field(default_factory=list)
    warnings: List[PayRunConfigurationWarning] = field(default_factory=list)

    def to_dict(self):
        return {
            "items": [item.to_dict() for item in self.items],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass(frozen=True)
class PayRunRequest:
    provider_id: int
    pay_period_start: date
    pay_period_end: date
    period_type: str = "monthly"

    def __post_init__(self):
        if self.provider_id is None:
            raise ValidationError("provider_id is required")
        if not isinstance(self.pay_period_start, date) or not isinstance(self.pay_period_end, date):
            raise ValidationError("pay_period_start and pay_period_end must be dates")
        if self.pay_period_end < self.pay_period_start:
            raise ValidationError("pay_period_end must not be before pay_period_start")
        if self.period_type not in PERIOD_TYPES:
            raise ValidationError(f"period_type must be one of {', '.join(PERIOD_TYPES)}")


def _period_days(period_start: date, period_end: date):
    day = period_start
    while day <= period_end:
        yield day
        day += timedelta(days=1)


def _share(part: Decimal, whole: Decimal, amount: Decimal) -> Decimal:
    if whole <= ZERO:
        return ZERO
    return amount * part / whole


class PayRunEngine:
    def __init__(self, store: PayrollStore):
        self.store = store

    def calculate(self, provider_id, period_start, period_end, period_type="monthly") -> PayRunCalculation:
        request = PayRunRequest(provider_id, period_start, period_end, period_type)
        staff_list = self.store.get_active_staff(provider_id)
        if not staff_list:
            logger.info(f"No active staff for provider {provider_id}, empty pay run")
            return PayRunCalculation()

        staff_by_id = {s.staff_id: s for s in staff_list}
        staff_ids = list(staff_by_id)

        lines = self.store.get_completed_service_lines(provider_id, period_start, period_end)
        lines_by_booking = defaultdict(list)
        for line in lines:
            lines_by_booking[line.booking_id].append(line)

        revenue_by_booking = defaultdict(lambda: ZERO)
        tips_by_staff = defaultdict(lambda: ZERO)
        for txn in self.store.get_transactions(list(lines_by_booking)):
            if txn.transaction_type == "payment":
                revenue_by_booking[txn.booking_id] += txn.amount
            elif txn.transaction_type == "refund":
                revenue_by_booking[txn.booking_id] -= abs(txn.amount)
            elif txn.transaction_type == "tip":
                self._attribute_tip(txn, lines_by_booking[txn.booking_id], tips_by_staff)

        commission = self._commission(staff_by_id, lines_by_booking, revenue_by_booking)
        hourly = self._hourly(staff_list, request)
        rules = self.store.get_deduction_rules(provider_id)
        salary_factor = SALARY_FACTORS[request.period_type]

        result = PayRunCalculation()
        for staff in staff_list:
            notes = None
            if not staff.is_configured:
                warning = PayRunConfigurationWarning(
                    staff_id=staff.staff_id,
                    reason="No commission, hourly rate or salary configured",
                )
                result.warnings.append(warning)
                notes = warning.reason
                logger.warning(f"Pay run for provider {provider_id}: staff {staff.staff_id} unconfigured")

            salary = (staff.monthly_salary or ZERO) * salary_factor
            components = dict(
                commission=commission.get(staff.staff_id, ZERO),
                hourly=hourly.get(staff.staff_id, ZERO),
                salary=salary,
                tips=tips_by_staff.get(staff.staff_id, ZERO),
            )
            gross = sum((round2(v) for v in components.values()), ZERO)
            deductions = self._deductions(staff.staff_id, gross, rules)
            result.items.append(
                PayRunItemResult.build(staff.staff_id, deductions=deductions, notes=notes, **components)
            )

        return result

    def _attribute_tip(self, txn: Transaction, booking_lines, tips_by_staff):
        if txn.staff_id is not None:
            tips_by_staff[txn.staff_id] += txn.amount
            return
        staffed = [line for line in booking_lines if line.staff_id is not None]
        total = sum((line.price for line in staffed), ZERO)
        if total <= ZERO:
            if staffed:
                # Free services: split evenly
                each = txn.amount / len(staffed)
                for line in staffed:
                    tips_by_staff[line.staff_id] += each
            return
        for line in staffed:
            tips_by_staff[line.staff_id] += _share(line.price, total, txn.amount)

    def _commission(self, staff_by_id, lines_by_booking, revenue_by_booking):
        # Revenue attributable to each line, from collected money rather than list price
        attributed = []
        revenue_by_staff = defaultdict(lambda: ZERO)
        for booking_id, booking_lines in lines_by_booking.items():
            booking_total = sum((line.price for line in booking_lines), ZERO)
            revenue = revenue_by_booking.get(booking_id, ZERO)
            for line in booking_lines:
                if line.staff_id not in staff_by_id:
                    continue
                if booking_total > ZERO:
                    line_revenue = _share(line.price, booking_total, revenue)
                else:
                    line_revenue = revenue / len(booking_lines)
                attributed.append((line, line_revenue))
                revenue_by_staff[line.staff_id] += line_revenue

        commission = defaultdict(lambda: ZERO)
        for line, line_revenue in attributed:
            staff = staff_by_id[line.staff_id]
            if not staff.commission_enabled or not line.team_member_commission_enabled:
                continue
            rate = self._commission_rate(staff, line, revenue_by_staff[line.staff_id])
            if rate is None:
                continue
            commission[line.staff_id] += line_revenue * rate / HUNDRED
        return commission

    @staticmethod
    def _commission_rate(staff: StaffCompensation, line: ServiceLine, period_revenue: Decimal):
        if line.commission_rate_override is not None:
            return Decimal(line.commission_rate_override)
        tier_rate = None
        for min_revenue, rate in staff.tiers:
            if Decimal(min_revenue) <= period_revenue:
                tier_rate = Decimal(rate)
        if tier_rate is not None:
            return tier_rate
        if staff.commission_rate is not None:
            return Decimal(staff.commission_rate)
        return None

    def _hourly(self, staff_list, request: PayRunRequest):
        hourly_staff = [s for s in staff_list if s.hourly_rate]
        if not hourly_staff:
            return {}
        ids = [s.staff_id for s in hourly_staff]
        logged = self.store.get_logged_hours(ids, request.pay_period_start, request.pay_period_end)
        scheduled = None

        amounts = {}
        for staff in hourly_staff:
            hours = logged.get(staff.staff_id)
            if hours is None:
                if scheduled is None:
                    scheduled = self.store.get_scheduled_hours(ids)
                hours = ZERO
                for day in _period_days(request.pay_period_start, request.pay_period_end):
                    for entry in scheduled.get(staff.staff_id, []):
                        if entry.applies_on(day):
                            hours += entry.hours
            amounts[staff.staff_id] = hours * Decimal(staff.hourly_rate)
        return amounts

    @staticmethod
    def _deductions(staff_id, gross: Decimal, rules: List[DeductionRule]):
        chosen = {}
        for kind in DEDUCTION_KINDS:
            of_kind = [r for r in rules if r.rule_type == kind]
            specific = [r for r in of_kind if r.staff_id == staff_id]
            chosen[kind] = specific or [r for r in of_kind if r.staff_id is None]
        return {
            kind: sum((rule.amount_for(gross) for rule in kind_rules), ZERO)
            for kind, kind_rules in chosen.items()
        }


def create_pay_run(store, request: PayRunRequest, proceed_with_warnings=False, events=None):
    """
    Calculate and persist a draft pay run with its items in one transaction.

    ``store`` must also expose ``pay_run_exists``, ``save_pay_run``,
    ``commit`` and ``rollback``.
    """
    if store.pay_run_exists(request.provider_id, request.pay_period_start, request.pay_period_end):
        raise ConflictError("A pay run already exists for this provider and period")

    calculation = PayRunEngine(store).calculate(
        request.provider_id,
        request.pay_period_start,
        request.pay_period_end,
        request.period_type,
    )
    if calculation.warnings and not proceed_with_warnings:
        raise PayRunConfigurationError(calculation.warnings)

    try:
        run = store.save_pay_run(
            request.provider_id,
            request.pay_period_start,
            request.pay_period_end,
            request.period_type,
            calculation.items,
        )
        if events is not None:
            events.emit(
                PAY_RUN_CREATED,
                run.id,
                {
                    "provider_id": request.provider_id,
                    "pay_period_start": request.pay_period_start,
                    "pay_period_end": request.pay_period_end,
                    "item_count": len(calculation.items),
                },
            )
        store.commit()
    except Exception:
        store.rollback()
        raise

    logger.info(
        f"Created pay run {run.id} for provider {request.provider_id} "
        f"({request.pay_period_start} to {request.pay_period_end}, {len(calculation.items)} items)"
    )
    return {
        "pay_run_id": run.id,
        "item_count": len(calculation.items),
        "warnings": [w.to_dict() for w in calculation.warnings],
    }
