import uuid
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DECIMAL,
    Date,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()
metadata = Base.metadata


def _uuid_str():
    return str(uuid.uuid4())


class Provider(Base):
    __tablename__ = "providers"
    __table_args__ = (Index("uq_provider_slug", "slug", unique=True),)

    id = mapped_column(Integer, primary_key=True)
    name = mapped_column(String(255), nullable=False)
    slug = mapped_column(String(255), nullable=False)
    status = mapped_column(String(20), nullable=False, server_default=text("'active'"))
    currency = mapped_column(String(3), nullable=False, server_default=text("'ZAR'"))
    timezone = mapped_column(String(64), server_default=text("'Africa/Johannesburg'"))
    # At-home travel settings
    travel_buffer_minutes = mapped_column(
        Integer, nullable=False, server_default=text("'30'")
    )
    base_latitude = mapped_column(DECIMAL(9, 6))
    base_longitude = mapped_column(DECIMAL(9, 6))
    travel_fee_per_km = mapped_column(DECIMAL(10, 2))
    travel_free_radius_km = mapped_column(DECIMAL(8, 2))
    travel_max_radius_km = mapped_column(DECIMAL(8, 2))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    locations: Mapped[List["ProviderLocation"]] = relationship(
        "ProviderLocation", uselist=True, back_populates="provider"
    )
    staff: Mapped[List["Staff"]] = relationship(
        "Staff", uselist=True, back_populates="provider"
    )
    offerings: Mapped[List["Offering"]] = relationship(
        "Offering", uselist=True, back_populates="provider"
    )


class ProviderLocation(Base):
    __tablename__ = "provider_locations"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], ondelete="CASCADE", name="fk_loc_provider"
        ),
        Index("fk_loc_provider", "provider_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer, nullable=False)
    name = mapped_column(String(255), nullable=False)
    is_primary = mapped_column(Boolean, nullable=False, server_default=text("0"))
    is_active = mapped_column(Boolean, nullable=False, server_default=text("1"))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    provider: Mapped["Provider"] = relationship("Provider", back_populates="locations")
    hours: Mapped[List["LocationHours"]] = relationship(
        "LocationHours", uselist=True, back_populates="location"
    )


class LocationHours(Base):
    __tablename__ = "location_hours"
    __table_args__ = (
        ForeignKeyConstraint(
            ["location_id"],
            ["provider_locations.id"],
            ondelete="CASCADE",
            name="fk_lh_location",
        ),
        Index("uq_location_day", "location_id", "weekday", unique=True),
    )

    id = mapped_column(Integer, primary_key=True)
    location_id = mapped_column(Integer, nullable=False)
    # 0 = Sunday ... 6 = Saturday
    weekday = mapped_column(Integer, nullable=False)
    is_open = mapped_column(Boolean, nullable=False, server_default=text("1"))
    open_time = mapped_column(Time)
    close_time = mapped_column(Time)
    # [{"start": "12:00", "end": "13:00"}]
    breaks = mapped_column(JSON)

    location: Mapped["ProviderLocation"] = relationship(
        "ProviderLocation", back_populates="hours"
    )


class Staff(Base):
    __tablename__ = "provider_staff"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], ondelete="CASCADE", name="fk_staff_provider"
        ),
        ForeignKeyConstraint(
            ["location_id"],
            ["provider_locations.id"],
            ondelete="SET NULL",
            name="fk_staff_location",
        ),
        Index("fk_staff_provider", "provider_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer, nullable=False)
    location_id = mapped_column(Integer)
    user_id = mapped_column(String(64))
    first_name = mapped_column(String(100))
    last_name = mapped_column(String(100))
    is_active = mapped_column(Boolean, nullable=False, server_default=text("1"))
    # Compensation (rates are percentages, e.g. 10.00 = 10%)
    commission_enabled = mapped_column(Boolean, nullable=False, server_default=text("0"))
    commission_rate = mapped_column(DECIMAL(5, 2))
    service_commission_rate = mapped_column(DECIMAL(5, 2))
    hourly_rate = mapped_column(DECIMAL(10, 2))
    monthly_salary = mapped_column(DECIMAL(12, 2))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    provider: Mapped["Provider"] = relationship("Provider", back_populates="staff")
    working_hours: Mapped[List["StaffWorkingHours"]] = relationship(
        "StaffWorkingHours", uselist=True, back_populates="staff"
    )
    commission_tiers: Mapped[List["StaffCommissionTier"]] = relationship(
        "StaffCommissionTier", uselist=True, back_populates="staff"
    )


class StaffWorkingHours(Base):
    __tablename__ = "staff_working_hours"
    __table_args__ = (
        ForeignKeyConstraint(
            ["staff_id"], ["provider_staff.id"], ondelete="CASCADE", name="fk_swh_staff"
        ),
        Index("idx_swh_staff_day", "staff_id", "weekday"),
    )

    id = mapped_column(Integer, primary_key=True)
    staff_id = mapped_column(Integer, nullable=False)
    # 0 = Sunday ... 6 = Saturday
    weekday = mapped_column(Integer, nullable=False)
    start_time = mapped_column(Time, nullable=False)
    end_time = mapped_column(Time, nullable=False)
    effective_from = mapped_column(Date)
    effective_to = mapped_column(Date)

    staff: Mapped["Staff"] = relationship("Staff", back_populates="working_hours")


class StaffCommissionTier(Base):
    __tablename__ = "staff_commission_tiers"
    __table_args__ = (
        ForeignKeyConstraint(
            ["staff_id"], ["provider_staff.id"], ondelete="CASCADE", name="fk_sct_staff"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    staff_id = mapped_column(Integer, nullable=False)
    min_revenue = mapped_column(DECIMAL(12, 2), nullable=False)
    commission_rate = mapped_column(DECIMAL(5, 2), nullable=False)

    staff: Mapped["Staff"] = relationship("Staff", back_populates="commission_tiers")


class Offering(Base):
    __tablename__ = "offerings"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], ondelete="RESTRICT", name="fk_off_provider"
        ),
        Index("fk_off_provider", "provider_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer, nullable=False)
    name = mapped_column(String(100), nullable=False)
    duration_minutes = mapped_column(Integer, nullable=False, server_default=text("'30'"))
    prep_minutes = mapped_column(Integer, nullable=False, server_default=text("'0'"))
    buffer_minutes = mapped_column(Integer, nullable=False, server_default=text("'0'"))
    processing_minutes = mapped_column(Integer, nullable=False, server_default=text("'0'"))
    finishing_minutes = mapped_column(Integer, nullable=False, server_default=text("'0'"))
    price = mapped_column(DECIMAL(10, 2), nullable=False, server_default=text("'0.00'"))
    currency = mapped_column(String(3))
    is_active = mapped_column(Boolean, nullable=False, server_default=text("1"))
    supports_at_home = mapped_column(Boolean, nullable=False, server_default=text("0"))
    at_home_price_adjustment = mapped_column(DECIMAL(10, 2))
    team_member_commission_enabled = mapped_column(
        Boolean, nullable=False, server_default=text("1")
    )
    commission_rate_override = mapped_column(DECIMAL(5, 2))

    provider: Mapped["Provider"] = relationship("Provider", back_populates="offerings")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], name="fk_bk_provider"
        ),
        Index("uq_booking_number", "booking_number", unique=True),
        Index("idx_bk_provider_scheduled", "provider_id", "scheduled_at"),
    )

    id = mapped_column(Integer, primary_key=True)
    booking_number = mapped_column(String(32), nullable=False)
    provider_id = mapped_column(Integer, nullable=False)
    customer_user_id = mapped_column(String(64))
    location_id = mapped_column(Integer)
    location_type = mapped_column(String(10), nullable=False)
    # pending | confirmed | completed | cancelled | no_show
    status = mapped_column(String(12), nullable=False)
    scheduled_at = mapped_column(DateTime, nullable=False)
    booking_source = mapped_column(String(20))
    hold_id = mapped_column(String(36))
    payment_method = mapped_column(String(10))
    payment_option = mapped_column(String(10))
    subtotal = mapped_column(DECIMAL(10, 2))
    travel_fee = mapped_column(DECIMAL(10, 2))
    tip_amount = mapped_column(DECIMAL(10, 2))
    total_amount = mapped_column(DECIMAL(10, 2))
    address = mapped_column(JSON)
    client_info = mapped_column(JSON)
    addons = mapped_column(JSON)
    resource_ids = mapped_column(JSON)
    group_participants = mapped_column(JSON)
    is_group_booking = mapped_column(Boolean, nullable=False, server_default=text("0"))
    promotion_code = mapped_column(String(64))
    special_requests = mapped_column(Text)
    provider_form_responses = mapped_column(JSON)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    services: Mapped[List["BookingService"]] = relationship(
        "BookingService",
        uselist=True,
        back_populates="booking",
        order_by="BookingService.scheduled_start_at",
    )


class BookingService(Base):
    __tablename__ = "booking_services"
    __table_args__ = (
        ForeignKeyConstraint(
            ["booking_id"], ["bookings.id"], ondelete="CASCADE", name="fk_bs_booking"
        ),
        ForeignKeyConstraint(
            ["offering_id"], ["offerings.id"], ondelete="SET NULL", name="fk_bs_offering"
        ),
        Index("idx_bs_staff_start", "staff_id", "scheduled_start_at"),
        Index("fk_bs_booking", "booking_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    booking_id = mapped_column(Integer, nullable=False)
    offering_id = mapped_column(Integer)
    staff_id = mapped_column(Integer)
    scheduled_start_at = mapped_column(DateTime, nullable=False)
    scheduled_end_at = mapped_column(DateTime, nullable=False)
    duration_minutes = mapped_column(Integer, nullable=False)
    price = mapped_column(DECIMAL(10, 2), nullable=False, server_default=text("'0.00'"))
    currency = mapped_column(String(3))

    booking: Mapped["Booking"] = relationship("Booking", back_populates="services")
    offering: Mapped[Optional["Offering"]] = relationship("Offering")


class TimeBlock(Base):
    __tablename__ = "blocked_time"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], ondelete="CASCADE", name="fk_bt_provider"
        ),
        Index("idx_bt_staff_start", "staff_id", "start_at"),
        Index("idx_bt_provider_start", "provider_id", "start_at"),
    )

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer, nullable=False)
    # NULL staff_id blocks every staff member of the provider
    staff_id = mapped_column(Integer)
    location_id = mapped_column(Integer)
    start_at = mapped_column(DateTime, nullable=False)
    end_at = mapped_column(DateTime, nullable=False)
    # break | maintenance | unavailable | time_off
    block_type = mapped_column(String(20), server_default=text("'unavailable'"))
    reason = mapped_column(Text)


class BookingHold(Base):
    __tablename__ = "booking_holds"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], ondelete="CASCADE", name="fk_bh_provider"
        ),
        Index("idx_bh_status_expiry", "hold_status", "expires_at"),
        Index("idx_bh_staff_start", "staff_id", "start_at"),
    )

    id = mapped_column(String(36), primary_key=True, default=_uuid_str)
    provider_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer)
    location_id = mapped_column(Integer)
    location_type = mapped_column(String(10), nullable=False)
    start_at = mapped_column(DateTime, nullable=False)
    end_at = mapped_column(DateTime, nullable=False)
    booking_services_snapshot = mapped_column(JSON, nullable=False)
    address_snapshot = mapped_column(JSON)
    hold_metadata = mapped_column("metadata", JSON)
    # active | expired | consumed
    hold_status = mapped_column(String(10), nullable=False, server_default=text("'active'"))
    expires_at = mapped_column(DateTime, nullable=False)
    created_by_user_id = mapped_column(String(64))
    guest_fingerprint_hash = mapped_column(String(128))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class FinanceTransaction(Base):
    __tablename__ = "finance_transactions"
    __table_args__ = (
        ForeignKeyConstraint(
            ["booking_id"], ["bookings.id"], ondelete="CASCADE", name="fk_ft_booking"
        ),
        Index("idx_ft_booking", "booking_id"),
    )

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer, nullable=False)
    booking_id = mapped_column(Integer)
    staff_id = mapped_column(Integer)
    # payment | refund | tip
    transaction_type = mapped_column(String(10), nullable=False)
    amount = mapped_column(DECIMAL(10, 2), nullable=False)
    # pending | completed | failed
    status = mapped_column(String(10), nullable=False, server_default=text("'completed'"))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class StaffTimeEntry(Base):
    __tablename__ = "staff_time_entries"
    __table_args__ = (
        ForeignKeyConstraint(
            ["staff_id"], ["provider_staff.id"], ondelete="CASCADE", name="fk_ste_staff"
        ),
        Index("idx_ste_staff_date", "staff_id", "work_date"),
    )

    id = mapped_column(Integer, primary_key=True)
    staff_id = mapped_column(Integer, nullable=False)
    work_date = mapped_column(Date, nullable=False)
    hours = mapped_column(DECIMAL(6, 2), nullable=False)


class PayrollRule(Base):
    __tablename__ = "payroll_rules"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], ondelete="CASCADE", name="fk_pr_provider"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer, nullable=False)
    # NULL applies to every staff member of the provider
    staff_id = mapped_column(Integer)
    # manual_deduction | tax | uif
    rule_type = mapped_column(String(20), nullable=False)
    # flat | percentage
    calculation = mapped_column(String(10), nullable=False)
    value = mapped_column(DECIMAL(10, 4), nullable=False)
    cap_amount = mapped_column(DECIMAL(10, 2))
    is_active = mapped_column(Boolean, nullable=False, server_default=text("1"))


class PayRun(Base):
    __tablename__ = "provider_pay_runs"
    __table_args__ = (
        ForeignKeyConstraint(
            ["provider_id"], ["providers.id"], ondelete="CASCADE", name="fk_run_provider"
        ),
        UniqueConstraint(
            "provider_id", "pay_period_start", "pay_period_end", name="uq_pay_run_period"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer, nullable=False)
    pay_period_start = mapped_column(Date, nullable=False)
    pay_period_end = mapped_column(Date, nullable=False)
    period_type = mapped_column(String(10), nullable=False)
    # draft | approved | paid
    status = mapped_column(String(10), nullable=False, server_default=text("'draft'"))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    approved_at = mapped_column(DateTime)

    items: Mapped[List["PayRunItem"]] = relationship(
        "PayRunItem", uselist=True, back_populates="pay_run"
    )


class PayRunItem(Base):
    __tablename__ = "provider_pay_run_items"
    __table_args__ = (
        ForeignKeyConstraint(
            ["pay_run_id"],
            ["provider_pay_runs.id"],
            ondelete="CASCADE",
            name="fk_item_run",
        ),
        Index("uq_item_run_staff", "pay_run_id", "staff_id", unique=True),
    )

    id = mapped_column(Integer, primary_key=True)
    pay_run_id = mapped_column(Integer, nullable=False)
    staff_id = mapped_column(Integer, nullable=False)
    gross_pay = mapped_column(DECIMAL(12, 2), nullable=False)
    commission_amount = mapped_column(DECIMAL(12, 2), nullable=False)
    hourly_amount = mapped_column(DECIMAL(12, 2), nullable=False)
    salary_amount = mapped_column(DECIMAL(12, 2), nullable=False)
    tips_amount = mapped_column(DECIMAL(12, 2), nullable=False)
    manual_deductions = mapped_column(DECIMAL(12, 2), nullable=False)
    tax_deduction = mapped_column(DECIMAL(12, 2), nullable=False)
    uif_contribution = mapped_column(DECIMAL(12, 2), nullable=False)
    net_pay = mapped_column(DECIMAL(12, 2), nullable=False)
    notes = mapped_column(Text)

    pay_run: Mapped["PayRun"] = relationship("PayRun", back_populates="items")


class CustomField(Base):
    __tablename__ = "custom_fields"

    id = mapped_column(Integer, primary_key=True)
    provider_id = mapped_column(Integer)
    entity_type = mapped_column(String(20), nullable=False)
    name = mapped_column(String(100), nullable=False)
    is_active = mapped_column(Boolean, nullable=False, server_default=text("1"))


class CustomFieldValue(Base):
    __tablename__ = "custom_field_values"
    __table_args__ = (
        ForeignKeyConstraint(
            ["custom_field_id"],
            ["custom_fields.id"],
            ondelete="CASCADE",
            name="fk_cfv_field",
        ),
        UniqueConstraint(
            "entity_type", "entity_id", "custom_field_id", name="uq_cfv_entity_field"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    entity_type = mapped_column(String(20), nullable=False)
    entity_id = mapped_column(String(64), nullable=False)
    custom_field_id = mapped_column(Integer, nullable=False)
    value = mapped_column(Text)


class DomainEvent(Base):
    __tablename__ = "domain_events"
    __table_args__ = (Index("idx_de_undispatched", "dispatched_at", "created_at"),)

    id = mapped_column(Integer, primary_key=True)
    event_type = mapped_column(String(50), nullable=False)
    aggregate_id = mapped_column(String(64), nullable=False)
    payload = mapped_column(JSON)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    dispatched_at = mapped_column(DateTime)
