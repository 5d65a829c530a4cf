"""
Pytest configuration and shared fixtures for the salonbook tests.
"""

import datetime
import os
import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import jwt
import pytest
from dotenv import load_dotenv
from flask import Flask

test_env_path = Path(__file__).parent / ".env.test"
if test_env_path.exists():
    load_dotenv(test_env_path, override=True)

from main import create_app  # noqa: E402
from salonbook.config import is_production_database  # noqa: E402
from salonbook.extensions import db as database  # noqa: E402
from salonbook.models import (  # noqa: E402
    Base,
    Booking,
    BookingService,
    LocationHours,
    Offering,
    Provider,
    ProviderLocation,
    Staff,
    StaffWorkingHours,
)
from salonbook.wiring import CACHE_EXTENSION  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only"

# A Monday well in the future so nothing seeded here is ever in the past
BOOKING_DAY = datetime.date(2030, 3, 4)


def at(hhmm, day=BOOKING_DAY):
    hours, minutes = (int(part) for part in hhmm.split(":"))
    return datetime.datetime.combine(day, datetime.time(hours, minutes))


class FrozenClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + datetime.timedelta(**kwargs)
        return self.now


class FakeCache:
    """In-memory stand-in for AvailabilityCache."""

    def __init__(self, fail_invalidate=False):
        self.entries = {}
        self.invalidated = []
        self.fail_invalidate = fail_invalidate

    def get(self, staff_id, on_date, signature):
        return self.entries.get((staff_id, on_date.isoformat(), signature))

    def set(self, staff_id, on_date, signature, slots):
        self.entries[(staff_id, on_date.isoformat(), signature)] = slots
        return True

    def invalidate(self, staff_id, on_date):
        if self.fail_invalidate:
            raise ConnectionError("redis is down")
        self.invalidated.append((staff_id, on_date.isoformat()))
        for key in [k for k in self.entries if k[0] == staff_id and k[1] == on_date.isoformat()]:
            del self.entries[key]


@pytest.fixture(scope="session")
def app():
    """Create and configure a test app instance."""
    os.environ["FLASK_ENV"] = "testing"
    os.environ["TESTING"] = "True"

    test_db_url = os.environ.get("TEST_DATABASE_URL", "sqlite://")

    # Safety check
    if is_production_database(test_db_url):
        print(f" DANGER: Database URL appears to be production: {test_db_url}")
        print(" Tests aborted to prevent data loss!")
        sys.exit(1)

    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": test_db_url,
            "SECRET_KEY": TEST_SECRET,
            "REDIS_URL": "",
            "SCHEDULER_ENABLED": False,
            "PAYMENT_BASE_URL": "https://pay.example.test/checkout",
        }
    )

    yield app


@pytest.fixture
def db(app: Flask):
    """Fresh tables for every test. The services commit, so there is no outer transaction to roll back."""
    with app.app_context():
        if not app.config.get("TESTING"):
            print(" DANGER: Not in testing mode!")
            sys.exit(1)

        Base.metadata.create_all(bind=database.engine)

        yield database

        database.session.remove()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def db_session(db):
    return db.session


@pytest.fixture
def client(app, db):
    return app.test_client()


@pytest.fixture
def fake_cache(app):
    cache = FakeCache()
    previous = app.extensions.get(CACHE_EXTENSION)
    app.extensions[CACHE_EXTENSION] = cache
    yield cache
    app.extensions[CACHE_EXTENSION] = previous


@pytest.fixture
def auth_headers():
    """Build Authorization headers for a user id."""

    def _headers(user_id="customer-1", secret=TEST_SECRET, expires_in_hours=1):
        payload = {
            "user_id": user_id,
            "exp": datetime.datetime.now(datetime.timezone.utc)
            + datetime.timedelta(hours=expires_in_hours),
        }
        token = jwt.encode(payload, secret, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def salon(db_session):
    """
    One provider with a primary location open 09:00-17:00 every day, a
    stylist with their own Monday hours, a junior on location hours and three
    offerings.
    """
    provider = Provider(
        name="Glow Studio",
        slug="glow-studio",
        status="active",
        currency="ZAR",
        travel_buffer_minutes=30,
        base_latitude=Decimal("-26.204100"),
        base_longitude=Decimal("28.047300"),
        travel_fee_per_km=Decimal("10.00"),
        travel_free_radius_km=Decimal("5.00"),
        travel_max_radius_km=Decimal("50.00"),
    )
    db_session.add(provider)
    db_session.flush()

    location = ProviderLocation(
        provider_id=provider.id, name="Main", is_primary=True, is_active=True
    )
    db_session.add(location)
    db_session.flush()

    for weekday in range(7):
        db_session.add(
            LocationHours(
                location_id=location.id,
                weekday=weekday,
                is_open=True,
                open_time=datetime.time(9, 0),
                close_time=datetime.time(17, 0),
                breaks=[],
            )
        )

    stylist = Staff(
        provider_id=provider.id,
        location_id=location.id,
        user_id="staff-1",
        first_name="Thandi",
        last_name="Mokoena",
        is_active=True,
        commission_enabled=True,
        commission_rate=Decimal("10.00"),
    )
    junior = Staff(
        provider_id=provider.id,
        location_id=location.id,
        user_id="staff-2",
        first_name="Lerato",
        last_name="Dlamini",
        is_active=True,
        commission_enabled=False,
        hourly_rate=Decimal("80.00"),
    )
    db_session.add_all([stylist, junior])
    db_session.flush()

    # Monday = 1
    db_session.add(
        StaffWorkingHours(
            staff_id=stylist.id,
            weekday=1,
            start_time=datetime.time(9, 0),
            end_time=datetime.time(17, 0),
        )
    )

    cut = Offering(
        provider_id=provider.id,
        name="Cut and blow-dry",
        duration_minutes=60,
        prep_minutes=0,
        buffer_minutes=0,
        processing_minutes=0,
        finishing_minutes=0,
        price=Decimal("500.00"),
        currency="ZAR",
        is_active=True,
        supports_at_home=True,
        at_home_price_adjustment=Decimal("100.00"),
        team_member_commission_enabled=True,
    )
    colour = Offering(
        provider_id=provider.id,
        name="Full colour",
        duration_minutes=90,
        prep_minutes=0,
        buffer_minutes=15,
        processing_minutes=0,
        finishing_minutes=0,
        price=Decimal("800.00"),
        currency="ZAR",
        is_active=True,
        supports_at_home=False,
        team_member_commission_enabled=True,
    )
    retired = Offering(
        provider_id=provider.id,
        name="Perm",
        duration_minutes=120,
        prep_minutes=0,
        buffer_minutes=0,
        processing_minutes=0,
        finishing_minutes=0,
        price=Decimal("900.00"),
        is_active=False,
        supports_at_home=False,
        team_member_commission_enabled=True,
    )
    db_session.add_all([cut, colour, retired])
    db_session.commit()

    return SimpleNamespace(
        provider_id=provider.id,
        location_id=location.id,
        stylist_id=stylist.id,
        junior_id=junior.id,
        cut_id=cut.id,
        colour_id=colour.id,
        retired_id=retired.id,
    )


@pytest.fixture
def make_booking(db_session, salon):
    """Insert a committed booking with one service line."""

    def _make(
        start,
        minutes=60,
        staff_id=None,
        offering_id=None,
        status="confirmed",
        price=Decimal("500.00"),
        booking_number=None,
    ):
        staff_id = staff_id or salon.stylist_id
        booking = Booking(
            booking_number=booking_number or f"BK-TEST-{start:%Y%m%d%H%M}-{staff_id}-{status[:3]}",
            provider_id=salon.provider_id,
            location_id=salon.location_id,
            location_type="at_salon",
            status=status,
            scheduled_at=start,
            payment_method="card",
            payment_option="full",
            subtotal=price,
            total_amount=price,
            is_group_booking=False,
        )
        db_session.add(booking)
        db_session.flush()
        db_session.add(
            BookingService(
                booking_id=booking.id,
                offering_id=offering_id or salon.cut_id,
                staff_id=staff_id,
                scheduled_start_at=start,
                scheduled_end_at=start + datetime.timedelta(minutes=minutes),
                duration_minutes=minutes,
                price=price,
            )
        )
        db_session.commit()
        return booking.id

    return _make
