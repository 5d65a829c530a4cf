# Request-scoped construction of the services on top of db.session
from flask import current_app

from salonbook.extensions import db
from salonbook.services.availability import AvailabilityLoader
from salonbook.services.bookings import BookingCreator
from salonbook.services.events import OutboxEmitter
from salonbook.services.holds import HoldManager
from salonbook.services.stores import (
    SqlAvailabilityStore,
    SqlBookingStore,
    SqlHoldStore,
    SqlPayrollStore,
)

CACHE_EXTENSION = "availability_cache"


def availability_cache():
    return current_app.extensions.get(CACHE_EXTENSION)


def availability_store():
    return SqlAvailabilityStore(db.session)


def availability_loader():
    return AvailabilityLoader(availability_store())


def booking_store():
    return SqlBookingStore(db.session)


def payroll_store():
    return SqlPayrollStore(db.session)


def outbox():
    return OutboxEmitter(db.session)


def hold_manager():
    return HoldManager(
        store=SqlHoldStore(db.session),
        booking_creator=BookingCreator(booking_store(), availability_loader()),
        hold_ttl_minutes=current_app.config["HOLD_TTL_MINUTES"],
        cache=availability_cache(),
        events=outbox(),
        payment_base_url=current_app.config.get("PAYMENT_BASE_URL", ""),
    )
