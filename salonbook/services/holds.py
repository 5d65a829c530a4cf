"""
Booking holds.

A hold reserves a chosen slot for a few minutes while the customer checks
out. Consuming it turns it into a booking inside one transaction: the hold
is first flipped from active to consumed with a conditional update, then
the booking is written. If that update touches no row somebody else won the
race. If the booking cannot be written the flip is rolled back with it and
the hold stays active.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from math import atan2, cos, radians, sin, sqrt
from typing import Callable, List, Optional

from salonbook.errors import (
    ActiveHoldExistsError,
    HoldExpiredError,
    HoldInactiveError,
    HoldOwnershipError,
    NotFoundError,
    ValidationError,
)
from salonbook.models import BookingHold
from salonbook.services.bookings import (
    PAYMENT_METHODS,
    PAYMENT_OPTIONS,
    BookingDraft,
    DraftService,
    ensure_no_conflicts,
)
from salonbook.services.cache import safe_invalidate
from salonbook.services.events import BOOKING_CREATED, HOLD_CONSUMED
from salonbook.services.intervals import chain_services

logger = logging.getLogger(__name__)

LOCATION_TYPES = ("at_salon", "at_home")
EARTH_RADIUS_KM = 6371.0
DEFAULT_FREE_RADIUS_KM = Decimal("5")


def _parse_datetime(value, name):
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO 8601 datetime") from None


def _optional_int(value, name) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


def _decimal(value, name) -> Decimal:
    try:
        return Decimal(str(value if value is not None else 0))
    except ArithmeticError:
        raise ValidationError(f"{name} must be a number") from None


def haversine_km(lat1, lon1, lat2, lon2) -> float:
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def travel_quote(provider, address) -> Optional[dict]:
    """
    Travel fee for an at-home visit, or None when either end has no
    coordinates. Distance inside the free radius is not charged.
    """
    if not address or provider.base_latitude is None or provider.base_longitude is None:
        return None
    lat, lon = address.get("latitude"), address.get("longitude")
    if lat is None or lon is None:
        return None

    distance = Decimal(
        str(
            round(
                haversine_km(
                    float(provider.base_latitude),
                    float(provider.base_longitude),
                    float(lat),
                    float(lon),
                ),
                2,
            )
        )
    )
    max_radius = provider.travel_max_radius_km
    if max_radius is not None and distance > Decimal(str(max_radius)):
        return {
            "travel_fee": "0.00",
            "travel_distance_km": str(distance),
            "within_service_area": False,
        }

    free_radius = (
        Decimal(str(provider.travel_free_radius_km))
        if provider.travel_free_radius_km is not None
        else DEFAULT_FREE_RADIUS_KM
    )
    per_km = Decimal(str(provider.travel_fee_per_km or 0))
    chargeable = max(distance - free_radius, Decimal("0"))
    fee = (chargeable * per_km).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return {
        "travel_fee": str(fee),
        "travel_distance_km": str(distance),
        "within_service_area": True,
    }


@dataclass(frozen=True)
class HoldServiceRequest:
    offering_id: int
    staff_id: Optional[int] = None


@dataclass
class CreateHoldRequest:
    provider_id: int
    services: List[HoldServiceRequest]
    selected_datetime: datetime
    location_type: str = "at_salon"
    location_id: Optional[int] = None
    address: Optional[dict] = None
    resource_ids: List = field(default_factory=list)
    guest_fingerprint_hash: Optional[str] = None
    staff_id: Optional[int] = None

    def __post_init__(self):
        if self.provider_id is None:
            raise ValidationError("provider_id is required")
        if not self.services:
            raise ValidationError("At least one service is required")
        if self.location_type not in LOCATION_TYPES:
            raise ValidationError(f"location_type must be one of {', '.join(LOCATION_TYPES)}")
        if self.location_type == "at_salon" and self.location_id is None:
            raise ValidationError("location_id is required for at_salon bookings")
        if self.location_type == "at_home" and not self.address:
            raise ValidationError("address is required for at_home bookings")

    @classmethod
    def from_dict(cls, data: dict) -> "CreateHoldRequest":
        services = []
        for entry in data.get("services") or []:
            if not isinstance(entry, dict) or entry.get("offering_id") is None:
                raise ValidationError("Each service needs an offering_id")
            services.append(
                HoldServiceRequest(
                    offering_id=_optional_int(entry["offering_id"], "offering_id"),
                    staff_id=_optional_int(entry.get("staff_id"), "staff_id"),
                )
            )
        if not data.get("selected_datetime"):
            raise ValidationError("selected_datetime is required")
        return cls(
            provider_id=_optional_int(data.get("provider_id"), "provider_id"),
            services=services,
            selected_datetime=_parse_datetime(data["selected_datetime"], "selected_datetime"),
            location_type=data.get("location_type", "at_salon"),
            location_id=_optional_int(data.get("location_id"), "location_id"),
            address=data.get("address"),
            resource_ids=list(data.get("resource_ids") or []),
            guest_fingerprint_hash=data.get("guest_fingerprint_hash"),
            staff_id=_optional_int(data.get("staff_id"), "staff_id"),
        )


@dataclass
class ConsumeHoldRequest:
    client_info: Optional[dict] = None
    guest_fingerprint_hash: Optional[str] = None
    payment_method: str = "card"
    payment_option: str = "deposit"
    addons: List[dict] = field(default_factory=list)
    special_requests: Optional[str] = None
    tip_amount: Decimal = Decimal("0")
    promotion_code: Optional[str] = None
    is_group_booking: bool = False
    group_participants: Optional[list] = None
    resource_ids: Optional[list] = None
    custom_field_values: dict = field(default_factory=dict)
    provider_form_responses: Optional[dict] = None

    def __post_init__(self):
        if self.payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
        if self.payment_option not in PAYMENT_OPTIONS:
            raise ValidationError(f"payment_option must be one of {', '.join(PAYMENT_OPTIONS)}")
        if self.tip_amount < 0:
            raise ValidationError("tip_amount cannot be negative")

    @classmethod
    def from_dict(cls, data: dict) -> "ConsumeHoldRequest":
        data = data or {}
        return cls(
            client_info=data.get("client_info"),
            guest_fingerprint_hash=data.get("guest_fingerprint_hash"),
            payment_method=data.get("payment_method") or "card",
            payment_option=data.get("payment_option") or "deposit",
            addons=list(data.get("addons") or []),
            special_requests=data.get("special_requests"),
            tip_amount=_decimal(data.get("tip_amount"), "tip_amount"),
            promotion_code=data.get("promotion_code"),
            is_group_booking=bool(data.get("is_group_booking")),
            group_participants=data.get("group_participants"),
            resource_ids=data.get("resource_ids"),
            custom_field_values=dict(data.get("custom_field_values") or {}),
            provider_form_responses=data.get("provider_form_responses"),
        )


@dataclass(frozen=True)
class ConsumeResult:
    booking_id: int
    booking_number: str
    payment_url: Optional[str] = None

    def to_dict(self):
        return {
            "booking_id": self.booking_id,
            "booking_number": self.booking_number,
            "payment_url": self.payment_url,
        }


def draft_services(snapshot) -> List[DraftService]:
    """Booking lines rebuilt from a hold's services snapshot."""
    return [
        DraftService(
            offering_id=entry["offering_id"],
            staff_id=entry.get("staff_id"),
            start=datetime.fromisoformat(entry["scheduled_start_at"]),
            end=datetime.fromisoformat(entry["scheduled_end_at"]),
            duration_minutes=entry["duration_minutes"],
            price=Decimal(str(entry.get("price") or 0)),
            currency=entry.get("currency"),
            prep_minutes=entry.get("prep_minutes", 0),
            buffer_minutes=entry.get("buffer_minutes", 0),
            processing_minutes=entry.get("processing_minutes", 0),
            finishing_minutes=entry.get("finishing_minutes", 0),
        )
        for entry in snapshot
    ]


def effective_status(hold: BookingHold, now: datetime) -> str:
    if hold.hold_status == "active" and hold.expires_at <= now:
        return "expired"
    return hold.hold_status


def hold_to_dict(hold: BookingHold, now: datetime) -> dict:
    return {
        "id": hold.id,
        "provider_id": hold.provider_id,
        "staff_id": hold.staff_id,
        "location_id": hold.location_id,
        "location_type": hold.location_type,
        "start_at": hold.start_at.isoformat(),
        "end_at": hold.end_at.isoformat(),
        "services": hold.booking_services_snapshot,
        "address": hold.address_snapshot,
        "metadata": hold.hold_metadata or {},
        "hold_status": effective_status(hold, now),
        "expires_at": hold.expires_at.isoformat(),
    }


class HoldManager:
    def __init__(
        self,
        store,
        booking_creator,
        clock: Callable[[], datetime] = datetime.now,
        hold_ttl_minutes: int = 7,
        cache=None,
        events=None,
        payment_base_url: str = "",
    ):
        self.store = store
        self.booking_creator = booking_creator
        self.clock = clock
        self.hold_ttl_minutes = hold_ttl_minutes
        self.cache = cache
        self.events = events
        self.payment_base_url = payment_base_url

    def create(self, request: CreateHoldRequest, user_id=None) -> BookingHold:
        now = self.clock()
        fingerprint = request.guest_fingerprint_hash
        if fingerprint and self.store.has_active_hold(fingerprint, now):
            raise ActiveHoldExistsError(
                "You already have an active booking hold. Complete it or let it expire first."
            )

        provider = self.store.get_provider(request.provider_id)
        if provider is None:
            raise NotFoundError(f"Provider {request.provider_id} not found")
        if provider.status != "active":
            raise ValidationError(f"Provider {request.provider_id} is not accepting bookings")

        offerings = self.store.get_offerings([s.offering_id for s in request.services])
        at_home = request.location_type == "at_home"
        for service in request.services:
            offering = offerings.get(service.offering_id)
            if offering is None or offering.provider_id != provider.id:
                raise NotFoundError(f"Offering {service.offering_id} not found for this provider")
            if not offering.is_active:
                raise ValidationError(f"Offering {offering.id} is not available")
            if at_home and not offering.supports_at_home:
                raise ValidationError(f"Offering {offering.id} is not offered at home")

        staff_id = request.staff_id
        if staff_id is None:
            staff_id = request.services[0].staff_id

        schedule, span = chain_services(
            request.selected_datetime,
            [
                (
                    s.offering_id,
                    s.staff_id if s.staff_id is not None else staff_id,
                    offerings[s.offering_id].duration_minutes,
                    offerings[s.offering_id].buffer_minutes,
                )
                for s in request.services
            ],
        )

        snapshot = []
        for item in schedule:
            offering = offerings[item.offering_id]
            price = Decimal(str(offering.price or 0))
            if at_home and offering.at_home_price_adjustment:
                price += Decimal(str(offering.at_home_price_adjustment))
            snapshot.append(
                {
                    "offering_id": item.offering_id,
                    "staff_id": item.staff_id,
                    "scheduled_start_at": item.start.isoformat(),
                    "scheduled_end_at": item.end.isoformat(),
                    "duration_minutes": item.duration_minutes,
                    "price": str(price),
                    "currency": offering.currency or provider.currency,
                    "prep_minutes": offering.prep_minutes or 0,
                    "buffer_minutes": offering.buffer_minutes or 0,
                    "processing_minutes": offering.processing_minutes or 0,
                    "finishing_minutes": offering.finishing_minutes or 0,
                }
            )

        # Working hours and committed bookings, other holds never block
        ensure_no_conflicts(self.booking_creator.loader, draft_services(snapshot))

        metadata = {"resource_ids": list(request.resource_ids or [])}
        if at_home:
            quote = travel_quote(provider, request.address)
            if quote:
                metadata.update(quote)

        hold = BookingHold(
            provider_id=provider.id,
            staff_id=staff_id,
            location_id=request.location_id,
            location_type=request.location_type,
            start_at=request.selected_datetime,
            end_at=request.selected_datetime + timedelta(minutes=span),
            booking_services_snapshot=snapshot,
            address_snapshot=request.address,
            hold_metadata=metadata,
            hold_status="active",
            expires_at=now + timedelta(minutes=self.hold_ttl_minutes),
            created_by_user_id=user_id,
            guest_fingerprint_hash=request.guest_fingerprint_hash,
            created_at=now,
        )
        try:
            self.store.add_hold(hold)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info(f"Created hold {hold.id} for provider {provider.id}, expires {hold.expires_at}")
        return hold

    def get(self, hold_id) -> dict:
        hold = self.store.get_hold(hold_id)
        if hold is None:
            raise NotFoundError(f"Hold {hold_id} not found")
        return hold_to_dict(hold, self.clock())

    def consume(self, hold_id, authenticated_user_id, request: Optional[ConsumeHoldRequest] = None) -> ConsumeResult:
        request = request or ConsumeHoldRequest()
        now = self.clock()

        hold = self.store.get_hold(hold_id)
        if hold is None:
            raise NotFoundError(f"Hold {hold_id} not found")
        if hold.hold_status != "active":
            reason = "has expired" if hold.hold_status == "expired" else "was already used"
            raise HoldInactiveError(f"Hold {hold_id} {reason}")
        if hold.expires_at <= now:
            raise HoldExpiredError(f"Hold {hold_id} expired at {hold.expires_at.isoformat()}")
        self._check_ownership(hold, authenticated_user_id, request.guest_fingerprint_hash)

        draft = self._build_draft(hold, authenticated_user_id, request)
        affected = {(s.staff_id, s.start.date()) for s in draft.services if s.staff_id is not None}

        metadata = dict(hold.hold_metadata or {})
        metadata["consumed_at"] = now.isoformat()
        owner = hold.created_by_user_id or authenticated_user_id

        try:
            # A request that lost the race after passing validation stops here
            if self.store.mark_consumed(hold.id, owner, metadata, now) != 1:
                raise HoldInactiveError(f"Hold {hold_id} was already used by another request")

            booking = self.booking_creator.create(draft)
            booking_id, booking_number = booking.id, booking.booking_number
            metadata["booking_id"] = booking_id
            self.store.set_hold_metadata(hold.id, metadata)

            if self.events is not None:
                self.events.emit(HOLD_CONSUMED, hold_id, {"booking_id": booking_id})
                self.events.emit(
                    BOOKING_CREATED,
                    booking_id,
                    {
                        "booking_number": booking_number,
                        "provider_id": hold.provider_id,
                        "hold_id": hold_id,
                    },
                )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info(f"Hold {hold_id} consumed into booking {booking_number}")

        for staff_id, day in affected:
            safe_invalidate(self.cache, staff_id, day)
        self._attach_extras(booking_id, request)

        payment_url = None
        if request.payment_method == "card" and self.payment_base_url:
            payment_url = f"{self.payment_base_url.rstrip('/')}/{booking_number}"
        return ConsumeResult(booking_id, booking_number, payment_url)

    def expire_stale_holds(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        try:
            count = self.store.expire_stale(now)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        if count:
            logger.info(f"Expired {count} stale hold(s)")
        return count

    @staticmethod
    def _check_ownership(hold, user_id, fingerprint):
        if hold.created_by_user_id:
            if user_id is None or str(user_id) != str(hold.created_by_user_id):
                raise HoldOwnershipError("This hold belongs to another customer")
            return
        if fingerprint and hold.guest_fingerprint_hash and fingerprint == hold.guest_fingerprint_hash:
            return
        # An unowned guest hold goes to the first signed-in customer
        if user_id is not None:
            return
        raise HoldOwnershipError("Sign in or supply the fingerprint this hold was created with")

    def _build_draft(self, hold, user_id, request: ConsumeHoldRequest) -> BookingDraft:
        metadata = hold.hold_metadata or {}
        services = draft_services(hold.booking_services_snapshot or [])
        client_info = request.client_info or ({"user_id": str(user_id)} if user_id else None)
        resource_ids = request.resource_ids
        if resource_ids is None:
            resource_ids = metadata.get("resource_ids") or []

        return BookingDraft(
            provider_id=hold.provider_id,
            location_type=hold.location_type,
            services=services,
            customer_user_id=str(user_id) if user_id is not None else hold.created_by_user_id,
            location_id=hold.location_id,
            address=hold.address_snapshot,
            client_info=client_info,
            payment_method=request.payment_method,
            payment_option=request.payment_option,
            addons=request.addons,
            special_requests=request.special_requests,
            tip_amount=request.tip_amount,
            travel_fee=Decimal(str(metadata.get("travel_fee") or 0)),
            promotion_code=request.promotion_code,
            is_group_booking=request.is_group_booking,
            group_participants=request.group_participants,
            resource_ids=resource_ids,
            hold_id=hold.id,
        )

    def _attach_extras(self, booking_id, request: ConsumeHoldRequest):
        if not request.custom_field_values and not request.provider_form_responses:
            return
        try:
            if request.custom_field_values:
                self.store.attach_custom_field_values(
                    "booking", booking_id, request.custom_field_values
                )
            if request.provider_form_responses:
                self.store.save_form_responses(booking_id, request.provider_form_responses)
            self.store.commit()
        except Exception as e:
            self.store.rollback()
            logger.warning(f"Could not attach custom fields to booking {booking_id}: {e}")
