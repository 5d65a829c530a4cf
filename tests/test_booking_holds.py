import datetime
import re
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from conftest import BOOKING_DAY, FakeCache, FrozenClock, at
from salonbook.errors import (
    ActiveHoldExistsError,
    ConflictError,
    HoldExpiredError,
    HoldInactiveError,
    HoldOwnershipError,
    NotFoundError,
    ValidationError,
)
from salonbook.models import (
    Booking,
    BookingHold,
    CustomField,
    CustomFieldValue,
    DomainEvent,
    StaffWorkingHours,
)
from salonbook.services.availability import AvailabilityLoader
from salonbook.services.bookings import BookingCreator
from salonbook.services.events import OutboxEmitter
from salonbook.services.holds import (
    ConsumeHoldRequest,
    CreateHoldRequest,
    HoldManager,
    HoldServiceRequest,
    travel_quote,
)
from salonbook.services.stores import SqlAvailabilityStore, SqlBookingStore, SqlHoldStore

BOOKING_NUMBER = re.compile(r"^BK-\d{8}-[A-Z0-9]{6}$")


def booking_count(session):
    return session.scalar(select(func.count(Booking.id)))


@pytest.fixture
def clock():
    return FrozenClock(datetime.datetime(2030, 3, 1, 8, 0))


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def make_manager(db_session, clock, cache):
    """Each call builds an independent manager, like a separate request would."""

    def _make():
        return HoldManager(
            store=SqlHoldStore(db_session),
            booking_creator=BookingCreator(
                SqlBookingStore(db_session),
                AvailabilityLoader(SqlAvailabilityStore(db_session)),
                clock=clock,
            ),
            clock=clock,
            hold_ttl_minutes=10,
            cache=cache,
            events=OutboxEmitter(db_session),
            payment_base_url="https://pay.example.test/checkout",
        )

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def hold_request(salon):
    def _request(start="10:00", offerings=None, **overrides):
        services = [
            HoldServiceRequest(offering_id=o, staff_id=salon.stylist_id)
            for o in (offerings or [salon.cut_id])
        ]
        fields = dict(
            provider_id=salon.provider_id,
            services=services,
            selected_datetime=at(start),
            location_type="at_salon",
            location_id=salon.location_id,
        )
        fields.update(overrides)
        return CreateHoldRequest(**fields)

    return _request


@pytest.mark.holds
class TestCreateHold:
    def test_hold_is_active_with_ttl(self, manager, hold_request, clock, salon):
        hold = manager.create(hold_request())

        assert hold.hold_status == "active"
        assert hold.expires_at == clock.now + datetime.timedelta(minutes=10)
        assert hold.staff_id == salon.stylist_id
        assert hold.created_by_user_id is None

    def test_services_are_chained_into_the_snapshot(self, manager, hold_request, salon):
        hold = manager.create(hold_request(offerings=[salon.colour_id, salon.cut_id]))
        colour, cut = hold.booking_services_snapshot

        assert colour["scheduled_start_at"] == at("10:00").isoformat()
        assert colour["scheduled_end_at"] == at("11:30").isoformat()
        # 15 minute buffer after the colour
        assert cut["scheduled_start_at"] == at("11:45").isoformat()
        assert hold.end_at == at("12:45")
        assert cut["price"] == "500.00"
        assert cut["currency"] == "ZAR"

    def test_overlapping_holds_may_coexist(self, manager, hold_request):
        first = manager.create(hold_request())
        second = manager.create(hold_request())
        assert first.id != second.id

    def test_outside_working_hours_is_refused(self, manager, hold_request, db_session):
        with pytest.raises(ConflictError):
            manager.create(hold_request(start="03:00"))
        assert db_session.scalar(select(func.count(BookingHold.id))) == 0

    def test_committed_booking_is_refused_before_holding(
        self, manager, hold_request, db_session, make_booking
    ):
        make_booking(at("10:30"))

        with pytest.raises(ConflictError):
            manager.create(hold_request(start="10:00"))
        assert db_session.scalar(select(func.count(BookingHold.id))) == 0

        assert manager.create(hold_request(start="11:30")).hold_status == "active"

    def test_one_active_hold_per_guest(self, manager, hold_request, clock):
        manager.create(hold_request(guest_fingerprint_hash="fp-1"))

        with pytest.raises(ActiveHoldExistsError):
            manager.create(hold_request(start="14:00", guest_fingerprint_hash="fp-1"))

        # Another guest is unaffected
        manager.create(hold_request(start="14:00", guest_fingerprint_hash="fp-2"))

        clock.advance(minutes=11)
        assert manager.create(hold_request(guest_fingerprint_hash="fp-1")).hold_status == "active"

    def test_consumed_hold_frees_the_guest(self, manager, hold_request):
        hold = manager.create(hold_request(guest_fingerprint_hash="fp-1"))
        manager.consume(hold.id, None, ConsumeHoldRequest(guest_fingerprint_hash="fp-1"))

        assert manager.create(hold_request(start="14:00", guest_fingerprint_hash="fp-1")).id

    def test_at_home_adds_price_adjustment_and_travel_fee(self, manager, hold_request, salon):
        hold = manager.create(
            hold_request(
                location_type="at_home",
                location_id=None,
                address={"line1": "12 Oak Ave", "latitude": -26.1141, "longitude": 28.0473},
            )
        )
        assert hold.booking_services_snapshot[0]["price"] == "600.00"
        assert hold.hold_metadata["travel_distance_km"] == "10.01"
        assert hold.hold_metadata["travel_fee"] == "50.10"
        assert hold.hold_metadata["within_service_area"] is True

    def test_validation(self, manager, hold_request, salon):
        with pytest.raises(ValidationError):
            hold_request(location_id=None)
        with pytest.raises(ValidationError):
            hold_request(location_type="at_home", location_id=None, address=None)
        with pytest.raises(ValidationError):
            hold_request(services=[])
        with pytest.raises(ValidationError):
            manager.create(hold_request(offerings=[salon.retired_id]))
        with pytest.raises(ValidationError):
            manager.create(
                hold_request(
                    offerings=[salon.colour_id],
                    location_type="at_home",
                    location_id=None,
                    address={"line1": "12 Oak Ave"},
                )
            )
        with pytest.raises(NotFoundError):
            manager.create(hold_request(provider_id=9999))

    def test_from_dict_requires_offering_ids(self):
        with pytest.raises(ValidationError):
            CreateHoldRequest.from_dict(
                {"provider_id": 1, "services": [{}], "selected_datetime": "2030-03-04T10:00:00"}
            )
        with pytest.raises(ValidationError):
            CreateHoldRequest.from_dict(
                {"provider_id": 1, "services": [{"offering_id": 1}], "selected_datetime": "tomorrow"}
            )

    @pytest.mark.parametrize(
        "changes",
        [
            {"services": [{"offering_id": "abc"}]},
            {"services": [{"offering_id": 1, "staff_id": "lead"}]},
            {"services": [{"offering_id": True}]},
            {"provider_id": "glow"},
            {"location_id": [1]},
            {"staff_id": {"id": 1}},
        ],
    )
    def test_from_dict_rejects_non_integer_ids(self, changes):
        data = {
            "provider_id": 1,
            "services": [{"offering_id": 1}],
            "selected_datetime": "2030-03-04T10:00:00",
            "location_id": 1,
        }
        data.update(changes)
        with pytest.raises(ValidationError):
            CreateHoldRequest.from_dict(data)

    def test_from_dict_casts_numeric_strings(self):
        request = CreateHoldRequest.from_dict(
            {
                "provider_id": "1",
                "services": [{"offering_id": "7", "staff_id": "3"}],
                "selected_datetime": "2030-03-04T10:00:00",
                "location_id": "2",
            }
        )
        assert request.provider_id == 1
        assert request.location_id == 2
        assert request.services == [HoldServiceRequest(offering_id=7, staff_id=3)]


class _Provider:
    base_latitude = Decimal("-26.2041")
    base_longitude = Decimal("28.0473")
    travel_fee_per_km = Decimal("10")
    travel_free_radius_km = Decimal("5")
    travel_max_radius_km = Decimal("50")


@pytest.mark.holds
class TestTravelQuote:
    def test_inside_free_radius(self):
        quote = travel_quote(_Provider(), {"latitude": -26.2141, "longitude": 28.0473})
        assert quote["travel_fee"] == "0.00"

    def test_outside_service_area(self):
        quote = travel_quote(_Provider(), {"latitude": -25.2041, "longitude": 28.0473})
        assert quote["within_service_area"] is False
        assert quote["travel_fee"] == "0.00"

    def test_no_coordinates(self):
        assert travel_quote(_Provider(), {"line1": "somewhere"}) is None


@pytest.mark.holds
class TestConsumeHold:
    def test_consume_creates_booking_and_marks_hold(
        self, manager, hold_request, db_session, cache, salon
    ):
        hold = manager.create(hold_request())
        result = manager.consume(hold.id, "customer-1", ConsumeHoldRequest(tip_amount=Decimal("20")))

        assert BOOKING_NUMBER.match(result.booking_number)
        assert result.payment_url == f"https://pay.example.test/checkout/{result.booking_number}"

        booking = db_session.get(Booking, result.booking_id)
        assert booking.status == "pending"
        assert booking.hold_id == hold.id
        assert booking.customer_user_id == "customer-1"
        assert booking.total_amount == Decimal("520.00")
        assert [s.staff_id for s in booking.services] == [salon.stylist_id]

        stored = db_session.get(BookingHold, hold.id)
        assert stored.hold_status == "consumed"
        assert stored.created_by_user_id == "customer-1"
        assert stored.hold_metadata["booking_id"] == result.booking_id

        events = [e.event_type for e in db_session.scalars(select(DomainEvent)).all()]
        assert sorted(events) == ["BookingCreated", "HoldConsumed"]
        assert cache.invalidated == [(salon.stylist_id, BOOKING_DAY.isoformat())]

    def test_cash_booking_is_confirmed_without_payment_url(self, manager, hold_request, db_session):
        hold = manager.create(hold_request())
        result = manager.consume(hold.id, "customer-1", ConsumeHoldRequest(payment_method="cash"))

        assert result.payment_url is None
        assert db_session.get(Booking, result.booking_id).status == "confirmed"

    def test_expired_hold_is_rejected(self, manager, hold_request, clock, db_session):
        hold = manager.create(hold_request())
        clock.advance(minutes=11)

        with pytest.raises(HoldExpiredError):
            manager.consume(hold.id, "customer-1")

        # No sweep has run, the row still says active
        assert db_session.get(BookingHold, hold.id).hold_status == "active"
        assert booking_count(db_session) == 0

    def test_second_consume_is_rejected(self, manager, hold_request, db_session):
        hold = manager.create(hold_request())
        manager.consume(hold.id, "customer-1")

        with pytest.raises(HoldInactiveError) as exc:
            manager.consume(hold.id, "customer-1")

        assert "already used" in exc.value.message
        assert booking_count(db_session) == 1

    def test_concurrent_consume_loser_sees_hold_inactive(
        self, manager, make_manager, hold_request, db_session, monkeypatch
    ):
        hold = manager.create(hold_request())
        hold_id = hold.id
        rival = make_manager()
        won = []

        def validate_then_let_rival_finish(held, user_id, fingerprint):
            HoldManager._check_ownership(held, user_id, fingerprint)
            # Both requests are past validation, the rival commits first
            won.append(rival.consume(hold_id, "customer-1"))

        monkeypatch.setattr(manager, "_check_ownership", validate_then_let_rival_finish)

        with pytest.raises(HoldInactiveError) as exc:
            manager.consume(hold_id, "customer-1")

        assert "already used" in exc.value.message
        assert booking_count(db_session) == 1
        stored = db_session.get(BookingHold, hold_id)
        assert stored.hold_status == "consumed"
        assert stored.hold_metadata["booking_id"] == won[0].booking_id
        events = [e.event_type for e in db_session.scalars(select(DomainEvent)).all()]
        assert sorted(events) == ["BookingCreated", "HoldConsumed"]

    def test_claim_is_undone_when_the_booking_fails(
        self, manager, hold_request, db_session, monkeypatch
    ):
        hold = manager.create(hold_request())
        hold_id = hold.id

        def broken(draft):
            raise ConflictError("taken")

        monkeypatch.setattr(manager.booking_creator, "create", broken)
        with pytest.raises(ConflictError):
            manager.consume(hold_id, "customer-1")

        assert db_session.get(BookingHold, hold_id).hold_status == "active"
        monkeypatch.undo()

        result = manager.consume(hold_id, "customer-1")
        assert db_session.get(Booking, result.booking_id).hold_id == hold_id

    def test_hours_changed_after_holding(self, manager, hold_request, db_session, salon):
        hold = manager.create(hold_request(start="15:00"))
        db_session.execute(
            update(StaffWorkingHours)
            .where(StaffWorkingHours.staff_id == salon.stylist_id)
            .values(end_time=datetime.time(13, 0))
        )
        db_session.commit()

        with pytest.raises(ConflictError):
            manager.consume(hold.id, "customer-1")

        assert db_session.get(BookingHold, hold.id).hold_status == "active"
        assert booking_count(db_session) == 0

    def test_failed_booking_leaves_hold_active(
        self, manager, hold_request, db_session, make_booking
    ):
        hold = manager.create(hold_request(start="10:00"))
        # Someone booked the stylist at 10:30 through another channel
        make_booking(at("10:30"))

        with pytest.raises(ConflictError):
            manager.consume(hold.id, "customer-1")

        assert db_session.get(BookingHold, hold.id).hold_status == "active"
        assert booking_count(db_session) == 1

    def test_unknown_hold(self, manager, salon):
        with pytest.raises(NotFoundError):
            manager.consume("does-not-exist", "customer-1")

    def test_sweep_expired_hold_reads_inactive(self, manager, hold_request, clock):
        hold = manager.create(hold_request())
        clock.advance(minutes=30)
        assert manager.expire_stale_holds() == 1

        with pytest.raises(HoldInactiveError) as exc:
            manager.consume(hold.id, "customer-1")
        assert "expired" in exc.value.message

    def test_cache_failure_does_not_fail_consume(self, manager, hold_request, db_session):
        manager.cache = FakeCache(fail_invalidate=True)
        hold = manager.create(hold_request())

        result = manager.consume(hold.id, "customer-1")

        assert db_session.get(Booking, result.booking_id) is not None


@pytest.mark.holds
class TestHoldOwnership:
    def test_owned_hold_rejects_other_users(self, manager, hold_request, db_session):
        hold = manager.create(hold_request(), user_id="customer-1")

        with pytest.raises(HoldOwnershipError):
            manager.consume(hold.id, "customer-2")
        assert db_session.get(BookingHold, hold.id).hold_status == "active"

        manager.consume(hold.id, "customer-1")

    def test_guest_fingerprint_must_match(self, manager, hold_request):
        hold = manager.create(hold_request(guest_fingerprint_hash="fp-123"))

        with pytest.raises(HoldOwnershipError):
            manager.consume(hold.id, None, ConsumeHoldRequest(guest_fingerprint_hash="fp-999"))

        result = manager.consume(hold.id, None, ConsumeHoldRequest(guest_fingerprint_hash="fp-123"))
        assert result.booking_id

    def test_guest_hold_claimed_by_first_signed_in_customer(self, manager, hold_request, db_session):
        hold = manager.create(hold_request())
        manager.consume(hold.id, "customer-7")
        assert db_session.get(BookingHold, hold.id).created_by_user_id == "customer-7"


@pytest.mark.holds
class TestConsumeExtras:
    def test_custom_fields_and_form_responses_attached(self, manager, hold_request, db_session):
        field = CustomField(provider_id=None, entity_type="booking", name="Hair length", is_active=True)
        db_session.add(field)
        db_session.commit()
        field_id = field.id

        hold = manager.create(hold_request())
        result = manager.consume(
            hold.id,
            "customer-1",
            ConsumeHoldRequest(
                custom_field_values={str(field_id): "shoulder", "999": "ignored"},
                provider_form_responses={"allergies": "none"},
            ),
        )

        values = db_session.scalars(select(CustomFieldValue)).all()
        assert [(v.custom_field_id, v.entity_id, v.value) for v in values] == [
            (field_id, str(result.booking_id), "shoulder")
        ]
        assert db_session.get(Booking, result.booking_id).provider_form_responses == {
            "allergies": "none"
        }

    def test_attach_failure_keeps_the_booking(self, manager, hold_request, db_session, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("custom field store offline")

        monkeypatch.setattr(manager.store, "attach_custom_field_values", broken)
        hold = manager.create(hold_request())

        result = manager.consume(
            hold.id, "customer-1", ConsumeHoldRequest(custom_field_values={"1": "x"})
        )

        assert db_session.get(Booking, result.booking_id) is not None
        assert db_session.get(BookingHold, hold.id).hold_status == "consumed"

    def test_consume_request_validation(self):
        with pytest.raises(ValidationError):
            ConsumeHoldRequest(payment_method="bitcoin")
        with pytest.raises(ValidationError):
            ConsumeHoldRequest(payment_option="half")
        with pytest.raises(ValidationError):
            ConsumeHoldRequest.from_dict({"tip_amount": "-5"})


@pytest.mark.holds
class TestHoldEndpoints:
    def _payload(self, salon):
        return {
            "provider_id": salon.provider_id,
            "services": [{"offering_id": salon.cut_id, "staff_id": salon.stylist_id}],
            "selected_datetime": at("11:00").isoformat(),
            "location_type": "at_salon",
            "location_id": salon.location_id,
        }

    def test_create_get_and_consume(self, client, salon, auth_headers, fake_cache):
        response = client.post("/api/booking-holds", json=self._payload(salon))
        assert response.status_code == 201
        hold_id = response.json["id"]
        assert response.json["hold_status"] == "active"

        response = client.get(f"/api/booking-holds/{hold_id}")
        assert response.status_code == 200
        assert response.json["services"][0]["offering_id"] == salon.cut_id

        response = client.post(
            f"/api/booking-holds/{hold_id}/consume",
            json={"payment_method": "card", "client_info": {"name": "Naledi"}},
            headers=auth_headers("customer-1"),
        )
        assert response.status_code == 201
        assert BOOKING_NUMBER.match(response.json["booking_number"])
        assert response.json["payment_url"].endswith(response.json["booking_number"])
        assert fake_cache.invalidated == [(salon.stylist_id, BOOKING_DAY.isoformat())]

        response = client.post(
            f"/api/booking-holds/{hold_id}/consume", headers=auth_headers("customer-1")
        )
        assert response.status_code == 410
        assert response.json["code"] == "HOLD_INACTIVE"

    def test_consume_requires_token(self, client, salon):
        hold_id = client.post("/api/booking-holds", json=self._payload(salon)).json["id"]

        response = client.post(f"/api/booking-holds/{hold_id}/consume", json={})
        assert response.status_code == 401
        assert response.json["code"] == "AUTH_REQUIRED"

        response = client.post(
            f"/api/booking-holds/{hold_id}/consume",
            json={},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401
        assert response.json["code"] == "INVALID_TOKEN"

    def test_other_customers_hold(self, client, salon, auth_headers):
        hold_id = client.post(
            "/api/booking-holds", json=self._payload(salon), headers=auth_headers("customer-1")
        ).json["id"]

        response = client.post(
            f"/api/booking-holds/{hold_id}/consume", json={}, headers=auth_headers("customer-2")
        )
        assert response.status_code == 403
        assert response.json["code"] == "HOLD_OWNERSHIP"

    def test_invalid_create_payload(self, client, salon):
        payload = self._payload(salon)
        del payload["location_id"]

        response = client.post("/api/booking-holds", json=payload)
        assert response.status_code == 400
        assert response.json["code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize(
        "changes",
        [
            {"services": [{"offering_id": "abc"}]},
            {"provider_id": "glow-studio"},
            {"location_id": "main"},
        ],
    )
    def test_non_integer_ids_are_rejected(self, client, salon, changes):
        payload = self._payload(salon)
        payload.update(changes)

        response = client.post("/api/booking-holds", json=payload)
        assert response.status_code == 400
        assert response.json["code"] == "VALIDATION_ERROR"

    def test_guest_with_an_active_hold(self, client, salon):
        payload = dict(self._payload(salon), guest_fingerprint_hash="fp-42")
        assert client.post("/api/booking-holds", json=payload).status_code == 201

        response = client.post("/api/booking-holds", json=payload)
        assert response.status_code == 429
        assert response.json["code"] == "ACTIVE_HOLD_EXISTS"

    def test_slot_outside_working_hours(self, client, salon):
        payload = dict(self._payload(salon), selected_datetime=at("19:00").isoformat())

        response = client.post("/api/booking-holds", json=payload)
        assert response.status_code == 409
        assert response.json["code"] == "CONFLICT"

    def test_unknown_hold(self, client, salon):
        response = client.get("/api/booking-holds/nope")
        assert response.status_code == 404
