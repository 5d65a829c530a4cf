# Bookable slots for a staff member and cache invalidation
import datetime

from flask import Blueprint, current_app, jsonify, request

from salonbook.errors import NotFoundError, TransientStoreError, ValidationError
from salonbook.services.availability import AvailabilityLoader
from salonbook.services.cache import safe_invalidate
from salonbook.services.intervals import chain_services
from salonbook.services.slots import SlotRequest, compute_availability_or_empty
from salonbook.wiring import availability_cache, availability_store

availability_bp = Blueprint("availability", __name__, url_prefix="/api/availability")

TRUE_VALUES = ("1", "true", "yes")


def _int_arg(name, default=None):
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


def _parse_date(raw, name="date"):
    if not raw:
        raise ValidationError(f"{name} is required (YYYY-MM-DD)")
    try:
        return datetime.date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be in YYYY-MM-DD format") from None


def _parse_offering_ids(raw_ids):
    try:
        ids = [int(part) for part in raw_ids.split(",") if part.strip()]
    except ValueError:
        raise ValidationError("offering_ids must be a comma separated list of integers") from None
    if not ids:
        raise ValidationError("offering_ids is empty")
    return ids


def _duration_for_offerings(store, ids, provider_id):
    """Chained span of the requested offerings, buffers between them included."""
    offerings = store.get_provider_offerings(provider_id, ids)
    missing = [i for i in ids if i not in offerings]
    if missing:
        raise NotFoundError(f"Offering(s) {missing} not found for this provider")

    origin = datetime.datetime.combine(datetime.date.today(), datetime.time.min)
    _, span = chain_services(
        origin,
        [(i, None, offerings[i].duration_minutes, offerings[i].buffer_minutes) for i in ids],
    )
    return span


@availability_bp.route("/<int:staff_id>/slots", methods=["GET"])
def get_available_slots(staff_id):
    """
    Bookable start times for a staff member on a date
    ---
    tags:
      - Availability
    parameters:
      - name: staff_id
        in: path
        type: integer
        required: true
      - name: date
        in: query
        type: string
        required: true
        description: YYYY-MM-DD
      - name: duration
        in: query
        type: integer
        description: Service length in minutes. Required unless offering_ids is given.
      - name: offering_ids
        in: query
        type: string
        description: Comma separated offerings booked back to back
      - name: interval
        in: query
        type: integer
        description: Step between candidate starts, defaults to 15
      - name: travel_buffer
        in: query
        type: integer
        description: Minutes reserved before and after an at-home visit
      - name: location_type
        in: query
        type: string
        enum: [at_salon, at_home]
      - name: avoid_gaps
        in: query
        type: boolean
        description: Only offer starts that open or close the day or sit next to existing work
    responses:
      200:
        description: Every candidate start with its availability, ascending
        schema:
          type: object
          properties:
            staff_id:
              type: integer
            date:
              type: string
            slots:
              type: array
              items:
                $ref: '#/definitions/Slot'
      400:
        description: Invalid parameters
      404:
        description: Staff member or offering not found
    """
    on_date = _parse_date(request.args.get("date"))
    duration = _int_arg("duration")
    interval = _int_arg("interval", current_app.config["DEFAULT_SLOT_INTERVAL_MINUTES"])
    travel_buffer = _int_arg("travel_buffer")
    avoid_gaps = request.args.get("avoid_gaps", "").lower() in TRUE_VALUES
    offering_ids = None
    if request.args.get("offering_ids"):
        offering_ids = _parse_offering_ids(request.args["offering_ids"])
    elif duration is None:
        raise ValidationError("duration or offering_ids is required")

    store = availability_store()
    try:
        staff = store.get_staff(staff_id)
        if staff is None:
            raise NotFoundError(f"Staff member {staff_id} not found")

        if offering_ids:
            duration = _duration_for_offerings(store, offering_ids, staff.provider_id)

        if travel_buffer is None:
            travel_buffer = 0
            if request.args.get("location_type") == "at_home":
                provider = store.get_provider(staff.provider_id)
                travel_buffer = (provider.travel_buffer_minutes or 0) if provider else 0

        slot_request = SlotRequest(
            duration_minutes=duration,
            slot_interval_minutes=interval,
            travel_buffer_minutes=travel_buffer,
            avoid_gaps=avoid_gaps,
        )
        slots = compute_availability_or_empty(
            AvailabilityLoader(store), staff_id, on_date, slot_request, availability_cache()
        )
    except TransientStoreError as e:
        current_app.logger.warning(f"Slots for staff {staff_id} on {on_date} unavailable: {e}")
        slots = []

    return jsonify({"staff_id": staff_id, "date": on_date.isoformat(), "slots": slots})


@availability_bp.route("/invalidate", methods=["POST"])
def invalidate_availability():
    """
    Drop cached slots for a staff member on a date
    ---
    tags:
      - Availability
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [staff_id, date]
          properties:
            staff_id:
              type: integer
            date:
              type: string
              example: "2026-03-02"
    responses:
      200:
        description: Invalidation attempted. Failures are logged, never raised.
      400:
        description: Missing staff_id or date
    """
    data = request.get_json(silent=True) or {}
    staff_id = data.get("staff_id")
    if staff_id is None:
        raise ValidationError("staff_id is required")
    on_date = _parse_date(data.get("date"))

    invalidated = safe_invalidate(availability_cache(), staff_id, on_date)
    return jsonify(
        {"staff_id": staff_id, "date": on_date.isoformat(), "invalidated": invalidated}
    )
