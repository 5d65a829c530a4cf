# Cancel and reschedule bookings
import datetime

from flask import Blueprint, jsonify, request

from salonbook.errors import ValidationError
from salonbook.services.bookings import cancel_booking, reschedule_booking
from salonbook.wiring import availability_cache, availability_loader, booking_store, outbox

bookings_bp = Blueprint("bookings", __name__, url_prefix="/api/bookings")


@bookings_bp.route("/<int:booking_id>/cancel", methods=["POST"])
def cancel(booking_id):
    """
    Cancel a pending or confirmed booking
    ---
    tags:
      - Bookings
    parameters:
      - name: booking_id
        in: path
        type: integer
        required: true
      - in: body
        name: body
        schema:
          type: object
          properties:
            reason:
              type: string
    responses:
      200:
        description: Booking cancelled, its staff days are invalidated in the cache
      404:
        description: Booking not found
      409:
        description: Booking is already cancelled or completed
    """
    data = request.get_json(silent=True) or {}
    result = cancel_booking(
        booking_store(),
        booking_id,
        cache=availability_cache(),
        events=outbox(),
        reason=data.get("reason"),
    )
    return jsonify(result)


@bookings_bp.route("/<int:booking_id>/reschedule", methods=["POST"])
def reschedule(booking_id):
    """
    Move a booking to a new start time
    ---
    tags:
      - Bookings
    parameters:
      - name: booking_id
        in: path
        type: integer
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [new_start]
          properties:
            new_start:
              type: string
              example: "2026-03-02T10:00:00"
    responses:
      200:
        description: Booking moved
      400:
        description: Missing or invalid new_start
      404:
        description: Booking not found
      409:
        description: New time conflicts with another booking
    """
    data = request.get_json(silent=True) or {}
    raw = data.get("new_start")
    if not raw:
        raise ValidationError("new_start is required")
    try:
        new_start = datetime.datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        raise ValidationError("new_start must be an ISO 8601 datetime") from None

    result = reschedule_booking(
        booking_store(),
        availability_loader(),
        booking_id,
        new_start,
        cache=availability_cache(),
        events=outbox(),
    )
    return jsonify(result)
