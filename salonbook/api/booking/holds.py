# Create, inspect and consume booking holds
from flask import Blueprint, current_app, jsonify, request

from salonbook.services.holds import ConsumeHoldRequest, CreateHoldRequest, hold_to_dict
from salonbook.utils.auth import get_authenticated_user_id
from salonbook.wiring import hold_manager

holds_bp = Blueprint("booking_holds", __name__, url_prefix="/api/booking-holds")


@holds_bp.route("", methods=["POST"])
def create_hold():
    """
    Reserve a slot while the customer checks out
    ---
    tags:
      - Booking Holds
    parameters:
      - in: body
        name: body
        required: true
        schema:
          $ref: '#/definitions/CreateHoldPayload'
    responses:
      201:
        description: Hold created
        schema:
          $ref: '#/definitions/BookingHold'
      400:
        description: Invalid request
      404:
        description: Provider or offering not found
      409:
        description: The slot overlaps a committed booking or falls outside working hours
      429:
        description: This guest already has an active hold
    """
    data = request.get_json(silent=True) or {}
    hold_request = CreateHoldRequest.from_dict(data)
    user_id = get_authenticated_user_id(required=False)

    manager = hold_manager()
    hold = manager.create(hold_request, user_id=user_id)
    current_app.logger.info(f"Hold {hold.id} created for provider {hold.provider_id}")

    return jsonify(hold_to_dict(hold, manager.clock())), 201


@holds_bp.route("/<string:hold_id>", methods=["GET"])
def get_hold(hold_id):
    """
    Hold with its effective status
    ---
    tags:
      - Booking Holds
    parameters:
      - name: hold_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: The hold. An active hold past its expiry reads as expired.
        schema:
          $ref: '#/definitions/BookingHold'
      404:
        description: Hold not found
    """
    return jsonify(hold_manager().get(hold_id))


@holds_bp.route("/<string:hold_id>/consume", methods=["POST"])
def consume_hold(hold_id):
    """
    Turn a hold into a booking
    ---
    tags:
      - Booking Holds
    security:
      - Bearer: []
    parameters:
      - name: hold_id
        in: path
        type: string
        required: true
      - in: body
        name: body
        schema:
          $ref: '#/definitions/ConsumeHoldPayload'
    responses:
      201:
        description: Booking created
        schema:
          type: object
          properties:
            booking_id:
              type: integer
            booking_number:
              type: string
            payment_url:
              type: string
      401:
        description: Missing or invalid token
      403:
        description: Hold belongs to another customer
      404:
        description: Hold not found
      409:
        description: Slot was taken by another booking
      410:
        description: Hold expired or already used
    """
    user_id = get_authenticated_user_id(required=True)
    consume_request = ConsumeHoldRequest.from_dict(request.get_json(silent=True) or {})

    result = hold_manager().consume(hold_id, user_id, consume_request)
    return jsonify(result.to_dict()), 201
