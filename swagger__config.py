"""
Swagger/OpenAPI configuration for the SalonBook API
"""

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec",
            "route": "/apispec.json",
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs",
}

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "SalonBook API",
        "description": "Staff availability, booking holds, bookings and provider pay runs",
        "version": "1.0.0",
    },
    "host": "",
    "basePath": "/",
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "Bearer": {
            "type": "apiKey",
            "name": "Authorization",
            "in": "header",
            "description": 'JWT Authorization header using the Bearer scheme. Example: "Authorization: Bearer {token}"',
        }
    },
    "tags": [
        {"name": "Availability", "description": "Bookable slots and cache invalidation"},
        {"name": "Booking Holds", "description": "Short-lived slot reservations"},
        {"name": "Bookings", "description": "Cancel and reschedule"},
        {"name": "Payroll", "description": "Provider pay runs"},
        {"name": "Utility", "description": "Health"},
    ],
    "definitions": {
        "Error": {
            "type": "object",
            "properties": {
                "error": {"type": "string"},
                "code": {"type": "string", "example": "HOLD_EXPIRED"},
            },
        },
        "Slot": {
            "type": "object",
            "properties": {
                "time": {"type": "string", "example": "09:30"},
                "available": {"type": "boolean"},
            },
        },
        "CreateHoldPayload": {
            "type": "object",
            "required": ["provider_id", "services", "selected_datetime", "location_type"],
            "properties": {
                "provider_id": {"type": "integer", "example": 1},
                "services": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "offering_id": {"type": "integer"},
                            "staff_id": {"type": "integer"},
                        },
                    },
                },
                "selected_datetime": {"type": "string", "example": "2026-03-02T09:00:00"},
                "location_type": {"type": "string", "enum": ["at_salon", "at_home"]},
                "location_id": {"type": "integer"},
                "address": {
                    "type": "object",
                    "properties": {
                        "line1": {"type": "string"},
                        "city": {"type": "string"},
                        "latitude": {"type": "number"},
                        "longitude": {"type": "number"},
                    },
                },
                "resource_ids": {"type": "array", "items": {"type": "integer"}},
                "guest_fingerprint_hash": {"type": "string"},
                "staff_id": {"type": "integer"},
            },
        },
        "BookingHold": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "provider_id": {"type": "integer"},
                "staff_id": {"type": "integer"},
                "location_type": {"type": "string"},
                "start_at": {"type": "string", "format": "date-time"},
                "end_at": {"type": "string", "format": "date-time"},
                "services": {"type": "array", "items": {"type": "object"}},
                "metadata": {"type": "object"},
                "hold_status": {"type": "string", "enum": ["active", "expired", "consumed"]},
                "expires_at": {"type": "string", "format": "date-time"},
            },
        },
        "ConsumeHoldPayload": {
            "type": "object",
            "properties": {
                "client_info": {"type": "object"},
                "guest_fingerprint_hash": {"type": "string"},
                "payment_method": {"type": "string", "enum": ["card", "cash", "giftcard"]},
                "payment_option": {"type": "string", "enum": ["deposit", "full"]},
                "addons": {"type": "array", "items": {"type": "object"}},
                "special_requests": {"type": "string"},
                "tip_amount": {"type": "number"},
                "promotion_code": {"type": "string"},
                "is_group_booking": {"type": "boolean"},
                "group_participants": {"type": "array", "items": {"type": "object"}},
                "resource_ids": {"type": "array", "items": {"type": "integer"}},
                "custom_field_values": {"type": "object"},
                "provider_form_responses": {"type": "object"},
            },
        },
        "PayRunPayload": {
            "type": "object",
            "required": ["provider_id", "pay_period_start", "pay_period_end"],
            "properties": {
                "provider_id": {"type": "integer"},
                "pay_period_start": {"type": "string", "example": "2026-03-01"},
                "pay_period_end": {"type": "string", "example": "2026-03-31"},
                "period_type": {"type": "string", "enum": ["weekly", "biweekly", "monthly"]},
                "proceed_with_warnings": {"type": "boolean"},
            },
        },
    },
}
