# Pay-run preview, creation and lookup
import datetime

from flask import Blueprint, current_app, jsonify, request

from salonbook.errors import NotFoundError, ValidationError
from salonbook.services.payroll import PayRunEngine, PayRunRequest, create_pay_run
from salonbook.wiring import outbox, payroll_store

pay_runs_bp = Blueprint("pay_runs", __name__, url_prefix="/api/pay-runs")


def _pay_run_request(data):
    try:
        start = datetime.date.fromisoformat(data.get("pay_period_start") or "")
        end = datetime.date.fromisoformat(data.get("pay_period_end") or "")
    except ValueError:
        raise ValidationError("pay_period_start and pay_period_end must be YYYY-MM-DD") from None
    return PayRunRequest(
        provider_id=data.get("provider_id"),
        pay_period_start=start,
        pay_period_end=end,
        period_type=data.get("period_type") or "monthly",
    )


def _money(value):
    return str(value) if value is not None else None


@pay_runs_bp.route("/preview", methods=["POST"])
def preview_pay_run():
    """
    Calculate a pay run without saving it
    ---
    tags:
      - Payroll
    parameters:
      - in: body
        name: body
        required: true
        schema:
          $ref: '#/definitions/PayRunPayload'
    responses:
      200:
        description: Items per active staff member plus configuration warnings
      400:
        description: Invalid period
    """
    pay_run_request = _pay_run_request(request.get_json(silent=True) or {})
    calculation = PayRunEngine(payroll_store()).calculate(
        pay_run_request.provider_id,
        pay_run_request.pay_period_start,
        pay_run_request.pay_period_end,
        pay_run_request.period_type,
    )
    return jsonify(calculation.to_dict())


@pay_runs_bp.route("", methods=["POST"])
def create():
    """
    Create a draft pay run with its items
    ---
    tags:
      - Payroll
    parameters:
      - in: body
        name: body
        required: true
        schema:
          $ref: '#/definitions/PayRunPayload'
    responses:
      201:
        description: Pay run created
        schema:
          type: object
          properties:
            pay_run_id:
              type: integer
            item_count:
              type: integer
            warnings:
              type: array
              items:
                type: object
      400:
        description: Invalid period
      409:
        description: A pay run already exists for this period
      422:
        description: Staff without compensation configured and proceed_with_warnings not set
    """
    data = request.get_json(silent=True) or {}
    pay_run_request = _pay_run_request(data)

    result = create_pay_run(
        payroll_store(),
        pay_run_request,
        proceed_with_warnings=bool(data.get("proceed_with_warnings")),
        events=outbox(),
    )
    current_app.logger.info(
        f"Pay run {result['pay_run_id']} created with {result['item_count']} items"
    )
    return jsonify(result), 201


@pay_runs_bp.route("/<int:pay_run_id>", methods=["GET"])
def get_pay_run(pay_run_id):
    """
    Pay run header and items
    ---
    tags:
      - Payroll
    parameters:
      - name: pay_run_id
        in: path
        type: integer
        required: true
    responses:
      200:
        description: Pay run found
      404:
        description: Pay run not found
    """
    run = payroll_store().get_pay_run(pay_run_id)
    if run is None:
        raise NotFoundError(f"Pay run {pay_run_id} not found")

    return jsonify(
        {
            "id": run.id,
            "provider_id": run.provider_id,
            "pay_period_start": run.pay_period_start.isoformat(),
            "pay_period_end": run.pay_period_end.isoformat(),
            "period_type": run.period_type,
            "status": run.status,
            "created_at": run.created_at.isoformat() if run.created_at else None,
            "approved_at": run.approved_at.isoformat() if run.approved_at else None,
            "items": [
                {
                    "staff_id": item.staff_id,
                    "gross_pay": _money(item.gross_pay),
                    "commission_amount": _money(item.commission_amount),
                    "hourly_amount": _money(item.hourly_amount),
                    "salary_amount": _money(item.salary_amount),
                    "tips_amount": _money(item.tips_amount),
                    "manual_deductions": _money(item.manual_deductions),
                    "tax_deduction": _money(item.tax_deduction),
                    "uif_contribution": _money(item.uif_contribution),
                    "net_pay": _money(item.net_pay),
                    "notes": item.notes,
                }
                for item in sorted(run.items, key=lambda i: i.staff_id)
            ],
        }
    )
