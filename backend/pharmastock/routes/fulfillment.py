# Overview: Flask API routes for sale fulfillment; FEFO reserve, then confirm or release.

"""
Sale fulfillment flow used by the sales collaborator:

    POST /reserve  {product_id, quantity, sale_ref}  -> FEFO plan, every line reserved
    POST /confirm  {sale_ref, lines: [{lot_id, quantity}]} -> consumed (payment done)
    POST /release  {sale_ref, lines: [{lot_id, quantity}]} -> reservations returned (cancelled)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import reservation_service
from ..services.allocation_service import AllocationLine
from ..validation import coerce_int, coerce_positive_quantity, coerce_reason, ValidationError
from ..decorators import require_actor, handle_stock_errors


fulfillment_bp = Blueprint("fulfillment", __name__, url_prefix="/api/fulfillment")


def _sale_ref(data: dict) -> str:
    sale_ref = data.get("sale_ref")
    if not isinstance(sale_ref, str) or not sale_ref.strip():
        raise ValidationError("sale_ref is required")
    return sale_ref.strip()


def _lines(data: dict) -> list[AllocationLine]:
    raw = data.get("lines")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("lines must be a non-empty list")
    lines = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"lines[{idx}] must be an object")
        lines.append(
            AllocationLine(
                lot_id=coerce_int(item.get("lot_id"), f"lines[{idx}].lot_id"),
                quantity=coerce_positive_quantity(item.get("quantity"), f"lines[{idx}].quantity"),
            )
        )
    return lines


@fulfillment_bp.post("/reserve")
@require_actor
@handle_stock_errors
def reserve_for_sale_route():
    data = request.get_json(silent=True) or {}
    sale_ref = _sale_ref(data)
    plan = reservation_service.reserve_for_sale(
        coerce_int(data.get("product_id"), "product_id"),
        coerce_positive_quantity(data.get("quantity")),
        sale_ref=sale_ref,
        actor=g.actor,
    )
    current_app.logger.info("Reserved %d unit(s) across %d lot(s) for %s", plan.allocated_quantity, len(plan.lines), sale_ref)
    return jsonify({"sale_ref": sale_ref, "plan": plan.to_dict()}), 200


@fulfillment_bp.post("/confirm")
@require_actor
@handle_stock_errors
def confirm_sale_route():
    data = request.get_json(silent=True) or {}
    sale_ref = _sale_ref(data)
    changes = reservation_service.confirm_reservations(_lines(data), sale_ref=sale_ref, actor=g.actor)
    return jsonify({"sale_ref": sale_ref, "changes": [c.to_dict() for c in changes]}), 200


@fulfillment_bp.post("/release")
@require_actor
@handle_stock_errors
def release_sale_route():
    data = request.get_json(silent=True) or {}
    sale_ref = _sale_ref(data)
    changes = reservation_service.release_reservations(
        _lines(data),
        sale_ref=sale_ref,
        actor=g.actor,
        reason=coerce_reason(data.get("reason")) or f"Sale {sale_ref} cancelled",
    )
    return jsonify({"sale_ref": sale_ref, "changes": [c.to_dict() for c in changes]}), 200
