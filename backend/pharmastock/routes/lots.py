# Overview: Flask API routes for lots; parses input and returns JSON responses.

"""Lot store, stock protocol and ledger routes."""

from flask import Blueprint, request, jsonify, g, current_app

from ..models import Lot
from ..services import lot_service, reservation_service, ledger_service
from ..services.allocation_service import plan_allocation
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    coerce_int,
    coerce_positive_quantity,
    coerce_reason,
    ValidationError,
)
from ..time_utils import parse_iso_date
from ..decorators import require_actor, handle_stock_errors


lots_bp = Blueprint("lots", __name__, url_prefix="/api/lots")

LOT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields=lot_service.MUTABLE_FIELDS | {"product_id", "initial_quantity"},
    required_on_create=lot_service.REQUIRED_ON_CREATE,
)

# Quantity fields pass the policy so the service can reject them by name
LOT_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=lot_service.MUTABLE_FIELDS | lot_service.QUANTITY_FIELDS,
)


def _alert_days() -> int:
    return current_app.config.get("NEAR_EXPIRY_ALERT_DAYS", 30)


def _lot_json(lot: Lot) -> dict:
    return lot.to_dict(alert_days=_alert_days())


def _bool_arg(name: str):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise ValidationError(f"{name} must be true or false")


def _int_arg(name: str):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return coerce_int(raw, name)


def _date_arg(name: str):
    raw = request.args.get(name)
    try:
        return parse_iso_date(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date (YYYY-MM-DD)")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data


@lots_bp.get("")
@handle_stock_errors
def list_lots_route():
    result = lot_service.list_lots(
        product_id=_int_arg("product_id"),
        active=_bool_arg("active"),
        expiring_before=_date_arg("expiring_before"),
        supplier_id=_int_arg("supplier_id"),
        status=request.args.get("status") or None,
        sort=request.args.get("sort") or "expiration_date",
        page=_int_arg("page"),
        per_page=_int_arg("per_page"),
        alert_days=_alert_days(),
    )
    return jsonify(result), 200


@lots_bp.post("")
@require_actor
@handle_stock_errors
def create_lot_route():
    patch = validate_payload(model=Lot, payload=_json_body(), policy=LOT_CREATE_POLICY, partial=False)
    lot = lot_service.create_lot(patch=patch, actor=g.actor)
    current_app.logger.info("Lot %s created for product %s by %s", lot.id, lot.product_id, g.actor)
    return jsonify({"lot": _lot_json(lot)}), 201


@lots_bp.get("/near-expiry")
@handle_stock_errors
def near_expiry_route():
    days = _int_arg("days")
    if days is None:
        days = _alert_days()
    lots = lot_service.list_near_expiry(days)
    return jsonify({"days": days, "items": [_lot_json(lot) for lot in lots], "count": len(lots)}), 200


@lots_bp.get("/allocation")
@handle_stock_errors
def allocation_preview_route():
    """Availability preview: the FEFO plan for a quantity, without reserving anything."""
    product_id = _int_arg("product_id")
    if product_id is None:
        raise ValidationError("product_id is required")
    quantity = coerce_positive_quantity(request.args.get("quantity"))
    plan = plan_allocation(product_id, quantity)
    return jsonify({"plan": plan.to_dict()}), 200


@lots_bp.get("/barcode/<string:code>")
@handle_stock_errors
def get_lot_by_barcode_route(code: str):
    lot = lot_service.get_lot_by_barcode(code)
    return jsonify({"lot": _lot_json(lot)}), 200


@lots_bp.get("/product/<int:product_id>")
@handle_stock_errors
def list_lots_by_product_route(product_id: int):
    active_only = _bool_arg("active_only")
    lots = lot_service.list_lots_by_product(
        product_id,
        active_only=True if active_only is None else active_only,
        available_only=bool(_bool_arg("available_only")),
    )
    return jsonify({"items": [_lot_json(lot) for lot in lots], "count": len(lots)}), 200


@lots_bp.get("/<int:lot_id>")
@handle_stock_errors
def get_lot_route(lot_id: int):
    lot = lot_service.get_lot(lot_id)
    return jsonify({"lot": _lot_json(lot)}), 200


@lots_bp.patch("/<int:lot_id>")
@require_actor
@handle_stock_errors
def update_lot_route(lot_id: int):
    patch = validate_payload(model=Lot, payload=_json_body(), policy=LOT_UPDATE_POLICY, partial=True)
    lot = lot_service.update_lot(lot_id, patch=patch, actor=g.actor)
    return jsonify({"lot": _lot_json(lot)}), 200


@lots_bp.delete("/<int:lot_id>")
@require_actor
@handle_stock_errors
def deactivate_lot_route(lot_id: int):
    lot = lot_service.deactivate_lot(lot_id, actor=g.actor)
    current_app.logger.info("Lot %s deactivated by %s", lot_id, g.actor)
    return jsonify({"lot": _lot_json(lot)}), 200


# ---------------------------------------------------------------------------
# Stock protocol
# ---------------------------------------------------------------------------

@lots_bp.post("/<int:lot_id>/reserve")
@require_actor
@handle_stock_errors
def reserve_route(lot_id: int):
    data = _json_body()
    change = reservation_service.reserve(
        lot_id,
        coerce_positive_quantity(data.get("quantity")),
        actor=g.actor,
        sale_ref=data.get("sale_ref"),
        reason=coerce_reason(data.get("reason")),
    )
    return jsonify(change.to_dict()), 200


@lots_bp.post("/<int:lot_id>/release")
@require_actor
@handle_stock_errors
def release_route(lot_id: int):
    data = _json_body()
    change = reservation_service.release(
        lot_id,
        coerce_positive_quantity(data.get("quantity")),
        actor=g.actor,
        sale_ref=data.get("sale_ref"),
        reason=coerce_reason(data.get("reason")),
    )
    return jsonify(change.to_dict()), 200


@lots_bp.post("/<int:lot_id>/confirm")
@require_actor
@handle_stock_errors
def confirm_route(lot_id: int):
    data = _json_body()
    change = reservation_service.confirm(
        lot_id,
        coerce_positive_quantity(data.get("quantity")),
        sale_ref=data.get("sale_ref"),
        actor=g.actor,
        reason=coerce_reason(data.get("reason")),
    )
    return jsonify(change.to_dict()), 200


@lots_bp.post("/<int:lot_id>/adjust")
@require_actor
@handle_stock_errors
def adjust_route(lot_id: int):
    data = _json_body()
    if "new_quantity" not in data:
        raise ValidationError("new_quantity is required")
    change = reservation_service.adjust(
        lot_id,
        coerce_int(data.get("new_quantity"), "new_quantity"),
        reason=coerce_reason(data.get("reason")) or "",
        actor=g.actor,
    )
    current_app.logger.info("Lot %s adjusted by %+d (%s)", lot_id, change.quantity, g.actor)
    return jsonify(change.to_dict()), 200


@lots_bp.post("/<int:lot_id>/expire")
@require_actor
@handle_stock_errors
def expire_route(lot_id: int):
    data = _json_body()
    change = reservation_service.expire_lot(lot_id, actor=g.actor, reason=coerce_reason(data.get("reason")))
    return jsonify(change.to_dict()), 200


@lots_bp.post("/<int:lot_id>/return")
@require_actor
@handle_stock_errors
def return_route(lot_id: int):
    data = _json_body()
    change = reservation_service.return_to_lot(
        lot_id,
        coerce_positive_quantity(data.get("quantity")),
        actor=g.actor,
        sale_ref=data.get("sale_ref"),
        reason=coerce_reason(data.get("reason")),
    )
    return jsonify(change.to_dict()), 200


# ---------------------------------------------------------------------------
# Ledger views
# ---------------------------------------------------------------------------

@lots_bp.get("/<int:lot_id>/movements")
@handle_stock_errors
def lot_movements_route(lot_id: int):
    limit = _int_arg("limit") or 200
    limit = max(1, min(limit, 1000))
    movements = ledger_service.list_movements_for_lot(lot_id, limit=limit)
    return jsonify({"items": [m.to_dict() for m in movements], "count": len(movements)}), 200


@lots_bp.get("/<int:lot_id>/history")
@handle_stock_errors
def lot_history_route(lot_id: int):
    return jsonify(ledger_service.lot_history(lot_id)), 200
