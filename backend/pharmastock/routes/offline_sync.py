# Overview: Flask API routes for offline-sale reconciliation.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import offline_sync_service
from ..validation import ValidationError
from ..decorators import require_actor, handle_stock_errors


sync_bp = Blueprint("offline_sync", __name__, url_prefix="/api/sync")


@sync_bp.post("/offline-sales")
@require_actor
@handle_stock_errors
def sync_offline_sales_route():
    """
    Replay a batch of offline sales.

    Body: {"sales": [envelope, ...]}. Always 200 for a well-formed batch;
    per-envelope outcomes carry SUCCESS / CONFLICT / DUPLICATE / ERROR.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or "sales" not in data:
        raise ValidationError("sales is required")

    report = offline_sync_service.sync_offline_sales(data["sales"], actor=g.actor)
    body = report.to_dict()
    body["message"] = (
        "No sales to synchronize"
        if report.processed == 0
        else f"Sync finished: {report.success} success, {report.conflict} conflict, "
             f"{report.duplicate} duplicate, {report.error} error"
    )
    return jsonify(body), 200


@sync_bp.post("/offline-sales/replay")
@require_actor
@handle_stock_errors
def replay_offline_sale_route():
    """
    Replay a single envelope (body is the envelope itself).

    200 with SUCCESS or CONFLICT; an already processed sale_id is 409
    IDEMPOTENT_DUPLICATE, a bad envelope 400.
    """
    data = request.get_json(silent=True)
    outcome = offline_sync_service.sync_offline_sale(data, actor=g.actor)
    return jsonify(outcome.to_dict()), 200


@sync_bp.get("/offline-sales/pending")
@handle_stock_errors
def list_pending_route():
    pending = offline_sync_service.list_pending()
    return jsonify({"items": [p.to_dict() for p in pending], "total": len(pending)}), 200


@sync_bp.post("/offline-sales/<string:sale_id>/mark-processed")
@require_actor
@handle_stock_errors
def mark_processed_route(sale_id: str):
    record = offline_sync_service.mark_processed(sale_id, actor=g.actor)
    return jsonify({"sale": record.to_dict()}), 200


@sync_bp.post("/offline-sales/demo")
@require_actor
@handle_stock_errors
def build_demo_envelope_route():
    """Generate a correctly hashed envelope for client testing. Disabled unless ENABLE_DEMO_ENDPOINTS."""
    if not current_app.config.get("ENABLE_DEMO_ENDPOINTS"):
        return jsonify({"error": "Not found"}), 404

    data = request.get_json(silent=True) or {}
    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items are required")
    for item in items:
        if not isinstance(item, dict) or not item.get("product_id") or not item.get("quantity"):
            raise ValidationError("each item needs product_id and quantity")

    envelope = offline_sync_service.build_envelope(
        items,
        operator_id=g.actor,
        customer_id=data.get("customer_id"),
    )
    return jsonify({"envelope": envelope}), 201
