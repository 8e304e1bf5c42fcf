# Overview: Flask API routes for the movement ledger; read-only audit queries.

from flask import Blueprint, request, jsonify

from ..services import ledger_service
from ..time_utils import parse_iso_datetime
from ..validation import coerce_int, ValidationError
from ..decorators import handle_stock_errors

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start/end filtering is inclusive.
"""

movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")


@movements_bp.get("")
@handle_stock_errors
def list_movements_route():
    lot_id_raw = request.args.get("lot_id")
    lot_id = coerce_int(lot_id_raw, "lot_id") if lot_id_raw else None

    limit_raw = request.args.get("limit")
    limit = coerce_int(limit_raw, "limit") if limit_raw else 200
    limit = max(1, min(limit, 1000))

    try:
        start = parse_iso_datetime(request.args.get("start"))
        end = parse_iso_datetime(request.args.get("end"))
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 datetimes")

    movements = ledger_service.list_movements(
        lot_id=lot_id,
        sale_ref=request.args.get("sale_ref") or None,
        kind=request.args.get("kind") or None,
        start=start,
        end=end,
        limit=limit,
    )
    return jsonify({"items": [m.to_dict() for m in movements], "count": len(movements), "limit": limit}), 200
