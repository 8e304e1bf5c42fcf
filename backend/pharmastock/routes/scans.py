# Overview: Flask API routes for two-scan verification sessions.

from flask import Blueprint, request, jsonify

from ..errors import NotFoundError, ValidationError, InsufficientStockError, StateConflictError
from ..services.scan_session_service import get_scan_sessions
from ..decorators import require_actor, handle_stock_errors


scans_bp = Blueprint("scans", __name__, url_prefix="/api/scans")

SCAN_FAILURE_STATUS = {
    cls.code: cls.http_status
    for cls in (NotFoundError, ValidationError, InsufficientStockError, StateConflictError)
}


@scans_bp.post("")
@require_actor
@handle_stock_errors
def start_session_route():
    result = get_scan_sessions().start()
    return jsonify(result.to_dict()), 201


@scans_bp.get("")
@handle_stock_errors
def list_sessions_route():
    sessions = get_scan_sessions().list_active()
    return jsonify({"items": [s.to_dict() for s in sessions], "count": len(sessions)}), 200


@scans_bp.post("/<string:session_id>/scan")
@require_actor
@handle_stock_errors
def submit_scan_route(session_id: str):
    data = request.get_json(silent=True) or {}
    code = data.get("code")
    if not isinstance(code, str):
        raise ValidationError("code is required")

    result = get_scan_sessions().submit_scan(session_id, code)
    if result.success:
        return jsonify(result.to_dict()), 200
    return jsonify(result.to_dict()), SCAN_FAILURE_STATUS.get(result.error_code, 400)


@scans_bp.get("/<string:session_id>")
@handle_stock_errors
def get_session_route(session_id: str):
    session = get_scan_sessions().get_session(session_id)
    if session is None:
        raise NotFoundError("Scan session not found or expired", details={"session_id": session_id})
    return jsonify({"session": session.to_dict()}), 200


@scans_bp.get("/<string:session_id>/validate")
@handle_stock_errors
def validate_session_route(session_id: str):
    return jsonify(get_scan_sessions().validate_complete(session_id)), 200


@scans_bp.post("/<string:session_id>/finalize")
@require_actor
@handle_stock_errors
def finalize_session_route(session_id: str):
    return jsonify(get_scan_sessions().finalize(session_id)), 200


@scans_bp.delete("/<string:session_id>")
@require_actor
@handle_stock_errors
def cancel_session_route(session_id: str):
    if not get_scan_sessions().cancel(session_id):
        raise NotFoundError("Scan session not found", details={"session_id": session_id})
    return jsonify({"cancelled": True, "session_id": session_id}), 200
