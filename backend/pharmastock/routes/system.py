# backend/pharmastock/routes/system.py
"""
System health endpoint.

Checks the database and the scan-session store, which are the only
dependencies the stock service has.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Lot, LotMovement, OfflineSale
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        lot_count = db.session.query(Lot).count()
        movement_count = db.session.query(LotMovement).count()
        pending_sync = db.session.query(OfflineSale).filter_by(status="CONFLICT").count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "lots": lot_count,
                "movements": movement_count,
                "pending_offline_sales": pending_sync,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_scan_session_health() -> dict:
    service = current_app.extensions.get("scan_sessions")
    if service is None:
        return {"status": "unhealthy", "error": "Scan session service not initialized"}

    sweeper = current_app.extensions.get("scan_session_sweeper")
    return {
        "status": "healthy",
        "details": {
            "active_sessions": len(service.list_active()),
            "sweeper_running": bool(sweeper and sweeper.running),
        }
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: All systems healthy
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    scan_health = check_scan_session_health()

    all_checks = [database_health, scan_health]
    unhealthy = any(check["status"] == "unhealthy" for check in all_checks)

    response = {
        "status": "unhealthy" if unhealthy else "healthy",
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "scan_sessions": scan_health,
        }
    }

    return response, 503 if unhealthy else 200
