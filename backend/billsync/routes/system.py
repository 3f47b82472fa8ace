# backend/billsync/routes/system.py
"""
System health endpoint.

Reports database reachability plus the live state of the sync layer
(subscriptions, pending optimistic updates, conflicts, debounce timers).
"""

import time
from flask import Blueprint, current_app
from ..extensions import db, get_services
from ..models import Bill, Product
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity by counting both collections.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        bill_count = db.session.query(Bill).count()
        product_count = db.session.query(Product).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "bills": bill_count,
                "products": product_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_sync_health() -> dict:
    services = get_services()
    status = services.sync.get_sync_status()
    return {
        "status": "degraded" if status["pending_conflicts"] else "healthy",
        "details": {
            **status,
            "pending_recalculations": len(services.debouncer),
            "store_listeners": services.store.listener_count,
        },
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy, or degraded (unacknowledged conflicts)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    sync_health = check_sync_health()

    all_checks = [database_health, sync_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "sync": sync_health,
        }
    }

    return response, http_status
