# Overview: Flask API routes exposing sync status, the conflict queue and cache maintenance.

from flask import Blueprint

from ..extensions import get_services

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/status")
def status_route():
    services = get_services()
    return {
        **services.sync.get_sync_status(),
        "pending_recalculations": len(services.debouncer),
    }


@sync_bp.get("/conflicts")
def conflicts_route():
    """
    Full conflict queue. `index` is the position to pass to /ack;
    `pending` counts the unacknowledged records.
    """
    sync = get_services().sync
    records = sync.conflicts.all()
    return {
        "items": [{"index": i, **record.to_dict()} for i, record in enumerate(records)],
        "pending": len(sync.get_pending_conflicts()),
    }


@sync_bp.post("/conflicts/<int:index>/ack")
def acknowledge_route(index: int):
    if not get_services().sync.acknowledge_conflict(index):
        return {"error": "Conflict not found"}, 404
    return {"ok": True}, 200


@sync_bp.post("/conflicts/clear")
def clear_conflicts_route():
    removed = get_services().sync.clear_acknowledged_conflicts()
    return {"ok": True, "removed": removed}, 200


@sync_bp.get("/cache/stats")
def cache_stats_route():
    return get_services().caches.stats()


@sync_bp.post("/cache/cleanup")
def cache_cleanup_route():
    return {"ok": True, "removed": get_services().caches.cleanup()}, 200
