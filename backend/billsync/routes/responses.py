# Overview: Maps service-layer exceptions onto JSON error responses for the blueprints.

from flask import current_app, request

from ..services.store import StoreError
from ..validation import ConflictError, NotFoundError, ValidationError

STORE_STATUS = {
    "invalid-argument": 400,
    "not-found": 404,
    "already-exists": 409,
    "aborted": 409,
    "unavailable": 503,
    "deadline-exceeded": 503,
}


def error_response(exc: Exception):
    if isinstance(exc, ValidationError):
        return {"error": str(exc), "errors": exc.errors}, 400
    if isinstance(exc, NotFoundError):
        return {"error": str(exc)}, 404
    if isinstance(exc, ConflictError):
        return {"error": str(exc)}, 409
    if isinstance(exc, StoreError) and exc.code in STORE_STATUS:
        current_app.logger.warning("Store error on %s %s: %s", request.method, request.path, exc)
        return {"error": str(exc), "code": exc.code}, STORE_STATUS[exc.code]

    current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return {"error": "Internal server error"}, 500


def json_payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def id_list(payload: dict, key: str = "bill_ids") -> list:
    ids = payload.get(key) or []
    if not isinstance(ids, list):
        raise ValidationError("Invalid request", {key: f"{key} must be a list"})
    return ids
