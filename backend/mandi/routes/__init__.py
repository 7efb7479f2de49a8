# Overview: Shared error mapping for API blueprints.

from flask import jsonify

from ..permissions import PermissionDeniedError
from ..services.counter_service import CounterError
from ..services.ledger_service import LedgerError
from ..services.lifecycle_service import OrderError
from ..services.lock_service import LockError
from ..validation import NotFoundError, ValidationError


DOMAIN_ERRORS = (
    ValidationError,
    NotFoundError,
    PermissionDeniedError,
    OrderError,
    LedgerError,
    CounterError,
    LockError,
)


def error_response(e):
    """Map a domain exception to the JSON error envelope and status code."""
    if isinstance(e, ValidationError):
        return jsonify(e.to_dict()), 400
    if isinstance(e, NotFoundError):
        return jsonify({"error": e.message}), 404
    if isinstance(e, PermissionDeniedError):
        body = {"error": "Permission denied", "message": e.message}
        if e.required_permission:
            body["required_permission"] = e.required_permission
        return jsonify(body), 403
    return jsonify({"error": e.message, "details": e.details}), 400
