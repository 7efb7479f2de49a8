# Overview: Flask API routes for ledger operations; parses input and returns JSON responses.

"""
Customer Ledger API Routes

Postings (payment, adjustment, invoice) answer 201 with the new entry and
the balance before and after. Reads are statements, per-customer history,
a receivables summary and a filtered entry list.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_permission
from ..services import ledger_service
from ..time_utils import utcnow
from ..validation import (
    ValidationError,
    parse_datetime,
    parse_id,
    parse_text,
    raise_if_errors,
    require_object,
)
from . import DOMAIN_ERRORS, error_response


ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


def _int_arg(name: str, default: int, *, minimum: int = 1, maximum: int | None = None) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError({name: f"{name} must be an integer"})
    if value < minimum or (maximum is not None and value > maximum):
        raise ValidationError({name: f"{name} is out of range"})
    return value


# =============================================================================
# POSTINGS
# =============================================================================

@ledger_bp.post("/payment")
@require_auth
@require_permission("RECORD_PAYMENT")
def record_payment_route():
    """
    Request body: {"customer_id": 1, "amount": 500, "date": "...", "notes": "..."}
    """
    try:
        data = require_object(request.get_json(silent=True))
        errors: dict[str, str] = {}
        customer_id = parse_id(data.get("customer_id", data.get("customer")), "customer_id", errors)
        date = parse_datetime(data.get("date"), "date", errors)
        notes = parse_text(data.get("notes"), "notes", errors)
        if data.get("amount") is None:
            errors["amount"] = "amount is required"
        raise_if_errors(errors)

        posting = ledger_service.record_payment(
            customer_id, data.get("amount"), g.current_user, date=date, notes=notes,
        )
        return jsonify(posting.to_dict()), 201

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/adjustment")
@require_auth
@require_permission("RECORD_ADJUSTMENT")
def record_adjustment_route():
    """
    Admin-only correction.

    Request body: {"customer_id": 1, "amount": -50, "description": "...", "date": "...", "notes": "..."}
    """
    try:
        data = require_object(request.get_json(silent=True))
        errors: dict[str, str] = {}
        customer_id = parse_id(data.get("customer_id", data.get("customer")), "customer_id", errors)
        date = parse_datetime(data.get("date"), "date", errors)
        notes = parse_text(data.get("notes"), "notes", errors)
        if data.get("amount") is None:
            errors["amount"] = "amount is required"
        raise_if_errors(errors)

        posting = ledger_service.record_adjustment(
            customer_id,
            data.get("amount"),
            data.get("description"),
            g.current_user,
            date=date,
            notes=notes,
        )
        return jsonify(posting.to_dict()), 201

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record adjustment")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.post("/invoice")
@require_auth
@require_permission("RECORD_INVOICE")
def record_invoice_route():
    """Request body: {"order_id": 10, "notes": "..."}"""
    try:
        data = require_object(request.get_json(silent=True))
        errors: dict[str, str] = {}
        order_id = parse_id(data.get("order_id", data.get("order")), "order_id", errors)
        notes = parse_text(data.get("notes"), "notes", errors)
        raise_if_errors(errors)

        posting = ledger_service.record_invoice(order_id, g.current_user, notes=notes)
        return jsonify(posting.to_dict()), 201

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record invoice")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# READS
# =============================================================================

@ledger_bp.get("/statement/<int:customer_id>")
@require_auth
@require_permission("VIEW_LEDGER")
def statement_route(customer_id: int):
    """
    Monthly statement. Query params: month (1-12), year. Defaults to the
    current month. `start`/`end` may be given instead for a custom range.
    """
    try:
        errors: dict[str, str] = {}
        start = parse_datetime(request.args.get("start"), "start", errors)
        end = parse_datetime(request.args.get("end"), "end", errors)
        raise_if_errors(errors)

        if start and end:
            statement = ledger_service.build_statement(customer_id, start, end)
        else:
            now = utcnow()
            month = _int_arg("month", now.month, maximum=12)
            year = _int_arg("year", now.year, minimum=2000, maximum=9999)
            statement = ledger_service.monthly_statement(customer_id, month, year)

        return jsonify(statement.to_dict()), 200

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build statement")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/customer/<int:customer_id>")
@require_auth
@require_permission("VIEW_LEDGER")
def customer_history_route(customer_id: int):
    """Query params: start, end, type, page, per_page."""
    try:
        errors: dict[str, str] = {}
        start = parse_datetime(request.args.get("start"), "start", errors)
        end = parse_datetime(request.args.get("end"), "end", errors)
        raise_if_errors(errors)

        history = ledger_service.customer_history(
            customer_id,
            start=start,
            end=end,
            entry_type=request.args.get("type") or None,
            page=_int_arg("page", 1),
            per_page=_int_arg("per_page", 50, maximum=200),
        )
        return jsonify(history), 200

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get customer ledger")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/balances")
@require_auth
@require_permission("VIEW_LEDGER")
def balances_route():
    try:
        include_zero = request.args.get("include_zero", "false").lower() == "true"
        return jsonify(ledger_service.balances_summary(include_zero=include_zero)), 200
    except Exception:
        current_app.logger.exception("Failed to get balances")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("")
@require_auth
@require_permission("VIEW_LEDGER")
def list_entries_route():
    """Query params: customer_id, type, start, end, limit, offset."""
    try:
        errors: dict[str, str] = {}
        customer_id = parse_id(request.args.get("customer_id"), "customer_id", errors, required=False)
        start = parse_datetime(request.args.get("start"), "start", errors)
        end = parse_datetime(request.args.get("end"), "end", errors)
        raise_if_errors(errors)

        limit = _int_arg("limit", 100, maximum=500)
        offset = _int_arg("offset", 0, minimum=0)
        entries, total = ledger_service.list_entries(
            customer_id=customer_id,
            entry_type=request.args.get("type") or None,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "entries": [e.to_dict() for e in entries],
            "count": len(entries),
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list ledger entries")
        return jsonify({"error": "Internal server error"}), 500
