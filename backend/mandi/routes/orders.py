# Overview: Flask API routes for orders operations; parses input and returns JSON responses.

"""
Order API Routes

DESIGN:
- Creation is idempotent when the client sends an idempotency key (body
  field `idempotency_key` or `Idempotency-Key` header): a replay answers
  200 with the original order instead of 201.
- Staff edits are price-only; quantities and line composition are fixed.
- Status changes follow the lifecycle table; cancelling is admin-only,
  both here and on DELETE.

SECURITY:
- CREATE_ORDER / VIEW_ORDERS: admin, staff, customer (customers own orders only)
- EDIT_ORDER_PRICES, UPDATE_ORDER_STATUS, RECORD_PAYMENT: admin, staff
- CANCEL_ORDER: admin
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_permission
from ..models.auth import ROLE_CUSTOMER
from ..services import order_service
from ..validation import parse_datetime, parse_id, parse_text, raise_if_errors, require_object
from . import DOMAIN_ERRORS, error_response


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _parse_paging(args, default_limit: int = 50, max_limit: int = 200) -> tuple[int, int]:
    try:
        limit = min(max(int(args.get("limit", default_limit)), 1), max_limit)
        offset = max(int(args.get("offset", 0)), 0)
    except (TypeError, ValueError):
        limit, offset = default_limit, 0
    return limit, offset


# =============================================================================
# CREATE / READ
# =============================================================================

@orders_bp.post("")
@require_auth
@require_permission("CREATE_ORDER")
def create_order_route():
    """
    Create an order.

    Request body:
    {
        "customer_id": 12,          (optional for customer users)
        "lines": [{"product_id": 3, "quantity": 2.5, "rate": 40}],
        "idempotency_key": "uuid",  (optional)
        "notes": "...",             (optional)
        "batch_ref": "B-0930"       (optional)
    }

    Returns:
        201: {"order", "idempotent": false, "warnings", "new_contract_prices"}
        200: same envelope with "idempotent": true on replay
    """
    try:
        data = require_object(request.get_json(silent=True))
        user = g.current_user
        errors: dict[str, str] = {}

        raw_customer = data.get("customer_id", data.get("customer"))
        if raw_customer in (None, "") and user.role == ROLE_CUSTOMER:
            raw_customer = user.customer_id
        customer_id = parse_id(raw_customer, "customer_id", errors)

        idempotency_key = data.get("idempotency_key") or request.headers.get("Idempotency-Key")
        idempotency_key = parse_text(idempotency_key, "idempotency_key", errors, max_length=128)
        notes = parse_text(data.get("notes"), "notes", errors)
        batch_ref = parse_text(data.get("batch_ref"), "batch_ref", errors, max_length=64)
        raise_if_errors(errors)

        result = order_service.create_order(
            customer_id,
            data.get("lines", data.get("products")),
            user,
            idempotency_key=idempotency_key,
            notes=notes,
            batch_ref=batch_ref,
        )

        return jsonify({
            "order": result.order.to_dict(),
            "idempotent": result.idempotent,
            "warnings": result.warnings,
            "new_contract_prices": result.new_contract_prices,
        }), 200 if result.idempotent else 201

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
@require_permission("VIEW_ORDERS")
def list_orders_route():
    """
    List orders, newest first.

    Query params: status, customer_id, start, end, limit, offset.
    Customer users always see only their own orders.
    """
    try:
        errors: dict[str, str] = {}
        customer_id = parse_id(request.args.get("customer_id"), "customer_id", errors, required=False)
        start = parse_datetime(request.args.get("start"), "start", errors)
        end = parse_datetime(request.args.get("end"), "end", errors)
        raise_if_errors(errors)
        limit, offset = _parse_paging(request.args)

        orders, total = order_service.list_orders(
            g.current_user,
            status=request.args.get("status") or None,
            customer_id=customer_id,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "orders": [o.to_dict(include_lines=False) for o in orders],
            "count": len(orders),
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
@require_permission("VIEW_ORDERS")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order_for_user(order_id, g.current_user)
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/audit")
@require_auth
@require_permission("EDIT_ORDER_PRICES")
def get_order_audit_route(order_id: int):
    """Price-audit trail for an order, oldest first."""
    try:
        entries = order_service.get_price_audit(order_id)
        return jsonify({
            "order_id": order_id,
            "entries": [e.to_dict() for e in entries],
        }), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get price audit")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# EDITS
# =============================================================================

@orders_bp.put("/<int:order_id>")
@require_auth
@require_permission("EDIT_ORDER_PRICES")
def update_order_route(order_id: int):
    """
    Price-only edit.

    Request body:
    {
        "lines": [{"product_id": 3, "quantity": 2.5, "rate": 42}],
        "notes": "..."   (optional)
    }
    `price_at_time` is accepted as an alias for `rate`.
    """
    try:
        data = require_object(request.get_json(silent=True))
        order = order_service.update_order_prices(
            order_id,
            data.get("lines", data.get("products")),
            g.current_user,
            notes=data.get("notes"),
        )
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/bulk-rates")
@require_auth
@require_permission("EDIT_ORDER_PRICES")
def bulk_rates_route():
    """
    Apply many rate edits; each item succeeds or fails on its own.

    Request body: {"items": [{"order_id": 1, "product_id": 3, "rate": 40}]}
    """
    try:
        data = require_object(request.get_json(silent=True))
        outcome = order_service.bulk_update_rates(data.get("items"), g.current_user)
        return jsonify(outcome), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to bulk update rates")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/status")
@require_auth
@require_permission("UPDATE_ORDER_STATUS")
def update_status_route(order_id: int):
    """
    Request body: {"status": "confirmed", "reason": "..."}

    Returns 400 with `details.allowed` for transitions not in the lifecycle.
    """
    try:
        data = require_object(request.get_json(silent=True))
        errors: dict[str, str] = {}
        reason = parse_text(data.get("reason"), "reason", errors, max_length=255)
        raise_if_errors(errors)

        order = order_service.transition_status(order_id, data.get("status"), g.current_user, reason=reason)
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/payment")
@require_auth
@require_permission("RECORD_PAYMENT")
def update_payment_route(order_id: int):
    """Request body: {"paid_amount": 150.0}"""
    try:
        data = require_object(request.get_json(silent=True))
        order = order_service.update_payment(order_id, data.get("paid_amount"), g.current_user)
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order payment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
@require_auth
@require_permission("CANCEL_ORDER")
def cancel_order_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        reason = data.get("reason") if isinstance(data, dict) else None
        errors: dict[str, str] = {}
        reason = parse_text(reason, "reason", errors, max_length=255)
        raise_if_errors(errors)

        order = order_service.cancel_order(order_id, g.current_user, reason=reason)
        return jsonify({"message": "Order cancelled", "order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
