# Overview: Flask API routes for market rates; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_permission
from ..money import ZERO, as_float
from ..services import market_rate_service
from ..validation import ValidationError, parse_datetime, parse_decimal, parse_id, raise_if_errors, require_object
from . import DOMAIN_ERRORS, error_response


market_rates_bp = Blueprint("market_rates", __name__, url_prefix="/api/market-rates")


@market_rates_bp.post("")
@require_auth
@require_permission("MANAGE_MARKET_RATES")
def record_market_rate_route():
    """
    Append today's rate for a product.

    Request body: {"product_id": 3, "rate": 42.5, "effective_date": "..."}
    """
    try:
        data = require_object(request.get_json(silent=True))
        errors: dict[str, str] = {}
        product_id = parse_id(data.get("product_id", data.get("product")), "product_id", errors)
        rate = parse_decimal(data.get("rate"), "rate", errors, min_value=ZERO)
        effective_date = parse_datetime(data.get("effective_date"), "effective_date", errors)
        raise_if_errors(errors)

        entry = market_rate_service.record_market_rate(
            product_id, rate, g.current_user, effective_date=effective_date,
        )
        return jsonify({"market_rate": entry.to_dict()}), 201

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record market rate")
        return jsonify({"error": "Internal server error"}), 500


@market_rates_bp.get("/current")
@require_auth
@require_permission("MANAGE_MARKET_RATES")
def current_market_rates_route():
    """Query param: product_id (repeatable or comma-separated)."""
    try:
        raw_ids = []
        for value in request.args.getlist("product_id"):
            raw_ids.extend(v for v in value.split(",") if v.strip())
        if not raw_ids:
            raise ValidationError({"product_id": "product_id is required"})

        errors: dict[str, str] = {}
        product_ids = [parse_id(v, "product_id", errors) for v in raw_ids]
        raise_if_errors(errors)

        rates = market_rate_service.current_market_rates(product_ids)
        return jsonify({
            "rates": {str(pid): as_float(rates.get(pid)) for pid in sorted(set(product_ids))},
        }), 200

    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get market rates")
        return jsonify({"error": "Internal server error"}), 500
