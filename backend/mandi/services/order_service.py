# Overview: Service-layer operations for orders; encapsulates business logic and database work.

"""
Order Service

WHY: Single source of truth for creating, pricing and progressing orders.
Routes, CLI jobs and the packing/batch collaborators all go through here so
pricing, numbering and lifecycle rules cannot drift between callers.

DESIGN:
- Lines are priced by pricing_service.resolve_line_price() against market
  rates fetched ONCE per request for every product on the order.
- Money is Decimal end to end; total_amount is the exact sum of line amounts.
- Order numbers come from the atomic counter (counter_service).
- Idempotency is enforced by the unique idempotency_key column: a duplicate
  insert is caught, rolled back and answered with the existing order.
- Every rate or quantity change after creation appends a PriceAuditEntry.
- Contract prices captured on an order are saved AFTER the order commits,
  best-effort. A failure becomes a warning, never a rolled-back order.

SECURITY:
- Customer-role users may only act on their own customer's orders.
- Contract customers ordering for themselves may only order products that
  already have a contract price.
- Cancellation is admin-only on every path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import ContractPrice, Customer, Order, OrderLine, PriceAuditEntry, Product
from ..models.auth import ROLE_CUSTOMER
from ..models.customers import PRICING_CONTRACT
from ..models.orders import (
    PAYMENT_PAID,
    PAYMENT_PARTIAL,
    PAYMENT_UNPAID,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
)
from ..permissions import PermissionDeniedError, has_permission, require_permission
from mandi.money import ZERO, round2, is_whole
from mandi.time_utils import utcnow
from mandi.validation import (
    QUANTITY_PLACES,
    NotFoundError,
    ValidationError,
    parse_decimal,
    parse_id,
    parse_text,
    raise_if_errors,
)
from . import counter_service, market_rate_service
from .concurrency import is_unique_violation, lock_for_update
from .lifecycle_service import (
    LifecycleError,
    OrderError,
    apply_transition,
    can_transition,
    is_terminal,
    is_valid_status,
)
from .pricing_service import CustomerPricing, line_amount, resolve_line_price, validate_quantity_for_unit

__all__ = [
    "OrderError",
    "LifecycleError",
    "OrderCreateResult",
    "create_order",
    "transition_status",
    "cancel_order",
    "update_order_prices",
    "update_payment",
    "bulk_update_rates",
    "adjust_packed_quantity",
    "mark_packing_done",
]


FALLBACK_WARNING = "Some products used market rate fallback because contract prices were not set"


@dataclass
class OrderCreateResult:
    order: Order
    idempotent: bool = False
    warnings: list[str] = field(default_factory=list)
    new_contract_prices: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class OrderLineInput:
    product_id: int
    quantity: Decimal
    rate: Decimal | None = None


# =============================================================================
# LOOKUPS AND SCOPE
# =============================================================================

def get_order(order_id: int, *, for_update: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if for_update:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def ensure_customer_scope(user, customer_id: int) -> None:
    """Customer-role users may only touch their own customer record."""
    if user is not None and user.role == ROLE_CUSTOMER and user.customer_id != customer_id:
        raise PermissionDeniedError("You can only access your own orders")


def get_order_for_user(order_id: int, user) -> Order:
    order = get_order(order_id)
    if user is not None and user.role == ROLE_CUSTOMER and user.customer_id != order.customer_id:
        # Same answer as a missing order so ids are not enumerable
        raise NotFoundError("Order not found")
    return order


def list_orders(
    user,
    *,
    status: str | None = None,
    customer_id: int | None = None,
    start=None,
    end=None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    query = db.session.query(Order)

    if user is not None and user.role == ROLE_CUSTOMER:
        customer_id = user.customer_id
    if customer_id:
        query = query.filter(Order.customer_id == customer_id)
    if status:
        query = query.filter(Order.status == status)
    if start:
        query = query.filter(Order.created_at >= start)
    if end:
        query = query.filter(Order.created_at <= end)

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return orders, total


def get_price_audit(order_id: int) -> list[PriceAuditEntry]:
    get_order(order_id)
    return (
        db.session.query(PriceAuditEntry)
        .filter_by(order_id=order_id)
        .order_by(PriceAuditEntry.changed_at.asc(), PriceAuditEntry.id.asc())
        .all()
    )


def find_by_idempotency_key(key: str) -> Order | None:
    return db.session.query(Order).filter_by(idempotency_key=key).first()


# =============================================================================
# INPUT PARSING
# =============================================================================

def parse_line_inputs(lines) -> list[OrderLineInput]:
    """
    Validate the `lines` array of a create request.

    Each item: {"product_id": int, "quantity": number > 0, "rate": number >= 0 (optional)}.
    Raises ValidationError listing every offending field.
    """
    if not isinstance(lines, list) or not lines:
        raise ValidationError({"lines": "At least one product is required"})

    errors: dict[str, str] = {}
    parsed: list[OrderLineInput] = []
    seen: set[int] = set()

    for idx, item in enumerate(lines):
        prefix = f"lines[{idx}]"
        if not isinstance(item, dict):
            errors[prefix] = "must be an object"
            continue

        product_id = parse_id(item.get("product_id", item.get("product")), f"{prefix}.product_id", errors)
        quantity = parse_decimal(item.get("quantity"), f"{prefix}.quantity", errors, greater_than=ZERO, max_places=QUANTITY_PLACES)
        rate = parse_decimal(item.get("rate"), f"{prefix}.rate", errors, required=False, min_value=ZERO)

        if product_id is not None and product_id in seen:
            errors[f"{prefix}.product_id"] = "Duplicate product on order"
            continue
        if product_id is not None:
            seen.add(product_id)

        if product_id is not None and quantity is not None:
            parsed.append(OrderLineInput(product_id=product_id, quantity=quantity, rate=rate))

    raise_if_errors(errors)
    return parsed


def derive_payment_status(paid_amount: Decimal, total_amount: Decimal) -> str:
    if paid_amount <= 0:
        return PAYMENT_UNPAID
    if paid_amount >= total_amount:
        return PAYMENT_PAID
    return PAYMENT_PARTIAL


# =============================================================================
# ORDER CREATION
# =============================================================================

def create_order(
    customer_id: int,
    lines,
    user,
    idempotency_key: str | None = None,
    notes: str | None = None,
    batch_ref: str | None = None,
) -> OrderCreateResult:
    """
    Create a priced, numbered order.

    Returns OrderCreateResult. When `idempotency_key` matches an existing
    order, that order is returned unchanged with idempotent=True, including
    when a concurrent request inserted it first.

    Raises:
        ValidationError: malformed lines or quantities
        NotFoundError: customer or product missing
        PermissionDeniedError: customer ordering for someone else, or for a
            product without a contract price
        OrderError: inactive customer/product
    """
    if idempotency_key:
        existing = find_by_idempotency_key(idempotency_key)
        if existing is not None:
            return OrderCreateResult(order=existing, idempotent=True)

    line_inputs = parse_line_inputs(lines)

    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    if not customer.is_active:
        raise OrderError("Cannot create order for inactive customer", {"customer_id": customer_id})

    ensure_customer_scope(user, customer_id)

    pricing = CustomerPricing.from_customer(customer)

    if user is not None and user.role == ROLE_CUSTOMER and pricing.pricing_type == PRICING_CONTRACT:
        unauthorized = [li.product_id for li in line_inputs if li.product_id not in pricing.contract_prices]
        if unauthorized:
            raise PermissionDeniedError(
                "Some products are not available for your account. Please contact us for pricing."
            )

    product_ids = [li.product_id for li in line_inputs]
    products = {
        p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
    }
    market_rates = market_rate_service.current_market_rates(product_ids)

    order_lines: list[OrderLine] = []
    new_contract_prices: list[dict] = []
    used_fallback = False

    for position, li in enumerate(line_inputs):
        product = products.get(li.product_id)
        if product is None:
            raise NotFoundError(f"Product {li.product_id} not found")
        if not product.is_active:
            raise OrderError(f'Product "{product.name}" is no longer available', {"product_id": product.id})

        problem = validate_quantity_for_unit(product.unit, li.quantity)
        if problem:
            raise ValidationError({f"lines[{position}].quantity": f'{product.name}: {problem}'})

        resolution = resolve_line_price(pricing, product.id, market_rates.get(product.id), li.rate)
        if resolution.used_fallback:
            used_fallback = True
        if resolution.save_as_contract_price:
            new_contract_prices.append({
                "product_id": product.id,
                "product_name": product.name,
                "rate": resolution.rate,
            })

        order_lines.append(OrderLine(
            product_id=product.id,
            position=position,
            product_name=product.name,
            unit=product.unit,
            quantity=li.quantity,
            rate=resolution.rate,
            amount=line_amount(li.quantity, resolution.rate),
            is_contract_price=resolution.is_contract_price,
        ))

    now = utcnow()
    order = Order(
        order_number=counter_service.next_order_number(now),
        customer_id=customer.id,
        status=STATUS_PENDING,
        paid_amount=ZERO,
        payment_status=PAYMENT_UNPAID,
        idempotency_key=idempotency_key or None,
        notes=notes,
        batch_ref=batch_ref,
        used_pricing_fallback=used_fallback,
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    order.lines = order_lines
    order.recalculate_total()
    order.payment_status = derive_payment_status(order.paid_amount, order.total_amount)

    db.session.add(order)
    try:
        db.session.flush()
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if idempotency_key and is_unique_violation(exc, "idempotency_key"):
            existing = find_by_idempotency_key(idempotency_key)
            if existing is not None:
                return OrderCreateResult(order=existing, idempotent=True)
        raise

    warnings: list[str] = []
    if used_fallback:
        warnings.append(FALLBACK_WARNING)

    saved, save_warning = _save_new_contract_prices(customer.id, new_contract_prices, user)
    if save_warning:
        warnings.append(save_warning)

    return OrderCreateResult(
        order=order,
        idempotent=False,
        warnings=warnings,
        new_contract_prices=saved,
    )


def _save_new_contract_prices(customer_id: int, candidates: list[dict], user) -> tuple[list[dict], str | None]:
    """
    Persist contract prices captured on a committed order.

    Runs in its own transaction after the order commit. Returns the saved
    rows (JSON-ready) and an optional warning; never raises.
    """
    if not candidates:
        return [], None

    try:
        customer = db.session.get(Customer, customer_id, populate_existing=True)
        if customer is None or customer.pricing_type != PRICING_CONTRACT:
            current_app.logger.warning(
                "Skipping contract price save: customer %s pricing type changed during order creation",
                customer_id,
            )
            return [], None

        existing = customer.contract_price_map()
        saved = []
        for cp in candidates:
            if cp["product_id"] in existing:
                continue
            db.session.add(ContractPrice(
                customer_id=customer_id,
                product_id=cp["product_id"],
                price=cp["rate"],
                created_by_user_id=user.id if user else None,
            ))
            saved.append({
                "product_id": cp["product_id"],
                "product_name": cp["product_name"],
                "rate": float(cp["rate"]),
            })
        db.session.commit()
        return saved, None
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to save contract prices for customer %s", customer_id)
        names = ", ".join(cp["product_name"] for cp in candidates)
        return [], (
            f"Failed to save contract prices for: {names}. "
            "Please add them manually in customer management."
        )


# =============================================================================
# LIFECYCLE
# =============================================================================

def transition_status(order_id: int, new_status, user, reason: str | None = None) -> Order:
    """
    Move an order to `new_status`.

    Requesting the current status returns the order untouched. Cancelling
    requires CANCEL_ORDER (admin); every other edge must be in the
    lifecycle table or LifecycleError is raised with the allowed targets.
    """
    if not is_valid_status(new_status):
        raise ValidationError({"status": "Invalid status"})

    order = get_order(order_id, for_update=True)
    ensure_customer_scope(user, order.customer_id)

    if order.status == new_status:
        return order

    # Edge check first: a terminal order answers 400 whoever asks
    if not can_transition(order.status, new_status):
        raise LifecycleError(
            f"Cannot change status from {order.status} to {new_status}", order.status, new_status
        )

    if new_status == STATUS_CANCELLED and not has_permission(user, "CANCEL_ORDER"):
        raise PermissionDeniedError("Only admins can cancel orders", required_permission="CANCEL_ORDER")

    now = utcnow()
    apply_transition(order, new_status, now=now, user_id=user.id if user else None, reason=reason)
    order.updated_at = now
    db.session.commit()
    return order


def cancel_order(order_id: int, user, reason: str | None = None) -> Order:
    require_permission(user, "CANCEL_ORDER")
    return transition_status(order_id, STATUS_CANCELLED, user, reason=reason)


# =============================================================================
# PRICE EDITS
# =============================================================================

def _audit_line_change(order: Order, line: OrderLine, *, old_rate, old_quantity, old_amount, user, reason) -> PriceAuditEntry:
    entry = PriceAuditEntry(
        order_id=order.id,
        order_line_id=line.id,
        product_id=line.product_id,
        product_name=line.product_name,
        old_rate=old_rate,
        new_rate=line.rate,
        old_quantity=old_quantity,
        new_quantity=line.quantity,
        old_total=old_amount,
        new_total=line.amount,
        reason=reason,
        changed_by_user_id=user.id if user else None,
        changed_by_name=user.name if user else None,
        changed_at=utcnow(),
    )
    db.session.add(entry)
    return entry


def _apply_rate(order: Order, line: OrderLine, new_rate: Decimal, user, reason: str | None) -> bool:
    new_rate = round2(new_rate)
    if new_rate == line.rate:
        return False
    if line.is_contract_price:
        raise OrderError(
            f"Contract price for {line.product_name} cannot be changed on an order",
            {"product_id": line.product_id},
        )
    old_rate, old_amount = line.rate, line.amount
    line.rate = new_rate
    line.amount = line_amount(line.quantity, new_rate)
    _audit_line_change(
        order, line,
        old_rate=old_rate, old_quantity=line.quantity, old_amount=old_amount,
        user=user, reason=reason,
    )
    return True


def _refresh_totals(order: Order) -> None:
    order.recalculate_total()
    order.payment_status = derive_payment_status(order.paid_amount, order.total_amount)
    order.updated_at = utcnow()


def update_order_prices(order_id: int, lines, user, notes=None) -> Order:
    """
    Staff price edit on an existing order.

    `lines` must name exactly the products already on the order with their
    current quantities; only rates change. Each changed line appends one
    PriceAuditEntry. `notes` alone may be updated by passing lines=None.
    """
    order = get_order(order_id, for_update=True)

    if is_terminal(order.status):
        raise OrderError(f"Cannot edit a {order.status} order", {"status": order.status})

    if lines is None and notes is None:
        raise ValidationError({"lines": "Nothing to update"})

    if notes is not None:
        errors: dict[str, str] = {}
        order.notes = parse_text(notes, "notes", errors)
        raise_if_errors(errors)

    if lines is not None:
        if not isinstance(lines, list) or not lines:
            raise ValidationError({"lines": "At least one product is required"})

        by_product = {line.product_id: line for line in order.lines}
        errors = {}
        changes: list[tuple[OrderLine, Decimal]] = []
        seen: set[int] = set()

        for idx, item in enumerate(lines):
            prefix = f"lines[{idx}]"
            if not isinstance(item, dict):
                errors[prefix] = "must be an object"
                continue
            product_id = parse_id(item.get("product_id", item.get("product")), f"{prefix}.product_id", errors)
            if product_id is None:
                continue
            line = by_product.get(product_id)
            if line is None:
                raise OrderError(f"Product {product_id} is not in this order", {"product_id": product_id})
            seen.add(product_id)

            if item.get("quantity") is not None:
                quantity = parse_decimal(item.get("quantity"), f"{prefix}.quantity", errors, greater_than=ZERO, max_places=QUANTITY_PLACES)
                if quantity is not None and quantity != line.quantity:
                    raise OrderError(
                        f"Quantity for {line.product_name} cannot be changed",
                        {"product_id": product_id},
                    )

            raw_rate = item.get("rate", item.get("price_at_time"))
            rate = parse_decimal(raw_rate, f"{prefix}.rate", errors, required=False, min_value=ZERO)
            if rate is not None:
                changes.append((line, rate))

        raise_if_errors(errors)

        if seen != set(by_product):
            raise OrderError(
                "Cannot add or remove products when updating prices",
                {"expected_product_ids": sorted(by_product)},
            )

        for line, rate in changes:
            _apply_rate(order, line, rate, user, "Price updated")

    _refresh_totals(order)
    db.session.commit()
    return order


def bulk_update_rates(items, user) -> dict:
    """
    Apply many {order_id, product_id, rate} edits independently.

    Each item commits on its own; a failing item is rolled back and reported
    without affecting the others.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError({"items": "At least one item is required"})

    updated: list[dict] = []
    failed: list[dict] = []

    for idx, item in enumerate(items):
        errors: dict[str, str] = {}
        if not isinstance(item, dict):
            failed.append({"index": idx, "error": "must be an object"})
            continue
        order_id = parse_id(item.get("order_id"), "order_id", errors)
        product_id = parse_id(item.get("product_id"), "product_id", errors)
        rate = parse_decimal(item.get("rate"), "rate", errors, min_value=ZERO)
        if errors:
            failed.append({"index": idx, "order_id": item.get("order_id"), "product_id": item.get("product_id"), "error": "Validation failed", "fields": errors})
            continue

        try:
            order = get_order(order_id, for_update=True)
            if is_terminal(order.status):
                raise OrderError(f"Cannot edit a {order.status} order")
            line = next((ln for ln in order.lines if ln.product_id == product_id), None)
            if line is None:
                raise OrderError(f"Product {product_id} is not in this order")
            changed = _apply_rate(order, line, rate, user, "Bulk rate update")
            if changed:
                _refresh_totals(order)
            db.session.commit()
            updated.append({
                "index": idx,
                "order_id": order.id,
                "order_number": order.order_number,
                "product_id": product_id,
                "rate": float(line.rate),
                "changed": changed,
                "total_amount": float(order.total_amount),
            })
        except (OrderError, NotFoundError) as e:
            db.session.rollback()
            failed.append({"index": idx, "order_id": order_id, "product_id": product_id, "error": e.message})

    return {"updated": updated, "failed": failed}


# =============================================================================
# PAYMENTS ON THE ORDER
# =============================================================================

def update_payment(order_id: int, paid_amount, user) -> Order:
    """Set the amount paid against an order (0 <= paid <= total)."""
    errors: dict[str, str] = {}
    amount = parse_decimal(paid_amount, "paid_amount", errors, min_value=ZERO)
    raise_if_errors(errors)

    order = get_order(order_id, for_update=True)
    if order.status == STATUS_CANCELLED:
        raise OrderError("Cannot record payment on a cancelled order")

    amount = round2(amount)
    if amount > order.total_amount:
        raise ValidationError({"paid_amount": "paid_amount cannot exceed order total"})

    order.paid_amount = amount
    order.payment_status = derive_payment_status(amount, order.total_amount)
    order.updated_at = utcnow()
    db.session.commit()
    return order


# =============================================================================
# PACKING COLLABORATOR HOOKS
# =============================================================================

def adjust_packed_quantity(order_id: int, product_id: int, quantity, user, reason: str | None = None) -> Order:
    """
    Record a packing shortage: reduce a line's quantity on a confirmed order.

    Quantities never increase through packing. The line amount, order total
    and payment status are recomputed and the change is audited.
    """
    errors: dict[str, str] = {}
    new_quantity = parse_decimal(quantity, "quantity", errors, min_value=ZERO, max_places=QUANTITY_PLACES)
    raise_if_errors(errors)

    order = get_order(order_id, for_update=True)
    if order.status != STATUS_CONFIRMED:
        raise OrderError(
            "Quantities can only be adjusted while the order is confirmed",
            {"status": order.status},
        )

    line = next((ln for ln in order.lines if ln.product_id == product_id), None)
    if line is None:
        raise OrderError(f"Product {product_id} is not in this order", {"product_id": product_id})
    if new_quantity > line.quantity:
        raise OrderError(
            f"Packed quantity for {line.product_name} cannot exceed the ordered quantity",
            {"ordered": float(line.quantity)},
        )
    if line.unit == "piece" and not is_whole(new_quantity):
        raise ValidationError({"quantity": "Quantity must be a whole number for piece items"})
    if new_quantity == line.quantity:
        return order

    old_quantity, old_amount = line.quantity, line.amount
    line.quantity = new_quantity
    line.amount = line_amount(new_quantity, line.rate)
    _audit_line_change(
        order, line,
        old_rate=line.rate, old_quantity=old_quantity, old_amount=old_amount,
        user=user, reason=reason or "Packing adjustment",
    )
    _refresh_totals(order)
    db.session.commit()
    return order


def mark_packing_done(order_id: int) -> Order:
    order = get_order(order_id, for_update=True)
    if is_terminal(order.status):
        raise OrderError(f"Cannot pack a {order.status} order", {"status": order.status})
    order.packing_done = True
    order.updated_at = utcnow()
    db.session.commit()
    return order
