# Overview: Service-layer operations for the customer ledger; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Float, func, type_coerce, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Customer, LedgerEntry, Order
from ..models.ledger import ENTRY_ADJUSTMENT, ENTRY_INVOICE, ENTRY_PAYMENT, ENTRY_TYPES
from ..models.orders import STATUS_DELIVERED
from mandi.money import TOLERANCE, ZERO, as_float, round2, to_decimal
from mandi.time_utils import month_bounds, to_utc_z, utcnow
from mandi.validation import MAX_AMOUNT, NotFoundError, ValidationError
from .concurrency import is_unique_violation

"""
Customer Ledger Invariants (authoritative)

- Customer.balance is changed ONLY here, by an atomic
  UPDATE customers SET balance = balance + :delta. Concurrent postings for
  the same customer serialise on that row; different customers never block.
- Every balance change appends exactly one LedgerEntry in the SAME
  transaction, stamped with the balance after the change.
- If the stored balance carries sub-paisa drift after the increment, the
  rounded value is written back before the entry is stamped.
- LedgerEntry rows are never updated or deleted.
- Sign convention: invoices positive, payments negative, adjustments either.
- Entry dates may not precede the customer's latest entry, so replaying
  entries by (date, id) always reproduces the stored snapshots.
"""


class LedgerError(Exception):
    """Raised when a ledger posting violates a business rule."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


@dataclass
class LedgerPosting:
    entry: LedgerEntry
    previous_balance: Decimal
    new_balance: Decimal

    def to_dict(self) -> dict:
        return {
            "entry": self.entry.to_dict(),
            "previous_balance": as_float(self.previous_balance),
            "new_balance": as_float(self.new_balance),
        }


@dataclass
class Statement:
    customer: Customer
    start: datetime
    end: datetime
    opening_balance: Decimal
    closing_balance: Decimal
    entries: list[LedgerEntry] = field(default_factory=list)
    total_invoices: Decimal = ZERO
    total_payments: Decimal = ZERO
    total_adjustments: Decimal = ZERO

    @property
    def expected_closing(self) -> Decimal:
        return self.opening_balance + self.total_invoices - self.total_payments + self.total_adjustments

    @property
    def reconciles(self) -> bool:
        return abs(self.expected_closing - self.closing_balance) <= TOLERANCE

    def to_dict(self) -> dict:
        return {
            "customer": {
                "id": self.customer.id,
                "name": self.customer.name,
                "phone": self.customer.phone,
                "current_balance": as_float(self.customer.balance),
            },
            "period": {"start": to_utc_z(self.start), "end": to_utc_z(self.end)},
            "opening_balance": as_float(self.opening_balance),
            "closing_balance": as_float(self.closing_balance),
            "totals": {
                "invoices": as_float(self.total_invoices),
                "payments": as_float(self.total_payments),
                "adjustments": as_float(self.total_adjustments),
            },
            "reconciles": self.reconciles,
            "entries": [e.to_dict() for e in self.entries],
        }


# =============================================================================
# POSTING
# =============================================================================

def _get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    return customer


def _read_raw_balance(customer_id: int) -> Decimal:
    # Numeric columns are quantized on read; Float exposes the stored value
    raw = (
        db.session.query(type_coerce(Customer.balance, Float))
        .filter(Customer.id == customer_id)
        .scalar()
    )
    return to_decimal(raw or 0)


def _latest_entry_date(customer_id: int) -> datetime | None:
    return (
        db.session.query(func.max(LedgerEntry.date))
        .filter(LedgerEntry.customer_id == customer_id)
        .scalar()
    )


def _post(
    customer: Customer,
    delta: Decimal,
    entry_type: str,
    user,
    *,
    date: datetime | None,
    description: str,
    notes: str | None = None,
    order: Order | None = None,
) -> LedgerPosting:
    """
    Apply `delta` to the customer's balance and append the matching entry.

    Caller has validated inputs; this function owns the transaction and
    rolls everything back on any failure.
    """
    customer_id = customer.id
    explicit_date = date is not None
    try:
        db.session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(balance=Customer.balance + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        raw = _read_raw_balance(customer_id)
        new_balance = round2(raw)
        if raw != new_balance:
            db.session.execute(
                update(Customer)
                .where(Customer.id == customer_id)
                .values(balance=new_balance)
                .execution_options(synchronize_session=False)
            )

        # Defaulted dates are stamped only once the row lock is held
        latest = _latest_entry_date(customer_id)
        if not explicit_date:
            date = utcnow()
            if latest is not None and latest > date:
                date = latest
        elif latest is not None and date < latest:
            raise LedgerError(
                "Entry date cannot be earlier than the customer's latest ledger entry",
                {"latest_entry_date": to_utc_z(latest)},
            )

        entry = LedgerEntry(
            customer_id=customer_id,
            type=entry_type,
            date=date,
            order_id=order.id if order else None,
            order_number=order.order_number if order else None,
            description=description,
            amount=delta,
            balance=new_balance,
            notes=notes,
            created_by_user_id=user.id,
            created_by_name=user.name,
            created_at=utcnow(),
        )
        db.session.add(entry)
        db.session.flush()
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if order is not None and is_unique_violation(exc, "order_id"):
            raise LedgerError("Order has already been invoiced", {"order_id": order.id})
        raise
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(customer)
    return LedgerPosting(entry=entry, previous_balance=new_balance - delta, new_balance=new_balance)


def _check_amount(amount, *, allow_negative: bool) -> Decimal:
    try:
        value = round2(to_decimal(amount))
    except ValueError:
        raise ValidationError({"amount": "amount must be a number"})
    if abs(value) > MAX_AMOUNT:
        raise ValidationError({"amount": f"amount must not exceed {MAX_AMOUNT}"})
    if allow_negative:
        if value == ZERO:
            raise ValidationError({"amount": "amount must not be zero"})
    elif value <= ZERO:
        raise ValidationError({"amount": "amount must be greater than 0"})
    return value


def record_payment(customer_id: int, amount, user, date: datetime | None = None, notes: str | None = None) -> LedgerPosting:
    """Customer paid `amount`: balance decreases by it."""
    value = _check_amount(amount, allow_negative=False)
    customer = _get_customer(customer_id)
    return _post(
        customer,
        -value,
        ENTRY_PAYMENT,
        user,
        date=date,
        description="Payment received",
        notes=notes,
    )


def record_adjustment(
    customer_id: int,
    amount,
    description: str,
    user,
    date: datetime | None = None,
    notes: str | None = None,
) -> LedgerPosting:
    """
    Manual correction in either direction (positive = customer owes more).

    Route access is admin-only (RECORD_ADJUSTMENT).
    """
    if not isinstance(description, str) or not description.strip():
        raise ValidationError({"description": "description is required"})
    description = description.strip()
    if len(description) > 500:
        raise ValidationError({"description": "description must be 500 characters or less"})

    value = _check_amount(amount, allow_negative=True)
    customer = _get_customer(customer_id)
    return _post(
        customer,
        value,
        ENTRY_ADJUSTMENT,
        user,
        date=date,
        description=description,
        notes=notes,
    )


def record_invoice(order_id: int, user, notes: str | None = None, date: datetime | None = None) -> LedgerPosting:
    """
    Charge a delivered order to the customer's account.

    One invoice per order; the order total is the delta.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.status != STATUS_DELIVERED:
        raise LedgerError("Only delivered orders can be invoiced", {"status": order.status})

    already = (
        db.session.query(LedgerEntry.id)
        .filter_by(order_id=order.id, type=ENTRY_INVOICE)
        .first()
    )
    if already:
        raise LedgerError("Order has already been invoiced", {"order_id": order.id, "entry_id": already[0]})

    customer = _get_customer(order.customer_id)
    return _post(
        customer,
        round2(order.total_amount),
        ENTRY_INVOICE,
        user,
        date=date,
        description=f"Invoice for order {order.order_number}",
        notes=notes,
        order=order,
    )


# =============================================================================
# STATEMENTS AND QUERIES
# =============================================================================

def build_statement(customer_id: int, start: datetime, end: datetime) -> Statement:
    """
    Reconstruct a customer's account for [start, end] (both inclusive).

    Opening balance is the snapshot on the last entry strictly before
    `start` (0 when none). Closing balance is the snapshot on the last entry
    in range, or the opening balance when the range is empty.
    """
    if start > end:
        raise ValidationError({"start": "start must not be after end"})

    customer = _get_customer(customer_id)

    prior = (
        db.session.query(LedgerEntry)
        .filter(LedgerEntry.customer_id == customer_id, LedgerEntry.date < start)
        .order_by(LedgerEntry.date.desc(), LedgerEntry.id.desc())
        .first()
    )
    opening = prior.balance if prior else ZERO

    entries = (
        db.session.query(LedgerEntry)
        .filter(
            LedgerEntry.customer_id == customer_id,
            LedgerEntry.date >= start,
            LedgerEntry.date <= end,
        )
        .order_by(LedgerEntry.date.asc(), LedgerEntry.id.asc())
        .all()
    )

    invoices = sum((e.amount for e in entries if e.type == ENTRY_INVOICE), ZERO)
    payments = abs(sum((e.amount for e in entries if e.type == ENTRY_PAYMENT), ZERO))
    adjustments = sum((e.amount for e in entries if e.type == ENTRY_ADJUSTMENT), ZERO)

    return Statement(
        customer=customer,
        start=start,
        end=end,
        opening_balance=opening,
        closing_balance=entries[-1].balance if entries else opening,
        entries=entries,
        total_invoices=invoices,
        total_payments=payments,
        total_adjustments=adjustments,
    )


def monthly_statement(customer_id: int, month: int, year: int) -> Statement:
    try:
        start, end = month_bounds(year, month)
    except ValueError as e:
        raise ValidationError({"month": str(e)})
    return build_statement(customer_id, start, end)


def _filtered_entries(customer_id=None, entry_type=None, start=None, end=None):
    if entry_type is not None and entry_type not in ENTRY_TYPES:
        raise ValidationError({"type": f"type must be one of: {', '.join(ENTRY_TYPES)}"})
    query = db.session.query(LedgerEntry)
    if customer_id:
        query = query.filter(LedgerEntry.customer_id == customer_id)
    if entry_type:
        query = query.filter(LedgerEntry.type == entry_type)
    if start:
        query = query.filter(LedgerEntry.date >= start)
    if end:
        query = query.filter(LedgerEntry.date <= end)
    return query


def customer_history(
    customer_id: int,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    entry_type: str | None = None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    customer = _get_customer(customer_id)
    query = _filtered_entries(customer_id, entry_type, start, end)
    total = query.count()
    entries = (
        query.order_by(LedgerEntry.date.desc(), LedgerEntry.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return {
        "customer": customer.to_dict(),
        "entries": [e.to_dict() for e in entries],
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": (total + per_page - 1) // per_page if per_page else 0,
        },
    }


def list_entries(
    *,
    customer_id: int | None = None,
    entry_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[LedgerEntry], int]:
    query = _filtered_entries(customer_id, entry_type, start, end)
    total = query.count()
    entries = (
        query.order_by(LedgerEntry.date.desc(), LedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return entries, total


def balances_summary(*, include_zero: bool = False) -> dict:
    """Current balance per active customer plus receivable/advance totals."""
    query = db.session.query(Customer).filter(Customer.is_active.is_(True))
    if not include_zero:
        query = query.filter(Customer.balance != 0)
    customers = query.order_by(Customer.balance.desc(), Customer.id.asc()).all()

    receivable = sum((c.balance for c in customers if c.balance > 0), ZERO)
    advance = sum((c.balance for c in customers if c.balance < 0), ZERO)
    return {
        "customers": [
            {"id": c.id, "name": c.name, "phone": c.phone, "balance": as_float(c.balance)}
            for c in customers
        ],
        "count": len(customers),
        "total_receivable": as_float(receivable),
        "total_advance": as_float(abs(advance)),
        "net_balance": as_float(receivable + advance),
    }
