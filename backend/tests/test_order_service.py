"""
Order service tests.

Verifies:
- Line pricing per customer type and exact Decimal totals
- Contract prices captured on first order and reused afterwards
- Idempotent creation, including the concurrent-insert path
- Lifecycle transitions, timestamps and admin-only cancellation
- Price-only edits with an audit trail
- Packing and batch collaborator hooks
"""

from datetime import datetime
from decimal import Decimal

import pytest

from mandi.models import ContractPrice, Order, PriceAuditEntry
from mandi.permissions import PermissionDeniedError
from mandi.services import batch_service, order_service
from mandi.services.order_service import LifecycleError, OrderError
from mandi.validation import NotFoundError, ValidationError

from conftest import make_customer, make_product, set_market_rate


def _line(product, quantity, rate=None):
    item = {"product_id": product.id, "quantity": quantity}
    if rate is not None:
        item["rate"] = rate
    return item


def _advance(order_id, user, *statuses):
    order = None
    for status in statuses:
        order = order_service.transition_status(order_id, status, user)
    return order


# =============================================================================
# CREATION AND PRICING
# =============================================================================


class TestCreateOrderPricing:
    def test_market_customer(self, market_customer, tomato, staff_user):
        result = order_service.create_order(market_customer.id, [_line(tomato, 5)], staff_user)

        order = result.order
        assert result.idempotent is False
        assert order.lines[0].rate == Decimal("100")
        assert order.total_amount == Decimal("500")
        assert order.status == "pending"
        assert order.payment_status == "unpaid"
        assert order.order_number.startswith("ORD")
        assert len(order.order_number) == 11

    def test_markup_customer(self, markup_customer, tomato, staff_user):
        result = order_service.create_order(markup_customer.id, [_line(tomato, 3)], staff_user)
        line = result.order.lines[0]
        assert line.rate == Decimal("120")
        assert line.amount == Decimal("360")

    def test_total_is_exact_sum_of_line_amounts(self, db_session, market_customer, staff_user):
        products = []
        for name, rate in [("Okra", "33.33"), ("Beans", "19.99"), ("Chilli", "0.10")]:
            product = make_product(db_session, name)
            set_market_rate(db_session, product, rate)
            products.append(product)

        result = order_service.create_order(
            market_customer.id,
            [_line(products[0], "1.5"), _line(products[1], "2.333"), _line(products[2], "3")],
            staff_user,
        )

        order = result.order
        # 49.995 -> 50.00, 46.63667 -> 46.64, 0.30
        assert [ln.amount for ln in order.lines] == [Decimal("50.00"), Decimal("46.64"), Decimal("0.30")]
        assert order.total_amount == sum(ln.amount for ln in order.lines)
        assert order.total_amount == Decimal("96.94")

    def test_contract_price_captured_and_reused(self, db_session, contract_customer, tomato, staff_user):
        first = order_service.create_order(contract_customer.id, [_line(tomato, 10, 80)], staff_user)

        line = first.order.lines[0]
        assert line.rate == Decimal("80")
        assert line.is_contract_price is True
        assert first.new_contract_prices == [{"product_id": tomato.id, "product_name": "Tomato", "rate": 80.0}]
        saved = db_session.query(ContractPrice).filter_by(customer_id=contract_customer.id, product_id=tomato.id).one()
        assert saved.price == Decimal("80")

        set_market_rate(db_session, tomato, "150", effective_date=datetime(2026, 10, 2))
        second = order_service.create_order(contract_customer.id, [_line(tomato, 1)], staff_user)
        assert second.order.lines[0].rate == Decimal("80")
        assert second.new_contract_prices == []

    def test_existing_contract_price_ignores_override(self, contract_customer, banana, staff_user):
        result = order_service.create_order(contract_customer.id, [_line(banana, 2, 99)], staff_user)
        assert result.order.lines[0].rate == Decimal("55")
        assert result.new_contract_prices == []

    def test_contract_fallback_sets_flag_and_warning(self, contract_customer, tomato, staff_user):
        result = order_service.create_order(contract_customer.id, [_line(tomato, 1)], staff_user)
        assert result.order.used_pricing_fallback is True
        assert result.order.lines[0].is_contract_price is False
        assert order_service.FALLBACK_WARNING in result.warnings

    def test_contract_price_save_skipped_when_customer_changed(self, db_session, contract_customer, tomato, staff_user):
        contract_customer.pricing_type = "market"
        db_session.commit()

        saved, warning = order_service._save_new_contract_prices(
            contract_customer.id,
            [{"product_id": tomato.id, "product_name": "Tomato", "rate": Decimal("80")}],
            staff_user,
        )

        assert saved == [] and warning is None
        assert db_session.query(ContractPrice).filter_by(product_id=tomato.id).count() == 0

    def test_missing_market_rate_prices_at_zero(self, db_session, market_customer, staff_user):
        product = make_product(db_session, "Drumstick")
        result = order_service.create_order(market_customer.id, [_line(product, 2)], staff_user)
        assert result.order.total_amount == Decimal("0")


class TestCreateOrderValidation:
    def test_unknown_customer(self, tomato, staff_user):
        with pytest.raises(NotFoundError):
            order_service.create_order(9999, [_line(tomato, 1)], staff_user)

    def test_inactive_customer(self, db_session, tomato, staff_user):
        customer = make_customer(db_session, "Closed", is_active=False)
        with pytest.raises(OrderError):
            order_service.create_order(customer.id, [_line(tomato, 1)], staff_user)

    def test_unknown_product(self, market_customer, staff_user):
        with pytest.raises(NotFoundError):
            order_service.create_order(market_customer.id, [{"product_id": 9999, "quantity": 1}], staff_user)

    def test_inactive_product(self, db_session, market_customer, staff_user):
        product = make_product(db_session, "Old stock", is_active=False)
        with pytest.raises(OrderError):
            order_service.create_order(market_customer.id, [_line(product, 1)], staff_user)

    def test_fractional_pieces_rejected(self, market_customer, coconut, staff_user):
        with pytest.raises(ValidationError):
            order_service.create_order(market_customer.id, [_line(coconut, "2.5")], staff_user)

    def test_whole_pieces_accepted(self, market_customer, coconut, staff_user):
        result = order_service.create_order(market_customer.id, [_line(coconut, 4)], staff_user)
        assert result.order.total_amount == Decimal("100")

    @pytest.mark.parametrize(
        "lines",
        [
            [],
            None,
            [{"product_id": 1}],
            [{"product_id": 1, "quantity": 0}],
            [{"product_id": 1, "quantity": -2}],
            [{"product_id": 1, "quantity": "1.0005"}],
            [{"product_id": 1, "quantity": 1, "rate": -5}],
            [{"product_id": "abc", "quantity": 1}],
            [{"product_id": 1, "quantity": 1}, {"product_id": 1, "quantity": 2}],
        ],
    )
    def test_malformed_lines(self, market_customer, staff_user, lines):
        with pytest.raises(ValidationError):
            order_service.create_order(market_customer.id, lines, staff_user)

    def test_quantity_beyond_three_places_rejected(self, market_customer, tomato, staff_user):
        with pytest.raises(ValidationError) as exc:
            order_service.create_order(market_customer.id, [_line(tomato, "1.0005")], staff_user)
        assert "lines[0].quantity" in exc.value.fields

    def test_three_place_quantity_keeps_amount_exact(self, db_session, market_customer, tomato, staff_user):
        order_id = order_service.create_order(market_customer.id, [_line(tomato, "1.125")], staff_user).order.id
        db_session.expire_all()

        line = order_service.get_order(order_id).lines[0]
        assert line.quantity == Decimal("1.125")
        assert line.amount == Decimal("112.50")
        assert line.amount == (line.quantity * line.rate).quantize(Decimal("0.01"))

    def test_customer_cannot_order_for_someone_else(self, db_session, customer_user, tomato):
        other = make_customer(db_session, "Someone Else")
        with pytest.raises(PermissionDeniedError):
            order_service.create_order(other.id, [_line(tomato, 1)], customer_user)

    def test_contract_customer_limited_to_contract_products(self, contract_customer, contract_customer_user, banana, tomato):
        with pytest.raises(PermissionDeniedError):
            order_service.create_order(contract_customer.id, [_line(tomato, 1)], contract_customer_user)

        result = order_service.create_order(contract_customer.id, [_line(banana, 1)], contract_customer_user)
        assert result.order.total_amount == Decimal("55")


class TestIdempotency:
    def test_same_key_returns_original_order(self, db_session, market_customer, tomato, staff_user):
        first = order_service.create_order(market_customer.id, [_line(tomato, 5)], staff_user, idempotency_key="abc")
        second = order_service.create_order(market_customer.id, [_line(tomato, 10)], staff_user, idempotency_key="abc")

        assert second.idempotent is True
        assert second.order.id == first.order.id
        assert second.order.lines[0].quantity == Decimal("5")
        assert db_session.query(Order).count() == 1

    def test_concurrent_insert_returns_existing_order(self, db_session, market_customer, tomato, staff_user, monkeypatch):
        first = order_service.create_order(market_customer.id, [_line(tomato, 5)], staff_user, idempotency_key="race")

        real_lookup = order_service.find_by_idempotency_key
        calls = []

        def lookup_misses_first_time(key):
            # The pre-check runs before the competing insert is visible
            calls.append(key)
            return None if len(calls) == 1 else real_lookup(key)

        monkeypatch.setattr(order_service, "find_by_idempotency_key", lookup_misses_first_time)

        second = order_service.create_order(market_customer.id, [_line(tomato, 10)], staff_user, idempotency_key="race")

        assert len(calls) == 2
        assert second.idempotent is True
        assert second.order.id == first.order.id
        assert db_session.query(Order).count() == 1

    def test_losing_insert_does_not_consume_order_number(self, db_session, market_customer, tomato, staff_user, monkeypatch):
        first = order_service.create_order(market_customer.id, [_line(tomato, 1)], staff_user, idempotency_key="k1")
        real_lookup = order_service.find_by_idempotency_key
        calls = []

        def lookup_misses_first_time(key):
            calls.append(key)
            return None if len(calls) == 1 else real_lookup(key)

        monkeypatch.setattr(order_service, "find_by_idempotency_key", lookup_misses_first_time)
        order_service.create_order(market_customer.id, [_line(tomato, 1)], staff_user, idempotency_key="k1")
        monkeypatch.undo()

        third = order_service.create_order(market_customer.id, [_line(tomato, 1)], staff_user)
        assert int(third.order.order_number[-4:]) == int(first.order.order_number[-4:]) + 1

    def test_orders_without_key_never_collide(self, db_session, market_customer, tomato, staff_user):
        order_service.create_order(market_customer.id, [_line(tomato, 1)], staff_user)
        order_service.create_order(market_customer.id, [_line(tomato, 1)], staff_user)
        assert db_session.query(Order).count() == 2


# =============================================================================
# LIFECYCLE
# =============================================================================


@pytest.fixture
def order(market_customer, tomato, staff_user):
    return order_service.create_order(market_customer.id, [_line(tomato, 5)], staff_user).order


class TestTransitions:
    def test_full_lifecycle_stamps_timestamps(self, order, staff_user):
        final = _advance(order.id, staff_user, "confirmed", "processing", "packed", "shipped", "delivered")

        assert final.status == "delivered"
        assert final.packed_at is not None
        assert final.shipped_at >= final.packed_at
        assert final.delivered_at >= final.shipped_at

    def test_delivered_is_terminal(self, order, staff_user):
        _advance(order.id, staff_user, "confirmed", "processing", "packed", "shipped", "delivered")
        with pytest.raises(LifecycleError) as exc:
            order_service.transition_status(order.id, "pending", staff_user)
        assert exc.value.details["allowed"] == []

    @pytest.mark.parametrize(
        "path,target",
        [
            ([], "packed"),
            ([], "delivered"),
            (["confirmed"], "pending"),
            (["confirmed", "processing"], "confirmed"),
            (["confirmed", "processing", "packed"], "delivered"),
        ],
    )
    @pytest.mark.parametrize("who", ["admin_user", "staff_user"])
    def test_edges_outside_table_rejected(self, request, order, who, path, target):
        user = request.getfixturevalue(who)
        _advance(order.id, user, *path)
        with pytest.raises(LifecycleError) as exc:
            order_service.transition_status(order.id, target, user)
        assert "cancelled" in exc.value.details["allowed"]

    def test_same_state_is_noop(self, order, staff_user):
        before = order_service.get_order(order.id).updated_at
        result = order_service.transition_status(order.id, "pending", staff_user)
        assert result.status == "pending"
        assert result.updated_at == before

    def test_invalid_status_value(self, order, staff_user):
        with pytest.raises(ValidationError):
            order_service.transition_status(order.id, "lost", staff_user)

    def test_unknown_order(self, db_session, staff_user):
        with pytest.raises(NotFoundError):
            order_service.transition_status(12345, "confirmed", staff_user)


class TestCancellation:
    def test_staff_cannot_cancel_via_status(self, order, staff_user):
        with pytest.raises(PermissionDeniedError):
            order_service.transition_status(order.id, "cancelled", staff_user)
        assert order_service.get_order(order.id).status == "pending"

    def test_admin_can_cancel_via_status(self, order, admin_user):
        result = order_service.transition_status(order.id, "cancelled", admin_user, reason="Customer called")
        assert result.status == "cancelled"
        assert result.cancelled_by_user_id == admin_user.id
        assert result.cancelled_at is not None
        assert result.cancel_reason == "Customer called"

    def test_dedicated_cancel_is_admin_only(self, order, staff_user, admin_user):
        with pytest.raises(PermissionDeniedError):
            order_service.cancel_order(order.id, staff_user)
        assert order_service.cancel_order(order.id, admin_user).status == "cancelled"

    def test_cannot_cancel_delivered(self, order, admin_user):
        _advance(order.id, admin_user, "confirmed", "processing", "packed", "shipped", "delivered")
        with pytest.raises(LifecycleError):
            order_service.cancel_order(order.id, admin_user)

    def test_staff_cancelling_delivered_gets_lifecycle_error(self, order, staff_user):
        _advance(order.id, staff_user, "confirmed", "processing", "packed", "shipped", "delivered")
        with pytest.raises(LifecycleError) as exc:
            order_service.transition_status(order.id, "cancelled", staff_user)
        assert exc.value.details["current_status"] == "delivered"
        assert exc.value.details["allowed"] == []


# =============================================================================
# PRICE EDITS
# =============================================================================


class TestUpdateOrderPrices:
    def test_rate_change_recomputes_and_audits(self, db_session, order, tomato, staff_user):
        updated = order_service.update_order_prices(
            order.id, [{"product_id": tomato.id, "quantity": 5, "rate": 90}], staff_user,
        )

        assert updated.lines[0].rate == Decimal("90")
        assert updated.lines[0].amount == Decimal("450")
        assert updated.total_amount == Decimal("450")

        audit = order_service.get_price_audit(order.id)
        assert len(audit) == 1
        entry = audit[0]
        assert (entry.old_rate, entry.new_rate) == (Decimal("100"), Decimal("90"))
        assert (entry.old_total, entry.new_total) == (Decimal("500"), Decimal("450"))
        assert entry.changed_by_name == "Staff Member"

    def test_price_at_time_alias(self, order, tomato, staff_user):
        updated = order_service.update_order_prices(
            order.id, [{"product_id": tomato.id, "price_at_time": 95}], staff_user,
        )
        assert updated.total_amount == Decimal("475")

    def test_unchanged_rate_writes_no_audit(self, db_session, order, tomato, staff_user):
        order_service.update_order_prices(order.id, [{"product_id": tomato.id, "rate": 100}], staff_user)
        assert db_session.query(PriceAuditEntry).count() == 0

    def test_each_edit_appends(self, db_session, order, tomato, staff_user):
        for rate in (90, 95, 101):
            order_service.update_order_prices(order.id, [{"product_id": tomato.id, "rate": rate}], staff_user)
        assert [e.new_rate for e in order_service.get_price_audit(order.id)] == [
            Decimal("90"), Decimal("95"), Decimal("101"),
        ]

    def test_cannot_add_products(self, db_session, order, tomato, banana, staff_user):
        with pytest.raises(OrderError, match="not in this order"):
            order_service.update_order_prices(
                order.id,
                [{"product_id": tomato.id, "rate": 90}, {"product_id": banana.id, "quantity": 1, "rate": 60}],
                staff_user,
            )

    def test_cannot_remove_products(self, db_session, market_customer, tomato, banana, staff_user):
        two_lines = order_service.create_order(
            market_customer.id, [_line(tomato, 1), _line(banana, 1)], staff_user,
        ).order
        with pytest.raises(OrderError, match="Cannot add or remove products"):
            order_service.update_order_prices(two_lines.id, [{"product_id": tomato.id, "rate": 90}], staff_user)

    def test_quantity_is_frozen(self, order, tomato, staff_user):
        with pytest.raises(OrderError, match="cannot be changed"):
            order_service.update_order_prices(order.id, [{"product_id": tomato.id, "quantity": 6, "rate": 90}], staff_user)

    def test_contract_line_rate_is_locked(self, contract_customer, banana, staff_user):
        contract_order = order_service.create_order(contract_customer.id, [_line(banana, 2)], staff_user).order
        with pytest.raises(OrderError):
            order_service.update_order_prices(contract_order.id, [{"product_id": banana.id, "rate": 70}], staff_user)

    def test_terminal_orders_cannot_be_edited(self, order, tomato, admin_user):
        order_service.cancel_order(order.id, admin_user)
        with pytest.raises(OrderError):
            order_service.update_order_prices(order.id, [{"product_id": tomato.id, "rate": 90}], admin_user)

    def test_notes_only(self, order, staff_user):
        updated = order_service.update_order_prices(order.id, None, staff_user, notes="Deliver before 7am")
        assert updated.notes == "Deliver before 7am"
        assert updated.total_amount == Decimal("500")


class TestBulkUpdateRates:
    def test_partial_failure(self, db_session, order, tomato, banana, staff_user):
        outcome = order_service.bulk_update_rates(
            [
                {"order_id": order.id, "product_id": tomato.id, "rate": 110},
                {"order_id": order.id, "product_id": banana.id, "rate": 50},
                {"order_id": 9999, "product_id": tomato.id, "rate": 10},
                {"order_id": order.id, "product_id": tomato.id},
            ],
            staff_user,
        )

        assert [u["index"] for u in outcome["updated"]] == [0]
        assert [f["index"] for f in outcome["failed"]] == [1, 2, 3]
        assert order_service.get_order(order.id).total_amount == Decimal("550")


class TestUpdatePayment:
    @pytest.mark.parametrize(
        "paid,status",
        [(0, "unpaid"), (100, "partial"), ("499.99", "partial"), (500, "paid")],
    )
    def test_payment_status(self, order, staff_user, paid, status):
        updated = order_service.update_payment(order.id, paid, staff_user)
        assert updated.payment_status == status

    @pytest.mark.parametrize("paid", [-1, "500.01", "abc", None])
    def test_out_of_range(self, order, staff_user, paid):
        with pytest.raises(ValidationError):
            order_service.update_payment(order.id, paid, staff_user)


# =============================================================================
# COLLABORATOR HOOKS
# =============================================================================


class TestPackingHooks:
    def test_shortage_reduces_line_and_total(self, order, tomato, staff_user):
        order_service.transition_status(order.id, "confirmed", staff_user)

        updated = order_service.adjust_packed_quantity(order.id, tomato.id, "4.5", staff_user, reason="Short supply")

        assert updated.lines[0].quantity == Decimal("4.5")
        assert updated.total_amount == Decimal("450")
        audit = order_service.get_price_audit(order.id)
        assert (audit[0].old_quantity, audit[0].new_quantity) == (Decimal("5"), Decimal("4.5"))
        assert audit[0].reason == "Short supply"

    def test_quantity_cannot_increase(self, order, tomato, staff_user):
        order_service.transition_status(order.id, "confirmed", staff_user)
        with pytest.raises(OrderError):
            order_service.adjust_packed_quantity(order.id, tomato.id, 6, staff_user)

    def test_packed_quantity_beyond_three_places_rejected(self, order, tomato, staff_user):
        order_service.transition_status(order.id, "confirmed", staff_user)
        with pytest.raises(ValidationError) as exc:
            order_service.adjust_packed_quantity(order.id, tomato.id, "4.0005", staff_user)
        assert "quantity" in exc.value.fields
        assert order_service.get_order(order.id).lines[0].quantity == Decimal("5")

    def test_only_while_confirmed(self, order, tomato, staff_user):
        with pytest.raises(OrderError):
            order_service.adjust_packed_quantity(order.id, tomato.id, 4, staff_user)

    def test_mark_packing_done(self, order):
        assert order_service.mark_packing_done(order.id).packing_done is True


class TestBatchHooks:
    def test_confirm_batch_confirms_only_pending(self, market_customer, tomato, staff_user):
        orders = [
            order_service.create_order(market_customer.id, [_line(tomato, 1)], staff_user).order
            for _ in range(3)
        ]
        for o in orders:
            batch_service.assign_to_batch(o.id, "B-0930")
        order_service.transition_status(orders[0].id, "confirmed", staff_user)

        confirmed = batch_service.confirm_batch_orders("B-0930", staff_user)

        assert confirmed == [orders[1].order_number, orders[2].order_number]
        assert {order_service.get_order(o.id).status for o in orders} == {"confirmed"}

    def test_blank_batch_ref_rejected(self, order):
        with pytest.raises(ValidationError):
            batch_service.assign_to_batch(order.id, "  ")
