"""
Counter and order numbering tests.

Verifies:
- Sequences start at 1 and increase by exactly one per call
- Each key is independent
- Order numbers are ORD + YY + MM + 4-digit sequence, per month
- Seeding raises counters to existing order numbers and never lowers them
"""

from datetime import datetime
from decimal import Decimal

import pytest

from mandi.models import Counter, Order
from mandi.services import counter_service
from mandi.services.counter_service import CounterError

from conftest import make_customer


class TestNextSequence:
    def test_first_call_returns_one(self, db_session):
        assert counter_service.next_sequence("order_ORD2610") == 1

    def test_increments_by_one(self, db_session):
        values = [counter_service.next_sequence("order_ORD2610") for _ in range(5)]
        db_session.commit()
        assert values == [1, 2, 3, 4, 5]
        assert db_session.get(Counter, "order_ORD2610").sequence == 5

    def test_keys_are_independent(self, db_session):
        counter_service.next_sequence("a")
        counter_service.next_sequence("a")
        assert counter_service.next_sequence("b") == 1
        assert counter_service.next_sequence("a") == 3

    def test_rolled_back_increment_is_released(self, db_session):
        counter_service.next_sequence("order_ORD2610")
        db_session.commit()
        counter_service.next_sequence("order_ORD2610")
        db_session.rollback()
        assert counter_service.next_sequence("order_ORD2610") == 2

    def test_empty_key_rejected(self, db_session):
        with pytest.raises(CounterError):
            counter_service.next_sequence("")


class TestOrderNumbers:
    @pytest.mark.parametrize(
        "when,seq,expected",
        [
            (datetime(2026, 10, 18), 1, "ORD26100001"),
            (datetime(2026, 1, 5), 42, "ORD26010042"),
            (datetime(2030, 12, 31), 9999, "ORD30129999"),
            (datetime(2026, 10, 1), 12345, "ORD261012345"),
        ],
    )
    def test_format(self, when, seq, expected):
        assert counter_service.format_order_number(when, seq) == expected

    def test_next_order_number_is_per_month(self, db_session):
        oct_1 = counter_service.next_order_number(datetime(2026, 10, 3))
        oct_2 = counter_service.next_order_number(datetime(2026, 10, 20))
        nov_1 = counter_service.next_order_number(datetime(2026, 11, 1))
        assert (oct_1, oct_2, nov_1) == ("ORD26100001", "ORD26100002", "ORD26110001")


class TestSeedCounters:
    def _order(self, session, customer, number):
        session.add(Order(order_number=number, customer_id=customer.id, total_amount=Decimal("0")))
        session.commit()

    def test_seeds_from_existing_orders(self, db_session):
        customer = make_customer(db_session)
        self._order(db_session, customer, "ORD26090007")
        self._order(db_session, customer, "ORD26090003")
        self._order(db_session, customer, "ORD26100012")
        self._order(db_session, customer, "LEGACY-1")

        report = counter_service.seed_counters_from_orders()

        assert {r["key"]: r["action"] for r in report} == {
            "order_ORD2609": "created",
            "order_ORD2610": "created",
        }
        assert counter_service.next_sequence("order_ORD2609") == 8
        assert counter_service.next_sequence("order_ORD2610") == 13

    def test_never_lowers_a_counter(self, db_session):
        customer = make_customer(db_session)
        self._order(db_session, customer, "ORD26100005")
        db_session.add(Counter(key="order_ORD2610", sequence=20))
        db_session.commit()

        report = counter_service.seed_counters_from_orders()

        assert report[0]["action"] == "skipped"
        assert db_session.get(Counter, "order_ORD2610").sequence == 20

    def test_dry_run_writes_nothing(self, db_session):
        customer = make_customer(db_session)
        self._order(db_session, customer, "ORD26100005")

        report = counter_service.seed_counters_from_orders(dry_run=True)

        assert report[0]["action"] == "created"
        assert db_session.get(Counter, "order_ORD2610") is None
