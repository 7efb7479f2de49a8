"""
CLI command tests (flask system/users/counters/jobs/locks).
"""

from mandi.models import Counter, Order, User
from mandi.services import lock_service, order_service

from conftest import make_customer


def test_system_init_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["system", "init"])
    second = runner.invoke(args=["system", "init"])

    assert first.exit_code == 0
    assert "Created admin user" in first.output
    assert "already exists" in second.output
    assert db_session.query(User).filter_by(username="admin").count() == 1


def test_users_create_rejects_weak_password(app, db_session):
    result = app.test_cli_runner().invoke(args=[
        "users", "create", "--username", "ravi", "--name", "Ravi",
        "--password", "short", "--role", "staff",
    ])
    assert result.exit_code != 0
    assert db_session.query(User).filter_by(username="ravi").count() == 0


def test_users_create_and_list(app, db_session):
    customer = make_customer(db_session, "Hotel One")
    runner = app.test_cli_runner()

    created = runner.invoke(args=[
        "users", "create", "--username", "hotel1", "--name", "Hotel One",
        "--password", "Password123", "--role", "customer", "--customer-id", str(customer.id),
    ])
    listed = runner.invoke(args=["users", "list"])

    assert created.exit_code == 0, created.output
    assert "hotel1" in listed.output
    assert f"customer={customer.id}" in listed.output


def test_counters_seed_dry_run(app, db_session):
    customer = make_customer(db_session)
    db_session.add(Order(order_number="ORD26100007", customer_id=customer.id, total_amount=0, paid_amount=0))
    db_session.commit()

    result = app.test_cli_runner().invoke(args=["counters", "seed", "--dry-run"])

    assert result.exit_code == 0
    assert "order_ORD2610" in result.output
    assert "DRY RUN" in result.output
    assert db_session.get(Counter, "order_ORD2610") is None


def test_jobs_auto_confirm(app, db_session, market_customer, tomato, staff_user):
    order = order_service.create_order(
        market_customer.id, [{"product_id": tomato.id, "quantity": 1}], staff_user, batch_ref="B-0930",
    ).order

    result = app.test_cli_runner().invoke(args=["jobs", "auto-confirm", "--batch-ref", "B-0930", "--timeout", "5"])

    assert result.exit_code == 0, result.output
    assert "Confirmed 1 orders" in result.output
    assert order.order_number in result.output


def test_jobs_auto_confirm_skips_when_locked(app, db_session):
    lock_service.acquire_lock("batch-auto-confirm:B-0930", 60, holder_id="node-a")
    result = app.test_cli_runner().invoke(args=["jobs", "auto-confirm", "--batch-ref", "B-0930"])
    assert "SKIP Lock held by node-a" in result.output


def test_locks_release(app, db_session):
    lock_service.acquire_lock("stuck", 60, holder_id="node-a")
    runner = app.test_cli_runner()

    assert "PASS Released stuck" in runner.invoke(args=["locks", "release", "--name", "stuck"]).output
    assert "SKIP No lock named stuck" in runner.invoke(args=["locks", "release", "--name", "stuck"]).output
