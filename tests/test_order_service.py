"""订单服务单元测试：创建订单、分阶段付款计划、履约推进。"""

import os
import re
import sqlite3
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="order_service_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import orderpay.database as _db_mod
from orderpay.database import init_db
from orderpay.models.schemas import OrderProduct, OrderStatus, PaymentStage
from orderpay.services.ledger_store import LedgerStore, OrderNotFound
from orderpay.services.order_service import (
    OrderCreateError,
    OrderService,
    OrderStateError,
    downpayment_amount,
)
from orderpay.services.transaction_id import parse_transaction_id
from orderpay.services.user_service import UserService


@pytest.fixture(autouse=True)
def _setup_db():
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS payment_reviews;
        DROP TABLE IF EXISTS payment_logs;
        DROP TABLE IF EXISTS order_products;
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS user_missions;
        DROP TABLE IF EXISTS missions;
        DROP TABLE IF EXISTS user_statistics;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS system_config;
    """)
    conn.close()
    init_db()
    yield


@pytest.fixture
def store():
    return LedgerStore(_tmp.name)


@pytest.fixture
def user(store):
    return UserService(store).register_user("081234567890", name="Budi")


def _products(dp="0"):
    return [
        OrderProduct(name="Cylinder", price=Decimal("400000"), quantity=2,
                     downpayment_percentage=Decimal(dp)),
        OrderProduct(name="Fitting", price=Decimal("200000")),
    ]


def _set_paid(store, order_number, amount):
    with store.transaction() as s:
        order = s.require_order(order_number)
        s.update_order_payment(order.id, order.status, Decimal(amount), order.total)


class TestDownpaymentAmount:

    def test_none_when_no_dp(self):
        assert downpayment_amount(Decimal(1000), _products("0")) is None

    def test_hundred_percent_means_full(self):
        assert downpayment_amount(Decimal(1000), _products("100")) is None

    def test_max_percentage_ceiled(self):
        products = _products("30") + [
            OrderProduct(name="Sensor", price=Decimal(1), downpayment_percentage=Decimal("33.3")),
        ]
        # 1000001 × 33.3% = 333000.333 → 333001
        assert downpayment_amount(Decimal(1000001), products) == Decimal(333001)


class TestCreateOrder:

    def test_order_number_format(self, store, user):
        order = OrderService(store).create_order(user.id, _products())
        assert re.fullmatch(r"7890-\d{4}-\d{2}-\d{2}-[A-Z0-9]{6}", order.order_number)

    def test_totals(self, store, user):
        order = OrderService(store).create_order(user.id, _products())
        with store.session() as s:
            loaded = s.get_order(order.order_number)
        assert loaded.total == Decimal(1000000)
        assert loaded.remaining_balance == Decimal(1000000)
        assert loaded.status == OrderStatus.PENDING_PAYMENT

    def test_user_discount_applied(self, store, user):
        with store.transaction() as s:
            s.update_user_rates(user.id, Decimal(3), Decimal(5))
        order = OrderService(store).create_order(user.id, _products())
        assert order.discount == Decimal("50000.00")
        assert order.total == Decimal("950000.00")

    def test_empty_products(self, store, user):
        with pytest.raises(OrderCreateError):
            OrderService(store).create_order(user.id, [])

    def test_unknown_user(self, store):
        with pytest.raises(OrderCreateError, match="用户不存在"):
            OrderService(store).create_order(999, _products())


class TestPreparePayment:

    def test_down_payment_first(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products("30"))
        plan = svc.prepare_payment(order.order_number, user.id)
        assert plan.stage == PaymentStage.DOWN
        assert plan.amount == Decimal(300000)
        assert plan.correlation_id == f"{order.order_number}-DP"
        with store.session() as s:
            assert s.get_order(order.order_number).current_payment_id == plan.correlation_id

    def test_full_when_no_down_payment(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products())
        plan = svc.prepare_payment(order.order_number, user.id)
        assert plan.stage == PaymentStage.FULL
        assert plan.amount == Decimal(1000000)

    def test_clearance_after_partial(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products("30"))
        _set_paid(store, order.order_number, "300000")
        plan = svc.prepare_payment(order.order_number, user.id)
        assert plan.stage == PaymentStage.CLEARANCE
        assert plan.amount == Decimal(700000)
        tid = parse_transaction_id(plan.correlation_id)
        assert tid.order_number == order.order_number
        assert tid.attempt is not None

    def test_other_users_order_hidden(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products())
        with pytest.raises(OrderNotFound):
            svc.prepare_payment(order.order_number, user.id + 100)

    def test_fully_paid_rejected(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products())
        _set_paid(store, order.order_number, "1000000")
        with pytest.raises(OrderStateError, match="已付清"):
            svc.prepare_payment(order.order_number, user.id)

    def test_cancelled_not_payable(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products())
        svc.advance_status(order.order_number, OrderStatus.CANCELLED)
        with pytest.raises(OrderStateError):
            svc.prepare_payment(order.order_number, user.id)


class TestRequestPayment:

    def test_snap_token_requested(self, store, user):
        gateway = MagicMock()
        gateway.create_snap_token.return_value = {"token": "tok", "redirect_url": "https://pay"}
        svc = OrderService(store, gateway=gateway)
        order = svc.create_order(user.id, _products("30"))

        result = svc.request_payment(order.order_number, user.id)

        assert result["token"] == "tok"
        assert result["redirectUrl"] == "https://pay"
        assert result["paymentType"] == "DP"
        args, kwargs = gateway.create_snap_token.call_args
        assert args[0] == f"{order.order_number}-DP"
        assert args[1] == Decimal(300000)
        assert kwargs["customer"]["first_name"] == "Budi"


class TestAdvanceStatus:

    def _paid_order(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products())
        with store.transaction() as s:
            o = s.require_order(order.order_number)
            s.update_order_payment(o.id, OrderStatus.PROCESSING, o.total, o.total, True)
        return svc, order

    def test_forward_one_step(self, store, user):
        svc, order = self._paid_order(store, user)
        for target in (OrderStatus.READY_TO_SHIP, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            assert svc.advance_status(order.order_number, target).status == target

    def test_skip_rejected(self, store, user):
        svc, order = self._paid_order(store, user)
        with pytest.raises(OrderStateError, match="逐级推进"):
            svc.advance_status(order.order_number, OrderStatus.SHIPPED)

    def test_backward_rejected(self, store, user):
        svc, order = self._paid_order(store, user)
        svc.advance_status(order.order_number, OrderStatus.READY_TO_SHIP)
        with pytest.raises(OrderStateError):
            svc.advance_status(order.order_number, OrderStatus.PROCESSING)

    def test_unpaid_cannot_advance(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products())
        with pytest.raises(OrderStateError):
            svc.advance_status(order.order_number, OrderStatus.PROCESSING)

    def test_refunded_via_admin_rejected(self, store, user):
        svc, order = self._paid_order(store, user)
        with pytest.raises(OrderStateError):
            svc.advance_status(order.order_number, OrderStatus.REFUNDED)

    def test_cancel_terminal_rejected(self, store, user):
        svc = OrderService(store)
        order = svc.create_order(user.id, _products())
        svc.advance_status(order.order_number, OrderStatus.CANCELLED)
        with pytest.raises(OrderStateError, match="无法取消"):
            svc.advance_status(order.order_number, OrderStatus.CANCELLED)
