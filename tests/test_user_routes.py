"""用户接口路由单元测试。"""

import os
import sqlite3
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="user_routes_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import orderpay.database as _db_mod
from orderpay.database import init_db
from orderpay.main import app
from orderpay.models.schemas import OrderProduct
from orderpay.services.auth import create_token
from orderpay.services.ledger_store import LedgerStore
from orderpay.services.midtrans_client import GatewayClientError
from orderpay.services.order_service import OrderService
from orderpay.services.reconciler import Action, ReconcileResult
from orderpay.services.user_service import UserService


@pytest.fixture(autouse=True)
def _setup_db(monkeypatch):
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    monkeypatch.setenv("MIDTRANS_SERVER_KEY", "SB-Mid-server-user-routes")
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
def client():
    return TestClient(app)


@pytest.fixture
def user():
    return UserService(LedgerStore()).register_user("081200000001", name="Ani")


def _auth(user_id):
    return {"Authorization": f"Bearer {create_token(user_id)}"}


def _order(user_id, dp="0"):
    return OrderService(LedgerStore()).create_order(
        user_id, [OrderProduct(name="Valve", price=Decimal(100000), downpayment_percentage=Decimal(dp))]
    )


class TestReadEndpoints:

    def test_requires_token(self, client):
        assert client.get("/v1/user/profile").status_code == 401

    def test_profile(self, client, user):
        resp = client.get("/v1/user/profile", headers=_auth(user.id))
        assert resp.status_code == 200
        assert resp.json()["data"]["referralCode"] == user.referral_code

    def test_profile_unknown_user(self, client):
        assert client.get("/v1/user/profile", headers=_auth(999)).status_code == 404

    def test_affiliate(self, client, user):
        resp = client.get("/v1/user/affiliate", headers=_auth(user.id))
        assert resp.status_code == 200
        assert resp.json()["data"]["referralLink"].endswith(f"/ref/{user.referral_code}")

    def test_missions(self, client, user):
        resp = client.get("/v1/user/missions", headers=_auth(user.id))
        assert resp.status_code == 200
        assert resp.json()["data"] == []

    def test_orders(self, client, user):
        order = _order(user.id)
        resp = client.get("/v1/user/orders", headers=_auth(user.id))
        data = resp.json()["data"]
        assert [o["orderNumber"] for o in data] == [order.order_number]
        assert data[0]["amountPaid"] == "0"


class TestPaymentEndpoints:

    @patch("orderpay.services.order_service.MidtransClient")
    def test_create_payment(self, mock_client_cls, client, user):
        mock_client_cls.return_value.create_snap_token.return_value = {
            "token": "tok-1", "redirect_url": "https://pay/1",
        }
        order = _order(user.id, dp="50")
        resp = client.post(f"/v1/user/orders/{order.order_number}/payment", headers=_auth(user.id))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["paymentType"] == "DP"
        assert data["amount"] == "50000"
        assert data["token"] == "tok-1"

    def test_create_payment_other_user_404(self, client, user):
        order = _order(user.id)
        resp = client.post(f"/v1/user/orders/{order.order_number}/payment", headers=_auth(user.id + 1))
        assert resp.status_code == 404

    @patch("orderpay.services.order_service.MidtransClient")
    def test_gateway_failure_502(self, mock_client_cls, client, user):
        mock_client_cls.return_value.create_snap_token.side_effect = GatewayClientError("down")
        order = _order(user.id)
        resp = client.post(f"/v1/user/orders/{order.order_number}/payment", headers=_auth(user.id))
        assert resp.status_code == 502

    def test_sync_without_payment(self, client, user):
        order = _order(user.id)
        resp = client.post(f"/v1/user/orders/{order.order_number}/sync", headers=_auth(user.id))
        assert resp.status_code == 200
        assert resp.json()["data"]["action"] == "none"

    @patch("orderpay.routes.user.PaymentReconciler")
    def test_sync_runs_reconciler(self, mock_rec_cls, client, user):
        order = _order(user.id)
        mock_rec_cls.return_value.sync_order.return_value = ReconcileResult(
            action=Action.APPLY, order_number=order.order_number, transaction_status="settlement",
        )
        resp = client.post(f"/v1/user/orders/{order.order_number}/sync", headers=_auth(user.id))
        assert resp.status_code == 200
        assert resp.json()["data"]["action"] == "applied"
        mock_rec_cls.return_value.sync_order.assert_called_once_with(order.order_number)
