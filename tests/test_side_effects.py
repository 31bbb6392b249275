"""付清副作用分发器单元测试。"""

import os
import sqlite3
import tempfile
from decimal import Decimal

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="side_effects_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import orderpay.database as _db_mod
from orderpay.database import init_db
from orderpay.models.schemas import Mission, MissionType, Order, RewardType
from orderpay.services.ledger_store import LedgerStore
from orderpay.services.side_effects import SideEffectDispatcher
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


def _mission(s, mtype, target, reward_type=RewardType.REFERRAL_PERCENTAGE, reward="1", active=1):
    return s.insert_mission(Mission(
        id=0, title=f"{mtype.value} {target}", type=mtype,
        target_value=Decimal(target), reward_type=reward_type,
        reward_value=Decimal(reward), active=active,
    ))


def _order(s, user_id, total):
    order = Order(id=0, order_number=f"ORD-{user_id}-{total}", user_id=user_id,
                  total=Decimal(total), remaining_balance=Decimal(total))
    order.id = s.insert_order(order)
    return order


class TestDispatchFullFunding:

    def test_owner_statistics(self, store):
        user = UserService(store).register_user("081200000001")
        with store.transaction() as s:
            order = _order(s, user.id, "250000")
            effects = SideEffectDispatcher().dispatch_full_funding(s, order)
            stats = s.get_statistics(user.id)
        assert effects.commission == Decimal(0)
        assert effects.referrer_id is None
        assert stats.total_orders == 1
        assert stats.total_spent == Decimal("250000")

    def test_referrer_missions_advance(self, store):
        svc = UserService(store)
        referrer = svc.register_user("081299999999")
        buyer = svc.register_user("081200000001", referral_code=referrer.referral_code)
        with store.transaction() as s:
            count_id = _mission(s, MissionType.REFERRAL_COUNT, "1", RewardType.BOTH, "0.5")
            earn_id = _mission(s, MissionType.REFERRAL_EARNINGS, "100000")
            order = _order(s, buyer.id, "1000000")
            effects = SideEffectDispatcher().dispatch_full_funding(s, order)
            count_um = s.get_user_mission(referrer.id, count_id)
            earn_um = s.get_user_mission(referrer.id, earn_id)
            r = s.get_user(referrer.id)

        # 默认比例 3% → 30,000
        assert effects.commission == Decimal("30000.00")
        assert count_um.achieved is True
        assert earn_um.current_progress == Decimal("30000")
        assert earn_um.achieved is False
        assert (referrer.id, count_id) in effects.achieved_missions
        # BOTH 奖励同时提高推荐比例和全局折扣
        assert r.referral_rate == Decimal("3.5")
        assert r.discount_rate == Decimal("0.5")

    def test_global_discount_reward(self, store):
        user = UserService(store).register_user("081200000001")
        with store.transaction() as s:
            _mission(s, MissionType.ORDER_VALUE, "100000", RewardType.GLOBAL_DISCOUNT, "2")
            order = _order(s, user.id, "150000")
            SideEffectDispatcher().dispatch_full_funding(s, order)
            u = s.get_user(user.id)
        assert u.discount_rate == Decimal(2)
        assert u.referral_rate == Decimal(3)

    def test_inactive_mission_ignored(self, store):
        user = UserService(store).register_user("081200000001")
        with store.transaction() as s:
            mid = _mission(s, MissionType.ORDER_COUNT, "1", active=0)
            order = _order(s, user.id, "150000")
            effects = SideEffectDispatcher().dispatch_full_funding(s, order)
            progress = s.list_user_missions(user.id)
        assert effects.achieved_missions == []
        assert mid not in progress

    def test_reward_applied_once(self, store):
        user = UserService(store).register_user("081200000001")
        with store.transaction() as s:
            _mission(s, MissionType.ORDER_COUNT, "1")
            d = SideEffectDispatcher()
            d.dispatch_full_funding(s, _order(s, user.id, "1000"))
            d.dispatch_full_funding(s, _order(s, user.id, "2000"))
            u = s.get_user(user.id)
        assert u.referral_rate == Decimal(4)
