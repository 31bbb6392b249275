"""
订单账本存储：Order / PaymentLog / User / Statistics / Mission / UserMission 的读写。

对账器、副作用分发器和各服务都通过注入的 LedgerStore 访问数据库，
测试中传入指向临时库文件的实例即可。

写事务使用 BEGIN IMMEDIATE：在幂等检查读之前就拿到数据库写锁，
同一订单（以及所有订单）的并发对账因此串行执行，amount_paid 的
读-改-写不会交错。
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional

from orderpay.database import get_db
from orderpay.models.schemas import (
    LogKind,
    Mission,
    MissionType,
    Order,
    OrderProduct,
    OrderStatus,
    PaymentEvent,
    PaymentLog,
    PaymentStage,
    RewardType,
    Statistics,
    User,
    UserMission,
)

logger = logging.getLogger(__name__)


class OrderNotFound(Exception):
    """订单不存在或已停用。"""
    pass


class TransientStorageFailure(Exception):
    """存储层异常，整个事务已回滚，网关重投可安全重试。"""
    pass


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _dec(value) -> Decimal:
    """数据库金额列统一转 Decimal（列亲和性可能返回 int/float/str）。"""
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


# ── 行 → 实体 ─────────────────────────────────────────────


def _row_to_order(row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        order_number=row["order_number"],
        user_id=row["user_id"],
        total=_dec(row["total"]),
        discount=_dec(row["discount"]),
        status=OrderStatus(row["status"]),
        amount_paid=_dec(row["amount_paid"]),
        remaining_balance=_dec(row["remaining_balance"]),
        affiliate_commission=_dec(row["affiliate_commission"]),
        company_id=row["company_id"],
        needs_review=row["needs_review"],
        current_payment_id=row["current_payment_id"],
        enabled=row["enabled"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        paid_at=row["paid_at"],
    )


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        phone_number=row["phone_number"],
        role=row["role"],
        referral_code=row["referral_code"],
        referrer_id=row["referrer_id"],
        referral_rate=_dec(row["referral_rate"]),
        discount_rate=_dec(row["discount_rate"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_mission(row: sqlite3.Row) -> Mission:
    return Mission(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        type=MissionType(row["type"]),
        target_value=_dec(row["target_value"]),
        reward_type=RewardType(row["reward_type"]),
        reward_value=_dec(row["reward_value"]),
        icon=row["icon"],
        active=row["active"],
        created_at=row["created_at"],
    )


def _row_to_payment_log(row: sqlite3.Row) -> PaymentLog:
    return PaymentLog(
        id=row["id"],
        order_id=row["order_id"],
        stage=PaymentStage(row["stage"]),
        kind=LogKind(row["kind"]),
        transaction_status=row["transaction_status"],
        fraud_status=row["fraud_status"],
        amount=_dec(row["amount"]),
        gross_amount=_dec(row["gross_amount"]),
        payment_method=row["payment_method"],
        gateway_transaction_id=row["gateway_transaction_id"],
        correlation_id=row["correlation_id"],
        paid_at=row["paid_at"],
        created_at=row["created_at"],
    )


class LedgerSession:
    """绑定单个连接的数据访问对象，由 LedgerStore.transaction()/session() 创建。"""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # ── 订单 ──────────────────────────────────────────────

    def get_order(self, order_number: str) -> Optional[Order]:
        """按订单号查询启用中的订单，停用订单视为不存在。"""
        row = self.conn.execute(
            "SELECT * FROM orders WHERE order_number = ? AND enabled = 1",
            (order_number,),
        ).fetchone()
        return _row_to_order(row) if row else None

    def require_order(self, order_number: str) -> Order:
        order = self.get_order(order_number)
        if order is None:
            raise OrderNotFound(f"订单不存在: {order_number}")
        return order

    def get_order_products(self, order_id: int) -> list[OrderProduct]:
        rows = self.conn.execute(
            "SELECT * FROM order_products WHERE order_id = ? ORDER BY id ASC",
            (order_id,),
        ).fetchall()
        return [
            OrderProduct(
                id=row["id"],
                name=row["name"],
                quantity=row["quantity"],
                price=_dec(row["price"]),
                downpayment_percentage=_dec(row["downpayment_percentage"]),
            )
            for row in rows
        ]

    def insert_order(self, order: Order) -> int:
        now = _now()
        cursor = self.conn.execute(
            """INSERT INTO orders
               (order_number, user_id, company_id, status, total, discount,
                amount_paid, remaining_balance, enabled, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)""",
            (
                order.order_number, order.user_id, order.company_id,
                order.status.value, str(order.total), str(order.discount),
                str(order.amount_paid),
                str(order.total - order.amount_paid), now, now,
            ),
        )
        order_id = cursor.lastrowid
        for p in order.products:
            self.conn.execute(
                """INSERT INTO order_products
                   (order_id, name, quantity, price, subtotal, downpayment_percentage)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    order_id, p.name, p.quantity, str(p.price),
                    str(p.subtotal), str(p.downpayment_percentage),
                ),
            )
        return order_id

    def update_order_payment(
        self,
        order_id: int,
        status: OrderStatus,
        amount_paid: Decimal,
        total: Decimal,
        fully_paid_now: bool = False,
    ) -> None:
        """写回对账结果：状态、累计已付、剩余应付；首次付清时记录 paid_at。"""
        now = _now()
        remaining = max(total - amount_paid, Decimal("0"))
        self.conn.execute(
            """UPDATE orders
               SET status = ?, amount_paid = ?, remaining_balance = ?,
                   updated_at = ?,
                   paid_at = CASE WHEN ? THEN ? ELSE paid_at END
               WHERE id = ?""",
            (
                status.value, str(amount_paid), str(remaining), now,
                1 if fully_paid_now else 0, now, order_id,
            ),
        )

    def update_order_status(self, order_id: int, status: OrderStatus) -> None:
        self.conn.execute(
            "UPDATE orders SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, _now(), order_id),
        )

    def set_affiliate_commission(self, order_id: int, amount: Decimal) -> None:
        self.conn.execute(
            "UPDATE orders SET affiliate_commission = ? WHERE id = ?",
            (str(amount), order_id),
        )

    def set_current_payment_id(self, order_id: int, correlation_id: Optional[str]) -> None:
        self.conn.execute(
            "UPDATE orders SET current_payment_id = ?, updated_at = ? WHERE id = ?",
            (correlation_id, _now(), order_id),
        )

    def mark_needs_review(self, order_id: int) -> None:
        self.conn.execute(
            "UPDATE orders SET needs_review = 1, updated_at = ? WHERE id = ?",
            (_now(), order_id),
        )

    def list_orders_by_user(self, user_id: int) -> list[Order]:
        rows = self.conn.execute(
            """SELECT * FROM orders WHERE user_id = ? AND enabled = 1
               ORDER BY created_at DESC, id DESC""",
            (user_id,),
        ).fetchall()
        return [_row_to_order(r) for r in rows]

    def list_referred_orders(self, referrer_id: int) -> list[dict]:
        """推荐人名下（被推荐用户下的）订单及下单用户信息。"""
        rows = self.conn.execute(
            """SELECT o.*, u.name AS customer_name, u.phone_number AS customer_phone
               FROM orders o
               JOIN users u ON o.user_id = u.id
               WHERE u.referrer_id = ? AND o.enabled = 1
               ORDER BY o.created_at DESC, o.id DESC""",
            (referrer_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    # ── 支付流水 / 复核 ────────────────────────────────────

    def find_payment_log(
        self, gateway_transaction_id: str, kind: LogKind
    ) -> Optional[PaymentLog]:
        row = self.conn.execute(
            """SELECT * FROM payment_logs
               WHERE gateway_transaction_id = ? AND kind = ?""",
            (gateway_transaction_id, kind.value),
        ).fetchone()
        return _row_to_payment_log(row) if row else None

    def append_payment_log(self, log: PaymentLog) -> int:
        cursor = self.conn.execute(
            """INSERT INTO payment_logs
               (order_id, stage, kind, transaction_status, fraud_status, amount,
                gross_amount, payment_method, gateway_transaction_id,
                correlation_id, paid_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                log.order_id, log.stage.value, log.kind.value,
                log.transaction_status, log.fraud_status, str(log.amount),
                str(log.gross_amount), log.payment_method,
                log.gateway_transaction_id, log.correlation_id, log.paid_at,
                _now(),
            ),
        )
        return cursor.lastrowid

    def list_payment_logs(self, order_id: int) -> list[PaymentLog]:
        rows = self.conn.execute(
            "SELECT * FROM payment_logs WHERE order_id = ? ORDER BY id ASC",
            (order_id,),
        ).fetchall()
        return [_row_to_payment_log(r) for r in rows]

    def record_review(self, order_id: int, event: PaymentEvent, reason: str) -> bool:
        """登记待人工复核的事件，同一网关交易号只登记一次。返回是否新登记。"""
        cursor = self.conn.execute(
            """INSERT OR IGNORE INTO payment_reviews
               (order_id, gateway_transaction_id, correlation_id, stage,
                transaction_status, fraud_status, gross_amount, reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                order_id, event.gateway_transaction_id, event.correlation_id,
                event.stage.value, event.transaction_status.value,
                event.fraud_status.value if event.fraud_status else None,
                str(event.gross_amount), reason, _now(),
            ),
        )
        return cursor.rowcount > 0

    def list_reviews(self, order_id: int) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM payment_reviews WHERE order_id = ? ORDER BY id ASC",
            (order_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    # ── 用户 / 统计 ────────────────────────────────────────

    def get_user(self, user_id: int) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_referral_code(self, code: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM users WHERE referral_code = ?", (code,)
        ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM users WHERE phone_number = ?", (phone_number,)
        ).fetchone()
        return _row_to_user(row) if row else None

    def insert_user(self, user: User) -> int:
        now = _now()
        cursor = self.conn.execute(
            """INSERT INTO users
               (name, phone_number, role, referral_code, referrer_id,
                referral_rate, discount_rate, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user.name, user.phone_number, user.role, user.referral_code,
                user.referrer_id, str(user.referral_rate),
                str(user.discount_rate), now, now,
            ),
        )
        return cursor.lastrowid

    def update_user_rates(
        self, user_id: int, referral_rate: Decimal, discount_rate: Decimal
    ) -> None:
        self.conn.execute(
            """UPDATE users SET referral_rate = ?, discount_rate = ?, updated_at = ?
               WHERE id = ?""",
            (str(referral_rate), str(discount_rate), _now(), user_id),
        )

    def get_statistics(self, user_id: int) -> Statistics:
        """读取用户统计，缺失时返回全零记录（不写库，由 save_statistics 补建）。"""
        row = self.conn.execute(
            "SELECT * FROM user_statistics WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return Statistics(user_id=user_id)
        return Statistics(
            user_id=row["user_id"],
            total_orders=row["total_orders"],
            total_spent=_dec(row["total_spent"]),
            total_referrals=row["total_referrals"],
            total_referral_earnings=_dec(row["total_referral_earnings"]),
            available_balance=_dec(row["available_balance"]),
        )

    def create_statistics(self, user_id: int) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO user_statistics (user_id, updated_at) VALUES (?, ?)",
            (user_id, _now()),
        )

    def save_statistics(self, stats: Statistics) -> None:
        self.conn.execute(
            """INSERT INTO user_statistics
               (user_id, total_orders, total_spent, total_referrals,
                total_referral_earnings, available_balance, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id) DO UPDATE SET
                   total_orders = excluded.total_orders,
                   total_spent = excluded.total_spent,
                   total_referrals = excluded.total_referrals,
                   total_referral_earnings = excluded.total_referral_earnings,
                   available_balance = excluded.available_balance,
                   updated_at = excluded.updated_at""",
            (
                stats.user_id, stats.total_orders, str(stats.total_spent),
                stats.total_referrals, str(stats.total_referral_earnings),
                str(stats.available_balance), _now(),
            ),
        )

    # ── 任务 ──────────────────────────────────────────────

    def insert_mission(self, mission: Mission) -> int:
        now = _now()
        cursor = self.conn.execute(
            """INSERT INTO missions
               (title, description, type, target_value, reward_type,
                reward_value, icon, active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                mission.title, mission.description, mission.type.value,
                str(mission.target_value), mission.reward_type.value,
                str(mission.reward_value), mission.icon, mission.active,
                now, now,
            ),
        )
        return cursor.lastrowid

    def list_missions(
        self, active_only: bool = True, types: Optional[list[MissionType]] = None
    ) -> list[Mission]:
        sql = "SELECT * FROM missions WHERE 1 = 1"
        params: list = []
        if active_only:
            sql += " AND active = 1"
        if types:
            sql += f" AND type IN ({','.join('?' for _ in types)})"
            params.extend(t.value for t in types)
        sql += " ORDER BY created_at ASC, id ASC"
        rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_mission(r) for r in rows]

    def get_user_mission(self, user_id: int, mission_id: int) -> UserMission:
        """读取用户任务进度。任务晚于注册创建时没有记录，返回零进度，由 save_user_mission 补建。"""
        row = self.conn.execute(
            "SELECT * FROM user_missions WHERE user_id = ? AND mission_id = ?",
            (user_id, mission_id),
        ).fetchone()
        if row is None:
            return UserMission(user_id=user_id, mission_id=mission_id)
        return UserMission(
            user_id=row["user_id"],
            mission_id=row["mission_id"],
            current_progress=_dec(row["current_progress"]),
            achieved=bool(row["achieved"]),
            achieved_at=row["achieved_at"],
        )

    def create_user_mission(self, user_id: int, mission_id: int) -> None:
        now = _now()
        self.conn.execute(
            """INSERT OR IGNORE INTO user_missions
               (user_id, mission_id, current_progress, achieved, created_at, updated_at)
               VALUES (?, ?, 0, 0, ?, ?)""",
            (user_id, mission_id, now, now),
        )

    def save_user_mission(self, um: UserMission) -> None:
        now = _now()
        self.conn.execute(
            """INSERT INTO user_missions
               (user_id, mission_id, current_progress, achieved, achieved_at,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id, mission_id) DO UPDATE SET
                   current_progress = excluded.current_progress,
                   achieved = excluded.achieved,
                   achieved_at = excluded.achieved_at,
                   updated_at = excluded.updated_at""",
            (
                um.user_id, um.mission_id, str(um.current_progress),
                1 if um.achieved else 0, um.achieved_at, now, now,
            ),
        )

    def list_user_missions(self, user_id: int) -> dict[int, UserMission]:
        rows = self.conn.execute(
            "SELECT * FROM user_missions WHERE user_id = ?", (user_id,)
        ).fetchall()
        return {
            row["mission_id"]: UserMission(
                user_id=row["user_id"],
                mission_id=row["mission_id"],
                current_progress=_dec(row["current_progress"]),
                achieved=bool(row["achieved"]),
                achieved_at=row["achieved_at"],
            )
            for row in rows
        }


class LedgerStore:
    """账本存储入口：按需打开连接，提供只读会话和原子写事务。"""

    def __init__(self, db_path: Optional[str] = None):
        # None 表示使用 orderpay.database.DB_PATH（调用时读取）
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        return get_db(self.db_path)

    @contextmanager
    def session(self) -> Iterator[LedgerSession]:
        """只读会话，不开启显式事务。写操作请用 transaction()，这里的写入不会提交。"""
        conn = self._connect()
        try:
            yield LedgerSession(conn)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[LedgerSession]:
        """
        原子写事务：全部成功则提交，任何异常整体回滚。

        Raises:
            TransientStorageFailure: sqlite3 层异常（锁超时、磁盘错误等）。
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield LedgerSession(conn)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("账本事务失败，已回滚: %s", e)
            raise TransientStorageFailure(str(e)) from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()
