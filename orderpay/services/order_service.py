"""
订单服务模块：创建订单、分阶段发起付款（定金 / 全款 / 尾款）、履约状态推进。

付款结果不在这里落库，统一由网关通知经 PaymentReconciler 对账写入。
"""

import logging
import random
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_CEILING, Decimal

from orderpay.models.schemas import (
    ABSORBING_STATUSES,
    FULFILLMENT_ORDER,
    Order,
    OrderProduct,
    OrderStatus,
    PaymentStage,
)
from orderpay.services.ledger_store import LedgerStore, OrderNotFound
from orderpay.services.midtrans_client import MidtransClient
from orderpay.services.platform_config import get_server_key, is_production
from orderpay.services.referral import discount
from orderpay.services.transaction_id import build_transaction_id

logger = logging.getLogger(__name__)

# 允许发起付款的订单状态：待支付（定金/全款）以及履约中的尾款
PAYABLE_STATUSES = (
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PROCESSING,
    OrderStatus.READY_TO_SHIP,
)


class OrderStateError(Exception):
    """订单当前状态不允许该操作。"""
    pass


class OrderCreateError(Exception):
    """订单创建失败通用异常。"""
    pass


@dataclass
class PaymentPlan:
    """一次付款请求的阶段、金额和网关关联号。"""

    order_number: str
    correlation_id: str
    stage: PaymentStage
    amount: Decimal
    total: Decimal
    amount_paid: Decimal
    remaining_balance: Decimal

    def to_dict(self) -> dict:
        return {
            "orderNumber": self.order_number,
            "transactionId": self.correlation_id,
            "paymentType": self.stage.value,
            "amount": str(self.amount),
            "totalAmount": str(self.total),
            "amountPaid": str(self.amount_paid),
            "remainingBalance": str(self.remaining_balance),
        }


def downpayment_amount(total: Decimal, products: list[OrderProduct]) -> Decimal | None:
    """
    定金金额：任一商品定金比例在 (0, 100) 之间时，按最高比例向上取整；
    否则返回 None 表示需要全款。
    """
    if not any(0 < p.downpayment_percentage < 100 for p in products):
        return None
    pct = max(p.downpayment_percentage for p in products)
    return (total * pct / 100).to_integral_value(rounding=ROUND_CEILING)


class OrderService:
    """订单服务：创建订单、付款计划、履约推进。"""

    def __init__(self, store: LedgerStore | None = None, gateway: MidtransClient | None = None):
        self.store = store or LedgerStore()
        self._gateway = gateway

    @property
    def gateway(self) -> MidtransClient:
        if self._gateway is None:
            self._gateway = MidtransClient(get_server_key(), production=is_production())
        return self._gateway

    def generate_order_number(self, phone_number: str) -> str:
        """
        生成唯一订单号：手机号后 4 位 - 日期 - 6 位随机字符。
        例如 1234-2026-10-19-K3ZQ8A。
        """
        last4 = (phone_number or "")[-4:] or "0000"
        date_str = datetime.now().strftime("%Y-%m-%d")
        alphabet = string.ascii_uppercase + string.digits
        with self.store.session() as s:
            for _ in range(10):
                rand = "".join(random.choices(alphabet, k=6))
                order_number = f"{last4}-{date_str}-{rand}"
                if s.conn.execute(
                    "SELECT 1 FROM orders WHERE order_number = ?", (order_number,)
                ).fetchone() is None:
                    return order_number
        raise OrderCreateError("无法生成唯一订单号，请重试")

    def create_order(
        self,
        user_id: int,
        products: list[OrderProduct],
        company_id: int | None = None,
    ) -> Order:
        """
        创建待支付订单，按用户全局折扣比例计算应付总额。

        Raises:
            OrderCreateError: 用户不存在、商品为空或金额不合法。
        """
        if not products:
            raise OrderCreateError("订单至少包含一个商品")
        for p in products:
            if p.quantity <= 0 or p.price < 0:
                raise OrderCreateError(f"商品数量或价格不合法: {p.name}")

        with self.store.session() as s:
            user = s.get_user(user_id)
        if user is None:
            raise OrderCreateError("用户不存在")

        subtotal = sum((p.subtotal for p in products), Decimal("0"))
        order_discount = discount(subtotal, user.discount_rate)
        total = subtotal - order_discount
        if total <= 0:
            raise OrderCreateError("订单金额必须大于 0")

        order = Order(
            id=0,
            order_number=self.generate_order_number(user.phone_number),
            user_id=user_id,
            total=total,
            discount=order_discount,
            remaining_balance=total,
            company_id=company_id,
            products=list(products),
        )
        with self.store.transaction() as s:
            order.id = s.insert_order(order)

        logger.info(
            "订单创建成功: order=%s, user_id=%d, subtotal=%s, discount=%s, total=%s",
            order.order_number, user_id, subtotal, order_discount, total,
        )
        return order

    def prepare_payment(self, order_number: str, user_id: int) -> PaymentPlan:
        """
        计算下一笔付款：
        - 尚未付款且有商品需要定金：DP，金额为总额 × 最高定金比例（向上取整）
        - 尚未付款且无需定金：FULL，金额为剩余应付
        - 已付过款：CLR，金额为剩余应付，每次生成新的关联号

        只能为自己的订单付款，他人订单视为不存在。

        Raises:
            OrderNotFound: 订单不存在或不属于该用户。
            OrderStateError: 订单状态不可付款或已付清。
        """
        with self.store.transaction() as s:
            order = s.get_order(order_number)
            if order is None or order.user_id != user_id:
                raise OrderNotFound(f"订单不存在: {order_number}")
            if order.status not in PAYABLE_STATUSES:
                raise OrderStateError(f"订单当前状态不可付款: {order.status.value}")

            remaining = order.total - order.amount_paid
            if remaining <= 0:
                raise OrderStateError("订单已付清")

            if order.amount_paid == 0:
                dp = downpayment_amount(order.total, s.get_order_products(order.id))
                if dp is not None and dp < remaining:
                    stage, amount = PaymentStage.DOWN, dp
                else:
                    stage, amount = PaymentStage.FULL, remaining
                correlation_id = build_transaction_id(order_number, stage)
            else:
                stage, amount = PaymentStage.CLEARANCE, remaining
                attempt = int(datetime.now().timestamp() * 1000)
                correlation_id = build_transaction_id(order_number, stage, attempt)

            s.set_current_payment_id(order.id, correlation_id)

        return PaymentPlan(
            order_number=order_number,
            correlation_id=correlation_id,
            stage=stage,
            amount=amount,
            total=order.total,
            amount_paid=order.amount_paid,
            remaining_balance=remaining,
        )

    def request_payment(self, order_number: str, user_id: int) -> dict:
        """
        生成付款计划并向网关申请 Snap 支付令牌。

        Raises:
            OrderNotFound / OrderStateError: 同 prepare_payment。
            GatewayClientError: 网关请求失败。
        """
        plan = self.prepare_payment(order_number, user_id)

        with self.store.session() as s:
            user = s.get_user(user_id)
        customer = {
            "first_name": (user.name if user and user.name else "Customer"),
            "phone": user.phone_number if user else "",
        }
        if plan.stage == PaymentStage.DOWN:
            label = f"Down Payment - Order {order_number}"
        elif plan.stage == PaymentStage.CLEARANCE:
            label = f"Remaining Payment - Order {order_number}"
        else:
            label = f"Order {order_number}"
        items = [{
            "id": order_number,
            "price": int(plan.amount.to_integral_value(rounding=ROUND_CEILING)),
            "quantity": 1,
            "name": label,
        }]

        snap = self.gateway.create_snap_token(
            plan.correlation_id, plan.amount, customer=customer, items=items
        )
        logger.info(
            "发起付款: order=%s, stage=%s, amount=%s, correlation_id=%s",
            order_number, plan.stage.value, plan.amount, plan.correlation_id,
        )
        result = plan.to_dict()
        result["token"] = snap["token"]
        result["redirectUrl"] = snap["redirect_url"]
        return result

    def advance_status(self, order_number: str, target: OrderStatus) -> Order:
        """
        履约方推进订单状态：
        - PROCESSING → READY_TO_SHIP → SHIPPED → DELIVERED，每次只能前进一步
        - 非终态订单可以取消

        Raises:
            OrderNotFound: 订单不存在。
            OrderStateError: 不允许的状态跳转。
        """
        with self.store.transaction() as s:
            order = s.require_order(order_number)
            current = order.status

            if target == OrderStatus.CANCELLED:
                if current in ABSORBING_STATUSES or current == OrderStatus.DELIVERED:
                    raise OrderStateError(f"订单已结束，无法取消: {current.value}")
            else:
                if current in ABSORBING_STATUSES or current == OrderStatus.PENDING_PAYMENT:
                    raise OrderStateError(f"订单当前状态不可推进: {current.value}")
                if target not in FULFILLMENT_ORDER:
                    raise OrderStateError(f"不支持的目标状态: {target.value}")
                idx = FULFILLMENT_ORDER.index(current)
                if FULFILLMENT_ORDER.index(target) != idx + 1:
                    raise OrderStateError(
                        f"状态只能逐级推进: {current.value} -> {target.value}"
                    )

            s.update_order_status(order.id, target)

        logger.info("订单状态推进: order=%s, %s -> %s", order_number, current.value, target.value)
        order.status = target
        return order
