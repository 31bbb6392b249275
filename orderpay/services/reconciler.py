"""
支付通知对账器：验签 → 报文校验 → 关联号解析 → 状态机决策 → 原子落库。

核心规则：
- 幂等：同一网关交易号（同类流水）只处理一次，重投直接确认成功
- 良性取消：已有入账的订单收到取消类通知时忽略（例如定金已付、尾款过期）
- 分阶段入账：定金不足总额时保持待支付，尾款或累计付清后进入 PROCESSING
- 副作用只在 amount_paid 首次跨过订单总额时触发一次
- 订单更新、流水写入、副作用在同一个事务内提交

decide() 是纯函数，只依赖（当前状态, 已付金额, 总额, 事件），便于逐状态单测。
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from orderpay.models.schemas import (
    ABSORBING_STATUSES,
    FraudStatus,
    LogKind,
    MidtransNotification,
    Order,
    OrderStatus,
    PaymentEvent,
    PaymentLog,
    PaymentStage,
    TransactionStatus,
)
from orderpay.services.ledger_store import LedgerSession, LedgerStore
from orderpay.services.midtrans_client import MidtransClient, map_payment_type
from orderpay.services.platform_config import (
    get_overcredit_tolerance,
    get_server_key,
    is_production,
)
from orderpay.services.side_effects import FundingEffects, SideEffectDispatcher
from orderpay.services.sign import authenticate_notification
from orderpay.services.transaction_id import parse_transaction_id

logger = logging.getLogger(__name__)


class InvalidNotification(Exception):
    """通知报文字段缺失或取值不合法。"""
    pass


class EventClass(str, Enum):
    SETTLEMENT = "settlement"
    CANCEL = "cancel"
    REFUND = "refund"
    HOLD = "hold"
    PENDING = "pending"


class Action(str, Enum):
    APPLY = "applied"
    DISCARD = "ignored"
    HOLD = "held"
    REVIEW = "review"
    DUPLICATE = "duplicate"


_CANCEL_STATUSES = frozenset({
    TransactionStatus.CANCEL,
    TransactionStatus.EXPIRE,
    TransactionStatus.DENY,
    TransactionStatus.FAILURE,
})

_REFUND_STATUSES = frozenset({
    TransactionStatus.REFUND,
    TransactionStatus.PARTIAL_REFUND,
})

_LOG_KIND = {
    EventClass.SETTLEMENT: LogKind.CREDIT,
    EventClass.CANCEL: LogKind.CANCEL,
    EventClass.REFUND: LogKind.REFUND,
}

# 复核原因
REVIEW_FRAUD_CHALLENGE = "FRAUD_CHALLENGE"
REVIEW_UNVERIFIED_CAPTURE = "UNVERIFIED_CAPTURE"
REVIEW_OVERCREDIT = "OVERCREDIT"
REVIEW_PAID_AFTER_CANCEL = "PAID_AFTER_CANCEL"


def classify(event: PaymentEvent) -> EventClass:
    """按网关交易状态和风控结果给事件归类。"""
    status = event.transaction_status
    fraud = event.fraud_status

    if status in _REFUND_STATUSES:
        return EventClass.REFUND
    if status in _CANCEL_STATUSES or fraud == FraudStatus.DENY:
        return EventClass.CANCEL
    if fraud == FraudStatus.CHALLENGE:
        return EventClass.HOLD
    if status == TransactionStatus.SETTLEMENT:
        return EventClass.SETTLEMENT
    if status == TransactionStatus.CAPTURE:
        # 卡支付 capture 必须有风控 accept 才算资金到位
        return EventClass.SETTLEMENT if fraud == FraudStatus.ACCEPT else EventClass.HOLD
    return EventClass.PENDING


def log_kind_for(event: PaymentEvent) -> Optional[LogKind]:
    """事件对应的流水类型；不落流水的事件返回 None。"""
    return _LOG_KIND.get(classify(event))


@dataclass(frozen=True)
class Decision:
    action: Action
    event_class: EventClass
    status: OrderStatus
    amount_paid: Decimal
    log_kind: Optional[LogKind] = None
    credited: Decimal = Decimal("0")
    fire_side_effects: bool = False
    reason: str = ""


def decide(
    status: OrderStatus,
    amount_paid: Decimal,
    total: Decimal,
    event: PaymentEvent,
    tolerance: Decimal = Decimal("0"),
) -> Decision:
    """
    状态机：根据订单当前状态、已付金额、总额和事件计算下一步。

    不读写任何存储，相同输入恒得相同输出。
    """
    ec = classify(event)

    def keep(action: Action, reason: str) -> Decision:
        return Decision(action, ec, status, amount_paid, reason=reason)

    if status in ABSORBING_STATUSES:
        if status == OrderStatus.CANCELLED and ec == EventClass.SETTLEMENT:
            return keep(Action.REVIEW, REVIEW_PAID_AFTER_CANCEL)
        return keep(Action.DISCARD, "absorbing")

    if ec == EventClass.PENDING:
        return keep(Action.DISCARD, "pending")

    if ec == EventClass.HOLD:
        reason = (
            REVIEW_FRAUD_CHALLENGE
            if event.fraud_status == FraudStatus.CHALLENGE
            else REVIEW_UNVERIFIED_CAPTURE
        )
        return keep(Action.HOLD, reason)

    if ec == EventClass.CANCEL:
        if amount_paid > 0:
            # 前一阶段已入账，后续阶段失败不影响已到位资金
            return keep(Action.DISCARD, "benign_cancel")
        return Decision(
            Action.APPLY, ec, OrderStatus.CANCELLED, amount_paid,
            log_kind=LogKind.CANCEL, reason="cancelled",
        )

    if ec == EventClass.REFUND:
        return Decision(
            Action.APPLY, ec, OrderStatus.REFUNDED, amount_paid,
            log_kind=LogKind.REFUND, reason="refunded",
        )

    # 入账
    new_amount = amount_paid + event.gross_amount
    if new_amount > total + tolerance:
        return keep(Action.REVIEW, REVIEW_OVERCREDIT)

    fully_paid = new_amount >= total
    new_status = status
    if event.stage == PaymentStage.CLEARANCE or fully_paid:
        # 资金到位进入 PROCESSING；已被履约方推进到更后的状态则保持不回退
        if status in (OrderStatus.PENDING_PAYMENT, OrderStatus.PROCESSING):
            new_status = OrderStatus.PROCESSING

    return Decision(
        Action.APPLY, ec, new_status, new_amount,
        log_kind=LogKind.CREDIT,
        credited=event.gross_amount,
        fire_side_effects=amount_paid < total <= new_amount,
        reason="credited",
    )


@dataclass
class ReconcileResult:
    action: Action
    order_number: str
    transaction_status: str
    order_status: Optional[OrderStatus] = None
    amount_paid: Optional[Decimal] = None
    reason: str = ""
    effects: Optional[FundingEffects] = None

    def to_response(self) -> dict:
        return {
            "success": True,
            "action": self.action.value,
            "orderNumber": self.order_number,
            "orderStatus": self.order_status.value if self.order_status else None,
            "transactionStatus": self.transaction_status,
        }


def parse_event(payload: dict) -> PaymentEvent:
    """
    严格校验网关报文并转成强类型事件。

    Raises:
        InvalidNotification: 字段缺失或取值不合法。
        MalformedIdentifier: 关联号格式错误。
    """
    try:
        notification = MidtransNotification.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) for err in e.errors()
        )
        raise InvalidNotification(f"通知报文不合法: {fields}")

    tid = parse_transaction_id(notification.order_id)
    return PaymentEvent(
        correlation_id=notification.order_id,
        order_number=tid.order_number,
        stage=tid.stage,
        transaction_status=notification.transaction_status,
        gross_amount=Decimal(notification.gross_amount),
        gateway_transaction_id=notification.transaction_id,
        fraud_status=notification.fraud_status,
        payment_type=notification.payment_type,
        transaction_time=notification.transaction_time,
        settlement_time=notification.settlement_time,
    )


class PaymentReconciler:
    """支付对账器，存储、副作用分发器和网关客户端均可注入。"""

    def __init__(
        self,
        store: LedgerStore | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        server_key: str | None = None,
        tolerance: Decimal | None = None,
        gateway: MidtransClient | None = None,
    ):
        self.store = store or LedgerStore()
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self._server_key = server_key
        self._tolerance = tolerance
        self._gateway = gateway

    @property
    def server_key(self) -> str:
        return self._server_key or get_server_key()

    @property
    def gateway(self) -> MidtransClient:
        if self._gateway is None:
            self._gateway = MidtransClient(self.server_key, production=is_production())
        return self._gateway

    def _current_tolerance(self) -> Decimal:
        if self._tolerance is not None:
            return self._tolerance
        return get_overcredit_tolerance()

    # ── 入口 ──────────────────────────────────────────────

    def handle_notification(self, payload: dict) -> ReconcileResult:
        """
        处理一条网关异步通知。

        Raises:
            AuthenticationFailure: 验签失败（不查询订单）。
            InvalidNotification / MalformedIdentifier: 报文不合法。
            OrderNotFound: 订单不存在或已停用。
            TransientStorageFailure: 存储异常，已整体回滚。
        """
        authenticate_notification(payload, self.server_key)
        event = parse_event(payload)
        return self.reconcile(event)

    def sync_from_gateway(self, correlation_id: str) -> Optional[ReconcileResult]:
        """
        主动向网关查询交易状态并走同一条对账链路（补偿漏掉的通知）。

        网关查询结果同样带签名，照常验签。交易不存在返回 None。
        """
        data = self.gateway.get_transaction_status(correlation_id)
        if data is None:
            logger.info("网关无此交易，跳过同步: %s", correlation_id)
            return None
        return self.handle_notification(data)

    def sync_order(self, order_number: str) -> Optional[ReconcileResult]:
        """按订单最近一次发起的关联号同步支付状态。"""
        with self.store.session() as s:
            order = s.require_order(order_number)
        if not order.current_payment_id:
            return None
        return self.sync_from_gateway(order.current_payment_id)

    # ── 对账 ──────────────────────────────────────────────

    def reconcile(self, event: PaymentEvent) -> ReconcileResult:
        """对已验签、已解析的事件执行对账，整个过程一个事务。"""
        tolerance = self._current_tolerance()
        kind = log_kind_for(event)
        txn_status = event.transaction_status.value

        with self.store.transaction() as s:
            # 1. 幂等检查
            if kind is not None:
                existing = s.find_payment_log(event.gateway_transaction_id, kind)
                if existing is not None:
                    order = s.get_order(event.order_number)
                    logger.info(
                        "重复通知已忽略: correlation_id=%s, transaction_id=%s, kind=%s",
                        event.correlation_id, event.gateway_transaction_id, kind.value,
                    )
                    return ReconcileResult(
                        action=Action.DUPLICATE,
                        order_number=event.order_number,
                        transaction_status=txn_status,
                        order_status=order.status if order else None,
                        amount_paid=order.amount_paid if order else None,
                        reason="duplicate",
                    )

            # 2. 加载订单
            order = s.require_order(event.order_number)
            decision = decide(
                order.status, order.amount_paid, order.total, event, tolerance
            )

            effects = None
            if decision.action == Action.APPLY:
                effects = self._apply(s, order, event, decision)
            elif decision.action in (Action.HOLD, Action.REVIEW):
                s.record_review(order.id, event, decision.reason)
                if decision.action == Action.REVIEW:
                    s.mark_needs_review(order.id)
                logger.warning(
                    "支付事件转人工复核: order=%s, transaction_id=%s, reason=%s, gross=%s",
                    order.order_number, event.gateway_transaction_id,
                    decision.reason, event.gross_amount,
                )
            else:
                logger.info(
                    "支付事件无需处理: order=%s, status=%s, transaction_status=%s, reason=%s",
                    order.order_number, order.status.value, txn_status, decision.reason,
                )

        if decision.action == Action.APPLY:
            logger.info(
                "订单 %s 对账完成: %s -> %s, amount_paid %s -> %s (%s, stage=%s)",
                order.order_number, order.status.value, decision.status.value,
                order.amount_paid, decision.amount_paid, txn_status, event.stage.value,
            )

        return ReconcileResult(
            action=decision.action,
            order_number=order.order_number,
            transaction_status=txn_status,
            order_status=decision.status,
            amount_paid=decision.amount_paid,
            reason=decision.reason,
            effects=effects,
        )

    def _apply(
        self,
        s: LedgerSession,
        order: Order,
        event: PaymentEvent,
        decision: Decision,
    ) -> Optional[FundingEffects]:
        """写流水 → 更新订单 → 付清副作用，顺序固定。"""
        s.append_payment_log(PaymentLog(
            order_id=order.id,
            stage=event.stage,
            kind=decision.log_kind,
            transaction_status=event.transaction_status.value,
            fraud_status=event.fraud_status.value if event.fraud_status else None,
            amount=decision.credited,
            gross_amount=event.gross_amount,
            payment_method=map_payment_type(event.payment_type),
            gateway_transaction_id=event.gateway_transaction_id,
            correlation_id=event.correlation_id,
            paid_at=event.settlement_time or event.transaction_time,
        ))

        if decision.log_kind == LogKind.CREDIT:
            s.update_order_payment(
                order.id,
                decision.status,
                decision.amount_paid,
                order.total,
                fully_paid_now=decision.fire_side_effects,
            )
            if order.current_payment_id == event.correlation_id:
                s.set_current_payment_id(order.id, None)
        else:
            s.update_order_status(order.id, decision.status)

        if decision.fire_side_effects:
            return self.dispatcher.dispatch_full_funding(s, order)
        return None
