"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM；网关通知入参使用 pydantic 严格校验。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── 枚举 ──────────────────────────────────────────────────


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PROCESSING = "PROCESSING"
    READY_TO_SHIP = "READY_TO_SHIP"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# 正向履约顺序，下标即先后关系
FULFILLMENT_ORDER = [
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PROCESSING,
    OrderStatus.READY_TO_SHIP,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]

# 吸收态：正常处理下不可离开
ABSORBING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


class PaymentStage(str, Enum):
    """结算阶段：定金 / 全款 / 尾款。"""

    DOWN = "DP"
    FULL = "FULL"
    CLEARANCE = "CLR"


class TransactionStatus(str, Enum):
    CAPTURE = "capture"
    SETTLEMENT = "settlement"
    PENDING = "pending"
    CANCEL = "cancel"
    DENY = "deny"
    EXPIRE = "expire"
    FAILURE = "failure"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"


class FraudStatus(str, Enum):
    ACCEPT = "accept"
    CHALLENGE = "challenge"
    DENY = "deny"


class LogKind(str, Enum):
    """支付流水类型，与网关交易号共同构成幂等键。"""

    CREDIT = "CREDIT"
    CANCEL = "CANCEL"
    REFUND = "REFUND"


class MissionType(str, Enum):
    ORDER_COUNT = "ORDER_COUNT"
    ORDER_VALUE = "ORDER_VALUE"
    REFERRAL_COUNT = "REFERRAL_COUNT"
    REFERRAL_EARNINGS = "REFERRAL_EARNINGS"


class RewardType(str, Enum):
    REFERRAL_PERCENTAGE = "REFERRAL_PERCENTAGE"
    GLOBAL_DISCOUNT = "GLOBAL_DISCOUNT"
    BOTH = "BOTH"


# ── 持久化实体 ────────────────────────────────────────────


@dataclass
class User:
    id: int
    phone_number: str
    referral_code: str
    name: Optional[str] = None
    role: str = "CUSTOMER"
    referrer_id: Optional[int] = None
    referral_rate: Decimal = Decimal("3")
    discount_rate: Decimal = Decimal("0")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Statistics:
    user_id: int
    total_orders: int = 0
    total_spent: Decimal = Decimal("0")
    total_referrals: int = 0
    total_referral_earnings: Decimal = Decimal("0")
    available_balance: Decimal = Decimal("0")


@dataclass
class Mission:
    id: int
    title: str
    type: MissionType
    target_value: Decimal
    reward_type: RewardType
    reward_value: Decimal = Decimal("0")
    description: Optional[str] = None
    icon: Optional[str] = None
    active: int = 1
    created_at: Optional[datetime] = None


@dataclass
class UserMission:
    user_id: int
    mission_id: int
    current_progress: Decimal = Decimal("0")
    achieved: bool = False
    achieved_at: Optional[datetime] = None


@dataclass
class OrderProduct:
    name: str
    price: Decimal
    quantity: int = 1
    downpayment_percentage: Decimal = Decimal("0")
    id: Optional[int] = None

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class Order:
    id: int
    order_number: str
    user_id: int
    total: Decimal
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    discount: Decimal = Decimal("0")
    amount_paid: Decimal = Decimal("0")
    remaining_balance: Decimal = Decimal("0")
    affiliate_commission: Decimal = Decimal("0")
    company_id: Optional[int] = None
    needs_review: int = 0
    current_payment_id: Optional[str] = None
    enabled: int = 1
    products: list[OrderProduct] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


@dataclass
class PaymentLog:
    order_id: int
    stage: PaymentStage
    kind: LogKind
    transaction_status: str
    amount: Decimal
    gross_amount: Decimal
    gateway_transaction_id: str
    correlation_id: str
    fraud_status: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


# ── 网关通知 ──────────────────────────────────────────────


class MidtransNotification(BaseModel):
    """网关异步通知报文，字段名与网关一致，未知字段忽略。"""

    model_config = ConfigDict(extra="ignore")

    order_id: str = Field(min_length=1)
    status_code: str = Field(min_length=1)
    gross_amount: str = Field(min_length=1)
    signature_key: str = Field(min_length=1)
    transaction_status: TransactionStatus
    transaction_id: str = Field(min_length=1)
    fraud_status: Optional[FraudStatus] = None
    payment_type: Optional[str] = None
    transaction_time: Optional[str] = None
    settlement_time: Optional[str] = None

    @field_validator("gross_amount")
    @classmethod
    def _gross_amount_is_decimal(cls, v: str) -> str:
        try:
            amount = Decimal(v)
        except InvalidOperation:
            raise ValueError("gross_amount 不是合法金额")
        if not amount.is_finite() or amount < 0:
            raise ValueError("gross_amount 不是合法金额")
        return v


@dataclass(frozen=True)
class PaymentEvent:
    """校验、验签、解析之后的强类型支付事件，状态机只接受此类型。"""

    correlation_id: str
    order_number: str
    stage: PaymentStage
    transaction_status: TransactionStatus
    gross_amount: Decimal
    gateway_transaction_id: str
    fraud_status: Optional[FraudStatus] = None
    payment_type: Optional[str] = None
    transaction_time: Optional[str] = None
    settlement_time: Optional[str] = None
