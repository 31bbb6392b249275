"""
网关交易关联号解析：{orderNumber}-{stage} → (订单号, 结算阶段)。

订单号本身可能包含 "-"，因此从最后一个分隔符切分。
尾款支付每次会生成新的关联号，允许在阶段之后追加纯数字尝试序号：
{orderNumber}-CLR-{attempt}。
"""

import logging
from dataclasses import dataclass
from typing import Optional

from orderpay.models.schemas import PaymentStage

logger = logging.getLogger(__name__)

SEPARATOR = "-"

# 阶段标记 → 结算阶段（CLEARANCE 为旧版关联号写法）
_STAGE_TOKENS = {
    "DP": PaymentStage.DOWN,
    "FULL": PaymentStage.FULL,
    "CLR": PaymentStage.CLEARANCE,
    "CLEARANCE": PaymentStage.CLEARANCE,
}


class MalformedIdentifier(Exception):
    """关联号缺少分隔符或阶段标记无法识别。"""
    pass


@dataclass(frozen=True)
class TransactionId:
    order_number: str
    stage: PaymentStage
    attempt: Optional[int] = None


def parse_transaction_id(correlation_id: str) -> TransactionId:
    """
    解析网关关联号。

    Raises:
        MalformedIdentifier: 无分隔符、阶段未知或订单号为空。
    """
    if not correlation_id or SEPARATOR not in correlation_id:
        logger.warning("关联号缺少分隔符: %r", correlation_id)
        raise MalformedIdentifier(f"关联号格式错误: {correlation_id!r}")

    head, _, token = correlation_id.rpartition(SEPARATOR)
    attempt = None

    # 尝试序号后缀：ORD-1-CLR-1700000000
    if token.isdigit() and SEPARATOR in head:
        prefix, _, stage_token = head.rpartition(SEPARATOR)
        if stage_token.upper() in _STAGE_TOKENS:
            head, token, attempt = prefix, stage_token, int(token)

    stage = _STAGE_TOKENS.get(token.upper())
    if stage is None:
        logger.warning("关联号阶段无法识别: %r", correlation_id)
        raise MalformedIdentifier(f"未知结算阶段: {token!r}")

    if not head:
        logger.warning("关联号缺少订单号: %r", correlation_id)
        raise MalformedIdentifier(f"关联号缺少订单号: {correlation_id!r}")

    return TransactionId(order_number=head, stage=stage, attempt=attempt)


def build_transaction_id(
    order_number: str, stage: PaymentStage, attempt: Optional[int] = None
) -> str:
    """生成网关关联号，parse_transaction_id 的逆操作。"""
    correlation_id = f"{order_number}{SEPARATOR}{stage.value}"
    if attempt is not None:
        correlation_id += f"{SEPARATOR}{attempt}"
    return correlation_id
