"""推荐码生成与佣金/折扣计算（纯函数）。"""

import re
import secrets
from decimal import ROUND_HALF_UP, Decimal

REFERRAL_PREFIX = "BMM"
REFERRAL_LENGTH = 6
# 去掉易混淆字符 I/O/0/1
REFERRAL_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_REFERRAL_RE = re.compile(rf"^{REFERRAL_PREFIX}[A-Z0-9]{{{REFERRAL_LENGTH}}}$")

CENT = Decimal("0.01")


def generate_referral_code() -> str:
    """生成推荐码，格式 BMM + 6 位字符，例如 BMMA7K9Q2。"""
    suffix = "".join(
        secrets.choice(REFERRAL_ALPHABET) for _ in range(REFERRAL_LENGTH)
    )
    return REFERRAL_PREFIX + suffix


def is_valid_referral_code(code: str) -> bool:
    return bool(code) and bool(_REFERRAL_RE.match(code))


def commission(order_total: Decimal, rate_percent: Decimal) -> Decimal:
    """推荐佣金 = 订单总额 × 比例 / 100，保留两位小数（四舍五入）。"""
    if order_total <= 0 or rate_percent <= 0:
        return Decimal("0.00")
    return (Decimal(order_total) * Decimal(rate_percent) / 100).quantize(
        CENT, rounding=ROUND_HALF_UP
    )


def discount(order_total: Decimal, rate_percent: Decimal) -> Decimal:
    """用户全局折扣金额，算法同佣金。"""
    return commission(order_total, rate_percent)
