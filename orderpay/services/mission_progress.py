"""
任务进度评估（纯函数）。

- 进度只增不减，负数贡献忽略
- 达成状态单向：一旦达成，后续贡献不会重置
- 进度百分比四舍五入取整，封顶 100；目标值为 0 时恒为 0
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


@dataclass(frozen=True)
class ProgressResult:
    new_progress: Decimal
    achieved: bool
    newly_achieved: bool
    progress_percentage: int


def progress_percentage(current_progress: Decimal, target_value: Decimal) -> int:
    if target_value <= 0:
        return 0
    pct = min(Decimal(current_progress) / Decimal(target_value) * 100, Decimal(100))
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def evaluate(
    current_progress: Decimal,
    contribution: Decimal,
    target_value: Decimal,
    already_achieved: bool = False,
) -> ProgressResult:
    """计算一次贡献后的任务进度与达成状态。"""
    current = Decimal(current_progress)
    new_progress = current + max(Decimal(contribution), Decimal(0))
    achieved = already_achieved or new_progress >= Decimal(target_value)
    return ProgressResult(
        new_progress=new_progress,
        achieved=achieved,
        newly_achieved=achieved and not already_achieved,
        progress_percentage=progress_percentage(new_progress, target_value),
    )
