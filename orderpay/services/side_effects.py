"""
副作用分发器：订单首次付清时，在对账事务内更新统计、推荐佣金和任务进度。

只由对账器在 amount_paid 首次跨过订单总额时调用，
与订单更新、支付流水写入共享同一个事务，要么全部生效要么全部回滚。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from orderpay.models.schemas import Mission, MissionType, Order, RewardType
from orderpay.services.ledger_store import LedgerSession
from orderpay.services.mission_progress import evaluate
from orderpay.services.referral import commission

logger = logging.getLogger(__name__)


@dataclass
class FundingEffects:
    """一次付清触发的副作用摘要。"""

    order_id: int
    commission: Decimal = Decimal("0")
    referrer_id: int | None = None
    achieved_missions: list[tuple[int, int]] = field(default_factory=list)  # (user_id, mission_id)


class SideEffectDispatcher:
    """付清副作用：下单人统计、推荐人佣金、双方任务进度。"""

    def dispatch_full_funding(self, session: LedgerSession, order: Order) -> FundingEffects:
        """
        订单首次付清时调用。

        1. 下单人 total_orders += 1，total_spent += 订单总额
        2. 下单人 ORDER_COUNT(+1) / ORDER_VALUE(+总额) 任务推进
        3. 若下单人有推荐人：按推荐人当前比例计算佣金，计入推荐人收益与可用余额，
           total_referrals += 1，推进推荐人 REFERRAL_COUNT / REFERRAL_EARNINGS 任务
        """
        effects = FundingEffects(order_id=order.id)

        stats = session.get_statistics(order.user_id)
        stats.total_orders += 1
        stats.total_spent += order.total
        session.save_statistics(stats)

        effects.achieved_missions += self._advance_missions(
            session,
            order.user_id,
            {MissionType.ORDER_COUNT: Decimal(1), MissionType.ORDER_VALUE: order.total},
        )

        owner = session.get_user(order.user_id)
        if owner is None or owner.referrer_id is None:
            return effects

        referrer = session.get_user(owner.referrer_id)
        if referrer is None:
            logger.warning(
                "推荐人不存在，跳过佣金 (order_id=%d, referrer_id=%d)",
                order.id, owner.referrer_id,
            )
            return effects

        amount = commission(order.total, referrer.referral_rate)
        rstats = session.get_statistics(referrer.id)
        rstats.total_referrals += 1
        rstats.total_referral_earnings += amount
        rstats.available_balance += amount
        session.save_statistics(rstats)
        session.set_affiliate_commission(order.id, amount)

        effects.commission = amount
        effects.referrer_id = referrer.id
        logger.info(
            "推荐佣金入账: order_id=%d, referrer_id=%d, rate=%s%%, commission=%s",
            order.id, referrer.id, referrer.referral_rate, amount,
        )

        effects.achieved_missions += self._advance_missions(
            session,
            referrer.id,
            {MissionType.REFERRAL_COUNT: Decimal(1), MissionType.REFERRAL_EARNINGS: amount},
        )
        return effects

    def _advance_missions(
        self,
        session: LedgerSession,
        user_id: int,
        contributions: dict[MissionType, Decimal],
    ) -> list[tuple[int, int]]:
        """推进用户在给定类型上的所有启用任务，返回本次新达成的任务。"""
        achieved = []
        missions = session.list_missions(active_only=True, types=list(contributions))
        for mission in missions:
            contribution = contributions[mission.type]
            if contribution <= 0:
                continue

            um = session.get_user_mission(user_id, mission.id)
            result = evaluate(
                um.current_progress, contribution, mission.target_value, um.achieved
            )
            um.current_progress = result.new_progress
            um.achieved = result.achieved
            if result.newly_achieved:
                um.achieved_at = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            session.save_user_mission(um)

            if result.newly_achieved:
                self._apply_reward(session, user_id, mission)
                achieved.append((user_id, mission.id))
        return achieved

    def _apply_reward(self, session: LedgerSession, user_id: int, mission: Mission) -> None:
        """任务首次达成时发放奖励：提高推荐佣金比例和/或全局折扣。"""
        user = session.get_user(user_id)
        if user is None:
            logger.error("发放任务奖励失败：用户不存在 (user_id=%d)", user_id)
            return

        referral_rate = user.referral_rate
        discount_rate = user.discount_rate
        if mission.reward_type in (RewardType.REFERRAL_PERCENTAGE, RewardType.BOTH):
            referral_rate += mission.reward_value
        if mission.reward_type in (RewardType.GLOBAL_DISCOUNT, RewardType.BOTH):
            discount_rate += mission.reward_value

        session.update_user_rates(user_id, referral_rate, discount_rate)
        logger.info(
            "任务达成奖励已发放: user_id=%d, mission_id=%d, reward=%s(+%s), "
            "referral_rate=%s, discount_rate=%s",
            user_id, mission.id, mission.reward_type.value, mission.reward_value,
            referral_rate, discount_rate,
        )
