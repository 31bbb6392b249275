"""用户服务模块：注册（推荐码、统计、任务进度初始化）及个人中心只读视图。"""

import logging
from decimal import Decimal

from orderpay.models.schemas import User
from orderpay.services.ledger_store import LedgerStore
from orderpay.services.mission_progress import progress_percentage
from orderpay.services.platform_config import get_app_url, get_default_referral_rate
from orderpay.services.referral import generate_referral_code, is_valid_referral_code

logger = logging.getLogger(__name__)


class UserNotFound(Exception):
    pass


def _money(value) -> str:
    return str(value)


class UserService:
    """用户服务：注册、个人资料、推广数据、任务列表、订单列表。"""

    def __init__(self, store: LedgerStore | None = None):
        self.store = store or LedgerStore()

    def register_user(
        self,
        phone_number: str,
        name: str | None = None,
        referral_code: str | None = None,
    ) -> User:
        """
        注册用户：分配唯一推荐码，绑定推荐人，创建统计记录，
        并为所有启用中的任务建立进度记录。全部在一个事务内完成。

        无效或不存在的推荐码忽略，不阻止注册。

        Raises:
            ValueError: 手机号已注册。
        """
        rate = get_default_referral_rate()

        with self.store.transaction() as s:
            if s.get_user_by_phone(phone_number) is not None:
                raise ValueError(f"手机号 '{phone_number}' 已注册")

            referrer_id = None
            if referral_code:
                code = referral_code.strip().upper()
                referrer = s.get_user_by_referral_code(code) if is_valid_referral_code(code) else None
                if referrer is None:
                    logger.warning("推荐码无效，忽略: %r", referral_code)
                else:
                    referrer_id = referrer.id

            own_code = None
            for _ in range(10):
                candidate = generate_referral_code()
                if s.get_user_by_referral_code(candidate) is None:
                    own_code = candidate
                    break
            if own_code is None:
                raise ValueError("无法生成唯一推荐码，请重试")

            user = User(
                id=0,
                phone_number=phone_number,
                referral_code=own_code,
                name=name,
                referrer_id=referrer_id,
                referral_rate=rate,
            )
            user.id = s.insert_user(user)
            s.create_statistics(user.id)
            for mission in s.list_missions(active_only=True):
                s.create_user_mission(user.id, mission.id)

        logger.info(
            "用户注册成功: user_id=%d, referral_code=%s, referrer_id=%s",
            user.id, user.referral_code, referrer_id,
        )
        return user

    def get_profile(self, user_id: int) -> dict:
        with self.store.session() as s:
            user = s.get_user(user_id)
            if user is None:
                raise UserNotFound(f"用户不存在: {user_id}")
            stats = s.get_statistics(user_id)

        return {
            "id": user.id,
            "name": user.name,
            "phoneNumber": user.phone_number,
            "role": user.role,
            "referralCode": user.referral_code,
            "referralRate": _money(user.referral_rate),
            "discountRate": _money(user.discount_rate),
            "createdAt": user.created_at,
            "statistics": {
                "totalOrders": stats.total_orders,
                "totalSpent": _money(stats.total_spent),
                "totalReferrals": stats.total_referrals,
                "totalReferralEarnings": _money(stats.total_referral_earnings),
                "availableBalance": _money(stats.available_balance),
            },
        }

    def get_affiliate(self, user_id: int) -> dict:
        """推广数据：推荐码、推广链接、佣金比例、累计收益、被推荐用户的订单。"""
        with self.store.session() as s:
            user = s.get_user(user_id)
            if user is None:
                raise UserNotFound(f"用户不存在: {user_id}")
            stats = s.get_statistics(user_id)
            rows = s.list_referred_orders(user_id)
            orders = []
            for row in rows:
                products = s.get_order_products(row["id"])
                orders.append({
                    "orderNumber": row["order_number"],
                    "status": row["status"],
                    "total": _money(row["total"]),
                    "affiliateCommission": _money(row["affiliate_commission"]),
                    "customerName": row["customer_name"],
                    "customerPhone": row["customer_phone"],
                    "products": [
                        {"name": p.name, "quantity": p.quantity, "subtotal": _money(p.subtotal)}
                        for p in products
                    ],
                    "createdAt": row["created_at"],
                })

        return {
            "referralCode": user.referral_code,
            "referralLink": f"{get_app_url()}/ref/{user.referral_code}",
            "commissionRate": _money(user.referral_rate),
            "totalReferrals": stats.total_referrals,
            "totalEarnings": _money(stats.total_referral_earnings),
            "availableBalance": _money(stats.available_balance),
            "affiliatedOrders": orders,
        }

    def get_missions(self, user_id: int) -> list[dict]:
        """
        任务列表及进度。

        排序：未完成在前（按任务创建时间正序），已完成在后（按完成时间倒序）。
        """
        with self.store.session() as s:
            missions = s.list_missions(active_only=True)
            progress = s.list_user_missions(user_id)

        items = []
        for m in missions:
            um = progress.get(m.id)
            current = um.current_progress if um else Decimal("0")
            achieved = um.achieved if um else False
            items.append({
                "id": m.id,
                "title": m.title,
                "description": m.description,
                "type": m.type.value,
                "targetValue": _money(m.target_value),
                "rewardType": m.reward_type.value,
                "rewardValue": _money(m.reward_value),
                "icon": m.icon,
                "currentProgress": _money(current),
                "progressPercentage": progress_percentage(current, m.target_value),
                "isCompleted": achieved,
                "completedAt": um.achieved_at if um else None,
                "createdAt": m.created_at,
            })

        incomplete = [i for i in items if not i["isCompleted"]]
        completed = [i for i in items if i["isCompleted"]]
        incomplete.sort(key=lambda i: (i["createdAt"] or "", i["id"]))
        completed.sort(key=lambda i: i["completedAt"] or "", reverse=True)
        return incomplete + completed

    def list_orders(self, user_id: int) -> list[dict]:
        with self.store.session() as s:
            orders = s.list_orders_by_user(user_id)
        return [
            {
                "orderNumber": o.order_number,
                "status": o.status.value,
                "total": _money(o.total),
                "discount": _money(o.discount),
                "amountPaid": _money(o.amount_paid),
                "remainingBalance": _money(o.remaining_balance),
                "needsReview": bool(o.needs_review),
                "createdAt": o.created_at,
                "paidAt": o.paid_at,
            }
            for o in orders
        ]
