"""
用户接口路由（需要 Bearer JWT）：个人资料、推广数据、任务、订单、发起付款、同步支付状态。
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from orderpay.services.auth import get_current_user
from orderpay.services.ledger_store import LedgerStore, OrderNotFound, TransientStorageFailure
from orderpay.services.midtrans_client import GatewayClientError
from orderpay.services.order_service import OrderService, OrderStateError
from orderpay.services.reconciler import InvalidNotification, PaymentReconciler
from orderpay.services.sign import AuthenticationFailure
from orderpay.services.transaction_id import MalformedIdentifier
from orderpay.services.user_service import UserNotFound, UserService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/user")


def _ok(data, message: str = "OK") -> JSONResponse:
    return JSONResponse(content={"success": True, "message": message, "data": data})


def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@router.get("/profile")
async def profile(actor: dict = Depends(get_current_user)):
    try:
        return _ok(UserService().get_profile(actor["user_id"]))
    except UserNotFound as e:
        return _fail(404, str(e))


@router.get("/affiliate")
async def affiliate(actor: dict = Depends(get_current_user)):
    try:
        return _ok(UserService().get_affiliate(actor["user_id"]))
    except UserNotFound as e:
        return _fail(404, str(e))


@router.get("/missions")
async def missions(actor: dict = Depends(get_current_user)):
    return _ok(UserService().get_missions(actor["user_id"]))


@router.get("/orders")
async def orders(actor: dict = Depends(get_current_user)):
    return _ok(UserService().list_orders(actor["user_id"]))


@router.post("/orders/{order_number}/payment")
async def create_payment(order_number: str, actor: dict = Depends(get_current_user)):
    """为订单发起下一笔付款（定金 / 全款 / 尾款），返回网关 Snap 令牌。"""
    try:
        data = OrderService().request_payment(order_number, actor["user_id"])
    except OrderNotFound as e:
        return _fail(404, str(e))
    except OrderStateError as e:
        return _fail(400, str(e))
    except GatewayClientError as e:
        logger.error("创建支付令牌失败: order=%s, %s", order_number, e)
        return _fail(502, str(e))
    return _ok(data, "支付令牌创建成功")


@router.post("/orders/{order_number}/sync")
async def sync_payment(order_number: str, actor: dict = Depends(get_current_user)):
    """主动向网关查询最近一次付款的状态并对账（补偿漏掉的通知）。"""
    with LedgerStore().session() as s:
        order = s.get_order(order_number)
    if order is None or order.user_id != actor["user_id"]:
        return _fail(404, f"订单不存在: {order_number}")

    try:
        result = PaymentReconciler().sync_order(order_number)
    except OrderNotFound as e:
        return _fail(404, str(e))
    except GatewayClientError as e:
        logger.error("同步支付状态失败: order=%s, %s", order_number, e)
        return _fail(502, str(e))
    except (AuthenticationFailure, InvalidNotification, MalformedIdentifier) as e:
        logger.error("网关查询结果无法对账: order=%s, %s", order_number, e)
        return _fail(502, "网关返回数据无效")
    except TransientStorageFailure:
        return _fail(500, "存储异常，请稍后重试")

    if result is None:
        return _ok({"orderNumber": order_number, "action": "none"}, "没有待同步的付款")
    return _ok(result.to_response(), "同步完成")
