"""
管理后台路由（需要 ADMIN 角色）：履约状态推进、支付流水审计、对账参数设置。
"""

from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from orderpay.models.schemas import OrderStatus
from orderpay.services.auth import get_current_admin
from orderpay.services.ledger_store import LedgerStore, OrderNotFound
from orderpay.services.order_service import OrderService, OrderStateError
from orderpay.services.platform_config import (
    PlatformConfigError,
    get_overcredit_tolerance,
    set_overcredit_tolerance,
)

router = APIRouter(prefix="/v1/admin")


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class SettingsRequest(BaseModel):
    overcredit_tolerance: str


@router.patch("/orders/{order_number}/status")
async def update_order_status(
    order_number: str, body: UpdateStatusRequest, admin: dict = Depends(get_current_admin)
):
    """履约推进（逐级前进）或取消订单。"""
    try:
        order = OrderService().advance_status(order_number, body.status)
    except OrderNotFound as e:
        return JSONResponse(status_code=404, content={"success": False, "message": str(e)})
    except OrderStateError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})
    return JSONResponse(content={
        "success": True,
        "data": {"orderNumber": order.order_number, "status": order.status.value},
    })


@router.get("/orders/{order_number}/payments")
async def order_payments(order_number: str, admin: dict = Depends(get_current_admin)):
    """订单支付审计：金额汇总、全部支付流水和待复核事件。"""
    with LedgerStore().session() as s:
        order = s.get_order(order_number)
        if order is None:
            return JSONResponse(
                status_code=404,
                content={"success": False, "message": f"订单不存在: {order_number}"},
            )
        logs = s.list_payment_logs(order.id)
        reviews = s.list_reviews(order.id)

    return JSONResponse(content={
        "success": True,
        "data": {
            "orderNumber": order.order_number,
            "status": order.status.value,
            "total": str(order.total),
            "amountPaid": str(order.amount_paid),
            "remainingBalance": str(order.remaining_balance),
            "affiliateCommission": str(order.affiliate_commission),
            "needsReview": bool(order.needs_review),
            "payments": [
                {
                    "stage": log.stage.value,
                    "kind": log.kind.value,
                    "transactionStatus": log.transaction_status,
                    "fraudStatus": log.fraud_status,
                    "amount": str(log.amount),
                    "grossAmount": str(log.gross_amount),
                    "paymentMethod": log.payment_method,
                    "transactionId": log.gateway_transaction_id,
                    "correlationId": log.correlation_id,
                    "paidAt": log.paid_at,
                    "createdAt": log.created_at,
                }
                for log in logs
            ],
            "reviews": [
                {
                    "transactionId": r["gateway_transaction_id"],
                    "correlationId": r["correlation_id"],
                    "stage": r["stage"],
                    "transactionStatus": r["transaction_status"],
                    "fraudStatus": r["fraud_status"],
                    "grossAmount": str(r["gross_amount"]),
                    "reason": r["reason"],
                    "resolved": bool(r["resolved"]),
                    "createdAt": r["created_at"],
                }
                for r in reviews
            ],
        },
    })


@router.get("/settings")
async def get_settings(admin: dict = Depends(get_current_admin)):
    return {"success": True, "data": {"overcredit_tolerance": str(get_overcredit_tolerance())}}


@router.post("/settings")
async def save_settings(body: SettingsRequest, admin: dict = Depends(get_current_admin)):
    """保存对账参数：超额入账容差。"""
    try:
        value = Decimal(body.overcredit_tolerance)
    except InvalidOperation:
        value = None
    if value is None or not value.is_finite():
        return JSONResponse(status_code=400, content={"success": False, "message": "容差不是合法金额"})
    try:
        set_overcredit_tolerance(value)
    except PlatformConfigError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})
    return {"success": True, "message": "设置已保存"}
