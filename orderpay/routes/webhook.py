"""
网关通知路由：POST /v1/webhook/midtrans

接收 Midtrans 异步通知，验签后交给 PaymentReconciler 对账。
返回码决定网关是否重投：2xx 不再重投，5xx 会重投，4xx 视为永久失败。
"""

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from orderpay.services.ledger_store import OrderNotFound, TransientStorageFailure
from orderpay.services.reconciler import InvalidNotification, PaymentReconciler
from orderpay.services.sign import AuthenticationFailure
from orderpay.services.transaction_id import MalformedIdentifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhook")


def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@router.post("/midtrans")
async def midtrans_notification(request: Request):
    """
    处理网关通知。

    流程：解析 JSON → 验签 → 报文校验 → 关联号解析 → 对账
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _fail(400, "请求体不是合法 JSON")
    if not isinstance(payload, dict):
        return _fail(400, "请求体必须是 JSON 对象")

    logger.info(
        "收到网关通知: order_id=%s, transaction_status=%s, transaction_id=%s",
        payload.get("order_id"), payload.get("transaction_status"), payload.get("transaction_id"),
    )

    try:
        result = PaymentReconciler().handle_notification(payload)
    except AuthenticationFailure:
        return _fail(403, "签名验证失败")
    except (InvalidNotification, MalformedIdentifier) as e:
        return _fail(400, str(e))
    except OrderNotFound as e:
        return _fail(404, str(e))
    except TransientStorageFailure:
        return _fail(500, "存储异常，请稍后重试")
    except ValueError as e:
        # 服务端密钥未配置
        logger.error("通知处理配置错误: %s", e)
        return _fail(500, "服务端配置错误")

    return JSONResponse(content=result.to_response())


@router.get("/midtrans")
async def midtrans_health():
    """网关配置页面的连通性检查。"""
    return {"success": True, "message": "Midtrans webhook endpoint is active"}
