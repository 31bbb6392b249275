"""
Midtrans 网关 API 客户端：使用服务端密钥 Basic 认证调用网关接口。

主要功能：
- 查询交易状态（补偿漏掉的异步通知，返回报文与通知同构、同样带签名）
- 创建 Snap 支付令牌（发起分阶段付款）
- 网关支付方式 → 内部支付方式映射
"""

import base64
import json
import logging
import math
from decimal import Decimal

import httpx

logger = logging.getLogger(__name__)

SANDBOX_API_URL = "https://api.sandbox.midtrans.com/v2"
PRODUCTION_API_URL = "https://api.midtrans.com/v2"
SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
PRODUCTION_SNAP_URL = "https://app.midtrans.com/snap/v1/transactions"


class GatewayClientError(Exception):
    """网关客户端异常。"""
    pass


def map_payment_type(payment_type: str | None) -> str:
    """网关 payment_type → 内部支付方式。"""
    if not payment_type:
        return "OTHER"
    pt = payment_type.lower()
    if pt == "credit_card":
        return "CREDIT_CARD"
    if pt == "bank_transfer":
        return "BANK_TRANSFER"
    if "va" in pt or "virtual_account" in pt:
        return "VIRTUAL_ACCOUNT"
    if pt == "qris":
        return "QRIS"
    if "gopay" in pt or "shopeepay" in pt or "wallet" in pt:
        return "E_WALLET"
    return "OTHER"


class MidtransClient:
    """Midtrans Core/Snap API 客户端。"""

    def __init__(self, server_key: str, production: bool = False):
        """
        Args:
            server_key: 网关服务端密钥。
            production: True 使用生产环境地址，否则使用沙箱。
        """
        if not server_key:
            raise GatewayClientError("未配置 MIDTRANS_SERVER_KEY")
        self._server_key = server_key
        self.api_url = PRODUCTION_API_URL if production else SANDBOX_API_URL
        self.snap_url = PRODUCTION_SNAP_URL if production else SANDBOX_SNAP_URL

    def _headers(self) -> dict:
        token = base64.b64encode(f"{self._server_key}:".encode("utf-8")).decode("utf-8")
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def get_transaction_status(self, correlation_id: str) -> dict | None:
        """
        查询交易状态。

        Returns:
            网关返回的交易报文（字段同异步通知）；交易不存在返回 None。

        Raises:
            GatewayClientError: 请求失败或响应无法解析。
        """
        if not correlation_id:
            return None

        url = f"{self.api_url}/{correlation_id}/status"
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise GatewayClientError(f"请求网关接口失败: {e}")

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise GatewayClientError(f"网关接口返回错误: HTTP {response.status_code}")

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise GatewayClientError(f"解析网关响应失败: {e}")

        # 网关对不存在的交易也可能返回 HTTP 200 + status_code "404"
        if str(data.get("status_code")) == "404":
            return None
        return data

    def create_snap_token(
        self,
        correlation_id: str,
        amount: Decimal,
        customer: dict | None = None,
        items: list[dict] | None = None,
    ) -> dict:
        """
        创建 Snap 支付令牌。

        网关要求金额为整数，向上取整。

        Returns:
            {"token": ..., "redirect_url": ...}

        Raises:
            GatewayClientError: 请求失败或网关拒绝。
        """
        body = {
            "transaction_details": {
                "order_id": correlation_id,
                "gross_amount": math.ceil(amount),
            },
            "credit_card": {"secure": True},
        }
        if customer:
            body["customer_details"] = customer
        if items:
            body["item_details"] = items

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(self.snap_url, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            raise GatewayClientError(f"请求网关接口失败: {e}")

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            data = {}

        if response.status_code >= 400:
            messages = data.get("error_messages") or []
            msg = messages[0] if messages else f"HTTP {response.status_code}"
            raise GatewayClientError(f"创建支付令牌失败: {msg}")

        if not data.get("token"):
            raise GatewayClientError("网关响应缺少 token 字段")

        logger.info("支付令牌创建成功: correlation_id=%s, amount=%s", correlation_id, amount)
        return {"token": data["token"], "redirect_url": data.get("redirect_url", "")}
