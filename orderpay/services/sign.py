"""网关通知 SHA512 签名生成与验证模块。"""

import hashlib
import hmac


class AuthenticationFailure(Exception):
    """通知签名校验失败，事件直接丢弃。"""
    pass


def generate_signature(
    order_id: str, status_code: str, gross_amount: str, server_key: str
) -> str:
    """
    生成网关通知签名。

    按 order_id + status_code + gross_amount + server_key 顺序直接拼接（无分隔符），
    SHA512 后返回小写 128 位十六进制字符串。字段取网关原始字符串，不做格式化。
    """
    sign_str = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(sign_str.encode("utf-8")).hexdigest()


def verify_signature(
    order_id: str,
    status_code: str,
    gross_amount: str,
    signature_key: str,
    server_key: str,
) -> bool:
    """验证通知签名是否正确（常量时间比较）。"""
    expected = generate_signature(order_id, status_code, gross_amount, server_key)
    return hmac.compare_digest(expected, (signature_key or "").lower())


def authenticate_notification(payload: dict, server_key: str) -> None:
    """
    校验原始通知报文的签名。

    签名失败时不区分订单是否存在，统一抛出 AuthenticationFailure。

    Raises:
        AuthenticationFailure: 缺少签名字段或签名不匹配。
        ValueError: 未配置 server_key。
    """
    if not server_key:
        raise ValueError("未配置 MIDTRANS_SERVER_KEY")

    fields = ("order_id", "status_code", "gross_amount", "signature_key")
    values = [payload.get(k) for k in fields]
    if any(not isinstance(v, str) or v == "" for v in values):
        raise AuthenticationFailure("签名字段缺失")

    if not verify_signature(*values, server_key):
        raise AuthenticationFailure("签名错误")
