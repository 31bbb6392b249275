"""
平台配置服务：管理 system_config 表的读写，以及环境变量配置项。

运行时可调的参数（超额入账容差、默认推荐佣金比例）存放在 system_config 表，
未配置时回退到环境变量和默认值；网关密钥只从环境变量读取。
"""

import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation

from orderpay.database import get_db

logger = logging.getLogger(__name__)

DEFAULT_REFERRAL_RATE = Decimal("3")
DEFAULT_APP_URL = "https://bmmparts.co.id"


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        existing = db.execute(
            "SELECT id FROM system_config WHERE config_key = ?", (key,)
        ).fetchone()
        if existing:
            db.execute(
                "UPDATE system_config SET config_value = ?, updated_at = ? WHERE config_key = ?",
                (value, now, key),
            )
        else:
            db.execute(
                "INSERT INTO system_config (config_key, config_value, updated_at) VALUES (?, ?, ?)",
                (key, value, now),
            )
        db.commit()
    finally:
        db.close()


def _decimal_setting(key: str, env_name: str, default: Decimal) -> Decimal:
    """按 system_config → 环境变量 → 默认值的顺序读取金额/比例类配置。"""
    raw = get_config(key)
    if raw is None or raw == "":
        raw = os.getenv(env_name)
    if raw is None or raw == "":
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        logger.warning("配置项 %s 值无效 (%r)，使用默认值 %s", key, raw, default)
        return default
    if not value.is_finite() or value < 0:
        logger.warning("配置项 %s 必须是非负有限值 (%r)，使用默认值 %s", key, raw, default)
        return default
    return value


# ── 网关 ──────────────────────────────────────────────────


def get_server_key() -> str:
    """网关服务端密钥，用于通知验签和 API 认证。"""
    return os.getenv("MIDTRANS_SERVER_KEY", "")


def is_production() -> bool:
    return os.getenv("MIDTRANS_ENV", "sandbox") == "production"


# ── 对账参数 ──────────────────────────────────────────────


def get_overcredit_tolerance() -> Decimal:
    """累计入账允许超过订单总额的容差，超过即转人工复核。默认 0。"""
    return _decimal_setting("overcredit_tolerance", "OVERCREDIT_TOLERANCE", Decimal("0"))


def set_overcredit_tolerance(value: Decimal) -> None:
    if not value.is_finite():
        raise PlatformConfigError("容差不是合法金额")
    if value < 0:
        raise PlatformConfigError("容差不能为负数")
    set_config("overcredit_tolerance", str(value))


def get_default_referral_rate() -> Decimal:
    """新注册用户的默认推荐佣金比例（百分比）。"""
    return _decimal_setting("default_referral_rate", "DEFAULT_REFERRAL_RATE", DEFAULT_REFERRAL_RATE)


def get_app_url() -> str:
    return os.getenv("APP_URL", DEFAULT_APP_URL).rstrip("/")
