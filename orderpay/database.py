"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/orderpay.db")

# 写锁等待时间（秒），并发对账时后到的写事务阻塞等待而不是直接失败
BUSY_TIMEOUT = 30.0


def get_db(path: str | None = None) -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(path or DB_PATH, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(128),
    phone_number    VARCHAR(32)  NOT NULL UNIQUE,
    role            VARCHAR(16)  DEFAULT 'CUSTOMER',
    referral_code   VARCHAR(16)  NOT NULL UNIQUE,
    referrer_id     INTEGER      REFERENCES users(id),
    referral_rate   DECIMAL(5,2) DEFAULT 3,
    discount_rate   DECIMAL(5,2) DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS user_statistics (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL UNIQUE REFERENCES users(id),
    total_orders    INTEGER      DEFAULT 0,
    total_spent     DECIMAL(14,2) DEFAULT 0,
    total_referrals INTEGER      DEFAULT 0,
    total_referral_earnings DECIMAL(14,2) DEFAULT 0,
    available_balance DECIMAL(14,2) DEFAULT 0,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS missions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    title           VARCHAR(128) NOT NULL,
    description     TEXT,
    type            VARCHAR(32)  NOT NULL,
    target_value    DECIMAL(14,2) NOT NULL,
    reward_type     VARCHAR(32)  NOT NULL,
    reward_value    DECIMAL(5,2) DEFAULT 0,
    icon            VARCHAR(64),
    active          INTEGER      DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS user_missions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL REFERENCES users(id),
    mission_id      INTEGER      NOT NULL REFERENCES missions(id),
    current_progress DECIMAL(14,2) DEFAULT 0,
    achieved        INTEGER      DEFAULT 0,
    achieved_at     DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    UNIQUE (user_id, mission_id)
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number    VARCHAR(64)  NOT NULL UNIQUE,
    user_id         INTEGER      NOT NULL REFERENCES users(id),
    company_id      INTEGER,
    status          VARCHAR(32)  NOT NULL DEFAULT 'PENDING_PAYMENT',
    total           DECIMAL(14,2) NOT NULL,
    discount        DECIMAL(14,2) DEFAULT 0,
    amount_paid     DECIMAL(14,2) DEFAULT 0,
    remaining_balance DECIMAL(14,2) NOT NULL,
    affiliate_commission DECIMAL(14,2) DEFAULT 0,
    needs_review    INTEGER      DEFAULT 0,
    current_payment_id VARCHAR(96),
    enabled         INTEGER      DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    paid_at         DATETIME
);

CREATE TABLE IF NOT EXISTS order_products (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    name            VARCHAR(256) NOT NULL,
    quantity        INTEGER      NOT NULL DEFAULT 1,
    price           DECIMAL(14,2) NOT NULL,
    subtotal        DECIMAL(14,2) NOT NULL,
    downpayment_percentage DECIMAL(5,2) DEFAULT 0
);

CREATE TABLE IF NOT EXISTS payment_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    stage           VARCHAR(8)   NOT NULL,
    kind            VARCHAR(8)   NOT NULL,
    transaction_status VARCHAR(32) NOT NULL,
    fraud_status    VARCHAR(16),
    amount          DECIMAL(14,2) NOT NULL DEFAULT 0,
    gross_amount    DECIMAL(14,2) NOT NULL,
    payment_method  VARCHAR(32),
    gateway_transaction_id VARCHAR(96) NOT NULL,
    correlation_id  VARCHAR(96)  NOT NULL,
    paid_at         DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS payment_reviews (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    gateway_transaction_id VARCHAR(96) NOT NULL UNIQUE,
    correlation_id  VARCHAR(96)  NOT NULL,
    stage           VARCHAR(8)   NOT NULL,
    transaction_status VARCHAR(32) NOT NULL,
    fraud_status    VARCHAR(16),
    gross_amount    DECIMAL(14,2) NOT NULL,
    reason          VARCHAR(32)  NOT NULL,
    resolved        INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_order_number
    ON orders(order_number);
CREATE INDEX IF NOT EXISTS idx_orders_user_status
    ON orders(user_id, status);
CREATE INDEX IF NOT EXISTS idx_orders_created_at
    ON orders(created_at);
CREATE INDEX IF NOT EXISTS idx_order_products_order_id
    ON order_products(order_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_logs_txn_kind
    ON payment_logs(gateway_transaction_id, kind);
CREATE INDEX IF NOT EXISTS idx_payment_logs_order_id
    ON payment_logs(order_id);
CREATE INDEX IF NOT EXISTS idx_payment_reviews_order_id
    ON payment_reviews(order_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_users_referral_code
    ON users(referral_code);
CREATE INDEX IF NOT EXISTS idx_users_referrer_id
    ON users(referrer_id);
CREATE INDEX IF NOT EXISTS idx_missions_active_type
    ON missions(active, type);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db(path: str | None = None) -> None:
    """创建数据库目录、表和索引（幂等，可重复调用）。"""
    db_path = path or DB_PATH
    # 确保 data/ 目录存在
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = get_db(db_path)
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        conn.commit()
    finally:
        conn.close()
