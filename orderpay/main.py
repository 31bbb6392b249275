"""
orderpay 应用入口：FastAPI 应用实例、路由注册、生命周期。
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库。"""
    from orderpay.database import init_db

    init_db()
    logger.info("数据库初始化完成")
    if not os.environ.get("MIDTRANS_SERVER_KEY"):
        logger.warning("未配置 MIDTRANS_SERVER_KEY，网关通知将全部返回 500")

    yield


app = FastAPI(title="orderpay", description="订单分阶段支付对账服务", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from orderpay.routes.webhook import router as webhook_router
from orderpay.routes.user import router as user_router
from orderpay.routes.admin import router as admin_router

app.include_router(webhook_router)
app.include_router(user_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
