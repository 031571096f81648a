"""
LearnMart 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
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

ORDER_EXPIRY_INTERVAL = 60


# ── 后台任务 ──────────────────────────────────────────────

async def _order_expiry_task() -> None:
    """定期关闭超时未支付的订单（每 60 秒）。"""
    from learnmart.services.order_service import OrderService

    svc = OrderService()
    while True:
        try:
            svc.expire_orders()
            logger.debug("订单过期检查完成")
        except Exception as e:
            logger.error("订单过期检查异常: %s", e)
        await asyncio.sleep(ORDER_EXPIRY_INTERVAL)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from learnmart.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_order_expiry_task()))
        logger.info("后台任务已启动：订单过期检查")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="LearnMart", description="学习资源商城与弹窗支付", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from learnmart.routes.payment import pages as payment_pages
from learnmart.routes.payment import router as payment_router
from learnmart.routes.account import router as account_router
from learnmart.routes.resources import router as resources_router
from learnmart.routes.admin import router as admin_router

app.include_router(payment_router)
app.include_router(payment_pages)
app.include_router(account_router)
app.include_router(resources_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
