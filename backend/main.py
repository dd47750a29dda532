import asyncio
import contextlib
import logging
import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# 在应用启动前加载环境变量
load_dotenv()

logger = logging.getLogger("manuflow")

_SENTRY_ENABLED = False
try:
    from manuflow.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        logger.info("[sentry] enabled")
except Exception as e:
    # 中文注释: 零崩溃原则，Sentry 任何异常不得阻塞启动
    logger.warning("[sentry] init failed (ignored): %s", e)

from manuflow.api.v1 import assignments, internal, reviewers, settings, submissions
from manuflow.core.errors import WorkflowError
from manuflow.core.middleware import REQUEST_ID_HEADER, ExceptionHandlerMiddleware, workflow_error_handler
from manuflow.core.scheduler import run_periodic_sweep
from manuflow.services.engine import get_engine


def _sweep_enabled() -> bool:
    # 中文注释: 多实例部署时只需一个实例跑周期扫描，其余可关闭，改由内部 Cron 接口触发
    return (os.environ.get("DEADLINE_SWEEP_IN_PROCESS") or "1").strip().lower() in {"1", "true", "yes", "on"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if _sweep_enabled():
        engine = get_engine()
        task = asyncio.create_task(run_periodic_sweep(engine.sweeper, engine.config))
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(
    title="ManuscriptFlow API",
    description="Editorial workflow engine: submissions, reviewer assignment, decisions",
    version="1.0.0",
    lifespan=lifespan,
)

if _SENTRY_ENABLED:
    try:
        from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

        app.add_middleware(SentryAsgiMiddleware)
    except Exception as e:
        logger.warning("[sentry] middleware attach failed (ignored): %s", e)


def _cors_origins() -> list[str]:
    # 中文注释: FRONTEND_ORIGINS 逗号分隔；未配置时只放行本地编辑台 http://localhost:3000
    raw = os.environ.get("FRONTEND_ORIGINS") or ""
    origins = [o.strip().rstrip("/") for o in raw.split(",") if o.strip()]
    return list(dict.fromkeys(origins)) or ["http://localhost:3000"]


# === 中间件 ===
# 注意 add_middleware 后加的在外层：CORS 包住日志中间件，500 响应也带跨域头
app.add_middleware(ExceptionHandlerMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)

# 领域异常 -> {"detail", "type", "context"}（409/422/404/403）
app.add_exception_handler(WorkflowError, workflow_error_handler)

# === 路由 ===
for module in (submissions, reviewers, assignments, settings, internal):
    app.include_router(module.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "ManuscriptFlow API is running", "docs": "/docs"}
