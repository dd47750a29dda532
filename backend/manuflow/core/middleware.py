import logging
import time
import uuid

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from manuflow.core.errors import WorkflowError

# === 日志配置 ===
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("manuflow")

REQUEST_ID_HEADER = "X-Request-Id"


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    请求日志 + 兜底异常处理。

    中文注释:
    - 每个请求带一个 request id（沿用调用方传入的，否则生成），写入响应头与日志。
    - 领域异常由 workflow_error_handler 处理；这里只兜住未预期的异常，统一 500，不泄露内部细节。
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except HTTPException as exc:
            response = JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "type": "http_exception"},
            )
        except Exception:
            logger.exception(f"[{request_id}] unhandled error on {request.method} {request.url.path}")
            response = JSONResponse(
                status_code=500,
                content={"detail": "内部系统错误，请联系管理员", "type": "server_error"},
            )
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """
    领域异常 -> JSON（携带当前状态、可选决策等上下文，客户端可据此自我纠正）。
    """
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] rejected {request.method} {request.url.path}: {exc.code} ({exc.message})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
