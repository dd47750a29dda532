from __future__ import annotations

import logging
import secrets

from fastapi import Header, HTTPException

from manuflow.core.config import get_admin_api_key

logger = logging.getLogger("manuflow.security")


async def require_admin_key(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    """
    截止扫描等内部任务的触发鉴权（外部 cron / 运维脚本调用）。

    中文注释:
    - 与用户 JWT 无关；ADMIN_API_KEY 为空时一律 401，内部接口默认关闭。
    - 使用常量时间比较。
    """

    configured = get_admin_api_key()
    if not configured:
        logger.warning("[Internal] ADMIN_API_KEY is empty; internal endpoints are disabled")
        raise HTTPException(status_code=401, detail="Admin key not configured")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, configured):
        logger.warning("[Internal] rejected call with missing/invalid X-Admin-Key")
        raise HTTPException(status_code=401, detail="Invalid admin key")
