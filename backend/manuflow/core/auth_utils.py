import logging
import os
from typing import Any, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

# === Auth 核心配置 ===
# 中文注释:
# 1. Token 由外部身份服务签发（Supabase Auth），引擎只做校验与角色提取。
# 2. 我们使用 HTTPBearer 作为验证头。
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET", "mock-secret-replace-later")
ALGORITHM = "HS256"

logger = logging.getLogger("manuflow.auth")

security = HTTPBearer()


def _extract_role(payload: dict[str, Any]) -> Optional[str]:
    """
    角色位置：优先 app_metadata.role（服务端写入，用户不可改），
    其次自定义 claim user_role。
    """
    app_metadata = payload.get("app_metadata")
    if isinstance(app_metadata, dict) and app_metadata.get("role"):
        return str(app_metadata["role"])
    if payload.get("user_role"):
        return str(payload["user_role"])
    return None


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    解码并验证 JWT Token
    返回 {"id", "email", "role"}
    """
    token = credentials.credentials
    try:
        payload = jwt.decode(token, SUPABASE_JWT_SECRET, algorithms=[ALGORITHM], audience="authenticated")
    except JWTError as e:
        logger.info("JWT 验证失败: %s", e)
        raise HTTPException(status_code=401, detail="Token 验证失败或已过期")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="无效的身份载荷")
    return {"id": str(user_id), "email": payload.get("email"), "role": _extract_role(payload)}
