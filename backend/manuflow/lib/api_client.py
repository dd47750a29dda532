import logging
import os
from typing import Any, Callable, Optional

from supabase import Client, create_client

from manuflow.core.config import app_config

logger = logging.getLogger("manuflow.supabase")

# 中文注释:
# 引擎独占 submissions / decisions / reviewers / assignments / domain_events 五张表，
# 权限在应用层（role_matrix）守卫，所以只需要 service_role 客户端，没有 anon 客户端。
url: str = app_config.supabase_url
service_role_key: str = app_config.supabase_key or os.environ.get("SUPABASE_KEY", "")


class _LazySupabaseClient:
    """
    首次访问属性时才创建 Client。

    中文注释: 内存仓储模式与单元测试从不触碰它，因此缺少 SUPABASE_* 时模块仍可导入；
    真正用到时再抛出明确的配置错误。
    """

    def __init__(self, factory: Callable[[], Client], *, name: str):
        self._factory = factory
        self._name = name
        self._client: Optional[Client] = None

    def reset(self) -> None:
        self._client = None

    def __getattr__(self, item: str) -> Any:
        if self._client is None:
            self._client = self._factory()
            logger.info("[Supabase] %s client created for %s", self._name, url)
        return getattr(self._client, item)


def _create_service_client() -> Client:
    if not url:
        raise RuntimeError("SUPABASE_URL is required for the supabase storage backend")
    if not service_role_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY) is required for the supabase storage backend")
    return create_client(url, service_role_key)


supabase_admin: Client = _LazySupabaseClient(_create_service_client, name="service_role")  # type: ignore[assignment]
