from typing import Any

from manuflow.core.config import SentryConfig
from manuflow.core.errors import WorkflowError

FILTERED = "[Filtered]"

# 凭据 + 审稿内容（尤其是只给编辑看的保密意见）
_REDACT_KEYS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-admin-key",
        "access_token",
        "refresh_token",
        "token",
        "jwt",
        "password",
        "service_role_key",
        "supabase_key",
        "comments",
        "confidential_comments",
        "abstract",
    }
)
_MAX_TEXT = 2000


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        return FILTERED if len(value) > _MAX_TEXT else value
    if isinstance(value, dict):
        return {str(k): FILTERED if str(k).strip().lower() in _REDACT_KEYS else _redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """
    上报前处理。

    中文注释:
    - 4xx 领域异常（非法流转、版本冲突、负载超限……）属于正常业务拒绝，不上报。
    - 请求体、cookie 一律不上传；header 只去掉凭据。
    """
    exc_info = hint.get("exc_info") if hint else None
    if exc_info and isinstance(exc_info[1], WorkflowError):
        if exc_info[1].status_code < 500:
            return None
        event.setdefault("tags", {})["workflow.error_code"] = exc_info[1].code

    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {k: v for k, v in headers.items() if str(k).strip().lower() not in _REDACT_KEYS}
        for key in ("cookies", "data", "body"):
            if key in request:
                request[key] = FILTERED

    for section in ("extra", "contexts"):
        if isinstance(event.get(section), dict):
            event[section] = _redact(event[section])
    return event


def init_sentry() -> bool:
    """
    按 SENTRY_* 环境变量初始化；未配置 DSN 或 SENTRY_ENABLED=0 时返回 False。
    初始化异常由 main.py 捕获，不阻塞启动。
    """
    cfg = SentryConfig.from_env()
    if not (cfg.enabled and cfg.dsn):
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    options: dict[str, Any] = dict(
        dsn=cfg.dsn,
        environment=cfg.environment,
        traces_sample_rate=cfg.traces_sample_rate,
        integrations=[FastApiIntegration()],
        send_default_pii=False,
        before_send=_before_send,
        max_request_body_size="never",
    )
    try:
        sentry_sdk.init(**options)
    except TypeError:
        # 旧版 sdk 不支持 max_request_body_size
        options.pop("max_request_body_size")
        sentry_sdk.init(**options)
    return True
