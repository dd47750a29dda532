import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from threading import Lock
from typing import Any, Mapping, Optional

logger = logging.getLogger("manuflow.config")


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int, *, min_value: int = 0) -> int:
    raw = (os.environ.get(key) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(min_value, value)


def _env_float(key: str, default: float) -> float:
    raw = (os.environ.get(key) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int_map(key: str, default: Mapping[str, int]) -> dict[str, int]:
    """
    解析 JSON 形式的 {article_type: int} 配置。

    中文注释: 格式错误时记录告警并回退默认值，不阻塞启动；单个非法条目跳过。
    """
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return dict(default)
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("[Config] %s is not valid JSON, using default %s", key, dict(default))
        return dict(default)
    if not isinstance(parsed, dict):
        logger.warning("[Config] %s must be a JSON object, using default %s", key, dict(default))
        return dict(default)
    out: dict[str, int] = {}
    for k, v in parsed.items():
        try:
            out[str(k).strip().lower()] = max(0, int(v))
        except (TypeError, ValueError):
            logger.warning("[Config] %s: ignoring non-integer value for %r", key, k)
            continue
    return out


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production'
    storage_backend: str  # 'memory' | 'supabase'
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        # 中文注释: 未配置 Supabase 时默认走进程内存储（本地/测试）。
        default_backend = "supabase" if supabase_url else "memory"
        storage_backend = (os.environ.get("STORAGE_BACKEND") or default_backend).strip().lower()

        return AppConfig(
            env=env,
            storage_backend=storage_backend,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
        )


# Global Config Instance
app_config = AppConfig.from_env()


def get_admin_api_key() -> Optional[str]:
    """
    内部 Cron 接口鉴权 Key

    中文注释:
    - 仅用于 `/api/v1/internal/cron/*`，避免暴露到公网用户接口。
    """

    raw = os.environ.get("ADMIN_API_KEY")
    return raw.strip() if raw else None


@dataclass(frozen=True)
class SentryConfig:
    enabled: bool
    dsn: str
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", True),
            dsn=(os.environ.get("SENTRY_DSN") or "").strip(),
            environment=(os.environ.get("SENTRY_ENVIRONMENT") or app_config.env).strip(),
            traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        )


PRIORITY_DEADLINE_DAYS = {"standard": 30, "expedited": 21, "urgent": 14}


@dataclass(frozen=True)
class WorkflowConfig:
    """
    编辑流程策略配置（原“设置页”的 key/value 集合）。

    中文注释:
    1) 审稿人数量、法定人数、评分权重、截止天数、默认负载上限都必须可配置，禁止硬编码。
    2) 对象不可变；热更新通过 ConfigHolder.update() 替换整份快照完成。
    """

    min_reviewers_by_article_type: dict[str, int] = field(default_factory=dict)
    default_min_reviewers: int = 2
    # 未配置的稿件类型：法定人数 = 本轮所有未拒绝/未撤回的邀请
    quorum_by_article_type: dict[str, int] = field(default_factory=dict)
    weight_load: float = 1.0 / 3
    weight_rating: float = 1.0 / 3
    weight_on_time: float = 1.0 / 3
    review_deadline_days: int = 30
    priority_deadline_days: dict[str, int] = field(default_factory=lambda: dict(PRIORITY_DEADLINE_DAYS))
    default_max_load: int = 3
    # 审稿意见最少字符数（审稿表要求）；0 表示不限制
    min_review_comment_length: int = 100
    # 进入 under_review 即按稿件类型邀请 N 位审稿人；关闭后只能手动 / auto-assign 接口触发
    auto_assign_reviewers: bool = True
    deadline_reminders: bool = True
    reminder_lead_hours: int = 48
    sweep_interval_seconds: int = 86400

    @staticmethod
    def from_env() -> "WorkflowConfig":
        return WorkflowConfig(
            min_reviewers_by_article_type=_env_int_map("WORKFLOW_MIN_REVIEWERS_BY_TYPE", {}),
            default_min_reviewers=_env_int("WORKFLOW_DEFAULT_MIN_REVIEWERS", 2, min_value=1),
            quorum_by_article_type=_env_int_map("WORKFLOW_QUORUM_BY_TYPE", {}),
            weight_load=_env_float("WORKFLOW_WEIGHT_LOAD", 1.0 / 3),
            weight_rating=_env_float("WORKFLOW_WEIGHT_RATING", 1.0 / 3),
            weight_on_time=_env_float("WORKFLOW_WEIGHT_ON_TIME", 1.0 / 3),
            review_deadline_days=_env_int("WORKFLOW_REVIEW_DEADLINE_DAYS", 30, min_value=1),
            priority_deadline_days=_env_int_map("WORKFLOW_PRIORITY_DEADLINE_DAYS", PRIORITY_DEADLINE_DAYS),
            default_max_load=_env_int("WORKFLOW_DEFAULT_MAX_LOAD", 3, min_value=1),
            min_review_comment_length=_env_int("WORKFLOW_MIN_REVIEW_COMMENT_LENGTH", 100),
            auto_assign_reviewers=_env_bool("WORKFLOW_AUTO_ASSIGN_REVIEWERS", True),
            deadline_reminders=_env_bool("WORKFLOW_DEADLINE_REMINDERS", True),
            reminder_lead_hours=_env_int("WORKFLOW_REMINDER_LEAD_HOURS", 48),
            sweep_interval_seconds=_env_int("WORKFLOW_SWEEP_INTERVAL_SECONDS", 86400),
        )

    def min_reviewers_for(self, article_type: str | None) -> int:
        key = (article_type or "").strip().lower()
        return self.min_reviewers_by_article_type.get(key, self.default_min_reviewers)

    def quorum_for(self, article_type: str | None) -> int | None:
        key = (article_type or "").strip().lower()
        return self.quorum_by_article_type.get(key)

    def deadline_days_for(self, priority: str | None) -> int:
        key = (priority or "").strip().lower()
        return self.priority_deadline_days.get(key, self.review_deadline_days)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class ConfigHolder:
    """
    可热更新的配置容器。

    中文注释:
    - 读取在锁内拿到不可变快照，之后的计算不再持锁。
    - update() 只接受已知字段，未知字段抛 ValueError（由 API 层转 422）。
    """

    def __init__(self, config: Optional[WorkflowConfig] = None) -> None:
        self._config = config or WorkflowConfig()
        self._lock = Lock()

    def get(self) -> WorkflowConfig:
        with self._lock:
            return self._config

    def update(self, **changes: Any) -> WorkflowConfig:
        known = {f.name for f in fields(WorkflowConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown workflow settings: {unknown}")
        with self._lock:
            self._config = replace(self._config, **changes)
            return self._config
