from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from manuflow.models.assignment import ReviewRatings
from manuflow.models.submission import Author


class SubmissionCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    abstract: str = Field("", max_length=10000)
    article_type: str = Field("research", max_length=100)
    authors: List[Author] = Field(min_length=1)
    keywords: List[str] = Field(default_factory=list, max_length=50)
    manuscript_file: Optional[str] = Field(default=None, description="存储服务中的文件引用")
    supplementary_files: List[str] = Field(default_factory=list)
    suggested_reviewers: List[str] = Field(default_factory=list, max_length=10)


class SubmissionUpdate(BaseModel):
    version: int = Field(..., ge=0, description="乐观锁版本号")
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    abstract: Optional[str] = Field(default=None, max_length=10000)
    article_type: Optional[str] = Field(default=None, max_length=100)
    authors: Optional[List[Author]] = None
    keywords: Optional[List[str]] = Field(default=None, max_length=50)
    manuscript_file: Optional[str] = None
    supplementary_files: Optional[List[str]] = None
    suggested_reviewers: Optional[List[str]] = Field(default=None, max_length=10)


class TransitionRequest(BaseModel):
    """
    状态流转请求。

    中文注释: 请求体里不接受 role，角色只来自已校验的身份上下文。
    """

    decision: str = Field(..., description="决策类型，如 approve-for-review")
    version: int = Field(..., ge=0, description="调用方读取到的稿件版本号")
    assigned_editor: Optional[str] = Field(default=None, description="副主编 ID")
    comments: Optional[str] = Field(default=None, max_length=10000)
    priority: Optional[Literal["standard", "expedited", "urgent"]] = None
    quorum_override: bool = False


class PublicationAssignRequest(BaseModel):
    version: int = Field(..., ge=0)
    volume: int = Field(..., ge=1)
    article_number: str = Field(..., pattern=r"^\d{3}$")


class AutoAssignRequest(BaseModel):
    count: Optional[int] = Field(default=None, ge=1, le=20)


class ReviewerCreateRequest(BaseModel):
    id: Optional[str] = Field(default=None, description="对应身份系统用户 ID（可选）")
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    affiliation: Optional[str] = Field(default=None, max_length=300)
    expertise: List[str] = Field(default_factory=list, max_length=50)
    max_load: Optional[int] = Field(default=None, ge=1, le=50)


class ReviewerUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[str] = Field(default=None, min_length=3, max_length=320)
    affiliation: Optional[str] = Field(default=None, max_length=300)
    expertise: Optional[List[str]] = Field(default=None, max_length=50)
    max_load: Optional[int] = Field(default=None, ge=1, le=50)


class ReviewerStatusRequest(BaseModel):
    status: Literal["active", "inactive", "suspended"]


class InviteRequest(BaseModel):
    submission_id: str
    override: bool = False
    due_days: Optional[int] = Field(default=None, ge=1, le=365)


class RespondRequest(BaseModel):
    accept: bool


# 审稿结论：下划线与连字符两种写法都接受，服务层统一归一化
RecommendationValue = Literal[
    "accept", "minor_revision", "minor-revision", "major_revision", "major-revision", "reject"
]


class CompleteRequest(BaseModel):
    """
    审稿表提交。

    中文注释:
    - ratings 为分项评分；rating 兼容只传总分的旧客户端，二者至少一个。
    - 意见最小长度由流程配置决定（可热更新），在服务层校验，不满足返回 422。
    """

    recommendation: RecommendationValue
    ratings: Optional[ReviewRatings] = None
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comments: Optional[str] = Field(default=None, max_length=20000)
    confidential_comments: Optional[str] = Field(default=None, max_length=20000)
    completion_days: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _require_score(self) -> "CompleteRequest":
        if self.ratings is None and self.rating is None:
            raise ValueError("ratings or rating is required")
        return self


class WorkflowSettingsUpdate(BaseModel):
    min_reviewers_by_article_type: Optional[dict[str, int]] = None
    default_min_reviewers: Optional[int] = Field(default=None, ge=1, le=20)
    quorum_by_article_type: Optional[dict[str, int]] = None
    weight_load: Optional[float] = Field(default=None, ge=0)
    weight_rating: Optional[float] = Field(default=None, ge=0)
    weight_on_time: Optional[float] = Field(default=None, ge=0)
    review_deadline_days: Optional[int] = Field(default=None, ge=1, le=365)
    priority_deadline_days: Optional[dict[str, int]] = None
    default_max_load: Optional[int] = Field(default=None, ge=1, le=50)
    min_review_comment_length: Optional[int] = Field(default=None, ge=0, le=10000)
    auto_assign_reviewers: Optional[bool] = None
    deadline_reminders: Optional[bool] = None
    reminder_lead_hours: Optional[int] = Field(default=None, ge=0, le=24 * 30)
    sweep_interval_seconds: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _normalize_maps(self) -> "WorkflowSettingsUpdate":
        # 稿件类型 / 优先级的 key 统一小写，与 WorkflowConfig 查找口径一致
        for name in ("min_reviewers_by_article_type", "quorum_by_article_type", "priority_deadline_days"):
            value = getattr(self, name)
            if value is None:
                continue
            if any(int(v) < 0 for v in value.values()):
                raise ValueError(f"{name} values must not be negative")
            setattr(self, name, {str(k).strip().lower(): int(v) for k, v in value.items()})
        return self
