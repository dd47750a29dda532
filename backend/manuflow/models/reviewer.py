from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator

from manuflow.models.base import RecordModel, new_id, utc_now
from manuflow.models.submission import normalize_keywords


class ReviewerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class ReviewerPerformance(RecordModel):
    completed_reviews: int = Field(default=0, ge=0)
    total_reviews: int = Field(default=0, ge=0)
    on_time_reviews: int = Field(default=0, ge=0)
    avg_completion_days: float = Field(default=0.0, ge=0)
    avg_rating: float = Field(default=0.0, ge=0, le=5)
    on_time_rate: float = Field(default=0.0, ge=0, le=100)

    def with_completion(self, *, rating: int, completion_days: float, on_time: bool) -> "ReviewerPerformance":
        """
        增量均值更新：avg' = avg + (x - avg) / (n + 1)，n 为更新前的已完成数。
        """
        n = self.completed_reviews
        completed = n + 1
        on_time_reviews = self.on_time_reviews + (1 if on_time else 0)
        return ReviewerPerformance(
            completed_reviews=completed,
            total_reviews=max(self.total_reviews, completed),
            on_time_reviews=on_time_reviews,
            avg_completion_days=self.avg_completion_days + (completion_days - self.avg_completion_days) / completed,
            avg_rating=self.avg_rating + (rating - self.avg_rating) / completed,
            on_time_rate=100.0 * on_time_reviews / completed,
        )


class Reviewer(RecordModel):
    id: str = Field(default_factory=new_id)
    # 记录级 CAS 令牌（负载增减、状态变更都要比对）
    version: int = Field(default=0, ge=0)
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    affiliation: Optional[str] = Field(default=None, max_length=300)
    expertise: list[str] = Field(default_factory=list)
    status: ReviewerStatus = ReviewerStatus.ACTIVE
    # 可因人工 override 暂时超过 max_load
    current_load: int = Field(default=0, ge=0)
    max_load: int = Field(default=3, ge=1)
    performance: ReviewerPerformance = Field(default_factory=ReviewerPerformance)
    last_active_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("expertise")
    @classmethod
    def _normalize_expertise(cls, value: list[str]) -> list[str]:
        return normalize_keywords(value)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def has_capacity(self) -> bool:
        return self.current_load < self.max_load

    @property
    def load_ratio(self) -> float:
        return min(1.0, self.current_load / self.max_load) if self.max_load else 1.0
