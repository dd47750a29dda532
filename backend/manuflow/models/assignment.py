from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from manuflow.models.base import RecordModel, new_id, utc_now


class AssignmentState(str, Enum):
    INVITED = "invited"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WITHDRAWN = "withdrawn"
    OVERDUE = "overdue"


class Recommendation(str, Enum):
    ACCEPT = "accept"
    MINOR_REVISION = "minor_revision"
    MAJOR_REVISION = "major_revision"
    REJECT = "reject"


# 活跃：截止扫描会检查这些状态
ACTIVE_STATES = frozenset({AssignmentState.INVITED, AssignmentState.ACCEPTED, AssignmentState.IN_PROGRESS})
# 占用审稿人负载（逾期仍未结束，仍计入负载）
OPEN_STATES = ACTIVE_STATES | {AssignmentState.OVERDUE}
TERMINAL_STATES = frozenset({AssignmentState.DECLINED, AssignmentState.COMPLETED, AssignmentState.WITHDRAWN})
COMPLETABLE_STATES = frozenset({AssignmentState.ACCEPTED, AssignmentState.IN_PROGRESS, AssignmentState.OVERDUE})
# 未答复的邀请：invited，或逾期但从未接受（responded_at 为空）
RESPONDABLE_STATES = frozenset({AssignmentState.INVITED, AssignmentState.OVERDUE})


class ReviewRatings(BaseModel):
    """
    审稿表分项评分（1-5）。overall 即审稿人滚动平均分使用的分数。
    """

    originality: int = Field(..., ge=1, le=5)
    methodology: int = Field(..., ge=1, le=5)
    significance: int = Field(..., ge=1, le=5)
    clarity: int = Field(..., ge=1, le=5)
    overall: int = Field(..., ge=1, le=5)


class Assignment(RecordModel):
    id: str = Field(default_factory=new_id)
    version: int = Field(default=0, ge=0)
    submission_id: str
    reviewer_id: str
    # 邀请时稿件所处的修回轮次；汇总只统计当前轮
    round: int = Field(default=1, ge=1)
    state: AssignmentState = AssignmentState.INVITED
    invited_at: datetime = Field(default_factory=utc_now)
    responded_at: Optional[datetime] = None
    due_at: datetime
    completed_at: Optional[datetime] = None
    recommendation: Optional[Recommendation] = None
    # 总分（= ratings.overall；旧客户端只传单一 rating 时 ratings 为空）
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    ratings: Optional[ReviewRatings] = None
    comments: Optional[str] = None
    # Editor-only
    confidential_comments: Optional[str] = None
    last_reminded_at: Optional[datetime] = None
    override_used: bool = False

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES
