from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from manuflow.core.roles import Role
from manuflow.models.base import RecordModel, new_id, utc_now
from manuflow.models.submission import Priority, SubmissionStatus


class DecisionKind(str, Enum):
    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    APPROVE_FOR_REVIEW = "approve-for-review"
    DESK_REJECT = "desk-reject"
    SPECIAL_REVIEW = "special-review"
    ASSIGN_ASSOCIATE_EDITOR = "assign-associate-editor"
    RECOMMEND_ACCEPT = "recommend-accept"
    RECOMMEND_REJECT = "recommend-reject"
    RECOMMEND_MINOR_REVISION = "recommend-minor-revision"
    RECOMMEND_MAJOR_REVISION = "recommend-major-revision"
    FINAL_ACCEPT = "final-accept"
    FINAL_REJECT = "final-reject"
    PUBLISH = "publish"


# 需要外审结果（法定人数）才能做出的决策
AGGREGATE_DECISIONS = frozenset(
    {
        DecisionKind.RECOMMEND_ACCEPT,
        DecisionKind.RECOMMEND_REJECT,
        DecisionKind.RECOMMEND_MINOR_REVISION,
        DecisionKind.RECOMMEND_MAJOR_REVISION,
        DecisionKind.FINAL_ACCEPT,
        DecisionKind.FINAL_REJECT,
    }
)


@dataclass(frozen=True)
class TransitionRule:
    from_status: SubmissionStatus
    decision: DecisionKind
    # None 表示状态不变（例如指派副主编）
    to_status: Optional[SubmissionStatus]
    roles: frozenset[Role]


_EDITORS = frozenset({Role.ASSOCIATE_EDITOR, Role.EDITOR_IN_CHIEF})
_EIC = frozenset({Role.EDITOR_IN_CHIEF})
_AUTHOR = frozenset({Role.AUTHOR})

S = SubmissionStatus
D = DecisionKind

TRANSITION_TABLE: tuple[TransitionRule, ...] = (
    TransitionRule(S.DRAFT, D.SUBMIT, S.SUBMITTED, _AUTHOR),
    TransitionRule(S.SUBMITTED, D.APPROVE_FOR_REVIEW, S.UNDER_REVIEW, _EIC),
    TransitionRule(S.SUBMITTED, D.DESK_REJECT, S.REJECTED, _EIC),
    TransitionRule(S.SUBMITTED, D.SPECIAL_REVIEW, S.UNDER_REVIEW, _EIC),
    TransitionRule(S.SUBMITTED, D.ASSIGN_ASSOCIATE_EDITOR, None, _EIC),
    TransitionRule(S.UNDER_REVIEW, D.ASSIGN_ASSOCIATE_EDITOR, None, _EIC),
    TransitionRule(S.UNDER_REVIEW, D.RECOMMEND_ACCEPT, S.ACCEPTED, _EDITORS),
    TransitionRule(S.UNDER_REVIEW, D.RECOMMEND_REJECT, S.REJECTED, _EDITORS),
    TransitionRule(S.UNDER_REVIEW, D.RECOMMEND_MINOR_REVISION, S.REVISION_REQUESTED, _EDITORS),
    TransitionRule(S.UNDER_REVIEW, D.RECOMMEND_MAJOR_REVISION, S.REVISION_REQUESTED, _EDITORS),
    TransitionRule(S.UNDER_REVIEW, D.FINAL_ACCEPT, S.ACCEPTED, _EIC),
    TransitionRule(S.UNDER_REVIEW, D.FINAL_REJECT, S.REJECTED, _EIC),
    TransitionRule(S.REVISION_REQUESTED, D.RESUBMIT, S.SUBMITTED, _AUTHOR),
    TransitionRule(S.ACCEPTED, D.PUBLISH, S.PUBLISHED, frozenset({Role.ADMIN})),
)

_RULES: dict[tuple[SubmissionStatus, DecisionKind], TransitionRule] = {
    (rule.from_status, rule.decision): rule for rule in TRANSITION_TABLE
}


def find_rule(status: SubmissionStatus, decision: DecisionKind, role: Role) -> Optional[TransitionRule]:
    rule = _RULES.get((status, decision))
    if rule is None or role not in rule.roles:
        return None
    return rule


def allowed_decisions(status: SubmissionStatus, role: Role) -> list[str]:
    """
    当前状态下某角色可发起的决策（返回给前端用于自我纠正/渲染按钮）。
    """
    return [
        rule.decision.value
        for rule in TRANSITION_TABLE
        if rule.from_status == status and role in rule.roles
    ]


class Decision(RecordModel):
    """决策账本条目：只追加，永不修改或删除。"""

    id: str = Field(default_factory=new_id)
    submission_id: str
    # 决策发生时稿件的版本号（即变更前版本）
    submission_version: int = Field(ge=0)
    actor_id: str
    actor_role: Role
    kind: DecisionKind
    from_status: SubmissionStatus
    to_status: SubmissionStatus
    comments: Optional[str] = None
    priority: Optional[Priority] = None
    deadline_days: Optional[int] = Field(default=None, ge=1)
    assigned_editor: Optional[str] = None
    quorum_override: bool = False
    created_at: datetime = Field(default_factory=utc_now)
