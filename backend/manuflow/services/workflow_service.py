from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from pydantic import ValidationError

from manuflow.core.config import ConfigHolder
from manuflow.core.errors import (
    Forbidden,
    InvalidTransition,
    MissingAssignment,
    QuorumNotMet,
    StaleVersion,
    ValidationFailed,
)
from manuflow.core.role_matrix import can_perform_action
from manuflow.core.roles import Principal, Role
from manuflow.models import event as ev
from manuflow.models.assignment import AssignmentState
from manuflow.models.base import utc_now
from manuflow.models.decision import (
    AGGREGATE_DECISIONS,
    Decision,
    DecisionKind,
    allowed_decisions,
    find_rule,
)
from manuflow.models.submission import Priority, Submission, SubmissionStatus
from manuflow.services.event_service import EventEmitter
from manuflow.services.repository import Repository

if TYPE_CHECKING:
    from manuflow.services.assignment_scheduler import AssignmentScheduler, SchedulingResult

logger = logging.getLogger("manuflow.workflow")

ARTICLE_NUMBER_RE = re.compile(r"^\d{3}$")

# 作者在草稿/修回阶段可编辑的字段
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "abstract",
        "article_type",
        "authors",
        "keywords",
        "manuscript_file",
        "supplementary_files",
        "suggested_reviewers",
    }
)
EDITABLE_STATUSES = frozenset({SubmissionStatus.DRAFT, SubmissionStatus.REVISION_REQUESTED})


def _validation_messages(err: ValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in err.errors()]


@dataclass
class TransitionResult:
    submission: Submission
    decision: Decision
    scheduling: Optional["SchedulingResult"] = None


class SubmissionWorkflowService:
    """
    稿件状态机 + 决策账本。

    中文注释:
    - 合法流转只由 TRANSITION_TABLE 决定（models/decision.py），这里负责守卫与原子提交。
    - 所有校验在写入前完成；账本条目与状态变更在同一个仓储原子单元内提交。
    - 领域事件在提交成功之后发出，发送失败不影响结果。
    """

    def __init__(
        self,
        repository: Repository,
        config: ConfigHolder,
        events: EventEmitter,
        scheduler: Optional["AssignmentScheduler"] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repository
        self.config = config
        self.events = events
        self.scheduler = scheduler
        self._now = clock

    # === 查询 ===

    def get(self, submission_id: str) -> Submission:
        return self.repo.get_submission(submission_id)

    def ledger(self, submission_id: str) -> list[Decision]:
        self.repo.get_submission(submission_id)
        return self.repo.list_decisions(submission_id)

    def can_view(self, principal: Principal, submission: Submission) -> bool:
        """
        稿件可见性（服务端守卫，前端隐藏按钮不算数）。

        中文注释:
        - 草稿只有提交作者本人可见，编辑/管理员也不行。
        - 作者只能看自己的稿件；审稿人只能看自己持有（未撤回）邀请的稿件。
        - 其余角色按角色矩阵 submission:view。
        """
        if submission.owner_id == principal.id:
            return True
        if submission.status == SubmissionStatus.DRAFT or principal.role == Role.AUTHOR:
            return False
        if principal.role == Role.REVIEWER:
            return submission.id in self._reviewer_submission_ids(principal.id)
        return can_perform_action(action="submission:view", role=principal.role)

    def _reviewer_submission_ids(self, reviewer_id: str) -> list[str]:
        assignments = self.repo.list_assignments(reviewer_id=reviewer_id)
        return list(dict.fromkeys(a.submission_id for a in assignments if a.state != AssignmentState.WITHDRAWN))

    def list_for(self, principal: Principal, *, status: Optional[SubmissionStatus] = None) -> list[Submission]:
        if principal.role == Role.AUTHOR:
            return self.repo.list_submissions(status=status, owner_id=principal.id)
        if principal.role == Role.REVIEWER:
            items = [self.repo.get_submission(sid) for sid in self._reviewer_submission_ids(principal.id)]
        else:
            items = self.repo.list_submissions(status=status)
        return [
            s
            for s in items
            if (status is None or s.status == status)
            and (s.status != SubmissionStatus.DRAFT or s.owner_id == principal.id)
        ]

    @staticmethod
    def allowed_next(submission: Submission, principal: Principal) -> list[str]:
        return allowed_decisions(submission.status, principal.role)

    # === 作者：草稿 ===

    def create_draft(self, principal: Principal, **fields: Any) -> Submission:
        if principal.role != Role.AUTHOR:
            raise Forbidden("Only authors can create submissions", role=principal.role.value)
        data = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
        now = self._now()
        try:
            submission = Submission.model_validate(
                {**data, "owner_id": principal.id, "created_at": now, "updated_at": now}
            )
        except ValidationError as e:
            raise ValidationFailed("Invalid submission", errors=_validation_messages(e)) from e
        stored = self.repo.insert_submission(submission)
        self.events.emit(ev.SUBMISSION_CREATED, subject_id=stored.id, owner_id=principal.id)
        return stored

    def update_draft(self, principal: Principal, submission_id: str, *, version: int, **changes: Any) -> Submission:
        current = self.repo.get_submission(submission_id)
        self._check_version(current, version)
        if current.owner_id != principal.id:
            raise Forbidden("Only the submitting author may edit this submission")
        if current.status not in EDITABLE_STATUSES:
            raise InvalidTransition(
                "Submission can only be edited as a draft or while revision is requested",
                current_status=current.status.value,
            )
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationFailed("Fields are not editable", fields=unknown)

        updates = {k: v for k, v in changes.items() if v is not None}
        try:
            updated = Submission.model_validate({**current.to_record(), **updates, "updated_at": self._now()})
        except ValidationError as e:
            raise ValidationFailed("Invalid submission", errors=_validation_messages(e)) from e
        stored = self.repo.save_submission(updated, expected_version=version)
        self.events.emit(ev.SUBMISSION_UPDATED, subject_id=stored.id, version=stored.version)
        return stored

    # === 状态流转 ===

    @staticmethod
    def _check_version(current: Submission, version: int) -> None:
        if current.version != version:
            raise StaleVersion(
                "Submission was modified by another request",
                submission_id=current.id,
                expected_version=version,
                current_version=current.version,
            )

    def _invalid(self, current: Submission, decision: str, principal: Principal) -> InvalidTransition:
        return InvalidTransition(
            f"Decision '{decision}' is not allowed for role '{principal.role.value}' in status '{current.status.value}'",
            current_status=current.status.value,
            decision=decision,
            role=principal.role.value,
            allowed_decisions=allowed_decisions(current.status, principal.role),
        )

    def transition(
        self,
        principal: Principal,
        submission_id: str,
        decision: str,
        *,
        version: int,
        assigned_editor: Optional[str] = None,
        comments: Optional[str] = None,
        priority: Optional[str] = None,
        quorum_override: bool = False,
    ) -> TransitionResult:
        current = self.repo.get_submission(submission_id)
        self._check_version(current, version)

        try:
            kind = DecisionKind(str(decision or "").strip().lower())
        except ValueError:
            raise self._invalid(current, str(decision), principal)

        rule = find_rule(current.status, kind, principal.role)
        if rule is None:
            raise self._invalid(current, kind.value, principal)

        try:
            priority_value = Priority(priority) if priority else None
        except ValueError:
            raise ValidationFailed("Unknown priority", priority=priority, allowed=[p.value for p in Priority])

        editor = (assigned_editor or "").strip() or None
        self._guard(current, kind, principal, editor=editor, quorum_override=quorum_override)

        cfg = self.config.get()
        now = self._now()
        updates: dict[str, Any] = {"updated_at": now}
        if rule.to_status is not None:
            updates["status"] = rule.to_status
        if priority_value is not None:
            updates["priority"] = priority_value

        if kind == DecisionKind.SUBMIT:
            updates["submitted_at"] = now
        elif kind == DecisionKind.RESUBMIT:
            updates.update(
                submitted_at=now,
                revision_round=current.revision_round + 1,
                understaffed=False,
                special_review=False,
            )
        elif kind in {DecisionKind.APPROVE_FOR_REVIEW, DecisionKind.SPECIAL_REVIEW}:
            updates["special_review"] = kind == DecisionKind.SPECIAL_REVIEW
            if editor is not None:
                updates["assigned_editor"] = editor
        elif kind == DecisionKind.ASSIGN_ASSOCIATE_EDITOR:
            updates["assigned_editor"] = editor
        elif kind == DecisionKind.PUBLISH:
            updates["published_at"] = now

        updated = current.model_copy(update=updates)
        deadline_days = None
        if updated.status == SubmissionStatus.UNDER_REVIEW or priority_value is not None:
            deadline_days = cfg.deadline_days_for(updated.priority.value)

        record = Decision(
            submission_id=current.id,
            submission_version=current.version,
            actor_id=principal.id,
            actor_role=principal.role,
            kind=kind,
            from_status=current.status,
            to_status=updated.status,
            comments=comments,
            priority=priority_value,
            deadline_days=deadline_days,
            assigned_editor=editor,
            quorum_override=bool(quorum_override) and kind in AGGREGATE_DECISIONS,
            created_at=now,
        )
        stored = self.repo.commit_transition(updated, record, expected_version=version)
        logger.info(
            "[Workflow] %s %s: %s -> %s by %s(%s) v%s",
            stored.id,
            kind.value,
            current.status.value,
            stored.status.value,
            principal.id,
            principal.role.value,
            stored.version,
        )

        self.events.emit(
            ev.DECISION_RECORDED,
            subject_id=stored.id,
            decision_id=record.id,
            kind=kind.value,
            actor_id=principal.id,
            actor_role=principal.role.value,
        )
        if stored.status != current.status:
            self.events.emit(
                ev.SUBMISSION_STATUS_CHANGED,
                subject_id=stored.id,
                from_status=current.status.value,
                to_status=stored.status.value,
                version=stored.version,
                owner_id=stored.owner_id,
            )

        result = TransitionResult(submission=stored, decision=record)
        entering_review = stored.status == SubmissionStatus.UNDER_REVIEW and current.status != SubmissionStatus.UNDER_REVIEW
        if entering_review and cfg.auto_assign_reviewers and self.scheduler is not None:
            # 中文注释: 自动分配是独立的工作单元；失败不回滚已经提交的决策。
            result.scheduling = self.scheduler.auto_assign(principal, stored.id)
            result.submission = self.repo.get_submission(stored.id)
        return result

    def _guard(
        self,
        current: Submission,
        kind: DecisionKind,
        principal: Principal,
        *,
        editor: Optional[str],
        quorum_override: bool,
    ) -> None:
        if kind in {DecisionKind.SUBMIT, DecisionKind.RESUBMIT} and current.owner_id != principal.id:
            raise Forbidden("Only the submitting author may submit this manuscript")

        if kind in {DecisionKind.APPROVE_FOR_REVIEW, DecisionKind.ASSIGN_ASSOCIATE_EDITOR} and editor is None:
            raise MissingAssignment(
                "An associate editor must be assigned with this decision",
                decision=kind.value,
                current_status=current.status.value,
            )

        if kind in AGGREGATE_DECISIONS:
            if principal.role == Role.ASSOCIATE_EDITOR and current.assigned_editor != principal.id:
                raise Forbidden("Only the assigned associate editor may record this decision")
            if not quorum_override and self.scheduler is not None:
                tally = self.scheduler.tally(current)
                if not tally.quorum_met:
                    raise QuorumNotMet(
                        "Not enough completed reviews for a decision",
                        completed=tally.completed,
                        required=tally.required,
                    )

        if kind == DecisionKind.PUBLISH and (current.volume is None or current.article_number is None):
            raise MissingAssignment(
                "Volume and article number must be assigned before publication",
                volume=current.volume,
                article_number=current.article_number,
            )

    # === 管理员：卷号 / 文章编号 ===

    def assign_publication(
        self,
        principal: Principal,
        submission_id: str,
        *,
        version: int,
        volume: int,
        article_number: str,
    ) -> Submission:
        """
        为录用稿件分配卷号与三位文章编号（URL: /vol{volume}/article{number}）。

        中文注释:
        - 文章编号一旦分配不可修改；同一卷内唯一（仓储层在原子单元内再次校验）。
        """
        if principal.role != Role.ADMIN:
            raise Forbidden("Only admins can assign article numbers")
        current = self.repo.get_submission(submission_id)
        self._check_version(current, version)
        if current.status not in {SubmissionStatus.ACCEPTED, SubmissionStatus.PUBLISHED}:
            raise InvalidTransition(
                "Article numbers are only assigned to accepted submissions",
                current_status=current.status.value,
            )
        number = str(article_number or "").strip()
        if not ARTICLE_NUMBER_RE.match(number):
            raise ValidationFailed("Article number must be exactly 3 digits", article_number=article_number)
        if volume is None or int(volume) < 1:
            raise ValidationFailed("Volume must be a positive integer", volume=volume)
        if current.article_number is not None and (
            current.article_number != number or current.volume != int(volume)
        ):
            raise ValidationFailed(
                "Article number is immutable once assigned",
                volume=current.volume,
                article_number=current.article_number,
            )
        if current.article_number == number and current.volume == int(volume):
            return current

        updated = current.model_copy(
            update={"volume": int(volume), "article_number": number, "updated_at": self._now()}
        )
        stored = self.repo.save_submission(updated, expected_version=version)
        self.events.emit(
            ev.SUBMISSION_UPDATED,
            subject_id=stored.id,
            version=stored.version,
            volume=stored.volume,
            article_number=stored.article_number,
        )
        return stored
