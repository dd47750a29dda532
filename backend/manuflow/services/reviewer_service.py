from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError

from manuflow.core.config import ConfigHolder
from manuflow.core.errors import (
    DuplicateAssignment,
    Forbidden,
    InvalidAssignmentState,
    InvalidTransition,
    LoadExceeded,
    ReviewerUnavailable,
    StaleVersion,
    ValidationFailed,
)
from manuflow.core.roles import EDITOR_ROLES, Principal, Role
from manuflow.models import event as ev
from manuflow.models.assignment import (
    COMPLETABLE_STATES,
    OPEN_STATES,
    RESPONDABLE_STATES,
    Assignment,
    AssignmentState,
    Recommendation,
    ReviewRatings,
)
from manuflow.models.base import utc_now
from manuflow.models.reviewer import Reviewer, ReviewerStatus
from manuflow.models.submission import SubmissionStatus
from manuflow.services.event_service import EventEmitter
from manuflow.services.repository import Repository

logger = logging.getLogger("manuflow.reviewers")

# 记录级 CAS 冲突时的重读重试次数
MAX_CAS_ATTEMPTS = 3

REVIEWER_EDITABLE_FIELDS = frozenset({"name", "email", "affiliation", "expertise", "max_load"})


@dataclass(frozen=True)
class ReviewerFilter:
    status: Optional[ReviewerStatus] = None
    expertise: Optional[str] = None
    search: Optional[str] = None
    available_only: bool = False
    top_performers: bool = False


def _matches(reviewer: Reviewer, flt: ReviewerFilter) -> bool:
    if flt.status is not None and reviewer.status != flt.status:
        return False
    if flt.expertise and flt.expertise.strip().lower() not in reviewer.expertise:
        return False
    if flt.search:
        needle = flt.search.strip().lower()
        haystack = [reviewer.name.lower(), reviewer.email, (reviewer.affiliation or "").lower(), *reviewer.expertise]
        if not any(needle in h for h in haystack):
            return False
    if flt.available_only and not (reviewer.status == ReviewerStatus.ACTIVE and reviewer.has_capacity):
        return False
    # 中文注释: “优秀审稿人”口径沿用看板：准时率 >= 80%
    if flt.top_performers and reviewer.performance.on_time_rate < 80:
        return False
    return True


def _parse_ratings(
    rating: Optional[int], ratings: Optional[ReviewRatings | dict[str, Any]]
) -> tuple[int, Optional[ReviewRatings]]:
    """返回 (overall, 分项评分)；分项缺省时只有单一总分。"""
    if ratings is not None:
        try:
            scores = ratings if isinstance(ratings, ReviewRatings) else ReviewRatings.model_validate(ratings)
        except ValidationError as e:
            raise ValidationFailed(
                "Each rating criterion must be an integer between 1 and 5",
                errors=[err.get("msg") for err in e.errors()],
            ) from e
        if rating is not None and rating != scores.overall:
            raise ValidationFailed("rating must match ratings.overall", rating=rating, overall=scores.overall)
        return scores.overall, scores
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationFailed("Rating must be an integer between 1 and 5", rating=rating)
    return rating, None


class ReviewerDirectory:
    """
    审稿人名录 + 负载记账 + 审稿任务生命周期。

    中文注释:
    1) 负载 current_load 的增减与任务写入在同一原子单元内完成（审稿人记录 CAS）。
    2) 并发邀请同一审稿人时，失败方重读记录：若已满则得到 LoadExceeded，否则重试。
    3) 停用(suspended)立即阻止新邀请，但不取消进行中的任务（需要编辑显式撤回）。
    """

    def __init__(
        self,
        repository: Repository,
        config: ConfigHolder,
        events: EventEmitter,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repository
        self.config = config
        self.events = events
        self._now = clock

    # === 名录 ===

    def add_reviewer(
        self,
        *,
        name: str,
        email: str,
        affiliation: Optional[str] = None,
        expertise: Optional[list[str]] = None,
        max_load: Optional[int] = None,
        reviewer_id: Optional[str] = None,
    ) -> Reviewer:
        data: dict[str, Any] = {
            "name": name,
            "email": email,
            "affiliation": affiliation,
            "expertise": expertise or [],
            "max_load": max_load or self.config.get().default_max_load,
        }
        if reviewer_id:
            data["id"] = reviewer_id
        try:
            reviewer = Reviewer.model_validate(data)
        except ValidationError as e:
            raise ValidationFailed("Invalid reviewer", errors=[err.get("msg") for err in e.errors()]) from e
        return self.repo.insert_reviewer(reviewer)

    def get(self, reviewer_id: str) -> Reviewer:
        return self.repo.get_reviewer(reviewer_id)

    def query(self, flt: Optional[ReviewerFilter] = None) -> list[Reviewer]:
        flt = flt or ReviewerFilter()
        return [r for r in self.repo.list_reviewers() if _matches(r, flt)]

    def summary(self) -> dict[str, Any]:
        reviewers = self.repo.list_reviewers()
        counts = {s.value: 0 for s in ReviewerStatus}
        for r in reviewers:
            counts[r.status.value] += 1
        avg_on_time = (
            sum(r.performance.on_time_rate for r in reviewers) / len(reviewers) if reviewers else 0.0
        )
        return {
            "total": len(reviewers),
            "by_status": counts,
            "avg_on_time_rate": round(avg_on_time, 2),
            "open_load": sum(r.current_load for r in reviewers),
            "capacity": sum(r.max_load for r in reviewers if r.status == ReviewerStatus.ACTIVE),
        }

    def _mutate_reviewer(self, reviewer_id: str, mutate: Callable[[Reviewer], Reviewer]) -> Reviewer:
        for attempt in range(MAX_CAS_ATTEMPTS):
            current = self.repo.get_reviewer(reviewer_id)
            updated = mutate(current)
            try:
                return self.repo.save_reviewer(updated, expected_version=current.version)
            except StaleVersion:
                if attempt == MAX_CAS_ATTEMPTS - 1:
                    raise
                logger.info("[Reviewers] CAS conflict on %s, retrying", reviewer_id)
        raise AssertionError("unreachable")

    def update_reviewer(self, reviewer_id: str, **changes: Any) -> Reviewer:
        unknown = sorted(set(changes) - REVIEWER_EDITABLE_FIELDS)
        if unknown:
            raise ValidationFailed("Fields are not editable", fields=unknown)
        updates = {k: v for k, v in changes.items() if v is not None}

        def _apply(current: Reviewer) -> Reviewer:
            try:
                return Reviewer.model_validate({**current.to_record(), **updates})
            except ValidationError as e:
                raise ValidationFailed("Invalid reviewer", errors=[err.get("msg") for err in e.errors()]) from e

        return self._mutate_reviewer(reviewer_id, _apply)

    def record_decision(self, reviewer_id: str, status: str, *, principal: Optional[Principal] = None) -> Reviewer:
        """
        变更审稿人状态（active / inactive / suspended）。

        中文注释: 重新激活不会回补负载；停用不会取消进行中的任务。
        """
        try:
            new_status = ReviewerStatus(str(status or "").strip().lower())
        except ValueError:
            raise ValidationFailed("Unknown reviewer status", status=status, allowed=[s.value for s in ReviewerStatus])

        previous: dict[str, ReviewerStatus] = {}

        def _apply(current: Reviewer) -> Reviewer:
            previous["status"] = current.status
            return current.model_copy(update={"status": new_status})

        stored = self._mutate_reviewer(reviewer_id, _apply)
        if previous.get("status") != new_status:
            self.events.emit(
                ev.REVIEWER_STATUS_CHANGED,
                subject_id=reviewer_id,
                from_status=previous["status"].value,
                to_status=new_status.value,
                actor_id=principal.id if principal else None,
            )
        return stored

    # === 邀请 ===

    def invite(
        self,
        principal: Principal,
        submission_id: str,
        reviewer_id: str,
        *,
        override: bool = False,
        due_days: Optional[int] = None,
    ) -> Assignment:
        if principal.role not in EDITOR_ROLES:
            raise Forbidden("Only editors can invite reviewers", role=principal.role.value)

        submission = self.repo.get_submission(submission_id)
        if submission.status != SubmissionStatus.UNDER_REVIEW:
            raise InvalidTransition(
                "Reviewers can only be invited while the submission is under review",
                current_status=submission.status.value,
            )
        if due_days is not None and int(due_days) < 1:
            raise ValidationFailed("due_days must be positive", due_days=due_days)

        days = int(due_days) if due_days else self.config.get().deadline_days_for(submission.priority.value)

        for attempt in range(MAX_CAS_ATTEMPTS):
            reviewer = self.repo.get_reviewer(reviewer_id)
            existing = self.repo.list_assignments(
                submission_id=submission_id, reviewer_id=reviewer_id, states=OPEN_STATES
            )
            if existing:
                raise DuplicateAssignment(
                    "Reviewer already has an open assignment for this submission",
                    submission_id=submission_id,
                    reviewer_id=reviewer_id,
                    assignment_id=existing[0].id,
                )
            if reviewer.status != ReviewerStatus.ACTIVE:
                raise ReviewerUnavailable(
                    f"Reviewer is {reviewer.status.value}",
                    reviewer_id=reviewer_id,
                    status=reviewer.status.value,
                )
            over_cap = not reviewer.has_capacity
            if over_cap and not override:
                raise LoadExceeded(
                    "Reviewer is at maximum load",
                    reviewer_id=reviewer_id,
                    current_load=reviewer.current_load,
                    max_load=reviewer.max_load,
                )

            now = self._now()
            assignment = Assignment(
                submission_id=submission_id,
                reviewer_id=reviewer_id,
                round=submission.revision_round,
                invited_at=now,
                due_at=now + timedelta(days=days),
                override_used=over_cap,
            )
            performance = reviewer.performance.model_copy(
                update={"total_reviews": reviewer.performance.total_reviews + 1}
            )
            loaded = reviewer.model_copy(
                update={"current_load": reviewer.current_load + 1, "performance": performance}
            )
            try:
                stored, _ = self.repo.commit_assignment(
                    assignment,
                    expected_version=None,
                    reviewer=loaded,
                    expected_reviewer_version=reviewer.version,
                )
            except StaleVersion:
                if attempt == MAX_CAS_ATTEMPTS - 1:
                    raise
                logger.info("[Reviewers] concurrent invite on %s, re-checking load", reviewer_id)
                continue

            if over_cap:
                logger.warning(
                    "[Reviewers] load override by %s: reviewer=%s load=%s/%s",
                    principal.id,
                    reviewer_id,
                    loaded.current_load,
                    loaded.max_load,
                )
            self.events.emit(
                ev.ASSIGNMENT_CREATED,
                subject_id=stored.id,
                submission_id=submission_id,
                reviewer_id=reviewer_id,
                reviewer_email=reviewer.email,
                due_at=stored.due_at.isoformat(),
                invited_by=principal.id,
            )
            return stored
        raise AssertionError("unreachable")

    # === 任务生命周期 ===

    @staticmethod
    def _check_actor(principal: Principal, assignment: Assignment) -> None:
        if principal.role == Role.ADMIN:
            return
        if principal.role != Role.REVIEWER or principal.id != assignment.reviewer_id:
            raise Forbidden("Only the invited reviewer may act on this assignment")

    def _commit_change(
        self,
        assignment_id: str,
        build: Callable[[Assignment, Reviewer], tuple[Assignment, Optional[Reviewer]]],
        *,
        allowed: frozenset[AssignmentState],
        principal: Optional[Principal] = None,
        action: str,
    ) -> tuple[Assignment, Optional[Reviewer]]:
        """
        读取任务与审稿人 -> 校验状态 -> 原子提交；CAS 冲突时重读重试。
        已终结的任务再次操作得到 InvalidAssignmentState（终态幂等）。
        """
        for attempt in range(MAX_CAS_ATTEMPTS):
            assignment = self.repo.get_assignment(assignment_id)
            if principal is not None:
                self._check_actor(principal, assignment)
            if assignment.state not in allowed:
                raise InvalidAssignmentState(
                    f"Cannot {action} an assignment in state '{assignment.state.value}'",
                    assignment_id=assignment_id,
                    state=assignment.state.value,
                )
            reviewer = self.repo.get_reviewer(assignment.reviewer_id)
            updated, updated_reviewer = build(assignment, reviewer)
            try:
                return self.repo.commit_assignment(
                    updated,
                    expected_version=assignment.version,
                    reviewer=updated_reviewer,
                    expected_reviewer_version=reviewer.version if updated_reviewer is not None else None,
                )
            except StaleVersion:
                if attempt == MAX_CAS_ATTEMPTS - 1:
                    raise
                logger.info("[Reviewers] CAS conflict on assignment %s, retrying", assignment_id)
        raise AssertionError("unreachable")

    def respond(self, principal: Principal, assignment_id: str, *, accept: bool) -> Assignment:
        """
        接受 / 拒绝邀请。

        中文注释:
        - 从未答复的邀请即使已被扫描标记为 overdue，仍可答复；
          逾期后接受保持 overdue（仍然迟到，扫描不会重复告警），拒绝释放负载。
        - 已答复过的任务不能再次答复。
        """
        now = self._now()

        def _build(a: Assignment, r: Reviewer) -> tuple[Assignment, Optional[Reviewer]]:
            if a.responded_at is not None:
                raise InvalidAssignmentState(
                    "Invitation has already been answered",
                    assignment_id=a.id,
                    state=a.state.value,
                )
            if accept:
                state = AssignmentState.OVERDUE if a.state == AssignmentState.OVERDUE else AssignmentState.ACCEPTED
                return (
                    a.model_copy(update={"state": state, "responded_at": now}),
                    r.model_copy(update={"last_active_at": now}),
                )
            # 拒绝邀请释放负载
            return (
                a.model_copy(update={"state": AssignmentState.DECLINED, "responded_at": now}),
                r.model_copy(update={"current_load": max(0, r.current_load - 1), "last_active_at": now}),
            )

        stored, _ = self._commit_change(
            assignment_id,
            _build,
            allowed=RESPONDABLE_STATES,
            principal=principal,
            action="respond to",
        )
        self.events.emit(
            ev.ASSIGNMENT_ACCEPTED if accept else ev.ASSIGNMENT_DECLINED,
            subject_id=stored.id,
            submission_id=stored.submission_id,
            reviewer_id=stored.reviewer_id,
        )
        return stored

    def start(self, principal: Principal, assignment_id: str) -> Assignment:
        def _build(a: Assignment, r: Reviewer) -> tuple[Assignment, Optional[Reviewer]]:
            return a.model_copy(update={"state": AssignmentState.IN_PROGRESS}), None

        stored, _ = self._commit_change(
            assignment_id,
            _build,
            allowed=frozenset({AssignmentState.ACCEPTED}),
            principal=principal,
            action="start",
        )
        self.events.emit(
            ev.ASSIGNMENT_STARTED,
            subject_id=stored.id,
            submission_id=stored.submission_id,
            reviewer_id=stored.reviewer_id,
        )
        return stored

    def record_completion(
        self,
        principal: Principal,
        assignment_id: str,
        *,
        recommendation: str,
        rating: Optional[int] = None,
        ratings: Optional[ReviewRatings | dict[str, Any]] = None,
        completion_days: Optional[float] = None,
        comments: Optional[str] = None,
        confidential_comments: Optional[str] = None,
    ) -> Assignment:
        """
        提交审稿结论并更新审稿人滚动指标。

        中文注释:
        - 审稿表：分项评分 ratings（originality / methodology / significance / clarity / overall），
          只传单一 rating 视为 overall；两者都传时必须一致。滚动平均分使用 overall。
        - 审稿意见 comments 至少 min_review_comment_length 个字符（去掉首尾空白后计算）。
        - 必须先接受邀请；逾期但从未接受的邀请不能直接提交。
        - completion_days 缺省时按“接受邀请时间 -> 完成时间”计算；是否准时：completed_at <= due_at。
        - 同一任务重复提交会因终态校验失败（不会重复计数）。
        """
        try:
            rec = Recommendation(str(recommendation or "").strip().lower().replace("-", "_"))
        except ValueError:
            raise ValidationFailed(
                "Unknown recommendation",
                recommendation=recommendation,
                allowed=[r.value for r in Recommendation],
            )
        overall, scores = _parse_ratings(rating, ratings)
        min_length = self.config.get().min_review_comment_length
        text = (comments or "").strip()
        if len(text) < min_length:
            raise ValidationFailed(
                f"Review comments must be at least {min_length} characters",
                length=len(text),
                min_length=min_length,
            )
        if completion_days is not None and completion_days < 0:
            raise ValidationFailed("completion_days must not be negative", completion_days=completion_days)

        now = self._now()

        def _build(a: Assignment, r: Reviewer) -> tuple[Assignment, Optional[Reviewer]]:
            if a.responded_at is None:
                raise InvalidAssignmentState(
                    "Invitation must be accepted before the review can be completed",
                    assignment_id=a.id,
                    state=a.state.value,
                )
            days = (
                float(completion_days)
                if completion_days is not None
                else round(max(0.0, (now - a.responded_at).total_seconds() / 86400), 2)
            )
            on_time = now <= a.due_at
            completed = a.model_copy(
                update={
                    "state": AssignmentState.COMPLETED,
                    "completed_at": now,
                    "recommendation": rec,
                    "rating": overall,
                    "ratings": scores,
                    "comments": text,
                    "confidential_comments": confidential_comments,
                }
            )
            updated_reviewer = r.model_copy(
                update={
                    "current_load": max(0, r.current_load - 1),
                    "performance": r.performance.with_completion(rating=overall, completion_days=days, on_time=on_time),
                    "last_active_at": now,
                }
            )
            return completed, updated_reviewer

        stored, reviewer = self._commit_change(
            assignment_id,
            _build,
            allowed=COMPLETABLE_STATES,
            principal=principal,
            action="complete",
        )
        self.events.emit(
            ev.ASSIGNMENT_COMPLETED,
            subject_id=stored.id,
            submission_id=stored.submission_id,
            reviewer_id=stored.reviewer_id,
            recommendation=rec.value,
            on_time=bool(stored.completed_at and stored.completed_at <= stored.due_at),
        )
        return stored

    def withdraw(self, principal: Principal, assignment_id: str) -> Assignment:
        if principal.role not in EDITOR_ROLES:
            raise Forbidden("Only editors can withdraw assignments", role=principal.role.value)

        def _build(a: Assignment, r: Reviewer) -> tuple[Assignment, Optional[Reviewer]]:
            return (
                a.model_copy(update={"state": AssignmentState.WITHDRAWN}),
                r.model_copy(update={"current_load": max(0, r.current_load - 1)}),
            )

        stored, _ = self._commit_change(assignment_id, _build, allowed=OPEN_STATES, action="withdraw")
        self.events.emit(
            ev.ASSIGNMENT_WITHDRAWN,
            subject_id=stored.id,
            submission_id=stored.submission_id,
            reviewer_id=stored.reviewer_id,
            actor_id=principal.id,
        )
        return stored

    def assignments_for(self, *, submission_id: Optional[str] = None, reviewer_id: Optional[str] = None) -> list[Assignment]:
        if submission_id is not None:
            self.repo.get_submission(submission_id)
        if reviewer_id is not None:
            self.repo.get_reviewer(reviewer_id)
        return self.repo.list_assignments(submission_id=submission_id, reviewer_id=reviewer_id)
