from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from manuflow.core.config import ConfigHolder, WorkflowConfig
from manuflow.core.errors import (
    DuplicateAssignment,
    InvalidTransition,
    LoadExceeded,
    ReviewerUnavailable,
    StaleVersion,
)
from manuflow.core.roles import Principal
from manuflow.models import event as ev
from manuflow.models.assignment import OPEN_STATES, Assignment, AssignmentState, Recommendation
from manuflow.models.reviewer import Reviewer, ReviewerStatus
from manuflow.models.submission import Submission, SubmissionStatus
from manuflow.services.event_service import EventEmitter
from manuflow.services.repository import Repository
from manuflow.services.reviewer_service import MAX_CAS_ATTEMPTS, ReviewerDirectory

logger = logging.getLogger("manuflow.scheduler")

_NEVER = datetime.min.replace(tzinfo=timezone.utc)

# 邀请失败但可以换下一位候选人的情况（并发抢占/状态变化）
_FALLTHROUGH_ERRORS = (LoadExceeded, ReviewerUnavailable, StaleVersion, DuplicateAssignment)


@dataclass(frozen=True)
class RankedCandidate:
    reviewer: Reviewer
    score: float
    matched_expertise: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviewer_id": self.reviewer.id,
            "name": self.reviewer.name,
            "score": round(self.score, 4),
            "matched_expertise": list(self.matched_expertise),
            "current_load": self.reviewer.current_load,
            "max_load": self.reviewer.max_load,
        }


@dataclass
class SchedulingResult:
    submission_id: str
    requested: int
    invited: list[Assignment] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    understaffed: bool = False

    @property
    def warning(self) -> Optional[dict[str, Any]]:
        # Understaffed 只是提示，不是错误
        if not self.understaffed:
            return None
        return {
            "type": "understaffed",
            "detail": f"Only {len(self.invited)} of {self.requested} reviewers could be invited",
            "invited": len(self.invited),
            "requested": self.requested,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "requested": self.requested,
            "invited": [a.to_record() for a in self.invited],
            "skipped": self.skipped,
            "understaffed": self.understaffed,
            "warning": self.warning,
        }


@dataclass(frozen=True)
class RecommendationTally:
    submission_id: str
    round: int
    counts: dict[str, int]
    completed: int
    pending: int
    required: int
    quorum_met: bool
    positive: int
    advisory: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "round": self.round,
            "counts": dict(self.counts),
            "completed": self.completed,
            "pending": self.pending,
            "required": self.required,
            "quorum_met": self.quorum_met,
            "positive": self.positive,
            "advisory": self.advisory,
        }


def score_reviewer(reviewer: Reviewer, cfg: WorkflowConfig) -> float:
    """score = w1*(1 - load/max) + w2*avgRating/5 + w3*onTimeRate/100"""
    perf = reviewer.performance
    return (
        cfg.weight_load * (1.0 - reviewer.load_ratio)
        + cfg.weight_rating * (perf.avg_rating / 5.0)
        + cfg.weight_on_time * (perf.on_time_rate / 100.0)
    )


class AssignmentScheduler:
    """
    审稿人自动匹配 + 外审结论汇总。

    中文注释:
    1) 候选集：active、未满负载、专长与稿件关键词有交集、非作者本人、本轮未被邀请/未拒绝过。
    2) 排序：综合分降序；同分时 last_active_at 最早者优先（分散负载），再按 id 稳定排序。
    3) 人数不足时全部邀请并标记 understaffed（提示，不阻断流程）。
    4) 汇总只是给人工决策的参考，引擎从不依据汇总自动流转状态。
    """

    def __init__(
        self,
        repository: Repository,
        directory: ReviewerDirectory,
        config: ConfigHolder,
        events: EventEmitter,
    ) -> None:
        self.repo = repository
        self.directory = directory
        self.config = config
        self.events = events

    def _round_assignments(self, submission: Submission) -> list[Assignment]:
        return [
            a
            for a in self.repo.list_assignments(submission_id=submission.id)
            if a.round == submission.revision_round
        ]

    def rank_candidates(self, submission: Submission) -> list[RankedCandidate]:
        cfg = self.config.get()
        keywords = set(submission.keywords)
        author_emails = submission.author_emails
        excluded = {a.reviewer_id for a in self._round_assignments(submission)}

        ranked: list[RankedCandidate] = []
        for reviewer in self.repo.list_reviewers():
            if reviewer.status != ReviewerStatus.ACTIVE or not reviewer.has_capacity:
                continue
            if reviewer.id in excluded or reviewer.email in author_emails:
                continue
            matched = tuple(sorted(keywords.intersection(reviewer.expertise)))
            if not matched:
                continue
            ranked.append(RankedCandidate(reviewer=reviewer, score=score_reviewer(reviewer, cfg), matched_expertise=matched))

        ranked.sort(key=lambda c: (-c.score, c.reviewer.last_active_at or _NEVER, c.reviewer.id))
        return ranked

    def auto_assign(self, principal: Principal, submission_id: str, *, count: Optional[int] = None) -> SchedulingResult:
        submission = self.repo.get_submission(submission_id)
        if submission.status != SubmissionStatus.UNDER_REVIEW:
            raise InvalidTransition(
                "Reviewers can only be scheduled while the submission is under review",
                current_status=submission.status.value,
            )

        target = count if count is not None else self.config.get().min_reviewers_for(submission.article_type)
        staffed = [
            a
            for a in self._round_assignments(submission)
            if a.state in OPEN_STATES or a.state == AssignmentState.COMPLETED
        ]
        needed = max(0, target - len(staffed))
        result = SchedulingResult(submission_id=submission_id, requested=needed)

        for candidate in self.rank_candidates(submission):
            if len(result.invited) >= needed:
                break
            try:
                assignment = self.directory.invite(principal, submission_id, candidate.reviewer.id)
            except _FALLTHROUGH_ERRORS as e:
                # 中文注释: 并发邀请失败时退到下一位候选人
                logger.info("[Scheduler] skip reviewer %s for %s: %s", candidate.reviewer.id, submission_id, e)
                result.skipped.append({"reviewer_id": candidate.reviewer.id, "reason": getattr(e, "code", "error")})
                continue
            result.invited.append(assignment)

        result.understaffed = len(result.invited) < needed
        self._set_understaffed(submission_id, result.understaffed)
        if result.understaffed:
            logger.warning(
                "[Scheduler] submission %s understaffed: %s/%s invited",
                submission_id,
                len(result.invited),
                needed,
            )
            self.events.emit(
                ev.SUBMISSION_UNDERSTAFFED,
                subject_id=submission_id,
                invited=len(result.invited),
                requested=needed,
            )
        return result

    def _set_understaffed(self, submission_id: str, flag: bool) -> None:
        for attempt in range(MAX_CAS_ATTEMPTS):
            current = self.repo.get_submission(submission_id)
            if current.understaffed == flag:
                return
            try:
                self.repo.save_submission(
                    current.model_copy(update={"understaffed": flag}),
                    expected_version=current.version,
                )
                return
            except StaleVersion:
                if attempt == MAX_CAS_ATTEMPTS - 1:
                    # 中文注释: 标记位只是提示，写入冲突不影响邀请结果
                    logger.warning("[Scheduler] failed to flag understaffed on %s", submission_id)
                    return

    def tally(self, submission: Submission) -> RecommendationTally:
        """
        本轮外审结论统计。

        - accept + minor_revision 计为 positive；
        - 法定人数：按稿件类型配置，未配置时 = 本轮所有未拒绝、未撤回的邀请；
        - advisory：positive / major_revision / reject 三者取最多，平票时为 revise。
        """
        assignments = [
            a
            for a in self._round_assignments(submission)
            if a.state not in {AssignmentState.DECLINED, AssignmentState.WITHDRAWN}
        ]
        completed = [a for a in assignments if a.state == AssignmentState.COMPLETED]
        counts = {r.value: 0 for r in Recommendation}
        for a in completed:
            if a.recommendation is not None:
                counts[a.recommendation.value] += 1

        configured = self.config.get().quorum_for(submission.article_type)
        required = configured if configured is not None else len(assignments)
        positive = counts[Recommendation.ACCEPT.value] + counts[Recommendation.MINOR_REVISION.value]

        advisory: Optional[str] = None
        if completed:
            buckets = {
                "accept": positive,
                "revise": counts[Recommendation.MAJOR_REVISION.value],
                "reject": counts[Recommendation.REJECT.value],
            }
            top = max(buckets.values())
            leaders = [k for k, v in buckets.items() if v == top]
            advisory = leaders[0] if len(leaders) == 1 else "revise"

        return RecommendationTally(
            submission_id=submission.id,
            round=submission.revision_round,
            counts=counts,
            completed=len(completed),
            pending=len(assignments) - len(completed),
            required=required,
            quorum_met=len(completed) >= required and (required > 0 or configured is not None),
            positive=positive,
            advisory=advisory,
        )
