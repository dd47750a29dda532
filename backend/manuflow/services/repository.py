from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Iterable, Optional, Protocol

from postgrest.exceptions import APIError

from manuflow.core.errors import ArticleNumberConflict, DuplicateAssignment, NotFound, StaleVersion, ValidationFailed
from manuflow.models.assignment import OPEN_STATES, Assignment, AssignmentState
from manuflow.models.decision import Decision
from manuflow.models.reviewer import Reviewer
from manuflow.models.submission import Submission, SubmissionStatus

logger = logging.getLogger("manuflow.repository")


class Repository(Protocol):
    """
    引擎持久层契约。

    中文注释:
    - save_* / commit_* 都是“比较版本 + 写入”的原子单元：expected_version 与存储不一致时抛 StaleVersion，
      且不产生任何写入；成功时存储版本 = expected_version + 1。
    - 调用之间不持有任何锁，冲突靠“拒绝 + 重试”解决。
    """

    def insert_submission(self, submission: Submission) -> Submission: ...

    def get_submission(self, submission_id: str) -> Submission: ...

    def list_submissions(
        self, *, status: Optional[SubmissionStatus] = None, owner_id: Optional[str] = None
    ) -> list[Submission]: ...

    def save_submission(self, submission: Submission, *, expected_version: int) -> Submission: ...

    def commit_transition(self, submission: Submission, decision: Decision, *, expected_version: int) -> Submission: ...

    def list_decisions(self, submission_id: str) -> list[Decision]: ...

    def insert_reviewer(self, reviewer: Reviewer) -> Reviewer: ...

    def get_reviewer(self, reviewer_id: str) -> Reviewer: ...

    def list_reviewers(self) -> list[Reviewer]: ...

    def save_reviewer(self, reviewer: Reviewer, *, expected_version: int) -> Reviewer: ...

    def get_assignment(self, assignment_id: str) -> Assignment: ...

    def list_assignments(
        self,
        *,
        submission_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        states: Optional[Iterable[AssignmentState]] = None,
    ) -> list[Assignment]: ...

    def commit_assignment(
        self,
        assignment: Assignment,
        *,
        expected_version: Optional[int],
        reviewer: Optional[Reviewer] = None,
        expected_reviewer_version: Optional[int] = None,
    ) -> tuple[Assignment, Optional[Reviewer]]: ...


def _bump(model: Any, expected_version: int) -> Any:
    return model.model_copy(update={"version": expected_version + 1})


class InMemoryRepository:
    """
    进程内仓储（本地开发/测试默认后端）。

    中文注释:
    - 每个集合以 id 为键存 to_record() 的结果，读出时 from_record()，与 Supabase 后端共用序列化路径。
    - 决策按 submission_id 建索引用于账本回放；审稿任务按 submission_id 与 reviewer_id 双索引。
    - 锁只覆盖单次“比较 + 写入”，不会跨调用持有。
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._submissions: dict[str, dict[str, Any]] = {}
        self._decisions: dict[str, dict[str, Any]] = {}
        self._decisions_by_submission: dict[str, list[str]] = {}
        self._reviewers: dict[str, dict[str, Any]] = {}
        self._assignments: dict[str, dict[str, Any]] = {}
        self._assignments_by_submission: dict[str, list[str]] = {}
        self._assignments_by_reviewer: dict[str, list[str]] = {}

    # === submissions ===

    def insert_submission(self, submission: Submission) -> Submission:
        with self._lock:
            if submission.id in self._submissions:
                raise ValidationFailed("Submission id already exists", id=submission.id)
            self._submissions[submission.id] = submission.to_record()
        return submission

    def get_submission(self, submission_id: str) -> Submission:
        with self._lock:
            row = self._submissions.get(submission_id)
        if row is None:
            raise NotFound("submission", submission_id)
        return Submission.from_record(row)

    def list_submissions(
        self, *, status: Optional[SubmissionStatus] = None, owner_id: Optional[str] = None
    ) -> list[Submission]:
        with self._lock:
            rows = list(self._submissions.values())
        out = [Submission.from_record(r) for r in rows]
        if status is not None:
            out = [s for s in out if s.status == status]
        if owner_id is not None:
            out = [s for s in out if s.owner_id == owner_id]
        return sorted(out, key=lambda s: s.created_at)

    def _check_submission_cas(self, submission_id: str, expected_version: int) -> dict[str, Any]:
        row = self._submissions.get(submission_id)
        if row is None:
            raise NotFound("submission", submission_id)
        if row["version"] != expected_version:
            raise StaleVersion(
                "Submission was modified by another request",
                submission_id=submission_id,
                expected_version=expected_version,
                current_version=row["version"],
            )
        return row

    def _check_article_number(self, submission: Submission) -> None:
        if submission.article_number is None or submission.volume is None:
            return
        for other_id, other in self._submissions.items():
            if other_id == submission.id:
                continue
            if other.get("volume") == submission.volume and other.get("article_number") == submission.article_number:
                raise ArticleNumberConflict(
                    "Article number already assigned in this volume",
                    volume=submission.volume,
                    article_number=submission.article_number,
                )

    def save_submission(self, submission: Submission, *, expected_version: int) -> Submission:
        stored = _bump(submission, expected_version)
        with self._lock:
            self._check_submission_cas(submission.id, expected_version)
            self._check_article_number(stored)
            self._submissions[submission.id] = stored.to_record()
        return stored

    def commit_transition(self, submission: Submission, decision: Decision, *, expected_version: int) -> Submission:
        stored = _bump(submission, expected_version)
        with self._lock:
            self._check_submission_cas(submission.id, expected_version)
            self._check_article_number(stored)
            self._decisions[decision.id] = decision.to_record()
            self._decisions_by_submission.setdefault(submission.id, []).append(decision.id)
            self._submissions[submission.id] = stored.to_record()
        return stored

    def list_decisions(self, submission_id: str) -> list[Decision]:
        with self._lock:
            ids = list(self._decisions_by_submission.get(submission_id, []))
            rows = [self._decisions[i] for i in ids]
        return sorted((Decision.from_record(r) for r in rows), key=lambda d: d.submission_version)

    # === reviewers ===

    def insert_reviewer(self, reviewer: Reviewer) -> Reviewer:
        with self._lock:
            if reviewer.id in self._reviewers:
                raise ValidationFailed("Reviewer id already exists", id=reviewer.id)
            if any(r.get("email") == reviewer.email for r in self._reviewers.values()):
                raise ValidationFailed("Reviewer email already exists", email=reviewer.email)
            self._reviewers[reviewer.id] = reviewer.to_record()
        return reviewer

    def get_reviewer(self, reviewer_id: str) -> Reviewer:
        with self._lock:
            row = self._reviewers.get(reviewer_id)
        if row is None:
            raise NotFound("reviewer", reviewer_id)
        return Reviewer.from_record(row)

    def list_reviewers(self) -> list[Reviewer]:
        with self._lock:
            rows = list(self._reviewers.values())
        return sorted((Reviewer.from_record(r) for r in rows), key=lambda r: r.created_at)

    def _check_reviewer_cas(self, reviewer_id: str, expected_version: int) -> None:
        row = self._reviewers.get(reviewer_id)
        if row is None:
            raise NotFound("reviewer", reviewer_id)
        if row["version"] != expected_version:
            raise StaleVersion(
                "Reviewer was modified by another request",
                reviewer_id=reviewer_id,
                expected_version=expected_version,
                current_version=row["version"],
            )

    def save_reviewer(self, reviewer: Reviewer, *, expected_version: int) -> Reviewer:
        stored = _bump(reviewer, expected_version)
        with self._lock:
            self._check_reviewer_cas(reviewer.id, expected_version)
            self._reviewers[reviewer.id] = stored.to_record()
        return stored

    # === assignments ===

    def get_assignment(self, assignment_id: str) -> Assignment:
        with self._lock:
            row = self._assignments.get(assignment_id)
        if row is None:
            raise NotFound("assignment", assignment_id)
        return Assignment.from_record(row)

    def list_assignments(
        self,
        *,
        submission_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        states: Optional[Iterable[AssignmentState]] = None,
    ) -> list[Assignment]:
        with self._lock:
            if submission_id is not None:
                ids = list(self._assignments_by_submission.get(submission_id, []))
            elif reviewer_id is not None:
                ids = list(self._assignments_by_reviewer.get(reviewer_id, []))
            else:
                ids = list(self._assignments)
            rows = [self._assignments[i] for i in ids]
        out = [Assignment.from_record(r) for r in rows]
        if reviewer_id is not None:
            out = [a for a in out if a.reviewer_id == reviewer_id]
        if states is not None:
            wanted = set(states)
            out = [a for a in out if a.state in wanted]
        return sorted(out, key=lambda a: a.invited_at)

    def commit_assignment(
        self,
        assignment: Assignment,
        *,
        expected_version: Optional[int],
        reviewer: Optional[Reviewer] = None,
        expected_reviewer_version: Optional[int] = None,
    ) -> tuple[Assignment, Optional[Reviewer]]:
        """
        审稿任务与审稿人记录在同一原子单元内写入（负载的 check-and-increment）。

        expected_version 为 None 表示新建任务。
        """
        stored_reviewer = _bump(reviewer, expected_reviewer_version) if reviewer is not None else None
        with self._lock:
            if expected_version is None:
                for other_id in self._assignments_by_submission.get(assignment.submission_id, []):
                    other = self._assignments[other_id]
                    if other["reviewer_id"] == assignment.reviewer_id and AssignmentState(other["state"]) in OPEN_STATES:
                        raise DuplicateAssignment(
                            "Reviewer already has an open assignment for this submission",
                            submission_id=assignment.submission_id,
                            reviewer_id=assignment.reviewer_id,
                        )
                stored = assignment
            else:
                row = self._assignments.get(assignment.id)
                if row is None:
                    raise NotFound("assignment", assignment.id)
                if row["version"] != expected_version:
                    raise StaleVersion(
                        "Assignment was modified by another request",
                        assignment_id=assignment.id,
                        expected_version=expected_version,
                        current_version=row["version"],
                    )
                stored = _bump(assignment, expected_version)
            if stored_reviewer is not None:
                self._check_reviewer_cas(stored_reviewer.id, int(expected_reviewer_version or 0))

            if expected_version is None:
                self._assignments_by_submission.setdefault(stored.submission_id, []).append(stored.id)
                self._assignments_by_reviewer.setdefault(stored.reviewer_id, []).append(stored.id)
            self._assignments[stored.id] = stored.to_record()
            if stored_reviewer is not None:
                self._reviewers[stored_reviewer.id] = stored_reviewer.to_record()
        return stored, stored_reviewer


# === Supabase 后端 ===


def _rows(resp: Any) -> list[dict[str, Any]]:
    data = getattr(resp, "data", None)
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


def _is_unique_violation(err: Exception) -> bool:
    code = str(getattr(err, "code", "") or "")
    return code == "23505" or "23505" in str(err) or "duplicate key" in str(err).lower()


class SupabaseRepository:
    """
    基于 Supabase(PostgREST) 的仓储实现。

    中文注释:
    1) 单表 CAS 通过 `update ... eq("version", expected)` 完成，返回 0 行即为冲突。
    2) 跨表原子单元（状态流转 + 账本、任务 + 审稿人负载）走 Postgres 函数（见 backend/migrations），
       由数据库事务保证“要么全部写入，要么全部不写”。
    """

    def __init__(self, db_client=None) -> None:
        if db_client is None:
            from manuflow.lib.api_client import supabase_admin

            db_client = supabase_admin
        self._db = db_client

    def _get_row(self, table: str, row_id: str, kind: str) -> dict[str, Any]:
        resp = self._db.table(table).select("*").eq("id", row_id).limit(1).execute()
        rows = _rows(resp)
        if not rows:
            raise NotFound(kind, row_id)
        return rows[0]

    def _cas_update(self, table: str, kind: str, record: dict[str, Any], expected_version: int) -> dict[str, Any]:
        row_id = record["id"]
        try:
            resp = (
                self._db.table(table)
                .update(record)
                .eq("id", row_id)
                .eq("version", expected_version)
                .execute()
            )
        except APIError as e:
            if _is_unique_violation(e):
                raise ArticleNumberConflict(
                    "Article number already assigned in this volume",
                    volume=record.get("volume"),
                    article_number=record.get("article_number"),
                ) from e
            raise
        rows = _rows(resp)
        if rows:
            return rows[0]
        current = self._get_row(table, row_id, kind)
        raise StaleVersion(
            f"{kind.capitalize()} was modified by another request",
            expected_version=expected_version,
            current_version=current.get("version"),
            **{f"{kind}_id": row_id},
        )

    # === submissions ===

    def insert_submission(self, submission: Submission) -> Submission:
        resp = self._db.table("submissions").insert(submission.to_record()).execute()
        rows = _rows(resp)
        return Submission.from_record(rows[0]) if rows else submission

    def get_submission(self, submission_id: str) -> Submission:
        return Submission.from_record(self._get_row("submissions", submission_id, "submission"))

    def list_submissions(
        self, *, status: Optional[SubmissionStatus] = None, owner_id: Optional[str] = None
    ) -> list[Submission]:
        query = self._db.table("submissions").select("*")
        if status is not None:
            query = query.eq("status", status.value)
        if owner_id is not None:
            query = query.eq("owner_id", owner_id)
        resp = query.order("created_at").execute()
        return [Submission.from_record(r) for r in _rows(resp)]

    def save_submission(self, submission: Submission, *, expected_version: int) -> Submission:
        stored = _bump(submission, expected_version)
        row = self._cas_update("submissions", "submission", stored.to_record(), expected_version)
        return Submission.from_record(row)

    def commit_transition(self, submission: Submission, decision: Decision, *, expected_version: int) -> Submission:
        stored = _bump(submission, expected_version)
        resp = self._db.rpc(
            "apply_submission_transition",
            {
                "p_submission": stored.to_record(),
                "p_expected_version": expected_version,
                "p_decision": decision.to_record(),
            },
        ).execute()
        rows = _rows(resp)
        if not rows or not rows[0]:
            current = self._get_row("submissions", submission.id, "submission")
            raise StaleVersion(
                "Submission was modified by another request",
                submission_id=submission.id,
                expected_version=expected_version,
                current_version=current.get("version"),
            )
        return stored

    def list_decisions(self, submission_id: str) -> list[Decision]:
        resp = (
            self._db.table("decisions")
            .select("*")
            .eq("submission_id", submission_id)
            .order("submission_version")
            .execute()
        )
        return [Decision.from_record(r) for r in _rows(resp)]

    # === reviewers ===

    def insert_reviewer(self, reviewer: Reviewer) -> Reviewer:
        try:
            resp = self._db.table("reviewers").insert(reviewer.to_record()).execute()
        except APIError as e:
            if _is_unique_violation(e):
                raise ValidationFailed("Reviewer email already exists", email=reviewer.email) from e
            raise
        rows = _rows(resp)
        return Reviewer.from_record(rows[0]) if rows else reviewer

    def get_reviewer(self, reviewer_id: str) -> Reviewer:
        return Reviewer.from_record(self._get_row("reviewers", reviewer_id, "reviewer"))

    def list_reviewers(self) -> list[Reviewer]:
        resp = self._db.table("reviewers").select("*").order("created_at").execute()
        return [Reviewer.from_record(r) for r in _rows(resp)]

    def save_reviewer(self, reviewer: Reviewer, *, expected_version: int) -> Reviewer:
        stored = _bump(reviewer, expected_version)
        row = self._cas_update("reviewers", "reviewer", stored.to_record(), expected_version)
        return Reviewer.from_record(row)

    # === assignments ===

    def get_assignment(self, assignment_id: str) -> Assignment:
        return Assignment.from_record(self._get_row("assignments", assignment_id, "assignment"))

    def list_assignments(
        self,
        *,
        submission_id: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        states: Optional[Iterable[AssignmentState]] = None,
    ) -> list[Assignment]:
        query = self._db.table("assignments").select("*")
        if submission_id is not None:
            query = query.eq("submission_id", submission_id)
        if reviewer_id is not None:
            query = query.eq("reviewer_id", reviewer_id)
        if states is not None:
            query = query.in_("state", [AssignmentState(s).value for s in states])
        resp = query.order("invited_at").execute()
        return [Assignment.from_record(r) for r in _rows(resp)]

    def commit_assignment(
        self,
        assignment: Assignment,
        *,
        expected_version: Optional[int],
        reviewer: Optional[Reviewer] = None,
        expected_reviewer_version: Optional[int] = None,
    ) -> tuple[Assignment, Optional[Reviewer]]:
        stored = assignment if expected_version is None else _bump(assignment, expected_version)
        stored_reviewer = _bump(reviewer, expected_reviewer_version) if reviewer is not None else None
        resp = self._db.rpc(
            "commit_assignment_change",
            {
                "p_assignment": stored.to_record(),
                "p_expected_version": expected_version,
                "p_reviewer": stored_reviewer.to_record() if stored_reviewer is not None else None,
                "p_expected_reviewer_version": expected_reviewer_version,
            },
        ).execute()
        rows = _rows(resp)
        outcome = str(rows[0] if rows else "").strip()
        if outcome == "ok":
            return stored, stored_reviewer
        if outcome == "duplicate":
            raise DuplicateAssignment(
                "Reviewer already has an open assignment for this submission",
                submission_id=assignment.submission_id,
                reviewer_id=assignment.reviewer_id,
            )
        if outcome == "stale_reviewer":
            raise StaleVersion(
                "Reviewer was modified by another request",
                reviewer_id=reviewer.id if reviewer else None,
                expected_version=expected_reviewer_version,
            )
        if outcome == "missing":
            raise NotFound("assignment", assignment.id)
        raise StaleVersion(
            "Assignment was modified by another request",
            assignment_id=assignment.id,
            expected_version=expected_version,
        )
