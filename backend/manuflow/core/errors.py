from __future__ import annotations

from typing import Any, Optional


class WorkflowError(Exception):
    """
    编辑流程引擎的统一异常基类。

    中文注释:
    - 所有校验失败都在任何写入之前抛出，保证“要么全部生效，要么完全不变”。
    - code 对应 API 响应里的 type 字段；context 给前端自我纠正用（当前状态、可选决策等）。
    """

    code = "workflow_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "type": self.code, "context": self.context}


class InvalidTransition(WorkflowError):
    code = "invalid_transition"
    status_code = 409


class MissingAssignment(WorkflowError):
    code = "missing_assignment"
    status_code = 422


class StaleVersion(WorkflowError):
    """乐观锁冲突：调用方需要重新读取后重试（总是可安全重试）。"""

    code = "stale_version"
    status_code = 409


class ReviewerUnavailable(WorkflowError):
    code = "reviewer_unavailable"
    status_code = 409


class LoadExceeded(WorkflowError):
    code = "load_exceeded"
    status_code = 409


class NotFound(WorkflowError):
    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, object_id: Optional[str] = None) -> None:
        super().__init__(f"{kind} not found", kind=kind, id=object_id)


class Forbidden(WorkflowError):
    code = "forbidden"
    status_code = 403


class QuorumNotMet(WorkflowError):
    code = "quorum_not_met"
    status_code = 409


class DuplicateAssignment(WorkflowError):
    code = "duplicate_assignment"
    status_code = 409


class InvalidAssignmentState(WorkflowError):
    code = "invalid_assignment_state"
    status_code = 409


class ArticleNumberConflict(WorkflowError):
    code = "article_number_conflict"
    status_code = 409


class ValidationFailed(WorkflowError):
    code = "validation_failed"
    status_code = 422
