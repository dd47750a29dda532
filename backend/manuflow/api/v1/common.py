from typing import Any

from manuflow.core.roles import Principal
from manuflow.core.role_matrix import require_action_or_403
from manuflow.core.errors import Forbidden
from manuflow.models.submission import Submission
from manuflow.services.workflow_service import SubmissionWorkflowService


def ok(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


def submission_view(submission: Submission, principal: Principal) -> dict[str, Any]:
    """
    稿件详情 + 调用者当前可执行的决策（前端据此渲染按钮，但权限以后端为准）。
    """
    data = submission.to_record()
    data["allowed_decisions"] = SubmissionWorkflowService.allowed_next(submission, principal)
    return data


def ensure_can_view(workflow: SubmissionWorkflowService, submission: Submission, principal: Principal) -> None:
    require_action_or_403(action="submission:view", role=principal.role)
    if not workflow.can_view(principal, submission):
        raise Forbidden("Submission is not visible to this user", submission_id=submission.id)
