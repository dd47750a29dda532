from typing import Optional

from fastapi import APIRouter, Depends, Query

from manuflow.api.v1.common import ensure_can_view, ok, submission_view
from manuflow.core.errors import ValidationFailed
from manuflow.core.role_matrix import require_action_or_403
from manuflow.core.roles import Principal, Role, get_current_principal
from manuflow.models.submission import SubmissionStatus
from manuflow.schemas.workflow import (
    AutoAssignRequest,
    PublicationAssignRequest,
    SubmissionCreate,
    SubmissionUpdate,
    TransitionRequest,
)
from manuflow.services.engine import EditorialEngine, get_engine

router = APIRouter(prefix="/submissions", tags=["Submissions"])


@router.post("", status_code=201)
async def create_submission(
    payload: SubmissionCreate,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    作者创建草稿（status=draft, version=0）。
    """
    require_action_or_403(action="submission:create", role=principal.role)
    submission = engine.workflow.create_draft(principal, **payload.model_dump())
    return ok(submission_view(submission, principal))


@router.get("")
async def list_submissions(
    status: Optional[str] = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="submission:view", role=principal.role)
    status_filter: Optional[SubmissionStatus] = None
    if status:
        try:
            status_filter = SubmissionStatus(status.strip().lower())
        except ValueError:
            raise ValidationFailed("Unknown status", status=status, allowed=[s.value for s in SubmissionStatus])
    items = engine.workflow.list_for(principal, status=status_filter)
    return ok([submission_view(s, principal) for s in items])


@router.get("/{submission_id}")
async def get_submission(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    submission = engine.workflow.get(submission_id)
    ensure_can_view(engine.workflow, submission, principal)
    return ok(submission_view(submission, principal))


@router.patch("/{submission_id}")
async def update_submission(
    submission_id: str,
    payload: SubmissionUpdate,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="submission:edit", role=principal.role)
    changes = payload.model_dump(exclude_unset=True, exclude={"version"})
    submission = engine.workflow.update_draft(principal, submission_id, version=payload.version, **changes)
    return ok(submission_view(submission, principal))


@router.post("/{submission_id}/transition")
async def transition_submission(
    submission_id: str,
    payload: TransitionRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    执行一次状态流转。

    中文注释:
    - 角色只来自 token（Principal），请求体中的 role 字段不会被读取；
    - 版本号不匹配 -> 409 stale_version，调用方需重新读取后再试。
    """
    require_action_or_403(action="submission:transition", role=principal.role)
    result = engine.workflow.transition(
        principal,
        submission_id,
        payload.decision,
        version=payload.version,
        assigned_editor=payload.assigned_editor,
        comments=payload.comments,
        priority=payload.priority,
        quorum_override=payload.quorum_override,
    )
    data = {
        "submission": submission_view(result.submission, principal),
        "decision": result.decision.to_record(),
    }
    if result.scheduling is not None:
        data["scheduling"] = result.scheduling.to_dict()
    return ok(data)


@router.get("/{submission_id}/decisions")
async def list_decisions(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    决策账本回放（按提交顺序）。作者可查看自己稿件的账本。
    """
    submission = engine.workflow.get(submission_id)
    if principal.role == Role.AUTHOR:
        ensure_can_view(engine.workflow, submission, principal)
    else:
        require_action_or_403(action="ledger:view", role=principal.role)
    return ok([d.to_record() for d in engine.workflow.ledger(submission_id)])


@router.get("/{submission_id}/assignments")
async def list_submission_assignments(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="reviewer:view", role=principal.role)
    items = engine.directory.assignments_for(submission_id=submission_id)
    return ok([a.to_record() for a in items])


@router.get("/{submission_id}/candidates")
async def rank_candidates(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="scheduler:run", role=principal.role)
    submission = engine.workflow.get(submission_id)
    return ok([c.to_dict() for c in engine.scheduler.rank_candidates(submission)])


@router.post("/{submission_id}/auto-assign")
async def auto_assign(
    submission_id: str,
    payload: Optional[AutoAssignRequest] = None,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    按评分为稿件自动邀请审稿人；人数不足时返回 understaffed 警告而非报错。
    """
    require_action_or_403(action="scheduler:run", role=principal.role)
    count = payload.count if payload else None
    result = engine.scheduler.auto_assign(principal, submission_id, count=count)
    return ok(result.to_dict())


@router.get("/{submission_id}/tally")
async def recommendation_tally(
    submission_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="tally:view", role=principal.role)
    submission = engine.workflow.get(submission_id)
    return ok(engine.scheduler.tally(submission).to_dict())


@router.post("/{submission_id}/publication")
async def assign_publication(
    submission_id: str,
    payload: PublicationAssignRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    submission = engine.workflow.assign_publication(
        principal,
        submission_id,
        version=payload.version,
        volume=payload.volume,
        article_number=payload.article_number,
    )
    return ok(submission_view(submission, principal))
