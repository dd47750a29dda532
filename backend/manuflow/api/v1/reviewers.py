from typing import Optional

from fastapi import APIRouter, Depends, Query

from manuflow.api.v1.common import ok
from manuflow.core.errors import Forbidden, ValidationFailed
from manuflow.core.role_matrix import can_perform_action, require_action_or_403
from manuflow.core.roles import Principal, get_current_principal
from manuflow.models.reviewer import ReviewerStatus
from manuflow.schemas.workflow import (
    InviteRequest,
    ReviewerCreateRequest,
    ReviewerStatusRequest,
    ReviewerUpdateRequest,
)
from manuflow.services.engine import EditorialEngine, get_engine
from manuflow.services.reviewer_service import ReviewerFilter

router = APIRouter(prefix="/reviewers", tags=["Reviewers"])


@router.post("", status_code=201)
async def add_reviewer(
    payload: ReviewerCreateRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="reviewer:manage", role=principal.role)
    reviewer = engine.directory.add_reviewer(
        name=payload.name,
        email=payload.email,
        affiliation=payload.affiliation,
        expertise=payload.expertise,
        max_load=payload.max_load,
        reviewer_id=payload.id,
    )
    return ok(reviewer.to_record())


@router.get("")
async def search_reviewers(
    status: Optional[str] = Query(default=None),
    expertise: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None, description="姓名/邮箱/单位/专业方向模糊搜索"),
    available_only: bool = Query(default=False),
    top_performers: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="reviewer:view", role=principal.role)
    status_filter: Optional[ReviewerStatus] = None
    if status:
        try:
            status_filter = ReviewerStatus(status.strip().lower())
        except ValueError:
            raise ValidationFailed("Unknown reviewer status", status=status, allowed=[s.value for s in ReviewerStatus])
    flt = ReviewerFilter(
        status=status_filter,
        expertise=expertise,
        search=q,
        available_only=available_only,
        top_performers=top_performers,
    )
    return ok([r.to_record() for r in engine.directory.query(flt)])


@router.get("/summary")
async def reviewer_summary(
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    名录看板统计：各状态人数、平均负载、平均评分等。
    """
    require_action_or_403(action="reviewer:view", role=principal.role)
    return ok(engine.directory.summary())


@router.get("/{reviewer_id}")
async def get_reviewer(
    reviewer_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    # 中文注释: 审稿人本人可查看自己的档案（含指标）
    if principal.id != reviewer_id:
        require_action_or_403(action="reviewer:view", role=principal.role)
    return ok(engine.directory.get(reviewer_id).to_record())


@router.patch("/{reviewer_id}")
async def update_reviewer(
    reviewer_id: str,
    payload: ReviewerUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="reviewer:manage", role=principal.role)
    reviewer = engine.directory.update_reviewer(reviewer_id, **payload.model_dump(exclude_unset=True))
    return ok(reviewer.to_record())


@router.post("/{reviewer_id}/status")
async def set_reviewer_status(
    reviewer_id: str,
    payload: ReviewerStatusRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    激活 / 停用 / 暂停审稿人。暂停立即阻止新邀请，进行中的任务需编辑显式撤回。
    """
    require_action_or_403(action="reviewer:set_status", role=principal.role)
    reviewer = engine.directory.record_decision(reviewer_id, payload.status, principal=principal)
    return ok(reviewer.to_record())


@router.post("/{reviewer_id}/invite", status_code=201)
async def invite_reviewer(
    reviewer_id: str,
    payload: InviteRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="reviewer:invite", role=principal.role)
    if payload.override and not can_perform_action(action="reviewer:override_load", role=principal.role):
        raise Forbidden("Load override is not permitted for this role", role=principal.role.value)
    assignment = engine.directory.invite(
        principal,
        payload.submission_id,
        reviewer_id,
        override=payload.override,
        due_days=payload.due_days,
    )
    return ok(assignment.to_record())


@router.get("/{reviewer_id}/assignments")
async def list_reviewer_assignments(
    reviewer_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    if principal.id != reviewer_id:
        require_action_or_403(action="reviewer:view", role=principal.role)
    items = engine.directory.assignments_for(reviewer_id=reviewer_id)
    return ok([a.to_record() for a in items])
