from fastapi import APIRouter, Depends

from manuflow.api.v1.common import ok
from manuflow.core.role_matrix import require_action_or_403
from manuflow.core.roles import Principal, get_current_principal
from manuflow.schemas.workflow import CompleteRequest, RespondRequest
from manuflow.services.engine import EditorialEngine, get_engine

router = APIRouter(prefix="/assignments", tags=["Assignments"])


@router.get("/{assignment_id}")
async def get_assignment(
    assignment_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    assignment = engine.repository.get_assignment(assignment_id)
    if assignment.reviewer_id != principal.id:
        require_action_or_403(action="reviewer:view", role=principal.role)
    return ok(assignment.to_record())


@router.post("/{assignment_id}/respond")
async def respond_to_invitation(
    assignment_id: str,
    payload: RespondRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    审稿人接受/拒绝邀请；拒绝会释放一个负载名额。
    """
    require_action_or_403(action="assignment:respond", role=principal.role)
    assignment = engine.directory.respond(principal, assignment_id, accept=payload.accept)
    return ok(assignment.to_record())


@router.post("/{assignment_id}/start")
async def start_review(
    assignment_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="assignment:respond", role=principal.role)
    assignment = engine.directory.start(principal, assignment_id)
    return ok(assignment.to_record())


@router.post("/{assignment_id}/complete")
async def complete_review(
    assignment_id: str,
    payload: CompleteRequest,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="assignment:complete", role=principal.role)
    assignment = engine.directory.record_completion(
        principal,
        assignment_id,
        recommendation=payload.recommendation,
        rating=payload.rating,
        ratings=payload.ratings,
        completion_days=payload.completion_days,
        comments=payload.comments,
        confidential_comments=payload.confidential_comments,
    )
    return ok(assignment.to_record())


@router.post("/{assignment_id}/withdraw")
async def withdraw_assignment(
    assignment_id: str,
    principal: Principal = Depends(get_current_principal),
    engine: EditorialEngine = Depends(get_engine),
):
    require_action_or_403(action="assignment:withdraw", role=principal.role)
    assignment = engine.directory.withdraw(principal, assignment_id)
    return ok(assignment.to_record())
