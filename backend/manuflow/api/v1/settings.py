import logging

from fastapi import APIRouter, Depends

from manuflow.api.v1.common import ok
from manuflow.core.roles import Principal, Role, require_any_role
from manuflow.schemas.workflow import WorkflowSettingsUpdate
from manuflow.services.engine import EditorialEngine, get_engine

router = APIRouter(prefix="/settings", tags=["Settings"])
logger = logging.getLogger("manuflow.settings")


@router.get("/workflow")
async def get_workflow_settings(
    _principal: Principal = Depends(require_any_role([Role.ADMIN, Role.EDITOR_IN_CHIEF])),
    engine: EditorialEngine = Depends(get_engine),
):
    return ok(engine.config.get().to_dict())


@router.patch("/workflow")
async def update_workflow_settings(
    payload: WorkflowSettingsUpdate,
    principal: Principal = Depends(require_any_role([Role.ADMIN])),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    热更新流程策略（审稿人数、法定人数、评分权重、截止天数等）。

    中文注释: 只替换显式传入的字段；下一次调用立即按新配置执行，无需重启。
    """
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    updated = engine.config.update(**changes)
    logger.info("[Settings] workflow config updated by %s: %s", principal.id, sorted(changes))
    return ok(updated.to_dict())
