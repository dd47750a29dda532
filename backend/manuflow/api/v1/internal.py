from fastapi import APIRouter, Depends

from manuflow.core.security import require_admin_key
from manuflow.services.engine import EditorialEngine, get_engine

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.post("/cron/deadline-sweep")
async def deadline_sweep(
    _admin: None = Depends(require_admin_key),
    engine: EditorialEngine = Depends(get_engine),
):
    """
    触发审稿截止扫描（内部接口）：标记逾期、发送临期提醒。
    """
    result = engine.sweeper.run()
    return {"success": True, **result}
