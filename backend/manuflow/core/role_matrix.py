from __future__ import annotations

from fastapi import HTTPException

from manuflow.core.roles import Role

# 中文注释：
# - 这里集中定义“角色 -> 动作”权限矩阵，避免权限逻辑散落在各路由。
# - 稿件状态流转的合法性由状态机表决定（models/decision.py），这里只负责入口级授权。

ROLE_ACTIONS: dict[Role, set[str]] = {
    Role.AUTHOR: {
        "submission:create",
        "submission:edit",
        "submission:view",
        "submission:transition",
    },
    Role.REVIEWER: {
        "submission:view",
        "assignment:respond",
        "assignment:complete",
    },
    Role.EDITORIAL_ASSISTANT: {
        "submission:view",
        "ledger:view",
        "reviewer:view",
    },
    Role.ASSOCIATE_EDITOR: {
        "submission:view",
        "submission:transition",
        "ledger:view",
        "tally:view",
        "reviewer:view",
        "reviewer:manage",
        "reviewer:invite",
        "reviewer:override_load",
        "scheduler:run",
        "assignment:withdraw",
    },
    Role.EDITOR_IN_CHIEF: {
        "submission:view",
        "submission:transition",
        "ledger:view",
        "tally:view",
        "reviewer:view",
        "reviewer:manage",
        "reviewer:set_status",
        "reviewer:invite",
        "reviewer:override_load",
        "scheduler:run",
        "assignment:withdraw",
    },
    Role.ADMIN: {
        "*",
    },
}


def can_perform_action(*, action: str, role: Role | str | None) -> bool:
    """
    判定角色是否可执行某动作。

    中文注释：
    - admin 拥有全局通配权限；
    - 其余角色按 ROLE_ACTIONS 显式授权。
    """
    try:
        normalized = Role(role) if role is not None else None
    except ValueError:
        return False
    if normalized is None:
        return False
    allowed = ROLE_ACTIONS.get(normalized) or set()
    return "*" in allowed or action in allowed


def require_action_or_403(*, action: str, role: Role | str | None) -> None:
    if not can_perform_action(action=action, role=role):
        raise HTTPException(status_code=403, detail=f"Insufficient permission for action: {action}")
