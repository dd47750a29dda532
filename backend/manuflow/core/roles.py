from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from fastapi import Depends, HTTPException

from manuflow.core.auth_utils import get_current_user


class Role(str, Enum):
    AUTHOR = "author"
    REVIEWER = "reviewer"
    EDITORIAL_ASSISTANT = "editorial_assistant"
    ASSOCIATE_EDITOR = "associate_editor"
    EDITOR_IN_CHIEF = "editor_in_chief"
    ADMIN = "admin"


EDITOR_ROLES = frozenset({Role.ASSOCIATE_EDITOR, Role.EDITOR_IN_CHIEF, Role.ADMIN})


def normalize_role(value: Optional[str]) -> Optional[Role]:
    raw = str(value or "").strip().lower().replace("-", "_")
    if not raw:
        return None
    try:
        return Role(raw)
    except ValueError:
        return None


@dataclass(frozen=True)
class Principal:
    """
    已认证的调用者身份（来自外部身份上下文）。

    中文注释:
    - 引擎信任该上下文，不负责认证；
    - role 只能来自已校验的 token，绝不能来自请求体。
    """

    id: str
    role: Role
    email: Optional[str] = None


async def get_current_principal(current_user: dict = Depends(get_current_user)) -> Principal:
    role = normalize_role(current_user.get("role"))
    if role is None:
        # 中文注释: 未知/缺失角色一律降级为 author（最小权限）
        role = Role.AUTHOR
    return Principal(id=str(current_user["id"]), role=role, email=current_user.get("email"))


def require_any_role(required: Iterable[Role]) -> Callable[..., Principal]:
    required_set = {Role(r) for r in required}

    async def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in required_set:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return principal

    return _dep
