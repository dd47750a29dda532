from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, TypeVar
from uuid import uuid4

from pydantic import BaseModel

R = TypeVar("R", bound="RecordModel")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class RecordModel(BaseModel):
    """
    持久化记录的公共基类。

    中文注释:
    - to_record() 输出 JSON 安全的 dict（datetime -> ISO 字符串，Enum -> value），
      既用于 Supabase 写入，也用于内存仓储，保证两种后端的序列化路径一致。
    - from_record() 是其逆操作，读回后逐字段相等。
    """

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls: type[R], row: Mapping[str, Any]) -> R:
        return cls.model_validate(dict(row))
