from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Callable, Optional

from postgrest.exceptions import APIError

from manuflow.models.event import DomainEvent

logger = logging.getLogger("manuflow.events")

Subscriber = Callable[[DomainEvent], None]


class EventEmitter:
    """
    领域事件发布器（通知/缓存失效层在引擎外部订阅）。

    中文注释:
    1) emit 在事务写入之后调用，发送失败绝不回滚或阻断主流程（fire-and-forget）。
    2) 单个订阅者异常只记录日志，不影响其他订阅者。
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[Optional[str], Subscriber]] = []
        self._lock = Lock()

    def subscribe(self, handler: Subscriber, *, event_type: Optional[str] = None) -> None:
        with self._lock:
            self._subscribers.append((event_type, handler))

    def emit(self, event_type: str, *, subject_id: str, **payload: Any) -> DomainEvent:
        event = DomainEvent(type=event_type, subject_id=subject_id, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers)
        for wanted, handler in subscribers:
            if wanted is not None and wanted != event_type:
                continue
            try:
                handler(event)
            except Exception as e:
                logger.warning("[Events] subscriber failed for %s (ignored): %s", event_type, e)
        return event


class LoggingEventSink:
    def __call__(self, event: DomainEvent) -> None:
        logger.info("[Events] %s subject=%s payload=%s", event.type, event.subject_id, event.payload)


class SupabaseEventSink:
    """
    把领域事件写入 domain_events 表，供外部通知服务消费。

    中文注释: 表缺失/外键异常等情况只记录日志，不向上抛。
    """

    def __init__(self, db_client=None) -> None:
        if db_client is None:
            from manuflow.lib.api_client import supabase_admin

            db_client = supabase_admin
        self._db = db_client

    def __call__(self, event: DomainEvent) -> None:
        try:
            self._db.table("domain_events").insert(event.to_record()).execute()
        except APIError as e:
            logger.warning("[Events] domain_events insert failed (ignored): %s", e)
