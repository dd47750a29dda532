from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from manuflow.core.config import AppConfig, ConfigHolder, WorkflowConfig, app_config
from manuflow.core.scheduler import DeadlineSweeper
from manuflow.models.base import utc_now
from manuflow.services.assignment_scheduler import AssignmentScheduler
from manuflow.services.event_service import EventEmitter, LoggingEventSink, SupabaseEventSink
from manuflow.services.repository import InMemoryRepository, Repository, SupabaseRepository
from manuflow.services.reviewer_service import ReviewerDirectory
from manuflow.services.workflow_service import SubmissionWorkflowService

logger = logging.getLogger("manuflow.engine")


@dataclass
class EditorialEngine:
    """
    引擎装配：仓储、配置、事件、名录、调度器、状态机、截止扫描。

    中文注释: 配置对象在构造时注入各组件，热更新后下一次调用立即生效（无需重启）。
    """

    repository: Repository
    config: ConfigHolder
    events: EventEmitter
    directory: ReviewerDirectory
    scheduler: AssignmentScheduler
    workflow: SubmissionWorkflowService
    sweeper: DeadlineSweeper

    @classmethod
    def build(
        cls,
        *,
        repository: Optional[Repository] = None,
        config: Optional[WorkflowConfig] = None,
        events: Optional[EventEmitter] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "EditorialEngine":
        repo = repository or InMemoryRepository()
        holder = ConfigHolder(config or WorkflowConfig.from_env())
        emitter = events or EventEmitter()
        directory = ReviewerDirectory(repo, holder, emitter, clock=clock)
        scheduler = AssignmentScheduler(repo, directory, holder, emitter)
        workflow = SubmissionWorkflowService(repo, holder, emitter, scheduler, clock=clock)
        sweeper = DeadlineSweeper(repo, holder, emitter, clock=clock)
        return cls(
            repository=repo,
            config=holder,
            events=emitter,
            directory=directory,
            scheduler=scheduler,
            workflow=workflow,
            sweeper=sweeper,
        )

    @classmethod
    def from_app_config(cls, cfg: AppConfig = app_config) -> "EditorialEngine":
        emitter = EventEmitter()
        emitter.subscribe(LoggingEventSink())
        if cfg.storage_backend == "supabase":
            logger.info("[Engine] using Supabase storage backend")
            emitter.subscribe(SupabaseEventSink())
            return cls.build(repository=SupabaseRepository(), events=emitter)
        logger.info("[Engine] using in-memory storage backend (env=%s)", cfg.env)
        return cls.build(repository=InMemoryRepository(), events=emitter)


_engine: Optional[EditorialEngine] = None


def get_engine() -> EditorialEngine:
    """FastAPI 依赖：进程内单例（测试可通过 dependency_overrides 或 set_engine 替换）。"""
    global _engine
    if _engine is None:
        _engine = EditorialEngine.from_app_config()
    return _engine


def set_engine(engine: Optional[EditorialEngine]) -> None:
    global _engine
    _engine = engine
