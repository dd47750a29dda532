from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, Optional

from manuflow.core.config import ConfigHolder
from manuflow.core.errors import StaleVersion
from manuflow.models import event as ev
from manuflow.models.assignment import ACTIVE_STATES, AssignmentState
from manuflow.models.base import utc_now
from manuflow.services.event_service import EventEmitter

if TYPE_CHECKING:
    from manuflow.services.repository import Repository

logger = logging.getLogger("manuflow.sweep")


class DeadlineSweeper:
    """
    审稿截止扫描（唯一的后台任务）。

    中文注释:
    1) 触发方式：lifespan 中的周期任务，或内部接口 /api/v1/internal/cron/deadline-sweep。
    2) 逾期：invited/accepted/in_progress 且 due_at < now -> overdue，并发出提醒事件；不自动换人。
    3) 临期提醒：due_at 落在 reminder_lead_hours 内且从未提醒过 -> 发事件并写 last_reminded_at（幂等）。
    4) 失败隔离：单条任务写入失败只记日志并计数，不中断整轮扫描。
    """

    def __init__(
        self,
        repository: "Repository",
        config: ConfigHolder,
        events: EventEmitter,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repository
        self.config = config
        self.events = events
        self._now = clock

    def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._now()
        cfg = self.config.get()
        reminder_cutoff = now + timedelta(hours=cfg.reminder_lead_hours)

        processed_count = 0
        overdue_marked = 0
        reminders_sent = 0
        failures = 0

        try:
            assignments = self.repo.list_assignments(states=ACTIVE_STATES)
        except Exception as e:
            logger.error("[DeadlineSweeper] 查询失败: %s", e, exc_info=True)
            return {"processed_count": 0, "overdue_marked": 0, "reminders_sent": 0, "failures": 1}

        for assignment in assignments:
            processed_count += 1
            try:
                if assignment.due_at < now:
                    self.repo.commit_assignment(
                        assignment.model_copy(update={"state": AssignmentState.OVERDUE}),
                        expected_version=assignment.version,
                    )
                    overdue_marked += 1
                    self.events.emit(
                        ev.ASSIGNMENT_OVERDUE,
                        subject_id=assignment.id,
                        submission_id=assignment.submission_id,
                        reviewer_id=assignment.reviewer_id,
                        due_at=assignment.due_at.isoformat(),
                    )
                elif (
                    cfg.deadline_reminders
                    and assignment.last_reminded_at is None
                    and assignment.due_at <= reminder_cutoff
                ):
                    self.repo.commit_assignment(
                        assignment.model_copy(update={"last_reminded_at": now}),
                        expected_version=assignment.version,
                    )
                    reminders_sent += 1
                    self.events.emit(
                        ev.ASSIGNMENT_DEADLINE_APPROACHING,
                        subject_id=assignment.id,
                        submission_id=assignment.submission_id,
                        reviewer_id=assignment.reviewer_id,
                        due_at=assignment.due_at.isoformat(),
                    )
            except StaleVersion:
                # 中文注释: 审稿人恰好在扫描期间操作了任务，下一轮再处理即可
                logger.info("[DeadlineSweeper] assignment %s changed during sweep, skipped", assignment.id)
            except Exception as e:
                failures += 1
                logger.error("[DeadlineSweeper] assignment %s failed: %s", assignment.id, e, exc_info=True)

        if overdue_marked or reminders_sent or failures:
            logger.info(
                "[DeadlineSweeper] processed=%s overdue=%s reminders=%s failures=%s",
                processed_count,
                overdue_marked,
                reminders_sent,
                failures,
            )
        return {
            "processed_count": processed_count,
            "overdue_marked": overdue_marked,
            "reminders_sent": reminders_sent,
            "failures": failures,
        }


async def run_periodic_sweep(sweeper: DeadlineSweeper, config: ConfigHolder) -> None:
    """
    后台周期扫描；间隔每轮重新读取配置（支持热更新），0 表示暂停。
    """
    while True:
        interval = config.get().sweep_interval_seconds
        if interval <= 0:
            await asyncio.sleep(60)
            continue
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(sweeper.run)
        except Exception as e:
            logger.error("[DeadlineSweeper] periodic run failed: %s", e, exc_info=True)
