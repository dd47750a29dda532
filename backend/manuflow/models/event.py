from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from manuflow.models.base import RecordModel, new_id, utc_now

SUBMISSION_CREATED = "submission.created"
SUBMISSION_UPDATED = "submission.updated"
SUBMISSION_STATUS_CHANGED = "submission.status_changed"
SUBMISSION_UNDERSTAFFED = "submission.understaffed"
DECISION_RECORDED = "decision.recorded"
ASSIGNMENT_CREATED = "assignment.created"
ASSIGNMENT_ACCEPTED = "assignment.accepted"
ASSIGNMENT_DECLINED = "assignment.declined"
ASSIGNMENT_STARTED = "assignment.started"
ASSIGNMENT_COMPLETED = "assignment.completed"
ASSIGNMENT_WITHDRAWN = "assignment.withdrawn"
ASSIGNMENT_OVERDUE = "assignment.overdue"
ASSIGNMENT_DEADLINE_APPROACHING = "assignment.deadline_approaching"
REVIEWER_STATUS_CHANGED = "reviewer.status_changed"


class DomainEvent(RecordModel):
    id: str = Field(default_factory=new_id)
    type: str
    subject_id: str
    occurred_at: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)
