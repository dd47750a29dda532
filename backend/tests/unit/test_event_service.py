from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from manuflow.models import event as ev
from manuflow.services.event_service import EventEmitter, LoggingEventSink, SupabaseEventSink

pytestmark = pytest.mark.unit


def test_failing_subscriber_does_not_block_others():
    emitter = EventEmitter()
    seen: list = []

    def _boom(event):
        raise RuntimeError("mail server down")

    emitter.subscribe(_boom)
    emitter.subscribe(seen.append)

    event = emitter.emit(ev.SUBMISSION_CREATED, subject_id="s-1", owner_id="author-1")

    assert seen == [event]
    assert event.payload == {"owner_id": "author-1"}


def test_typed_subscription_filters_events():
    emitter = EventEmitter()
    overdue: list = []
    emitter.subscribe(overdue.append, event_type=ev.ASSIGNMENT_OVERDUE)

    emitter.emit(ev.ASSIGNMENT_CREATED, subject_id="a-1")
    emitter.emit(ev.ASSIGNMENT_OVERDUE, subject_id="a-1")

    assert [e.type for e in overdue] == [ev.ASSIGNMENT_OVERDUE]


def test_logging_sink_logs(caplog):
    emitter = EventEmitter()
    emitter.subscribe(LoggingEventSink())
    with caplog.at_level("INFO", logger="manuflow.events"):
        emitter.emit(ev.DECISION_RECORDED, subject_id="s-9", kind="submit")
    assert "decision.recorded" in caplog.text


def test_supabase_sink_persists_and_swallows_api_errors():
    db = MagicMock()
    sink = SupabaseEventSink(db_client=db)
    emitter = EventEmitter()
    emitter.subscribe(sink)

    event = emitter.emit(ev.REVIEWER_STATUS_CHANGED, subject_id="rev-1", to_status="suspended")

    db.table.assert_called_with("domain_events")
    inserted = db.table.return_value.insert.call_args[0][0]
    assert inserted["id"] == event.id
    assert inserted["payload"] == {"to_status": "suspended"}

    db.table.return_value.insert.return_value.execute.side_effect = APIError(
        {"message": "relation does not exist", "code": "42P01"}
    )
    emitter.emit(ev.REVIEWER_STATUS_CHANGED, subject_id="rev-1", to_status="active")
