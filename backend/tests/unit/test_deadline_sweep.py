from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import REVIEW_COMMENTS, reviewer_principal
from manuflow.core.scheduler import run_periodic_sweep
from manuflow.models import event as ev
from manuflow.models.assignment import AssignmentState

pytestmark = pytest.mark.unit


def test_sweep_marks_overdue_and_keeps_load(engine, eic, make_under_review, make_reviewer, clock, captured_events):
    reviewer = make_reviewer()
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id, due_days=5)

    result = engine.sweeper.run(now=clock() + timedelta(days=6))

    assert result == {"processed_count": 1, "overdue_marked": 1, "reminders_sent": 0, "failures": 0}
    stored = engine.repository.get_assignment(assignment.id)
    assert stored.state == AssignmentState.OVERDUE
    # 逾期不自动换人，负载仍然占用
    assert engine.directory.get(reviewer.id).current_load == 1
    overdue = [e for e in captured_events if e.type == ev.ASSIGNMENT_OVERDUE]
    assert overdue[0].payload["reviewer_id"] == reviewer.id

    # 已逾期的任务不会被重复处理
    again = engine.sweeper.run(now=clock() + timedelta(days=7))
    assert again["processed_count"] == 0


def test_overdue_assignment_can_still_be_completed(engine, eic, make_under_review, make_reviewer, clock):
    reviewer = make_reviewer()
    actor = reviewer_principal(reviewer.id)
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id, due_days=5)
    engine.directory.respond(actor, assignment.id, accept=True)
    clock.advance(days=6)
    engine.sweeper.run()

    done = engine.directory.record_completion(actor, assignment.id, recommendation="accept", rating=3, comments=REVIEW_COMMENTS)

    assert done.state == AssignmentState.COMPLETED
    perf = engine.directory.get(reviewer.id).performance
    assert perf.on_time_rate == pytest.approx(0.0)
    assert engine.directory.get(reviewer.id).current_load == 0


def test_sweep_sends_reminder_once(engine, eic, make_under_review, make_reviewer, clock, captured_events):
    reviewer = make_reviewer()
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id, due_days=2)

    first = engine.sweeper.run(now=clock() + timedelta(hours=1))
    second = engine.sweeper.run(now=clock() + timedelta(hours=2))

    assert first["reminders_sent"] == 1
    assert second["reminders_sent"] == 0
    assert engine.repository.get_assignment(assignment.id).last_reminded_at is not None
    assert [e.type for e in captured_events].count(ev.ASSIGNMENT_DEADLINE_APPROACHING) == 1


def test_reminders_can_be_disabled(engine, eic, make_under_review, make_reviewer, clock):
    engine.config.update(deadline_reminders=False)
    reviewer = make_reviewer()
    engine.directory.invite(eic, make_under_review().id, reviewer.id, due_days=1)

    result = engine.sweeper.run(now=clock())

    assert result["reminders_sent"] == 0
    assert result["overdue_marked"] == 0


def test_sweep_skips_completed_and_far_deadlines(engine, eic, make_under_review, make_reviewer, clock):
    reviewer = make_reviewer()
    actor = reviewer_principal(reviewer.id)
    done = engine.directory.invite(eic, make_under_review().id, reviewer.id, due_days=1)
    engine.directory.respond(actor, done.id, accept=True)
    engine.directory.record_completion(actor, done.id, recommendation="accept", rating=5, comments=REVIEW_COMMENTS)
    engine.directory.invite(eic, make_under_review(title="Later").id, reviewer.id, due_days=30)

    result = engine.sweeper.run(now=clock() + timedelta(days=2))

    assert result == {"processed_count": 1, "overdue_marked": 0, "reminders_sent": 0, "failures": 0}


def test_sweep_failure_is_isolated_per_assignment(engine, eic, make_under_review, make_reviewer, clock, monkeypatch):
    reviewer = make_reviewer()
    broken = engine.directory.invite(eic, make_under_review().id, reviewer.id, due_days=1)
    healthy = engine.directory.invite(eic, make_under_review(title="Healthy").id, reviewer.id, due_days=1)

    original_commit = engine.repository.commit_assignment

    def _flaky_commit(assignment, **kwargs):
        if assignment.id == broken.id:
            raise RuntimeError("connection reset")
        return original_commit(assignment, **kwargs)

    monkeypatch.setattr(engine.repository, "commit_assignment", _flaky_commit)

    result = engine.sweeper.run(now=clock() + timedelta(days=3))

    assert result["failures"] == 1
    assert result["overdue_marked"] == 1
    assert engine.repository.get_assignment(healthy.id).state == AssignmentState.OVERDUE
    assert engine.repository.get_assignment(broken.id).state == AssignmentState.INVITED


@pytest.mark.asyncio
async def test_periodic_sweep_reads_interval_each_round(engine, monkeypatch):
    engine.config.update(sweep_interval_seconds=1)
    calls: list[int] = []
    sleeps: list[float] = []

    def _run(now=None):
        calls.append(1)
        if len(calls) == 2:
            engine.config.update(sweep_interval_seconds=5)
        return {}

    async def _fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= 3:
            raise asyncio.CancelledError()

    monkeypatch.setattr(engine.sweeper, "run", _run)
    monkeypatch.setattr("manuflow.core.scheduler.asyncio.sleep", _fake_sleep)

    with pytest.raises(asyncio.CancelledError):
        await run_periodic_sweep(engine.sweeper, engine.config)

    assert sleeps == [1, 1, 5]
    assert len(calls) == 2
