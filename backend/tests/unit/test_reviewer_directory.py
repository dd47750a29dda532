from __future__ import annotations

import pytest

from conftest import REVIEW_COMMENTS, reviewer_principal
from manuflow.core.errors import (
    DuplicateAssignment,
    Forbidden,
    InvalidAssignmentState,
    InvalidTransition,
    LoadExceeded,
    ReviewerUnavailable,
    ValidationFailed,
)
from manuflow.models import event as ev
from manuflow.models.assignment import AssignmentState
from manuflow.models.reviewer import ReviewerPerformance, ReviewerStatus
from manuflow.services.reviewer_service import ReviewerFilter

pytestmark = pytest.mark.unit


def test_add_reviewer_applies_defaults(engine, make_reviewer):
    reviewer = make_reviewer(expertise=["NLP", " nlp ", "Vision"], email="Grace@Lab.org")
    assert reviewer.email == "grace@lab.org"
    assert reviewer.expertise == ["nlp", "vision"]
    assert reviewer.max_load == 3
    assert reviewer.current_load == 0
    assert reviewer.status == ReviewerStatus.ACTIVE

    with pytest.raises(ValidationFailed):
        make_reviewer(email="grace@lab.org")


def test_invite_increments_load_and_sets_deadline(engine, eic, make_under_review, make_reviewer, clock):
    submission = make_under_review()
    reviewer = make_reviewer()

    assignment = engine.directory.invite(eic, submission.id, reviewer.id)

    assert assignment.state == AssignmentState.INVITED
    assert assignment.round == 1
    assert (assignment.due_at - clock()).days == 30
    stored = engine.directory.get(reviewer.id)
    assert stored.current_load == 1
    assert stored.performance.total_reviews == 1


def test_invite_at_max_load_fails_and_leaves_load_unchanged(engine, eic, make_under_review, make_reviewer):
    reviewer = make_reviewer(max_load=1)
    first, second = make_under_review(), make_under_review(title="Second")
    engine.directory.invite(eic, first.id, reviewer.id)

    with pytest.raises(LoadExceeded) as exc:
        engine.directory.invite(eic, second.id, reviewer.id)

    assert exc.value.context["current_load"] == 1
    assert engine.directory.get(reviewer.id).current_load == 1
    assert engine.directory.assignments_for(submission_id=second.id) == []


def test_editor_override_exceeds_load(engine, eic, make_under_review, make_reviewer):
    reviewer = make_reviewer(max_load=1)
    first, second = make_under_review(), make_under_review(title="Second")
    engine.directory.invite(eic, first.id, reviewer.id)

    assignment = engine.directory.invite(eic, second.id, reviewer.id, override=True)

    assert assignment.override_used is True
    stored = engine.directory.get(reviewer.id)
    assert stored.current_load == 2
    assert stored.load_ratio == 1.0


def test_invite_guards(engine, eic, author, make_draft, make_under_review, make_reviewer):
    reviewer = make_reviewer()
    submission = make_under_review()

    with pytest.raises(Forbidden):
        engine.directory.invite(author, submission.id, reviewer.id)
    with pytest.raises(InvalidTransition):
        engine.directory.invite(eic, make_draft().id, reviewer.id)

    engine.directory.invite(eic, submission.id, reviewer.id)
    with pytest.raises(DuplicateAssignment):
        engine.directory.invite(eic, submission.id, reviewer.id)
    assert engine.directory.get(reviewer.id).current_load == 1


@pytest.mark.parametrize("status", ["suspended", "inactive"])
def test_unavailable_reviewer_cannot_be_invited(engine, eic, make_under_review, make_reviewer, status):
    reviewer = make_reviewer()
    engine.directory.record_decision(reviewer.id, status, principal=eic)

    with pytest.raises(ReviewerUnavailable):
        engine.directory.invite(eic, make_under_review().id, reviewer.id)


def test_suspension_keeps_in_flight_assignments(engine, eic, make_under_review, make_reviewer, captured_events):
    reviewer = make_reviewer()
    submission = make_under_review()
    assignment = engine.directory.invite(eic, submission.id, reviewer.id)

    engine.directory.record_decision(reviewer.id, "suspended", principal=eic)

    assert engine.repository.get_assignment(assignment.id).state == AssignmentState.INVITED
    changed = [e for e in captured_events if e.type == ev.REVIEWER_STATUS_CHANGED]
    assert changed[-1].payload == {"from_status": "active", "to_status": "suspended", "actor_id": "eic-1"}

    # 重新激活不回补负载
    engine.directory.record_decision(reviewer.id, "active", principal=eic)
    assert engine.directory.get(reviewer.id).current_load == 1

    with pytest.raises(ValidationFailed):
        engine.directory.record_decision(reviewer.id, "retired")


def test_decline_releases_load(engine, eic, make_under_review, make_reviewer):
    reviewer = make_reviewer()
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id)

    declined = engine.directory.respond(reviewer_principal(reviewer.id), assignment.id, accept=False)

    assert declined.state == AssignmentState.DECLINED
    assert declined.responded_at is not None
    assert engine.directory.get(reviewer.id).current_load == 0


def test_only_invited_reviewer_may_respond(engine, eic, make_under_review, make_reviewer):
    reviewer, other = make_reviewer(), make_reviewer()
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id)

    with pytest.raises(Forbidden):
        engine.directory.respond(reviewer_principal(other.id), assignment.id, accept=True)
    with pytest.raises(Forbidden):
        engine.directory.respond(eic, assignment.id, accept=True)


def test_completion_updates_metrics_and_is_not_repeatable(engine, eic, make_under_review, make_reviewer, clock):
    reviewer = make_reviewer()
    actor = reviewer_principal(reviewer.id)
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id)
    engine.directory.respond(actor, assignment.id, accept=True)
    engine.directory.start(actor, assignment.id)
    clock.advance(days=10)

    done = engine.directory.record_completion(
        actor, assignment.id, recommendation="minor-revision", rating=4, comments=REVIEW_COMMENTS
    )

    assert done.state == AssignmentState.COMPLETED
    assert done.recommendation.value == "minor_revision"
    stored = engine.directory.get(reviewer.id)
    assert stored.current_load == 0
    assert stored.performance.completed_reviews == 1
    assert stored.performance.on_time_reviews == 1
    assert stored.performance.on_time_rate == pytest.approx(100.0)
    assert stored.performance.avg_rating == pytest.approx(4.0)
    assert stored.performance.avg_completion_days == pytest.approx(10.0)

    with pytest.raises(InvalidAssignmentState):
        engine.directory.record_completion(actor, assignment.id, recommendation="accept", rating=5, comments=REVIEW_COMMENTS)
    assert engine.directory.get(reviewer.id).performance.completed_reviews == 1


def test_completion_input_validation(engine, eic, make_under_review, make_reviewer):
    reviewer = make_reviewer()
    actor = reviewer_principal(reviewer.id)
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id)

    with pytest.raises(InvalidAssignmentState):
        engine.directory.record_completion(actor, assignment.id, recommendation="accept", rating=5, comments=REVIEW_COMMENTS)

    engine.directory.respond(actor, assignment.id, accept=True)
    with pytest.raises(ValidationFailed):
        engine.directory.record_completion(actor, assignment.id, recommendation="love it", rating=5, comments=REVIEW_COMMENTS)
    with pytest.raises(ValidationFailed):
        engine.directory.record_completion(actor, assignment.id, recommendation="accept", rating=6, comments=REVIEW_COMMENTS)
    assert engine.repository.get_assignment(assignment.id).state == AssignmentState.ACCEPTED


def test_late_completion_counts_against_on_time_rate(engine, eic, make_under_review, make_reviewer, clock):
    reviewer = make_reviewer()
    actor = reviewer_principal(reviewer.id)
    first = engine.directory.invite(eic, make_under_review().id, reviewer.id)
    second = engine.directory.invite(eic, make_under_review(title="Second").id, reviewer.id)
    engine.directory.respond(actor, first.id, accept=True)
    engine.directory.respond(actor, second.id, accept=True)

    engine.directory.record_completion(actor, first.id, recommendation="accept", rating=5, completion_days=3, comments=REVIEW_COMMENTS)
    clock.advance(days=45)
    engine.directory.record_completion(actor, second.id, recommendation="reject", rating=2, completion_days=45, comments=REVIEW_COMMENTS)

    perf = engine.directory.get(reviewer.id).performance
    assert perf.completed_reviews == 2
    assert perf.on_time_reviews == 1
    assert perf.on_time_rate == pytest.approx(50.0)
    assert perf.avg_rating == pytest.approx(3.5)
    assert perf.avg_completion_days == pytest.approx(24.0)


def test_incremental_average_matches_batch_average():
    perf = ReviewerPerformance()
    ratings = [5, 3, 4, 1, 2]
    days = [10.0, 20.0, 5.0, 40.0, 15.0]
    for rating, d in zip(ratings, days):
        perf = perf.with_completion(rating=rating, completion_days=d, on_time=d <= 30)

    assert perf.completed_reviews == 5
    assert perf.avg_rating == pytest.approx(sum(ratings) / 5)
    assert perf.avg_completion_days == pytest.approx(sum(days) / 5)
    assert perf.on_time_rate == pytest.approx(80.0)


def test_withdraw_releases_load(engine, eic, author, make_under_review, make_reviewer):
    reviewer = make_reviewer()
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id)

    with pytest.raises(Forbidden):
        engine.directory.withdraw(author, assignment.id)

    withdrawn = engine.directory.withdraw(eic, assignment.id)
    assert withdrawn.state == AssignmentState.WITHDRAWN
    assert engine.directory.get(reviewer.id).current_load == 0

    with pytest.raises(InvalidAssignmentState):
        engine.directory.withdraw(eic, assignment.id)
    assert engine.directory.get(reviewer.id).current_load == 0


def test_query_filters_and_summary(engine, make_reviewer):
    a = make_reviewer(expertise=["nlp"], name="Alan Turing", affiliation="Manchester")
    b = make_reviewer(expertise=["vision"], max_load=1)
    c = make_reviewer(expertise=["nlp", "vision"])
    engine.directory.record_decision(c.id, "suspended")
    engine.directory.update_reviewer(b.id, max_load=2)
    engine.repository.save_reviewer(
        engine.directory.get(a.id).model_copy(
            update={"performance": ReviewerPerformance(completed_reviews=5, on_time_reviews=5, on_time_rate=100.0)}
        ),
        expected_version=0,
    )

    assert {r.id for r in engine.directory.query(ReviewerFilter(expertise="NLP"))} == {a.id, c.id}
    assert [r.id for r in engine.directory.query(ReviewerFilter(search="manchester"))] == [a.id]
    assert {r.id for r in engine.directory.query(ReviewerFilter(available_only=True))} == {a.id, b.id}
    assert [r.id for r in engine.directory.query(ReviewerFilter(top_performers=True))] == [a.id]
    assert [r.id for r in engine.directory.query(ReviewerFilter(status=ReviewerStatus.SUSPENDED))] == [c.id]

    summary = engine.directory.summary()
    assert summary["total"] == 3
    assert summary["by_status"]["suspended"] == 1
    assert summary["capacity"] == 3 + 2

    with pytest.raises(ValidationFailed):
        engine.directory.update_reviewer(a.id, current_load=0)


# === 逾期未答复的邀请 ===

def _overdue_invitation(engine, eic, make_under_review, make_reviewer, clock):
    reviewer = make_reviewer()
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id, due_days=30)
    clock.advance(days=40)
    engine.sweeper.run()
    assert engine.repository.get_assignment(assignment.id).state == AssignmentState.OVERDUE
    return reviewer, assignment


def test_unanswered_overdue_invitation_cannot_be_completed(engine, eic, make_under_review, make_reviewer, clock):
    reviewer, assignment = _overdue_invitation(engine, eic, make_under_review, make_reviewer, clock)
    actor = reviewer_principal(reviewer.id)

    with pytest.raises(InvalidAssignmentState):
        engine.directory.record_completion(
            actor, assignment.id, recommendation="accept", rating=5, comments=REVIEW_COMMENTS
        )

    stored = engine.repository.get_assignment(assignment.id)
    assert stored.state == AssignmentState.OVERDUE
    assert stored.responded_at is None
    assert engine.directory.get(reviewer.id).performance.completed_reviews == 0


def test_unanswered_overdue_invitation_can_be_declined(engine, eic, make_under_review, make_reviewer, clock):
    reviewer, assignment = _overdue_invitation(engine, eic, make_under_review, make_reviewer, clock)

    declined = engine.directory.respond(reviewer_principal(reviewer.id), assignment.id, accept=False)

    assert declined.state == AssignmentState.DECLINED
    assert declined.responded_at == clock()
    assert engine.directory.get(reviewer.id).current_load == 0


def test_late_acceptance_stays_overdue_and_can_be_completed(engine, eic, make_under_review, make_reviewer, clock):
    reviewer, assignment = _overdue_invitation(engine, eic, make_under_review, make_reviewer, clock)
    actor = reviewer_principal(reviewer.id)

    accepted = engine.directory.respond(actor, assignment.id, accept=True)
    assert accepted.state == AssignmentState.OVERDUE
    assert accepted.responded_at is not None
    # 已逾期的任务不会被扫描重复告警
    assert engine.sweeper.run()["processed_count"] == 0

    with pytest.raises(InvalidAssignmentState):
        engine.directory.respond(actor, assignment.id, accept=False)

    done = engine.directory.record_completion(
        actor, assignment.id, recommendation="reject", rating=2, comments=REVIEW_COMMENTS
    )
    assert done.state == AssignmentState.COMPLETED
    assert engine.directory.get(reviewer.id).performance.on_time_reviews == 0


# === 审稿表 ===

RATINGS = {"originality": 5, "methodology": 3, "significance": 4, "clarity": 2, "overall": 3}


def _accepted(engine, eic, make_under_review, make_reviewer):
    reviewer = make_reviewer()
    actor = reviewer_principal(reviewer.id)
    assignment = engine.directory.invite(eic, make_under_review().id, reviewer.id)
    engine.directory.respond(actor, assignment.id, accept=True)
    return reviewer, actor, assignment


def test_criterion_ratings_are_stored_and_overall_drives_average(engine, eic, make_under_review, make_reviewer):
    reviewer, actor, assignment = _accepted(engine, eic, make_under_review, make_reviewer)

    done = engine.directory.record_completion(
        actor, assignment.id, recommendation="major-revision", ratings=RATINGS, comments=REVIEW_COMMENTS
    )

    assert done.rating == 3
    assert done.ratings.model_dump() == RATINGS
    assert engine.directory.get(reviewer.id).performance.avg_rating == pytest.approx(3.0)


@pytest.mark.parametrize(
    "scores",
    [
        {"rating": 4, "ratings": RATINGS},
        {"ratings": {**RATINGS, "clarity": 0}},
        {"ratings": {k: v for k, v in RATINGS.items() if k != "methodology"}},
        {},
    ],
)
def test_invalid_ratings_are_rejected(engine, eic, make_under_review, make_reviewer, scores):
    _, actor, assignment = _accepted(engine, eic, make_under_review, make_reviewer)

    with pytest.raises(ValidationFailed):
        engine.directory.record_completion(
            actor, assignment.id, recommendation="accept", comments=REVIEW_COMMENTS, **scores
        )
    assert engine.repository.get_assignment(assignment.id).state == AssignmentState.ACCEPTED


def test_review_comments_have_a_minimum_length(engine, eic, make_under_review, make_reviewer):
    _, actor, assignment = _accepted(engine, eic, make_under_review, make_reviewer)

    with pytest.raises(ValidationFailed) as exc:
        engine.directory.record_completion(actor, assignment.id, recommendation="accept", rating=5, comments="LGTM")
    assert exc.value.context == {"length": 4, "min_length": 100}

    # 首尾空白不计入长度
    with pytest.raises(ValidationFailed):
        engine.directory.record_completion(
            actor, assignment.id, recommendation="accept", rating=5, comments=" " * 120 + "short"
        )

    engine.config.update(min_review_comment_length=0)
    done = engine.directory.record_completion(actor, assignment.id, recommendation="accept", rating=5)
    assert done.state == AssignmentState.COMPLETED
