import pytest

from manuflow.core.errors import StaleVersion
from manuflow.core.sentry_init import _before_send, init_sentry

pytestmark = pytest.mark.unit


def test_before_send_drops_credentials_and_review_text():
    event = {
        "request": {
            "headers": {
                "Authorization": "Bearer secret",
                "X-Admin-Key": "cron-key",
                "X-Request-Id": "req-1",
            },
            "data": {"confidential_comments": "reject, weak baselines"},
            "cookies": {"sb": "session"},
        },
        "extra": {
            "assignment_id": "a-1",
            "confidential_comments": "do not leak",
            "nested": [{"token": "abc"}, "x" * 2001],
        },
    }

    out = _before_send(event, {})

    request = out["request"]
    assert request["headers"] == {"X-Request-Id": "req-1"}
    assert request["data"] == "[Filtered]"
    assert request["cookies"] == "[Filtered]"
    assert out["extra"]["assignment_id"] == "a-1"
    assert out["extra"]["confidential_comments"] == "[Filtered]"
    assert out["extra"]["nested"] == [{"token": "[Filtered]"}, "[Filtered]"]


def test_init_sentry_disabled_without_dsn(monkeypatch):
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    assert init_sentry() is False


def test_init_sentry_respects_explicit_disable(monkeypatch):
    monkeypatch.setenv("SENTRY_DSN", "https://public@example.ingest.sentry.io/1")
    monkeypatch.setenv("SENTRY_ENABLED", "0")
    assert init_sentry() is False


def test_expected_workflow_rejections_are_not_reported():
    try:
        raise StaleVersion("Submission was modified concurrently", current_version=3)
    except StaleVersion as exc:
        hint = {"exc_info": (type(exc), exc, exc.__traceback__)}

    assert _before_send({"request": {}}, hint) is None
    assert _before_send({"request": {}}, {"exc_info": None}) == {"request": {}}
