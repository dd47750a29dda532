import os
from uuid import uuid4

import pytest

from conftest import submission_fields
from manuflow.core.errors import LoadExceeded, StaleVersion
from manuflow.core.config import WorkflowConfig
from manuflow.core.roles import Principal, Role
from manuflow.services.engine import EditorialEngine
from manuflow.services.repository import SupabaseRepository

# === 集成测试：真实 Supabase ===
# 中文注释:
# - 需要已执行 migrations/0001_editorial_engine.sql 的 Supabase 项目。
# - 未配置 SUPABASE_URL / service key 时跳过，CI 默认只跑单元与 API 测试。
# - 审稿人 id/email 带随机后缀，多次运行互不干扰。

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not os.environ.get("SUPABASE_URL")
        or not (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get("SUPABASE_KEY")),
        reason="SUPABASE_URL / service key not configured",
    ),
]

AUTHOR = Principal(id="it-author", role=Role.AUTHOR, email="ada@uni.edu")
EIC = Principal(id="it-eic", role=Role.EDITOR_IN_CHIEF)


@pytest.fixture
def live_engine() -> EditorialEngine:
    return EditorialEngine.build(repository=SupabaseRepository(), config=WorkflowConfig(auto_assign_reviewers=False))


def _under_review(engine: EditorialEngine, title: str):
    draft = engine.workflow.create_draft(AUTHOR, **submission_fields(title=title))
    submitted = engine.workflow.transition(AUTHOR, draft.id, "submit", version=0).submission
    return engine.workflow.transition(
        EIC, submitted.id, "approve-for-review", version=submitted.version, assigned_editor="it-ae"
    ).submission


def test_transition_commits_submission_and_ledger_together(live_engine):
    draft = live_engine.workflow.create_draft(AUTHOR, **submission_fields(title="Integration paper"))
    submitted = live_engine.workflow.transition(AUTHOR, draft.id, "submit", version=0).submission

    assert submitted.version == 1
    assert [d.kind.value for d in live_engine.repository.list_decisions(draft.id)] == ["submit"]

    with pytest.raises(StaleVersion):
        live_engine.workflow.transition(EIC, draft.id, "desk-reject", version=0)
    assert len(live_engine.repository.list_decisions(draft.id)) == 1


def test_reviewer_load_is_enforced_in_database(live_engine):
    suffix = uuid4().hex[:8]
    reviewer = live_engine.directory.add_reviewer(
        reviewer_id=f"it-rev-{suffix}",
        name="Integration Reviewer",
        email=f"it-{suffix}@lab.org",
        expertise=["nlp"],
        max_load=1,
    )
    first = _under_review(live_engine, "Load paper 1")
    second = _under_review(live_engine, "Load paper 2")

    live_engine.directory.invite(EIC, first.id, reviewer.id)
    with pytest.raises(LoadExceeded):
        live_engine.directory.invite(EIC, second.id, reviewer.id)

    assert live_engine.directory.get(reviewer.id).current_load == 1
