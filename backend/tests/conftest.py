import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Import app from the correct location
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from main import app

from manuflow.core.config import WorkflowConfig
from manuflow.core.roles import Principal, Role
from manuflow.services.engine import EditorialEngine, get_engine

# === 全局测试配置 ===
# 中文注释:
# 1. 引擎一律使用内存仓储 + 可控时钟，测试之间完全隔离。
# 2. API 测试通过 dependency_overrides 注入同一个引擎实例，便于在服务层预置数据。
# 3. JWT 令牌使用与后端相同的默认 secret 签发，角色放在 app_metadata.role。

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workflow_config() -> WorkflowConfig:
    # 大多数用例手动邀请审稿人；自动分配的默认行为在 test_assignment_scheduler 里单独覆盖
    return WorkflowConfig(auto_assign_reviewers=False)


@pytest.fixture
def engine(clock: FakeClock, workflow_config: WorkflowConfig) -> EditorialEngine:
    return EditorialEngine.build(config=workflow_config, clock=clock)


@pytest.fixture
def captured_events(engine: EditorialEngine) -> list:
    events: list = []
    engine.events.subscribe(events.append)
    return events


# === 角色 ===

@pytest.fixture
def author() -> Principal:
    return Principal(id="author-1", role=Role.AUTHOR, email="ada@uni.edu")


@pytest.fixture
def eic() -> Principal:
    return Principal(id="eic-1", role=Role.EDITOR_IN_CHIEF, email="chief@journal.org")


@pytest.fixture
def associate_editor() -> Principal:
    return Principal(id="ae-1", role=Role.ASSOCIATE_EDITOR, email="ae@journal.org")


@pytest.fixture
def admin() -> Principal:
    return Principal(id="admin-1", role=Role.ADMIN, email="ops@journal.org")


def reviewer_principal(reviewer_id: str) -> Principal:
    return Principal(id=reviewer_id, role=Role.REVIEWER)


# 满足审稿表最小长度（100 字符）的意见
REVIEW_COMMENTS = (
    "The method is sound and the experiments are convincing. "
    "Please clarify the ablation setup and report variance across seeds."
)


# === 数据工厂 ===

def submission_fields(**overrides) -> dict:
    data = {
        "title": "Sparse attention for long documents",
        "abstract": "We study sparse attention.",
        "article_type": "research",
        "authors": [{"name": "Ada Author", "email": "ada@uni.edu", "is_corresponding": True}],
        "keywords": ["Machine Learning", "NLP"],
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_draft(engine: EditorialEngine, author: Principal) -> Callable:
    def _make(**overrides):
        return engine.workflow.create_draft(author, **submission_fields(**overrides))

    return _make


@pytest.fixture
def make_under_review(engine: EditorialEngine, author: Principal, eic: Principal, associate_editor: Principal, make_draft):
    """草稿 -> submitted(v1) -> under_review(v2)，副主编为 ae-1。"""

    def _make(**overrides):
        draft = make_draft(**overrides)
        submitted = engine.workflow.transition(author, draft.id, "submit", version=draft.version).submission
        return engine.workflow.transition(
            eic,
            submitted.id,
            "approve-for-review",
            version=submitted.version,
            assigned_editor=associate_editor.id,
        ).submission

    return _make


@pytest.fixture
def make_reviewer(engine: EditorialEngine) -> Callable:
    counter = {"n": 0}

    def _make(expertise=("machine learning",), **overrides):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "reviewer_id": overrides.pop("reviewer_id", f"rev-{n}"),
            "name": overrides.pop("name", f"Reviewer {n}"),
            "email": overrides.pop("email", f"reviewer{n}@lab.org"),
            "expertise": list(expertise),
        }
        data.update(overrides)
        return engine.directory.add_reviewer(**data)

    return _make


# === HTTP 客户端与令牌 ===

def generate_test_token(user_id: str, role: str, *, email: str = "test@example.com", expired: bool = False) -> str:
    """
    生成用于测试的 JWT 令牌（角色写入 app_metadata，模拟服务端签发）
    """
    secret = os.environ.get("SUPABASE_JWT_SECRET", "mock-secret-replace-later")
    now = datetime.now(timezone.utc)
    exp = now - timedelta(hours=1) if expired else now + timedelta(hours=1)
    payload = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "exp": exp,
        "iat": now - timedelta(hours=2) if expired else now,
        "role": "authenticated",
        "app_metadata": {"role": role},
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(principal: Principal) -> dict:
    return {"Authorization": f"Bearer {generate_test_token(principal.id, principal.role.value)}"}


@pytest_asyncio.fixture
async def client(engine: EditorialEngine) -> AsyncGenerator:
    """
    提供一个绑定到测试引擎的异步测试客户端
    """
    app.dependency_overrides[get_engine] = lambda: engine
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_engine, None)
