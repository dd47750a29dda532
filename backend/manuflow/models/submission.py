from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator

from manuflow.models.base import RecordModel, new_id, utc_now


class SubmissionStatus(str, Enum):
    """
    稿件生命周期状态。

    中文注释:
    - draft -> submitted -> under_review -> {revision_requested, accepted, rejected}
    - revision_requested -> submitted（修回，版本号递增）
    - accepted -> published
    - rejected / published 为终态，记录永久保留用于审计。
    """

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    REVISION_REQUESTED = "revision_requested"
    ACCEPTED = "accepted"
    PUBLISHED = "published"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in {SubmissionStatus.PUBLISHED, SubmissionStatus.REJECTED}


class Priority(str, Enum):
    STANDARD = "standard"
    EXPEDITED = "expedited"
    URGENT = "urgent"


class Author(RecordModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    affiliation: Optional[str] = Field(default=None, max_length=300)
    is_corresponding: bool = False


def normalize_keywords(values: list[str] | None) -> list[str]:
    """关键词按小写去重，保留首次出现的顺序。"""
    out: list[str] = []
    seen: set[str] = set()
    for raw in values or []:
        kw = str(raw or "").strip().lower()
        if kw and kw not in seen:
            seen.add(kw)
            out.append(kw)
    return out


class Submission(RecordModel):
    id: str = Field(default_factory=new_id)
    # 乐观锁令牌：草稿创建时为 0，每次成功写入 +1
    version: int = Field(default=0, ge=0)
    owner_id: str
    title: str = Field(min_length=1, max_length=500)
    abstract: str = ""
    article_type: str = "research"
    authors: list[Author]
    keywords: list[str] = Field(default_factory=list)
    article_number: Optional[str] = None
    volume: Optional[int] = Field(default=None, ge=1)
    manuscript_file: Optional[str] = None
    supplementary_files: list[str] = Field(default_factory=list)
    suggested_reviewers: list[str] = Field(default_factory=list)
    status: SubmissionStatus = SubmissionStatus.DRAFT
    assigned_editor: Optional[str] = None
    special_review: bool = False
    understaffed: bool = False
    revision_round: int = Field(default=1, ge=1)
    priority: Priority = Priority.STANDARD
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    submitted_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    @field_validator("authors")
    @classmethod
    def _validate_authors(cls, value: list[Author]) -> list[Author]:
        if not value:
            raise ValueError("authors must not be empty")
        corresponding = [a for a in value if a.is_corresponding]
        if len(corresponding) != 1:
            raise ValueError("exactly one author must be marked corresponding")
        return value

    @field_validator("keywords")
    @classmethod
    def _normalize_keywords(cls, value: list[str]) -> list[str]:
        return normalize_keywords(value)

    @field_validator("article_type")
    @classmethod
    def _normalize_article_type(cls, value: str) -> str:
        return (value or "research").strip().lower() or "research"

    @property
    def author_emails(self) -> set[str]:
        return {a.email.strip().lower() for a in self.authors}
