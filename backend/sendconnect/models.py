from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class TopicStatus(str, Enum):
    PENDING = "PENDING"
    INDEXING = "INDEXING"
    READY = "READY"
    FAILED = "FAILED"


class Topic(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    title: str
    description: str = ""
    raw_storage_key: str
    status: TopicStatus = TopicStatus.PENDING
    index_pipeline_id: str | None = None
    index_file_id: str | None = None
    indexed_at: str | None = None
    created_at: str
    updated_at: str

    @property
    def is_queryable(self) -> bool:
        return self.status is TopicStatus.READY

    def to_api(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class Passage:
    text: str
    score: float
    page_label: int | str | None = None
    file_name: str | None = None


@dataclass(frozen=True)
class Citation:
    excerpt_number: int
    page: int | str
    file_name: str
    excerpt: str
    relevance_score: float

    def to_payload(self) -> dict[str, object]:
        return {
            "excerptNumber": self.excerpt_number,
            "page": self.page,
            "fileName": self.file_name,
            "excerpt": self.excerpt,
            "relevanceScore": self.relevance_score,
        }


@dataclass(frozen=True)
class IndexingOutcome:
    pipeline_id: str
    file_id: str
    pipeline_name: str | None = None
