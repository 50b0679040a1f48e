from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TopicIndexRequest(CamelModel):
    storage_key: str = Field(..., min_length=1)
    bucket_ref: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)


class TopicQueryRequest(CamelModel):
    query: str = Field(..., min_length=1, max_length=4000)


class TopicUpdateRequest(CamelModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)


class DiagnosticRetrieveRequest(CamelModel):
    query: str = Field(..., min_length=1, max_length=4000)
    pipeline_id: str = Field(..., min_length=1)
