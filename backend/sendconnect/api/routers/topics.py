from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool

from sendconnect.api.contracts import (
    DiagnosticRetrieveRequest,
    TopicIndexRequest,
    TopicQueryRequest,
    TopicUpdateRequest,
)
from sendconnect.auth import claims_user_id, require_admin_user, require_authenticated_user
from sendconnect.config import settings
from sendconnect.errors import NotFoundError
from sendconnect.lifecycle import TopicLifecycleOrchestrator
from sendconnect.topic_store import TopicStore

LifecycleGetter = Callable[[], TopicLifecycleOrchestrator]
TopicStoreGetter = Callable[[], TopicStore]

PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}


def _is_pdf(upload: UploadFile) -> bool:
    content_type = (upload.content_type or "").split(";", 1)[0].strip().lower()
    if content_type in PDF_CONTENT_TYPES:
        return True
    return content_type in {"", "application/octet-stream"} and Path(upload.filename or "").suffix.lower() == ".pdf"


def build_topics_router(*, get_lifecycle: LifecycleGetter, get_topic_store: TopicStoreGetter) -> APIRouter:
    router = APIRouter()

    @router.post("/topics")
    async def upload_topic(
        title: str = Form(..., min_length=1, max_length=200),
        description: str = Form(..., min_length=1, max_length=1000),
        file: UploadFile = File(...),
        claims: dict[str, Any] | None = Depends(require_admin_user),
    ) -> dict[str, object]:
        title = title.strip()
        description = description.strip()
        if not title:
            raise HTTPException(status_code=422, detail="Title is required.")
        if not description:
            raise HTTPException(status_code=422, detail="Description is required.")

        file_name = Path(file.filename or "").name or "document.pdf"
        if not _is_pdf(file):
            raise HTTPException(status_code=415, detail=f"File '{file_name}' is not a PDF document.")

        content = await file.read(settings.max_upload_file_bytes + 1)
        if not content:
            raise HTTPException(status_code=422, detail=f"File '{file_name}' is empty.")
        if len(content) > settings.max_upload_file_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File '{file_name}' exceeds max size of {settings.max_upload_file_bytes} bytes.",
            )

        lifecycle = get_lifecycle()
        return await run_in_threadpool(
            lambda: lifecycle.upload_topic_document(
                user_id=claims_user_id(claims),
                title=title,
                description=description,
                file_name=file_name,
                content_type="application/pdf",
                content=content,
            )
        )

    @router.get("/topics", dependencies=[Depends(require_authenticated_user)])
    def list_topics() -> dict[str, object]:
        topics = get_topic_store().list_topics()
        return {"topics": [topic.to_api() for topic in topics]}

    @router.get("/topics/{topic_id}", dependencies=[Depends(require_authenticated_user)])
    def get_topic(topic_id: str) -> dict[str, object]:
        topic = get_topic_store().get_topic(topic_id)
        if topic is None:
            raise HTTPException(status_code=404, detail=f"Topic not found: {topic_id}")
        return topic.to_api()

    @router.patch("/topics/{topic_id}", dependencies=[Depends(require_admin_user)])
    def update_topic(topic_id: str, payload: TopicUpdateRequest) -> dict[str, object]:
        try:
            topic = get_topic_store().update_details(
                topic_id,
                title=payload.title,
                description=payload.description,
            )
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return topic.to_api()

    @router.post("/topics/{topic_id}/index", dependencies=[Depends(require_admin_user)])
    def index_topic(topic_id: str, payload: TopicIndexRequest) -> dict[str, object]:
        return get_lifecycle().index_topic(
            topic_id=topic_id,
            storage_key=payload.storage_key,
            bucket_ref=payload.bucket_ref,
            title=payload.title,
        )

    @router.get("/topics/{topic_id}/indexing-status", dependencies=[Depends(require_admin_user)])
    def topic_indexing_status(topic_id: str) -> dict[str, object]:
        return get_lifecycle().indexing_status(topic_id=topic_id)

    @router.post("/topics/{topic_id}/query", dependencies=[Depends(require_authenticated_user)])
    def query_topic(topic_id: str, payload: TopicQueryRequest) -> dict[str, object]:
        return get_lifecycle().answer_query(topic_id=topic_id, query=payload.query)

    @router.post("/diagnostics/retrieve", dependencies=[Depends(require_admin_user)])
    def diagnostic_retrieve(payload: DiagnosticRetrieveRequest) -> dict[str, object]:
        return get_lifecycle().diagnostic_query(pipeline_id=payload.pipeline_id, query=payload.query)

    return router
