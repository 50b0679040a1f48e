from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Sequence

from sendconnect.config import Settings
from sendconnect.errors import (
    MisconfiguredError,
    NotFoundError,
    NotReadyError,
    ResponseShapeError,
    StaleTopicStatusError,
    TopicPipelineError,
)
from sendconnect.indexing import IndexingGateway
from sendconnect.llama_cloud import LlamaCloudClient
from sendconnect.models import Citation, IndexingOutcome, Passage, Topic, TopicStatus
from sendconnect.retrieval import RetrievalGateway, normalize_retrieval_node
from sendconnect.storage import BlobStore, build_raw_document_key
from sendconnect.synthesis import AnswerSynthesizer, page_label_or_unknown
from sendconnect.topic_store import TopicStore, utc_now_iso

logger = logging.getLogger("sendconnect.lifecycle")

NO_RELEVANT_INFORMATION_ANSWER = (
    "I couldn't find relevant information in the document to answer this question."
)
UNKNOWN_ERROR_MESSAGE = "Unknown error occurred"
INDEXABLE_FROM = (TopicStatus.PENDING, TopicStatus.FAILED)
FAILABLE_FROM = (TopicStatus.PENDING, TopicStatus.INDEXING, TopicStatus.FAILED)


def truncate_excerpt(text: str, max_chars: int) -> str:
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}..."


def build_citations(passages: Sequence[Passage], *, excerpt_chars: int) -> list[Citation]:
    return [
        Citation(
            excerpt_number=index,
            page=page_label_or_unknown(passage),
            file_name=passage.file_name or "Unknown",
            excerpt=truncate_excerpt(passage.text, excerpt_chars),
            relevance_score=passage.score or 0,
        )
        for index, passage in enumerate(passages, start=1)
    ]


def _error_message(exc: BaseException) -> str:
    return str(exc) or UNKNOWN_ERROR_MESSAGE


def _failure(exc: BaseException) -> dict[str, object]:
    return {"success": False, "error": _error_message(exc)}


def _missing_settings_failure(missing: list[str]) -> dict[str, object]:
    return {"success": False, "error": f"Missing required environment variables: {', '.join(missing)}"}


class TopicLifecycleOrchestrator:
    """Drives topics through PENDING -> INDEXING -> READY/FAILED and answers queries.

    Every public operation returns a ``{"success": ...}`` envelope and never raises.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        topic_store: TopicStore,
        blob_store: BlobStore,
        indexing_gateway: IndexingGateway,
        retrieval_gateway: RetrievalGateway,
        synthesizer: AnswerSynthesizer,
        llama_cloud: LlamaCloudClient | None = None,
        now: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._settings = settings
        self._topic_store = topic_store
        self._blob_store = blob_store
        self._indexing = indexing_gateway
        self._retrieval = retrieval_gateway
        self._synthesizer = synthesizer
        self._llama_cloud = llama_cloud
        self._now = now

    def upload_topic_document(
        self,
        *,
        user_id: str,
        title: str,
        description: str,
        file_name: str,
        content_type: str,
        content: bytes,
    ) -> dict[str, object]:
        try:
            storage_key = build_raw_document_key(
                prefix=self._settings.raw_docs_prefix,
                user_id=user_id,
                file_name=file_name,
            )
            self._blob_store.put_object(
                key=storage_key,
                content=content,
                content_type=content_type,
                metadata={"title": title, "description": description, "originalFileName": file_name},
            )
            logger.info(
                "topic_document_stored",
                extra={"event": "topic_document_stored", "storage_key": storage_key, "size_bytes": len(content)},
            )
            topic = self._topic_store.create_topic(
                title=title,
                description=description,
                raw_storage_key=storage_key,
            )
            logger.info("topic_created", extra={"event": "topic_created", "topic_id": topic.id})
        except Exception as exc:
            logger.exception("topic_upload_failed", extra={"event": "topic_upload_failed", "error": str(exc)})
            return _failure(exc)

        # Indexing failures are recorded on the topic; the upload itself has succeeded.
        indexing = self.index_topic(
            topic_id=topic.id,
            storage_key=storage_key,
            bucket_ref=self._blob_store.bucket_ref,
            title=title,
        )
        current = self._read_topic_quietly(topic.id) or topic
        return {
            "success": True,
            "data": {
                "topicId": topic.id,
                "storageKey": storage_key,
                "title": current.title,
                "description": current.description,
                "status": current.status.value,
                "message": "Topic created successfully. Processing will begin shortly.",
            },
            "indexing": indexing,
        }

    def index_topic(
        self,
        *,
        topic_id: str,
        storage_key: str,
        bucket_ref: str,
        title: str,
    ) -> dict[str, object]:
        missing = self._settings.missing_indexing_settings()
        if missing:
            logger.error(
                "topic_indexing_misconfigured",
                extra={"event": "topic_indexing_misconfigured", "topic_id": topic_id, "missing": missing},
            )
            return _missing_settings_failure(missing)

        logger.info(
            "topic_indexing_started",
            extra={
                "event": "topic_indexing_started",
                "topic_id": topic_id,
                "storage_key": storage_key,
                "bucket_ref": bucket_ref,
            },
        )
        try:
            topic = self._topic_store.transition_status(
                topic_id,
                expected=INDEXABLE_FROM,
                new_status=TopicStatus.INDEXING,
            )
        except (StaleTopicStatusError, NotFoundError) as exc:
            # Another attempt owns the topic, or it does not exist; leave its status alone.
            logger.warning(
                "topic_indexing_rejected",
                extra={"event": "topic_indexing_rejected", "topic_id": topic_id, "error": str(exc)},
            )
            return _failure(exc)
        except Exception as exc:
            logger.exception(
                "topic_indexing_failed",
                extra={"event": "topic_indexing_failed", "topic_id": topic_id, "error": str(exc)},
            )
            self._mark_failed(topic_id, pipeline_id=None)
            return _failure(exc)

        outcome: IndexingOutcome | None = None
        try:
            outcome = self._indexing.begin_indexing(
                topic_id=topic_id,
                storage_key=storage_key,
                bucket_ref=bucket_ref,
                title=title,
                existing_pipeline_id=topic.index_pipeline_id,
            )
            self._topic_store.transition_status(
                topic_id,
                expected=(TopicStatus.INDEXING,),
                new_status=TopicStatus.READY,
                pipeline_id=outcome.pipeline_id,
                file_id=outcome.file_id,
                indexed_at=self._now(),
            )
        except Exception as exc:
            pipeline_id = outcome.pipeline_id if outcome else getattr(exc, "pipeline_id", None)
            log = logger.error if isinstance(exc, TopicPipelineError) else logger.exception
            log(
                "topic_indexing_failed",
                extra={
                    "event": "topic_indexing_failed",
                    "topic_id": topic_id,
                    "pipeline_id": pipeline_id,
                    "error_code": getattr(exc, "code", "unknown_error"),
                    "error": str(exc),
                },
            )
            self._mark_failed(topic_id, pipeline_id=pipeline_id)
            return _failure(exc)

        logger.info(
            "topic_indexing_completed",
            extra={
                "event": "topic_indexing_completed",
                "topic_id": topic_id,
                "pipeline_id": outcome.pipeline_id,
                "file_id": outcome.file_id,
            },
        )
        result: dict[str, object] = {
            "success": True,
            "message": "PDF uploaded and indexed successfully",
            "pipelineId": outcome.pipeline_id,
            "fileId": outcome.file_id,
        }
        if outcome.pipeline_name:
            result["pipelineName"] = outcome.pipeline_name
        return result

    def _mark_failed(self, topic_id: str, *, pipeline_id: str | None) -> None:
        # The pipeline id is kept so orphaned pipelines can be found and removed by hand.
        try:
            self._topic_store.transition_status(
                topic_id,
                expected=FAILABLE_FROM,
                new_status=TopicStatus.FAILED,
                pipeline_id=pipeline_id,
            )
        except Exception as exc:
            logger.error(
                "topic_mark_failed_failed",
                extra={"event": "topic_mark_failed_failed", "topic_id": topic_id, "error": str(exc)},
            )

    def _read_topic_quietly(self, topic_id: str) -> Topic | None:
        try:
            return self._topic_store.get_topic(topic_id)
        except Exception as exc:
            logger.warning(
                "topic_read_failed",
                extra={"event": "topic_read_failed", "topic_id": topic_id, "error": str(exc)},
            )
            return None

    def _require_ready_topic(self, topic_id: str) -> Topic:
        topic = self._topic_store.get_topic(topic_id)
        if topic is None:
            raise NotFoundError(topic_id)
        if topic.status is not TopicStatus.READY:
            raise NotReadyError(topic.status.value)
        # Status and pipeline id are separate fields; check both.
        if not topic.index_pipeline_id:
            raise MisconfiguredError("Topic does not have a Llama Cloud pipeline ID")
        return topic

    def answer_query(self, *, topic_id: str, query: str) -> dict[str, object]:
        missing = self._settings.missing_query_settings()
        if missing:
            return _missing_settings_failure(missing)

        logger.info("topic_query_started", extra={"event": "topic_query_started", "topic_id": topic_id})
        try:
            topic = self._require_ready_topic(topic_id)
            query_date = self._now()
            passages = self._retrieval.retrieve(topic.index_pipeline_id, query, self._settings.query_top_k)

            if not passages:
                return {
                    "success": True,
                    "answer": NO_RELEVANT_INFORMATION_ANSWER,
                    "citations": [],
                    "metadata": {"topicTitle": topic.title, "queryDate": query_date, "nodesRetrieved": 0},
                }

            answer = self._synthesizer.synthesize(topic_title=topic.title, query=query, passages=passages)
            citations = build_citations(passages, excerpt_chars=self._settings.citation_excerpt_chars)
        except Exception as exc:
            log = logger.warning if isinstance(exc, TopicPipelineError) else logger.exception
            log(
                "topic_query_failed",
                extra={
                    "event": "topic_query_failed",
                    "topic_id": topic_id,
                    "error_code": getattr(exc, "code", "unknown_error"),
                    "error": str(exc),
                },
            )
            return _failure(exc)

        logger.info(
            "topic_query_completed",
            extra={"event": "topic_query_completed", "topic_id": topic_id, "nodes_retrieved": len(passages)},
        )
        return {
            "success": True,
            "answer": answer,
            "citations": [citation.to_payload() for citation in citations],
            "metadata": {
                "topicTitle": topic.title,
                "queryDate": query_date,
                "nodesRetrieved": len(passages),
            },
        }

    def diagnostic_query(self, *, pipeline_id: str, query: str) -> dict[str, object]:
        missing = self._settings.missing_retrieval_settings()
        if missing:
            return _missing_settings_failure(missing)

        try:
            raw = self._retrieval.retrieve_raw(pipeline_id, query, self._settings.diagnostic_top_k)
        except Exception as exc:
            logger.warning(
                "diagnostic_query_failed",
                extra={"event": "diagnostic_query_failed", "pipeline_id": pipeline_id, "error": str(exc)},
            )
            return _failure(exc)

        nodes: Any = raw.get("retrieval_nodes") if isinstance(raw, Mapping) else None
        node_list = nodes if isinstance(nodes, list) else []
        return {
            "success": True,
            "query": query,
            "pipelineId": pipeline_id,
            "responseStructure": {
                "hasRetrievalNodes": nodes is not None,
                "nodeCount": len(node_list),
                "sampleNode": node_list[0] if node_list else None,
            },
            "passages": [self._diagnostic_passage(item, index) for index, item in enumerate(node_list, start=1)],
            "fullResponse": raw,
        }

    def _diagnostic_passage(self, item: object, index: int) -> dict[str, object]:
        # Unknown node shapes are reported per node.
        try:
            passage = normalize_retrieval_node(item, index)
        except ResponseShapeError as exc:
            return {"error": str(exc)}
        return {
            "text": truncate_excerpt(passage.text, self._settings.citation_excerpt_chars),
            "score": passage.score,
            "pageLabel": page_label_or_unknown(passage),
            "fileName": passage.file_name,
        }

    def indexing_status(self, *, topic_id: str) -> dict[str, object]:
        """Report the service-side indexing state next to the stored topic status.

        Read-only: the stored status is never advanced from here.
        """
        missing = self._settings.missing_retrieval_settings()
        if missing:
            return _missing_settings_failure(missing)
        if self._llama_cloud is None:
            return {"success": False, "error": "Indexing status checks are not available."}

        try:
            topic = self._topic_store.get_topic(topic_id)
            if topic is None:
                raise NotFoundError(topic_id)
            if not topic.index_pipeline_id:
                raise MisconfiguredError("Topic does not have a Llama Cloud pipeline ID")
            payload = self._llama_cloud.get_pipeline_status(topic.index_pipeline_id)
        except Exception as exc:
            logger.warning(
                "topic_indexing_status_failed",
                extra={"event": "topic_indexing_status_failed", "topic_id": topic_id, "error": str(exc)},
            )
            return _failure(exc)

        return {
            "success": True,
            "topicId": topic.id,
            "topicStatus": topic.status.value,
            "pipelineId": topic.index_pipeline_id,
            "pipelineStatus": payload.get("status"),
        }
