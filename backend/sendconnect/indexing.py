from __future__ import annotations

import logging
import re
import time
from typing import Callable

from sendconnect.errors import StorageReadError, TopicPipelineError, UnknownError
from sendconnect.llama_cloud import LlamaCloudClient
from sendconnect.models import IndexingOutcome
from sendconnect.storage import BlobStore, file_name_from_key

logger = logging.getLogger("sendconnect.indexing")

_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")


def build_pipeline_name(title: str, timestamp_ms: int) -> str:
    slug = _NON_ALNUM_RUN.sub("-", (title or "").lower()).strip("-") or "topic"
    return f"{slug}-{timestamp_ms}"


class IndexingGateway:
    """Pushes one raw PDF into a dedicated Llama Cloud pipeline.

    The attach call starts indexing on the service side and returns as soon as the
    file set is accepted; indexing completion is not awaited here.
    """

    def __init__(
        self,
        *,
        blob_store: BlobStore,
        llama_cloud: LlamaCloudClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._blob_store = blob_store
        self._llama_cloud = llama_cloud
        self._clock = clock

    def begin_indexing(
        self,
        *,
        topic_id: str,
        storage_key: str,
        bucket_ref: str,
        title: str,
        existing_pipeline_id: str | None = None,
    ) -> IndexingOutcome:
        pipeline_id = existing_pipeline_id
        pipeline_name: str | None = None
        try:
            content = self._download(storage_key=storage_key, bucket_ref=bucket_ref)
            logger.info(
                "topic_pdf_downloaded",
                extra={"event": "topic_pdf_downloaded", "topic_id": topic_id, "size_bytes": len(content)},
            )

            if pipeline_id:
                logger.info(
                    "topic_pipeline_reused",
                    extra={"event": "topic_pipeline_reused", "topic_id": topic_id, "pipeline_id": pipeline_id},
                )
            else:
                pipeline_name = build_pipeline_name(title, int(self._clock() * 1000))
                pipeline = self._llama_cloud.create_pipeline(pipeline_name)
                pipeline_id = str(pipeline["id"])
                logger.info(
                    "topic_pipeline_created",
                    extra={
                        "event": "topic_pipeline_created",
                        "topic_id": topic_id,
                        "pipeline_id": pipeline_id,
                        "pipeline_name": pipeline_name,
                    },
                )

            uploaded = self._llama_cloud.upload_file(file_name=file_name_from_key(storage_key), content=content)
            file_id = str(uploaded["id"])
            logger.info(
                "topic_file_uploaded",
                extra={"event": "topic_file_uploaded", "topic_id": topic_id, "file_id": file_id},
            )

            self._llama_cloud.set_pipeline_files(pipeline_id, [file_id])
            logger.info(
                "topic_file_attached",
                extra={
                    "event": "topic_file_attached",
                    "topic_id": topic_id,
                    "pipeline_id": pipeline_id,
                    "file_id": file_id,
                },
            )
        except TopicPipelineError as exc:
            exc.pipeline_id = pipeline_id
            raise
        except Exception as exc:
            error = UnknownError(str(exc) or exc.__class__.__name__)
            error.pipeline_id = pipeline_id
            raise error from exc

        return IndexingOutcome(pipeline_id=pipeline_id, file_id=file_id, pipeline_name=pipeline_name)

    def _download(self, *, storage_key: str, bucket_ref: str) -> bytes:
        try:
            content = self._blob_store.get_object(bucket_ref=bucket_ref, key=storage_key)
        except StorageReadError:
            raise
        except Exception as exc:
            raise StorageReadError(f"Failed to download PDF from storage: {exc}") from exc
        if not content:
            raise StorageReadError(f"Failed to download PDF from storage: '{storage_key}' is empty.")
        return content
