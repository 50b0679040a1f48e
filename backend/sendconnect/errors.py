from __future__ import annotations


class TopicPipelineError(RuntimeError):
    """Base class for failures raised while indexing or querying a topic."""

    code = "unknown_error"
    # Set by the indexing gateway when a pipeline already exists for the failed attempt.
    pipeline_id: str | None = None


class UnknownError(TopicPipelineError):
    code = "unknown_error"


class ConfigurationError(TopicPipelineError):
    """Raised when required service credentials are not configured."""

    code = "configuration_error"


class StorageReadError(TopicPipelineError):
    """Raised when raw document bytes cannot be read from the blob store."""

    code = "storage_read_error"


class StorageWriteError(TopicPipelineError):
    code = "storage_write_error"


class TopicStoreError(TopicPipelineError):
    """Raised when the topic table cannot be read or written."""

    code = "topic_store_error"


class StaleTopicStatusError(TopicStoreError):
    """Raised when a conditional status write finds an unexpected prior status."""

    code = "stale_topic_status"

    def __init__(self, topic_id: str, expected: tuple[str, ...], actual: str | None) -> None:
        self.topic_id = topic_id
        self.expected = expected
        self.actual = actual
        expected_text = "|".join(expected)
        super().__init__(
            f"Topic {topic_id} status changed concurrently (expected {expected_text}, found {actual or 'missing'})"
        )


class UpstreamServiceError(TopicPipelineError):
    """An external HTTP call returned a non-success status."""

    code = "upstream_error"
    action = "call upstream service"

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Failed to {self.action}: {status_code} - {body}")


class PipelineCreateError(UpstreamServiceError):
    code = "pipeline_create_error"
    action = "create pipeline"


class FileUploadError(UpstreamServiceError):
    code = "file_upload_error"
    action = "upload file"


class FileAttachError(UpstreamServiceError):
    code = "file_attach_error"
    action = "add file to pipeline"


class RetrievalError(UpstreamServiceError):
    code = "retrieval_error"
    action = "retrieve from Llama Cloud"


class PipelineStatusError(UpstreamServiceError):
    code = "pipeline_status_error"
    action = "read pipeline status"


class ResponseShapeError(RetrievalError):
    """Raised when a retrieval payload matches neither known passage shape."""

    code = "response_shape_error"

    def __init__(self, message: str) -> None:
        self.status_code = 200
        self.body = ""
        TopicPipelineError.__init__(self, message)


class SynthesisError(TopicPipelineError):
    code = "synthesis_error"


class NotFoundError(TopicPipelineError):
    code = "not_found"

    def __init__(self, topic_id: str) -> None:
        self.topic_id = topic_id
        super().__init__(f"Topic not found: {topic_id}")


class NotReadyError(TopicPipelineError):
    code = "not_ready"

    def __init__(self, status: str | None) -> None:
        self.status = status
        super().__init__(f"Topic is not ready for querying. Current status: {status}")


class MisconfiguredError(TopicPipelineError):
    code = "misconfigured"
