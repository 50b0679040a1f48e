from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from sendconnect.config import Settings, settings
from sendconnect.indexing import IndexingGateway
from sendconnect.lifecycle import TopicLifecycleOrchestrator
from sendconnect.llama_cloud import LlamaCloudClient
from sendconnect.models import Topic, TopicStatus
from sendconnect.retrieval import RetrievalGateway
from sendconnect.storage import LocalBlobStore
from sendconnect.synthesis import AnswerSynthesizer
from sendconnect.topic_store import SqliteTopicStore

LLAMA_API_BASE = "https://llama.test/api/v1"
PDF_BYTES = b"%PDF-1.7\n1 0 obj\n<< /Type /Catalog >>\nendobj\n%%EOF"


class FakeLlamaCloudService:
    """In-memory stand-in for the Llama Cloud REST API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.pipeline_response: tuple[int, object] = (200, {"id": "pipe-1", "name": "created"})
        self.upload_response: tuple[int, object] = (200, {"id": "file-1", "name": "document.pdf"})
        self.attach_response: tuple[int, object] = (200, [{"file_id": "file-1"}])
        self.retrieve_response: tuple[int, object] = (200, {"retrieval_nodes": []})
        self.status_response: tuple[int, object] = (200, {"status": "SUCCESS"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith("/pipelines"):
            status_code, body = self.pipeline_response
        elif request.method == "POST" and path.endswith("/files"):
            status_code, body = self.upload_response
        elif request.method == "PUT" and path.endswith("/files"):
            status_code, body = self.attach_response
        elif request.method == "POST" and path.endswith("/retrieve"):
            status_code, body = self.retrieve_response
        elif request.method == "GET" and path.endswith("/status"):
            status_code, body = self.status_response
        else:
            return httpx.Response(404, text=f"unexpected route {request.method} {path}")
        if isinstance(body, str):
            return httpx.Response(status_code, text=body)
        return httpx.Response(status_code, json=body)

    def client(self, *, project_id: str = "proj-1", organization_id: str = "") -> LlamaCloudClient:
        return LlamaCloudClient(
            api_base=LLAMA_API_BASE,
            api_key="llx-test-key",
            project_id=project_id,
            organization_id=organization_id,
            http_client=httpx.Client(transport=httpx.MockTransport(self.handler)),
        )

    def calls(self, method: str, suffix: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path.endswith(suffix)
        ]

    @staticmethod
    def json_body(request: httpx.Request) -> Any:
        return json.loads(request.content.decode("utf-8"))


class FakeAnthropicClient:
    def __init__(self, answer: str = "Candidates may receive 25% extra time (Page 12).") -> None:
        self.answer = answer
        self.calls: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.answer)])


def wrapped_node(text: str, page_label: object = None, file_name: str = "jcq-aa.pdf", score: float = 0.8) -> dict:
    extra_info: dict[str, object] = {"file_name": file_name}
    if page_label is not None:
        extra_info["page_label"] = page_label
    return {"node": {"id_": f"node-{page_label}", "text": text, "extra_info": extra_info}, "score": score}


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    runtime_settings = settings.model_copy(deep=True)
    runtime_settings.database_url = f"sqlite:///{tmp_path}/topics.db"
    runtime_settings.storage_root = str(tmp_path / "raw-docs")
    runtime_settings.storage_backend = "local"
    runtime_settings.topic_store_backend = "local"
    runtime_settings.llama_cloud_api_base = LLAMA_API_BASE
    runtime_settings.llama_cloud_api_key = "llx-test-key"
    runtime_settings.llama_cloud_project_id = "proj-1"
    runtime_settings.anthropic_api_key = "sk-ant-test-key"
    return runtime_settings


@pytest.fixture()
def topic_store(test_settings: Settings) -> SqliteTopicStore:
    store = SqliteTopicStore(test_settings.database_url)
    store.init()
    return store


@pytest.fixture()
def blob_store(test_settings: Settings) -> LocalBlobStore:
    return LocalBlobStore(test_settings.storage_root)


@pytest.fixture()
def llama_service() -> FakeLlamaCloudService:
    return FakeLlamaCloudService()


@pytest.fixture()
def anthropic_client() -> FakeAnthropicClient:
    return FakeAnthropicClient()


@pytest.fixture()
def build_lifecycle(test_settings, topic_store, blob_store, llama_service, anthropic_client):
    def _build(store=None) -> TopicLifecycleOrchestrator:
        llama_cloud = llama_service.client(project_id=test_settings.llama_cloud_project_id)
        return TopicLifecycleOrchestrator(
            settings=test_settings,
            topic_store=store or topic_store,
            blob_store=blob_store,
            indexing_gateway=IndexingGateway(blob_store=blob_store, llama_cloud=llama_cloud),
            retrieval_gateway=RetrievalGateway(llama_cloud=llama_cloud),
            synthesizer=AnswerSynthesizer(settings=test_settings, client=anthropic_client),
            llama_cloud=llama_cloud,
        )

    return _build


@pytest.fixture()
def lifecycle(build_lifecycle) -> TopicLifecycleOrchestrator:
    return build_lifecycle()


@pytest.fixture()
def stored_topic(topic_store: SqliteTopicStore, blob_store: LocalBlobStore) -> Topic:
    key = "send-connect-raw-docs/user-1/1700000000000-jcq-aa.pdf"
    blob_store.put_object(key=key, content=PDF_BYTES, content_type="application/pdf")
    return topic_store.create_topic(
        title="JCQ Access Arrangements",
        description="Access arrangements and reasonable adjustments",
        raw_storage_key=key,
    )


def make_ready_topic(
    store: SqliteTopicStore,
    *,
    title: str = "JCQ Access Arrangements",
    pipeline_id: str = "pipe-1",
) -> Topic:
    topic = store.create_topic(title=title, description="", raw_storage_key="send-connect-raw-docs/u/1-a.pdf")
    store.transition_status(topic.id, expected=(TopicStatus.PENDING,), new_status=TopicStatus.INDEXING)
    return store.transition_status(
        topic.id,
        expected=(TopicStatus.INDEXING,),
        new_status=TopicStatus.READY,
        pipeline_id=pipeline_id,
        file_id="file-1",
        indexed_at="2026-01-01T00:00:00+00:00",
    )
