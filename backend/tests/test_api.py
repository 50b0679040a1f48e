from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import sendconnect.main as main_module
from sendconnect.api.routers.system import reset_ready_cache
from sendconnect.config import Settings, settings
from sendconnect.main import create_app
from sendconnect.models import TopicStatus

from conftest import PDF_BYTES, make_ready_topic, wrapped_node


@pytest.fixture()
def api_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, lifecycle, topic_store, blob_store):
    monkeypatch.setattr(settings, "auth_enabled", False)
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/api.db")
    monkeypatch.setattr(settings, "storage_root", str(tmp_path / "raw-docs"))
    monkeypatch.setattr(main_module, "get_lifecycle", lambda: lifecycle)
    monkeypatch.setattr(main_module, "get_topic_store", lambda: topic_store)
    monkeypatch.setattr(main_module, "get_blob_store", lambda: blob_store)
    reset_ready_cache()
    with TestClient(create_app()) as client:
        yield client
    reset_ready_cache()


def _upload(client: TestClient, *, file_name: str = "jcq-aa.pdf", content: bytes = PDF_BYTES, content_type: str = "application/pdf"):
    return client.post(
        "/topics",
        data={"title": "JCQ Access Arrangements", "description": "Exam access arrangements guidance"},
        files={"file": (file_name, content, content_type)},
    )


def test_health_and_ready(api_client: TestClient) -> None:
    health = api_client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    ready = api_client.get("/ready")
    assert ready.status_code == 200
    checks = ready.json()["checks"]
    assert checks["topic_store"]["ok"] is True
    assert checks["storage"]["ok"] is True


def test_upload_pdf_stores_document_and_indexes_topic(api_client: TestClient, topic_store, blob_store) -> None:
    response = _upload(api_client)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "READY"
    assert body["data"]["storageKey"].startswith("send-connect-raw-docs/anonymous/")
    assert body["data"]["storageKey"].endswith("-jcq-aa.pdf")
    assert body["indexing"]["pipelineId"] == "pipe-1"
    assert blob_store.get_object(bucket_ref="local", key=body["data"]["storageKey"]) == PDF_BYTES

    topic = topic_store.get_topic(body["data"]["topicId"])
    assert topic.status is TopicStatus.READY
    assert topic.index_file_id == "file-1"


def test_upload_succeeds_even_when_indexing_fails(api_client: TestClient, llama_service, topic_store) -> None:
    llama_service.upload_response = (500, "upstream exploded")

    response = _upload(api_client)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "FAILED"
    assert body["indexing"] == {"success": False, "error": "Failed to upload file: 500 - upstream exploded"}
    topic = topic_store.get_topic(body["data"]["topicId"])
    assert topic.index_pipeline_id == "pipe-1"


def test_upload_rejects_non_pdf_and_empty_files(api_client: TestClient, llama_service) -> None:
    not_pdf = _upload(api_client, file_name="notes.txt", content=b"hello", content_type="text/plain")
    assert not_pdf.status_code == 415

    empty = _upload(api_client, content=b"")
    assert empty.status_code == 422
    assert llama_service.requests == []


def test_upload_rejects_oversized_files(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "max_upload_file_bytes", 10)

    response = _upload(api_client)

    assert response.status_code == 413



def test_upload_validates_title_and_description_after_stripping(api_client: TestClient, topic_store) -> None:
    blank_title = api_client.post(
        "/topics",
        data={"title": "   ", "description": "Guidance"},
        files={"file": ("jcq.pdf", PDF_BYTES, "application/pdf")},
    )
    assert blank_title.status_code == 422
    assert blank_title.json()["detail"] == "Title is required."

    long_description = api_client.post(
        "/topics",
        data={"title": "JCQ", "description": "d" * 1001},
        files={"file": ("jcq.pdf", PDF_BYTES, "application/pdf")},
    )
    assert long_description.status_code == 422

    padded = api_client.post(
        "/topics",
        data={"title": "  JCQ Access Arrangements  ", "description": " Guidance "},
        files={"file": ("jcq.pdf", PDF_BYTES, "application/pdf")},
    )
    assert padded.json()["data"]["title"] == "JCQ Access Arrangements"
    assert padded.json()["data"]["description"] == "Guidance"
    assert len(topic_store.list_topics()) == 1


def test_upload_size_limit_defaults_to_ten_megabytes() -> None:
    assert Settings.model_fields["max_upload_file_bytes"].default == 10 * 1024 * 1024


def test_update_rejects_blank_title(api_client: TestClient, topic_store) -> None:
    topic = topic_store.create_topic(title="Old title", description="Old", raw_storage_key="raw/k.pdf")

    response = api_client.patch(f"/topics/{topic.id}", json={"title": "   "})

    assert response.status_code == 422
    assert topic_store.get_topic(topic.id).title == "Old title"

def test_list_get_and_update_topics(api_client: TestClient, topic_store) -> None:
    topic = topic_store.create_topic(title="Old title", description="Old", raw_storage_key="raw/k.pdf")

    listed = api_client.get("/api/topics")
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()["topics"]] == [topic.id]

    fetched = api_client.get(f"/topics/{topic.id}")
    assert fetched.json()["rawStorageKey"] == "raw/k.pdf"

    updated = api_client.patch(f"/topics/{topic.id}", json={"title": "New title"})
    assert updated.status_code == 200
    assert updated.json()["title"] == "New title"
    assert updated.json()["status"] == "PENDING"

    assert api_client.get("/topics/missing").status_code == 404
    assert api_client.patch("/topics/missing", json={"title": "x"}).status_code == 404


def test_index_endpoint_runs_indexing_for_existing_topic(api_client: TestClient, stored_topic, topic_store) -> None:
    response = api_client.post(
        f"/topics/{stored_topic.id}/index",
        json={"storageKey": stored_topic.raw_storage_key, "bucketRef": "local", "title": stored_topic.title},
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert topic_store.get_topic(stored_topic.id).status is TopicStatus.READY


def test_query_endpoint_returns_answer_with_citations(api_client: TestClient, topic_store, llama_service, anthropic_client) -> None:
    topic = make_ready_topic(topic_store)
    llama_service.retrieve_response = (
        200,
        {"retrieval_nodes": [wrapped_node("Candidates may be allowed 25% extra time.", page_label=12)]},
    )

    response = api_client.post(f"/api/topics/{topic.id}/query", json={"query": "How much extra time?"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["answer"] == anthropic_client.answer
    assert body["citations"][0]["page"] == 12
    assert body["metadata"]["nodesRetrieved"] == 1


def test_query_endpoint_reports_topic_not_ready(api_client: TestClient, topic_store) -> None:
    topic = topic_store.create_topic(title="Pending", description="", raw_storage_key="raw/k.pdf")

    response = api_client.post(f"/topics/{topic.id}/query", json={"query": "anything"})

    assert response.status_code == 200
    assert response.json() == {
        "success": False,
        "error": "Topic is not ready for querying. Current status: PENDING",
    }


def test_query_endpoint_validates_request_body(api_client: TestClient, topic_store) -> None:
    topic = make_ready_topic(topic_store)

    response = api_client.post(f"/topics/{topic.id}/query", json={"query": ""})

    assert response.status_code == 422


def test_diagnostic_retrieve_uses_small_top_k(api_client: TestClient, llama_service) -> None:
    llama_service.retrieve_response = (200, {"retrieval_nodes": [wrapped_node("Rest breaks.", page_label=3)]})

    response = api_client.post("/diagnostics/retrieve", json={"query": "rest breaks", "pipelineId": "pipe-9"})

    assert response.status_code == 200
    body = response.json()
    assert body["responseStructure"]["nodeCount"] == 1
    assert body["passages"][0]["pageLabel"] == 3
    request = llama_service.calls("POST", "/retrieve")[0]
    assert request.url.path.endswith("/pipelines/pipe-9/retrieve")
    assert llama_service.json_body(request)["similarity_top_k"] == 5
