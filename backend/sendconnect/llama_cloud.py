from __future__ import annotations

import logging
import time
from typing import Any, Mapping

import httpx

from sendconnect.config import Settings
from sendconnect.errors import (
    ConfigurationError,
    FileAttachError,
    FileUploadError,
    PipelineCreateError,
    PipelineStatusError,
    RetrievalError,
    UpstreamServiceError,
)

logger = logging.getLogger("sendconnect.llama_cloud")

# The /files endpoint rejects any other multipart field name with a 422.
UPLOAD_FIELD_NAME = "upload_file"


class LlamaCloudClient:
    """Minimal REST client for the Llama Cloud pipelines and files API."""

    def __init__(
        self,
        *,
        api_base: str,
        api_key: str,
        project_id: str = "",
        organization_id: str = "",
        timeout_seconds: float = 60.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key
        self._project_id = project_id
        self._organization_id = organization_id
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.Client | None = None) -> "LlamaCloudClient":
        return cls(
            api_base=settings.llama_cloud_api_base,
            api_key=settings.llama_cloud_api_key,
            project_id=settings.llama_cloud_project_id,
            organization_id=settings.llama_cloud_organization_id,
            timeout_seconds=settings.llama_cloud_timeout_seconds,
            http_client=http_client,
        )

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def _headers(self, *, json_body: bool = True) -> dict[str, str]:
        if not self._api_key:
            raise ConfigurationError("LLAMA_CLOUD_API_KEY is not configured.")
        headers = {"Authorization": f"Bearer {self._api_key}", "accept": "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _send(
        self,
        method: str,
        path: str,
        *,
        error_cls: type[UpstreamServiceError],
        **kwargs: Any,
    ) -> httpx.Response:
        url = f"{self._api_base}{path}"
        started = time.perf_counter()
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(
                "llama_cloud_transport_failed",
                extra={"event": "llama_cloud_transport_failed", "method": method, "path": path, "error": str(exc)},
            )
            # status 0: no HTTP response was received
            raise error_cls(0, str(exc)) from exc
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "llama_cloud_request",
            extra={
                "event": "llama_cloud_request",
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        if not response.is_success:
            raise error_cls(response.status_code, response.text)
        return response

    @staticmethod
    def _json_object(response: httpx.Response, error_cls: type[UpstreamServiceError]) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls(response.status_code, f"Invalid JSON response: {response.text[:200]}") from exc
        if not isinstance(payload, dict):
            raise error_cls(response.status_code, "Expected a JSON object response.")
        return payload

    def create_pipeline(self, name: str) -> dict[str, Any]:
        # No embedding_config: the service default embedding needs no extra credentials.
        body = {
            "name": name,
            "transform_config": {"mode": "auto", "config_name": "auto"},
        }
        response = self._send(
            "POST",
            "/pipelines",
            error_cls=PipelineCreateError,
            headers=self._headers(),
            json=body,
        )
        payload = self._json_object(response, PipelineCreateError)
        if not payload.get("id"):
            raise PipelineCreateError(response.status_code, "Pipeline response did not include an id.")
        return payload

    def _check_project_scope(self) -> None:
        if not self._project_id:
            hint = ""
            if self._organization_id:
                hint = " LLAMA_CLOUD_ORGANIZATION_ID is set, but files are scoped to a project."
            raise ConfigurationError(f"LLAMA_CLOUD_PROJECT_ID is not configured.{hint}")
        if self._organization_id and self._project_id == self._organization_id:
            raise ConfigurationError(
                "LLAMA_CLOUD_PROJECT_ID is set to the organization id; /files requires the project id."
            )

    def upload_file(self, *, file_name: str, content: bytes, content_type: str = "application/pdf") -> dict[str, Any]:
        self._check_project_scope()
        response = self._send(
            "POST",
            "/files",
            error_cls=FileUploadError,
            headers=self._headers(json_body=False),
            params={"project_id": self._project_id},
            files={UPLOAD_FIELD_NAME: (file_name, content, content_type)},
        )
        payload = self._json_object(response, FileUploadError)
        if not payload.get("id"):
            raise FileUploadError(response.status_code, "File upload response did not include an id.")
        return payload

    def set_pipeline_files(self, pipeline_id: str, file_ids: list[str]) -> None:
        self._send(
            "PUT",
            f"/pipelines/{pipeline_id}/files",
            error_cls=FileAttachError,
            headers=self._headers(),
            json=[{"file_id": file_id} for file_id in file_ids],
        )

    def retrieve(self, pipeline_id: str, *, query: str, top_k: int) -> Any:
        response = self._send(
            "POST",
            f"/pipelines/{pipeline_id}/retrieve",
            error_cls=RetrievalError,
            headers=self._headers(),
            json={"query": query, "similarity_top_k": top_k},
        )
        try:
            return response.json()
        except ValueError as exc:
            raise RetrievalError(response.status_code, f"Invalid JSON response: {response.text[:200]}") from exc

    def get_pipeline_status(self, pipeline_id: str) -> Mapping[str, Any]:
        response = self._send(
            "GET",
            f"/pipelines/{pipeline_id}/status",
            error_cls=PipelineStatusError,
            headers=self._headers(json_body=False),
        )
        return self._json_object(response, PipelineStatusError)
